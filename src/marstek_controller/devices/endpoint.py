"""Logical local device: a stable source tag plus its last known address."""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from marstek_controller.const import LOCAL_TZ, MARSTEK_UDP_PORT
from marstek_controller.transport.types import PollTarget

__all__ = ["Endpoint"]


@dataclass
class Endpoint:
    """One battery on the LAN.

    ``src`` never changes. ``address`` follows the device: every datagram it
    sends refreshes it, so DHCP lease changes heal themselves. ``port`` is the
    configured destination and is never taken from a reply.
    """

    src: str
    name: str = ""
    address: str | None = None
    port: int = MARSTEK_UDP_PORT
    poll: bool = True
    poll_interval: float | None = None
    broadcast: bool = False
    model: str | None = None
    firmware: int | None = None
    last_seen: float | None = None
    last_seen_at: datetime | None = None
    readings: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.src

    def touch(self, address: str, now: float | None = None) -> bool:
        """Record a datagram from the device.

        Returns:
            True when the address changed

        """
        changed = address != self.address
        self.address = address
        self.last_seen = time.monotonic() if now is None else now
        self.last_seen_at = datetime.now(LOCAL_TZ)
        return changed

    def seconds_since_seen(self, now: float | None = None) -> float | None:
        if self.last_seen is None:
            return None
        return (time.monotonic() if now is None else now) - self.last_seen

    def poll_target(self) -> PollTarget:
        return PollTarget(
            device_id=self.src,
            interval=self.poll_interval,
            broadcast=self.broadcast,
            address=self.address,
            port=self.port,
        )
