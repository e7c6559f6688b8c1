"""Local battery bound to the shared UDP transport."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Protocol

from marstek_controller.const import MARSTEK_DEVICE_STALE_AFTER
from marstek_controller.devices.endpoint import Endpoint
from marstek_controller.devices.telemetry import normalize_local_result
from marstek_controller.logging_abstraction import get_logger
from marstek_controller.metrics import record_device_online
from marstek_controller.poll_scheduler import PollScheduler
from marstek_controller.transport.udp import RemoteInfo, UdpTransport

__all__ = ["LocalDevice", "ReadingSink"]

logger = get_logger(__name__)


class ReadingSink(Protocol):
    """Receives normalized readings and availability changes."""

    async def publish_readings(self, device_id: str, readings: Mapping[str, Any]) -> bool: ...

    async def publish_availability(self, device_id: str, online: bool) -> bool: ...


class LocalDevice:
    """Routes inbound frames for one source tag into its ``Endpoint``.

    Args:
        endpoint: Device identity and state
        transport: Shared UDP transport
        scheduler: Poll scheduler the device joins when polling is enabled
        factors: Scaling factors for this model and firmware
        sink: Where readings are published

    """

    def __init__(
        self,
        endpoint: Endpoint,
        transport: UdpTransport,
        scheduler: PollScheduler,
        factors: Mapping[str, float] | None = None,
        sink: ReadingSink | None = None,
        stale_after: float = MARSTEK_DEVICE_STALE_AFTER,
    ) -> None:
        self.endpoint = endpoint
        self.transport = transport
        self.scheduler = scheduler
        self.factors: dict[str, float] = dict(factors or {})
        self.sink = sink
        self.stale_after = stale_after
        self.online: bool = False
        self.lp = f"device[{endpoint.name}]:"

    def start(self) -> None:
        self.transport.on(self.handle_message)
        if self.endpoint.poll:
            self.scheduler.start(self.endpoint.src)
        logger.debug("%s listening", self.lp, extra={"src": self.endpoint.src, "poll": self.endpoint.poll})

    def stop(self) -> None:
        self.transport.off(self.handle_message)
        self.scheduler.stop(self.endpoint.src)

    async def handle_message(self, message: dict[str, Any], remote: RemoteInfo) -> None:
        if message.get("src") != self.endpoint.src:
            return
        if self.endpoint.touch(remote.address):
            logger.info("%s address is now %s", self.lp, remote.address)
        await self._set_online(True)

        result = message.get("result")
        if not isinstance(result, dict):
            return
        readings = normalize_local_result(result, self.factors)
        if not readings:
            return
        self.endpoint.readings.update(readings)
        if self.sink is not None:
            _ = await self.sink.publish_readings(self.endpoint.src, self.snapshot())

    def snapshot(self) -> dict[str, Any]:
        """Latest readings plus when the device was last heard from."""
        state: dict[str, Any] = dict(self.endpoint.readings)
        if self.endpoint.last_seen_at is not None:
            state["last_seen"] = self.endpoint.last_seen_at.isoformat()
        return state

    async def refresh_availability(self, now: float | None = None) -> bool:
        """Mark the device offline once it has been silent longer than ``stale_after``."""
        age = self.endpoint.seconds_since_seen(now)
        if self.online and (age is None or age > self.stale_after):
            logger.warning("%s silent for %ss, marking offline", self.lp, None if age is None else round(age))
            await self._set_online(False)
        return self.online

    async def _set_online(self, online: bool) -> None:
        if online == self.online:
            return
        self.online = online
        record_device_online(self.endpoint.src, online)
        if self.sink is not None:
            _ = await self.sink.publish_availability(self.endpoint.src, online)
