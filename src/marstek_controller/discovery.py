"""Find Marstek devices on the local network.

``Marstek.GetDevice`` is broadcast (or unicast to a given host) every couple
of seconds for a fixed window. Every device answers with its model, firmware
and MAC addresses; the first answer per source tag wins.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from marstek_controller.const import MARSTEK_DISCOVERY_INTERVAL, MARSTEK_DISCOVERY_WINDOW
from marstek_controller.correlation import operation_context
from marstek_controller.exceptions import TransportError
from marstek_controller.logging_abstraction import get_logger
from marstek_controller.metrics import record_discovery_result
from marstek_controller.protocol.frames import encode_request
from marstek_controller.transport.udp import RemoteInfo, UdpTransport

__all__ = ["DISCOVERY_METHOD", "DeviceDiscovery", "DiscoveredDevice"]

logger = get_logger(__name__)

DISCOVERY_METHOD = "Marstek.GetDevice"
DISCOVERY_REQUEST_ID = "marstek-discover"


@dataclass(frozen=True)
class DiscoveredDevice:
    src: str
    model: str
    firmware: str
    address: str
    port: int
    ble_mac: str | None = None
    wifi_mac: str | None = None
    wifi_name: str | None = None

    @property
    def display_name(self) -> str:
        return f"{self.model} v{self.firmware}"


def _discovered_from(message: dict[str, Any], remote: RemoteInfo) -> DiscoveredDevice | None:
    result = message.get("result")
    if not isinstance(result, dict) or not result.get("device"):
        return None

    def _opt(key: str) -> str | None:
        value = result.get(key)
        return str(value) if value not in (None, "") else None

    return DiscoveredDevice(
        src=str(message["src"]),
        model=str(result["device"]),
        firmware=str(result.get("ver", "")),
        address=remote.address,
        port=remote.port,
        ble_mac=_opt("ble_mac"),
        wifi_mac=_opt("wifi_mac"),
        wifi_name=_opt("wifi_name"),
    )


class DeviceDiscovery:
    lp: str = "discovery:"

    def __init__(
        self,
        transport: UdpTransport,
        window: float = MARSTEK_DISCOVERY_WINDOW,
        interval: float = MARSTEK_DISCOVERY_INTERVAL,
    ) -> None:
        self.transport = transport
        self.window = window
        self.interval = interval

    async def discover(self, address: str | None = None, port: int | None = None) -> list[DiscoveredDevice]:
        """Run one discovery window.

        Args:
            address: Query only this host instead of broadcasting
            port: Destination port override

        Returns:
            Devices in the order they answered; empty when nothing answered

        Raises:
            TransportError: The first query could not be sent

        """
        found: dict[str, DiscoveredDevice] = {}
        payload = encode_request(DISCOVERY_REQUEST_ID, DISCOVERY_METHOD, {"ble_mac": "0"})

        def on_message(message: dict[str, Any], remote: RemoteInfo) -> None:
            device = _discovered_from(message, remote)
            if device is None or device.src in found:
                return
            found[device.src] = device
            logger.info(
                "%s ✓ %s at %s",
                self.lp,
                device.display_name,
                device.address,
                extra={"src": device.src},
            )

        async def query() -> None:
            if address:
                await self.transport.send(payload, address, port)
            else:
                await self.transport.broadcast(payload, port)

        with operation_context("discover"):
            loop = asyncio.get_running_loop()
            self.transport.on(on_message)
            try:
                await query()
                deadline = loop.time() + self.window
                while (remaining := deadline - loop.time()) > 0:
                    await asyncio.sleep(min(self.interval, remaining))
                    if deadline - loop.time() <= 0:
                        break
                    try:
                        await query()
                    except TransportError as e:
                        logger.warning("%s repeat query failed: %s", self.lp, e)
            finally:
                self.transport.off(on_message)

            record_discovery_result(len(found))
            logger.info("%s window closed, %d device(s) found", self.lp, len(found))
            return list(found.values())
