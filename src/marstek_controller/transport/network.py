"""Local interface lookup used for self-echo filtering and subnet broadcasts."""

from __future__ import annotations

import ipaddress
import socket
from dataclasses import dataclass

import psutil

from marstek_controller.logging_abstraction import get_logger

__all__ = ["LocalInterface", "find_local_interface"]

logger = get_logger(__name__)


@dataclass(frozen=True, slots=True)
class LocalInterface:
    name: str
    address: str
    netmask: str

    @property
    def broadcast_address(self) -> str:
        network = ipaddress.IPv4Network(f"{self.address}/{self.netmask}", strict=False)
        return str(network.broadcast_address)


def find_local_interface() -> LocalInterface | None:
    """Return the first non-loopback IPv4 interface that is up, if any."""
    try:
        addresses = psutil.net_if_addrs()
        stats = psutil.net_if_stats()
    except OSError as e:
        logger.warning("find_local_interface: interface enumeration failed: %s", e)
        return None

    for name, addrs in addresses.items():
        if name in stats and not stats[name].isup:
            continue
        for addr in addrs:
            if addr.family != socket.AF_INET or not addr.netmask:
                continue
            if ipaddress.IPv4Address(addr.address).is_loopback:
                continue
            return LocalInterface(name=name, address=addr.address, netmask=addr.netmask)
    return None
