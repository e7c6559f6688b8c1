"""YAML device file: local endpoints, cloud accounts and the scaling table.

Example:

    devices:
      ABCD1234EF56:
        name: Garage battery
        address: 192.168.1.50
        interval: 60
        broadcast: false
        model: VenusE
        firmware: 154
    cloud:
      accounts:
        - username: me@example.com
          password: hunter2          # or password_md5
          devices: ["2834958029834958023"]
    scaling:
      version: 1
      profiles: []
"""

from __future__ import annotations

import re
from collections.abc import Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import yaml

from marstek_controller.cloud.api import hash_password
from marstek_controller.const import MARSTEK_UDP_PORT, YES_ANSWER
from marstek_controller.devices.endpoint import Endpoint
from marstek_controller.devices.telemetry import ScalingTable
from marstek_controller.discovery import DiscoveredDevice
from marstek_controller.logging_abstraction import get_logger
from marstek_controller.transport.types import PollTarget

__all__ = ["CloudAccount", "DeviceRegistry", "parse_firmware"]

logger = get_logger(__name__)

_MODEL_FIRMWARE = re.compile(r"\sv(\d+)\s*$")


@dataclass(frozen=True)
class CloudAccount:
    username: str
    password_md5: str
    devices: frozenset[str] | None = None


def _as_bool(value: object, default: bool) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    return str(value).casefold() in YES_ANSWER


def parse_firmware(firmware: object, model: object = None) -> int | None:
    """Firmware as an int, falling back to the ``"<model> v<firmware>"`` naming."""
    if firmware not in (None, ""):
        try:
            return int(str(firmware))
        except ValueError:
            logger.warning("Invalid firmware value: %r", firmware)
    if isinstance(model, str) and (match := _MODEL_FIRMWARE.search(model)):
        return int(match.group(1))
    return None


def _parse_device(src: str, data: Mapping[str, Any]) -> Endpoint | None:
    """Parse one ``devices`` entry. Returns None for entries that cannot be used."""
    if _as_bool(data.get("enabled"), True) is False:
        logger.debug("Skipping disabled device: %s", src)
        return None

    interval = data.get("interval")
    if interval is not None:
        try:
            interval = float(interval)
        except (TypeError, ValueError):
            logger.warning("Device %s has an invalid interval %r, using the default", src, interval)
            interval = None

    try:
        port = int(data.get("port", MARSTEK_UDP_PORT))
    except (TypeError, ValueError):
        logger.warning("Device %s has an invalid port %r", src, data.get("port"))
        return None

    model = data.get("model")
    return Endpoint(
        src=src,
        name=str(data.get("name") or src),
        address=str(data["address"]) if data.get("address") else None,
        port=port,
        poll=_as_bool(data.get("poll"), True),
        poll_interval=interval,
        broadcast=_as_bool(data.get("broadcast"), False),
        model=str(model).split(" v")[0] if model else None,
        firmware=parse_firmware(data.get("firmware"), model),
    )


def _parse_account(index: int, data: Mapping[str, Any]) -> CloudAccount | None:
    username = data.get("username")
    if not username:
        logger.warning("Cloud account #%d has no username, skipping", index)
        return None
    password_md5 = data.get("password_md5")
    if not password_md5 and data.get("password"):
        password_md5 = hash_password(str(data["password"]))
    if not password_md5:
        logger.warning("Cloud account %s has no password, skipping", username)
        return None
    devices = data.get("devices")
    return CloudAccount(
        username=str(username),
        password_md5=str(password_md5),
        devices=frozenset(str(d) for d in devices) if devices else None,
    )


class DeviceRegistry:
    """In-memory view of the device file."""

    def __init__(
        self,
        endpoints: Mapping[str, Endpoint] | None = None,
        accounts: list[CloudAccount] | None = None,
        scaling: ScalingTable | None = None,
    ) -> None:
        self._endpoints: dict[str, Endpoint] = dict(endpoints or {})
        self.accounts: list[CloudAccount] = list(accounts or [])
        self.scaling: ScalingTable = scaling or ScalingTable()

    @classmethod
    def from_config(cls, config: Mapping[str, Any] | None) -> DeviceRegistry:
        config = config or {}
        endpoints: dict[str, Endpoint] = {}
        for src, data in (config.get("devices") or {}).items():
            if not isinstance(data, Mapping):
                logger.warning("Device %s entry is not a mapping, skipping", src)
                continue
            endpoint = _parse_device(str(src), data)
            if endpoint is not None:
                endpoints[endpoint.src] = endpoint

        accounts: list[CloudAccount] = []
        cloud = config.get("cloud") or {}
        for index, data in enumerate(cloud.get("accounts") or []):
            if isinstance(data, Mapping) and (account := _parse_account(index, data)) is not None:
                accounts.append(account)

        scaling = ScalingTable.from_config(config.get("scaling"))
        logger.info(
            "Parsed device file: %d local device(s), %d cloud account(s), %d scaling profile(s)",
            len(endpoints),
            len(accounts),
            len(scaling.profiles),
        )
        return cls(endpoints, accounts, scaling)

    @classmethod
    def load(cls, path: Path) -> DeviceRegistry:
        """Parse the YAML device file at ``path``.

        Raises:
            OSError: The file cannot be read
            yaml.YAMLError: The file is not valid YAML

        """
        logger.debug("Parsing device file: %s", path)
        try:
            with path.open() as f:
                config = yaml.safe_load(f)
        except (OSError, yaml.YAMLError):
            logger.exception("Failed to parse device file: %s", path)
            raise
        return cls.from_config(config if isinstance(config, Mapping) else None)

    def to_config(self) -> dict[str, Any]:
        devices: dict[str, Any] = {}
        for endpoint in self._endpoints.values():
            entry: dict[str, Any] = {"name": endpoint.name, "port": endpoint.port, "poll": endpoint.poll}
            if endpoint.address:
                entry["address"] = endpoint.address
            if endpoint.poll_interval is not None:
                entry["interval"] = endpoint.poll_interval
            if endpoint.broadcast:
                entry["broadcast"] = True
            if endpoint.model:
                entry["model"] = endpoint.model
            if endpoint.firmware is not None:
                entry["firmware"] = endpoint.firmware
            devices[endpoint.src] = entry
        config: dict[str, Any] = {"devices": devices}
        if self.accounts:
            config["cloud"] = {
                "accounts": [
                    {
                        "username": a.username,
                        "password_md5": a.password_md5,
                        **({"devices": sorted(a.devices)} if a.devices else {}),
                    }
                    for a in self.accounts
                ],
            }
        if self.scaling.profiles:
            config["scaling"] = self.scaling.to_config()
        return config

    def save(self, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w") as f:
            yaml.safe_dump(self.to_config(), f, sort_keys=False)
        logger.info("Saved device file: %s", path, extra={"devices": len(self._endpoints)})

    def __contains__(self, src: object) -> bool:
        return src in self._endpoints

    def __iter__(self) -> Iterator[Endpoint]:
        return iter(tuple(self._endpoints.values()))

    def __len__(self) -> int:
        return len(self._endpoints)

    def get(self, src: str) -> Endpoint | None:
        return self._endpoints.get(src)

    def poll_target(self, src: str) -> PollTarget | None:
        endpoint = self._endpoints.get(src)
        return endpoint.poll_target() if endpoint is not None else None

    def factors_for(self, endpoint: Endpoint) -> dict[str, float]:
        return self.scaling.factors_for(endpoint.model, endpoint.firmware)

    def add_discovered(self, device: DiscoveredDevice) -> Endpoint:
        """Add a discovered device, or refresh the address of a known one."""
        endpoint = self._endpoints.get(device.src)
        firmware = parse_firmware(device.firmware)
        if endpoint is None:
            endpoint = Endpoint(
                src=device.src,
                name=device.display_name,
                address=device.address,
                port=MARSTEK_UDP_PORT,
                model=device.model,
                firmware=firmware,
            )
            self._endpoints[device.src] = endpoint
            logger.info("Added %s (%s) at %s", endpoint.name, endpoint.src, endpoint.address)
        else:
            endpoint.address = device.address
            endpoint.model = device.model
            if firmware is not None:
                endpoint.firmware = firmware
        return endpoint

    def remove(self, src: str) -> Endpoint | None:
        return self._endpoints.pop(src, None)
