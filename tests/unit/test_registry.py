"""Unit tests for the YAML device registry."""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from marstek_controller.cloud.api import hash_password
from marstek_controller.devices.registry import DeviceRegistry, parse_firmware
from marstek_controller.discovery import DiscoveredDevice
from marstek_controller.transport.types import PollTarget

DEVICE_FILE = """
devices:
  VNSE3-ABCDEF:
    name: Garage battery
    address: 192.168.1.50
    interval: 60
    model: VenusE
    firmware: 154
  VNSE3-000001:
    broadcast: yes
    poll: "false"
  VNSE3-DISABLED:
    enabled: false
  VNSE3-BADPORT:
    port: not-a-port
cloud:
  accounts:
    - username: me@example.com
      password: hunter2
      devices: [2834958029834958023]
    - password_md5: abc
scaling:
  version: 1
  profiles:
    - model: VenusE
      min_firmware: 154
      factors:
        bat_capacity: 1000
"""


@pytest.fixture
def device_file(tmp_path: Path) -> Path:
    path = tmp_path / "devices.yaml"
    _ = path.write_text(DEVICE_FILE)
    return path


class TestParseFirmware:
    """Tests for firmware version parsing."""

    @pytest.mark.parametrize(
        ("firmware", "model", "expected"),
        [
            (154, None, 154),
            ("154", None, 154),
            (None, "VenusE v153", 153),
            ("beta", "VenusE", None),
            (None, None, None),
        ],
    )
    def test_parse(self, firmware: object, model: object, expected: int | None):
        assert parse_firmware(firmware, model) == expected


class TestDeviceRegistry:
    """Tests for loading, editing and saving the device file."""

    def test_load(self, device_file: Path):
        """Usable devices, accounts and scaling profiles are loaded."""
        registry = DeviceRegistry.load(device_file)

        assert len(registry) == 2
        garage = registry.get("VNSE3-ABCDEF")
        assert garage is not None
        assert garage.name == "Garage battery"
        assert garage.poll_interval == 60
        assert garage.firmware == 154
        quiet = registry.get("VNSE3-000001")
        assert quiet is not None
        assert quiet.broadcast is True
        assert quiet.poll is False
        assert "VNSE3-DISABLED" not in registry

    def test_cloud_accounts(self, device_file: Path):
        """Plain passwords are hashed; accounts without a username are dropped."""
        registry = DeviceRegistry.load(device_file)

        assert len(registry.accounts) == 1
        account = registry.accounts[0]
        assert account.password_md5 == hash_password("hunter2")
        assert account.devices == frozenset({"2834958029834958023"})

    def test_factors_for_endpoint(self, device_file: Path):
        registry = DeviceRegistry.load(device_file)
        garage = registry.get("VNSE3-ABCDEF")
        assert garage is not None

        assert registry.factors_for(garage) == {"bat_capacity": 1000}

    def test_poll_target(self, device_file: Path):
        registry = DeviceRegistry.load(device_file)

        assert registry.poll_target("VNSE3-ABCDEF") == PollTarget(
            device_id="VNSE3-ABCDEF",
            interval=60,
            broadcast=False,
            address="192.168.1.50",
            port=30000,
        )
        assert registry.poll_target("UNKNOWN") is None

    def test_empty_file(self, tmp_path: Path):
        path = tmp_path / "devices.yaml"
        _ = path.write_text("")

        assert len(DeviceRegistry.load(path)) == 0

    def test_invalid_yaml_raises(self, tmp_path: Path):
        path = tmp_path / "devices.yaml"
        _ = path.write_text("devices: [unclosed")

        with pytest.raises(yaml.YAMLError):
            _ = DeviceRegistry.load(path)

    def test_add_discovered_and_save(self, device_file: Path, tmp_path: Path):
        """Discovered devices are added or refreshed and survive a save/load cycle."""
        registry = DeviceRegistry.load(device_file)
        _ = registry.add_discovered(
            DiscoveredDevice(src="VNSE3-NEW", model="VenusC", firmware="120", address="192.168.1.77", port=50001),
        )
        refreshed = registry.add_discovered(
            DiscoveredDevice(src="VNSE3-ABCDEF", model="VenusE", firmware="160", address="192.168.1.99", port=50002),
        )
        assert refreshed.name == "Garage battery"
        assert refreshed.address == "192.168.1.99"
        assert refreshed.firmware == 160
        assert refreshed.port == 30000

        out = tmp_path / "nested" / "saved.yaml"
        registry.save(out)
        reloaded = DeviceRegistry.load(out)

        new = reloaded.get("VNSE3-NEW")
        assert new is not None
        assert new.name == "VenusC v120"
        assert new.address == "192.168.1.77"
        assert new.port == 30000
        assert reloaded.get("VNSE3-ABCDEF").address == "192.168.1.99"  # type: ignore[union-attr]
        assert reloaded.accounts == registry.accounts
        assert reloaded.factors_for(new) == {}

    def test_remove(self, device_file: Path):
        registry = DeviceRegistry.load(device_file)

        removed = registry.remove("VNSE3-ABCDEF")

        assert removed is not None
        assert "VNSE3-ABCDEF" not in registry
        assert registry.remove("VNSE3-ABCDEF") is None
