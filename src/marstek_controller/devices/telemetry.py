"""Turn raw device results into normalized readings.

Raw values are divided by per-field scaling factors. Factors differ between
models and firmware releases, so they come from a versioned lookup table
loaded from the ``scaling`` section of the device file rather than from code.

Example table:

    scaling:
      version: 1
      profiles:
        - model: VenusE
          min_firmware: 154
          factors:
            bat_capacity: 1000
            total_grid_input_energy: 100
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from marstek_controller.cloud.models import CloudDeviceStatus
from marstek_controller.logging_abstraction import get_logger

__all__ = [
    "LOCAL_FIELDS",
    "ScalingProfile",
    "ScalingTable",
    "charging_state",
    "normalize_cloud_status",
    "normalize_local_result",
]

logger = get_logger(__name__)

# raw result field -> reading name
LOCAL_FIELDS: tuple[tuple[str, str], ...] = (
    ("bat_temp", "temperature"),
    ("bat_capacity", "remaining_energy"),
    ("bat_soc", "battery"),
    ("bat_power", "power"),
    ("total_grid_input_energy", "energy_imported"),
    ("total_grid_output_energy", "energy_exported"),
    ("total_load_energy", "energy_load"),
    ("ongrid_power", "ongrid_power"),
    ("offgrid_power", "offgrid_power"),
    ("pv_power", "pv_power"),
)
_KNOWN_FIELDS = frozenset(raw for raw, _ in LOCAL_FIELDS)


def _numeric(value: object) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value)
        except ValueError:
            return None
    else:
        return None
    return number if math.isfinite(number) else None


def charging_state(power: float) -> str:
    if power > 0:
        return "charging"
    if power < 0:
        return "discharging"
    return "idle"


@dataclass(frozen=True)
class ScalingProfile:
    """Factors for one model from ``min_firmware`` on. Model ``*`` matches any."""

    model: str
    min_firmware: int = 0
    factors: Mapping[str, float] = field(default_factory=dict)

    def matches(self, model: str | None, firmware: int | None) -> bool:
        if self.model != "*" and (model is None or self.model.casefold() != model.casefold()):
            return False
        return (firmware or 0) >= self.min_firmware


class ScalingTable:
    """Versioned factor lookup; the most specific matching profile wins."""

    def __init__(self, profiles: Iterable[ScalingProfile] = (), version: int = 1) -> None:
        self.version = version
        self.profiles: tuple[ScalingProfile, ...] = tuple(profiles)

    @classmethod
    def from_config(cls, data: Mapping[str, Any] | None) -> ScalingTable:
        """Build from the ``scaling`` mapping; malformed profiles are skipped with a warning."""
        if not data:
            return cls()
        profiles: list[ScalingProfile] = []
        for index, raw in enumerate(data.get("profiles") or []):
            if not isinstance(raw, Mapping) or not raw.get("model"):
                logger.warning("scaling profile #%d has no model, skipping", index)
                continue
            factors: dict[str, float] = {}
            for name, factor in (raw.get("factors") or {}).items():
                number = _numeric(factor)
                if name not in _KNOWN_FIELDS or number is None or number == 0:
                    logger.warning("scaling profile #%d: ignoring factor %s=%r", index, name, factor)
                    continue
                factors[name] = number
            try:
                min_firmware = int(raw.get("min_firmware", 0))
            except (TypeError, ValueError):
                logger.warning("scaling profile #%d has an invalid min_firmware, skipping", index)
                continue
            profiles.append(ScalingProfile(model=str(raw["model"]), min_firmware=min_firmware, factors=factors))
        version = data.get("version", 1)
        return cls(profiles, version=int(version) if isinstance(version, int) else 1)

    def to_config(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "profiles": [
                {"model": p.model, "min_firmware": p.min_firmware, "factors": dict(p.factors)} for p in self.profiles
            ],
        }

    def factors_for(self, model: str | None, firmware: int | None) -> dict[str, float]:
        candidates = [p for p in self.profiles if p.matches(model, firmware)]
        if not candidates:
            return {}
        # exact model beats wildcard, then the newest firmware threshold
        best = max(candidates, key=lambda p: (p.model != "*", p.min_firmware))
        return dict(best.factors)


def normalize_local_result(result: Mapping[str, Any], factors: Mapping[str, float] | None = None) -> dict[str, Any]:
    """Map a local API ``result`` object to readings.

    Fields that are absent or not numeric are left out. ``power`` also yields
    ``charging_state``.
    """
    scale = factors or {}
    readings: dict[str, Any] = {}
    for raw_name, reading in LOCAL_FIELDS:
        value = _numeric(result.get(raw_name))
        if value is None:
            continue
        readings[reading] = value / (scale.get(raw_name) or 1)
    if "power" in readings:
        readings["charging_state"] = charging_state(readings["power"])
    return readings


def normalize_cloud_status(status: CloudDeviceStatus) -> dict[str, Any]:
    readings: dict[str, Any] = {}
    if status.soc is not None:
        readings["battery"] = status.soc
    if status.charge is not None:
        readings["charge_power"] = status.charge
    if status.discharge is not None:
        readings["discharge_power"] = status.discharge
    net = status.net_power
    if net is not None:
        readings["power"] = net
        readings["charging_state"] = charging_state(net)
    if status.reported_at is not None:
        readings["reported_at"] = status.reported_at.isoformat()
    return readings
