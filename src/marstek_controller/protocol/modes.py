"""Typed builders for ``ES.SetMode`` configuration payloads.

Each builder validates its inputs and produces the exact ``config`` object the
device expects. Validation happens here, before anything reaches the network.

Weekday bitmask: day index 0 (Monday) through 6 (Sunday) maps to bit
``1 << index``; every day is ``127``.
"""

from __future__ import annotations

import math
import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import IntEnum
from typing import Any

from marstek_controller.exceptions import ValidationError

__all__ = [
    "ALL_DAYS",
    "AIMode",
    "AutoMode",
    "ManualMode",
    "ModeConfig",
    "PassiveMode",
    "Weekday",
    "decode_week_set",
    "encode_week_set",
    "manual_disabled",
    "manual_from_start",
]

MANUAL_SLOT_MAX = 9
MANUAL_TEXT_WINDOW_HOURS = 2
_HHMM = re.compile(r"^([01]\d|2[0-3]):([0-5]\d)$")


class Weekday(IntEnum):
    MONDAY = 0
    TUESDAY = 1
    WEDNESDAY = 2
    THURSDAY = 3
    FRIDAY = 4
    SATURDAY = 5
    SUNDAY = 6


ALL_DAYS: frozenset[Weekday] = frozenset(Weekday)


def encode_week_set(days: Iterable[int]) -> int:
    """Fold weekday indices into the device's ``week_set`` bitmask.

    Raises:
        ValidationError: A day is not an integer in 0..6

    """
    mask = 0
    for day in days:
        if isinstance(day, bool) or not isinstance(day, int) or not 0 <= day <= 6:
            raise ValidationError("days", day, "weekday index must be an integer 0 (Monday) to 6 (Sunday)")
        mask |= 1 << day
    return mask


def decode_week_set(mask: int) -> frozenset[Weekday]:
    """Expand a ``week_set`` bitmask into the weekdays it selects."""
    if isinstance(mask, bool) or not isinstance(mask, int) or not 0 <= mask <= 127:
        raise ValidationError("week_set", mask, "bitmask must be an integer 0..127")
    return frozenset(day for day in Weekday if mask & (1 << day))


def _non_negative(field: str, value: object) -> int | float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(field, value, "must be a number")
    if not math.isfinite(value) or value < 0:
        raise ValidationError(field, value, "must be a finite number >= 0")
    return value


def _clock(field: str, value: object) -> str:
    if not isinstance(value, str) or not _HHMM.match(value):
        raise ValidationError(field, value, "must be a 24h time formatted HH:MM")
    return value


class ModeConfig:
    """Base for mode payload builders."""

    mode: str = ""

    def to_config(self) -> dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class AutoMode(ModeConfig):
    mode = "Auto"

    def to_config(self) -> dict[str, Any]:
        return {"mode": self.mode, "auto_cfg": {"enable": 1}}


@dataclass(frozen=True)
class AIMode(ModeConfig):
    mode = "AI"

    def to_config(self) -> dict[str, Any]:
        return {"mode": self.mode, "ai_cfg": {"enable": 1}}


@dataclass(frozen=True)
class ManualMode(ModeConfig):
    """A manual schedule slot.

    Args:
        start_time: ``HH:MM`` start
        end_time: ``HH:MM`` end
        days: Weekday indices the slot applies to
        power: Power setpoint in watts
        enable: Whether the slot is active
        slot: Schedule slot index (``time_num``), 0..9

    """

    start_time: str
    end_time: str
    days: frozenset[int]
    power: int | float
    enable: bool = True
    slot: int = 0
    mode = "Manual"

    def __post_init__(self) -> None:
        _clock("start_time", self.start_time)
        _clock("end_time", self.end_time)
        _non_negative("power", self.power)
        if isinstance(self.slot, bool) or not isinstance(self.slot, int) or not 0 <= self.slot <= MANUAL_SLOT_MAX:
            raise ValidationError("slot", self.slot, f"must be an integer 0..{MANUAL_SLOT_MAX}")
        days = frozenset(self.days)
        # validates every day as a side effect
        _ = encode_week_set(days)
        object.__setattr__(self, "days", days)

    @property
    def week_set(self) -> int:
        return encode_week_set(self.days)

    def to_config(self) -> dict[str, Any]:
        return {
            "mode": self.mode,
            "manual_cfg": {
                "time_num": self.slot,
                "start_time": self.start_time,
                "end_time": self.end_time,
                "week_set": self.week_set,
                "power": self.power,
                "enable": 1 if self.enable else 0,
            },
        }


@dataclass(frozen=True)
class PassiveMode(ModeConfig):
    """Hold ``power`` watts for ``cooldown`` seconds."""

    power: int | float
    cooldown: int | float
    mode = "Passive"

    def __post_init__(self) -> None:
        _non_negative("power", self.power)
        _non_negative("cooldown", self.cooldown)

    def to_config(self) -> dict[str, Any]:
        return {"mode": self.mode, "passive_cfg": {"power": self.power, "cd_time": self.cooldown}}


def manual_from_start(start_time: str, power: int | float, enable: bool = True) -> ManualMode:
    """Manual slot starting at ``start_time`` and lasting two hours, every day."""
    _clock("start_time", start_time)
    hours, minutes = (int(part) for part in start_time.split(":"))
    end_time = f"{(hours + MANUAL_TEXT_WINDOW_HOURS) % 24:02d}:{minutes:02d}"
    return ManualMode(
        start_time=start_time,
        end_time=end_time,
        days=frozenset(ALL_DAYS),
        power=power,
        enable=enable,
    )


def manual_disabled() -> ManualMode:
    """Manual slot that overrides any active schedule with a disabled, zero-power one."""
    return ManualMode(
        start_time="00:01",
        end_time="23:59",
        days=frozenset(ALL_DAYS),
        power=0,
        enable=False,
    )
