"""Unit tests for datagram framing and mode payload builders."""

from __future__ import annotations

import json
import math

import pytest

from marstek_controller.exceptions import ProtocolError, ValidationError
from marstek_controller.protocol import (
    ALL_DAYS,
    AIMode,
    AutoMode,
    ErrorReply,
    ManualMode,
    PassiveMode,
    ResultReply,
    Weekday,
    decode_datagram,
    decode_week_set,
    encode_request,
    encode_week_set,
    manual_disabled,
    manual_from_start,
    parse_reply,
)


class TestFrames:
    """Tests for request encoding and reply classification."""

    def test_encode_request_defaults_params(self):
        """Requests without params carry ``{"id": 0}``."""
        assert json.loads(encode_request(42, "ES.GetStatus")) == {
            "id": 42,
            "method": "ES.GetStatus",
            "params": {"id": 0},
        }

    def test_encode_request_is_compact(self):
        """No whitespace between tokens."""
        assert b" " not in encode_request(1, "Bat.GetStatus", {"id": 0})

    def test_decode_requires_source_tag(self):
        """A datagram without a string src is rejected."""
        with pytest.raises(ProtocolError):
            _ = decode_datagram(b'{"id": 1, "src": 5}')

    def test_parse_result_reply(self):
        """A result object yields a ResultReply."""
        reply = parse_reply({"id": 3, "src": "A", "result": {"bat_soc": 50}})

        assert reply == ResultReply(src="A", request_id=3, result={"bat_soc": 50})

    def test_parse_error_reply_with_code(self):
        """Structured errors keep their code and message."""
        reply = parse_reply({"id": 3, "src": "A", "error": {"code": -32602, "message": "Invalid params"}})

        assert isinstance(reply, ErrorReply)
        assert reply.code == -32602
        assert reply.message == "Invalid params"

    def test_parse_plain_error_reply(self):
        """A bare error string is kept as the message."""
        reply = parse_reply({"id": 3, "src": "A", "error": "busy"})

        assert isinstance(reply, ErrorReply)
        assert reply.message == "busy"
        assert reply.code is None

    def test_parse_reply_without_result_or_error(self):
        """Anything else is a protocol error."""
        with pytest.raises(ProtocolError):
            _ = parse_reply({"id": 3, "src": "A", "result": [1, 2]})


class TestWeekSet:
    """Tests for the weekday bitmask."""

    def test_monday_wednesday_friday(self):
        """Day d sets bit 1 << d."""
        assert encode_week_set({Weekday.MONDAY, Weekday.WEDNESDAY, Weekday.FRIDAY}) == 0b10101

    def test_all_days(self):
        """Every day is 127."""
        assert encode_week_set(ALL_DAYS) == 127

    def test_decode_inverts_encode(self):
        """Decoding returns the days that were encoded."""
        days = frozenset({Weekday.TUESDAY, Weekday.SUNDAY})

        assert decode_week_set(encode_week_set(days)) == days

    @pytest.mark.parametrize("day", [-1, 7, True, "1", 1.0])
    def test_invalid_day(self, day: object):
        """Only integers 0..6 are weekdays."""
        with pytest.raises(ValidationError):
            _ = encode_week_set([day])  # type: ignore[list-item]

    def test_decode_out_of_range(self):
        """Masks above 127 are rejected."""
        with pytest.raises(ValidationError):
            _ = decode_week_set(128)


class TestModeBuilders:
    """Tests for ES.SetMode configuration payloads."""

    def test_auto(self):
        """Auto mode payload."""
        assert AutoMode().to_config() == {"mode": "Auto", "auto_cfg": {"enable": 1}}

    def test_ai(self):
        """AI mode payload."""
        assert AIMode().to_config() == {"mode": "AI", "ai_cfg": {"enable": 1}}

    def test_manual(self):
        """Manual mode carries slot, times, bitmask, power and enable flag."""
        config = ManualMode(start_time="08:30", end_time="20:30", days=frozenset({0, 2, 4}), power=800).to_config()

        assert config == {
            "mode": "Manual",
            "manual_cfg": {
                "time_num": 0,
                "start_time": "08:30",
                "end_time": "20:30",
                "week_set": 21,
                "power": 800,
                "enable": 1,
            },
        }

    def test_passive(self):
        """Passive mode maps cooldown to cd_time."""
        assert PassiveMode(power=1200, cooldown=300).to_config() == {
            "mode": "Passive",
            "passive_cfg": {"power": 1200, "cd_time": 300},
        }

    @pytest.mark.parametrize("start_time", ["8:30", "24:00", "12:60", "", None])
    def test_manual_rejects_bad_time(self, start_time: object):
        """Times must be HH:MM on a 24h clock."""
        with pytest.raises(ValidationError) as exc_info:
            _ = ManualMode(start_time=start_time, end_time="10:00", days=frozenset({0}), power=1)  # type: ignore[arg-type]

        assert exc_info.value.field == "start_time"

    @pytest.mark.parametrize("power", [-1, math.nan, math.inf, "100", True])
    def test_rejects_bad_power(self, power: object):
        """Power must be a finite non-negative number."""
        with pytest.raises(ValidationError):
            _ = PassiveMode(power=power, cooldown=10)  # type: ignore[arg-type]

    def test_manual_rejects_bad_day(self):
        """Day indices are validated when the slot is built."""
        with pytest.raises(ValidationError):
            _ = ManualMode(start_time="08:00", end_time="10:00", days=frozenset({9}), power=1)

    def test_manual_rejects_bad_slot(self):
        """Slot index is bounded."""
        with pytest.raises(ValidationError):
            _ = ManualMode(start_time="08:00", end_time="10:00", days=frozenset({1}), power=1, slot=10)

    def test_validation_error_is_value_error(self):
        """Callers catching ValueError see validation failures too."""
        with pytest.raises(ValueError, match="cooldown"):
            _ = PassiveMode(power=1, cooldown=-5)

    def test_manual_from_start_spans_two_hours(self):
        """The text shortcut ends two hours after it starts, every day."""
        mode = manual_from_start("09:15", 500)

        assert mode.end_time == "11:15"
        assert mode.week_set == 127

    def test_manual_from_start_wraps_midnight(self):
        """Late starts wrap past midnight."""
        assert manual_from_start("23:30", 500).end_time == "01:30"

    def test_manual_disabled(self):
        """The disable shortcut is a zero-power disabled slot over the whole day."""
        config = manual_disabled().to_config()["manual_cfg"]

        assert config["start_time"] == "00:01"
        assert config["end_time"] == "23:59"
        assert config["power"] == 0
        assert config["enable"] == 0
        assert config["week_set"] == 127
