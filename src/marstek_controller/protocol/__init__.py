"""Marstek local API wire format and command payloads."""

from marstek_controller.protocol.frames import (
    ErrorReply,
    ReplyFrame,
    ResultReply,
    decode_datagram,
    encode_request,
    parse_reply,
)
from marstek_controller.protocol.modes import (
    ALL_DAYS,
    AIMode,
    AutoMode,
    ManualMode,
    ModeConfig,
    PassiveMode,
    Weekday,
    decode_week_set,
    encode_week_set,
    manual_disabled,
    manual_from_start,
)

__all__ = [
    "ALL_DAYS",
    "AIMode",
    "AutoMode",
    "ErrorReply",
    "ManualMode",
    "ModeConfig",
    "PassiveMode",
    "ReplyFrame",
    "ResultReply",
    "Weekday",
    "decode_datagram",
    "decode_week_set",
    "encode_request",
    "encode_week_set",
    "manual_disabled",
    "manual_from_start",
    "parse_reply",
]
