"""Operator mode commands received over MQTT.

Commands arrive on ``<topic>/<src>/set/mode`` as JSON, for example::

    {"mode": "manual", "start_time": "08:30", "end_time": "20:30",
     "days": [0, 1, 2, 3, 4], "power": 800, "enable": true}

Every command produces an outcome that tells an unreachable device
(``offline``) apart from one that refused (``rejected``), bad input
(``invalid``) and cloud login trouble (``auth_failed``).
"""

from __future__ import annotations

import json
from collections.abc import Callable, Mapping
from typing import Any

from marstek_controller.commands import CommandDispatcher
from marstek_controller.const import YES_ANSWER
from marstek_controller.devices.endpoint import Endpoint
from marstek_controller.exceptions import (
    CloudAuthError,
    DeviceError,
    MarstekError,
    ProtocolError,
    RequestTimeoutError,
    TransportError,
    ValidationError,
)
from marstek_controller.logging_abstraction import get_logger
from marstek_controller.protocol.modes import (
    AIMode,
    AutoMode,
    ManualMode,
    ModeConfig,
    PassiveMode,
    manual_disabled,
    manual_from_start,
)

__all__ = ["CommandRouter", "build_mode_config", "classify_failure"]

logger = get_logger(__name__)


def _require(payload: Mapping[str, Any], key: str) -> Any:
    if key not in payload:
        raise ValidationError(key, None, "is required")
    return payload[key]


_NO_ANSWER = ("false", "0", "no", "n", "f", "off")


def _as_bool(payload: Mapping[str, Any], key: str, default: bool) -> bool:
    value = payload.get(key, default)
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().casefold()
        if text in YES_ANSWER:
            return True
        if text in _NO_ANSWER:
            return False
    raise ValidationError(key, value, "must be a boolean")


def build_mode_config(payload: Mapping[str, Any]) -> ModeConfig:
    """Build the mode payload named by ``payload["mode"]``.

    Raises:
        ValidationError: Unknown mode, missing field, or invalid value

    """
    mode = str(payload.get("mode", "")).casefold()
    if mode == "auto":
        return AutoMode()
    if mode == "ai":
        return AIMode()
    if mode == "manual":
        days = _require(payload, "days")
        if not isinstance(days, list) or any(isinstance(d, (list, dict)) for d in days):
            raise ValidationError("days", days, "must be a list of weekday indices")
        return ManualMode(
            start_time=_require(payload, "start_time"),
            end_time=_require(payload, "end_time"),
            days=frozenset(days),
            power=_require(payload, "power"),
            enable=_as_bool(payload, "enable", True),
            slot=payload.get("slot", 0),
        )
    if mode == "manual_text":
        return manual_from_start(
            _require(payload, "start_time"),
            _require(payload, "power"),
            _as_bool(payload, "enable", True),
        )
    if mode == "manual_disable":
        return manual_disabled()
    if mode == "passive":
        return PassiveMode(power=_require(payload, "power"), cooldown=_require(payload, "cooldown"))
    raise ValidationError("mode", payload.get("mode"), "unknown mode")


def classify_failure(exc: BaseException) -> str:
    if isinstance(exc, ValidationError):
        return "invalid"
    if isinstance(exc, CloudAuthError):
        return "auth_failed"
    if isinstance(exc, DeviceError):
        return "rejected"
    if isinstance(exc, (TransportError, RequestTimeoutError, ProtocolError)):
        return "offline"
    return "error"


class CommandRouter:
    """Maps ``<topic>/<src>/set/mode`` messages to the command dispatcher.

    Args:
        dispatcher: Command dispatcher
        lookup: Returns the endpoint for a source tag
        topic: Base MQTT topic

    """

    lp: str = "mqtt:router:"

    def __init__(self, dispatcher: CommandDispatcher, lookup: Callable[[str], Endpoint | None], topic: str) -> None:
        self.dispatcher = dispatcher
        self.lookup = lookup
        self.topic = topic

    @property
    def subscription(self) -> str:
        return f"{self.topic}/+/set/mode"

    def device_for_topic(self, topic: str) -> str | None:
        parts = topic.split("/")
        if len(parts) != 4 or parts[0] != self.topic or parts[2:] != ["set", "mode"]:
            return None
        return parts[1]

    async def handle_message(self, topic: str, payload: bytes) -> dict[str, Any] | None:
        """Run the command in ``payload``.

        Returns:
            Outcome to publish on ``<topic>/<src>/command_result``, or None
            when the topic is not a command topic

        """
        lp = f"{self.lp}handle:"
        src = self.device_for_topic(topic)
        if src is None:
            logger.debug("%s ignoring topic %s", lp, topic)
            return None

        try:
            decoded: object = json.loads(payload.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("%s %s: payload is not JSON: %s", lp, src, e)
            return {"device": src, "outcome": "invalid", "error": "payload is not JSON"}
        if not isinstance(decoded, dict):
            return {"device": src, "outcome": "invalid", "error": "payload must be a JSON object"}
        command: dict[str, Any] = decoded

        endpoint = self.lookup(src)
        if endpoint is None:
            logger.warning("%s unknown device %s", lp, src)
            return {"device": src, "mode": command.get("mode"), "outcome": "unknown_device"}

        try:
            config = build_mode_config(command)
            result = await self.dispatcher.set_configuration(endpoint, config)
        except MarstekError as e:
            outcome = classify_failure(e)
            logger.warning("%s %s %s -> %s: %s", lp, src, command.get("mode"), outcome, e)
            return {"device": src, "mode": command.get("mode"), "outcome": outcome, "error": str(e)}
        return {"device": src, "mode": command.get("mode"), "outcome": "ok", "result": result}
