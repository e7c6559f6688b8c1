"""State-changing requests with bounded retries.

``ES.SetMode`` is the only write the local API offers. A lost datagram or a
garbled reply is retried up to the attempt ceiling; a device that answers
with a negative acknowledgement or an error is taken at its word and not
asked again.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from marstek_controller.const import MARSTEK_COMMAND_ATTEMPTS, MARSTEK_REQUEST_TIMEOUT
from marstek_controller.correlation import operation_context
from marstek_controller.devices.endpoint import Endpoint
from marstek_controller.exceptions import (
    CommandRejectedError,
    DeviceError,
    MarstekError,
    ProtocolError,
    RequestTimeoutError,
    TransportError,
)
from marstek_controller.instrumentation import timed_async
from marstek_controller.logging_abstraction import get_logger
from marstek_controller.metrics import record_command_attempt
from marstek_controller.protocol.modes import (
    AIMode,
    AutoMode,
    ManualMode,
    ModeConfig,
    PassiveMode,
    manual_disabled,
    manual_from_start,
)
from marstek_controller.transport.correlator import RequestCorrelator

__all__ = ["SET_MODE_METHOD", "CommandDispatcher", "is_rejection"]

logger = get_logger(__name__)

SET_MODE_METHOD = "ES.SetMode"

_RETRYABLE: dict[type[MarstekError], str] = {
    RequestTimeoutError: "timeout",
    ProtocolError: "protocol",
    TransportError: "transport",
}


def is_rejection(result: Mapping[str, Any]) -> bool:
    """True when ``result`` carries an explicit negative acknowledgement."""
    return "set_result" in result and not result["set_result"]


class CommandDispatcher:
    """Sends configuration changes through the correlator.

    Args:
        correlator: Shared request correlator
        max_attempts: Attempt ceiling per command
        timeout: Per-attempt reply deadline in seconds

    """

    lp: str = "commands:"

    def __init__(
        self,
        correlator: RequestCorrelator,
        max_attempts: int = MARSTEK_COMMAND_ATTEMPTS,
        timeout: float = MARSTEK_REQUEST_TIMEOUT,
    ) -> None:
        if max_attempts < 1:
            msg = "max_attempts must be at least 1"
            raise ValueError(msg)
        self.correlator = correlator
        self.max_attempts = max_attempts
        self.timeout = timeout

    @timed_async("set_configuration")
    async def set_configuration(self, endpoint: Endpoint, config: ModeConfig | Mapping[str, Any]) -> dict[str, Any]:
        """Apply a mode configuration to ``endpoint``.

        Args:
            endpoint: Target device; must have a known address
            config: A mode builder or an already-built ``config`` object

        Returns:
            The device's result object

        Raises:
            CommandRejectedError: The device answered ``set_result`` false
            DeviceError: The device answered with an error
            RequestTimeoutError: Every attempt went unanswered (last error)
            ProtocolError: The last attempt got a malformed reply
            TransportError: No known address, or the last send failed

        """
        payload = config.to_config() if isinstance(config, ModeConfig) else dict(config)
        with operation_context("cmd"):
            lp = f"{self.lp}set_configuration:"
            if not endpoint.address:
                msg = f"{endpoint.name} has no known address"
                raise TransportError(msg, reason="no_address")

            last_error: MarstekError | None = None
            for attempt in range(1, self.max_attempts + 1):
                try:
                    result = await self.correlator.request(
                        SET_MODE_METHOD,
                        {"id": 0, "config": payload},
                        address=endpoint.address,
                        port=endpoint.port,
                        src=endpoint.src,
                        timeout=self.timeout,
                    )
                except DeviceError:
                    record_command_attempt("device_error")
                    logger.warning("%s ✗ %s answered with an error, not retrying", lp, endpoint.name)
                    raise
                except (RequestTimeoutError, ProtocolError, TransportError) as e:
                    outcome = next(label for kind, label in _RETRYABLE.items() if isinstance(e, kind))
                    record_command_attempt(outcome)
                    last_error = e
                    logger.warning(
                        "%s attempt %d/%d to %s failed: %s",
                        lp,
                        attempt,
                        self.max_attempts,
                        endpoint.name,
                        e,
                        extra={"mode": payload.get("mode"), "outcome": outcome},
                    )
                    continue

                if is_rejection(result):
                    record_command_attempt("rejected")
                    logger.warning("%s ✗ %s rejected %s", lp, endpoint.name, payload.get("mode"))
                    raise CommandRejectedError(SET_MODE_METHOD, result)
                record_command_attempt("ok")
                logger.info(
                    "%s ✓ %s set to %s",
                    lp,
                    endpoint.name,
                    payload.get("mode"),
                    extra={"attempt": attempt},
                )
                return result

            assert last_error is not None
            logger.error("%s ✗ %s gave up after %d attempts", lp, endpoint.name, self.max_attempts)
            raise last_error

    async def set_mode_auto(self, endpoint: Endpoint) -> dict[str, Any]:
        return await self.set_configuration(endpoint, AutoMode())

    async def set_mode_ai(self, endpoint: Endpoint) -> dict[str, Any]:
        return await self.set_configuration(endpoint, AIMode())

    async def set_mode_manual(
        self,
        endpoint: Endpoint,
        start_time: str,
        end_time: str,
        days: frozenset[int],
        power: float,
        enable: bool = True,
    ) -> dict[str, Any]:
        config = ManualMode(start_time=start_time, end_time=end_time, days=days, power=power, enable=enable)
        return await self.set_configuration(endpoint, config)

    async def set_mode_manual_text(
        self,
        endpoint: Endpoint,
        start_time: str,
        power: float,
        enable: bool = True,
    ) -> dict[str, Any]:
        """Two-hour manual slot from ``start_time`` on every day."""
        return await self.set_configuration(endpoint, manual_from_start(start_time, power, enable))

    async def disable_manual_mode(self, endpoint: Endpoint) -> dict[str, Any]:
        return await self.set_configuration(endpoint, manual_disabled())

    async def set_mode_passive(self, endpoint: Endpoint, power: float, cooldown: float) -> dict[str, Any]:
        return await self.set_configuration(endpoint, PassiveMode(power=power, cooldown=cooldown))
