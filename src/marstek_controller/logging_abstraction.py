"""Structured logging for the Marstek controller.

Every module logs through ``get_logger(__name__)``. Records carry the active
operation id (see ``correlation``) and an optional ``extra=`` mapping, and are
rendered as JSON lines, human-readable lines, or both.
"""

from __future__ import annotations

import json
import logging
import sys
from collections.abc import Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import cast, override

from marstek_controller.correlation import current_operation_id

__all__ = [
    "HumanReadableFormatter",
    "JSONFormatter",
    "MarstekLogger",
    "enable_debug",
    "get_logger",
]

_LOGGERS: dict[str, MarstekLogger] = {}


def _context_of(record: logging.LogRecord) -> Mapping[str, object] | None:
    extra_data = getattr(record, "extra_data", None)
    if isinstance(extra_data, Mapping) and extra_data:
        return cast("Mapping[str, object]", extra_data)
    return None


class JSONFormatter(logging.Formatter):
    """One JSON object per record."""

    @override
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, object] = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "function": record.funcName,
            "line": record.lineno,
            "message": record.getMessage(),
            "operation_id": current_operation_id(),
        }
        context = _context_of(record)
        if context:
            payload["context"] = dict(context)
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


class HumanReadableFormatter(logging.Formatter):
    """``timestamp level [module:line] [op-id] > message | k=v``"""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s [%(module)s:%(lineno)d] %(operation_id)s > %(message)s",
            datefmt="%m/%d/%y %H:%M:%S",
        )

    @override
    def format(self, record: logging.LogRecord) -> str:
        op_id = current_operation_id()
        record.operation_id = f"[{op_id}]" if op_id else "[-]"
        formatted = super().format(record)
        context = _context_of(record)
        if context:
            formatted = f"{formatted} | " + " | ".join(f"{k}={v}" for k, v in context.items())
        return formatted


class MarstekLogger:
    """Thin wrapper over ``logging.Logger`` that accepts a structured ``extra`` mapping."""

    def __init__(
        self,
        name: str,
        log_format: str = "human",
        json_file: str | Path | None = None,
        human_output: str | None = "stdout",
        debug: bool = False,
    ) -> None:
        """
        Args:
            name: Logger name, normally the module ``__name__``
            log_format: ``"json"``, ``"human"`` or ``"both"``
            json_file: File receiving JSON records (None disables JSON output)
            human_output: ``"stdout"``, ``"stderr"`` or a file path
            debug: Start at DEBUG instead of INFO

        """
        self.name: str = name
        self.logger: logging.Logger = logging.getLogger(name)
        self.log_format: str = log_format
        self.logger.setLevel(logging.DEBUG if debug else logging.INFO)
        if not self.logger.handlers:
            self._configure_handlers(json_file, human_output)

    def _configure_handlers(self, json_file: str | Path | None, human_output: str | None) -> None:
        if self.log_format in ("json", "both") and json_file:
            try:
                json_path = Path(json_file)
                json_path.parent.mkdir(parents=True, exist_ok=True)
                json_handler = logging.FileHandler(json_path, mode="a")
            except OSError as e:
                print(f"Warning: cannot open JSON log file {json_file}: {e}", file=sys.stderr)
            else:
                json_handler.setFormatter(JSONFormatter())
                self.logger.addHandler(json_handler)

        if self.log_format in ("human", "both"):
            target = human_output or "stdout"
            human_handler: logging.Handler
            if target == "stdout":
                human_handler = logging.StreamHandler(sys.stdout)
            elif target == "stderr":
                human_handler = logging.StreamHandler(sys.stderr)
            else:
                try:
                    human_path = Path(target)
                    human_path.parent.mkdir(parents=True, exist_ok=True)
                    human_handler = logging.FileHandler(human_path, mode="a")
                except OSError as e:
                    print(f"Warning: cannot open log file {target}: {e}", file=sys.stderr)
                    human_handler = logging.StreamHandler(sys.stdout)
            human_handler.setFormatter(HumanReadableFormatter())
            self.logger.addHandler(human_handler)

    def _log(self, level: int, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self.logger.log(level, msg, *args, extra={"extra_data": dict(extra)} if extra else None)

    def debug(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.DEBUG, msg, *args, extra=extra)

    def info(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.INFO, msg, *args, extra=extra)

    def warning(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.WARNING, msg, *args, extra=extra)

    def error(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        self._log(logging.ERROR, msg, *args, extra=extra)

    def exception(self, msg: str, *args: object, extra: Mapping[str, object] | None = None) -> None:
        """Log at ERROR with the active exception's traceback."""
        self.logger.exception(msg, *args, extra={"extra_data": dict(extra)} if extra else None)

    def set_level(self, level: int) -> None:
        self.logger.setLevel(level)

    def is_debug(self) -> bool:
        return self.logger.isEnabledFor(logging.DEBUG)


def get_logger(name: str, log_format: str | None = None, json_file: str | Path | None = None) -> MarstekLogger:
    """Get or create the ``MarstekLogger`` for ``name``.

    Args:
        name: Logger name
        log_format: Override ``MARSTEK_LOG_FORMAT``
        json_file: Override ``MARSTEK_LOG_JSON_FILE``

    Returns:
        The cached logger instance for ``name``

    """
    if name in _LOGGERS:
        return _LOGGERS[name]

    from marstek_controller.const import (  # noqa: PLC0415
        MARSTEK_DEBUG,
        MARSTEK_LOG_FORMAT,
        MARSTEK_LOG_HUMAN_OUTPUT,
        MARSTEK_LOG_JSON_FILE,
    )

    instance = MarstekLogger(
        name,
        log_format=log_format or MARSTEK_LOG_FORMAT,
        json_file=json_file or MARSTEK_LOG_JSON_FILE,
        human_output=MARSTEK_LOG_HUMAN_OUTPUT,
        debug=MARSTEK_DEBUG,
    )
    _LOGGERS[name] = instance
    return instance


def enable_debug() -> None:
    """Switch every logger created so far (and the package root) to DEBUG."""
    logging.getLogger("marstek_controller").setLevel(logging.DEBUG)
    for instance in _LOGGERS.values():
        instance.set_level(logging.DEBUG)
