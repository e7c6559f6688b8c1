"""
Duration logging for slow async operations.

``timed_async`` wraps coroutine functions such as command dispatch and cloud
fetches; durations over ``MARSTEK_PERF_THRESHOLD_MS`` are logged at WARNING,
the rest at DEBUG. Tracking is switched off with ``MARSTEK_PERF_TRACKING=0``.
"""

from __future__ import annotations

import functools
import time
from collections.abc import Awaitable, Callable
from typing import ParamSpec, TypeVar

from marstek_controller.const import MARSTEK_PERF_THRESHOLD_MS, MARSTEK_PERF_TRACKING
from marstek_controller.logging_abstraction import get_logger

__all__ = ["elapsed_ms", "timed_async"]

P = ParamSpec("P")
T = TypeVar("T")

logger = get_logger(__name__)


def elapsed_ms(start: float) -> float:
    """Milliseconds since ``start`` (a ``time.perf_counter()`` reading)."""
    return (time.perf_counter() - start) * 1000


def timed_async(
    operation_name: str | None = None,
    threshold_ms: int | None = None,
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """
    Decorator logging how long an async function took.

    Args:
        operation_name: Label for the log line (defaults to the function name)
        threshold_ms: Override the warning threshold

    Example:
        @timed_async("cloud_fetch_status")
        async def fetch_status(self): ...
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        op_name = operation_name or func.__name__
        limit = MARSTEK_PERF_THRESHOLD_MS if threshold_ms is None else threshold_ms

        @functools.wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            if not MARSTEK_PERF_TRACKING:
                return await func(*args, **kwargs)
            start = time.perf_counter()
            try:
                return await func(*args, **kwargs)
            finally:
                duration = elapsed_ms(start)
                context = {"operation": op_name, "duration_ms": round(duration, 2), "threshold_ms": limit}
                if duration > limit:
                    logger.warning("⏱️ [%s] took %.1fms (threshold %dms)", op_name, duration, limit, extra=context)
                else:
                    logger.debug("⏱️ [%s] took %.1fms", op_name, duration, extra=context)

        return wrapper

    return decorator
