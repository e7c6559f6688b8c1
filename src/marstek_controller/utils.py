"""Signal and process helpers."""

from __future__ import annotations

import asyncio
import signal
import sys
from collections.abc import Awaitable, Callable

from marstek_controller.logging_abstraction import get_logger

logger = get_logger(__name__)

MIN_PY_VERSION = (3, 12)


def signal_handler(cleanup: Callable[[], Awaitable[object]], signum: int) -> None:
    """Schedule ``cleanup`` on the running loop when a POSIX signal arrives."""
    logger.info("Marstek Controller: Intercepted signal: %s (%s)", signal.Signals(signum).name, signum)
    loop = asyncio.get_event_loop()
    _ = loop.create_task(_run_cleanup(cleanup))


async def _run_cleanup(cleanup: Callable[[], Awaitable[object]]) -> None:
    logger.info("Marstek Controller: Starting signal cleanup...")
    try:
        _ = await cleanup()
    except Exception:
        logger.exception("Marstek Controller: signal cleanup failed")
    else:
        logger.info("Marstek Controller: Signal cleanup completed")


def check_python_version():
    """Ensure the running interpreter meets the minimum supported version."""
    if sys.version_info < MIN_PY_VERSION:
        version_message = (
            f"Marstek Controller requires Python {MIN_PY_VERSION[0]}.{MIN_PY_VERSION[1]} or newer; "
            f"detected {sys.version_info.major}.{sys.version_info.minor}"
        )
        raise RuntimeError(version_message)
