"""Share one in-flight operation between concurrent callers."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from enum import StrEnum
from typing import Generic, TypeVar

__all__ = ["FlightState", "SingleFlight"]

T = TypeVar("T")


class FlightState(StrEnum):
    IDLE = "idle"
    IN_FLIGHT = "in_flight"


class SingleFlight(Generic[T]):
    """IDLE -> IN_FLIGHT -> IDLE.

    The first ``run`` call in IDLE starts the operation; calls made while it is
    IN_FLIGHT await the same task and receive the same result or exception.
    A caller being cancelled does not cancel the shared operation.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._task: asyncio.Task[T] | None = None

    @property
    def state(self) -> FlightState:
        return FlightState.IN_FLIGHT if self._task is not None else FlightState.IDLE

    @property
    def in_flight(self) -> bool:
        return self._task is not None

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        task = self._task
        if task is None:
            task = asyncio.ensure_future(self._execute(operation))
            # the exception is still delivered to every awaiting caller
            task.add_done_callback(lambda t: t.cancelled() or t.exception())
            self._task = task
        return await asyncio.shield(task)

    async def _execute(self, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        finally:
            self._task = None
