"""Adaptive polling of every tracked local device.

One timer serves all devices. Each tick sends the next read-only query from a
rotating list, so a full status picture is assembled over several ticks
instead of flooding the devices with every query at once. The period is the
shortest interval any tracked device asks for, never below a floor.
"""

from __future__ import annotations

import asyncio
import math
import random
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from marstek_controller.const import (
    BATTERY_POLL_MESSAGES,
    MARSTEK_POLL_DEFAULT,
    MARSTEK_POLL_FLOOR,
    MARSTEK_POLL_JITTER_MS,
    MARSTEK_POLL_SEND_GAP,
    POLL_SCHEDULER_TASK_NAME,
)
from marstek_controller.correlation import operation_context
from marstek_controller.exceptions import TransportError
from marstek_controller.logging_abstraction import get_logger
from marstek_controller.metrics import record_poll_interval, record_poll_skipped, record_poll_tick
from marstek_controller.protocol.frames import DEFAULT_PARAMS, encode_request
from marstek_controller.transport.correlator import RequestIdAllocator
from marstek_controller.transport.types import PollTarget
from marstek_controller.transport.udp import UdpTransport

__all__ = [
    "DEFAULT_POLL_MESSAGES",
    "PollMessage",
    "PollScheduler",
    "TickPlan",
    "compute_effective_interval",
    "plan_tick",
]

logger = get_logger(__name__)


@dataclass(frozen=True)
class PollMessage:
    method: str
    broadcast_only: bool = False
    params: Mapping[str, Any] = field(default_factory=lambda: dict(DEFAULT_PARAMS))


DEFAULT_POLL_MESSAGES: tuple[PollMessage, ...] = tuple(
    PollMessage(method, broadcast_only) for method, broadcast_only in BATTERY_POLL_MESSAGES
)


@dataclass(frozen=True)
class TickPlan:
    """Sends one tick will perform."""

    method: str
    broadcast: bool
    unicast: tuple[PollTarget, ...] = ()
    skipped: tuple[str, ...] = ()


def _plausible(value: object) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def compute_effective_interval(
    preferences: Iterable[object],
    floor: float = MARSTEK_POLL_FLOOR,
    default: float = MARSTEK_POLL_DEFAULT,
) -> float:
    """Shortest plausible preference, clamped to ``floor``.

    Preferences that are not positive finite numbers are ignored; with none
    left the ``default`` applies.
    """
    valid = [float(p) for p in preferences if _plausible(p)]  # type: ignore[arg-type]
    if not valid:
        return max(floor, default)
    return max(floor, min(valid))


def plan_tick(message: PollMessage, targets: Iterable[PollTarget]) -> TickPlan:
    """Decide which sends a tick makes for ``message``.

    Broadcast-only messages go out once as a broadcast. Otherwise every target
    with a known address is unicast, targets preferring broadcast share one
    broadcast, and targets with no address are skipped.
    """
    if message.broadcast_only:
        return TickPlan(method=message.method, broadcast=True)
    unicast: list[PollTarget] = []
    skipped: list[str] = []
    broadcast = False
    for target in targets:
        if target.broadcast:
            broadcast = True
        elif target.address:
            unicast.append(target)
        else:
            skipped.append(target.device_id)
    return TickPlan(method=message.method, broadcast=broadcast, unicast=tuple(unicast), skipped=tuple(skipped))


class PollScheduler:
    """Single repeating timer that polls every tracked device.

    Args:
        transport: Shared UDP transport
        directory: Looks up the current ``PollTarget`` for a device id
        messages: Rotating query list
        id_source: Produces request ids; share the correlator's so poll ids
            never collide with pending requests

    """

    lp: str = "poll:"

    def __init__(
        self,
        transport: UdpTransport,
        directory: Callable[[str], PollTarget | None],
        *,
        messages: tuple[PollMessage, ...] = DEFAULT_POLL_MESSAGES,
        floor: float = MARSTEK_POLL_FLOOR,
        default: float = MARSTEK_POLL_DEFAULT,
        jitter_ms: int = MARSTEK_POLL_JITTER_MS,
        send_gap: float = MARSTEK_POLL_SEND_GAP,
        id_source: Callable[[], int] | None = None,
        rng: random.Random | None = None,
    ) -> None:
        if not messages:
            msg = "at least one poll message is required"
            raise ValueError(msg)
        self.transport = transport
        self.directory = directory
        self.messages = messages
        self.floor = floor
        self.default = default
        self.jitter_ms = jitter_ms
        self.send_gap = send_gap
        self._id_source = id_source or RequestIdAllocator().allocate
        self._rng = rng or random.Random()  # noqa: S311
        self._tracked: set[str] = set()
        self._cursor = 0
        self._interval = max(floor, default)
        self._period = self._interval
        self._task: asyncio.Task[None] | None = None
        self._tick_pending = False

    @property
    def tracked(self) -> frozenset[str]:
        return frozenset(self._tracked)

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def interval(self) -> float:
        """Effective interval in seconds, without jitter."""
        return self._interval

    @property
    def period(self) -> float:
        """Interval plus the jitter drawn at the last (re)start."""
        return self._period

    @property
    def cursor(self) -> int:
        return self._cursor

    def _targets(self) -> list[PollTarget]:
        targets: list[PollTarget] = []
        for device_id in sorted(self._tracked):
            target = self.directory(device_id)
            if target is None:
                target = PollTarget(device_id=device_id)
            targets.append(target)
        return targets

    def _recompute(self) -> float:
        self._interval = compute_effective_interval(
            (t.interval for t in self._targets()),
            floor=self.floor,
            default=self.default,
        )
        self._period = self._interval + self._rng.uniform(0, self.jitter_ms) / 1000
        record_poll_interval(self._interval)
        return self._interval

    def start(self, device_id: str) -> None:
        """Track ``device_id``. The first tracked device starts the timer with an immediate tick."""
        lp = f"{self.lp}start:"
        self._tracked.add(device_id)
        if self.running:
            self.update_interval()
            return
        self._recompute()
        logger.info("%s polling every %.1fs", lp, self._interval, extra={"devices": len(self._tracked)})
        self._tick_pending = True
        self._task = asyncio.Task(self._run(immediate=True), name=POLL_SCHEDULER_TASK_NAME)

    def stop(self, device_id: str) -> None:
        """Stop tracking ``device_id``. The timer stops with the last device."""
        self._tracked.discard(device_id)
        if not self._tracked:
            self._cancel()
            logger.info("%s no devices left, polling stopped", self.lp)
            return
        self.update_interval()

    def update_interval(self) -> None:
        """Recompute the period and restart the timer if it is running.

        The tracked set and the message cursor are preserved, and a first
        tick that has not gone out yet is still sent immediately.
        """
        lp = f"{self.lp}update_interval:"
        previous = self._interval
        self._recompute()
        if not self.running:
            return
        logger.info("%s %.1fs -> %.1fs", lp, previous, self._interval)
        self._cancel()
        self._task = asyncio.Task(self._run(immediate=self._tick_pending), name=POLL_SCHEDULER_TASK_NAME)

    def _cancel(self) -> None:
        task, self._task = self._task, None
        if task is not None and not task.done():
            _ = task.cancel()

    def shutdown(self) -> None:
        self._tracked.clear()
        self._tick_pending = False
        self._cancel()

    async def _run(self, immediate: bool) -> None:
        loop = asyncio.get_running_loop()
        if not immediate:
            await asyncio.sleep(self._period)
        while True:
            self._tick_pending = False
            started = loop.time()
            await self._safe_tick()
            await asyncio.sleep(max(0.0, self._period - (loop.time() - started)))

    async def _safe_tick(self) -> None:
        try:
            await self.tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("%s tick failed", self.lp)

    async def tick(self) -> TickPlan:
        """Send the next message in the rotation and advance the cursor."""
        message = self.messages[self._cursor]
        self._cursor = (self._cursor + 1) % len(self.messages)
        plan = plan_tick(message, self._targets())
        with operation_context("poll"):
            lp = f"{self.lp}{plan.method}:"
            record_poll_tick(plan.method)
            if plan.broadcast:
                try:
                    await self.transport.broadcast(encode_request(self._id_source(), message.method, message.params))
                except TransportError as e:
                    logger.warning("%s broadcast failed: %s", lp, e)
            for index, target in enumerate(plan.unicast):
                if index:
                    await asyncio.sleep(self.send_gap)
                try:
                    await self.transport.send(
                        encode_request(self._id_source(), message.method, message.params),
                        target.address,
                        target.port,
                    )
                except TransportError as e:
                    record_poll_skipped("send_failed")
                    logger.warning("%s send to %s failed: %s", lp, target.device_id, e)
            for device_id in plan.skipped:
                record_poll_skipped("no_address")
                logger.info("%s %s has no known address yet, skipping", lp, device_id)
        return plan
