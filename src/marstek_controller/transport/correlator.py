"""Request/reply correlation over the fire-and-forget UDP socket."""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Container, Mapping
from typing import Any

from marstek_controller.const import MARSTEK_REQUEST_TIMEOUT, REQUEST_ID_CEILING, REQUEST_ID_RESEED_MAX
from marstek_controller.exceptions import DeviceError, ProtocolError, RequestTimeoutError
from marstek_controller.logging_abstraction import get_logger
from marstek_controller.metrics import record_request, record_request_latency
from marstek_controller.protocol.frames import ErrorReply, encode_request, parse_reply
from marstek_controller.transport.types import PendingRequest
from marstek_controller.transport.udp import RemoteInfo, UdpTransport

__all__ = ["RequestCorrelator", "RequestIdAllocator"]

logger = get_logger(__name__)


class RequestIdAllocator:
    """Incrementing request ids below a 16-bit ceiling.

    On reaching the ceiling the counter restarts from a random value in
    ``[0, reseed_max]``. Ids still in use are skipped.
    """

    def __init__(
        self,
        seed: int | None = None,
        ceiling: int = REQUEST_ID_CEILING,
        reseed_max: int = REQUEST_ID_RESEED_MAX,
        rng: random.Random | None = None,
    ) -> None:
        self._rng = rng or random.Random()  # noqa: S311
        self.ceiling = ceiling
        self.reseed_max = reseed_max
        self._current = seed if seed is not None else self._rng.randint(0, reseed_max)

    def allocate(self, in_use: Container[int] = ()) -> int:
        """Return the next id not contained in ``in_use``."""
        for _ in range(self.ceiling):
            self._current += 1
            if self._current >= self.ceiling:
                self._current = self._rng.randint(0, self.reseed_max)
                continue
            if self._current not in in_use:
                return self._current
        msg = "request id space exhausted"
        raise ProtocolError(msg)


class RequestCorrelator:
    """Turns a datagram into an awaitable reply.

    Each ``request`` registers its own one-shot handler on the shared
    transport, keyed by a fresh id, and settles exactly once: with the
    result, with a ``DeviceError``/``ProtocolError``, or with a
    ``RequestTimeoutError``.
    """

    lp: str = "correlator:"

    def __init__(
        self,
        transport: UdpTransport,
        default_timeout: float = MARSTEK_REQUEST_TIMEOUT,
        allocator: RequestIdAllocator | None = None,
    ) -> None:
        self.transport = transport
        self.default_timeout = default_timeout
        self._allocator = allocator or RequestIdAllocator()
        self._pending: dict[int, PendingRequest] = {}

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def is_pending(self, request_id: int) -> bool:
        return request_id in self._pending

    def next_request_id(self) -> int:
        """Allocate an id for a fire-and-forget message, avoiding pending ones."""
        return self._allocator.allocate(self._pending)

    async def request(
        self,
        method: str,
        params: Mapping[str, Any] | None = None,
        *,
        address: str | None = None,
        port: int | None = None,
        src: str | None = None,
        timeout: float | None = None,
    ) -> dict[str, Any]:
        """Send ``method`` and wait for the reply carrying the same id.

        Args:
            method: RPC method
            params: Method parameters
            address: Unicast destination; broadcast when omitted
            port: Destination port override
            src: Only accept replies from this source tag
            timeout: Seconds to wait (defaults to the correlator default)

        Returns:
            The reply's ``result`` object

        Raises:
            DeviceError: The reply carried an ``error``
            ProtocolError: The matching reply had neither result nor error
            RequestTimeoutError: No matching reply in time
            TransportError: The datagram could not be sent

        """
        lp = f"{self.lp}{method}:"
        wait = self.default_timeout if timeout is None else timeout
        request_id = self._allocator.allocate(self._pending)
        loop = asyncio.get_running_loop()
        pending = PendingRequest(
            request_id=request_id,
            method=method,
            src=src,
            created_at=time.monotonic(),
            timeout=wait,
            future=loop.create_future(),
        )
        self._pending[request_id] = pending

        def on_reply(message: dict[str, Any], _remote: RemoteInfo) -> None:
            if message.get("id") != request_id or pending.future.done():
                return
            if src is not None and message.get("src") != src:
                logger.debug("%s id %s answered by %s, expected %s", lp, request_id, message.get("src"), src)
                return
            try:
                reply = parse_reply(message)
            except ProtocolError as e:
                pending.future.set_exception(e)
                return
            if isinstance(reply, ErrorReply):
                pending.future.set_exception(DeviceError(reply.message, code=reply.code, method=method))
            else:
                pending.future.set_result(reply.result)

        self.transport.on(on_reply)
        try:
            payload = encode_request(request_id, method, params)
            if address:
                await self.transport.send(payload, address, port)
            else:
                await self.transport.broadcast(payload, port)
            try:
                result = await asyncio.wait_for(pending.future, wait)
            except TimeoutError:
                record_request(method, "timeout")
                logger.debug("%s ✗ no reply to id %s within %ss", lp, request_id, wait)
                raise RequestTimeoutError(method, request_id, wait) from None
            except DeviceError:
                record_request(method, "device_error")
                raise
            except ProtocolError:
                record_request(method, "protocol_error")
                raise
            record_request(method, "ok")
            record_request_latency(method, time.monotonic() - pending.created_at)
            logger.debug("%s ✓ reply to id %s", lp, request_id)
            return result
        finally:
            self.transport.off(on_reply)
            _ = self._pending.pop(request_id, None)
            if not pending.future.done():
                _ = pending.future.cancel()

    def cancel_all(self) -> None:
        """Cancel every pending request (teardown)."""
        for pending in tuple(self._pending.values()):
            if not pending.future.done():
                _ = pending.future.cancel()
