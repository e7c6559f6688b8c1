"""In-memory fakes shared by the unit tests."""

from __future__ import annotations

import asyncio
import inspect
import json
from collections.abc import Callable
from typing import Any

from marstek_controller.exceptions import TransportError
from marstek_controller.transport.udp import RemoteInfo

JSONDict = dict[str, Any]
Responder = Callable[[JSONDict, str | None], list[tuple[JSONDict, str]] | None]


class FakeTransport:
    """Stand-in for ``UdpTransport``.

    Every sent datagram is decoded and recorded in ``sent``. When a
    ``responder`` is set it is called with each request and the destination
    address; the ``(reply, from_address)`` pairs it returns are delivered to
    the registered handlers on the next loop iteration.
    """

    def __init__(self) -> None:
        self.handlers: list[Callable[..., object]] = []
        self.sent: list[tuple[str, JSONDict, str | None, int | None]] = []
        self.responder: Responder | None = None
        self.send_error: TransportError | None = None
        self.local_port = 30000
        self.destroyed = False

    def on(self, handler: Callable[..., object]) -> None:
        self.handlers.append(handler)

    def off(self, handler: Callable[..., object]) -> None:
        if handler in self.handlers:
            self.handlers.remove(handler)

    @property
    def handler_count(self) -> int:
        return len(self.handlers)

    async def connect(self) -> None:
        return None

    async def send(self, message: bytes, address: str | None, port: int | None = None) -> None:
        if not address:
            msg = "no destination address"
            raise TransportError(msg, reason="no_address")
        self._record("unicast", message, address, port)

    async def broadcast(self, message: bytes, port: int | None = None) -> None:
        self._record("broadcast", message, None, port)

    def _record(self, kind: str, message: bytes, address: str | None, port: int | None) -> None:
        if self.send_error is not None:
            raise self.send_error
        request: JSONDict = json.loads(message)
        self.sent.append((kind, request, address, port))
        if self.responder is not None:
            loop = asyncio.get_running_loop()
            for reply, from_address in self.responder(request, address) or []:
                _ = loop.call_soon(self.deliver, reply, from_address)

    def deliver(self, message: JSONDict, address: str = "192.168.1.50", port: int = 30000) -> None:
        for handler in tuple(self.handlers):
            result = handler(message, RemoteInfo(address, port))
            if inspect.isawaitable(result):
                _ = asyncio.ensure_future(result)

    def methods(self) -> list[str]:
        return [request["method"] for _, request, _, _ in self.sent]

    def destroy(self) -> None:
        self.destroyed = True
        self.handlers.clear()


def reply_to(request: JSONDict, src: str, result: JSONDict) -> JSONDict:
    """Build a device reply for ``request``."""
    return {"id": request["id"], "src": src, "result": result}
