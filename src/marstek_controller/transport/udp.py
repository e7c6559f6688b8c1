"""Shared UDP socket for the Marstek local API.

One ``UdpTransport`` is constructed per process and handed to every component
that talks to devices. It owns the socket, sends unicast and subnet broadcast
datagrams, and fans every valid inbound message out to the registered
handlers.
"""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable
from typing import Any, NamedTuple, override

from marstek_controller.const import MARSTEK_LOCAL_PORT, MARSTEK_UDP_PORT
from marstek_controller.exceptions import ProtocolError, TransportError
from marstek_controller.logging_abstraction import get_logger
from marstek_controller.metrics import record_datagram_recv, record_datagram_sent, record_handler_error
from marstek_controller.protocol.frames import decode_datagram
from marstek_controller.transport.network import LocalInterface, find_local_interface

__all__ = ["MessageHandler", "RemoteInfo", "UdpTransport"]

logger = get_logger(__name__)


class RemoteInfo(NamedTuple):
    address: str
    port: int


MessageHandler = Callable[[dict[str, Any], RemoteInfo], object]


class _DatagramProtocol(asyncio.DatagramProtocol):
    """Forwards asyncio socket callbacks to the owning transport."""

    def __init__(self, owner: UdpTransport) -> None:
        self._owner = owner

    @override
    def datagram_received(self, data: bytes, addr: tuple[str | Any, int]) -> None:
        self._owner._on_datagram(data, addr)

    @override
    def error_received(self, exc: Exception) -> None:
        self._owner._on_socket_error(exc)

    @override
    def connection_lost(self, exc: Exception | None) -> None:
        self._owner._on_socket_closed(self, exc)


class UdpTransport:
    """UDP endpoint shared by every local device.

    Args:
        local_port: Port to bind on all interfaces (0 for an ephemeral port)
        remote_port: Default destination port
        interface_lookup: Returns the interface used for broadcasts and
            self-echo filtering

    """

    lp: str = "udp:"

    def __init__(
        self,
        local_port: int = MARSTEK_LOCAL_PORT,
        remote_port: int = MARSTEK_UDP_PORT,
        interface_lookup: Callable[[], LocalInterface | None] = find_local_interface,
    ) -> None:
        self.local_port: int = local_port
        self.remote_port: int = remote_port
        self._interface_lookup = interface_lookup
        self._interface: LocalInterface | None = None
        self._endpoint: asyncio.DatagramTransport | None = None
        self._protocol: asyncio.DatagramProtocol | None = None
        self._sending = False
        self._send_error: Exception | None = None
        self._handlers: list[MessageHandler] = []
        self._handler_tasks: set[asyncio.Task[Any]] = set()
        self._connect_lock = asyncio.Lock()

    @property
    def connected(self) -> bool:
        return self._endpoint is not None and not self._endpoint.is_closing()

    @property
    def local_address(self) -> str | None:
        return self._interface.address if self._interface else None

    @property
    def handler_count(self) -> int:
        return len(self._handlers)

    async def connect(self) -> None:
        """Bind the socket. Safe to call repeatedly.

        Raises:
            TransportError: The port could not be bound

        """
        if self.connected:
            return
        lp = f"{self.lp}connect:"
        async with self._connect_lock:
            if self.connected:
                return
            self._interface = self._interface_lookup()
            if self._interface is None:
                logger.warning("%s no IPv4 interface found, broadcasts will fail", lp)
            loop = asyncio.get_running_loop()
            try:
                endpoint, protocol = await loop.create_datagram_endpoint(
                    lambda: _DatagramProtocol(self),
                    local_addr=("0.0.0.0", self.local_port),  # noqa: S104
                    allow_broadcast=True,
                )
            except OSError as e:
                logger.error("%s ✗ cannot bind UDP port %s: %s", lp, self.local_port, e)
                raise TransportError(f"cannot bind UDP port {self.local_port}: {e}", reason="bind") from e
            self._endpoint = endpoint
            self._protocol = protocol
            logger.info(
                "%s ✓ listening",
                lp,
                extra={
                    "port": self.local_port,
                    "local_address": self.local_address,
                    "broadcast_address": self._interface.broadcast_address if self._interface else None,
                },
            )

    async def send(self, message: bytes | str, address: str | None, port: int | None = None) -> None:
        """Unicast ``message`` to ``address``.

        Raises:
            TransportError: No address, or the socket refused the datagram

        """
        if not address:
            raise TransportError("no destination address", reason="no_address")
        await self._transmit(message, address, port or self.remote_port, kind="unicast")

    async def broadcast(self, message: bytes | str, port: int | None = None) -> None:
        """Send ``message`` to the subnet broadcast address of the local interface.

        Raises:
            TransportError: No usable interface, or the send failed

        """
        await self.connect()
        if self._interface is None:
            self._interface = self._interface_lookup()
        if self._interface is None:
            record_datagram_sent("broadcast", "no_interface")
            raise TransportError("no IPv4 interface to broadcast on", reason="no_interface")
        await self._transmit(message, self._interface.broadcast_address, port or self.remote_port, kind="broadcast")

    async def _transmit(self, message: bytes | str, address: str, port: int, kind: str) -> None:
        lp = f"{self.lp}{kind}:"
        await self.connect()
        payload = message.encode("utf-8") if isinstance(message, str) else message
        endpoint = self._endpoint
        if endpoint is None or endpoint.is_closing():
            record_datagram_sent(kind, "closed")
            raise TransportError("socket is closed", reason="closed")
        # asyncio reports most sendto failures through error_received, not by raising
        self._sending = True
        self._send_error = None
        try:
            endpoint.sendto(payload, (address, port))
        except OSError as e:
            error: Exception | None = e
        else:
            error = self._send_error
        finally:
            self._sending = False
            self._send_error = None
        if error is not None:
            record_datagram_sent(kind, "error")
            logger.warning("%s ✗ send to %s:%s failed: %s", lp, address, port, error)
            raise TransportError(f"send to {address}:{port} failed: {error}", reason="send") from error
        record_datagram_sent(kind, "ok")
        logger.debug("%s → %s:%s %s", lp, address, port, payload)

    def on(self, handler: MessageHandler) -> None:
        """Register ``handler(message, remote)`` for every valid inbound message."""
        self._handlers.append(handler)

    def off(self, handler: MessageHandler) -> None:
        """Remove a handler. Unknown handlers are ignored."""
        try:
            self._handlers.remove(handler)
        except ValueError:
            pass

    def _on_datagram(self, data: bytes, addr: tuple[str | Any, int]) -> None:
        lp = f"{self.lp}recv:"
        remote = RemoteInfo(str(addr[0]), int(addr[1]))
        if self._interface is not None and remote.address == self._interface.address:
            record_datagram_recv("self_echo")
            return
        try:
            message = decode_datagram(data)
        except ProtocolError as e:
            record_datagram_recv("malformed")
            logger.warning("%s dropping datagram from %s: %s", lp, remote.address, e)
            return
        record_datagram_recv("ok")
        logger.debug("%s ← %s:%s %s", lp, remote.address, remote.port, message)

        # handlers may register or remove handlers while we iterate
        for handler in tuple(self._handlers):
            try:
                outcome = handler(message, remote)
            except Exception:
                record_handler_error()
                logger.exception("%s handler %r failed", lp, handler)
                continue
            if inspect.isawaitable(outcome):
                task = asyncio.ensure_future(outcome)
                self._handler_tasks.add(task)
                task.add_done_callback(self._handler_task_done)

    def _handler_task_done(self, task: asyncio.Task[Any]) -> None:
        self._handler_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            record_handler_error()
            logger.error("%s async handler failed: %r", self.lp, exc)

    def _on_socket_error(self, exc: Exception) -> None:
        if self._sending:
            self._send_error = exc
            return
        # per-datagram error (ICMP unreachable etc.); the socket stays open
        record_datagram_recv("socket_error")
        logger.warning("%s socket error: %s", self.lp, exc)

    def _on_socket_closed(self, protocol: asyncio.DatagramProtocol, exc: Exception | None) -> None:
        if protocol is not self._protocol:
            return
        if exc is not None:
            logger.warning("%s socket closed: %s", self.lp, exc)
        self._endpoint = None
        self._protocol = None

    def disconnect(self) -> None:
        """Close the socket. The next send binds again."""
        endpoint, self._endpoint = self._endpoint, None
        self._protocol = None
        if endpoint is not None and not endpoint.is_closing():
            endpoint.close()
            logger.debug("%s socket closed", self.lp)

    def destroy(self) -> None:
        """Close the socket and forget every handler."""
        self.disconnect()
        self._handlers.clear()
        for task in tuple(self._handler_tasks):
            if not task.done():
                _ = task.cancel()
        self._handler_tasks.clear()
