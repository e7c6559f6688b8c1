"""Unit tests for the shared UDP transport."""

from __future__ import annotations

import asyncio
import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from marstek_controller.exceptions import TransportError
from marstek_controller.transport.network import LocalInterface
from marstek_controller.transport.udp import RemoteInfo, UdpTransport

INTERFACE = LocalInterface(name="eth0", address="192.168.1.10", netmask="255.255.255.0")


def _datagram(**fields: Any) -> bytes:
    return json.dumps({"id": 1, "src": "VNSE3-ABCDEF", "result": {}, **fields}).encode()


@pytest.fixture
def transport() -> UdpTransport:
    t = UdpTransport(local_port=0, interface_lookup=lambda: INTERFACE)
    t._interface = INTERFACE
    return t


@pytest.fixture
def open_socket(transport: UdpTransport) -> MagicMock:
    """Pretend the socket is bound."""
    endpoint = MagicMock()
    endpoint.is_closing = MagicMock(return_value=False)
    transport._endpoint = endpoint
    return endpoint


class TestLocalInterface:
    """Tests for subnet broadcast address derivation."""

    def test_broadcast_address(self):
        """The broadcast address follows the netmask."""
        assert INTERFACE.broadcast_address == "192.168.1.255"
        assert LocalInterface("wlan0", "10.1.2.3", "255.255.0.0").broadcast_address == "10.1.255.255"


class TestInboundDispatch:
    """Tests for fan-out of inbound datagrams."""

    def test_valid_message_reaches_every_handler(self, transport: UdpTransport):
        """Each handler receives the decoded message and the sender."""
        first, second = MagicMock(), MagicMock()
        transport.on(first)
        transport.on(second)

        transport._on_datagram(_datagram(), ("192.168.1.50", 30000))

        expected = ({"id": 1, "src": "VNSE3-ABCDEF", "result": {}}, RemoteInfo("192.168.1.50", 30000))
        first.assert_called_once_with(*expected)
        second.assert_called_once_with(*expected)

    def test_self_echo_is_dropped(self, transport: UdpTransport):
        """Datagrams from our own interface address never reach handlers."""
        handler = MagicMock()
        transport.on(handler)

        transport._on_datagram(_datagram(), (INTERFACE.address, 30000))

        handler.assert_not_called()

    @pytest.mark.parametrize(
        "data",
        [
            b"not json at all",
            b"\xff\xfe",
            b"[1, 2, 3]",
            json.dumps({"id": 1, "result": {}}).encode(),
        ],
    )
    def test_malformed_datagrams_are_dropped(self, transport: UdpTransport, data: bytes):
        """Undecodable, non-object or src-less datagrams are dropped silently."""
        handler = MagicMock()
        transport.on(handler)

        transport._on_datagram(data, ("192.168.1.50", 30000))

        handler.assert_not_called()

    def test_failing_handler_does_not_block_others(self, transport: UdpTransport):
        """A raising handler is isolated from the rest."""
        broken = MagicMock(side_effect=RuntimeError("boom"))
        healthy = MagicMock()
        transport.on(broken)
        transport.on(healthy)

        transport._on_datagram(_datagram(), ("192.168.1.50", 30000))

        healthy.assert_called_once()

    def test_handler_removing_itself_during_dispatch(self, transport: UdpTransport):
        """Handlers may unregister while a datagram is being dispatched."""
        later = MagicMock()

        def one_shot(_message: dict[str, Any], _remote: RemoteInfo) -> None:
            transport.off(one_shot)

        transport.on(one_shot)
        transport.on(later)

        transport._on_datagram(_datagram(), ("192.168.1.50", 30000))

        later.assert_called_once()
        assert transport.handler_count == 1

    def test_off_unknown_handler_is_ignored(self, transport: UdpTransport):
        """Removing a handler that was never added is a no-op."""
        transport.off(MagicMock())

        assert transport.handler_count == 0

    @pytest.mark.asyncio
    async def test_async_handler_is_scheduled(self, transport: UdpTransport):
        """Coroutine handlers run as tasks."""
        handler = AsyncMock()
        transport.on(handler)

        transport._on_datagram(_datagram(), ("192.168.1.50", 30000))
        await asyncio.sleep(0)

        handler.assert_awaited_once()


class TestSending:
    """Tests for unicast and broadcast sends."""

    @pytest.mark.asyncio
    async def test_send_without_address_fails_fast(self, transport: UdpTransport):
        """A device with no known address cannot be unicast."""
        with pytest.raises(TransportError) as exc_info:
            await transport.send(b"{}", None)

        assert exc_info.value.reason == "no_address"

    @pytest.mark.asyncio
    async def test_send_uses_default_port(self, transport: UdpTransport, open_socket: MagicMock):
        """Unicast goes to the remote port unless overridden."""
        await transport.send('{"id":1}', "192.168.1.50")
        await transport.send(b"{}", "192.168.1.51", 31000)

        assert open_socket.sendto.call_args_list[0].args == (b'{"id":1}', ("192.168.1.50", 30000))
        assert open_socket.sendto.call_args_list[1].args == (b"{}", ("192.168.1.51", 31000))

    @pytest.mark.asyncio
    async def test_broadcast_targets_subnet(self, transport: UdpTransport, open_socket: MagicMock):
        """Broadcasts go to the interface's subnet broadcast address."""
        await transport.broadcast(b"{}")

        open_socket.sendto.assert_called_once_with(b"{}", ("192.168.1.255", 30000))

    @pytest.mark.asyncio
    async def test_broadcast_without_interface(self, open_socket: MagicMock):
        """No usable interface means broadcasts fail with TransportError."""
        transport = UdpTransport(local_port=0, interface_lookup=lambda: None)
        transport._endpoint = open_socket

        with pytest.raises(TransportError) as exc_info:
            await transport.broadcast(b"{}")

        assert exc_info.value.reason == "no_interface"

    @pytest.mark.asyncio
    async def test_socket_send_error_is_wrapped(self, transport: UdpTransport, open_socket: MagicMock):
        """OS level send failures surface as TransportError."""
        open_socket.sendto.side_effect = OSError("Network is unreachable")

        with pytest.raises(TransportError) as exc_info:
            await transport.send(b"{}", "192.168.1.50")

        assert exc_info.value.reason == "send"

    @pytest.mark.asyncio
    async def test_error_reported_during_sendto_is_raised(self, transport: UdpTransport, open_socket: MagicMock):
        """Errors asyncio routes to error_received while sending fail that send."""
        open_socket.sendto.side_effect = lambda *_: transport._on_socket_error(OSError("Network is unreachable"))

        with pytest.raises(TransportError) as exc_info:
            await transport.send(b"{}", "192.168.1.50")

        assert exc_info.value.reason == "send"
        open_socket.close.assert_not_called()
        assert transport.connected


class TestLifecycle:
    """Tests for binding and teardown."""

    @pytest.mark.asyncio
    async def test_bind_failure_raises_transport_error(self, transport: UdpTransport):
        """A port that cannot be bound is a TransportError with reason 'bind'."""
        transport._interface = None
        loop = asyncio.get_running_loop()
        with (
            patch.object(loop, "create_datagram_endpoint", AsyncMock(side_effect=OSError(98, "Address in use"))),
            pytest.raises(TransportError) as exc_info,
        ):
            await transport.connect()

        assert exc_info.value.reason == "bind"
        assert not transport.connected

    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, transport: UdpTransport):
        """A bound transport does not bind again."""
        loop = asyncio.get_running_loop()
        endpoint = MagicMock()
        endpoint.is_closing = MagicMock(return_value=False)
        create = AsyncMock(return_value=(endpoint, MagicMock()))
        with patch.object(loop, "create_datagram_endpoint", create):
            await transport.connect()
            await transport.connect()

        create.assert_awaited_once()
        assert transport.connected

    def test_destroy_closes_socket_and_clears_handlers(self, transport: UdpTransport, open_socket: MagicMock):
        """Destroy releases the socket and every handler."""
        transport.on(MagicMock())

        transport.destroy()

        open_socket.close.assert_called_once()
        assert transport.handler_count == 0
        assert not transport.connected

    def test_socket_error_keeps_socket_open(self, transport: UdpTransport, open_socket: MagicMock):
        """A stray ICMP error for one datagram does not close the shared socket."""
        transport._on_socket_error(OSError("Connection refused"))

        open_socket.close.assert_not_called()
        assert transport.connected

    def test_close_of_previous_socket_is_ignored(self, transport: UdpTransport, open_socket: MagicMock):
        """Only the current socket's connection_lost clears the endpoint."""
        current = MagicMock()
        transport._protocol = current

        transport._on_socket_closed(MagicMock(), None)
        assert transport.connected

        transport._on_socket_closed(current, None)
        assert not transport.connected

    @pytest.mark.asyncio
    async def test_reconnect_survives_old_connection_lost(self):
        """Disconnect then connect keeps the new socket after the old one finishes closing."""
        transport = UdpTransport(local_port=0, interface_lookup=lambda: None)
        try:
            await transport.connect()
            transport.disconnect()
            await transport.connect()
            await asyncio.sleep(0)
            await asyncio.sleep(0)

            assert transport.connected
        finally:
            transport.destroy()

    @pytest.mark.asyncio
    async def test_unsendable_address_raises_and_stays_connected(self):
        """An address the IPv4 socket cannot reach fails that send only."""
        transport = UdpTransport(local_port=0, interface_lookup=lambda: None)
        try:
            await transport.connect()

            with pytest.raises(TransportError) as exc_info:
                await transport.send(b"{}", "::1", 30000)

            assert exc_info.value.reason == "send"
            await asyncio.sleep(0)
            assert transport.connected
        finally:
            transport.destroy()

    @pytest.mark.asyncio
    async def test_loopback_round_trip(self):
        """A datagram sent to our own bound port comes back through the handlers."""
        transport = UdpTransport(local_port=0, interface_lookup=lambda: None)
        received: asyncio.Future[dict[str, Any]] = asyncio.get_running_loop().create_future()
        transport.on(lambda message, _remote: received.done() or received.set_result(message))
        try:
            await transport.connect()
            assert transport._endpoint is not None
            port = transport._endpoint.get_extra_info("sockname")[1]
            await transport.send(_datagram(id=7), "127.0.0.1", port)

            message = await asyncio.wait_for(received, 2)
        finally:
            transport.destroy()

        assert message["id"] == 7
