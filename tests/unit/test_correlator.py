"""Unit tests for request id allocation and reply correlation."""

from __future__ import annotations

import asyncio
import random

import pytest

from marstek_controller.exceptions import DeviceError, ProtocolError, RequestTimeoutError, TransportError
from marstek_controller.transport.correlator import RequestCorrelator, RequestIdAllocator
from tests.helpers.fakes import FakeTransport, reply_to

SRC = "VNSE3-ABCDEF"


class TestRequestIdAllocator:
    """Tests for id allocation below the 16-bit ceiling."""

    def test_ids_increment(self):
        """Ids count up from the seed."""
        allocator = RequestIdAllocator(seed=100)

        assert [allocator.allocate() for _ in range(3)] == [101, 102, 103]

    def test_skips_ids_in_use(self):
        """Ids still pending are never handed out again."""
        allocator = RequestIdAllocator(seed=10)

        assert allocator.allocate(in_use={11, 12}) == 13

    def test_reseeds_at_ceiling(self):
        """Reaching the ceiling restarts from a small random value."""
        allocator = RequestIdAllocator(seed=65533, rng=random.Random(1))

        assert allocator.allocate() == 65534
        wrapped = allocator.allocate()
        assert 0 < wrapped <= 10001

    def test_exhausted_space_raises(self):
        """A full id space is a protocol error, not an endless loop."""
        allocator = RequestIdAllocator(seed=0, ceiling=4, reseed_max=0, rng=random.Random(0))

        with pytest.raises(ProtocolError):
            _ = allocator.allocate(in_use={0, 1, 2, 3})


class TestRequestCorrelator:
    """Tests for matching replies to requests."""

    @pytest.mark.asyncio
    async def test_request_resolves_with_result(self, fake_transport: FakeTransport):
        """The reply carrying the request id settles the request."""
        fake_transport.responder = lambda req, _addr: [(reply_to(req, SRC, {"bat_soc": 87}), "192.168.1.50")]
        correlator = RequestCorrelator(fake_transport, default_timeout=1)

        result = await correlator.request("ES.GetStatus", {"id": 0}, address="192.168.1.50", src=SRC)

        assert result == {"bat_soc": 87}
        assert fake_transport.sent[0][0] == "unicast"
        assert correlator.pending_count == 0
        assert fake_transport.handler_count == 0

    @pytest.mark.asyncio
    async def test_broadcast_without_address(self, fake_transport: FakeTransport):
        """No address means the request goes out as a broadcast."""
        fake_transport.responder = lambda req, _addr: [(reply_to(req, SRC, {"ok": 1}), "192.168.1.50")]
        correlator = RequestCorrelator(fake_transport, default_timeout=1)

        _ = await correlator.request("Marstek.GetDevice")

        assert fake_transport.sent[0][0] == "broadcast"

    @pytest.mark.asyncio
    async def test_concurrent_requests_get_distinct_ids(self, fake_transport: FakeTransport):
        """Concurrent requests never share an id and each gets its own reply."""
        fake_transport.responder = lambda req, _addr: [(reply_to(req, SRC, {"echo": req["id"]}), "192.168.1.50")]
        correlator = RequestCorrelator(fake_transport, default_timeout=1)

        results = await asyncio.gather(
            *(correlator.request("ES.GetStatus", address="192.168.1.50") for _ in range(5)),
        )

        ids = [request["id"] for _, request, _, _ in fake_transport.sent]
        assert len(set(ids)) == 5
        assert [r["echo"] for r in results] == ids

    @pytest.mark.asyncio
    async def test_timeout_raises_request_timeout(self, fake_transport: FakeTransport):
        """An unanswered request raises a timeout that is also a TimeoutError."""
        correlator = RequestCorrelator(fake_transport, default_timeout=0.05)

        with pytest.raises(RequestTimeoutError) as exc_info:
            _ = await correlator.request("ES.GetStatus", address="192.168.1.50")

        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.method == "ES.GetStatus"
        assert correlator.pending_count == 0
        assert fake_transport.handler_count == 0

    @pytest.mark.asyncio
    async def test_error_reply_raises_device_error(self, fake_transport: FakeTransport):
        """A reply with an error field fails the request with DeviceError."""
        fake_transport.responder = lambda req, _addr: [
            ({"id": req["id"], "src": SRC, "error": {"code": -32601, "message": "Method not found"}}, "192.168.1.50"),
        ]
        correlator = RequestCorrelator(fake_transport, default_timeout=1)

        with pytest.raises(DeviceError) as exc_info:
            _ = await correlator.request("ES.Bogus", address="192.168.1.50")

        assert exc_info.value.code == -32601
        assert exc_info.value.method == "ES.Bogus"

    @pytest.mark.asyncio
    async def test_reply_without_result_raises_protocol_error(self, fake_transport: FakeTransport):
        """A matching reply with neither result nor error is a protocol error."""
        fake_transport.responder = lambda req, _addr: [({"id": req["id"], "src": SRC}, "192.168.1.50")]
        correlator = RequestCorrelator(fake_transport, default_timeout=1)

        with pytest.raises(ProtocolError):
            _ = await correlator.request("ES.GetStatus", address="192.168.1.50")

    @pytest.mark.asyncio
    async def test_reply_from_other_source_is_ignored(self, fake_transport: FakeTransport):
        """With ``src`` set, a reply from another device does not settle the request."""
        fake_transport.responder = lambda req, _addr: [
            (reply_to(req, "OTHER-DEVICE", {"wrong": True}), "192.168.1.60"),
            (reply_to(req, SRC, {"right": True}), "192.168.1.50"),
        ]
        correlator = RequestCorrelator(fake_transport, default_timeout=1)

        result = await correlator.request("ES.GetStatus", address="192.168.1.50", src=SRC)

        assert result == {"right": True}

    @pytest.mark.asyncio
    async def test_unrelated_ids_are_ignored(self, fake_transport: FakeTransport):
        """Replies with other ids leave the request pending until it times out."""
        fake_transport.responder = lambda req, _addr: [(reply_to({"id": req["id"] + 1}, SRC, {}), "192.168.1.50")]
        correlator = RequestCorrelator(fake_transport, default_timeout=0.05)

        with pytest.raises(RequestTimeoutError):
            _ = await correlator.request("ES.GetStatus", address="192.168.1.50")

    @pytest.mark.asyncio
    async def test_send_failure_propagates_and_cleans_up(self, fake_transport: FakeTransport):
        """A transport failure surfaces as-is and leaves nothing pending."""
        fake_transport.send_error = TransportError("network unreachable")
        correlator = RequestCorrelator(fake_transport, default_timeout=1)

        with pytest.raises(TransportError):
            _ = await correlator.request("ES.GetStatus", address="192.168.1.50")

        assert correlator.pending_count == 0
        assert fake_transport.handler_count == 0

    def test_next_request_id_avoids_pending(self, fake_transport: FakeTransport):
        """Fire-and-forget ids come from the same allocator."""
        correlator = RequestCorrelator(fake_transport, allocator=RequestIdAllocator(seed=5))

        assert correlator.next_request_id() == 6
        assert not correlator.is_pending(6)
