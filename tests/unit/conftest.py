"""Shared fixtures for unit tests.

This module provides reusable fixtures for testing Marstek Controller components.
"""

from unittest.mock import AsyncMock, MagicMock

import pytest

from marstek_controller.devices.endpoint import Endpoint
from tests.helpers.fakes import FakeTransport


@pytest.fixture
def fake_transport() -> FakeTransport:
    """Fresh in-memory transport."""
    return FakeTransport()


@pytest.fixture
def endpoint() -> Endpoint:
    """Local battery with a known address."""
    return Endpoint(src="VNSE3-ABCDEF", name="Garage battery", address="192.168.1.50", port=30000)


@pytest.fixture
def mock_sink() -> MagicMock:
    """Mock reading sink (the MQTT bridge in production).

    Returns a MagicMock whose publish methods are AsyncMocks returning True.
    """
    sink: MagicMock = MagicMock()
    sink.publish_readings = AsyncMock(return_value=True)
    sink.publish_availability = AsyncMock(return_value=True)
    return sink
