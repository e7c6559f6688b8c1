"""Marstek cloud API client."""

from marstek_controller.cloud.api import CloudSession, CloudSessionRegistry, hash_password
from marstek_controller.cloud.models import CloudDevice, CloudDeviceStatus, CloudToken
from marstek_controller.cloud.single_flight import FlightState, SingleFlight

__all__ = [
    "CloudDevice",
    "CloudDeviceStatus",
    "CloudSession",
    "CloudSessionRegistry",
    "CloudToken",
    "FlightState",
    "SingleFlight",
    "hash_password",
]
