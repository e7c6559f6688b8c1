"""UDP transport, interface lookup and request correlation."""

from marstek_controller.transport.correlator import RequestCorrelator, RequestIdAllocator
from marstek_controller.transport.network import LocalInterface, find_local_interface
from marstek_controller.transport.types import PendingRequest, PollTarget
from marstek_controller.transport.udp import MessageHandler, RemoteInfo, UdpTransport

__all__ = [
    "LocalInterface",
    "MessageHandler",
    "PendingRequest",
    "PollTarget",
    "RemoteInfo",
    "RequestCorrelator",
    "RequestIdAllocator",
    "UdpTransport",
    "find_local_interface",
]
