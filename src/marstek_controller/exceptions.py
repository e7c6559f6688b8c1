"""Exception hierarchy for the Marstek controller.

Every failure the core raises derives from ``MarstekError`` so callers can
catch the whole family, and each carries enough attributes to tell an
unreachable device from a device that said no.
"""

from __future__ import annotations

__all__ = [
    "CloudAuthError",
    "CloudError",
    "CommandRejectedError",
    "DeviceError",
    "MarstekError",
    "ProtocolError",
    "RequestTimeoutError",
    "TransportError",
    "ValidationError",
]


class MarstekError(Exception):
    """Base exception for all controller errors."""


class TransportError(MarstekError):
    """Socket level failure.

    Raised when:
    - The UDP socket cannot be bound
    - A datagram cannot be sent
    - No broadcast address or device address is known for a send

    Attributes:
        reason: Short machine-friendly reason

    """

    def __init__(self, message: str, reason: str = "socket") -> None:
        self.reason: str = reason
        super().__init__(message)


class RequestTimeoutError(MarstekError, TimeoutError):
    """No matching reply arrived before the deadline.

    Attributes:
        method: RPC method that was sent
        request_id: Identifier the reply had to carry
        timeout: Deadline in seconds

    """

    def __init__(self, method: str, request_id: int, timeout: float) -> None:
        self.method: str = method
        self.request_id: int = request_id
        self.timeout: float = timeout
        super().__init__(f"{method} (id={request_id}) timed out after {timeout:g}s")


class ProtocolError(MarstekError):
    """A datagram or reply did not have the expected shape.

    Attributes:
        payload: Offending payload, when available

    """

    def __init__(self, message: str, payload: object = None) -> None:
        self.payload: object = payload
        super().__init__(message)


class DeviceError(MarstekError):
    """The device answered with an error.

    Attributes:
        code: Vendor error code, if the reply carried one
        method: RPC method the error answers

    """

    def __init__(self, message: str, code: int | None = None, method: str | None = None) -> None:
        self.code: int | None = code
        self.method: str | None = method
        detail = f" (code={code})" if code is not None else ""
        super().__init__(f"{message}{detail}")


class CommandRejectedError(DeviceError):
    """The device acknowledged a configuration request with a negative result."""

    def __init__(self, method: str, result: dict[str, object]) -> None:
        self.result: dict[str, object] = result
        super().__init__("device rejected the configuration", method=method)


class ValidationError(MarstekError, ValueError):
    """Caller input failed validation before any network traffic.

    Attributes:
        field: Name of the offending argument
        value: The rejected value

    """

    def __init__(self, field: str, value: object, message: str) -> None:
        self.field: str = field
        self.value: object = value
        super().__init__(f"{field}={value!r}: {message}")


class CloudError(MarstekError):
    """Cloud HTTP call failed.

    Attributes:
        status: HTTP status, when a response was received
        code: Vendor response code, when the body carried one

    """

    def __init__(self, message: str, status: int | None = None, code: str | None = None) -> None:
        self.status: int | None = status
        self.code: str | None = code
        super().__init__(message)


class CloudAuthError(CloudError):
    """Login failed or returned no usable token."""
