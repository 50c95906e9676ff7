"""Error taxonomy for usbmux-client."""

from __future__ import annotations

from enum import IntEnum


class ResultCode(IntEnum):
    """Result numbers reported by the multiplexer daemon."""

    OK = 0
    BAD_COMMAND = 1
    BAD_DEVICE = 2
    CONNECTION_REFUSED = 3
    BAD_VERSION = 6


def describe_result(number: int | None) -> str:
    """Return a readable name for a result number, e.g. ``BAD_DEVICE (2)``."""
    if number is None:
        return "no result"
    try:
        return f"{ResultCode(number).name} ({number})"
    except ValueError:
        return f"unknown result ({number})"


class UsbmuxError(Exception):
    """Base error for usbmux-client."""


class ConnectionFailedError(UsbmuxError):
    """Raised when the daemon cannot be reached."""

    def __init__(self, message: str, address: object | None = None) -> None:
        super().__init__(message)
        self.address = address


class HandshakeError(UsbmuxError):
    """Raised when the Listen handshake is answered with anything but Result 0.

    Attributes:
        message_type: MessageType of the offending response, or None if the
            connection ended before any response arrived
        number: Result number when the response was a Result message
    """

    def __init__(
        self,
        message: str,
        *,
        message_type: str | None = None,
        number: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message_type = message_type
        self.number = number

    @property
    def result_code(self) -> ResultCode | None:
        """The result number as a ResultCode, if it is a known one."""
        if self.number is None:
            return None
        try:
            return ResultCode(self.number)
        except ValueError:
            return None


class TunnelError(HandshakeError):
    """Raised when a Connect request to a device port is rejected."""

    def __init__(
        self,
        message: str,
        *,
        device_id: int,
        port: int,
        message_type: str | None = None,
        number: int | None = None,
    ) -> None:
        super().__init__(message, message_type=message_type, number=number)
        self.device_id = device_id
        self.port = port


class MalformedFrameError(UsbmuxError):
    """Raised when a frame header or payload cannot be decoded."""


class ConnectionClosedError(UsbmuxError):
    """Raised when a connection ends while a response is still expected."""


class LockdownError(UsbmuxError):
    """Raised when a lockdown response carries an ``Error`` field."""

    def __init__(self, error: object) -> None:
        super().__init__(f"Lockdown error: {error}")
        self.error = error


class UnexpectedServiceTypeError(UsbmuxError):
    """Raised when QueryType reports a service other than lockdown."""

    def __init__(self, service_type: object, expected: str) -> None:
        super().__init__(f"Unexpected lockdown service type {service_type!r} (expected {expected!r})")
        self.service_type = service_type
        self.expected = expected


class ClientClosedError(UsbmuxError):
    """Raised when a closed client is used."""
