"""Async client for usbmuxd: device discovery, tunnels and lockdown queries."""

from usbmux_client.client import UsbmuxClient
from usbmux_client.config import Config, DaemonAddress
from usbmux_client.errors import (
    ClientClosedError,
    ConnectionClosedError,
    ConnectionFailedError,
    HandshakeError,
    LockdownError,
    MalformedFrameError,
    ResultCode,
    TunnelError,
    UnexpectedServiceTypeError,
    UsbmuxError,
)
from usbmux_client.monitor import ConnectionState
from usbmux_client.registry import DeviceRecord
from usbmux_client.stream import MuxConnection

__all__ = [
    "UsbmuxClient",
    "Config",
    "DaemonAddress",
    "ConnectionState",
    "DeviceRecord",
    "MuxConnection",
    "ResultCode",
    "UsbmuxError",
    "ConnectionFailedError",
    "HandshakeError",
    "TunnelError",
    "MalformedFrameError",
    "ConnectionClosedError",
    "LockdownError",
    "UnexpectedServiceTypeError",
    "ClientClosedError",
]
