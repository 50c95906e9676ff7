"""Public client for the usbmux daemon.

A ``UsbmuxClient`` owns one monitor connection (device discovery), the
device registry that connection feeds, and every tunnel opened through it.

Example::

    async with UsbmuxClient() as client:
        devices = await client.get_devices()
        name = await client.query_device_value(1, "DeviceName")
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from usbmux_client.config import Config, DaemonAddress
from usbmux_client.errors import ClientClosedError
from usbmux_client.lockdown import query_value
from usbmux_client.monitor import ConnectionManager, ConnectionState
from usbmux_client.registry import DeviceRecord, DeviceRegistry
from usbmux_client.stream import MuxConnection
from usbmux_client.tunnels import TunnelManager

log = structlog.get_logger()


class UsbmuxClient:
    """Async client for device discovery, tunnels and lockdown queries.

    Nothing connects until the first call; ``get_devices()`` reconnects on
    demand after the daemon goes away.
    """

    def __init__(
        self,
        config: Config | None = None,
        *,
        address: DaemonAddress | None = None,
    ) -> None:
        self.config = config or Config()
        self.address = address or self.config.daemon_address()
        self.registry = DeviceRegistry()
        self.monitor = ConnectionManager(self.config, self.address, self.registry)
        self.tunnels = TunnelManager(self.address, self.config.protocol)
        self._closed = False

    async def __aenter__(self) -> UsbmuxClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def state(self) -> ConnectionState:
        """State of the monitor connection."""
        return self.monitor.state

    def _check_open(self) -> None:
        if self._closed:
            raise ClientClosedError("UsbmuxClient is closed")

    async def get_devices(self) -> dict[str, DeviceRecord]:
        """Return the attached devices keyed by device ID string.

        Raises:
            ConnectionFailedError: If the daemon cannot be reached
            HandshakeError: If the daemon rejects the Listen request
        """
        self._check_open()
        await self.monitor.ensure_connected()
        return self.registry.snapshot()

    async def create_device_tunnel(self, device_id: int, port: int) -> MuxConnection:
        """Open a raw byte stream to ``port`` on the device.

        The tunnel is closed along with the client unless closed earlier.

        Raises:
            ConnectionFailedError: If the daemon cannot be reached
            TunnelError: If the daemon refuses the connection
        """
        self._check_open()
        return await self.tunnels.create_tunnel(device_id, port)

    async def query_device_value(self, device_id: int, key: str) -> Any:
        """Read one lockdown value (e.g. ``"DeviceName"``) from the device."""
        self._check_open()
        return await query_value(self.tunnels, device_id, key, self.config.lockdown)

    async def query_all_device_values(self, device_id: int) -> dict[str, Any]:
        """Read the full lockdown value dictionary from the device."""
        self._check_open()
        return await query_value(self.tunnels, device_id, None, self.config.lockdown)

    async def close(self) -> None:
        """Close the monitor connection and every tunnel. Safe to call twice."""
        if self._closed:
            return
        self._closed = True
        await asyncio.gather(self.monitor.close(), self.tunnels.close_all())
        log.debug("client_closed", address=str(self.address))
