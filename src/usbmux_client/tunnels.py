"""Raw byte-stream tunnels to device ports."""

from __future__ import annotations

import asyncio

import structlog

from usbmux_client.config import DaemonAddress, ProtocolConfig
from usbmux_client.errors import (
    ClientClosedError,
    ConnectionFailedError,
    TunnelError,
    describe_result,
)
from usbmux_client.frames import ResultMessage, encode_connect_request, read_message
from usbmux_client.stream import MuxConnection, open_mux_connection

log = structlog.get_logger()


class TunnelManager:
    """Opens tunnels and tracks every one still open.

    Each tunnel is its own connection to the daemon, independent of the
    monitor connection. A tunnel leaves the open set as soon as its
    connection closes, for whatever reason. Connections still in their
    Connect handshake are tracked separately so ``close_all()`` reaches
    them too.
    """

    def __init__(self, address: DaemonAddress, protocol: ProtocolConfig) -> None:
        self.address = address
        self.protocol = protocol
        self._tunnels: set[MuxConnection] = set()
        self._pending: set[MuxConnection] = set()
        self._closed = False

    @property
    def open_tunnels(self) -> frozenset[MuxConnection]:
        return frozenset(self._tunnels)

    async def create_tunnel(self, device_id: int, port: int) -> MuxConnection:
        """Connect to ``port`` on device ``device_id``.

        Returns:
            The connection, now a raw pipe to the device port

        Raises:
            ConnectionFailedError: If the daemon cannot be reached or drops
                the connection during the handshake
            TunnelError: If the daemon refuses the Connect request
            ClientClosedError: If ``close_all()`` ran before the tunnel opened
        """
        connection = await open_mux_connection(self.address)
        self._pending.add(connection)
        try:
            self._check_open(device_id, port)
            try:
                await connection.send(encode_connect_request(device_id, port, self.protocol))
                response = await read_message(connection.reader, self.protocol.max_payload_size)
            except OSError as e:
                self._check_open(device_id, port)
                raise ConnectionFailedError(
                    f"usbmuxd at {self.address} dropped the Connect to {device_id}:{port}: {e}",
                    address=self.address,
                ) from e
            self._check_open(device_id, port)
            _check_connect_response(response, device_id, port)
        except BaseException as e:
            connection.abort()
            log.debug("tunnel_failed", device_id=device_id, port=port, error=str(e))
            raise
        finally:
            self._pending.discard(connection)

        self._tunnels.add(connection)
        connection.add_close_callback(self._tunnel_closed)
        log.debug("tunnel_opened", device_id=device_id, port=port)
        return connection

    def _check_open(self, device_id: int, port: int) -> None:
        if self._closed:
            raise ClientClosedError(f"Client closed while opening tunnel to {device_id}:{port}")

    def _tunnel_closed(self, connection: MuxConnection) -> None:
        self._tunnels.discard(connection)

    async def close_all(self) -> None:
        """Destroy every open tunnel and every tunnel still being opened."""
        self._closed = True
        tunnels = list(self._tunnels | self._pending)
        if not tunnels:
            return
        await asyncio.gather(*(_destroy(tunnel) for tunnel in tunnels))
        log.debug("tunnels_closed", count=len(tunnels))


async def _destroy(connection: MuxConnection) -> None:
    connection.abort()
    await connection.wait_closed()


def _check_connect_response(response: object, device_id: int, port: int) -> None:
    if response is None:
        raise TunnelError(
            f"usbmuxd closed the connection before answering Connect to {device_id}:{port}",
            device_id=device_id,
            port=port,
        )
    if not isinstance(response, ResultMessage):
        message_type = type(response).__name__.removesuffix("Message")
        raise TunnelError(
            f"Unexpected {message_type} message in response to Connect to {device_id}:{port}",
            device_id=device_id,
            port=port,
            message_type=message_type,
        )
    if response.number != 0:
        raise TunnelError(
            f"Could not tunnel to device {device_id} port {port}: "
            f"{describe_result(response.number)}",
            device_id=device_id,
            port=port,
            message_type="Result",
            number=response.number,
        )
