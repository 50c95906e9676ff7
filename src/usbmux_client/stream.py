"""Byte-stream connections to the multiplexer daemon.

Every connection (the monitor connection and each tunnel) is a
``MuxConnection``: an asyncio reader/writer pair whose transport reports
``connection_lost`` to registered close callbacks, whatever the cause.
"""

from __future__ import annotations

import asyncio
from typing import Callable

import structlog

from usbmux_client.config import DaemonAddress
from usbmux_client.errors import ConnectionFailedError

log = structlog.get_logger()


async def read_exact(reader: asyncio.StreamReader, n: int) -> bytes | None:
    """Read exactly ``n`` bytes from ``reader``.

    Suspends across partial deliveries without losing bytes already
    buffered; bytes past ``n`` stay queued in the reader for the next call.

    Returns:
        The ``n`` bytes, or None if the stream ended before ``n`` bytes
        became available
    """
    if reader.at_eof():
        return None
    try:
        return await reader.readexactly(n)
    except asyncio.IncompleteReadError as e:
        if e.partial:
            log.debug("stream_truncated", expected=n, received=len(e.partial))
        return None


class _ClosingProtocol(asyncio.StreamReaderProtocol):
    """Stream protocol that notifies its owner when the transport is lost."""

    def __init__(self, reader: asyncio.StreamReader, on_lost: Callable[[], None]) -> None:
        super().__init__(reader)
        self._on_lost = on_lost

    def eof_received(self) -> bool:
        super().eof_received()
        # No half-open connections: once the peer stops sending, close
        return False

    def connection_lost(self, exc: Exception | None) -> None:
        super().connection_lost(exc)
        self._on_lost()


class MuxConnection:
    """One byte-stream connection to the daemon.

    Use ``open_mux_connection`` to create one.
    """

    def __init__(self, address: DaemonAddress) -> None:
        self.address = address
        self.reader: asyncio.StreamReader | None = None
        self.writer: asyncio.StreamWriter | None = None
        self._closed = False
        self._close_callbacks: list[Callable[[MuxConnection], None]] = []

    @property
    def closed(self) -> bool:
        """Whether the underlying transport has gone away."""
        return self._closed

    def add_close_callback(self, callback: Callable[[MuxConnection], None]) -> None:
        """Call ``callback(connection)`` once the connection closes.

        Runs immediately if the connection is already closed.
        """
        if self._closed:
            callback(self)
        else:
            self._close_callbacks.append(callback)

    def _connection_lost(self) -> None:
        if self._closed:
            return
        self._closed = True
        callbacks, self._close_callbacks = self._close_callbacks, []
        for callback in callbacks:
            callback(self)

    async def send(self, data: bytes) -> None:
        """Write ``data`` and wait for the transport to drain.

        Raises:
            ConnectionError: If the connection is closed or the write fails
        """
        if self.writer is None or self._closed or self.writer.is_closing():
            raise ConnectionError("Not connected")
        self.writer.write(data)
        await self.writer.drain()

    def close(self) -> None:
        """Close the connection after flushing buffered writes."""
        if self.writer is not None:
            self.writer.close()

    def abort(self) -> None:
        """Destroy the connection immediately, dropping unsent data."""
        if self.writer is not None:
            self.writer.transport.abort()

    async def wait_closed(self) -> None:
        """Wait until the transport has closed. Errors from a dead peer are ignored."""
        if self.writer is None:
            return
        try:
            await self.writer.wait_closed()
        except (OSError, ConnectionError):
            pass


async def open_mux_connection(address: DaemonAddress) -> MuxConnection:
    """Open a new connection to the daemon at ``address``.

    Raises:
        ConnectionFailedError: If the transport cannot connect
    """
    loop = asyncio.get_running_loop()
    connection = MuxConnection(address)
    reader = asyncio.StreamReader()
    protocol = _ClosingProtocol(reader, connection._connection_lost)

    try:
        if address.is_unix:
            transport, _ = await loop.create_unix_connection(
                lambda: protocol, address.socket_path
            )
        else:
            transport, _ = await loop.create_connection(
                lambda: protocol, address.host, address.port
            )
    except OSError as e:
        log.debug("connection_failed", address=str(address), error=str(e))
        raise ConnectionFailedError(
            f"Could not connect to usbmuxd at {address}: {e}", address=address
        ) from e

    connection.reader = reader
    connection.writer = asyncio.StreamWriter(transport, protocol, reader, loop)
    return connection
