"""Monitor connection: the long-lived Listen session that tracks devices.

State machine::

    IDLE --ensure_connected()--> CONNECTING --handshake ok--> LISTENING
      ^                              |                            |
      +------ failure ---------------+---- connection lost -------+

While CONNECTING every caller awaits the same task, so one physical
connection attempt serves all of them and they all see its outcome.
Reconnection is on demand: a lost connection returns to IDLE and the next
``ensure_connected()`` starts over.
"""

from __future__ import annotations

import asyncio
from enum import Enum

import structlog

from usbmux_client.config import Config, DaemonAddress
from usbmux_client.errors import (
    ConnectionFailedError,
    HandshakeError,
    MalformedFrameError,
    describe_result,
)
from usbmux_client.frames import ResultMessage, encode_listen_request, read_message
from usbmux_client.registry import DeviceRegistry
from usbmux_client.stream import MuxConnection, open_mux_connection

log = structlog.get_logger()


class ConnectionState(Enum):
    IDLE = "idle"
    CONNECTING = "connecting"
    LISTENING = "listening"


class ConnectionManager:
    """Owns the monitor connection and its dispatch loop for one client."""

    def __init__(self, config: Config, address: DaemonAddress, registry: DeviceRegistry) -> None:
        self.config = config
        self.address = address
        self.registry = registry
        self._state = ConnectionState.IDLE
        self._pending: asyncio.Task[None] | None = None
        self._connection: MuxConnection | None = None
        self._dispatch_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def connection(self) -> MuxConnection | None:
        """The live monitor connection, if any."""
        return self._connection

    async def ensure_connected(self) -> None:
        """Make sure a Listen session is established.

        Raises:
            ConnectionFailedError: If the daemon cannot be reached
            HandshakeError: If the daemon rejects the Listen request
        """
        if self._state is ConnectionState.LISTENING:
            return

        if self._pending is None:
            self._state = ConnectionState.CONNECTING
            self._pending = asyncio.create_task(self._establish())
            self._pending.add_done_callback(self._establish_done)

        # Shielded so one cancelled caller does not cancel the shared attempt
        await asyncio.shield(self._pending)

    async def _establish(self) -> None:
        log.debug("monitor_connecting", address=str(self.address))
        connection = await open_mux_connection(self.address)
        try:
            try:
                await connection.send(encode_listen_request(self.config.protocol))
                response = await read_message(
                    connection.reader, self.config.protocol.max_payload_size
                )
            except OSError as e:
                raise ConnectionFailedError(
                    f"usbmuxd at {self.address} dropped the connection during Listen: {e}",
                    address=self.address,
                ) from e
            _check_listen_response(response)
        except BaseException:
            connection.abort()
            raise

        self._connection = connection
        connection.add_close_callback(self._connection_closed)
        self._dispatch_task = asyncio.create_task(self._dispatch(connection))

        # Devices already attached are announced right after the Result; give
        # those events a moment to land before callers read the registry.
        await asyncio.sleep(self.config.protocol.settle_delay)
        if connection.closed:
            raise ConnectionFailedError(
                f"usbmuxd at {self.address} closed the connection during setup",
                address=self.address,
            )

        self._state = ConnectionState.LISTENING
        log.info("monitor_listening", address=str(self.address), devices=len(self.registry))

    def _establish_done(self, task: asyncio.Task[None]) -> None:
        self._pending = None
        if task.cancelled():
            self._state = ConnectionState.IDLE
            return
        error = task.exception()
        if error is not None:
            self._state = ConnectionState.IDLE
            log.info("monitor_connect_failed", address=str(self.address), error=str(error))

    async def _dispatch(self, connection: MuxConnection) -> None:
        """Apply device events in arrival order until the connection ends."""
        assert connection.reader is not None
        try:
            while True:
                message = await read_message(
                    connection.reader, self.config.protocol.max_payload_size
                )
                if message is None:
                    break
                self.registry.apply(message)
        except MalformedFrameError as e:
            log.warning("monitor_malformed_frame", error=str(e))
        except ConnectionError as e:
            log.info("monitor_connection_error", error=str(e))
        finally:
            log.debug("monitor_dispatch_ended", address=str(self.address))
            connection.close()

    def _connection_closed(self, connection: MuxConnection) -> None:
        if connection is not self._connection:
            return
        self._connection = None
        self.registry.clear()
        if self._state is ConnectionState.LISTENING:
            self._state = ConnectionState.IDLE
        log.info("monitor_disconnected", address=str(self.address))

    async def close(self) -> None:
        """Drop the monitor connection, cancelling any attempt in flight."""
        pending = self._pending
        if pending is not None:
            pending.cancel()
            try:
                await pending
            except (asyncio.CancelledError, Exception):
                pass

        connection = self._connection
        if connection is not None:
            connection.abort()
            await connection.wait_closed()

        dispatch_task = self._dispatch_task
        self._dispatch_task = None
        if dispatch_task is not None:
            dispatch_task.cancel()
            try:
                await dispatch_task
            except asyncio.CancelledError:
                pass

        self.registry.clear()
        self._state = ConnectionState.IDLE


def _check_listen_response(response: object) -> None:
    if response is None:
        raise HandshakeError("usbmuxd closed the connection before answering Listen")
    if not isinstance(response, ResultMessage):
        message_type = type(response).__name__.removesuffix("Message")
        raise HandshakeError(
            f"Unexpected {message_type} message in response to Listen",
            message_type=message_type,
        )
    if response.number != 0:
        raise HandshakeError(
            f"usbmuxd rejected Listen: {describe_result(response.number)}",
            message_type="Result",
            number=response.number,
        )
