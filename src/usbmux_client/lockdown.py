"""Lockdown property queries over a tunnel."""

from __future__ import annotations

from typing import Any

import structlog

from usbmux_client.config import LockdownConfig, ProtocolConfig
from usbmux_client.errors import (
    ConnectionClosedError,
    MalformedFrameError,
    UnexpectedServiceTypeError,
)
from usbmux_client.frames import (
    GetValueResult,
    GetValuesResult,
    LockdownMessage,
    QueryTypeResult,
    encode_lockdown_message,
    read_lockdown_message,
)
from usbmux_client.stream import MuxConnection
from usbmux_client.tunnels import TunnelManager

log = structlog.get_logger()


class LockdownSession:
    """A lockdown conversation on one tunnel.

    Sessions are cheap and single-use: open one, ask, close it.
    """

    def __init__(
        self,
        connection: MuxConnection,
        config: LockdownConfig,
        max_payload_size: int = ProtocolConfig.max_payload_size,
    ) -> None:
        self.connection = connection
        self.config = config
        self.max_payload_size = max_payload_size

    @classmethod
    async def open(
        cls,
        tunnels: TunnelManager,
        device_id: int,
        config: LockdownConfig,
    ) -> LockdownSession:
        """Tunnel to the lockdown port and confirm the service type.

        Raises:
            UnexpectedServiceTypeError: If the port is not a lockdown service
        """
        connection = await tunnels.create_tunnel(device_id, config.port)
        session = cls(connection, config, tunnels.protocol.max_payload_size)
        try:
            response = await session.request("QueryType")
            if not isinstance(response, QueryTypeResult):
                raise MalformedFrameError(f"Expected QueryType response, got {response!r}")
            if response.type != config.service_type:
                raise UnexpectedServiceTypeError(response.type, config.service_type)
        except BaseException:
            await session.close()
            raise
        return session

    async def request(self, request: str, **fields: Any) -> LockdownMessage:
        """Send one lockdown request and read its response.

        Raises:
            LockdownError: If the device reports an error
            ConnectionClosedError: If the tunnel ends or fails before a response
        """
        payload: dict[str, Any] = {"Label": self.config.label, "Request": request}
        payload.update(fields)
        try:
            await self.connection.send(encode_lockdown_message(payload))
            response = await read_lockdown_message(
                self.connection.reader, self.max_payload_size
            )
        except OSError as e:
            raise ConnectionClosedError(f"Tunnel failed during lockdown {request}: {e}") from e
        if response is None:
            raise ConnectionClosedError(f"Tunnel closed before lockdown answered {request}")
        return response

    async def get_value(self, key: str | None = None) -> Any:
        """Fetch one value, or the whole value dictionary when ``key`` is None."""
        fields = {"Key": key} if key is not None else {}
        response = await self.request("GetValue", **fields)
        if not isinstance(response, (GetValueResult, GetValuesResult)):
            raise MalformedFrameError(f"Expected GetValue response, got {response!r}")
        return response.value

    async def close(self) -> None:
        self.connection.abort()
        await self.connection.wait_closed()


async def query_value(
    tunnels: TunnelManager,
    device_id: int,
    key: str | None,
    config: LockdownConfig,
) -> Any:
    """Open a session, read ``key`` (or all values), and tear the session down."""
    session = await LockdownSession.open(tunnels, device_id, config)
    try:
        log.debug("lockdown_query", device_id=device_id, key=key)
        return await session.get_value(key)
    finally:
        await session.close()
