"""Shared test fixtures for usbmux-client."""

import asyncio
import plistlib
import socket
import struct
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import pytest

from usbmux_client.config import Config, DaemonAddress
from usbmux_client.frames import encode_frame, swap_port

LOCKDOWN_PORT = 62078

DEFAULT_LOCKDOWN_VALUES = {
    "DeviceName": "Test iPhone",
    "DeviceClass": "iPhone",
    "ProductVersion": "16.7.2",
    "UniqueDeviceID": "00008030-001A2B3C4D5E6F70",
}


async def wait_until(condition, timeout=1.0, interval=0.01):
    """Wait until condition() returns True, or timeout."""
    deadline = asyncio.get_event_loop().time() + timeout
    while not condition():
        if asyncio.get_event_loop().time() > deadline:
            raise TimeoutError(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


def mux_frame(payload: dict[str, Any], version: int = 0, tag: int = 1) -> bytes:
    """Encode a plist message the way usbmuxd frames it."""
    return encode_frame(plistlib.dumps(payload), version=version, tag=tag)


def lockdown_frame(payload: dict[str, Any]) -> bytes:
    data = plistlib.dumps(payload)
    return struct.pack(">I", len(data)) + data


def attached(device_id: int, **properties: Any) -> dict[str, Any]:
    props = {
        "ConnectionType": "USB",
        "DeviceID": device_id,
        "LocationID": 0,
        "ProductID": 4776,
        "SerialNumber": "a" * 40,
    }
    props.update(properties)
    return {"MessageType": "Attached", "DeviceID": device_id, "Properties": props}


def detached(device_id: int) -> dict[str, Any]:
    return {"MessageType": "Detached", "DeviceID": device_id}


def _reset(writer: asyncio.StreamWriter) -> None:
    """Drop a TCP connection with RST rather than FIN."""
    sock = writer.get_extra_info("socket")
    sock.setsockopt(socket.SOL_SOCKET, socket.SO_LINGER, struct.pack("ii", 1, 0))
    writer.transport.abort()


@dataclass
class MockConnection:
    """One client connection accepted by MockDaemon."""

    reader: asyncio.StreamReader
    writer: asyncio.StreamWriter
    raw: bytearray = field(default_factory=bytearray)
    requests: list[dict[str, Any]] = field(default_factory=list)
    lockdown_requests: list[dict[str, Any]] = field(default_factory=list)

    async def read_frame(self) -> dict[str, Any] | None:
        try:
            header = await self.reader.readexactly(16)
            (length,) = struct.unpack("<I", header[:4])
            payload = await self.reader.readexactly(length - 16)
        except (asyncio.IncompleteReadError, ConnectionError):
            return None
        self.raw += header + payload
        message = plistlib.loads(payload)
        self.requests.append(message)
        return message

    async def send(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()


class MockDaemon:
    """Scripted usbmuxd stand-in.

    Served on a Unix socket, or on 127.0.0.1 with an ephemeral TCP port
    when ``socket_path`` is None.

    - Listen: answered with Result(listen_result); the connection is then kept
      as a monitor connection that tests push events onto.
    - Connect: answered with Result(connect_result), after ``connect_gate``
      is set when one is given. On success the lockdown port speaks lockdown,
      any other port echoes bytes back.

    Set ``listen_result``/``connect_result`` to None to answer with
    ``reply_instead`` (or nothing at all) rather than a Result. Set
    ``reset_on`` to a MessageType to reset the connection instead of
    answering it (TCP only).
    """

    def __init__(self, socket_path: Path | None = None) -> None:
        self.socket_path = socket_path
        self.port: int | None = None
        self.connections: list[MockConnection] = []
        self.monitors: list[MockConnection] = []
        self.listen_result: int | None = 0
        self.connect_result: int | None = 0
        self.reply_instead: dict[str, Any] | None = None
        self.connect_gate: asyncio.Event | None = None
        self.reset_on: str | None = None
        self.initial_events: list[dict[str, Any]] = []
        self.service_type = "com.apple.mobile.lockdown"
        self.lockdown_values = dict(DEFAULT_LOCKDOWN_VALUES)
        self._server: asyncio.Server | None = None

    @property
    def address(self) -> DaemonAddress:
        if self.socket_path is None:
            return DaemonAddress(host="127.0.0.1", port=self.port)
        return DaemonAddress(socket_path=str(self.socket_path))

    @property
    def listen_count(self) -> int:
        return sum(
            1 for c in self.connections for r in c.requests if r.get("MessageType") == "Listen"
        )

    @property
    def connect_requests(self) -> list[dict[str, Any]]:
        return [r for c in self.connections for r in c.requests if r.get("MessageType") == "Connect"]

    async def start(self) -> None:
        if self.socket_path is None:
            self._server = await asyncio.start_server(self._handle, "127.0.0.1", self.port or 0)
            self.port = self._server.sockets[0].getsockname()[1]
        else:
            self._server = await asyncio.start_unix_server(
                self._handle, path=str(self.socket_path)
            )

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for conn in self.connections:
            conn.writer.close()
        await self._server.wait_closed()
        self._server = None

    async def send_event(self, payload: dict[str, Any]) -> None:
        """Push an event onto the newest monitor connection."""
        await self.monitors[-1].send(mux_frame(payload))

    async def send_raw(self, data: bytes) -> None:
        await self.monitors[-1].send(data)

    def drop_monitors(self) -> None:
        """Reset every monitor connection from the daemon side."""
        for conn in self.monitors:
            conn.writer.transport.abort()

    async def _reply(self, conn: MockConnection, result: int | None) -> bool:
        if result is not None:
            await conn.send(mux_frame({"MessageType": "Result", "Number": result}))
            return result == 0
        if self.reply_instead is not None:
            await conn.send(mux_frame(self.reply_instead))
        return False

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        conn = MockConnection(reader=reader, writer=writer)
        self.connections.append(conn)
        try:
            await self._converse(conn)
        except ConnectionError:
            pass
        finally:
            writer.close()

    async def _converse(self, conn: MockConnection) -> None:
        request = await conn.read_frame()
        if request is None:
            return

        if request["MessageType"] == self.reset_on:
            _reset(conn.writer)
            return

        if request["MessageType"] == "Listen":
            if self.listen_result == 0:
                self.monitors.append(conn)
            if not await self._reply(conn, self.listen_result):
                return
            for event in self.initial_events:
                await conn.send(mux_frame(event))
            # Monitor stays open until either side closes it
            await conn.reader.read()
            return

        if request["MessageType"] == "Connect":
            if self.connect_gate is not None:
                await self.connect_gate.wait()
            if not await self._reply(conn, self.connect_result):
                return
            if swap_port(request["PortNumber"]) == LOCKDOWN_PORT:
                await self._serve_lockdown(conn)
            else:
                await self._serve_echo(conn)

    async def _serve_echo(self, conn: MockConnection) -> None:
        while data := await conn.reader.read(4096):
            await conn.send(data)

    async def _serve_lockdown(self, conn: MockConnection) -> None:
        while True:
            try:
                (length,) = struct.unpack(">I", await conn.reader.readexactly(4))
                request = plistlib.loads(await conn.reader.readexactly(length))
            except (asyncio.IncompleteReadError, ConnectionError):
                return
            conn.lockdown_requests.append(request)
            await conn.send(lockdown_frame(self._lockdown_response(request)))

    def _lockdown_response(self, request: dict[str, Any]) -> dict[str, Any]:
        if request["Request"] == "QueryType":
            return {"Request": "QueryType", "Type": self.service_type}
        if request["Request"] == "GetValue":
            key = request.get("Key")
            if key is None:
                return {"Request": "GetValue", "Value": self.lockdown_values}
            if key not in self.lockdown_values:
                return {"Request": "GetValue", "Key": key, "Error": "MissingValue"}
            return {"Request": "GetValue", "Key": key, "Value": self.lockdown_values[key]}
        return {"Request": request["Request"], "Error": "InvalidRequest"}


@pytest.fixture
def short_tmp_path():
    """Create a short temporary path for Unix sockets.

    macOS has a 104-character limit for Unix socket paths.
    pytest's tmp_path is too long, so we use /tmp directly.
    """
    with tempfile.TemporaryDirectory(dir="/tmp", prefix="um_") as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def mock_daemon(short_tmp_path) -> MockDaemon:
    """An unstarted MockDaemon; tests start and stop it themselves."""
    return MockDaemon(short_tmp_path / "usbmuxd.sock")


@pytest.fixture
def config() -> Config:
    """Default config with no settle delay to keep tests fast."""
    config = Config()
    config.protocol.settle_delay = 0.0
    return config


@pytest.fixture
def tcp_daemon() -> MockDaemon:
    """An unstarted MockDaemon listening on 127.0.0.1."""
    return MockDaemon()
