"""Wire framing for the multiplexer and lockdown protocols.

Multiplexer frame: 16-byte little-endian header (length, version, type,
tag) followed by an XML plist payload. ``length`` counts the header.

Lockdown frame: 4-byte big-endian payload length followed by a plist
payload. Lockdown frames travel over a tunnel, after the multiplexer has
stepped aside.
"""

from __future__ import annotations

import asyncio
import plistlib
import struct
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Union
from xml.parsers.expat import ExpatError

from usbmux_client.config import ProtocolConfig
from usbmux_client.errors import LockdownError, MalformedFrameError
from usbmux_client.stream import read_exact

HEADER = struct.Struct("<IIII")
HEADER_SIZE = HEADER.size
LOCKDOWN_HEADER = struct.Struct(">I")


class PacketType(IntEnum):
    """Header ``type`` field values."""

    CONNECT = 2  # Legacy binary connect request
    PLIST = 8


# ─────────────────────────────────────────────────────────────────────────────
# Messages
# ─────────────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ResultMessage:
    number: int


@dataclass(frozen=True)
class AttachedMessage:
    device_id: int
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class DetachedMessage:
    device_id: int


@dataclass(frozen=True)
class PairedMessage:
    device_id: int


MuxMessage = Union[ResultMessage, AttachedMessage, DetachedMessage, PairedMessage]


@dataclass(frozen=True)
class QueryTypeResult:
    type: Any


@dataclass(frozen=True)
class GetValueResult:
    key: str
    value: Any


@dataclass(frozen=True)
class GetValuesResult:
    value: Any


LockdownMessage = Union[QueryTypeResult, GetValueResult, GetValuesResult]


# ─────────────────────────────────────────────────────────────────────────────
# Plist payloads
# ─────────────────────────────────────────────────────────────────────────────


def _dump_plist(payload: dict[str, Any]) -> bytes:
    return plistlib.dumps(payload, fmt=plistlib.FMT_XML, sort_keys=False)


def _load_plist(data: bytes) -> dict[str, Any]:
    try:
        payload = plistlib.loads(data)
    except (ValueError, ExpatError) as e:
        raise MalformedFrameError(f"Invalid plist payload: {e}") from e
    if not isinstance(payload, dict):
        raise MalformedFrameError(
            f"Plist payload must be a dictionary, got {type(payload).__name__}"
        )
    return payload


def _require(payload: dict[str, Any], key: str) -> Any:
    if key not in payload:
        raise MalformedFrameError(f"Message is missing {key!r}: {payload!r}")
    return payload[key]


# ─────────────────────────────────────────────────────────────────────────────
# Multiplexer framing
# ─────────────────────────────────────────────────────────────────────────────


def encode_frame(
    payload: bytes,
    *,
    version: int,
    tag: int,
    packet_type: int = PacketType.PLIST,
) -> bytes:
    """Prefix ``payload`` with a 16-byte multiplexer header."""
    return HEADER.pack(HEADER_SIZE + len(payload), version, packet_type, tag) + payload


def encode_message(payload: dict[str, Any], protocol: ProtocolConfig) -> bytes:
    """Serialize a plist message into a multiplexer frame."""
    return encode_frame(
        _dump_plist(payload),
        version=protocol.header_version,
        tag=protocol.tag,
    )


def encode_listen_request(protocol: ProtocolConfig) -> bytes:
    return encode_message(
        {
            "MessageType": "Listen",
            "ClientVersionString": protocol.client_version_string,
            "ProgName": protocol.prog_name,
        },
        protocol,
    )


def swap_port(port: int) -> int:
    """Byte-swap a 16-bit port number.

    The daemon reads PortNumber in network byte order. Writing the port
    little-endian and reading it back big-endian yields the value to send.
    The operation is its own inverse.
    """
    return struct.unpack(">H", struct.pack("<H", port))[0]


def encode_connect_request(device_id: int, port: int, protocol: ProtocolConfig) -> bytes:
    """Build the Connect request that turns a fresh connection into a tunnel."""
    return encode_message(
        {
            "MessageType": "Connect",
            "ClientVersionString": protocol.client_version_string,
            "ProgName": protocol.prog_name,
            "DeviceID": device_id,
            "PortNumber": swap_port(port),
        },
        protocol,
    )


def _require_int(payload: dict[str, Any], key: str) -> int:
    value = _require(payload, key)
    # plistlib decodes <true/> to bool, which is an int subclass
    if not isinstance(value, int) or isinstance(value, bool):
        raise MalformedFrameError(f"{key} must be an integer, got {value!r}")
    return value


def parse_message(payload: dict[str, Any]) -> MuxMessage:
    """Map a decoded plist onto its multiplexer message variant."""
    message_type = _require(payload, "MessageType")
    if message_type == "Result":
        return ResultMessage(number=_require_int(payload, "Number"))
    if message_type == "Attached":
        properties = payload.get("Properties", {})
        if not isinstance(properties, dict):
            raise MalformedFrameError(f"Properties must be a dictionary, got {properties!r}")
        return AttachedMessage(
            device_id=_require_int(payload, "DeviceID"),
            properties=dict(properties),
        )
    if message_type == "Detached":
        return DetachedMessage(device_id=_require_int(payload, "DeviceID"))
    if message_type == "Paired":
        return PairedMessage(device_id=_require_int(payload, "DeviceID"))
    raise MalformedFrameError(f"Unknown MessageType: {message_type!r}")


async def read_message(
    reader: asyncio.StreamReader,
    max_payload_size: int = ProtocolConfig.max_payload_size,
) -> MuxMessage | None:
    """Read and decode one multiplexer frame.

    Returns:
        The decoded message, or None if the stream ended

    Raises:
        MalformedFrameError: If the header length is impossible or the
            payload is not a known plist message
    """
    header = await read_exact(reader, HEADER_SIZE)
    if header is None:
        return None

    length, _version, _packet_type, _tag = HEADER.unpack(header)
    payload_length = length - HEADER_SIZE
    if payload_length < 0:
        raise MalformedFrameError(f"Frame length {length} is shorter than its header")
    if payload_length > max_payload_size:
        raise MalformedFrameError(
            f"Frame payload of {payload_length} bytes exceeds limit of {max_payload_size}"
        )

    payload = await read_exact(reader, payload_length)
    if payload is None:
        return None

    return parse_message(_load_plist(payload))


# ─────────────────────────────────────────────────────────────────────────────
# Lockdown framing
# ─────────────────────────────────────────────────────────────────────────────


def encode_lockdown_message(payload: dict[str, Any]) -> bytes:
    """Serialize a lockdown request with its 4-byte big-endian length prefix."""
    data = _dump_plist(payload)
    return LOCKDOWN_HEADER.pack(len(data)) + data


def parse_lockdown_message(payload: dict[str, Any]) -> LockdownMessage:
    """Map a decoded lockdown plist onto its response variant.

    Raises:
        LockdownError: If the response carries an ``Error`` field
    """
    if "Error" in payload:
        raise LockdownError(payload["Error"])

    request = _require(payload, "Request")
    if request == "QueryType":
        return QueryTypeResult(type=payload.get("Type"))
    if request == "GetValue":
        if "Key" in payload:
            return GetValueResult(key=payload["Key"], value=payload.get("Value"))
        return GetValuesResult(value=payload.get("Value", {}))
    raise MalformedFrameError(f"Unknown lockdown Request: {request!r}")


async def read_lockdown_message(
    reader: asyncio.StreamReader,
    max_payload_size: int = ProtocolConfig.max_payload_size,
) -> LockdownMessage | None:
    """Read and decode one lockdown frame.

    Returns:
        The decoded response, or None if the stream ended
    """
    header = await read_exact(reader, LOCKDOWN_HEADER.size)
    if header is None:
        return None

    (length,) = LOCKDOWN_HEADER.unpack(header)
    if length > max_payload_size:
        raise MalformedFrameError(
            f"Lockdown payload of {length} bytes exceeds limit of {max_payload_size}"
        )

    payload = await read_exact(reader, length)
    if payload is None:
        return None

    return parse_lockdown_message(_load_plist(payload))
