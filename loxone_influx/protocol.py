"""
Loxone → InfluxDB bridge — Miniserver wire protocol

Every message from the Miniserver is preceded by an 8-byte binary header:

    byte 0     0x03 (binary type marker)
    byte 1     identifier (see MessageType)
    byte 2     info flags (bit 0 = estimated length, exact header follows)
    byte 3     reserved
    bytes 4-7  payload length, uint32 little-endian

Text replies arrive as JSON in a separate text frame:
    {"LL": {"control": "jdev/sys/getkey", "value": "...", "Code": "200"}}

Value-event tables are repeated 24-byte records: 16-byte UUID + float64 LE.
Text-event tables: UUID + icon UUID + uint32 text length + UTF-8 text,
each entry padded to a 4-byte boundary.
"""

import json
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator, Optional, Union


HEADER_LENGTH = 8
HEADER_MARKER = 0x03

_HEADER = struct.Struct("<BBBBI")
_UUID = struct.Struct("<IHH8s")
_VALUE_EVENT = struct.Struct("<16sd")
_TEXT_EVENT_HEAD = struct.Struct("<16s16sI")


class LoxoneError(Exception):
    """Base class for Miniserver communication errors."""


class ProtocolError(LoxoneError):
    """Malformed frame from the Miniserver."""


class MessageType(IntEnum):
    TEXT = 0
    BINARY_FILE = 1
    VALUE_EVENTS = 2
    TEXT_EVENTS = 3
    DAYTIMER_EVENTS = 4
    OUT_OF_SERVICE = 5
    KEEPALIVE = 6
    WEATHER_EVENTS = 7


# Headers of these types are not followed by a payload frame
PAYLOADLESS_TYPES = frozenset({MessageType.OUT_OF_SERVICE, MessageType.KEEPALIVE})


@dataclass(slots=True)
class MessageHeader:
    type: MessageType
    estimated: bool
    length: int

    @property
    def has_payload(self) -> bool:
        return self.type not in PAYLOADLESS_TYPES


@dataclass(slots=True)
class ValueEvent:
    """One value change pushed by the Miniserver."""
    uuid: str
    value: Union[float, str]


@dataclass(slots=True)
class LLResponse:
    """Reply to a text command."""
    control: str
    value: object
    code: int

    @property
    def ok(self) -> bool:
        return self.code == 200


def is_header(frame: bytes) -> bool:
    return len(frame) == HEADER_LENGTH and frame[0] == HEADER_MARKER


def parse_header(frame: bytes) -> MessageHeader:
    """Decode an 8-byte message header."""
    if not is_header(frame):
        raise ProtocolError(f"Not a message header: {frame[:HEADER_LENGTH].hex()}")
    _, identifier, info, _, length = _HEADER.unpack(frame)
    try:
        msg_type = MessageType(identifier)
    except ValueError:
        raise ProtocolError(f"Unknown message identifier {identifier}") from None
    return MessageHeader(type=msg_type, estimated=bool(info & 0x01), length=length)


def format_uuid(raw: bytes) -> str:
    """Render a 16-byte Loxone UUID as 'xxxxxxxx-xxxx-xxxx-xxxxxxxxxxxxxxxx'."""
    if len(raw) != 16:
        raise ProtocolError(f"UUID must be 16 bytes, got {len(raw)}")
    data1, data2, data3, data4 = _UUID.unpack(raw)
    return f"{data1:08x}-{data2:04x}-{data3:04x}-{data4.hex()}"


def iter_value_events(payload: bytes) -> Iterator[ValueEvent]:
    """Yield ValueEvents from a value-event table payload."""
    if len(payload) % _VALUE_EVENT.size:
        raise ProtocolError(
            f"Value event table length {len(payload)} is not a multiple of {_VALUE_EVENT.size}"
        )
    for raw_uuid, value in _VALUE_EVENT.iter_unpack(payload):
        yield ValueEvent(uuid=format_uuid(raw_uuid), value=value)


def iter_text_events(payload: bytes) -> Iterator[ValueEvent]:
    """Yield ValueEvents (value = text) from a text-event table payload."""
    offset = 0
    total = len(payload)
    while offset < total:
        if offset + _TEXT_EVENT_HEAD.size > total:
            raise ProtocolError("Truncated text event header")
        raw_uuid, _icon, text_len = _TEXT_EVENT_HEAD.unpack_from(payload, offset)
        offset += _TEXT_EVENT_HEAD.size
        if offset + text_len > total:
            raise ProtocolError("Truncated text event body")
        text = payload[offset:offset + text_len].decode("utf-8", errors="replace")
        offset += text_len
        # entries are padded to a multiple of 4 bytes
        offset += (-text_len) % 4
        yield ValueEvent(uuid=format_uuid(raw_uuid), value=text)


def parse_ll_response(text: str) -> LLResponse:
    """Parse an LL JSON reply. Accepts both 'Code' and 'code' keys."""
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        raise ProtocolError(f"Reply is not JSON: {text[:100]!r}") from e

    ll = data.get("LL") if isinstance(data, dict) else None
    if not isinstance(ll, dict):
        raise ProtocolError(f"Reply has no LL object: {text[:100]!r}")

    raw_code: Optional[object] = ll.get("Code", ll.get("code"))
    try:
        code = int(raw_code)
    except (TypeError, ValueError):
        raise ProtocolError(f"Reply has no usable code: {raw_code!r}") from None

    return LLResponse(control=str(ll.get("control", "")), value=ll.get("value"), code=code)
