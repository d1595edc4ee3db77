import asyncio
import json
import struct

import pytest

from loxone_influx.config import BridgeConfig


TEMP_UUID = "1234abcd-037d-9763-ffffffee1234abcd"
HUMIDITY_UUID = "1234abcd-005f-8965-ffffffee1234abcd"
UNKNOWN_UUID = "0f0f0f0f-0001-0002-0102030405060708"


def raw_uuid(uuid: str) -> bytes:
    data1, data2, data3, data4 = uuid.split("-")
    return struct.pack("<IHH", int(data1, 16), int(data2, 16), int(data3, 16)) + bytes.fromhex(data4)


def header(identifier: int, length: int = 0, info: int = 0) -> bytes:
    return struct.pack("<BBBBI", 0x03, identifier, info, 0, length)


def value_table(*events: tuple[str, float]) -> bytes:
    return b"".join(raw_uuid(uuid) + struct.pack("<d", value) for uuid, value in events)


def text_table(*events: tuple[str, str]) -> bytes:
    out = b""
    for uuid, text in events:
        body = text.encode("utf-8")
        out += raw_uuid(uuid) + bytes(16) + struct.pack("<I", len(body)) + body
        out += b"\x00" * ((-len(body)) % 4)
    return out


def ll_reply(control: str, value="", code: int = 200, code_key: str = "Code") -> str:
    return json.dumps({"LL": {"control": control, "value": value, code_key: str(code)}})


GETKEY_HEX = "41424344454647484950"


def hash_handshake(auth_code: int = 200) -> list:
    """Frames the Miniserver sends back during a Hash-mode handshake."""
    return [
        header(0, 60),
        ll_reply("jdev/sys/getkey", GETKEY_HEX),
        header(0, 40),
        ll_reply("authenticate/...", "", auth_code),
    ]


class _End:
    def __init__(self, error=None):
        self.error = error


class FakeWebSocket:
    """Stands in for a websockets client connection."""

    def __init__(self, replies=None, close_error=None):
        self.sent: list[str] = []
        self._replies = list(replies or [])
        self._incoming: asyncio.Queue = asyncio.Queue()
        self.close_error = close_error
        self.closed = False

    async def send(self, message: str) -> None:
        self.sent.append(message)

    async def recv(self):
        if not self._replies:
            raise AssertionError("unexpected recv() during handshake")
        return self._replies.pop(0)

    def push(self, *frames) -> None:
        for frame in frames:
            self._incoming.put_nowait(frame)

    def finish(self, error=None) -> None:
        self._incoming.put_nowait(_End(error))

    def __aiter__(self):
        return self

    async def __anext__(self):
        item = await self._incoming.get()
        if isinstance(item, _End):
            if item.error is not None:
                raise item.error
            raise StopAsyncIteration
        return item

    async def close(self) -> None:
        if self.close_error is not None:
            raise self.close_error
        self.closed = True
        self.finish()


def make_connector(ws=None, error=None):
    calls = []

    async def connector(url, **kwargs):
        calls.append((url, kwargs))
        if error is not None:
            raise error
        return ws

    connector.calls = calls
    return connector


class RecordingWriter:
    """Store writer double that only records submissions."""

    def __init__(self):
        self.requests = []
        self.started = False
        self.stopped = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    def submit(self, request):
        self.requests.append(request)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


def config_dict(**loxone_overrides) -> dict:
    loxone = {
        "host": "miniserver.local",
        "username": "admin",
        "password": "secret",
        "encryption": "Hash",
        "keepalive_interval": 0,
        "version_query_delay": 0.01,
        "connect_timeout": 1.0,
    }
    loxone.update(loxone_overrides)
    return {
        "loxone": loxone,
        "influxdb": {"host": "influx.local", "database": "loxone"},
        "uuids": {
            TEMP_UUID: {"measurement": "temperature", "tags": {"room": "Kitchen"}},
            HUMIDITY_UUID: {"measurement": "humidity", "tags": {"room": "Kitchen", "src": "cfg"}},
        },
    }


@pytest.fixture
def bridge_config() -> BridgeConfig:
    return BridgeConfig.model_validate(config_dict())
