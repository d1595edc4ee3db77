"""
Loxone → InfluxDB bridge — Miniserver Connection Manager

Owns the single WebSocket connection to the Miniserver for the lifetime of
the process.

State diagram:

    DISCONNECTED ──connect()──▶ CONNECTING ──open──▶ AUTHENTICATING ──200──▶ AUTHORIZED
                                    │                      │                  │     │
                                    │ error                │ rejected   clean │     │ abnormal
                                    ▼                      ▼            close ▼     ▼
                                  FAILED                 FAILED            CLOSED  ABORTED
                                               abort() from any state ────────────▶ ABORTED

FAILED and CLOSED are idle states: nothing is retried. ABORTED and a failed
local close are fatal; wait_fatal() returns and the owner exits the process.

Value events are decoded by the reader task and put on the events queue in
arrival order.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

import aiohttp
import websockets
from websockets.exceptions import ConnectionClosed, ConnectionClosedError, WebSocketException

from .config import LoxoneConfig
from .crypto import AESSession, hash_credentials, normalize_public_key
from .protocol import (
    LLResponse,
    LoxoneError,
    MessageHeader,
    MessageType,
    ProtocolError,
    ValueEvent,
    iter_text_events,
    iter_value_events,
    parse_header,
    parse_ll_response,
)

logger = logging.getLogger("lox.conn")

SUBPROTOCOL = "remotecontrol"
MAX_FRAME_SIZE = 16 * 1024 * 1024   # initial state table can be large

CMD_GET_KEY = "jdev/sys/getkey"
CMD_KEY_EXCHANGE = "jdev/sys/keyexchange/{}"
CMD_AUTHENTICATE = "authenticate/{}"
CMD_ENABLE_UPDATES = "jdev/sps/enablebinstatusupdate"
CMD_VERSION = "jdev/cfg/version"
CMD_KEEPALIVE = "keepalive"


class AuthenticationError(LoxoneError):
    """Miniserver rejected the key exchange or the credentials."""


class ConnectionState(str, Enum):
    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    AUTHENTICATING = "AUTHENTICATING"
    AUTHORIZED = "AUTHORIZED"
    CLOSED = "CLOSED"
    ABORTED = "ABORTED"
    FAILED = "FAILED"


class TransitionResult(str, Enum):
    OK = "OK"
    NO_CHANGE = "NO_CHANGE"
    INVALID = "INVALID"


ALLOWED_TRANSITIONS: dict[ConnectionState, frozenset[ConnectionState]] = {
    ConnectionState.DISCONNECTED: frozenset({ConnectionState.CONNECTING, ConnectionState.ABORTED}),
    ConnectionState.CONNECTING: frozenset({
        ConnectionState.AUTHENTICATING, ConnectionState.FAILED, ConnectionState.ABORTED,
    }),
    ConnectionState.AUTHENTICATING: frozenset({
        ConnectionState.AUTHORIZED, ConnectionState.FAILED, ConnectionState.ABORTED,
    }),
    ConnectionState.AUTHORIZED: frozenset({ConnectionState.CLOSED, ConnectionState.ABORTED}),
    ConnectionState.CLOSED: frozenset({ConnectionState.ABORTED}),
    ConnectionState.FAILED: frozenset({ConnectionState.ABORTED}),
    ConnectionState.ABORTED: frozenset(),
}

StateListener = Callable[[ConnectionState, ConnectionState], None]
Connector = Callable[..., Awaitable[Any]]
PublicKeyFetcher = Callable[[str], Awaitable[str]]


def _describe(exc: BaseException) -> str:
    return str(exc) or type(exc).__name__


async def fetch_public_key(base_url: str, timeout: float = 10.0) -> str:
    """GET the Miniserver RSA public key over plain HTTP(S)."""
    url = f"{base_url}/jdev/sys/getPublicKey"
    try:
        async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
            async with session.get(url) as resp:
                resp.raise_for_status()
                body = await resp.text()
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        raise LoxoneError(f"Cannot fetch public key from {url}: {e}") from e

    reply = parse_ll_response(body)
    if not reply.ok:
        raise AuthenticationError(f"getPublicKey failed with code {reply.code}")
    return str(reply.value)


class LoxoneConnection:
    """Connection Manager for one Miniserver."""

    def __init__(
        self,
        config: LoxoneConfig,
        events: asyncio.Queue,
        connector: Optional[Connector] = None,
        public_key_fetcher: Optional[PublicKeyFetcher] = None,
    ) -> None:
        self._config = config
        self.events = events
        self._connector = connector or websockets.connect
        self._fetch_public_key = public_key_fetcher or fetch_public_key
        self._ws = None
        self._aes: Optional[AESSession] = None
        self._pending_header: Optional[MessageHeader] = None
        self._listeners: list[StateListener] = []
        self._tasks: set[asyncio.Task] = set()
        self._fatal_event = asyncio.Event()

        self.state = ConnectionState.DISCONNECTED
        self.fatal = False
        self.close_failed = False
        self.operator_abort = False
        self.events_received = 0

    # ── State machine ────────────────────────────────────────────────────

    def add_listener(self, listener: StateListener) -> None:
        self._listeners.append(listener)

    def _transition(self, new_state: ConnectionState) -> TransitionResult:
        old_state = self.state
        if new_state == old_state:
            return TransitionResult.NO_CHANGE
        if new_state not in ALLOWED_TRANSITIONS[old_state]:
            logger.debug("Transition %s -> %s rejected", old_state.value, new_state.value)
            return TransitionResult.INVALID

        self.state = new_state
        logger.debug("Loxone state %s -> %s", old_state.value, new_state.value)
        for listener in self._listeners:
            listener(old_state, new_state)
        return TransitionResult.OK

    def _mark_fatal(self) -> None:
        self.fatal = True
        self._cancel_background()
        # undispatched events die with the connection
        dropped = 0
        while not self.events.empty():
            self.events.get_nowait()
            self.events.task_done()
            dropped += 1
        if dropped:
            logger.info("Discarded %d undispatched events", dropped)
        self._fatal_event.set()

    async def wait_fatal(self) -> None:
        """Block until the connection hits a fatal condition."""
        await self._fatal_event.wait()

    # ── Lifecycle ────────────────────────────────────────────────────────

    async def connect(self) -> bool:
        """
        Connect and authenticate.  Returns True once AUTHORIZED.

        Connect and auth failures are reported and leave the connection in
        FAILED; nothing is retried.  The handshake runs as a background task
        so abort() can interrupt it without waiting out connect_timeout.
        """
        if self._transition(ConnectionState.CONNECTING) is not TransitionResult.OK:
            logger.error("connect() called in state %s", self.state.value)
            return False

        handshake = self._spawn(self._handshake(), "loxone-handshake")
        try:
            await asyncio.wait({handshake})
        finally:
            handshake.cancel()
        if handshake.cancelled():
            logger.info("Loxone connect interrupted in state %s", self.state.value)
            return False
        if not handshake.result():
            return False

        if self._transition(ConnectionState.AUTHORIZED) is not TransitionResult.OK:
            return False

        logger.info("Loxone authorized")
        self._spawn(self._read_loop(), "loxone-reader")
        await self.send_command(CMD_ENABLE_UPDATES)
        self._spawn(self._version_query(), "loxone-version-query")
        if self._config.keepalive_interval > 0:
            self._spawn(self._keepalive_loop(), "loxone-keepalive")
        return True

    async def _handshake(self) -> bool:
        logger.info("Connecting to Loxone Miniserver at %s", self._config.ws_url)
        try:
            self._ws = await asyncio.wait_for(
                self._connector(
                    self._config.ws_url,
                    subprotocols=[SUBPROTOCOL],
                    ping_interval=None,
                    max_size=MAX_FRAME_SIZE,
                ),
                timeout=self._config.connect_timeout,
            )
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            if self._transition(ConnectionState.FAILED) is TransitionResult.OK:
                logger.error("Loxone connect failed: %s", _describe(e))
            return False

        if self._transition(ConnectionState.AUTHENTICATING) is not TransitionResult.OK:
            # aborted while the socket was opening
            await self._close_socket()
            return False

        logger.info("Loxone connected!")
        try:
            await self._authenticate()
        except (LoxoneError, ValueError, asyncio.TimeoutError) as e:
            if self._transition(ConnectionState.FAILED) is TransitionResult.OK:
                logger.error("Loxone auth error: %s", _describe(e))
                await self._close_socket()
            return False
        except ConnectionClosed as e:
            if self._transition(ConnectionState.FAILED) is TransitionResult.OK:
                logger.error("Loxone connection error during authentication: %s", e)
            return False
        return True

    async def close(self) -> None:
        """Local graceful close.  A close that does not complete is fatal."""
        if self.state is not ConnectionState.AUTHORIZED:
            return
        self._cancel_background(keep_reader=True)
        try:
            await asyncio.wait_for(self._ws.close(), timeout=self._config.connect_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error("Loxone close failed: %s", _describe(e))
            self.close_failed = True
            self._mark_fatal()
            return
        if self._transition(ConnectionState.CLOSED) is TransitionResult.OK:
            logger.info("Loxone closed!")

    async def abort(self) -> None:
        """Operator-requested teardown (SIGINT).  Always fatal."""
        if self.state is ConnectionState.ABORTED:
            return
        logger.info("Aborting Loxone connection (operator request)")
        self.operator_abort = True
        self._transition(ConnectionState.ABORTED)
        self._cancel_background()
        await self._close_socket()
        logger.info("Loxone aborted!")
        self._mark_fatal()

    async def send_command(self, command: str) -> bool:
        """Fire a text command; the reply is handled by the reader task."""
        if self._ws is None or self.state is not ConnectionState.AUTHORIZED:
            logger.debug("Not sending %s in state %s", command, self.state.value)
            return False
        try:
            await self._ws.send(command)
        except ConnectionClosed as e:
            logger.info("Loxone connection error sending %s: %s", command, e)
            return False
        logger.debug("Sent command %s", command)
        return True

    # ── Authentication ───────────────────────────────────────────────────

    async def _request(self, command: str) -> LLResponse:
        """Send a command and wait for its text reply (handshake only)."""
        await self._ws.send(command)
        while True:
            frame = await asyncio.wait_for(self._ws.recv(), timeout=self._config.connect_timeout)
            # binary header frames precede every text reply
            if isinstance(frame, str):
                return parse_ll_response(frame)

    async def _authenticate(self) -> None:
        if self._config.encryption == "AES-256-CBC":
            raw_key = await self._fetch_public_key(self._config.http_url)
            self._aes = AESSession()
            payload = self._aes.session_key_payload(normalize_public_key(raw_key))
            reply = await self._request(CMD_KEY_EXCHANGE.format(payload))
            if not reply.ok:
                raise AuthenticationError(f"key exchange rejected with code {reply.code}")

        reply = await self._request(CMD_GET_KEY)
        if not reply.ok:
            raise AuthenticationError(f"getkey failed with code {reply.code}")

        key_hash = hash_credentials(str(reply.value), self._config.username, self._config.password)
        command = CMD_AUTHENTICATE.format(key_hash)
        if self._aes is not None:
            command = self._aes.encrypt_command(command)

        reply = await self._request(command)
        if not reply.ok:
            raise AuthenticationError(f"credentials rejected with code {reply.code}")

    # ── Reader ───────────────────────────────────────────────────────────

    async def _read_loop(self) -> None:
        try:
            async for frame in self._ws:
                self._handle_frame(frame)
        except ConnectionClosedError as e:
            if self._transition(ConnectionState.ABORTED) is TransitionResult.OK:
                logger.error("Loxone aborted! %s", e)
                self._mark_fatal()
            return

        if self._transition(ConnectionState.CLOSED) is TransitionResult.OK:
            logger.info("Loxone closed!")
            self._cancel_background(keep_reader=True)

    def _handle_frame(self, frame) -> None:
        if isinstance(frame, str):
            self._pending_header = None
            self._handle_text(frame)
            return

        try:
            if self._pending_header is None:
                header = parse_header(frame)
                if header.estimated:
                    return  # exact header follows
                if not header.has_payload:
                    self._handle_payloadless(header)
                elif header.length > 0:
                    self._pending_header = header
                return

            header, self._pending_header = self._pending_header, None
            self._handle_payload(header, frame)
        except ProtocolError as e:
            self._pending_header = None
            logger.error("Loxone connection error: %s", e)

    def _handle_payloadless(self, header: MessageHeader) -> None:
        if header.type is MessageType.KEEPALIVE:
            logger.debug("Keepalive acknowledged")
        else:
            logger.info("Loxone Miniserver is going out of service")

    def _handle_payload(self, header: MessageHeader, payload: bytes) -> None:
        if header.type is MessageType.VALUE_EVENTS:
            for event in iter_value_events(payload):
                self._publish(event)
        elif header.type is MessageType.TEXT_EVENTS:
            if self._config.include_text_events:
                for event in iter_text_events(payload):
                    self._publish(event)
            else:
                logger.debug("Ignoring text event table (%d bytes)", len(payload))
        else:
            logger.debug("Ignoring %s message (%d bytes)", header.type.name, len(payload))

    def _handle_text(self, text: str) -> None:
        try:
            reply = parse_ll_response(text)
        except ProtocolError as e:
            logger.debug("Unparsed text message: %s", e)
            return
        if reply.ok:
            logger.debug("Reply to %s: %s", reply.control, reply.value)
        else:
            logger.info("Command %s failed with code %d", reply.control, reply.code)

    def _publish(self, event: ValueEvent) -> None:
        if self.fatal:
            return
        self.events_received += 1
        self.events.put_nowait(event)

    # ── Background tasks ─────────────────────────────────────────────────

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _cancel_background(self, keep_reader: bool = False) -> None:
        current = asyncio.current_task()
        for task in list(self._tasks):
            if task is current or (keep_reader and task.get_name() == "loxone-reader"):
                continue
            task.cancel()

    async def _version_query(self) -> None:
        await asyncio.sleep(self._config.version_query_delay)
        await self.send_command(CMD_VERSION)

    async def _keepalive_loop(self) -> None:
        while self.state is ConnectionState.AUTHORIZED:
            await asyncio.sleep(self._config.keepalive_interval)
            await self.send_command(CMD_KEEPALIVE)

    async def _close_socket(self) -> None:
        if self._ws is None:
            return
        try:
            await asyncio.wait_for(self._ws.close(), timeout=self._config.connect_timeout)
        except (OSError, asyncio.TimeoutError, WebSocketException) as e:
            logger.error("Loxone close failed: %s", _describe(e))
            self.close_failed = True
