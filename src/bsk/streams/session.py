"""WebSocket stream session: one socket multiplexing many topics.

A session connects to the combined-stream endpoint, subscribes topics with
control frames and routes data frames to the DispatchRouter. It supervises
its own socket:

    CONNECTING -> OPEN -> DEGRADED -> RECONNECTING -> OPEN
    CLOSING -> CLOSED

- CONNECTING: the first handshake is bounded by ``connect_timeout``;
  failure raises ConnectError and is not retried.
- OPEN: after ``heartbeat_interval`` seconds without a frame a ping is
  sent; no pong within ``pong_timeout`` moves the session to DEGRADED.
- DEGRADED/RECONNECTING: the socket is torn down and re-established under
  the ReconnectPolicy. On success every topic is resubscribed in its
  original order with a single SUBSCRIBE frame, each topic receives a
  ResyncNotice and the session is OPEN again. When the attempt budget runs
  out every topic fails with SubscriptionError and the session closes.

Wire protocol:
    -> {"method": "SUBSCRIBE", "params": ["btcusdt@trade"], "id": 1}
    <- {"result": null, "id": 1}
    <- {"stream": "btcusdt@trade", "data": {...}}
"""

from __future__ import annotations

import asyncio
import contextlib
import itertools
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any, Protocol

from pydantic import ValidationError

from bsk.clock import ClockProtocol, RealClock, SleepProtocol, real_sleep
from bsk.config import StreamSettings
from bsk.errors import ConnectError
from bsk.logging import get_logger, log_stream_event
from bsk.models import ListenKeyExpired, decode_event
from bsk.streams.reconnect import ReconnectPolicy
from bsk.streams.router import DispatchRouter
from bsk.streams.topics import StreamTopic

logger = get_logger("streams.session")

COMBINED_STREAM_PATH = "/stream"
CLOSE_TIMEOUT_SECONDS = 5.0

_session_ids = itertools.count(1)


class SessionState(str, Enum):
    """Session lifecycle state."""

    CONNECTING = "connecting"
    OPEN = "open"
    DEGRADED = "degraded"
    RECONNECTING = "reconnecting"
    CLOSING = "closing"
    CLOSED = "closed"


class Connection(Protocol):
    """The part of a websockets ClientConnection a session uses."""

    async def send(self, message: str) -> None: ...

    async def recv(self) -> str | bytes: ...

    async def ping(self) -> Awaitable[Any]: ...

    async def close(self) -> None: ...


Connector = Callable[[str, float], Awaitable[Connection]]


async def websocket_connector(url: str, open_timeout: float) -> Connection:
    """Open a websockets client connection.

    Library-level keepalive is disabled; the session runs its own
    ping/pong heartbeat.
    """
    from websockets.asyncio.client import connect

    return await connect(
        url,
        open_timeout=open_timeout,
        ping_interval=None,
        ping_timeout=None,
        close_timeout=CLOSE_TIMEOUT_SECONDS,
    )


@dataclass
class SessionStats:
    """Statistics for one session."""

    messages_received: int = 0
    parse_errors: int = 0
    reconnect_count: int = 0
    pings_sent: int = 0
    pong_timeouts: int = 0
    control_errors: int = 0


SessionHook = Callable[["StreamSession"], Awaitable[None]]
# (session, topic name, reason or wire name)
TopicHook = Callable[["StreamSession", str, str], Awaitable[None]]


class StreamSession:
    """One supervised WebSocket connection and the topics it carries."""

    def __init__(
        self,
        ws_base_url: str,
        router: DispatchRouter,
        settings: StreamSettings | None = None,
        connector: Connector | None = None,
        clock: ClockProtocol | None = None,
        sleep: SleepProtocol | None = None,
        policy: ReconnectPolicy | None = None,
        before_resubscribe: SessionHook | None = None,
        on_private_failure: TopicHook | None = None,
        on_private_data: TopicHook | None = None,
        on_closed: SessionHook | None = None,
    ) -> None:
        """Initialize session.

        Args:
            ws_base_url: WebSocket base URL (e.g. wss://stream.binance.com:9443)
            router: Router receiving decoded frames
            settings: Timeouts, heartbeat and reconnect settings
            connector: Opens a connection (websockets by default)
            clock: Monotonic time source for the reconnect policy
            sleep: Async sleep used between reconnect attempts
            policy: Reconnect policy (built from settings by default)
            before_resubscribe: Awaited after reconnecting, before topics are
                resubscribed (the manager revalidates the listen key here)
            on_private_failure: Called when the venue rejects or expires the
                private topic's listen key
            on_private_data: Called with the wire name for each private data
                frame other than a listen key expiry
            on_closed: Called once the session reaches CLOSED
        """
        self.session_id = next(_session_ids)
        self.url = ws_base_url.rstrip("/") + COMBINED_STREAM_PATH
        self._router = router
        self._settings = settings or StreamSettings()
        self._connector = connector or websocket_connector
        self._clock = clock or RealClock()
        self._sleep = sleep or real_sleep
        self.policy = policy or ReconnectPolicy.from_settings(self._settings)
        self._before_resubscribe = before_resubscribe
        self._on_private_failure = on_private_failure
        self._on_private_data = on_private_data
        self._on_closed = on_closed

        self._state = SessionState.CLOSED
        self._state_changed = asyncio.Condition()
        self._conn: Connection | None = None
        self._task: asyncio.Task[None] | None = None
        self._ids = itertools.count(1)
        self._pending: dict[int, tuple[str, list[str]]] = {}
        # Insertion order is subscription order
        self._topics: dict[str, StreamTopic] = {}
        self._wire: dict[str, str] = {}
        self._by_wire: dict[str, str] = {}
        self.stats = SessionStats()

    # =========================================================================
    # Introspection
    # =========================================================================

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def topics(self) -> list[str]:
        """Topic names in subscription order."""
        return list(self._topics)

    def wire_name(self, topic_name: str) -> str | None:
        return self._wire.get(topic_name)

    @property
    def free_slots(self) -> int:
        return self._settings.max_streams_per_connection - len(self._topics)

    @property
    def is_terminal(self) -> bool:
        return self._state in (SessionState.CLOSING, SessionState.CLOSED)

    async def _set_state(self, state: SessionState, reason: str = "") -> None:
        if state is self._state:
            return
        previous = self._state
        self._state = state
        log_stream_event(
            "STATE",
            self.session_id,
            previous=previous.value,
            state=state.value,
            reason=reason,
        )
        async with self._state_changed:
            self._state_changed.notify_all()

    async def wait_for_state(self, state: SessionState, timeout: float | None = None) -> bool:
        """Wait until the session reaches ``state``.

        Returns:
            True if reached, False on timeout
        """
        async with self._state_changed:
            try:
                await asyncio.wait_for(
                    self._state_changed.wait_for(lambda: self._state is state), timeout
                )
            except TimeoutError:
                return False
        return True

    # =========================================================================
    # Topic management
    # =========================================================================

    def _bind(self, topic: StreamTopic, wire: str) -> None:
        self._topics[topic.name] = topic
        self._wire[topic.name] = wire
        self._by_wire[wire] = topic.name

    def _unbind(self, topic_name: str) -> str | None:
        self._topics.pop(topic_name, None)
        wire = self._wire.pop(topic_name, None)
        if wire is not None:
            self._by_wire.pop(wire, None)
        return wire

    async def add_topics(self, bindings: list[tuple[StreamTopic, str]]) -> None:
        """Attach topics with their wire names and subscribe if OPEN.

        Topics added while reconnecting are picked up by the resubscribe.
        """
        new = [(t, w) for t, w in bindings if t.name not in self._topics]
        if not new:
            return
        if len(new) > self.free_slots:
            raise ValueError(f"Session {self.session_id} has only {self.free_slots} free slots")
        for topic, wire in new:
            self._bind(topic, wire)
        if self._state is SessionState.OPEN:
            await self._send_control("SUBSCRIBE", [w for _, w in new])

    async def remove_topic(self, topic_name: str) -> None:
        """Detach a topic and unsubscribe it if OPEN."""
        wire = self._unbind(topic_name)
        if wire is not None and self._state is SessionState.OPEN:
            await self._send_control("UNSUBSCRIBE", [wire])

    async def rebind(self, topic_name: str, wire: str) -> None:
        """Move a topic to a new wire name (e.g. a reacquired listen key)."""
        old = self._wire.get(topic_name)
        if old is None or old == wire:
            return
        self._by_wire.pop(old, None)
        self._wire[topic_name] = wire
        self._by_wire[wire] = topic_name
        if self._state is SessionState.OPEN:
            await self._send_control("UNSUBSCRIBE", [old])
            await self._send_control("SUBSCRIBE", [wire])

    async def _send_control(self, method: str, params: list[str]) -> int | None:
        """Send a SUBSCRIBE/UNSUBSCRIBE frame. Returns its id."""
        if self._conn is None or not params:
            return None
        request_id = next(self._ids)
        self._pending[request_id] = (method, params)
        msg = {"method": method, "params": params, "id": request_id}
        try:
            await self._conn.send(json.dumps(msg))
        except Exception as e:
            # The read loop sees the broken socket and reconnects
            self._pending.pop(request_id, None)
            logger.debug(f"Failed to send {method}: {e}")
            return None
        logger.debug(f"Session {self.session_id}: {method} {len(params)} stream(s) id={request_id}")
        return request_id

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def _open_connection(self) -> Connection:
        timeout = self._settings.connect_timeout
        return await asyncio.wait_for(self._connector(self.url, timeout), timeout)

    async def start(self) -> None:
        """Connect, subscribe the current topics and start supervision.

        Raises:
            ConnectError: If the handshake fails or times out
        """
        if self._task is not None:
            logger.warning("Session already started, ignoring start()")
            return

        await self._set_state(SessionState.CONNECTING)
        try:
            self._conn = await self._open_connection()
        except Exception as e:
            await self._set_state(SessionState.CLOSED, reason=str(e))
            raise ConnectError(f"Failed to connect to {self.url}: {e}") from e

        if self._wire:
            await self._send_control("SUBSCRIBE", list(self._wire.values()))
        self.policy.mark_open(self._clock.monotonic())
        await self._set_state(SessionState.OPEN)
        self._task = asyncio.create_task(self._run())

    async def close(self) -> None:
        """Close the socket and stop supervision. Terminal."""
        if self._state is SessionState.CLOSED:
            return
        await self._set_state(SessionState.CLOSING)

        if self._task is not None and self._task is not asyncio.current_task():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

        await self._teardown()
        await self._set_state(SessionState.CLOSED)
        logger.info(f"Session {self.session_id} closed")

    async def _teardown(self) -> None:
        conn, self._conn = self._conn, None
        self._pending.clear()
        if conn is None:
            return
        try:
            await conn.close()
        except Exception as e:
            logger.debug(f"Error closing WebSocket: {e}")

    async def _run(self) -> None:
        """Supervise the socket: read, detect drops, reconnect."""
        while not self.is_terminal:
            try:
                await self._read_loop()
                reason = "heartbeat timeout"
            except asyncio.CancelledError:
                raise
            except Exception as e:
                reason = f"connection lost: {e}"

            if self.is_terminal:
                return

            await self._set_state(SessionState.DEGRADED, reason=reason)
            await self._teardown()
            try:
                if not await self._reconnect(reason):
                    return
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Session {self.session_id}: reconnect aborted: {e}")
                await self._fail_all(f"reconnect aborted: {e}")
                return

    async def _read_loop(self) -> None:
        """Read frames until the heartbeat fails (returns) or the socket errors (raises)."""
        while self._conn is not None:
            conn = self._conn
            try:
                raw = await asyncio.wait_for(conn.recv(), self._settings.heartbeat_interval)
            except TimeoutError:
                if not await self._heartbeat(conn):
                    return
                continue
            await self._handle_frame(raw)

    async def _heartbeat(self, conn: Connection) -> bool:
        """Ping an idle socket. Returns False if no pong arrived in time."""
        pong_waiter = await conn.ping()
        self.stats.pings_sent += 1
        try:
            await asyncio.wait_for(pong_waiter, self._settings.pong_timeout)
        except TimeoutError:
            self.stats.pong_timeouts += 1
            logger.warning(
                f"Session {self.session_id}: no pong within {self._settings.pong_timeout}s"
            )
            return False
        return True

    async def _reconnect(self, reason: str) -> bool:
        """Re-establish the socket and resubscribe. Returns False when exhausted."""
        self.policy.on_drop(self._clock.monotonic())
        await self._set_state(SessionState.RECONNECTING, reason=reason)

        while not self.policy.exhausted:
            delay = self.policy.next_delay()
            logger.warning(
                f"Session {self.session_id}: {reason}. Reconnecting in {delay:.1f}s "
                f"(attempt {self.policy.attempts}/{self.policy.max_attempts})"
            )
            await self._sleep(delay)
            if self.is_terminal:
                return False

            try:
                self._conn = await self._open_connection()
            except Exception as e:
                logger.warning(f"Session {self.session_id}: reconnect failed: {e}")
                continue

            self.stats.reconnect_count += 1
            if self._before_resubscribe is not None:
                await self._before_resubscribe(self)
            if self._wire:
                if await self._send_control("SUBSCRIBE", list(self._wire.values())) is None:
                    await self._teardown()
                    continue

            for topic_name in self._topics:
                await self._router.notify_resync(topic_name, reason, self.stats.reconnect_count)
            log_stream_event(
                "RESYNC",
                self.session_id,
                topics=len(self._topics),
                reconnect_count=self.stats.reconnect_count,
            )
            self.policy.mark_open(self._clock.monotonic())
            await self._set_state(SessionState.OPEN)
            return True

        await self._fail_all(f"reconnect attempts exhausted ({reason})")
        return False

    async def _fail_all(self, reason: str) -> None:
        for topic_name in list(self._topics):
            self._unbind(topic_name)
            await self._router.fail(topic_name, reason)
        log_stream_event("SESSION_FAILED", self.session_id, reason=reason)
        await self._set_state(SessionState.CLOSING, reason=reason)
        await self._teardown()
        await self._set_state(SessionState.CLOSED, reason=reason)
        if self._on_closed is not None:
            await self._on_closed(self)

    # =========================================================================
    # Frame handling
    # =========================================================================

    async def _handle_frame(self, raw: str | bytes) -> None:
        self.stats.messages_received += 1
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")

        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            self.stats.parse_errors += 1
            logger.debug(f"JSON parse error: {e}")
            return

        if not isinstance(data, dict):
            logger.debug(f"Unexpected frame type: {type(data).__name__}")
            return

        if "id" in data and ("result" in data or "error" in data):
            await self._handle_control_response(data)
            return

        wire = data.get("stream")
        if wire is None:
            logger.debug(f"Frame without stream name: {str(data)[:100]}")
            return

        payload = data.get("data")
        try:
            event = decode_event(payload)
        except ValidationError as e:
            self.stats.parse_errors += 1
            logger.debug(f"Failed to decode event on {wire}: {e}")
            event = payload

        topic_name = self._by_wire.get(wire, wire)
        await self._router.publish(topic_name, event, payload)

        topic = self._topics.get(topic_name)
        if topic is None or not topic.private:
            return
        if isinstance(event, ListenKeyExpired):
            await self._private_failure(topic_name, "listen key expired")
        elif self._on_private_data is not None:
            await self._on_private_data(self, topic_name, wire)

    async def _handle_control_response(self, data: dict[str, Any]) -> None:
        request_id = data.get("id")
        pending = self._pending.pop(request_id, None) if isinstance(request_id, int) else None
        error = data.get("error")
        if error is None:
            logger.debug(f"Session {self.session_id}: ack id={request_id}")
            return

        self.stats.control_errors += 1
        message = error.get("msg", str(error)) if isinstance(error, dict) else str(error)
        if pending is None:
            logger.warning(f"Session {self.session_id}: control error id={request_id}: {message}")
            return

        method, params = pending
        logger.warning(f"Session {self.session_id}: {method} rejected: {message}")
        if method != "SUBSCRIBE":
            return
        for wire in params:
            topic_name = self._by_wire.get(wire)
            if topic_name is None:
                continue
            topic = self._topics[topic_name]
            if topic.private:
                await self._private_failure(topic_name, f"subscribe rejected: {message}")
            else:
                self._unbind(topic_name)
                await self._router.fail(topic_name, f"subscribe rejected: {message}")

    async def _private_failure(self, topic_name: str, reason: str) -> None:
        if self._on_private_failure is not None:
            await self._on_private_failure(self, topic_name, reason)
        else:
            self._unbind(topic_name)
            await self._router.fail(topic_name, reason)
