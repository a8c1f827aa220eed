"""Stream manager: topic subscriptions over a pool of sessions.

The manager is the subscribe/unsubscribe surface. It registers each topic
with the DispatchRouter before subscribing it on the wire, places topics on
sessions with free slots (opening new sessions when all are full) and owns
the listen-key lease for the private user-data topic.

USAGE:
    manager = StreamManager(settings.ws_endpoint, settings.stream, user_stream=api)
    trades = await manager.subscribe(trade_topic("BTCUSDT"))
    account = await manager.subscribe(USER_DATA_TOPIC)

    async for item in trades:
        ...

    await manager.close()
"""

from __future__ import annotations

import asyncio
import functools
from typing import Any

from bsk.clock import ClockProtocol, RealClock, SleepProtocol, real_sleep
from bsk.config import OverflowPolicy, StreamSettings
from bsk.errors import ConfigurationError, ConnectError, ListenKeyError
from bsk.logging import get_logger
from bsk.streams.listen_key import LeaseState, ListenKey, ListenKeyApi, ListenKeyLease
from bsk.streams.router import DispatchRouter, Subscription
from bsk.streams.session import Connector, StreamSession
from bsk.streams.topics import StreamTopic

logger = get_logger("streams.manager")


class StreamManager:
    """Owns sessions, the router and the listen-key lease."""

    def __init__(
        self,
        ws_base_url: str,
        settings: StreamSettings | None = None,
        user_stream: ListenKeyApi | None = None,
        connector: Connector | None = None,
        clock: ClockProtocol | None = None,
        sleep: SleepProtocol | None = None,
        lease_sleep: SleepProtocol | None = None,
    ) -> None:
        """Initialize manager.

        Args:
            ws_base_url: WebSocket base URL
            settings: Stream settings
            user_stream: Listen key endpoints, required for private topics
            connector: WebSocket connector (websockets by default)
            clock: Time source shared by sessions and the lease
            sleep: Async sleep for reconnect backoff
            lease_sleep: Async sleep for the listen key renewal schedule
        """
        self._ws_base_url = ws_base_url
        self._settings = settings or StreamSettings()
        self._user_stream = user_stream
        self._connector = connector
        self._clock = clock or RealClock()
        self._sleep = sleep or real_sleep
        self._lease_sleep = lease_sleep or real_sleep
        self._router = DispatchRouter(
            capacity=self._settings.buffer_capacity,
            policy=self._settings.overflow_policy,
        )
        self._sessions: list[StreamSession] = []
        self._topic_session: dict[str, StreamSession] = {}
        self._private_topic: str | None = None
        self._lease: ListenKeyLease | None = None
        # Key obtained by a failure-driven reacquire, until it proves healthy
        self._recovery_token: str | None = None
        self._recovery_renewals = 0
        self._lock = asyncio.Lock()
        self._closed = False

    @property
    def router(self) -> DispatchRouter:
        return self._router

    @property
    def sessions(self) -> list[StreamSession]:
        return list(self._sessions)

    @property
    def lease(self) -> ListenKeyLease | None:
        return self._lease

    @property
    def topics(self) -> list[str]:
        return list(self._topic_session)

    def session_for(self, topic_name: str) -> StreamSession | None:
        return self._topic_session.get(topic_name)

    async def __aenter__(self) -> StreamManager:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()

    # =========================================================================
    # Subscribe / unsubscribe
    # =========================================================================

    async def subscribe(
        self,
        topic: StreamTopic | str,
        capacity: int | None = None,
        policy: OverflowPolicy | None = None,
    ) -> Subscription:
        """Subscribe to a topic.

        Args:
            topic: Topic or public stream name
            capacity: Buffer capacity override for this subscription
            policy: Overflow policy override for this subscription

        Returns:
            Subscription delivering StreamMessage and ResyncNotice items

        Raises:
            ValueError: If the topic is already subscribed
            ConfigurationError: Private topic without listen key endpoints
            ListenKeyError: The listen key could not be obtained
            ConnectError: A new session could not be established
        """
        if isinstance(topic, str):
            topic = StreamTopic(topic)

        async with self._lock:
            if self._closed:
                raise ConfigurationError("StreamManager is closed")
            self._forget_failed_topics()
            if topic.name in self._topic_session:
                raise ValueError(f"Already subscribed to {topic.name!r}")

            wire = topic.name
            if topic.private:
                if self._private_topic is not None:
                    raise ValueError(f"Private topic {self._private_topic!r} already subscribed")
                key = await self._ensure_lease()
                wire = key.token

            subscription = self._router.register(
                topic,
                capacity=capacity,
                policy=policy,
                on_cancel=functools.partial(self.unsubscribe, topic.name),
            )

            try:
                session = await self._place(topic, wire)
            except (ConnectError, ValueError):
                await self._router.unregister(topic.name)
                if topic.private:
                    await self._release_lease()
                raise

            self._topic_session[topic.name] = session
            if topic.private:
                self._private_topic = topic.name
            logger.info(f"Subscribed {topic.name} on session {session.session_id}")
            return subscription

    async def _place(self, topic: StreamTopic, wire: str) -> StreamSession:
        """Add a topic to a session with room, opening one if needed."""
        for session in self._sessions:
            if session.free_slots > 0 and not session.is_terminal:
                await session.add_topics([(topic, wire)])
                return session

        session = self._new_session()
        await session.add_topics([(topic, wire)])
        await session.start()
        self._sessions.append(session)
        return session

    def _new_session(self) -> StreamSession:
        return StreamSession(
            self._ws_base_url,
            self._router,
            settings=self._settings,
            connector=self._connector,
            clock=self._clock,
            sleep=self._sleep,
            before_resubscribe=self._before_resubscribe,
            on_private_failure=self._on_private_failure,
            on_private_data=self._on_private_data,
            on_closed=self._on_session_closed,
        )

    def _forget_failed_topics(self) -> None:
        """Drop bookkeeping for topics the router has already failed."""
        for name in [n for n in self._topic_session if not self._router.is_registered(n)]:
            self._topic_session.pop(name)
            if name == self._private_topic:
                self._private_topic = None

    async def unsubscribe(self, topic: StreamTopic | str) -> None:
        """Unsubscribe a topic; closes its session when it was the last one."""
        name = topic.name if isinstance(topic, StreamTopic) else topic
        async with self._lock:
            session = self._topic_session.pop(name, None)
            await self._router.unregister(name)
            if session is None:
                return
            await session.remove_topic(name)
            if not session.topics:
                await session.close()
                if session in self._sessions:
                    self._sessions.remove(session)
            if name == self._private_topic:
                self._private_topic = None
                await self._release_lease()
            logger.info(f"Unsubscribed {name}")

    async def close(self) -> None:
        """Close every session and end every subscription."""
        async with self._lock:
            if self._closed:
                return
            self._closed = True
            sessions, self._sessions = self._sessions, []
            for session in sessions:
                await session.close()
            self._topic_session.clear()
            self._private_topic = None
            await self._router.close()
            await self._release_lease()
        logger.info("StreamManager closed")

    # =========================================================================
    # Listen key
    # =========================================================================

    async def _ensure_lease(self) -> ListenKey:
        if self._user_stream is None:
            raise ConfigurationError("Private topics require credentials for listen key endpoints")
        if self._lease is not None and self._lease.state is not LeaseState.RELEASED:
            return await self._lease.ensure_valid()

        lease = ListenKeyLease(
            self._user_stream,
            clock=self._clock,
            sleep=self._lease_sleep,
            validity=self._settings.listen_key_validity,
            renew_fraction=self._settings.listen_key_renew_fraction,
        )
        key = await lease.acquire()
        lease.start_renewal(on_invalid=self._on_lease_invalid)
        self._lease = lease
        return key

    async def _release_lease(self) -> None:
        lease, self._lease = self._lease, None
        self._recovery_token = None
        if lease is not None:
            await lease.release()

    async def _fail_private(self, session: StreamSession, topic_name: str, reason: str) -> None:
        await session.remove_topic(topic_name)
        self._topic_session.pop(topic_name, None)
        self._private_topic = None
        await self._router.fail(topic_name, reason)
        await self._release_lease()

    async def _reacquire_and_rebind(
        self, session: StreamSession, topic_name: str, reason: str
    ) -> None:
        """One reacquisition of the listen key; the topic fails if it does not work."""
        lease = self._lease
        if lease is None:
            await self._fail_private(session, topic_name, reason)
            return
        lease.invalidate(reason)
        try:
            key = await lease.ensure_valid()
        except ListenKeyError as e:
            await self._fail_private(session, topic_name, f"{reason}; reacquire failed: {e}")
            return

        self._recovery_token = key.token
        self._recovery_renewals = lease.renewals
        await session.rebind(topic_name, key.token)
        await self._router.notify_resync(topic_name, reason, session.stats.reconnect_count)
        logger.info(f"Private topic {topic_name} rebound to a new listen key")

    async def _on_private_failure(
        self, session: StreamSession, topic_name: str, reason: str
    ) -> None:
        """Session hook: the venue rejected or expired the listen key."""
        logger.warning(f"Auth failure on {topic_name}: {reason}")
        if self._recovery_pending(session.wire_name(topic_name)):
            # The reacquired key failed before it ever worked
            await self._fail_private(session, topic_name, reason)
            return
        await self._reacquire_and_rebind(session, topic_name, reason)

    def _recovery_pending(self, wire: str | None) -> bool:
        """True while the current key is a reacquired one not yet proven healthy."""
        if self._recovery_token is None or wire != self._recovery_token:
            return False
        lease = self._lease
        if lease is not None and lease.renewals > self._recovery_renewals:
            self._recovery_token = None
            return False
        return True

    async def _on_private_data(self, session: StreamSession, topic_name: str, wire: str) -> None:
        """Session hook: data arrived on the private topic."""
        if self._recovery_token is not None and wire == self._recovery_token:
            logger.debug(f"Reacquired listen key for {topic_name} is delivering data")
            self._recovery_token = None

    async def _on_lease_invalid(self, lease: ListenKeyLease, error: BaseException) -> None:
        """Lease hook: a renewal failed."""
        if lease is not self._lease or self._private_topic is None:
            return
        session = self._topic_session.get(self._private_topic)
        if session is None:
            return
        await self._reacquire_and_rebind(session, self._private_topic, f"renewal failed: {error}")

    async def _before_resubscribe(self, session: StreamSession) -> None:
        """Session hook: make sure the listen key is valid before resubscribing."""
        topic_name = self._private_topic
        if topic_name is None or self._topic_session.get(topic_name) is not session:
            return
        if self._lease is None:
            await self._fail_private(session, topic_name, "listen key lease missing")
            return
        try:
            key = await self._lease.ensure_valid()
        except ListenKeyError as e:
            await self._fail_private(session, topic_name, str(e))
            return
        await session.rebind(topic_name, key.token)

    async def _on_session_closed(self, session: StreamSession) -> None:
        """Session hook: reconnect budget exhausted, its topics already failed."""
        if session in self._sessions:
            self._sessions.remove(session)
        for name in [n for n, s in self._topic_session.items() if s is session]:
            self._topic_session.pop(name)
            if name == self._private_topic:
                self._private_topic = None
                await self._release_lease()
