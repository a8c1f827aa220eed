"""Dispatch router: demultiplexes decoded frames to per-topic subscribers.

Each registered topic owns a Subscription with a bounded buffer. On a full
buffer the subscription's overflow policy applies:

- DROP_OLDEST: evict the oldest buffered item, keep the new one
- BLOCK: the publisher waits until the consumer frees a slot

Either way delivery order is never changed. Frames for topics nobody is
registered for are dropped, logged at debug and counted.

USAGE:
    router = DispatchRouter(capacity=1000)
    sub = router.register(trade_topic("BTCUSDT"))
    async for item in sub:
        if isinstance(item, ResyncNotice):
            ...  # state may have been missed, re-snapshot
        else:
            handle(item.event)
"""

from __future__ import annotations

import asyncio
from collections import deque
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from bsk.config import OverflowPolicy
from bsk.errors import SubscriptionError
from bsk.logging import get_logger
from bsk.streams.topics import StreamTopic

logger = get_logger("streams.router")

DEFAULT_CAPACITY = 1000


@dataclass(frozen=True)
class StreamMessage:
    """A data frame for one topic.

    Attributes:
        topic: Topic name
        event: Decoded event model (or the raw payload for unknown events)
        raw: Payload as received
    """

    topic: str
    event: Any
    raw: Any


@dataclass(frozen=True)
class ResyncNotice:
    """Delivered after a reconnect: frames may have been missed."""

    topic: str
    reason: str
    reconnect_count: int


StreamItem = StreamMessage | ResyncNotice


@dataclass
class RouterStats:
    """Delivery counters."""

    delivered: int = 0
    dropped_unregistered: int = 0
    overflow_dropped: int = 0


class Subscription:
    """Bounded, ordered delivery channel for one topic.

    Iterate with ``async for``; iteration ends when the subscription is
    cancelled or the stream is closed, and raises SubscriptionError when the
    topic fails terminally.
    """

    def __init__(
        self,
        topic: StreamTopic,
        capacity: int = DEFAULT_CAPACITY,
        policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
        on_cancel: Callable[[], Awaitable[None]] | None = None,
    ) -> None:
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.topic = topic
        self.capacity = capacity
        self.policy = policy
        self.dropped = 0
        self._on_cancel = on_cancel
        self._buffer: deque[StreamItem] = deque()
        self._cond = asyncio.Condition()
        self._error: SubscriptionError | None = None
        self._ended = False
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def closed(self) -> bool:
        """True once no further items will be delivered."""
        return self._cancelled or self._ended or self._error is not None

    def pending(self) -> int:
        """Number of buffered items."""
        return len(self._buffer)

    async def _put(self, item: StreamItem, force: bool = False) -> int | None:
        """Buffer an item.

        Returns the number of items evicted to make room, or None if the
        subscription closed and the item was discarded.
        """
        async with self._cond:
            if self.closed:
                return None
            evicted = 0
            if not force and len(self._buffer) >= self.capacity:
                if self.policy is OverflowPolicy.BLOCK:
                    await self._cond.wait_for(
                        lambda: len(self._buffer) < self.capacity or self.closed
                    )
                    if self.closed:
                        return None
                else:
                    while len(self._buffer) >= self.capacity:
                        self._buffer.popleft()
                        evicted += 1
                    self.dropped += evicted
            self._buffer.append(item)
            self._cond.notify_all()
            return evicted

    async def _fail(self, error: SubscriptionError) -> None:
        """Terminal error, delivered after the buffered items."""
        async with self._cond:
            if self.closed:
                return
            self._error = error
            self._cond.notify_all()

    async def _end(self) -> None:
        async with self._cond:
            self._ended = True
            self._cond.notify_all()

    async def _detach(self) -> None:
        """Stop delivery immediately without invoking the cancel hook."""
        async with self._cond:
            self._cancelled = True
            self._buffer.clear()
            self._cond.notify_all()

    async def get(self) -> StreamItem | None:
        """Next item in order, or None once the subscription is closed.

        Raises:
            SubscriptionError: If the topic failed terminally
        """
        async with self._cond:
            await self._cond.wait_for(lambda: bool(self._buffer) or self.closed)
            if self._cancelled:
                return None
            if self._buffer:
                item = self._buffer.popleft()
                self._cond.notify_all()  # wake a blocked publisher
                return item
            if self._error is not None:
                raise self._error
            return None

    async def cancel(self) -> None:
        """Cancel the subscription; buffered items are discarded."""
        if self._cancelled:
            return
        await self._detach()
        if self._on_cancel is not None:
            await self._on_cancel()

    def __aiter__(self) -> Subscription:
        return self

    async def __anext__(self) -> StreamItem:
        item = await self.get()
        if item is None:
            raise StopAsyncIteration
        return item


class DispatchRouter:
    """Routes frames by topic name to registered subscriptions."""

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        policy: OverflowPolicy = OverflowPolicy.DROP_OLDEST,
    ) -> None:
        self._capacity = capacity
        self._policy = policy
        self._subscriptions: dict[str, Subscription] = {}
        self.stats = RouterStats()

    def register(
        self,
        topic: StreamTopic,
        capacity: int | None = None,
        policy: OverflowPolicy | None = None,
        on_cancel: Callable[[], Awaitable[None]] | None = None,
    ) -> Subscription:
        """Create the delivery channel for a topic.

        Raises:
            ValueError: If the topic is already registered
        """
        if topic.name in self._subscriptions:
            raise ValueError(f"Topic {topic.name!r} is already registered")
        subscription = Subscription(
            topic,
            capacity=capacity or self._capacity,
            policy=policy or self._policy,
            on_cancel=on_cancel,
        )
        self._subscriptions[topic.name] = subscription
        return subscription

    async def unregister(self, topic_name: str) -> Subscription | None:
        subscription = self._subscriptions.pop(topic_name, None)
        if subscription is not None:
            await subscription._detach()
        return subscription

    def is_registered(self, topic_name: str) -> bool:
        return topic_name in self._subscriptions

    def get(self, topic_name: str) -> Subscription | None:
        return self._subscriptions.get(topic_name)

    @property
    def topics(self) -> list[str]:
        return list(self._subscriptions)

    async def publish(self, topic_name: str, event: Any, raw: Any = None) -> bool:
        """Deliver a data frame. Returns False if it was not buffered."""
        subscription = self._subscriptions.get(topic_name)
        if subscription is None:
            self.stats.dropped_unregistered += 1
            logger.debug(f"Dropping frame for unregistered topic {topic_name}")
            return False
        evicted = await subscription._put(StreamMessage(topic_name, event, raw))
        if evicted is None:
            return False
        self.stats.delivered += 1
        if evicted:
            self.stats.overflow_dropped += evicted
            logger.debug(f"Buffer full for {topic_name}, dropped {evicted} oldest")
        return True

    async def notify_resync(self, topic_name: str, reason: str, reconnect_count: int) -> None:
        subscription = self._subscriptions.get(topic_name)
        if subscription is not None:
            await subscription._put(
                ResyncNotice(topic_name, reason, reconnect_count), force=True
            )

    async def fail(self, topic_name: str, reason: str) -> None:
        """Fail a topic terminally and forget it."""
        subscription = self._subscriptions.pop(topic_name, None)
        if subscription is not None:
            logger.warning(f"Topic {topic_name} failed: {reason}")
            await subscription._fail(SubscriptionError(topic_name, reason))

    async def close(self) -> None:
        """End every subscription; consumers drain what is buffered."""
        subscriptions = list(self._subscriptions.values())
        self._subscriptions.clear()
        for subscription in subscriptions:
            await subscription._end()
