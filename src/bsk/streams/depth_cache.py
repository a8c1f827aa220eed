"""Local order book kept in sync from a REST snapshot and diff depth updates.

Synchronisation follows the venue's procedure:

1. Subscribe to ``<symbol>@depth`` (updates buffer in the subscription)
2. Fetch a REST snapshot and load it
3. Skip buffered updates with ``u <= lastUpdateId``
4. Apply each later update; an update whose ``U`` leaves a hole after the
   last applied id means events were lost, so the book is re-snapshotted

A ResyncNotice from the stream layer (socket dropped and resubscribed) also
forces a fresh snapshot, as does ``refresh_interval`` when set.

USAGE:
    book = DepthCacheManager(client.streams, client.market, "BTCUSDT", depth_limit=100)
    await book.start()
    cache = await book.wait_for_sync()
    print(cache.best_bid, cache.best_ask, cache.spread_bps)

    async for cache in book:
        print(cache.mid_price)

    await book.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Iterable
from enum import Enum
from typing import Protocol

from bsk.clock import ClockProtocol, RealClock, SleepProtocol, real_sleep
from bsk.errors import BskError, DepthCacheError, SubscriptionError
from bsk.logging import get_logger
from bsk.models import DepthUpdateEvent, OrderBook
from bsk.rest.market import DEPTH_LIMITS
from bsk.rest.resilience import classify_error
from bsk.streams.router import ResyncNotice, Subscription
from bsk.streams.topics import StreamTopic, depth_topic

logger = get_logger("streams.depth_cache")

DEFAULT_DEPTH_LIMIT = 1000
SNAPSHOT_RETRY_DELAY = 1.0
DEFAULT_SYNC_TIMEOUT = 30.0
UPDATES_CAPACITY = 100

Level = tuple[float, float]


class ApplyResult(str, Enum):
    """Outcome of applying one diff update."""

    APPLIED = "applied"
    STALE = "stale"  # already covered by the snapshot
    GAP = "gap"  # updates were missed


class DepthCache:
    """Price levels of one symbol's order book."""

    def __init__(self, symbol: str) -> None:
        self.symbol = symbol.upper()
        self._bids: dict[float, float] = {}
        self._asks: dict[float, float] = {}
        self.last_update_id = 0
        self.update_time: int | None = None

    def load_snapshot(self, book: OrderBook) -> None:
        """Replace every level with a REST snapshot."""
        self._bids = {price: qty for price, qty in book.bids if qty > 0}
        self._asks = {price: qty for price, qty in book.asks if qty > 0}
        self.last_update_id = book.last_update_id
        self.update_time = None

    def apply(self, event: DepthUpdateEvent) -> ApplyResult:
        """Apply a diff update; zero quantity removes a level."""
        if event.final_update_id <= self.last_update_id:
            return ApplyResult.STALE
        if event.first_update_id > self.last_update_id + 1:
            return ApplyResult.GAP
        _merge(self._bids, event.bids)
        _merge(self._asks, event.asks)
        self.last_update_id = event.final_update_id
        self.update_time = event.event_time
        return ApplyResult.APPLIED

    def copy(self) -> DepthCache:
        clone = DepthCache(self.symbol)
        clone._bids = dict(self._bids)
        clone._asks = dict(self._asks)
        clone.last_update_id = self.last_update_id
        clone.update_time = self.update_time
        return clone

    # =========================================================================
    # Queries
    # =========================================================================

    def bids(self) -> list[Level]:
        """All bids, highest price first."""
        return sorted(self._bids.items(), reverse=True)

    def asks(self) -> list[Level]:
        """All asks, lowest price first."""
        return sorted(self._asks.items())

    def top_bids(self, n: int) -> list[Level]:
        return self.bids()[:n]

    def top_asks(self, n: int) -> list[Level]:
        return self.asks()[:n]

    @property
    def best_bid(self) -> Level | None:
        if not self._bids:
            return None
        price = max(self._bids)
        return price, self._bids[price]

    @property
    def best_ask(self) -> Level | None:
        if not self._asks:
            return None
        price = min(self._asks)
        return price, self._asks[price]

    @property
    def spread(self) -> float | None:
        bid, ask = self.best_bid, self.best_ask
        if bid is None or ask is None:
            return None
        return ask[0] - bid[0]

    @property
    def mid_price(self) -> float | None:
        bid, ask = self.best_bid, self.best_ask
        if bid is None or ask is None:
            return None
        return (bid[0] + ask[0]) / 2.0

    @property
    def spread_bps(self) -> float | None:
        """Spread in basis points of the mid price."""
        mid, spread = self.mid_price, self.spread
        if mid is None or spread is None or mid <= 0:
            return None
        return spread / mid * 10_000

    @property
    def total_bid_volume(self) -> float:
        return sum(self._bids.values())

    @property
    def total_ask_volume(self) -> float:
        return sum(self._asks.values())

    def __repr__(self) -> str:
        return (
            f"DepthCache({self.symbol}, last_update_id={self.last_update_id}, "
            f"bid={self.best_bid}, ask={self.best_ask})"
        )


def _merge(side: dict[float, float], levels: Iterable[Level]) -> None:
    for price, qty in levels:
        if qty == 0:
            side.pop(price, None)
        else:
            side[price] = qty


class DepthCacheState(str, Enum):
    """Depth cache manager lifecycle state."""

    INITIALIZING = "initializing"
    SYNCED = "synced"
    OUT_OF_SYNC = "out_of_sync"
    STOPPED = "stopped"


class SnapshotSource(Protocol):
    """Order book snapshot endpoint (see bsk.rest.market.MarketApi)."""

    async def depth(self, symbol: str, limit: int = ...) -> OrderBook: ...


class TopicSubscriber(Protocol):
    """The part of StreamManager the depth cache uses."""

    async def subscribe(self, topic: StreamTopic | str) -> Subscription: ...


class DepthCacheManager:
    """Keeps a DepthCache in sync on top of a StreamManager subscription."""

    def __init__(
        self,
        streams: TopicSubscriber,
        market: SnapshotSource,
        symbol: str,
        depth_limit: int = DEFAULT_DEPTH_LIMIT,
        speed_ms: int = 1000,
        refresh_interval: float | None = None,
        clock: ClockProtocol | None = None,
        sleep: SleepProtocol | None = None,
    ) -> None:
        """Initialize manager.

        Args:
            streams: Stream manager to subscribe the diff depth topic on
            market: Snapshot source
            symbol: Trading pair
            depth_limit: Levels fetched per snapshot
            speed_ms: Diff depth update speed (1000 or 100)
            refresh_interval: Re-snapshot after this many seconds in sync
            clock: Monotonic time for the refresh schedule
            sleep: Async sleep between failed snapshot attempts

        Raises:
            ValueError: On an unsupported depth limit or update speed
        """
        if depth_limit not in DEPTH_LIMITS:
            raise ValueError(f"depth_limit must be one of {DEPTH_LIMITS}")
        self.symbol = symbol.upper()
        self.topic = depth_topic(symbol, speed_ms=speed_ms)
        self._streams = streams
        self._market = market
        self._depth_limit = depth_limit
        self._refresh_interval = refresh_interval
        self._clock = clock or RealClock()
        self._sleep = sleep or real_sleep

        self._cache = DepthCache(self.symbol)
        self._state = DepthCacheState.INITIALIZING
        self._state_changed = asyncio.Condition()
        self._subscription: Subscription | None = None
        self._task: asyncio.Task[None] | None = None
        self._updates: asyncio.Queue[DepthCache | None] = asyncio.Queue(UPDATES_CAPACITY)
        self._last_snapshot_at = 0.0
        self.error: BskError | None = None
        self.snapshots = 0
        self.gaps = 0

    @property
    def state(self) -> DepthCacheState:
        return self._state

    @property
    def cache(self) -> DepthCache:
        """Copy of the current book."""
        return self._cache.copy()

    async def _set_state(self, state: DepthCacheState) -> None:
        if state is self._state:
            return
        logger.debug(f"Depth cache {self.symbol}: {self._state.value} -> {state.value}")
        self._state = state
        async with self._state_changed:
            self._state_changed.notify_all()

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Subscribe the diff depth topic and start synchronising.

        Raises:
            ConnectError: If the stream could not be subscribed
        """
        if self._task is not None:
            return
        self._subscription = await self._streams.subscribe(self.topic)
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop synchronising and unsubscribe. Terminal."""
        task, self._task = self._task, None
        if task is not None and task is not asyncio.current_task():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            await subscription.cancel()
        await self._finish()

    async def _finish(self) -> None:
        if self._state is DepthCacheState.STOPPED:
            return
        await self._set_state(DepthCacheState.STOPPED)
        self._publish(None)
        logger.info(f"Depth cache {self.symbol} stopped")

    async def wait_for_sync(self, timeout: float | None = DEFAULT_SYNC_TIMEOUT) -> DepthCache:
        """Wait until the book is synced and return a copy of it.

        Raises:
            DepthCacheError: If the manager stopped
            TimeoutError: If no sync happened within ``timeout``
        """
        async with self._state_changed:
            await asyncio.wait_for(
                self._state_changed.wait_for(
                    lambda: self._state in (DepthCacheState.SYNCED, DepthCacheState.STOPPED)
                ),
                timeout,
            )
        if self._state is DepthCacheState.STOPPED:
            raise DepthCacheError(f"Depth cache for {self.symbol} stopped: {self.error}")
        return self.cache

    async def next(self) -> DepthCache | None:
        """Next book copy after an applied update, or None once stopped."""
        if self._state is DepthCacheState.STOPPED and self._updates.empty():
            return None
        return await self._updates.get()

    def __aiter__(self) -> DepthCacheManager:
        return self

    async def __anext__(self) -> DepthCache:
        cache = await self.next()
        if cache is None:
            raise StopAsyncIteration
        return cache

    def _publish(self, item: DepthCache | None) -> None:
        if self._updates.full():
            # Slow consumer: newer books supersede older ones
            self._updates.get_nowait()
        self._updates.put_nowait(item)

    # =========================================================================
    # Synchronisation
    # =========================================================================

    async def _run(self) -> None:
        try:
            while await self._load_snapshot():
                await self._follow()
        except SubscriptionError as e:
            self.error = e
            logger.warning(f"Depth cache {self.symbol}: stream failed: {e}")
        finally:
            await self._finish()

    async def _load_snapshot(self) -> bool:
        """Fetch and load a snapshot. Returns False if the manager has to stop."""
        while True:
            try:
                book = await self._market.depth(self.symbol, limit=self._depth_limit)
            except BskError as e:
                retryable, category = classify_error(e)
                if not retryable:
                    self.error = e
                    logger.error(f"Depth cache {self.symbol}: snapshot failed: {e}")
                    return False
                logger.warning(
                    f"Depth cache {self.symbol}: snapshot failed ({category}), "
                    f"retrying in {SNAPSHOT_RETRY_DELAY}s"
                )
                await self._sleep(SNAPSHOT_RETRY_DELAY)
                continue

            self._cache.load_snapshot(book)
            self._last_snapshot_at = self._clock.monotonic()
            self.snapshots += 1
            await self._set_state(DepthCacheState.SYNCED)
            self._publish(self._cache.copy())
            logger.info(
                f"Depth cache {self.symbol} synced at update {book.last_update_id} "
                f"({len(book.bids)} bids, {len(book.asks)} asks)"
            )
            return True

    async def _follow(self) -> None:
        """Apply updates until the book falls out of sync.

        Raises:
            SubscriptionError: If the depth topic failed terminally
        """
        subscription = self._subscription
        while subscription is not None:
            if self._refresh_due():
                logger.debug(f"Depth cache {self.symbol}: periodic refresh")
                return

            item = await subscription.get()
            if item is None:
                raise SubscriptionError(self.topic.name, "subscription closed")
            if isinstance(item, ResyncNotice):
                logger.info(f"Depth cache {self.symbol}: stream resynced ({item.reason})")
                await self._set_state(DepthCacheState.OUT_OF_SYNC)
                return

            event = item.event
            if not isinstance(event, DepthUpdateEvent):
                logger.debug(f"Depth cache {self.symbol}: ignoring {type(event).__name__}")
                continue

            result = self._cache.apply(event)
            if result is ApplyResult.GAP:
                self.gaps += 1
                logger.warning(
                    f"Depth cache {self.symbol}: gap after update {self._cache.last_update_id} "
                    f"(next starts at {event.first_update_id}), re-snapshotting"
                )
                await self._set_state(DepthCacheState.OUT_OF_SYNC)
                return
            if result is ApplyResult.APPLIED:
                self._publish(self._cache.copy())

    def _refresh_due(self) -> bool:
        if self._refresh_interval is None:
            return False
        return self._clock.monotonic() - self._last_snapshot_at >= self._refresh_interval
