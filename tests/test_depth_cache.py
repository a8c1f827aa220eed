"""Tests for the local order book and its snapshot/diff synchronisation."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

import pytest
from stream_fakes import FakeSleep, wait_until

from bsk.errors import ApiError, DepthCacheError, ServerError, SubscriptionError
from bsk.models import DepthUpdateEvent, OrderBook
from bsk.streams.depth_cache import (
    ApplyResult,
    DepthCache,
    DepthCacheManager,
    DepthCacheState,
)
from bsk.streams.router import DispatchRouter, Subscription
from bsk.streams.topics import StreamTopic

SYMBOL = "BTCUSDT"
TOPIC = "btcusdt@depth"

# =============================================================================
# Test Fixtures
# =============================================================================


@dataclass
class FakeClock:
    """Monotonic clock only; the depth cache never reads wall time."""

    _monotonic: float = 0.0

    def monotonic(self) -> float:
        return self._monotonic

    def advance(self, seconds: float) -> None:
        self._monotonic += seconds


class FakeStreams:
    """Subscribes topics on a bare router; tests publish into it directly."""

    def __init__(self) -> None:
        self.router = DispatchRouter()
        self.cancelled: list[str] = []

    async def subscribe(self, topic: StreamTopic | str) -> Subscription:
        topic = topic if isinstance(topic, StreamTopic) else StreamTopic(topic)

        async def on_cancel() -> None:
            self.cancelled.append(topic.name)

        return self.router.register(topic, on_cancel=on_cancel)

    async def update(self, first: int, final: int, bids=(), asks=()) -> None:
        await self.router.publish(TOPIC, diff(first, final, bids, asks))


class FakeMarket:
    """Serves scripted snapshots; the last one repeats."""

    def __init__(self, *replies: OrderBook | Exception) -> None:
        self.replies = list(replies)
        self.calls: list[tuple[str, int]] = []

    async def depth(self, symbol: str, limit: int = 100) -> OrderBook:
        self.calls.append((symbol, limit))
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, Exception):
            raise reply
        return reply


def snapshot(last_update_id: int, bids=(("100.0", "1.0"),), asks=(("101.0", "1.0"),)) -> OrderBook:
    return OrderBook.model_validate(
        {"lastUpdateId": last_update_id, "bids": list(bids), "asks": list(asks)}
    )


def diff(first: int, final: int, bids=(), asks=()) -> DepthUpdateEvent:
    return DepthUpdateEvent.model_validate(
        {
            "e": "depthUpdate",
            "E": 1_700_000_000_000 + final,
            "s": SYMBOL,
            "U": first,
            "u": final,
            "b": list(bids),
            "a": list(asks),
        }
    )


@pytest.fixture
def streams() -> FakeStreams:
    return FakeStreams()


def make_manager(streams: FakeStreams, market: FakeMarket, **kwargs) -> DepthCacheManager:
    kwargs.setdefault("clock", FakeClock())
    kwargs.setdefault("sleep", FakeSleep())
    return DepthCacheManager(streams, market, SYMBOL, depth_limit=100, **kwargs)


# =============================================================================
# DepthCache
# =============================================================================


class TestDepthCache:
    """Level bookkeeping and queries."""

    def test_snapshot_skips_empty_levels(self) -> None:
        cache = DepthCache("btcusdt")
        cache.load_snapshot(
            snapshot(10, bids=[("100.0", "1.0"), ("99.0", "0")], asks=[("101.0", "2.0")])
        )

        assert cache.symbol == SYMBOL
        assert cache.last_update_id == 10
        assert cache.bids() == [(100.0, 1.0)]
        assert cache.asks() == [(101.0, 2.0)]

    def test_apply_updates_and_removes_levels(self) -> None:
        cache = DepthCache(SYMBOL)
        cache.load_snapshot(snapshot(10))

        result = cache.apply(diff(11, 12, bids=[("100.0", "0"), ("99.5", "3.0")]))

        assert result is ApplyResult.APPLIED
        assert cache.bids() == [(99.5, 3.0)]
        assert cache.last_update_id == 12
        assert cache.update_time == 1_700_000_000_012

    def test_update_straddling_snapshot_applies(self) -> None:
        cache = DepthCache(SYMBOL)
        cache.load_snapshot(snapshot(10))

        assert cache.apply(diff(8, 11)) is ApplyResult.APPLIED
        assert cache.last_update_id == 11

    def test_stale_update_ignored(self) -> None:
        cache = DepthCache(SYMBOL)
        cache.load_snapshot(snapshot(10))

        assert cache.apply(diff(5, 10, bids=[("100.0", "0")])) is ApplyResult.STALE
        assert cache.best_bid == (100.0, 1.0)

    def test_gap_detected_and_book_untouched(self) -> None:
        cache = DepthCache(SYMBOL)
        cache.load_snapshot(snapshot(10))

        assert cache.apply(diff(12, 13, asks=[("101.0", "0")])) is ApplyResult.GAP
        assert cache.last_update_id == 10
        assert cache.best_ask == (101.0, 1.0)

    def test_queries(self) -> None:
        cache = DepthCache(SYMBOL)
        cache.load_snapshot(
            snapshot(
                1,
                bids=[("99.0", "2.0"), ("100.0", "1.0"), ("98.0", "4.0")],
                asks=[("102.0", "1.5"), ("101.0", "0.5")],
            )
        )

        assert cache.best_bid == (100.0, 1.0)
        assert cache.best_ask == (101.0, 0.5)
        assert cache.spread == pytest.approx(1.0)
        assert cache.mid_price == pytest.approx(100.5)
        assert cache.spread_bps == pytest.approx(1.0 / 100.5 * 10_000)
        assert cache.top_bids(2) == [(100.0, 1.0), (99.0, 2.0)]
        assert cache.top_asks(5) == [(101.0, 0.5), (102.0, 1.5)]
        assert cache.total_bid_volume == pytest.approx(7.0)
        assert cache.total_ask_volume == pytest.approx(2.0)

    def test_one_sided_book(self) -> None:
        cache = DepthCache(SYMBOL)
        cache.load_snapshot(snapshot(1, asks=[]))

        assert cache.best_ask is None
        assert cache.spread is None
        assert cache.mid_price is None
        assert cache.spread_bps is None

    def test_copy_is_independent(self) -> None:
        cache = DepthCache(SYMBOL)
        cache.load_snapshot(snapshot(10))
        clone = cache.copy()

        cache.apply(diff(11, 11, bids=[("100.0", "0")]))

        assert clone.best_bid == (100.0, 1.0)
        assert clone.last_update_id == 10


# =============================================================================
# Synchronisation
# =============================================================================


class TestSync:
    """Snapshot plus buffered diffs."""

    @pytest.mark.asyncio
    async def test_buffered_updates_applied_after_snapshot(self, streams: FakeStreams) -> None:
        market = FakeMarket(snapshot(100))
        manager = make_manager(streams, market)
        await manager.start()
        await streams.update(95, 100, bids=[("100.0", "9.0")])
        await streams.update(101, 102, bids=[("100.5", "2.0")])

        await manager.wait_for_sync(timeout=1.0)
        await wait_until(lambda: manager.cache.last_update_id == 102)

        book = manager.cache
        assert manager.state is DepthCacheState.SYNCED
        assert book.best_bid == (100.5, 2.0)
        assert book.top_bids(2)[1] == (100.0, 1.0)
        assert market.calls == [(SYMBOL, 100)]
        await manager.stop()

    @pytest.mark.asyncio
    async def test_updates_stream_book_copies(self, streams: FakeStreams) -> None:
        manager = make_manager(streams, FakeMarket(snapshot(100)))
        await manager.start()

        first = await asyncio.wait_for(manager.next(), 1.0)
        await streams.update(101, 101, asks=[("100.8", "1.0")])
        second = await asyncio.wait_for(manager.next(), 1.0)

        assert first.last_update_id == 100
        assert first.best_ask == (101.0, 1.0)
        assert second.best_ask == (100.8, 1.0)
        await manager.stop()

    @pytest.mark.asyncio
    async def test_gap_triggers_new_snapshot(self, streams: FakeStreams) -> None:
        market = FakeMarket(snapshot(100), snapshot(200, bids=[("99.0", "5.0")]))
        manager = make_manager(streams, market)
        await manager.start()
        await manager.wait_for_sync(timeout=1.0)

        await streams.update(105, 106)
        await wait_until(lambda: manager.snapshots == 2)
        await streams.update(201, 201, bids=[("99.5", "1.0")])
        await wait_until(lambda: manager.cache.last_update_id == 201)

        assert manager.gaps == 1
        assert manager.state is DepthCacheState.SYNCED
        assert manager.cache.bids() == [(99.5, 1.0), (99.0, 5.0)]
        await manager.stop()

    @pytest.mark.asyncio
    async def test_resync_notice_triggers_new_snapshot(self, streams: FakeStreams) -> None:
        market = FakeMarket(snapshot(100), snapshot(300))
        manager = make_manager(streams, market)
        await manager.start()
        await manager.wait_for_sync(timeout=1.0)

        await streams.router.notify_resync(TOPIC, "connection lost", 1)
        await wait_until(lambda: manager.snapshots == 2)

        assert manager.cache.last_update_id == 300
        assert manager.gaps == 0
        await manager.stop()

    @pytest.mark.asyncio
    async def test_periodic_refresh(self, streams: FakeStreams) -> None:
        clock = FakeClock()
        market = FakeMarket(snapshot(100), snapshot(500))
        manager = make_manager(streams, market, clock=clock, refresh_interval=60.0)
        await manager.start()
        await manager.wait_for_sync(timeout=1.0)

        clock.advance(61.0)
        await streams.update(101, 101)
        await wait_until(lambda: manager.snapshots == 2)

        assert manager.cache.last_update_id == 500
        await manager.stop()

    @pytest.mark.asyncio
    async def test_foreign_payloads_skipped(self, streams: FakeStreams) -> None:
        manager = make_manager(streams, FakeMarket(snapshot(100)))
        await manager.start()
        await manager.wait_for_sync(timeout=1.0)

        await streams.router.publish(TOPIC, {"unexpected": True})
        await streams.update(101, 101, bids=[("100.2", "1.0")])
        await wait_until(lambda: manager.cache.last_update_id == 101)

        assert manager.snapshots == 1
        await manager.stop()


# =============================================================================
# Failures and Lifecycle
# =============================================================================


class TestLifecycle:
    """Snapshot errors, stream failure and stop."""

    @pytest.mark.asyncio
    async def test_transient_snapshot_error_retried(self, streams: FakeStreams) -> None:
        sleep = FakeSleep()
        market = FakeMarket(ServerError("Internal error", status_code=503), snapshot(100))
        manager = make_manager(streams, market, sleep=sleep)
        await manager.start()

        await manager.wait_for_sync(timeout=1.0)

        assert sleep.sleeps == [1.0]
        assert len(market.calls) == 2
        await manager.stop()

    @pytest.mark.asyncio
    async def test_rejected_snapshot_stops_manager(self, streams: FakeStreams) -> None:
        market = FakeMarket(ApiError("Invalid symbol.", code=-1121, status_code=400))
        manager = make_manager(streams, market)
        await manager.start()

        with pytest.raises(DepthCacheError, match="stopped"):
            await manager.wait_for_sync(timeout=1.0)
        assert manager.state is DepthCacheState.STOPPED
        assert isinstance(manager.error, ApiError)
        assert await manager.next() is None

    @pytest.mark.asyncio
    async def test_stream_failure_stops_manager(self, streams: FakeStreams) -> None:
        manager = make_manager(streams, FakeMarket(snapshot(100)))
        await manager.start()
        await manager.wait_for_sync(timeout=1.0)

        await streams.router.fail(TOPIC, "reconnect attempts exhausted")
        await wait_until(lambda: manager.state is DepthCacheState.STOPPED)

        assert isinstance(manager.error, SubscriptionError)
        assert [book.last_update_id async for book in manager] == [100]

    @pytest.mark.asyncio
    async def test_stop_unsubscribes(self, streams: FakeStreams) -> None:
        manager = make_manager(streams, FakeMarket(snapshot(100)))
        await manager.start()
        await manager.wait_for_sync(timeout=1.0)

        await manager.stop()
        await manager.stop()

        assert manager.state is DepthCacheState.STOPPED
        assert streams.cancelled == [TOPIC]
        with pytest.raises(DepthCacheError):
            await manager.wait_for_sync(timeout=1.0)

    def test_unsupported_depth_limit_rejected(self, streams: FakeStreams) -> None:
        with pytest.raises(ValueError):
            DepthCacheManager(streams, FakeMarket(snapshot(1)), SYMBOL, depth_limit=7)
