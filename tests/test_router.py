"""Tests for the dispatch router and subscriptions."""

from __future__ import annotations

import asyncio

import pytest

from bsk.config import OverflowPolicy
from bsk.errors import SubscriptionError
from bsk.streams.router import DispatchRouter, ResyncNotice, StreamMessage
from bsk.streams.topics import trade_topic

BTC = trade_topic("BTCUSDT")
ETH = trade_topic("ETHUSDT")


async def drain(sub, count: int) -> list:
    return [await sub.get() for _ in range(count)]


# =============================================================================
# Routing
# =============================================================================


class TestRouting:
    """Frames reach exactly the subscriber of their topic, in order."""

    @pytest.mark.asyncio
    async def test_frames_routed_by_topic(self) -> None:
        router = DispatchRouter()
        btc = router.register(BTC)
        eth = router.register(ETH)

        await router.publish("btcusdt@trade", {"p": 1})
        await router.publish("ethusdt@trade", {"p": 2})
        await router.publish("btcusdt@trade", {"p": 3})

        assert [m.event["p"] for m in await drain(btc, 2)] == [1, 3]
        item = await eth.get()
        assert isinstance(item, StreamMessage)
        assert item.topic == "ethusdt@trade"
        assert item.event == {"p": 2}

    @pytest.mark.asyncio
    async def test_unregistered_topic_dropped_and_counted(self) -> None:
        router = DispatchRouter()
        router.register(BTC)

        delivered = await router.publish("xrpusdt@trade", {"p": 1})

        assert delivered is False
        assert router.stats.dropped_unregistered == 1
        assert router.stats.delivered == 0

    def test_duplicate_registration_rejected(self) -> None:
        router = DispatchRouter()
        router.register(BTC)
        with pytest.raises(ValueError):
            router.register(BTC)

    def test_zero_capacity_rejected(self) -> None:
        with pytest.raises(ValueError):
            DispatchRouter().register(BTC, capacity=0)


# =============================================================================
# Overflow
# =============================================================================


class TestOverflow:
    """Bounded buffers under each overflow policy."""

    @pytest.mark.asyncio
    async def test_drop_oldest(self) -> None:
        router = DispatchRouter(capacity=3)
        sub = router.register(BTC)

        for i in range(5):
            await router.publish(BTC.name, i)

        assert sub.pending() == 3
        assert sub.dropped == 2
        assert router.stats.overflow_dropped == 2
        assert [m.event for m in await drain(sub, 3)] == [2, 3, 4]

    @pytest.mark.asyncio
    async def test_block_waits_for_consumer(self) -> None:
        router = DispatchRouter()
        sub = router.register(BTC, capacity=2, policy=OverflowPolicy.BLOCK)

        await router.publish(BTC.name, 1)
        await router.publish(BTC.name, 2)
        blocked = asyncio.create_task(router.publish(BTC.name, 3))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert not blocked.done()

        first = await sub.get()
        await asyncio.wait_for(blocked, timeout=1.0)

        assert first.event == 1
        assert [m.event for m in await drain(sub, 2)] == [2, 3]
        assert sub.dropped == 0

    @pytest.mark.asyncio
    async def test_resync_notice_bypasses_capacity(self) -> None:
        router = DispatchRouter(capacity=1)
        sub = router.register(BTC)

        await router.publish(BTC.name, "before")
        await router.notify_resync(BTC.name, "connection lost", 1)

        first, second = await drain(sub, 2)
        assert first.event == "before"
        assert isinstance(second, ResyncNotice)
        assert second.reconnect_count == 1
        assert second.topic == BTC.name


# =============================================================================
# Lifecycle
# =============================================================================


class TestLifecycle:
    """Cancel, failure and close semantics."""

    @pytest.mark.asyncio
    async def test_cancel_discards_buffer_and_ends_iteration(self) -> None:
        cancelled: list[str] = []

        async def on_cancel() -> None:
            cancelled.append("called")

        router = DispatchRouter()
        sub = router.register(BTC, on_cancel=on_cancel)
        await router.publish(BTC.name, 1)

        await sub.cancel()
        await sub.cancel()

        assert sub.cancelled
        assert await sub.get() is None
        assert [item async for item in sub] == []
        assert cancelled == ["called"]

    @pytest.mark.asyncio
    async def test_cancel_wakes_waiting_consumer(self) -> None:
        router = DispatchRouter()
        sub = router.register(BTC)
        waiter = asyncio.create_task(sub.get())
        await asyncio.sleep(0)

        await sub.cancel()

        assert await asyncio.wait_for(waiter, timeout=1.0) is None

    @pytest.mark.asyncio
    async def test_failure_after_buffered_items(self) -> None:
        router = DispatchRouter()
        sub = router.register(BTC)
        await router.publish(BTC.name, 1)
        await router.publish(BTC.name, 2)

        await router.fail(BTC.name, "reconnect attempts exhausted")

        received = []
        with pytest.raises(SubscriptionError) as exc_info:
            async for item in sub:
                received.append(item.event)
        assert received == [1, 2]
        assert exc_info.value.topic == BTC.name
        assert "exhausted" in exc_info.value.reason
        assert not router.is_registered(BTC.name)

    @pytest.mark.asyncio
    async def test_publish_after_fail_is_unregistered(self) -> None:
        router = DispatchRouter()
        router.register(BTC)
        await router.fail(BTC.name, "boom")

        assert await router.publish(BTC.name, 1) is False

    @pytest.mark.asyncio
    async def test_discarded_frames_not_counted_as_delivered(self) -> None:
        router = DispatchRouter()
        sub = router.register(BTC, capacity=1, policy=OverflowPolicy.BLOCK)
        await router.publish(BTC.name, 1)
        blocked = asyncio.create_task(router.publish(BTC.name, 2))
        await asyncio.sleep(0)

        await sub.cancel()

        assert await asyncio.wait_for(blocked, timeout=1.0) is False
        assert await router.publish(BTC.name, 3) is False
        assert router.stats.delivered == 1

    @pytest.mark.asyncio
    async def test_close_ends_iteration_after_drain(self) -> None:
        router = DispatchRouter()
        sub = router.register(BTC)
        await router.publish(BTC.name, 1)

        await router.close()

        assert [item.event async for item in sub] == [1]
        assert router.topics == []

    @pytest.mark.asyncio
    async def test_unregister_detaches_without_hook(self) -> None:
        calls: list[int] = []

        async def on_cancel() -> None:
            calls.append(1)

        router = DispatchRouter()
        sub = router.register(BTC, on_cancel=on_cancel)
        await router.unregister(BTC.name)

        assert sub.cancelled
        assert calls == []
        assert router.get(BTC.name) is None
