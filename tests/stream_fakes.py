"""In-memory WebSocket doubles shared by the stream session and manager tests."""

from __future__ import annotations

import asyncio
import json
from typing import Any


class FakeConnection:
    """Scripted stand-in for a websockets client connection."""

    def __init__(self, auto_pong: bool = True) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed = False
        self.pings = 0
        self.auto_pong = auto_pong
        self._inbox: asyncio.Queue[str | BaseException] = asyncio.Queue()

    async def send(self, message: str) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.sent.append(json.loads(message))

    async def recv(self) -> str:
        item = await self._inbox.get()
        if isinstance(item, BaseException):
            raise item
        return item

    async def ping(self) -> asyncio.Future[None]:
        self.pings += 1
        waiter: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        if self.auto_pong:
            waiter.set_result(None)
        return waiter

    async def close(self) -> None:
        self.closed = True

    def feed(self, frame: dict[str, Any] | str) -> None:
        self._inbox.put_nowait(frame if isinstance(frame, str) else json.dumps(frame))

    def feed_data(self, stream: str, data: Any) -> None:
        self.feed({"stream": stream, "data": data})

    def drop(self) -> None:
        """Simulate the peer going away."""
        self._inbox.put_nowait(ConnectionError("connection reset by peer"))

    def subscribes(self) -> list[dict[str, Any]]:
        return [m for m in self.sent if m["method"] == "SUBSCRIBE"]


class FakeConnector:
    """Hands out FakeConnections; can be told to refuse connections."""

    def __init__(self) -> None:
        self.connections: list[FakeConnection] = []
        self.urls: list[str] = []
        self.refuse = False
        self.failures_left = 0
        self.auto_pong = True

    async def __call__(self, url: str, open_timeout: float) -> FakeConnection:
        self.urls.append(url)
        if self.refuse or self.failures_left > 0:
            self.failures_left = max(0, self.failures_left - 1)
            raise OSError("connection refused")
        conn = FakeConnection(auto_pong=self.auto_pong)
        self.connections.append(conn)
        return conn

    @property
    def last(self) -> FakeConnection:
        return self.connections[-1]


class FakeSleep:
    """Records reconnect delays; yields once instead of sleeping."""

    def __init__(self) -> None:
        self.sleeps: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await asyncio.sleep(0)


class StepSleep:
    """Sleep that blocks until the test releases it, recording durations."""

    def __init__(self) -> None:
        self.sleeps: list[float] = []
        self._steps = asyncio.Semaphore(0)

    async def __call__(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await self._steps.acquire()

    def step(self) -> None:
        self._steps.release()


async def never_sleep(seconds: float) -> None:
    """Parks a renewal loop until it is cancelled."""
    await asyncio.Event().wait()


def trade(symbol: str, trade_id: int, price: str = "100.0") -> dict[str, Any]:
    return {
        "e": "trade",
        "E": 1_700_000_000_000 + trade_id,
        "s": symbol,
        "t": trade_id,
        "p": price,
        "q": "1.0",
        "T": 1_700_000_000_000 + trade_id,
        "m": False,
    }


async def wait_until(predicate, timeout: float = 1.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.001)

    await asyncio.wait_for(_poll(), timeout)
