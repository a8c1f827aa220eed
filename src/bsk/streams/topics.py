"""Stream topics and stream-name helpers.

USAGE:
    topic = trade_topic("BTCUSDT")        # btcusdt@trade
    topic = kline_topic("ETHUSDT", "1h")  # ethusdt@kline_1h
    topic = USER_DATA_TOPIC               # private, bound to a listen key
"""

from __future__ import annotations

from dataclasses import dataclass

KLINE_INTERVALS = frozenset(
    {"1s", "1m", "3m", "5m", "15m", "30m", "1h", "2h", "4h", "6h", "8h", "12h", "1d", "3d",
     "1w", "1M"}
)
PARTIAL_DEPTH_LEVELS = (5, 10, 20)
DEPTH_SPEEDS_MS = (100, 1000)


@dataclass(frozen=True)
class StreamTopic:
    """Named subscription target.

    Public topics are subscribed on the wire under their own name. The
    private user-data topic is subscribed under the current listen key.
    """

    name: str
    private: bool = False

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("topic name must not be empty")

    def __str__(self) -> str:
        return self.name


USER_DATA_TOPIC = StreamTopic("userData", private=True)


def _symbol(symbol: str) -> str:
    return symbol.strip().lower()


def trade_topic(symbol: str) -> StreamTopic:
    return StreamTopic(f"{_symbol(symbol)}@trade")


def agg_trade_topic(symbol: str) -> StreamTopic:
    return StreamTopic(f"{_symbol(symbol)}@aggTrade")


def kline_topic(symbol: str, interval: str) -> StreamTopic:
    if interval not in KLINE_INTERVALS:
        raise ValueError(f"Unknown kline interval {interval!r}")
    return StreamTopic(f"{_symbol(symbol)}@kline_{interval}")


def book_ticker_topic(symbol: str) -> StreamTopic:
    return StreamTopic(f"{_symbol(symbol)}@bookTicker")


def ticker_topic(symbol: str) -> StreamTopic:
    return StreamTopic(f"{_symbol(symbol)}@ticker")


def all_tickers_topic() -> StreamTopic:
    return StreamTopic("!ticker@arr")


def depth_topic(symbol: str, levels: int | None = None, speed_ms: int = 1000) -> StreamTopic:
    """Diff depth stream, or partial book depth when ``levels`` is given.

    Raises:
        ValueError: On unsupported levels or update speed
    """
    if speed_ms not in DEPTH_SPEEDS_MS:
        raise ValueError(f"speed_ms must be one of {DEPTH_SPEEDS_MS}")
    name = f"{_symbol(symbol)}@depth"
    if levels is not None:
        if levels not in PARTIAL_DEPTH_LEVELS:
            raise ValueError(f"levels must be one of {PARTIAL_DEPTH_LEVELS}")
        name += str(levels)
    if speed_ms != 1000:
        name += f"@{speed_ms}ms"
    return StreamTopic(name)
