"""WebSocket streaming: sessions, reconnect, listen key lease, router."""

from bsk.streams.depth_cache import (
    ApplyResult,
    DepthCache,
    DepthCacheManager,
    DepthCacheState,
)
from bsk.streams.listen_key import LeaseState, ListenKey, ListenKeyLease
from bsk.streams.manager import StreamManager
from bsk.streams.reconnect import ReconnectPolicy
from bsk.streams.router import (
    DispatchRouter,
    ResyncNotice,
    StreamItem,
    StreamMessage,
    Subscription,
)
from bsk.streams.session import SessionState, StreamSession, websocket_connector
from bsk.streams.topics import (
    USER_DATA_TOPIC,
    StreamTopic,
    agg_trade_topic,
    all_tickers_topic,
    book_ticker_topic,
    depth_topic,
    kline_topic,
    ticker_topic,
    trade_topic,
)

__all__ = [
    # Manager and sessions
    "SessionState",
    "StreamManager",
    "StreamSession",
    "ReconnectPolicy",
    "websocket_connector",
    # Local order book
    "ApplyResult",
    "DepthCache",
    "DepthCacheManager",
    "DepthCacheState",
    # Listen key
    "LeaseState",
    "ListenKey",
    "ListenKeyLease",
    # Delivery
    "DispatchRouter",
    "ResyncNotice",
    "StreamItem",
    "StreamMessage",
    "Subscription",
    # Topics
    "USER_DATA_TOPIC",
    "StreamTopic",
    "agg_trade_topic",
    "all_tickers_topic",
    "book_ticker_topic",
    "depth_topic",
    "kline_topic",
    "ticker_topic",
    "trade_topic",
]
