"""Public market data endpoints (no credentials required).

USAGE:
    market = MarketApi(rest_client)
    ticker = await market.price("BTCUSDT")
    book = await market.depth("BTCUSDT", limit=5)
"""

from __future__ import annotations

from typing import Any

from bsk.auth.request_builder import RestRequest
from bsk.models import (
    AggregateTrade,
    AvgPrice,
    BookTicker,
    Kline,
    OrderBook,
    RecentTrade,
    ServerTime,
    Ticker24h,
    TickerPrice,
)
from bsk.rest.transport import RestClient

# Valid depth limits
DEPTH_LIMITS = (5, 10, 20, 50, 100, 500, 1000, 5000)


class MarketApi:
    """Market data endpoints under /api/v3."""

    def __init__(self, rest: RestClient) -> None:
        self._rest = rest

    async def _get(self, path: str, params: dict[str, Any] | None = None) -> Any:
        return await self._rest.send(RestRequest.create("GET", path, params))

    async def ping(self) -> bool:
        """Test connectivity."""
        await self._get("/api/v3/ping")
        return True

    async def server_time(self) -> ServerTime:
        return ServerTime.model_validate(await self._get("/api/v3/time"))

    async def exchange_info(
        self, symbol: str | None = None, symbols: list[str] | None = None
    ) -> dict[str, Any]:
        """Exchange trading rules and symbol information (raw payload)."""
        return await self._get("/api/v3/exchangeInfo", {"symbol": symbol, "symbols": symbols})

    async def depth(self, symbol: str, limit: int = 100) -> OrderBook:
        """Get order book snapshot.

        Raises:
            ValueError: If limit is not one the venue accepts
        """
        if limit not in DEPTH_LIMITS:
            raise ValueError(f"limit must be one of {DEPTH_LIMITS}")
        data = await self._get("/api/v3/depth", {"symbol": symbol, "limit": limit})
        return OrderBook.model_validate(data)

    async def trades(self, symbol: str, limit: int = 500) -> list[RecentTrade]:
        data = await self._get("/api/v3/trades", {"symbol": symbol, "limit": limit})
        return [RecentTrade.model_validate(t) for t in data]

    async def agg_trades(
        self,
        symbol: str,
        from_id: int | None = None,
        start_time: int | None = None,
        end_time: int | None = None,
        limit: int = 500,
    ) -> list[AggregateTrade]:
        params = {
            "symbol": symbol,
            "fromId": from_id,
            "startTime": start_time,
            "endTime": end_time,
            "limit": limit,
        }
        data = await self._get("/api/v3/aggTrades", params)
        return [AggregateTrade.model_validate(t) for t in data]

    async def klines(
        self,
        symbol: str,
        interval: str,
        start_time: int | None = None,
        end_time: int | None = None,
        limit: int = 500,
    ) -> list[Kline]:
        params = {
            "symbol": symbol,
            "interval": interval,
            "startTime": start_time,
            "endTime": end_time,
            "limit": limit,
        }
        data = await self._get("/api/v3/klines", params)
        return [Kline.from_row(row) for row in data]

    async def avg_price(self, symbol: str) -> AvgPrice:
        return AvgPrice.model_validate(await self._get("/api/v3/avgPrice", {"symbol": symbol}))

    async def ticker_24h(self, symbol: str) -> Ticker24h:
        data = await self._get("/api/v3/ticker/24hr", {"symbol": symbol})
        return Ticker24h.model_validate(data)

    async def price(self, symbol: str) -> TickerPrice:
        """Latest price for one symbol."""
        data = await self._get("/api/v3/ticker/price", {"symbol": symbol})
        return TickerPrice.model_validate(data)

    async def prices(self) -> list[TickerPrice]:
        """Latest price for every symbol."""
        data = await self._get("/api/v3/ticker/price")
        return [TickerPrice.model_validate(p) for p in data]

    async def book_ticker(self, symbol: str) -> BookTicker:
        data = await self._get("/api/v3/ticker/bookTicker", {"symbol": symbol})
        return BookTicker.model_validate(data)
