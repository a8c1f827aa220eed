"""Pydantic v2 data models for venue responses and stream events."""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class Side(str, Enum):
    """Order side."""

    BUY = "BUY"
    SELL = "SELL"


class OrderType(str, Enum):
    """Order type."""

    LIMIT = "LIMIT"
    MARKET = "MARKET"
    STOP_LOSS = "STOP_LOSS"
    STOP_LOSS_LIMIT = "STOP_LOSS_LIMIT"
    TAKE_PROFIT = "TAKE_PROFIT"
    TAKE_PROFIT_LIMIT = "TAKE_PROFIT_LIMIT"
    LIMIT_MAKER = "LIMIT_MAKER"


class TimeInForce(str, Enum):
    """Order time in force."""

    GTC = "GTC"
    IOC = "IOC"
    FOK = "FOK"


class _VenueModel(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)


# =============================================================================
# Market data (REST)
# =============================================================================


class ServerTime(_VenueModel):
    """Server clock in ms since the epoch."""

    server_time: int = Field(alias="serverTime")


class TickerPrice(_VenueModel):
    """Latest price for a symbol."""

    symbol: str
    price: float


class BookTicker(_VenueModel):
    """Best bid/ask for a symbol."""

    symbol: str
    bid_price: float = Field(alias="bidPrice")
    bid_qty: float = Field(alias="bidQty")
    ask_price: float = Field(alias="askPrice")
    ask_qty: float = Field(alias="askQty")

    @property
    def spread(self) -> float:
        return self.ask_price - self.bid_price


class OrderBook(_VenueModel):
    """Order book snapshot; levels are (price, quantity)."""

    last_update_id: int = Field(alias="lastUpdateId")
    bids: list[tuple[float, float]] = Field(default_factory=list)
    asks: list[tuple[float, float]] = Field(default_factory=list)

    @property
    def best_bid(self) -> float | None:
        return self.bids[0][0] if self.bids else None

    @property
    def best_ask(self) -> float | None:
        return self.asks[0][0] if self.asks else None


class RecentTrade(_VenueModel):
    """Public trade from /api/v3/trades."""

    id: int
    price: float
    qty: float
    quote_qty: float = Field(default=0.0, alias="quoteQty")
    time: int
    is_buyer_maker: bool = Field(alias="isBuyerMaker")


class AggregateTrade(_VenueModel):
    """Compressed trade from /api/v3/aggTrades."""

    agg_trade_id: int = Field(alias="a")
    price: float = Field(alias="p")
    qty: float = Field(alias="q")
    first_trade_id: int = Field(alias="f")
    last_trade_id: int = Field(alias="l")
    time: int = Field(alias="T")
    is_buyer_maker: bool = Field(alias="m")


class Kline(_VenueModel):
    """Candlestick; REST returns these as positional arrays."""

    open_time: int
    open: float
    high: float
    low: float
    close: float
    volume: float
    close_time: int
    quote_volume: float = 0.0
    trades: int = 0

    @classmethod
    def from_row(cls, row: list[Any]) -> Kline:
        """Build from a /api/v3/klines row."""
        return cls(
            open_time=row[0],
            open=row[1],
            high=row[2],
            low=row[3],
            close=row[4],
            volume=row[5],
            close_time=row[6],
            quote_volume=row[7] if len(row) > 7 else 0.0,
            trades=row[8] if len(row) > 8 else 0,
        )


class AvgPrice(_VenueModel):
    """Current average price."""

    mins: int
    price: float


class Ticker24h(_VenueModel):
    """Rolling 24 hour statistics."""

    symbol: str
    price_change: float = Field(default=0.0, alias="priceChange")
    price_change_percent: float = Field(default=0.0, alias="priceChangePercent")
    last_price: float = Field(default=0.0, alias="lastPrice")
    open_price: float = Field(default=0.0, alias="openPrice")
    high_price: float = Field(default=0.0, alias="highPrice")
    low_price: float = Field(default=0.0, alias="lowPrice")
    volume: float = 0.0
    quote_volume: float = Field(default=0.0, alias="quoteVolume")
    count: int = 0


# =============================================================================
# Account and orders (REST)
# =============================================================================


class Balance(_VenueModel):
    """Asset balance."""

    asset: str
    free: float
    locked: float

    @property
    def total(self) -> float:
        return self.free + self.locked


class AccountInfo(_VenueModel):
    """Spot account snapshot."""

    maker_commission: int = Field(default=0, alias="makerCommission")
    taker_commission: int = Field(default=0, alias="takerCommission")
    can_trade: bool = Field(default=False, alias="canTrade")
    can_withdraw: bool = Field(default=False, alias="canWithdraw")
    can_deposit: bool = Field(default=False, alias="canDeposit")
    update_time: int = Field(default=0, alias="updateTime")
    account_type: str = Field(default="SPOT", alias="accountType")
    balances: list[Balance] = Field(default_factory=list)
    permissions: list[str] = Field(default_factory=list)

    def balance(self, asset: str) -> Balance | None:
        """Get the balance for one asset, if present."""
        asset = asset.upper()
        for entry in self.balances:
            if entry.asset == asset:
                return entry
        return None

    def non_zero_balances(self) -> list[Balance]:
        return [b for b in self.balances if b.total > 0]


class Order(_VenueModel):
    """Order state as returned by order queries and placement (RESULT/FULL)."""

    symbol: str
    order_id: int = Field(alias="orderId")
    client_order_id: str = Field(default="", alias="clientOrderId")
    price: float = 0.0
    orig_qty: float = Field(default=0.0, alias="origQty")
    executed_qty: float = Field(default=0.0, alias="executedQty")
    status: str = ""
    time_in_force: str | None = Field(default=None, alias="timeInForce")
    type: str | None = None
    side: Side | None = None
    time: int | None = None
    transact_time: int | None = Field(default=None, alias="transactTime")
    update_time: int | None = Field(default=None, alias="updateTime")


class OrderListEntry(_VenueModel):
    symbol: str
    order_id: int = Field(alias="orderId")
    client_order_id: str = Field(default="", alias="clientOrderId")


class OrderList(_VenueModel):
    """OCO order list; ``order_reports`` is only filled on placement and cancel."""

    order_list_id: int = Field(alias="orderListId")
    contingency_type: str = Field(default="OCO", alias="contingencyType")
    list_status_type: str = Field(default="", alias="listStatusType")
    list_order_status: str = Field(default="", alias="listOrderStatus")
    list_client_order_id: str = Field(default="", alias="listClientOrderId")
    transaction_time: int | None = Field(default=None, alias="transactionTime")
    symbol: str
    orders: list[OrderListEntry] = Field(default_factory=list)
    order_reports: list[Order] = Field(default_factory=list, alias="orderReports")

    @property
    def is_done(self) -> bool:
        return self.list_order_status == "ALL_DONE"


class AccountTrade(_VenueModel):
    """Own trade from /api/v3/myTrades."""

    symbol: str
    id: int
    order_id: int = Field(alias="orderId")
    price: float
    qty: float
    commission: float = 0.0
    commission_asset: str = Field(default="", alias="commissionAsset")
    time: int
    is_buyer: bool = Field(alias="isBuyer")
    is_maker: bool = Field(alias="isMaker")


class ListenKeyResponse(_VenueModel):
    """Response of POST /api/v3/userDataStream."""

    listen_key: str = Field(alias="listenKey")


# =============================================================================
# Wallet and margin (SAPI)
# =============================================================================


class SystemStatus(_VenueModel):
    """Venue system status (0 normal, 1 maintenance)."""

    status: int
    msg: str = ""

    @property
    def is_normal(self) -> bool:
        return self.status == 0


class TradeFee(_VenueModel):
    """Commission rates for a symbol."""

    symbol: str
    maker_commission: float = Field(alias="makerCommission")
    taker_commission: float = Field(alias="takerCommission")


class DepositAddress(_VenueModel):
    """Deposit address for a coin."""

    coin: str
    address: str
    tag: str = ""
    url: str = ""


class MarginAsset(_VenueModel):
    """One asset of the cross margin account."""

    asset: str
    borrowed: float = 0.0
    free: float = 0.0
    interest: float = 0.0
    locked: float = 0.0
    net_asset: float = Field(default=0.0, alias="netAsset")


class MarginAccount(_VenueModel):
    """Cross margin account details."""

    borrow_enabled: bool = Field(default=False, alias="borrowEnabled")
    trade_enabled: bool = Field(default=False, alias="tradeEnabled")
    transfer_enabled: bool = Field(default=False, alias="transferEnabled")
    margin_level: float = Field(default=0.0, alias="marginLevel")
    total_asset_of_btc: float = Field(default=0.0, alias="totalAssetOfBtc")
    total_liability_of_btc: float = Field(default=0.0, alias="totalLiabilityOfBtc")
    total_net_asset_of_btc: float = Field(default=0.0, alias="totalNetAssetOfBtc")
    user_assets: list[MarginAsset] = Field(default_factory=list, alias="userAssets")


class MaxBorrowable(_VenueModel):
    """Maximum borrowable amount for an asset."""

    amount: float
    borrow_limit: float | None = Field(default=None, alias="borrowLimit")


class MarginTransaction(_VenueModel):
    """Borrow/repay transaction id."""

    tran_id: int = Field(alias="tranId")


# =============================================================================
# Stream events
# =============================================================================


class TradeEvent(_VenueModel):
    """<symbol>@trade"""

    event_time: int = Field(alias="E")
    symbol: str = Field(alias="s")
    trade_id: int = Field(alias="t")
    price: float = Field(alias="p")
    qty: float = Field(alias="q")
    trade_time: int = Field(alias="T")
    is_buyer_maker: bool = Field(alias="m")


class AggTradeEvent(_VenueModel):
    """<symbol>@aggTrade"""

    event_time: int = Field(alias="E")
    symbol: str = Field(alias="s")
    agg_trade_id: int = Field(alias="a")
    price: float = Field(alias="p")
    qty: float = Field(alias="q")
    first_trade_id: int = Field(alias="f")
    last_trade_id: int = Field(alias="l")
    trade_time: int = Field(alias="T")
    is_buyer_maker: bool = Field(alias="m")


class BookTickerEvent(_VenueModel):
    """<symbol>@bookTicker (carries no event type)."""

    update_id: int = Field(alias="u")
    symbol: str = Field(alias="s")
    bid_price: float = Field(alias="b")
    bid_qty: float = Field(alias="B")
    ask_price: float = Field(alias="a")
    ask_qty: float = Field(alias="A")


class DepthUpdateEvent(_VenueModel):
    """<symbol>@depth diff update."""

    event_time: int = Field(alias="E")
    symbol: str = Field(alias="s")
    first_update_id: int = Field(alias="U")
    final_update_id: int = Field(alias="u")
    bids: list[tuple[float, float]] = Field(default_factory=list, alias="b")
    asks: list[tuple[float, float]] = Field(default_factory=list, alias="a")


class PartialDepthEvent(_VenueModel):
    """<symbol>@depth<levels> snapshot (carries no event type)."""

    last_update_id: int = Field(alias="lastUpdateId")
    bids: list[tuple[float, float]] = Field(default_factory=list)
    asks: list[tuple[float, float]] = Field(default_factory=list)


class KlineData(_VenueModel):
    """Candle payload of a kline event."""

    start_time: int = Field(alias="t")
    close_time: int = Field(alias="T")
    interval: str = Field(alias="i")
    open: float = Field(alias="o")
    close: float = Field(alias="c")
    high: float = Field(alias="h")
    low: float = Field(alias="l")
    volume: float = Field(alias="v")
    trades: int = Field(default=0, alias="n")
    is_closed: bool = Field(alias="x")


class KlineEvent(_VenueModel):
    """<symbol>@kline_<interval>"""

    event_time: int = Field(alias="E")
    symbol: str = Field(alias="s")
    kline: KlineData = Field(alias="k")


class TickerEvent(_VenueModel):
    """<symbol>@ticker / !ticker@arr element."""

    event_time: int = Field(alias="E")
    symbol: str = Field(alias="s")
    price_change: float = Field(alias="p")
    price_change_percent: float = Field(alias="P")
    last_price: float = Field(alias="c")
    open_price: float = Field(alias="o")
    high_price: float = Field(alias="h")
    low_price: float = Field(alias="l")
    volume: float = Field(alias="v")
    quote_volume: float = Field(alias="q")


class ExecutionReport(_VenueModel):
    """User data: order update."""

    event_time: int = Field(alias="E")
    symbol: str = Field(alias="s")
    client_order_id: str = Field(alias="c")
    side: Side = Field(alias="S")
    order_type: str = Field(alias="o")
    quantity: float = Field(alias="q")
    price: float = Field(alias="p")
    execution_type: str = Field(alias="x")
    order_status: str = Field(alias="X")
    order_id: int = Field(alias="i")
    last_filled_qty: float = Field(default=0.0, alias="l")
    cumulative_filled_qty: float = Field(default=0.0, alias="z")
    last_filled_price: float = Field(default=0.0, alias="L")
    transaction_time: int = Field(default=0, alias="T")


class AccountBalance(_VenueModel):
    """Balance entry inside outboundAccountPosition."""

    asset: str = Field(alias="a")
    free: float = Field(alias="f")
    locked: float = Field(alias="l")


class OutboundAccountPosition(_VenueModel):
    """User data: balances changed."""

    event_time: int = Field(alias="E")
    last_update_time: int = Field(alias="u")
    balances: list[AccountBalance] = Field(default_factory=list, alias="B")


class BalanceUpdate(_VenueModel):
    """User data: deposit/withdrawal/transfer."""

    event_time: int = Field(alias="E")
    asset: str = Field(alias="a")
    delta: float = Field(alias="d")
    clear_time: int = Field(alias="T")


class ListenKeyExpired(_VenueModel):
    """User data: the listen key is no longer valid."""

    event_time: int = Field(alias="E")
    listen_key: str = Field(default="", alias="listenKey")


LISTEN_KEY_EXPIRED = "listenKeyExpired"

EVENT_TYPES: dict[str, type[BaseModel]] = {
    "trade": TradeEvent,
    "aggTrade": AggTradeEvent,
    "depthUpdate": DepthUpdateEvent,
    "kline": KlineEvent,
    "24hrTicker": TickerEvent,
    "executionReport": ExecutionReport,
    "outboundAccountPosition": OutboundAccountPosition,
    "balanceUpdate": BalanceUpdate,
    LISTEN_KEY_EXPIRED: ListenKeyExpired,
}


def decode_event(data: Any) -> Any:
    """Decode a stream payload into its event model.

    Payloads of unknown shape are returned unchanged, so new venue event
    types still reach subscribers.
    """
    if isinstance(data, list):
        return [decode_event(item) for item in data]
    if not isinstance(data, dict):
        return data

    event_type = data.get("e")
    if event_type is not None:
        model = EVENT_TYPES.get(event_type)
        return model.model_validate(data) if model else data

    # Event types without an "e" field
    if "lastUpdateId" in data:
        return PartialDepthEvent.model_validate(data)
    if {"u", "s", "b", "a"} <= data.keys():
        return BookTickerEvent.model_validate(data)
    return data
