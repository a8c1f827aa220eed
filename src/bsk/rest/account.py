"""Signed spot account and order endpoints."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from bsk.auth.request_builder import RestRequest, SecurityType
from bsk.logging import get_logger
from bsk.models import (
    AccountInfo,
    AccountTrade,
    Order,
    OrderList,
    OrderType,
    Side,
    TimeInForce,
)
from bsk.rest.transport import RestClient

logger = get_logger("rest.account")

Number = int | float | Decimal | str


class AccountApi:
    """Account and order endpoints. All calls are SIGNED."""

    def __init__(self, rest: RestClient) -> None:
        self._rest = rest

    async def _signed(
        self, method: str, path: str, params: dict[str, Any] | None = None
    ) -> Any:
        request = RestRequest.create(method, path, params, security=SecurityType.SIGNED)
        return await self._rest.send(request)

    async def get_account(self) -> AccountInfo:
        return AccountInfo.model_validate(await self._signed("GET", "/api/v3/account"))

    async def open_orders(self, symbol: str | None = None) -> list[Order]:
        data = await self._signed("GET", "/api/v3/openOrders", {"symbol": symbol})
        return [Order.model_validate(o) for o in data]

    async def get_order(
        self,
        symbol: str,
        order_id: int | None = None,
        client_order_id: str | None = None,
    ) -> Order:
        """Query an order by venue id or client id.

        Raises:
            ValueError: If neither id is given
        """
        if order_id is None and client_order_id is None:
            raise ValueError("order_id or client_order_id is required")
        params = {"symbol": symbol, "orderId": order_id, "origClientOrderId": client_order_id}
        return Order.model_validate(await self._signed("GET", "/api/v3/order", params))

    def _order_params(
        self,
        symbol: str,
        side: Side,
        order_type: OrderType,
        quantity: Number | None,
        price: Number | None,
        time_in_force: TimeInForce | None,
        quote_order_qty: Number | None,
        client_order_id: str | None,
    ) -> dict[str, Any]:
        if order_type is OrderType.LIMIT:
            if price is None or quantity is None:
                raise ValueError("LIMIT orders require price and quantity")
            time_in_force = time_in_force or TimeInForce.GTC
        if order_type is OrderType.MARKET and quantity is None and quote_order_qty is None:
            raise ValueError("MARKET orders require quantity or quote_order_qty")

        return {
            "symbol": symbol,
            "side": side.value,
            "type": order_type.value,
            "timeInForce": time_in_force.value if time_in_force else None,
            "quantity": quantity,
            "quoteOrderQty": quote_order_qty,
            "price": price,
            "newClientOrderId": client_order_id,
        }

    async def create_order(
        self,
        symbol: str,
        side: Side,
        order_type: OrderType,
        quantity: Number | None = None,
        price: Number | None = None,
        time_in_force: TimeInForce | None = None,
        quote_order_qty: Number | None = None,
        client_order_id: str | None = None,
    ) -> Order:
        """Place an order.

        Raises:
            ValueError: If required fields for the order type are missing
            ApiError: If the venue rejects the order
        """
        params = self._order_params(
            symbol, side, order_type, quantity, price, time_in_force, quote_order_qty,
            client_order_id,
        )
        data = await self._signed("POST", "/api/v3/order", params)
        order = Order.model_validate(data)
        logger.info(
            f"Order placed: {symbol} {side.value} {order_type.value} "
            f"id={order.order_id} status={order.status}"
        )
        return order

    async def test_order(
        self,
        symbol: str,
        side: Side,
        order_type: OrderType,
        quantity: Number | None = None,
        price: Number | None = None,
        time_in_force: TimeInForce | None = None,
        quote_order_qty: Number | None = None,
    ) -> None:
        """Validate an order without sending it to the matching engine."""
        params = self._order_params(
            symbol, side, order_type, quantity, price, time_in_force, quote_order_qty, None
        )
        await self._signed("POST", "/api/v3/order/test", params)

    async def cancel_order(
        self,
        symbol: str,
        order_id: int | None = None,
        client_order_id: str | None = None,
    ) -> Order:
        if order_id is None and client_order_id is None:
            raise ValueError("order_id or client_order_id is required")
        params = {"symbol": symbol, "orderId": order_id, "origClientOrderId": client_order_id}
        data = await self._signed("DELETE", "/api/v3/order", params)
        logger.info(f"Order cancelled: {symbol} id={data.get('orderId')}")
        return Order.model_validate(data)

    async def cancel_all_orders(self, symbol: str) -> list[Order]:
        data = await self._signed("DELETE", "/api/v3/openOrders", {"symbol": symbol})
        return [Order.model_validate(o) for o in data if "orderId" in o]

    async def my_trades(
        self,
        symbol: str,
        start_time: int | None = None,
        end_time: int | None = None,
        from_id: int | None = None,
        limit: int = 500,
    ) -> list[AccountTrade]:
        params = {
            "symbol": symbol,
            "startTime": start_time,
            "endTime": end_time,
            "fromId": from_id,
            "limit": limit,
        }
        data = await self._signed("GET", "/api/v3/myTrades", params)
        return [AccountTrade.model_validate(t) for t in data]

    # =========================================================================
    # OCO order lists
    # =========================================================================

    async def create_oco(
        self,
        symbol: str,
        side: Side,
        quantity: Number,
        price: Number,
        stop_price: Number,
        stop_limit_price: Number | None = None,
        stop_limit_time_in_force: TimeInForce | None = None,
        list_client_order_id: str | None = None,
    ) -> OrderList:
        """Place a limit order paired with a stop(-limit) order; a fill on one cancels the other.

        Raises:
            ApiError: If the venue rejects the order list
        """
        if stop_limit_price is not None:
            stop_limit_time_in_force = stop_limit_time_in_force or TimeInForce.GTC
        params = {
            "symbol": symbol,
            "side": side.value,
            "quantity": quantity,
            "price": price,
            "stopPrice": stop_price,
            "stopLimitPrice": stop_limit_price,
            "stopLimitTimeInForce": (
                stop_limit_time_in_force.value if stop_limit_time_in_force else None
            ),
            "listClientOrderId": list_client_order_id,
        }
        order_list = OrderList.model_validate(
            await self._signed("POST", "/api/v3/order/oco", params)
        )
        logger.info(
            f"OCO placed: {symbol} {side.value} list={order_list.order_list_id} "
            f"orders={[o.order_id for o in order_list.orders]}"
        )
        return order_list

    async def get_order_list(
        self,
        order_list_id: int | None = None,
        client_order_list_id: str | None = None,
    ) -> OrderList:
        if order_list_id is None and client_order_list_id is None:
            raise ValueError("order_list_id or client_order_list_id is required")
        params = {"orderListId": order_list_id, "origClientOrderId": client_order_list_id}
        return OrderList.model_validate(await self._signed("GET", "/api/v3/orderList", params))

    async def cancel_order_list(
        self,
        symbol: str,
        order_list_id: int | None = None,
        client_order_list_id: str | None = None,
    ) -> OrderList:
        """Cancel every order of a list.

        Raises:
            ValueError: If neither id is given
        """
        if order_list_id is None and client_order_list_id is None:
            raise ValueError("order_list_id or client_order_list_id is required")
        params = {
            "symbol": symbol,
            "orderListId": order_list_id,
            "listClientOrderId": client_order_list_id,
        }
        data = await self._signed("DELETE", "/api/v3/orderList", params)
        logger.info(f"Order list cancelled: {symbol} list={data.get('orderListId')}")
        return OrderList.model_validate(data)

    async def open_order_lists(self) -> list[OrderList]:
        data = await self._signed("GET", "/api/v3/openOrderList")
        return [OrderList.model_validate(o) for o in data]
