"""Cross margin endpoints under /sapi/v1/margin."""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from bsk.auth.request_builder import RestRequest, SecurityType
from bsk.logging import get_logger
from bsk.models import MarginAccount, MarginTransaction, MaxBorrowable
from bsk.rest.transport import RestClient

logger = get_logger("rest.margin")


class MarginApi:
    """Margin account, borrow and repay. All calls are SIGNED."""

    def __init__(self, rest: RestClient) -> None:
        self._rest = rest

    async def _signed(self, method: str, path: str, params: dict[str, Any] | None = None) -> Any:
        request = RestRequest.create(method, path, params, security=SecurityType.SIGNED)
        return await self._rest.send(request)

    async def account(self) -> MarginAccount:
        return MarginAccount.model_validate(await self._signed("GET", "/sapi/v1/margin/account"))

    async def max_borrowable(self, asset: str, isolated_symbol: str | None = None) -> MaxBorrowable:
        params = {"asset": asset, "isolatedSymbol": isolated_symbol}
        data = await self._signed("GET", "/sapi/v1/margin/maxBorrowable", params)
        return MaxBorrowable.model_validate(data)

    async def borrow(self, asset: str, amount: Decimal | str) -> MarginTransaction:
        data = await self._signed(
            "POST", "/sapi/v1/margin/loan", {"asset": asset, "amount": amount}
        )
        logger.info(f"Margin borrow {amount} {asset}")
        return MarginTransaction.model_validate(data)

    async def repay(self, asset: str, amount: Decimal | str) -> MarginTransaction:
        data = await self._signed(
            "POST", "/sapi/v1/margin/repay", {"asset": asset, "amount": amount}
        )
        logger.info(f"Margin repay {amount} {asset}")
        return MarginTransaction.model_validate(data)
