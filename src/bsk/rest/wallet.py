"""Wallet endpoints under /sapi/v1."""

from __future__ import annotations

from typing import Any

from bsk.auth.request_builder import RestRequest, SecurityType
from bsk.models import DepositAddress, SystemStatus, TradeFee
from bsk.rest.transport import RestClient


class WalletApi:
    """System and wallet status endpoints."""

    def __init__(self, rest: RestClient) -> None:
        self._rest = rest

    async def _signed(self, method: str, path: str, params: dict[str, Any] | None = None) -> Any:
        request = RestRequest.create(method, path, params, security=SecurityType.SIGNED)
        return await self._rest.send(request)

    async def system_status(self) -> SystemStatus:
        """Venue system status (public)."""
        data = await self._rest.send(RestRequest.create("GET", "/sapi/v1/system/status"))
        return SystemStatus.model_validate(data)

    async def account_status(self) -> str:
        data = await self._signed("GET", "/sapi/v1/account/status")
        return str(data.get("data", ""))

    async def api_trading_status(self) -> dict[str, Any]:
        """Trading status of the API key (raw payload)."""
        return await self._signed("GET", "/sapi/v1/account/apiTradingStatus")

    async def trade_fee(self, symbol: str | None = None) -> list[TradeFee]:
        data = await self._signed("GET", "/sapi/v1/asset/tradeFee", {"symbol": symbol})
        return [TradeFee.model_validate(f) for f in data]

    async def deposit_address(self, coin: str, network: str | None = None) -> DepositAddress:
        params = {"coin": coin, "network": network}
        data = await self._signed("GET", "/sapi/v1/capital/deposit/address", params)
        return DepositAddress.model_validate(data)
