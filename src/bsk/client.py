"""Client facade wiring settings, signing, REST endpoint groups and streams.

USAGE:
    async with Client.from_env() as client:
        ticker = await client.market.price("BTCUSDT")
        account = await client.account.get_account()

        trades = await client.streams.subscribe(trade_topic("BTCUSDT"))
        async for item in trades:
            ...
"""

from __future__ import annotations

from typing import Any

import httpx

from bsk.auth.credentials import Credential, credential_from_env
from bsk.auth.request_builder import AuthenticatedRequestBuilder
from bsk.clock import ClockProtocol, SleepProtocol
from bsk.config import Profile, Settings, get_settings
from bsk.logging import get_logger
from bsk.rest.account import AccountApi
from bsk.rest.margin import MarginApi
from bsk.rest.market import MarketApi
from bsk.rest.resilience import RetryPolicy
from bsk.rest.transport import RestClient, RestTransport
from bsk.rest.user_stream import UserStreamApi
from bsk.rest.wallet import WalletApi
from bsk.streams.depth_cache import DepthCacheManager
from bsk.streams.manager import StreamManager
from bsk.streams.session import Connector

logger = get_logger("client")


class Client:
    """Entry point for REST and streaming access to one venue profile."""

    def __init__(
        self,
        settings: Settings | None = None,
        credential: Credential | None = None,
        clock: ClockProtocol | None = None,
        http_client: httpx.AsyncClient | None = None,
        ws_connector: Connector | None = None,
        sleep: SleepProtocol | None = None,
    ) -> None:
        """Initialize client.

        Args:
            settings: Client settings (global settings by default)
            credential: Signing credential, None for public data only
            clock: Time source for timestamps, renewals and backoff
            http_client: Pre-built httpx client (tests inject a MockTransport)
            ws_connector: WebSocket connector (websockets by default)
            sleep: Async sleep for retry and reconnect backoff
        """
        self.settings = settings or get_settings()
        self._credential = credential
        self._clock = clock
        self._ws_connector = ws_connector
        self._sleep = sleep

        builder = AuthenticatedRequestBuilder(
            credential=credential,
            clock=clock,
            recv_window=self.settings.recv_window,
        )
        transport = RestTransport(
            self.settings.rest_endpoint,
            timeout=self.settings.http_timeout,
            client=http_client,
        )
        retry = RetryPolicy(
            max_retries=self.settings.http_retries,
            base_delay=self.settings.backoff_base,
            max_delay=self.settings.backoff_max,
        )
        self.rest = RestClient(builder, transport, retry=retry, sleep=sleep)

        self.market = MarketApi(self.rest)
        self.account = AccountApi(self.rest)
        self.user_stream = UserStreamApi(self.rest)
        self.wallet = WalletApi(self.rest)
        self.margin = MarginApi(self.rest)
        self._streams: StreamManager | None = None

    @classmethod
    def from_env(
        cls,
        settings: Settings | None = None,
        prefix: str = "BINANCE",
        **kwargs: Any,
    ) -> Client:
        """Build a client with credentials from ``{prefix}_*`` variables."""
        credential = credential_from_env(prefix)
        if credential is None:
            logger.debug("No credentials in environment, public endpoints only")
        return cls(settings=settings, credential=credential, **kwargs)

    @classmethod
    def for_profile(cls, profile: Profile, credential: Credential | None = None) -> Client:
        """Build a client for a preset endpoint profile."""
        return cls(settings=Settings(profile=profile), credential=credential)

    @property
    def has_credentials(self) -> bool:
        return self._credential is not None

    @property
    def streams(self) -> StreamManager:
        """Stream manager (created on first use)."""
        if self._streams is None:
            self._streams = StreamManager(
                self.settings.ws_endpoint,
                settings=self.settings.stream,
                user_stream=self.user_stream if self.has_credentials else None,
                connector=self._ws_connector,
                clock=self._clock,
                sleep=self._sleep,
            )
        return self._streams

    def depth_cache(
        self,
        symbol: str,
        depth_limit: int = 1000,
        speed_ms: int = 1000,
        refresh_interval: float | None = None,
    ) -> DepthCacheManager:
        """Local order book for ``symbol`` on the shared stream manager (call start())."""
        return DepthCacheManager(
            self.streams,
            self.market,
            symbol,
            depth_limit=depth_limit,
            speed_ms=speed_ms,
            refresh_interval=refresh_interval,
            clock=self._clock,
            sleep=self._sleep,
        )

    async def sync_time(self) -> int:
        """Align request timestamps with the server clock."""
        return await self.rest.sync_time()

    async def close(self) -> None:
        if self._streams is not None:
            await self._streams.close()
            self._streams = None
        await self.rest.aclose()

    async def __aenter__(self) -> Client:
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.close()
