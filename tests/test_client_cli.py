"""Tests for the Client facade and the CLI."""

from __future__ import annotations

import httpx
import pytest
from stream_fakes import FakeConnector, FakeSleep, trade, wait_until
from typer.testing import CliRunner

from bsk import cli
from bsk.auth.credentials import SharedSecret
from bsk.client import Client
from bsk.config import Profile, Settings
from bsk.errors import ConfigurationError
from bsk.streams.router import StreamMessage
from bsk.streams.topics import USER_DATA_TOPIC, trade_topic

runner = CliRunner()


def market_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path == "/api/v3/ticker/price":
        return httpx.Response(200, json={"symbol": "BTCUSDT", "price": "43000.5"})
    if path == "/api/v3/depth":
        return httpx.Response(
            200,
            json={"lastUpdateId": 1, "bids": [["43000", "1.5"]], "asks": [["43001", "2"]]},
        )
    if path == "/api/v3/time":
        return httpx.Response(200, json={"serverTime": 1_700_000_000_000})
    if path == "/api/v3/userDataStream":
        return httpx.Response(200, json={"listenKey": "lk-1"})
    return httpx.Response(404, json={"code": -1, "msg": "not found"})


def make_client(credential: SharedSecret | None = None, **kwargs) -> Client:
    return Client(
        settings=Settings(profile=Profile.TESTNET),
        credential=credential,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(market_handler)),
        sleep=FakeSleep(),
        **kwargs,
    )


# =============================================================================
# Client
# =============================================================================


class TestClient:
    """Wiring of settings, REST groups and the stream manager."""

    @pytest.mark.asyncio
    async def test_market_call(self) -> None:
        async with make_client() as client:
            ticker = await client.market.price("BTCUSDT")
        assert ticker.price == pytest.approx(43000.5)

    @pytest.mark.asyncio
    async def test_streams_use_profile_endpoint(self) -> None:
        connector = FakeConnector()
        async with make_client(ws_connector=connector) as client:
            sub = await client.streams.subscribe(trade_topic("BTCUSDT"))
            connector.last.feed_data("btcusdt@trade", trade("BTCUSDT", 1))
            item = await sub.get()

        assert connector.urls == ["wss://testnet.binance.vision/stream"]
        assert isinstance(item, StreamMessage)

    @pytest.mark.asyncio
    async def test_private_stream_needs_credentials(self) -> None:
        async with make_client(ws_connector=FakeConnector()) as client:
            assert not client.has_credentials
            with pytest.raises(ConfigurationError):
                await client.streams.subscribe(USER_DATA_TOPIC)

    @pytest.mark.asyncio
    async def test_private_stream_with_credentials(self) -> None:
        connector = FakeConnector()
        client = make_client(SharedSecret("k", "s"), ws_connector=connector)
        await client.streams.subscribe(USER_DATA_TOPIC)

        assert connector.last.subscribes()[0]["params"] == ["lk-1"]
        await client.close()

    @pytest.mark.asyncio
    async def test_depth_cache_on_shared_streams(self) -> None:
        connector = FakeConnector()
        async with make_client(ws_connector=connector) as client:
            book = client.depth_cache("BTCUSDT", depth_limit=100)
            await book.start()
            cache = await book.wait_for_sync(timeout=1.0)
            connector.last.feed_data(
                "btcusdt@depth",
                {"e": "depthUpdate", "E": 1, "s": "BTCUSDT", "U": 2, "u": 2, "b": [], "a": []},
            )
            await wait_until(lambda: book.cache.last_update_id == 2)
            await book.stop()

        assert cache.best_bid == (43000.0, 1.5)
        assert connector.last.subscribes()[0]["params"] == ["btcusdt@depth"]

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("BINANCE_API_KEY", "env-key")
        monkeypatch.setenv("BINANCE_SECRET_KEY", "env-secret")
        monkeypatch.delenv("BINANCE_PRIVATE_KEY", raising=False)
        client = Client.from_env(settings=Settings())
        assert client.has_credentials
        assert client.rest.builder.has_credentials


# =============================================================================
# CLI
# =============================================================================


class TestCli:
    """Commands run against a mocked client."""

    @pytest.fixture(autouse=True)
    def _mock_client(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setattr(cli, "_client", lambda ctx: make_client())

    def test_version(self) -> None:
        result = runner.invoke(cli.app, ["--version"])
        assert result.exit_code == 0
        assert "bsk v" in result.output

    def test_price(self) -> None:
        result = runner.invoke(cli.app, ["price", "btcusdt"])
        assert result.exit_code == 0
        assert "BTCUSDT" in result.output
        assert "43000.5" in result.output

    def test_depth(self) -> None:
        result = runner.invoke(cli.app, ["depth", "BTCUSDT", "--limit", "5"])
        assert result.exit_code == 0
        assert "43001" in result.output

    def test_depth_invalid_limit(self) -> None:
        result = runner.invoke(cli.app, ["depth", "BTCUSDT", "--limit", "7"])
        assert result.exit_code == 1

    def test_account_without_credentials(self) -> None:
        result = runner.invoke(cli.app, ["account"])
        assert result.exit_code == 1
        assert "No credentials" in result.output
