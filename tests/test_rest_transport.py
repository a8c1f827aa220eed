"""Tests for the REST transport, retry loop and endpoint wrappers.

Uses httpx.MockTransport so no network is touched.
"""

from __future__ import annotations

import json
import random
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from urllib.parse import parse_qsl

import httpx
import pytest

from bsk.auth.credentials import SharedSecret
from bsk.auth.request_builder import API_KEY_HEADER, AuthenticatedRequestBuilder, RestRequest
from bsk.errors import (
    ApiError,
    ConfigurationError,
    ListenKeyError,
    NetworkError,
    RateLimitError,
    ServerError,
)
from bsk.models import OrderType, Side, TickerPrice
from bsk.rest import (
    AccountApi,
    MarketApi,
    RestClient,
    RestTransport,
    RetryPolicy,
    UserStreamApi,
    classify_error,
)

BASE_URL = "https://api.test"

# =============================================================================
# Test Fixtures
# =============================================================================


@dataclass
class FakeClock:
    """Fake clock for deterministic testing."""

    _current_time: datetime = field(
        default_factory=lambda: datetime.fromtimestamp(1_700_000_000, tz=UTC)
    )

    def now(self) -> datetime:
        return self._current_time

    def monotonic(self) -> float:
        return 0.0

    def advance(self, seconds: float) -> None:
        self._current_time += timedelta(seconds=seconds)


class FakeSleep:
    """Records sleep durations without sleeping."""

    def __init__(self) -> None:
        self.sleeps: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.sleeps.append(seconds)


Handler = Callable[[httpx.Request], httpx.Response]


def make_client(
    handler: Handler,
    creds: SharedSecret | None = None,
    sleep: FakeSleep | None = None,
    clock: FakeClock | None = None,
    max_retries: int = 3,
) -> RestClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    builder = AuthenticatedRequestBuilder(creds, clock=clock or FakeClock())
    return RestClient(
        builder,
        RestTransport(BASE_URL, client=http),
        retry=RetryPolicy(max_retries=max_retries),
        sleep=sleep or FakeSleep(),
    )


def query_of(request: httpx.Request) -> list[tuple[str, str]]:
    return parse_qsl(request.url.query.decode(), keep_blank_values=True)


# =============================================================================
# Transport
# =============================================================================


class TestTransport:
    """Single-exchange behavior of RestTransport."""

    @pytest.mark.asyncio
    async def test_public_price_request(self) -> None:
        """GET ticker/price with one param and no auth material."""
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"symbol": "BTCUSDT", "price": "43000.01"})

        client = make_client(handler)
        ticker = await MarketApi(client).price("BTCUSDT")

        assert isinstance(ticker, TickerPrice)
        assert ticker.price == pytest.approx(43000.01)
        assert len(seen) == 1
        assert seen[0].method == "GET"
        assert str(seen[0].url) == f"{BASE_URL}/api/v3/ticker/price?symbol=BTCUSDT"
        assert API_KEY_HEADER not in seen[0].headers
        assert "signature" not in str(seen[0].url)

    @pytest.mark.asyncio
    async def test_error_payload_mapped(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={"code": -1102, "msg": "Mandatory parameter"})

        client = make_client(handler)
        with pytest.raises(ApiError) as exc_info:
            await client.send(RestRequest.create("GET", "/api/v3/depth"))

        assert exc_info.value.code == -1102
        assert exc_info.value.status_code == 400
        assert "Mandatory parameter" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_used_weight_tracked(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={}, headers={"X-MBX-USED-WEIGHT-1M": "42"})

        http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        transport = RestTransport(BASE_URL, client=http)
        builder = AuthenticatedRequestBuilder(clock=FakeClock())
        await transport.execute(builder.build(RestRequest.create("GET", "/api/v3/ping")))

        assert transport.used_weight == 42

    @pytest.mark.asyncio
    async def test_empty_body_returns_none(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200)

        client = make_client(handler)
        assert await client.send(RestRequest.create("GET", "/api/v3/ping")) is None


# =============================================================================
# Retries
# =============================================================================


class TestRetries:
    """Retry loop in RestClient."""

    @pytest.mark.asyncio
    async def test_rate_limit_honors_retry_after(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            if calls == 1:
                return httpx.Response(
                    429, json={"code": -1003, "msg": "Too many"}, headers={"Retry-After": "7"}
                )
            return httpx.Response(200, json={"serverTime": 1})

        sleep = FakeSleep()
        client = make_client(handler, sleep=sleep)
        data = await client.send(RestRequest.create("GET", "/api/v3/time"))

        assert data == {"serverTime": 1}
        assert calls == 2
        assert sleep.sleeps == [pytest.approx(7.0)]
        assert client.stats.total_rate_limited == 1
        assert client.stats.total_retries == 1

    @pytest.mark.asyncio
    async def test_server_errors_exhaust_budget(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(503, text="unavailable")

        sleep = FakeSleep()
        client = make_client(handler, sleep=sleep, max_retries=2)
        with pytest.raises(ServerError):
            await client.send(RestRequest.create("GET", "/api/v3/time"))

        assert calls == 3
        assert len(sleep.sleeps) == 2
        assert client.stats.total_5xx == 3
        assert client.stats.total_errors == 1

    @pytest.mark.asyncio
    async def test_client_error_not_retried(self) -> None:
        calls = 0

        def handler(request: httpx.Request) -> httpx.Response:
            nonlocal calls
            calls += 1
            return httpx.Response(400, json={"code": -1100, "msg": "Illegal characters"})

        sleep = FakeSleep()
        client = make_client(handler, sleep=sleep)
        with pytest.raises(ApiError):
            await client.send(RestRequest.create("GET", "/api/v3/depth"))

        assert calls == 1
        assert sleep.sleeps == []

    @pytest.mark.asyncio
    async def test_connection_failure_becomes_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = make_client(handler, max_retries=1)
        with pytest.raises(NetworkError):
            await client.send(RestRequest.create("GET", "/api/v3/ping"))

    @pytest.mark.asyncio
    async def test_timeout_becomes_network_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("slow", request=request)

        client = make_client(handler, max_retries=0)
        with pytest.raises(NetworkError, match="timed out"):
            await client.send(RestRequest.create("GET", "/api/v3/ping"))

    @pytest.mark.asyncio
    async def test_retry_is_resigned(self) -> None:
        """A retried signed request carries a fresh timestamp and signature."""
        clock = FakeClock()
        queries: list[dict[str, str]] = []

        def handler(request: httpx.Request) -> httpx.Response:
            queries.append(dict(query_of(request)))
            clock.advance(1)
            if len(queries) == 1:
                return httpx.Response(500, text="boom")
            return httpx.Response(200, json={"balances": []})

        client = make_client(handler, creds=SharedSecret("k", "s"), clock=clock)
        await AccountApi(client).get_account()

        assert len(queries) == 2
        assert queries[0]["timestamp"] != queries[1]["timestamp"]
        assert queries[0]["signature"] != queries[1]["signature"]

    @pytest.mark.asyncio
    async def test_timestamp_error_triggers_time_sync(self) -> None:
        paths: list[str] = []
        server_time = 1_700_000_003_000

        def handler(request: httpx.Request) -> httpx.Response:
            paths.append(request.url.path)
            if request.url.path == "/api/v3/time":
                return httpx.Response(200, json={"serverTime": server_time})
            if paths.count("/api/v3/account") == 1:
                return httpx.Response(400, json={"code": -1021, "msg": "Timestamp outside"})
            params = dict(query_of(request))
            assert int(params["timestamp"]) >= server_time
            return httpx.Response(200, json={"balances": []})

        client = make_client(handler, creds=SharedSecret("k", "s"))
        await AccountApi(client).get_account()

        assert paths == ["/api/v3/account", "/api/v3/time", "/api/v3/account"]
        assert client.builder.time_offset_ms == 3000

    @pytest.mark.asyncio
    async def test_time_sync_corrects_clock_ahead_of_server(self) -> None:
        """A local clock ahead of the server gets a lower timestamp on resend."""
        server_time = 1_699_999_997_000
        timestamps: list[int] = []

        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path == "/api/v3/time":
                return httpx.Response(200, json={"serverTime": server_time})
            timestamp = int(dict(query_of(request))["timestamp"])
            timestamps.append(timestamp)
            if timestamp > server_time + 1000:
                return httpx.Response(400, json={"code": -1021, "msg": "Timestamp ahead"})
            return httpx.Response(200, json={"balances": []})

        client = make_client(handler, creds=SharedSecret("k", "s"))
        await AccountApi(client).get_account()

        assert timestamps == [1_700_000_000_000, server_time]
        assert client.builder.time_offset_ms == -3000


# =============================================================================
# Endpoint Wrappers
# =============================================================================


class TestEndpoints:
    """Security type and parameter placement of endpoint wrappers."""

    @pytest.mark.asyncio
    async def test_user_stream_lifecycle(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.method == "POST":
                return httpx.Response(200, json={"listenKey": "lk-123"})
            return httpx.Response(200, json={})

        api = UserStreamApi(make_client(handler, creds=SharedSecret("my-key", "s")))
        assert await api.start() == "lk-123"
        await api.keepalive("lk-123")
        await api.close("lk-123")

        assert [r.method for r in seen] == ["POST", "PUT", "DELETE"]
        for request in seen:
            assert request.headers[API_KEY_HEADER] == "my-key"
            assert "signature" not in request.url.query.decode()
        assert query_of(seen[1]) == [("listenKey", "lk-123")]

    @pytest.mark.asyncio
    async def test_user_stream_requires_key(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        with pytest.raises(ConfigurationError):
            await UserStreamApi(make_client(handler)).start()

    @pytest.mark.asyncio
    async def test_user_stream_malformed_reply(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"code": 0})

        api = UserStreamApi(make_client(handler, creds=SharedSecret("k", "s")))
        with pytest.raises(ListenKeyError, match="Malformed"):
            await api.start()

    @pytest.mark.asyncio
    async def test_create_order_signed(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={"symbol": "BTCUSDT", "orderId": 7, "status": "NEW", "side": "BUY"},
            )

        client = make_client(handler, creds=SharedSecret("k", "s"))
        order = await AccountApi(client).create_order(
            "BTCUSDT", Side.BUY, OrderType.LIMIT, quantity=1, price="0.1"
        )

        assert order.order_id == 7
        names = [name for name, _ in query_of(seen[0])]
        assert names == [
            "symbol", "side", "type", "timeInForce", "quantity", "price",
            "timestamp", "recvWindow", "signature",
        ]

    @pytest.mark.asyncio
    async def test_limit_order_requires_price(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        client = make_client(handler, creds=SharedSecret("k", "s"))
        with pytest.raises(ValueError):
            await AccountApi(client).create_order("BTCUSDT", Side.BUY, OrderType.LIMIT, quantity=1)

    @pytest.mark.asyncio
    async def test_depth_limit_validated(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, content=json.dumps({"lastUpdateId": 1, "bids": [], "asks": []})
            )

        market = MarketApi(make_client(handler))
        with pytest.raises(ValueError):
            await market.depth("BTCUSDT", limit=7)
        book = await market.depth("BTCUSDT", limit=5)
        assert book.last_update_id == 1

    @pytest.mark.asyncio
    async def test_create_oco_signed(self) -> None:
        seen: list[httpx.Request] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "orderListId": 3,
                    "contingencyType": "OCO",
                    "listStatusType": "EXEC_STARTED",
                    "listOrderStatus": "EXECUTING",
                    "listClientOrderId": "list-1",
                    "transactionTime": 1_700_000_000_000,
                    "symbol": "BTCUSDT",
                    "orders": [
                        {"symbol": "BTCUSDT", "orderId": 11, "clientOrderId": "a"},
                        {"symbol": "BTCUSDT", "orderId": 12, "clientOrderId": "b"},
                    ],
                    "orderReports": [
                        {"symbol": "BTCUSDT", "orderId": 11, "type": "STOP_LOSS_LIMIT"},
                        {"symbol": "BTCUSDT", "orderId": 12, "type": "LIMIT_MAKER"},
                    ],
                },
            )

        client = make_client(handler, creds=SharedSecret("k", "s"))
        order_list = await AccountApi(client).create_oco(
            "BTCUSDT", Side.SELL, 1, "55000", "48000", stop_limit_price="47900"
        )

        assert seen[0].method == "POST"
        assert seen[0].url.path == "/api/v3/order/oco"
        params = dict(query_of(seen[0]))
        assert params["stopLimitTimeInForce"] == "GTC"
        assert "listClientOrderId" not in params
        assert "signature" in params
        assert order_list.order_list_id == 3
        assert [o.order_id for o in order_list.orders] == [11, 12]
        assert order_list.order_reports[1].type == "LIMIT_MAKER"
        assert not order_list.is_done

    @pytest.mark.asyncio
    async def test_order_list_queries(self) -> None:
        seen: list[httpx.Request] = []
        body = {"orderListId": 3, "symbol": "BTCUSDT", "listOrderStatus": "ALL_DONE"}

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            if request.url.path == "/api/v3/openOrderList":
                return httpx.Response(200, json=[body])
            return httpx.Response(200, json=body)

        api = AccountApi(make_client(handler, creds=SharedSecret("k", "s")))
        cancelled = await api.cancel_order_list("BTCUSDT", order_list_id=3)
        fetched = await api.get_order_list(client_order_list_id="list-1")
        open_lists = await api.open_order_lists()

        assert [(r.method, r.url.path) for r in seen] == [
            ("DELETE", "/api/v3/orderList"),
            ("GET", "/api/v3/orderList"),
            ("GET", "/api/v3/openOrderList"),
        ]
        assert dict(query_of(seen[0]))["orderListId"] == "3"
        assert dict(query_of(seen[1]))["origClientOrderId"] == "list-1"
        assert cancelled.is_done
        assert fetched.order_list_id == 3
        assert len(open_lists) == 1
        with pytest.raises(ValueError):
            await api.cancel_order_list("BTCUSDT")


# =============================================================================
# Retry Policy
# =============================================================================


class TestRetryPolicy:
    def test_classification(self) -> None:
        assert classify_error(RateLimitError("x", status_code=429)) == (True, "rate_limit")
        assert classify_error(ServerError("x", status_code=502)) == (True, "server")
        assert classify_error(NetworkError("Request timed out: GET /")) == (True, "timeout")
        assert classify_error(NetworkError("reset")) == (True, "network")
        assert classify_error(ApiError("x", code=-1100)) == (False, "venue")
        assert classify_error(ValueError("x")) == (False, "other")

    def test_backoff_capped(self) -> None:
        policy = RetryPolicy(base_delay=0.25, max_delay=3.0, jitter=0.25, rng=random.Random(7))
        for attempt in range(10):
            assert 0.0 <= policy.backoff(attempt) <= 3.0 * 1.25

    def test_backoff_without_jitter(self) -> None:
        policy = RetryPolicy(base_delay=0.5, max_delay=3.0, jitter=0.0)
        assert [policy.backoff(a) for a in range(5)] == [0.5, 1.0, 2.0, 3.0, 3.0]

    def test_retry_after_floor(self) -> None:
        policy = RetryPolicy(jitter=0.0)
        error = RateLimitError("x", status_code=429, retry_after=30.0)
        assert policy.delay_for(error, 0) == 30.0
        assert policy.delay_for(ServerError("x", status_code=503), 1) == 0.5
