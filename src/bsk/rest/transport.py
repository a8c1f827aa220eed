"""HTTP transport and the retrying REST client.

RestTransport performs exactly one HTTP exchange for a SignedRequest and
maps the response onto the error taxonomy. RestClient owns the retry loop:
every attempt goes back through the AuthenticatedRequestBuilder, so a
retried request always carries a fresh timestamp and signature.
"""

from __future__ import annotations

from typing import Any

import httpx

from bsk.auth.redact import redact_secrets
from bsk.auth.request_builder import AuthenticatedRequestBuilder, RestRequest, SignedRequest
from bsk.clock import SleepProtocol, real_sleep
from bsk.errors import ApiError, BskError, NetworkError, RateLimitError, ServerError
from bsk.logging import get_logger
from bsk.rest.resilience import RestCallStats, RetryPolicy, classify_error

logger = get_logger("rest.transport")

# Default timeouts
DEFAULT_TIMEOUT = 10.0
DEFAULT_CONNECT_TIMEOUT = 5.0

USED_WEIGHT_HEADER = "x-mbx-used-weight-1m"
USER_AGENT = "bsk-python"


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("Retry-After")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _error_payload(response: httpx.Response) -> tuple[int | None, str]:
    try:
        body = response.json()
    except ValueError:
        return None, response.text or response.reason_phrase
    if isinstance(body, dict) and "code" in body:
        return int(body["code"]), str(body.get("msg", ""))
    return None, response.text


class RestTransport:
    """Sends signed requests over httpx.

    Stateless apart from the pooled HTTP client and the last observed
    request weight reported by the server.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize transport.

        Args:
            base_url: REST API base URL
            timeout: Default round-trip timeout in seconds
            client: Pre-built httpx client (tests inject a MockTransport here)
        """
        self._base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout, connect=min(timeout, DEFAULT_CONNECT_TIMEOUT))
        self._client = client
        self.used_weight: int | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._base_url,
                timeout=self._timeout,
                headers={"Accept": "application/json", "User-Agent": USER_AGENT},
            )
        return self._client

    async def execute(self, request: SignedRequest) -> Any:
        """Perform one HTTP exchange.

        Returns:
            Decoded JSON body (None for an empty body)

        Raises:
            RateLimitError: HTTP 418/429
            ServerError: HTTP 5xx
            ApiError: Any other error status
            NetworkError: Timeout or connection failure
        """
        client = self._get_client()
        url = f"{self._base_url}{request.target}"
        timeout = httpx.Timeout(request.timeout) if request.timeout else self._timeout

        try:
            response = await client.request(
                request.method,
                url,
                headers=request.headers,
                timeout=timeout,
            )
        except httpx.TimeoutException as e:
            raise NetworkError(f"Request timed out: {request.method} {request.path}") from e
        except httpx.RequestError as e:
            safe_error = redact_secrets(str(e))
            raise NetworkError(f"Request failed: {safe_error}") from e

        weight = response.headers.get(USED_WEIGHT_HEADER)
        if weight is not None and weight.isdigit():
            self.used_weight = int(weight)

        status = response.status_code
        if status < 400:
            if not response.content:
                return None
            return response.json()

        code, message = _error_payload(response)
        logger.debug(
            f"HTTP {status} for {request.method} {redact_secrets(request.target)}",
            extra={"status": status, "code": code},
        )

        if status in (418, 429):
            raise RateLimitError(
                message or "Rate limit exceeded",
                code=code,
                status_code=status,
                retry_after=_retry_after(response),
            )
        if status >= 500:
            raise ServerError(message or "Server error", code=code, status_code=status)
        raise ApiError(message, code=code, status_code=status)

    async def aclose(self) -> None:
        """Close HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class RestClient:
    """Builds, signs and sends REST requests with bounded retries."""

    def __init__(
        self,
        builder: AuthenticatedRequestBuilder,
        transport: RestTransport,
        retry: RetryPolicy | None = None,
        sleep: SleepProtocol | None = None,
    ) -> None:
        self._builder = builder
        self._transport = transport
        self._retry = retry or RetryPolicy()
        self._sleep = sleep or real_sleep
        self.stats = RestCallStats()

    @property
    def builder(self) -> AuthenticatedRequestBuilder:
        return self._builder

    @property
    def has_credentials(self) -> bool:
        return self._builder.has_credentials

    async def send(self, request: RestRequest) -> Any:
        """Send a request, retrying transient failures.

        Raises:
            ConfigurationError: Credential required but missing
            ApiError: Non-retryable venue error, or retries exhausted
            NetworkError: Transport failure after retries
        """
        self.stats.total_calls += 1
        time_synced = False
        attempt = 0

        while True:
            signed = self._builder.build(request)
            try:
                return await self._transport.execute(signed)
            except BskError as e:
                retryable, category = classify_error(e)
                if category == "rate_limit":
                    self.stats.total_rate_limited += 1
                elif category == "server":
                    self.stats.total_5xx += 1

                # One clock resync for a stale timestamp, then resend
                if isinstance(e, ApiError) and e.is_timestamp_error and not time_synced:
                    time_synced = True
                    logger.warning("Timestamp outside receive window, syncing server time")
                    await self.sync_time()
                    continue

                if not retryable or attempt >= self._retry.max_retries:
                    self.stats.total_errors += 1
                    logger.debug(
                        f"{request.method} {request.path} failed ({category}) "
                        f"after {attempt + 1} attempt(s)"
                    )
                    raise

                delay = self._retry.delay_for(e, attempt)
                attempt += 1
                self.stats.total_retries += 1
                logger.debug(
                    f"Retryable error on {request.method} {request.path}: {category}, "
                    f"retrying in {delay:.2f}s"
                )
                await self._sleep(delay)

    async def sync_time(self) -> int:
        """Align request timestamps with the server clock.

        Returns:
            The new offset in milliseconds (server minus local)
        """
        local_before = self._builder.local_millis()
        data = await self._transport.execute(
            self._builder.build(RestRequest(method="GET", path="/api/v3/time"))
        )
        local_after = self._builder.local_millis()
        # Server stamped the reply somewhere in the round trip
        offset = int(data["serverTime"]) - (local_before + local_after) // 2
        self._builder.apply_time_offset(offset)
        logger.info(f"Server time offset set to {offset} ms")
        return offset

    async def aclose(self) -> None:
        await self._transport.aclose()
