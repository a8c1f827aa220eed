"""Typed error taxonomy.

Every failure that leaves the library is one of these types:

- ConfigurationError: missing/invalid credential or setting for the request
- SigningError: key material could not be parsed (raised at construction)
- ApiError: the venue answered with an error payload (code + message)
  - RateLimitError: HTTP 418/429, carries the server's Retry-After
  - ServerError: HTTP 5xx
- NetworkError: transport failure after the retry budget ran out
- ConnectError: a stream session could not be established
- SubscriptionError: a topic failed terminally (delivered to its subscriber)
- ListenKeyError: the user-data listen key could not be obtained or renewed
"""

from __future__ import annotations

# Venue error codes with dedicated handling
CODE_UNAUTHORIZED = -1002
CODE_TOO_MANY_REQUESTS = -1003
CODE_TIMESTAMP_OUTSIDE_WINDOW = -1021
CODE_INVALID_SIGNATURE = -1022
CODE_REJECTED_MBX_KEY = -2015


class BskError(Exception):
    """Base exception for all client errors."""


class ConfigurationError(BskError):
    """Invalid or missing configuration for the requested operation."""


class SigningError(BskError):
    """Malformed or unsupported key material."""


class ApiError(BskError):
    """Error response returned by the venue."""

    def __init__(
        self,
        message: str,
        code: int | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(f"API error {code}: {message}" if code is not None else message)
        self.message = message
        self.code = code
        self.status_code = status_code

    @property
    def is_rate_limit(self) -> bool:
        return self.code == CODE_TOO_MANY_REQUESTS or self.status_code in (418, 429)

    @property
    def is_invalid_signature(self) -> bool:
        return self.code == CODE_INVALID_SIGNATURE

    @property
    def is_timestamp_error(self) -> bool:
        return self.code == CODE_TIMESTAMP_OUTSIDE_WINDOW

    @property
    def is_unauthorized(self) -> bool:
        return self.code in (CODE_UNAUTHORIZED, CODE_REJECTED_MBX_KEY) or self.status_code == 401


class RateLimitError(ApiError):
    """Request weight or order rate exceeded (HTTP 418/429)."""

    def __init__(
        self,
        message: str,
        code: int | None = None,
        status_code: int | None = None,
        retry_after: float | None = None,
    ) -> None:
        super().__init__(message, code=code, status_code=status_code)
        self.retry_after = retry_after


class ServerError(ApiError):
    """Venue-side failure (HTTP 5xx)."""


class NetworkError(BskError):
    """Transport failure (timeout, connection reset) after retries."""


class ConnectError(BskError):
    """WebSocket session could not be established."""


class SubscriptionError(BskError):
    """Terminal failure of a single stream topic."""

    def __init__(self, topic: str, reason: str) -> None:
        super().__init__(f"Subscription to {topic!r} failed: {reason}")
        self.topic = topic
        self.reason = reason


class ListenKeyError(BskError):
    """Listen key could not be acquired or renewed."""


class DepthCacheError(BskError):
    """Local order book stopped and can no longer be synchronised."""
