"""Authenticated request construction.

Combines the endpoint's ordered parameters with timestamp, receive window
and signature into a request ready for the transport. Performs no I/O; the
only outside state it reads is the injected clock.

SIGNED requests are assembled as:

    <caller params>&timestamp=<ms>&recvWindow=<ms>&signature=<token>

where everything before ``signature`` is the canonical payload that gets
signed. The API key travels in the ``X-MBX-APIKEY`` header, or as a leading
``apiKey`` parameter inside the signed payload for endpoints that expect it
there.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from enum import Enum

from bsk.auth.credentials import Credential
from bsk.auth.encoder import CanonicalRequest, ParamValue, Params, encode_params, escape
from bsk.auth.signer import sign
from bsk.clock import ClockProtocol, RealClock, epoch_millis
from bsk.config import DEFAULT_RECV_WINDOW
from bsk.errors import ConfigurationError

API_KEY_HEADER = "X-MBX-APIKEY"


class SecurityType(str, Enum):
    """Authentication an endpoint requires."""

    NONE = "NONE"  # Public market data
    API_KEY = "API_KEY"  # Key only, unsigned (listen key endpoints)
    SIGNED = "SIGNED"  # Key plus timestamp and signature


class KeyPlacement(str, Enum):
    """Where the API key is attached."""

    HEADER = "HEADER"
    PAYLOAD = "PAYLOAD"


@dataclass(frozen=True)
class RestRequest:
    """Endpoint call description handed to the builder.

    Attributes:
        method: HTTP method
        path: Endpoint path, e.g. /api/v3/account
        params: Ordered (name, value) parameters
        security: Authentication required by the endpoint
        key_placement: Header or signed-payload API key
        recv_window: Per-call receive window override in ms (0 to omit)
        timeout: Per-call round-trip timeout in seconds
    """

    method: str
    path: str
    params: tuple[tuple[str, ParamValue], ...] = ()
    security: SecurityType = SecurityType.NONE
    key_placement: KeyPlacement = KeyPlacement.HEADER
    recv_window: int | None = None
    timeout: float | None = None

    @classmethod
    def create(
        cls,
        method: str,
        path: str,
        params: Params | None = None,
        security: SecurityType = SecurityType.NONE,
        key_placement: KeyPlacement = KeyPlacement.HEADER,
        recv_window: int | None = None,
        timeout: float | None = None,
    ) -> RestRequest:
        """Build a request from a mapping or pair list, keeping order."""
        if params is None:
            pairs: tuple[tuple[str, ParamValue], ...] = ()
        elif isinstance(params, dict):
            pairs = tuple(params.items())
        else:
            pairs = tuple(params)
        return cls(
            method=method.upper(),
            path=path,
            params=pairs,
            security=security,
            key_placement=key_placement,
            recv_window=recv_window,
            timeout=timeout,
        )


@dataclass(frozen=True)
class SignedRequest:
    """Dispatch-ready request.

    Attributes:
        canonical: The exact payload that was signed (or sent, if unsigned)
        query: Final query string including the signature
        headers: Transport headers (API key)
        timestamp: Request timestamp in ms, None for unsigned requests
        recv_window: Receive window in ms, None if omitted
        signature: Signature token before URL escaping
    """

    method: str
    path: str
    canonical: CanonicalRequest
    query: str
    headers: dict[str, str] = field(default_factory=dict)
    timestamp: int | None = None
    recv_window: int | None = None
    signature: str | None = None
    timeout: float | None = None

    @property
    def target(self) -> str:
        """Path with query string."""
        return f"{self.path}?{self.query}" if self.query else self.path


class AuthenticatedRequestBuilder:
    """Stamps, encodes and signs REST requests.

    Timestamps never go backwards across calls on one builder, even if the
    wall clock steps back. The one exception is apply_time_offset(), which
    restarts the sequence from the server-corrected time. Safe to share
    between concurrent callers.
    """

    def __init__(
        self,
        credential: Credential | None = None,
        clock: ClockProtocol | None = None,
        recv_window: int = DEFAULT_RECV_WINDOW,
        time_offset_ms: int = 0,
    ) -> None:
        """Initialize builder.

        Args:
            credential: Signing credential, None for public-only use
            clock: Time provider (system clock by default)
            recv_window: Default receive window in ms (0 to omit)
            time_offset_ms: Server time minus local time, in ms
        """
        self._credential = credential
        self._clock = clock or RealClock()
        self._recv_window = recv_window
        self.time_offset_ms = time_offset_ms
        self._last_timestamp = 0
        self._ts_lock = threading.Lock()

    @property
    def credential(self) -> Credential | None:
        return self._credential

    @property
    def has_credentials(self) -> bool:
        return self._credential is not None

    def local_millis(self) -> int:
        """Local wall clock in ms, without offset or clamping."""
        return epoch_millis(self._clock)

    def next_timestamp(self) -> int:
        """Current venue time in ms, never lower than the previous one."""
        candidate = self.local_millis() + self.time_offset_ms
        with self._ts_lock:
            self._last_timestamp = max(candidate, self._last_timestamp)
            return self._last_timestamp

    def apply_time_offset(self, offset_ms: int) -> None:
        """Adopt a measured server offset and restart the timestamp sequence.

        Timestamps issued before a resync were rejected or are about to be,
        so the non-decreasing sequence restarts from the corrected time.
        """
        with self._ts_lock:
            self.time_offset_ms = offset_ms
            self._last_timestamp = self.local_millis() + offset_ms

    def build(self, request: RestRequest) -> SignedRequest:
        """Produce a dispatch-ready request.

        Raises:
            ConfigurationError: If the endpoint needs a credential and none is set
        """
        if request.security is SecurityType.NONE:
            canonical = encode_params(request.params)
            return SignedRequest(
                method=request.method,
                path=request.path,
                canonical=canonical,
                query=canonical.query,
                timeout=request.timeout,
            )

        credential = self._credential
        if credential is None:
            raise ConfigurationError(
                f"{request.method} {request.path} requires credentials "
                f"({request.security.value}) but none are configured"
            )

        headers: dict[str, str] = {}
        params = request.params
        if request.key_placement is KeyPlacement.HEADER:
            headers[API_KEY_HEADER] = credential.key_id
        else:
            params = (("apiKey", credential.key_id),) + params

        if request.security is SecurityType.API_KEY:
            canonical = encode_params(params)
            return SignedRequest(
                method=request.method,
                path=request.path,
                canonical=canonical,
                query=canonical.query,
                headers=headers,
                timeout=request.timeout,
            )

        recv_window = self._recv_window if request.recv_window is None else request.recv_window
        timestamp = self.next_timestamp()

        stamped: list[tuple[str, ParamValue]] = [("timestamp", timestamp)]
        if recv_window > 0:
            stamped.append(("recvWindow", recv_window))

        canonical = encode_params(params).extend(stamped)
        signature = sign(credential, canonical.payload)
        query = f"{canonical.query}&signature={escape(signature)}"

        return SignedRequest(
            method=request.method,
            path=request.path,
            canonical=canonical,
            query=query,
            headers=headers,
            timestamp=timestamp,
            recv_window=recv_window if recv_window > 0 else None,
            signature=signature,
            timeout=request.timeout,
        )
