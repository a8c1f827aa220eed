"""Listen-key lease for the private user-data stream.

The venue identifies a user-data stream by a listen key that expires unless
kept alive. The lease obtains the key, renews it on a fixed schedule
(``renew_fraction`` of the validity, i.e. every 30 minutes for a 60 minute
key) and tells its owner when the key can no longer be trusted.

State machine:
    IDLE -> ACTIVE (acquire) -> INVALID (renewal failed) -> ACTIVE (reacquire)
    any -> RELEASED (release, terminal)

USAGE:
    lease = ListenKeyLease(user_stream_api)
    key = await lease.acquire()
    lease.start_renewal(on_invalid=manager.handle_invalid_lease)
    ...
    await lease.release()
"""

from __future__ import annotations

import asyncio
import contextlib
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import Enum
from typing import Protocol

from bsk.auth.redact import mask_string
from bsk.clock import ClockProtocol, RealClock, SleepProtocol, real_sleep
from bsk.errors import BskError, ListenKeyError
from bsk.logging import get_logger

logger = get_logger("streams.listen_key")

DEFAULT_VALIDITY_SECONDS = 3600.0
DEFAULT_RENEW_FRACTION = 0.5


class ListenKeyApi(Protocol):
    """Listen key endpoints (see bsk.rest.user_stream.UserStreamApi)."""

    async def start(self) -> str: ...

    async def keepalive(self, listen_key: str) -> None: ...

    async def close(self, listen_key: str) -> None: ...


@dataclass(frozen=True)
class ListenKey:
    """Listen key token with its validity window."""

    token: str
    issued_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def __repr__(self) -> str:
        return f"ListenKey(token={mask_string(self.token)!r}, expires_at={self.expires_at})"


class LeaseState(str, Enum):
    """Lease lifecycle state."""

    IDLE = "idle"
    ACTIVE = "active"
    INVALID = "invalid"
    RELEASED = "released"


InvalidHook = Callable[["ListenKeyLease", BaseException], Awaitable[None]]


class ListenKeyLease:
    """Owns one listen key and its renewal task."""

    def __init__(
        self,
        api: ListenKeyApi,
        clock: ClockProtocol | None = None,
        sleep: SleepProtocol | None = None,
        validity: float = DEFAULT_VALIDITY_SECONDS,
        renew_fraction: float = DEFAULT_RENEW_FRACTION,
    ) -> None:
        """Initialize lease.

        Args:
            api: Listen key endpoints
            clock: Time provider for issue/expiry stamps
            sleep: Async sleep used by the renewal loop
            validity: Server-side key lifetime in seconds
            renew_fraction: Renew after this fraction of the lifetime
        """
        if not 0.0 < renew_fraction < 1.0:
            raise ValueError("renew_fraction must be in (0, 1)")
        self._api = api
        self._clock = clock or RealClock()
        self._sleep = sleep or real_sleep
        self._validity = timedelta(seconds=validity)
        self.renew_interval = validity * renew_fraction
        self._key: ListenKey | None = None
        self._state = LeaseState.IDLE
        self._lock = asyncio.Lock()
        self._renew_task: asyncio.Task[None] | None = None
        self._on_invalid: InvalidHook | None = None
        self.renewals = 0
        self.acquisitions = 0

    @property
    def state(self) -> LeaseState:
        return self._state

    @property
    def key(self) -> ListenKey | None:
        return self._key

    def _issue(self, token: str) -> ListenKey:
        now = self._clock.now()
        return ListenKey(token=token, issued_at=now, expires_at=now + self._validity)

    async def acquire(self) -> ListenKey:
        """Obtain a fresh listen key.

        Raises:
            ListenKeyError: If the venue call fails or the lease was released
        """
        async with self._lock:
            return await self._acquire_locked()

    async def _acquire_locked(self) -> ListenKey:
        if self._state is LeaseState.RELEASED:
            raise ListenKeyError("Lease has been released")
        try:
            token = await self._api.start()
        except BskError as e:
            self._state = LeaseState.INVALID
            raise ListenKeyError(f"Failed to acquire listen key: {e}") from e
        self._key = self._issue(token)
        self._state = LeaseState.ACTIVE
        self.acquisitions += 1
        logger.info(f"Listen key acquired: {mask_string(token)}")
        return self._key

    async def renew(self) -> ListenKey:
        """Extend the current key's validity.

        Raises:
            ListenKeyError: If there is no active key or the venue call fails;
                the lease moves to INVALID
        """
        async with self._lock:
            key = self._key
            if key is None or self._state is not LeaseState.ACTIVE:
                raise ListenKeyError(f"Cannot renew listen key in state {self._state.value}")
            try:
                await self._api.keepalive(key.token)
            except BskError as e:
                self._state = LeaseState.INVALID
                raise ListenKeyError(f"Failed to renew listen key: {e}") from e
            now = self._clock.now()
            self._key = replace(key, issued_at=now, expires_at=now + self._validity)
            self.renewals += 1
            logger.debug(f"Listen key renewed: {mask_string(key.token)}")
            return self._key

    async def ensure_valid(self) -> ListenKey:
        """Return a key that is safe to subscribe with.

        Waits for any in-flight acquire/renew to finish. Reacquires if the
        lease is idle, invalid or past its expiry.

        Raises:
            ListenKeyError: If no valid key can be obtained
        """
        async with self._lock:
            key = self._key
            if (
                self._state is LeaseState.ACTIVE
                and key is not None
                and not key.is_expired(self._clock.now())
            ):
                return key
            return await self._acquire_locked()

    def invalidate(self, reason: str) -> None:
        """Mark the current key unusable (e.g. the venue reported it expired)."""
        if self._state is LeaseState.ACTIVE:
            self._state = LeaseState.INVALID
            logger.warning(f"Listen key invalidated: {reason}")

    def start_renewal(self, on_invalid: InvalidHook | None = None) -> None:
        """Start the background renewal loop."""
        self._on_invalid = on_invalid
        if self._renew_task is None or self._renew_task.done():
            self._renew_task = asyncio.create_task(self._renew_loop())
            logger.debug(f"Listen key renewal started (every {self.renew_interval:.0f}s)")

    async def _renew_loop(self) -> None:
        while self._state is not LeaseState.RELEASED:
            await self._sleep(self.renew_interval)
            if self._state is LeaseState.RELEASED:
                return
            if self._state is not LeaseState.ACTIVE:
                # Waiting for the owner to reacquire
                continue
            try:
                await self.renew()
            except ListenKeyError as e:
                logger.warning(f"Listen key renewal failed: {e}")
                if self._on_invalid is not None:
                    await self._on_invalid(self, e)

    async def stop_renewal(self) -> None:
        task, self._renew_task = self._renew_task, None
        # Released from inside the loop (via the invalid hook): it exits on its own
        if task is None or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def release(self) -> None:
        """Stop renewing and close the key. Best effort; never raises."""
        await self.stop_renewal()
        async with self._lock:
            key = self._key
            self._key = None
            self._state = LeaseState.RELEASED
        if key is None:
            return
        try:
            await self._api.close(key.token)
            logger.info(f"Listen key closed: {mask_string(key.token)}")
        except BskError as e:
            logger.warning(f"Failed to close listen key: {e}")
