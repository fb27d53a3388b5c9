from __future__ import annotations

import asyncio
import time
from collections import deque
from typing import Any, Awaitable, Callable, Deque, Dict, Optional

import jwt
from jwt.exceptions import InvalidKeyError, PyJWKError

from authbroker.logging import get_logger
from authbroker.service.errors import UpstreamError, UpstreamUnavailableError
from authbroker.service.singleflight import SingleFlight

logger = get_logger(__name__)

_RATE_WINDOW_SECONDS = 60.0


class SigningKeyResolver:
    """Cache of the IdP's published signing keys, indexed by ``kid``.

    Keys are reused for ``ttl_seconds``. An unknown ``kid`` triggers an early
    refetch (bounded to ``requests_per_minute``) to pick up key rotation.
    When the IdP cannot be reached the last good key set keeps being served
    for ``max_stale_seconds`` past its TTL.
    """

    def __init__(
        self,
        fetch: Callable[[], Awaitable[Dict[str, Any]]],
        *,
        ttl_seconds: float = 600,
        max_stale_seconds: float = 3600,
        requests_per_minute: int = 5,
        attempts: int = 3,
        backoff_seconds: float = 0.2,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._fetch = fetch
        self.ttl_seconds = ttl_seconds
        self.max_stale_seconds = max_stale_seconds
        self.requests_per_minute = max(1, requests_per_minute)
        self.attempts = max(1, attempts)
        self.backoff_seconds = backoff_seconds
        self._clock = clock
        self._sleep = sleep
        self._keys: Dict[str, jwt.PyJWK] = {}
        self._fetched_at: Optional[float] = None
        self._fetch_times: Deque[float] = deque()
        self._flight = SingleFlight()

    def _is_fresh(self, now: float) -> bool:
        return self._fetched_at is not None and now - self._fetched_at < self.ttl_seconds

    def _within_stale_window(self, now: float) -> bool:
        return (
            self._fetched_at is not None
            and bool(self._keys)
            and now - self._fetched_at < self.ttl_seconds + self.max_stale_seconds
        )

    def _take_fetch_slot(self, now: float) -> bool:
        while self._fetch_times and now - self._fetch_times[0] >= _RATE_WINDOW_SECONDS:
            self._fetch_times.popleft()
        if len(self._fetch_times) >= self.requests_per_minute:
            return False
        self._fetch_times.append(now)
        return True

    @property
    def cached_kids(self) -> list[str]:
        return sorted(self._keys)

    async def get_signing_key(self, kid: str) -> Optional[jwt.PyJWK]:
        """Return the key for ``kid``, or ``None`` when the IdP does not publish it."""
        now = self._clock()
        if self._is_fresh(now):
            key = self._keys.get(kid)
            if key is not None:
                return key
        await self._refresh(kid)
        return self._keys.get(kid)

    async def _refresh(self, kid: str) -> None:
        now = self._clock()
        # Joining a fetch already in flight does not count against the rate limit
        if not self._flight.in_flight("jwks") and not self._take_fetch_slot(now):
            if self._is_fresh(now) or self._within_stale_window(now):
                logger.warning("jwks_refetch_rate_limited", kid=kid)
                return
            raise UpstreamUnavailableError("signing key refetch rate limited")
        try:
            await self._flight.do("jwks", self._fetch_with_retry)
        except UpstreamError as exc:
            if self._within_stale_window(self._clock()):
                logger.warning(
                    "jwks_serving_stale_keys",
                    kid=kid,
                    key_count=len(self._keys),
                    error=str(exc),
                )
                return
            raise

    async def _fetch_with_retry(self) -> None:
        attempt = 1
        while True:
            try:
                payload = await self._fetch()
            except UpstreamError as exc:
                logger.warning(
                    "jwks_fetch_attempt_failed",
                    attempt=attempt,
                    attempts=self.attempts,
                    error_type=type(exc).__name__,
                )
                if attempt >= self.attempts:
                    raise
                await self._sleep(self.backoff_seconds * (2 ** (attempt - 1)))
                attempt += 1
                continue
            self._keys = self._parse_keys(payload)
            self._fetched_at = self._clock()
            logger.info("jwks_refreshed", key_count=len(self._keys))
            return

    @staticmethod
    def _parse_keys(payload: Dict[str, Any]) -> Dict[str, jwt.PyJWK]:
        keys: Dict[str, jwt.PyJWK] = {}
        for raw in payload.get("keys", []):
            if not isinstance(raw, dict) or not raw.get("kid"):
                continue
            if raw.get("use") not in (None, "sig"):
                continue
            try:
                keys[raw["kid"]] = jwt.PyJWK(raw)
            except (PyJWKError, InvalidKeyError) as exc:
                logger.warning("jwks_key_skipped", kid=raw.get("kid"), error=str(exc))
        return keys
