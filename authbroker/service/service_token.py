from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple

from authbroker.config import ServiceAuthType, Settings
from authbroker.logging import get_logger
from authbroker.service.errors import RefreshInvalidGrantError, ServerError
from authbroker.service.idp import IdentityProviderClient
from authbroker.service.singleflight import SingleFlight
from authbroker.storage.models import ReauthReason

logger = get_logger(__name__)

STATIC_TOKEN_LIFETIME_SECONDS = 24 * 60 * 60

_FLIGHT_KEY = "service_token"


@dataclass(frozen=True)
class CachedServiceToken:
    token: str
    expires_at: float
    generation: int


class ServiceTokenCache:
    """Process-scoped credential for calls made on behalf of the service identity.

    All callers arriving while the cache is empty or expired share a single
    acquisition, and at most one acquisition runs at a time: a rotating
    refresh token is only ever presented once. ``force_refresh`` bumps the
    generation, waits for an older acquisition to settle and then acquires
    again, so the older result is returned to its callers but not cached.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        idp: IdentityProviderClient,
        store=None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings
        self.idp = idp
        self.store = store
        self._clock = clock
        self._cached: Optional[CachedServiceToken] = None
        # Rotated token for a settings-provided credential with no session row
        self._rotated_refresh_token: Optional[str] = None
        self._generation = 0
        self._inflight_generation = 0
        self._flight = SingleFlight()

    def has_valid_token(self) -> bool:
        cached = self._cached
        return cached is not None and self._clock() < cached.expires_at

    def invalidate(self) -> None:
        self._generation += 1
        self._cached = None

    async def get_token(self) -> str:
        cached = self._cached
        if cached is not None and self._clock() < cached.expires_at:
            return cached.token
        return await self._flight.do(_FLIGHT_KEY, lambda: self._acquire(self._generation))

    async def force_refresh(self) -> str:
        """Acquire a token that was requested after this call started."""
        self.invalidate()
        target = self._generation
        while self._flight.in_flight(_FLIGHT_KEY):
            if self._inflight_generation >= target:
                return await self._flight.do(
                    _FLIGHT_KEY, lambda: self._acquire(self._generation)
                )
            await self._flight.settled(_FLIGHT_KEY)
        return await self._flight.do(_FLIGHT_KEY, lambda: self._acquire(self._generation))

    async def _acquire(self, generation: int) -> str:
        self._inflight_generation = generation
        token, lifetime = await self._fetch()
        if generation == self._generation:
            self._cached = CachedServiceToken(
                token=token, expires_at=self._clock() + lifetime, generation=generation
            )
        else:
            logger.info(
                "service_token_superseded", generation=generation, current=self._generation
            )
        return token

    async def _fetch(self) -> Tuple[str, float]:
        mode = self.settings.service_auth_type
        if mode in (ServiceAuthType.NONE, ServiceAuthType.NOAUTH):
            return "", STATIC_TOKEN_LIFETIME_SECONDS
        if mode is ServiceAuthType.APIKEY:
            if not self.settings.service_api_key:
                raise ServerError("service api key not configured")
            return self.settings.service_api_key, STATIC_TOKEN_LIFETIME_SECONDS

        refresh_token, user_id = self._service_refresh_token()
        if not refresh_token:
            if self.settings.test_mode:
                logger.warning("service_token_unconfigured", mode=mode.value)
                return "", STATIC_TOKEN_LIFETIME_SECONDS
            raise ServerError("service account credentials not configured")

        try:
            bundle = await self.idp.refresh(refresh_token)
        except RefreshInvalidGrantError:
            if user_id and self.store is not None:
                self.store.mark_session_reauth(user_id, ReauthReason.TOKEN_ROTATION_LIMIT.value)
            logger.error("service_token_refresh_rejected", user_id=user_id)
            raise
        if bundle.refresh_token and bundle.refresh_token != refresh_token:
            if user_id and self.store is not None:
                self.store.update_session_token(user_id, bundle.refresh_token)
            else:
                self._rotated_refresh_token = bundle.refresh_token
                logger.warning("service_refresh_token_rotated_unpersisted")
        lifetime = max(0, bundle.expires_in - self.settings.service_token_margin_seconds)
        logger.info("service_token_acquired", expires_in=bundle.expires_in, lifetime=lifetime)
        return bundle.access_token, lifetime

    def _service_refresh_token(self) -> Tuple[Optional[str], Optional[str]]:
        user_id = self.settings.service_account_user_id
        if user_id and self.store is not None:
            session = self.store.get_session_for_user(user_id)
            if session is not None and session.is_usable:
                return session.refresh_token, user_id
        return self._rotated_refresh_token or self.settings.service_account_refresh_token, None
