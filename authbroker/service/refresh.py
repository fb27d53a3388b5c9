from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from authbroker.logging import get_logger
from authbroker.service.errors import AuthenticationError, RefreshInvalidGrantError
from authbroker.service.idp import IdentityProviderClient, TokenBundle
from authbroker.service.sessions import SessionService
from authbroker.service.singleflight import SingleFlight
from authbroker.service.verifier import TokenVerifier
from authbroker.storage.crypto import refresh_token_fingerprint
from authbroker.storage.models import ReauthReason, SessionRecord, User

logger = get_logger(__name__)


@dataclass(frozen=True)
class RefreshResult:
    bundle: TokenBundle
    user: User
    session: Optional[SessionRecord]

    @property
    def rotated_refresh_token(self) -> Optional[str]:
        return self.bundle.refresh_token


class RefreshCoordinator:
    """Trade a refresh token for a new access token and keep the stored row in step.

    Concurrent refreshes of the same token inside this process share one IdP
    call. Replicas are not coordinated: two processes refreshing the same
    rotating token at once will see the IdP reject the second request.
    """

    def __init__(
        self,
        idp: IdentityProviderClient,
        verifier: TokenVerifier,
        sessions: SessionService,
    ) -> None:
        self.idp = idp
        self.verifier = verifier
        self.sessions = sessions
        self._flight = SingleFlight()

    async def refresh(self, refresh_token: Optional[str]) -> RefreshResult:
        """Cookie path: the browser presents the refresh token itself."""
        if not refresh_token:
            raise AuthenticationError("refresh token missing")
        return await self._flight.do(
            refresh_token_fingerprint(refresh_token),
            lambda: self._run(refresh_token, self.sessions.session_for_refresh_token(refresh_token)),
        )

    async def refresh_for_user(self, user_id: str, fallback_ref: str) -> RefreshResult:
        """Fallback path for browsers that drop the refresh cookie."""
        session = self.sessions.verify_fallback_reference(fallback_ref, user_id)
        return await self._flight.do(
            refresh_token_fingerprint(session.refresh_token),
            lambda: self._run(session.refresh_token, session),
        )

    async def _run(
        self, refresh_token: str, session: Optional[SessionRecord]
    ) -> RefreshResult:
        if session is not None and session.requires_reauth:
            raise RefreshInvalidGrantError(reason=session.reauth_reason)
        try:
            bundle = await self.idp.refresh(refresh_token)
        except RefreshInvalidGrantError:
            if session is not None:
                self.sessions.mark_requires_reauth(
                    session.user_id, ReauthReason.TOKEN_ROTATION_LIMIT.value
                )
            logger.warning(
                "refresh_invalid_grant",
                user_id=session.user_id if session else None,
            )
            raise

        claims = await self.verifier.verify_access_token(bundle.access_token)
        subject = str(claims["sub"])
        store = self.sessions.store
        user = store.get_user_by_subject(subject) or store.upsert_user_profile(
            subject, {"email": claims.get("email")}
        )
        if session is not None and session.user_id != user.id:
            logger.warning(
                "refresh_session_user_mismatch", session_user_id=session.user_id, user_id=user.id
            )
            session = None

        if bundle.refresh_token and bundle.refresh_token != refresh_token:
            if session is not None:
                session = self.sessions.rotate(user.id, bundle.refresh_token)
            # A token matching no row gets a fresh row, revoking the old row's fallback references
            if session is None:
                session = self.sessions.store_refresh_token(user.id, bundle.refresh_token)
        elif session is not None:
            self.sessions.touch(user.id)
        logger.info(
            "refresh_succeeded",
            user_id=user.id,
            rotated=bool(bundle.refresh_token and bundle.refresh_token != refresh_token),
        )
        return RefreshResult(bundle=bundle, user=user, session=session)
