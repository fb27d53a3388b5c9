from __future__ import annotations

import hmac
import secrets
from typing import Any, Dict, Optional, Protocol

import jwt

from authbroker.logging import get_logger
from authbroker.service.errors import AuthenticationError, RefreshInvalidGrantError
from authbroker.storage.models import (
    BrowserSessionData,
    ReauthReason,
    SessionCustomData,
    SessionRecord,
    User,
    utcnow,
)

logger = get_logger(__name__)

FALLBACK_REF_TYPE = "fallback"


class SessionStore(Protocol):
    """Narrow persistence surface implemented by MemoryStore and PostgresStore."""

    def create_user(self, subject: str, **profile: Any) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_subject(self, subject: str) -> Optional[User]: ...

    def upsert_user_profile(self, subject: str, profile: Dict[str, Any]) -> User: ...

    def replace_session(
        self,
        user_id: str,
        refresh_token: str,
        *,
        ttl_days: int = 30,
        custom_data: Optional[SessionCustomData] = None,
    ) -> SessionRecord: ...

    def get_session_for_user(self, user_id: str) -> Optional[SessionRecord]: ...

    def get_session_by_refresh_token(self, refresh_token: str) -> Optional[SessionRecord]: ...

    def update_session_token(
        self, user_id: str, refresh_token: str
    ) -> Optional[SessionRecord]: ...

    def touch_session(self, user_id: str) -> None: ...

    def mark_session_reauth(self, user_id: str, reason: str) -> bool: ...

    def delete_session(self, user_id: str) -> bool: ...

    def purge_expired_sessions(self) -> int: ...


class SessionService:
    """Lifecycle of durable refresh-token sessions and their fallback references.

    A fallback reference is an HS256 token handed to the browser at login. It
    names the user, the session row and the row's nonce, so the fallback
    refresh path only releases a stored refresh token to a caller that
    completed the login that created that row.
    """

    def __init__(self, store: SessionStore, *, secret: str, ttl_days: int = 30) -> None:
        if not secret:
            raise ValueError("session service requires a signing secret")
        self.store = store
        self._secret = secret
        self.ttl_days = ttl_days

    def store_refresh_token(
        self, user_id: str, refresh_token: str, *, user_agent: Optional[str] = None
    ) -> SessionRecord:
        custom = BrowserSessionData(
            fallback_nonce=secrets.token_urlsafe(16), user_agent=user_agent
        )
        record = self.store.replace_session(
            user_id, refresh_token, ttl_days=self.ttl_days, custom_data=custom
        )
        logger.info("session_stored", user_id=user_id, session_id=record.id)
        return record

    def rotate(self, user_id: str, refresh_token: str) -> Optional[SessionRecord]:
        record = self.store.update_session_token(user_id, refresh_token)
        if record is not None:
            logger.info("session_refresh_token_rotated", user_id=user_id, session_id=record.id)
        return record

    def touch(self, user_id: str) -> None:
        self.store.touch_session(user_id)

    def mark_requires_reauth(self, user_id: str, reason: str) -> bool:
        flagged = self.store.mark_session_reauth(user_id, reason)
        if flagged:
            logger.warning("session_requires_reauth", user_id=user_id, reason=reason)
        return flagged

    def session_for_refresh_token(self, refresh_token: str) -> Optional[SessionRecord]:
        return self.store.get_session_by_refresh_token(refresh_token)

    def session_for_user(self, user_id: str) -> Optional[SessionRecord]:
        return self.store.get_session_for_user(user_id)

    def revoke(self, user_id: str) -> bool:
        removed = self.store.delete_session(user_id)
        if removed:
            logger.info("session_revoked", user_id=user_id)
        return removed

    def issue_fallback_reference(self, session: SessionRecord) -> Optional[str]:
        if not isinstance(session.custom_data, BrowserSessionData):
            return None
        claims = {
            "sub": session.user_id,
            "sid": session.id,
            "nonce": session.custom_data.fallback_nonce,
            "typ": FALLBACK_REF_TYPE,
            "iat": int(utcnow().timestamp()),
            "exp": int(session.expires_at.timestamp()),
        }
        return jwt.encode(claims, self._secret, algorithm="HS256")

    def verify_fallback_reference(self, fallback_ref: str, user_id: str) -> SessionRecord:
        """Return the session row ``fallback_ref`` was issued for.

        Raises:
            AuthenticationError: the reference is malformed, expired, forged,
                or names a different user.
            RefreshInvalidGrantError: the referenced session was replaced,
                revoked, or flagged for re-authentication.
        """
        try:
            claims = jwt.decode(
                fallback_ref,
                self._secret,
                algorithms=["HS256"],
                options={"require": ["exp", "sub", "sid", "nonce"]},
            )
        except jwt.PyJWTError as exc:
            logger.warning("fallback_ref_invalid", error_type=type(exc).__name__)
            raise AuthenticationError("invalid fallback reference") from exc

        if claims.get("typ") != FALLBACK_REF_TYPE or not hmac.compare_digest(
            str(claims["sub"]).encode(), user_id.encode()
        ):
            logger.warning("fallback_ref_user_mismatch", user_id=user_id)
            raise AuthenticationError("invalid fallback reference")

        session = self.store.get_session_for_user(user_id)
        if (
            session is None
            or session.id != claims["sid"]
            or not isinstance(session.custom_data, BrowserSessionData)
            or not hmac.compare_digest(
                session.custom_data.fallback_nonce.encode(), str(claims["nonce"]).encode()
            )
        ):
            logger.warning("fallback_ref_session_gone", user_id=user_id)
            raise RefreshInvalidGrantError(reason=ReauthReason.REFRESH_TOKEN_REVOKED.value)
        if session.requires_reauth:
            raise RefreshInvalidGrantError(reason=session.reauth_reason)
        return session
