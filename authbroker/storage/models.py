from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, Literal, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (older records, some drivers) to aware UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class User:
    id: str
    subject: str
    email: Optional[str] = None
    name: Optional[str] = None
    nickname: Optional[str] = None
    picture: Optional[str] = None
    role: str = "user"
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None


class ReauthReason(str, Enum):
    """Why a session row was flagged ``requires_reauth``."""

    TOKEN_ROTATION_LIMIT = "token_rotation_limit"
    REFRESH_TOKEN_REVOKED = "refresh_token_revoked"


@dataclass(frozen=True)
class BrowserSessionData:
    """Session opened by an interactive browser login.

    ``fallback_nonce`` is embedded in fallback references; replacing the row
    (new login, logout) invalidates every reference issued for the old one.
    """

    fallback_nonce: str
    user_agent: Optional[str] = None
    kind: Literal["browser"] = "browser"


@dataclass(frozen=True)
class ServiceAccountData:
    """Session seeded for the non-interactive service identity."""

    label: str = "service"
    kind: Literal["service_account"] = "service_account"


SessionCustomData = Union[BrowserSessionData, ServiceAccountData]


def custom_data_to_dict(data: Optional[SessionCustomData]) -> Optional[Dict[str, Any]]:
    if data is None:
        return None
    if isinstance(data, BrowserSessionData):
        return {
            "kind": data.kind,
            "fallback_nonce": data.fallback_nonce,
            "user_agent": data.user_agent,
        }
    if isinstance(data, ServiceAccountData):
        return {"kind": data.kind, "label": data.label}
    raise TypeError(f"unsupported session custom data: {type(data).__name__}")


def custom_data_from_dict(raw: Optional[Dict[str, Any]]) -> Optional[SessionCustomData]:
    if not raw:
        return None
    kind = raw.get("kind")
    if kind == "browser":
        nonce = raw.get("fallback_nonce")
        if not isinstance(nonce, str) or not nonce:
            raise ValueError("browser session data requires fallback_nonce")
        return BrowserSessionData(fallback_nonce=nonce, user_agent=raw.get("user_agent"))
    if kind == "service_account":
        return ServiceAccountData(label=raw.get("label") or "service")
    raise ValueError(f"unknown session custom data kind: {kind!r}")


@dataclass
class SessionRecord:
    """Durable refresh-token row; at most one per user."""

    id: str
    user_id: str
    refresh_token: str
    expires_at: datetime
    last_used_at: datetime
    created_at: datetime
    updated_at: datetime
    requires_reauth: bool = False
    reauth_reason: Optional[str] = None
    custom_data: Optional[SessionCustomData] = None

    @classmethod
    def new(
        cls,
        user_id: str,
        refresh_token: str,
        *,
        ttl_days: int = 30,
        custom_data: Optional[SessionCustomData] = None,
    ) -> "SessionRecord":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            refresh_token=refresh_token,
            expires_at=now + timedelta(days=ttl_days),
            last_used_at=now,
            created_at=now,
            updated_at=now,
            custom_data=custom_data,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return as_utc(self.expires_at) <= (now or utcnow())

    @property
    def is_usable(self) -> bool:
        return not self.requires_reauth and not self.is_expired()
