from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from authbroker.storage.models import User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
    "bad_gateway",
    "state_mismatch",
    "token_exchange_failed",
    "state_token_invalid",
    "invalid_token",
    "reauth_required",
    "upstream_timeout",
    "upstream_unavailable",
})


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable, machine-readable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class _CamelModel(BaseModel):
    """Browser-facing payloads use camelCase keys; Python code uses snake_case."""

    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, serialize_by_alias=True
    )


class TokenExchangeRequest(_CamelModel):
    state_token: str = Field(..., min_length=1, max_length=128)


class RefreshFallbackRequest(_CamelModel):
    user_id: str = Field(..., min_length=1, max_length=64)
    fallback_ref: str = Field(..., min_length=1, max_length=2048)


class UserProfile(_CamelModel):
    id: str
    subject: str
    email: Optional[str] = None
    name: Optional[str] = None
    nickname: Optional[str] = None
    picture: Optional[str] = None
    role: str = "user"
    last_login: Optional[datetime] = None

    @classmethod
    def from_user(cls, user: User) -> "UserProfile":
        return cls(
            id=user.id,
            subject=user.subject,
            email=user.email,
            name=user.name,
            nickname=user.nickname,
            picture=user.picture,
            role=user.role,
            last_login=user.last_login_at,
        )


class TokenExchangeResponse(_CamelModel):
    access_token: str
    expires_in: int
    token_type: str = "Bearer"
    user: UserProfile
    fallback_ref: Optional[str] = None


class RefreshResponse(_CamelModel):
    access_token: str
    expires_in: int
    token_type: str = "Bearer"
    user: Optional[UserProfile] = None


class AuthCheckResponse(_CamelModel):
    is_authenticated: bool
    user: Optional[UserProfile] = None


class TokenValidationResponse(_CamelModel):
    is_valid: bool
    subject: Optional[str] = None


class MessageResponse(_CamelModel):
    message: str
