from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each exception class defines both an HTTP ``status_code`` and a stable
    ``error_code`` that the API envelope exposes to clients:
    - unauthorized (401)
    - forbidden (403)
    - not_found (404)
    - validation_error (400)
    - conflict (409)
    - server_error (500)
    plus the authentication codes declared by the subclasses below.
    """

    status_code: int = 400
    error_code: str = "validation_error"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        self.detail = detail or {}


class ValidationError(ServiceError):
    """Request validation failed (400)."""
    status_code = 400
    error_code = "validation_error"


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class NotFoundError(ServiceError):
    """Requested resource not found (404)."""
    status_code = 404
    error_code = "not_found"


class ServerError(ServiceError):
    """Internal server error (500)."""
    status_code = 500
    error_code = "server_error"


class StateMismatchError(ServiceError):
    """Callback ``state`` does not match the one stored at login (400)."""
    status_code = 400
    error_code = "state_mismatch"


class TokenExchangeFailedError(ServiceError):
    """The IdP rejected an authorization code or refresh request."""
    status_code = 400
    error_code = "token_exchange_failed"

    def __init__(
        self,
        message: str = "authentication failed",
        *,
        upstream_status: Optional[int] = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        # Logged only; never rendered to clients
        self.upstream_status = upstream_status


class StateTokenInvalidOrExpiredError(AuthenticationError):
    """State token is unknown, already consumed, or past its TTL (401)."""
    error_code = "state_token_invalid"


class InvalidTokenError(AuthenticationError):
    """Access token failed signature or claim verification (401)."""
    error_code = "invalid_token"


class RefreshInvalidGrantError(AuthenticationError):
    """Refresh token was consumed, expired, or hit the rotation limit (401).

    The session is unrecoverable; clients must start a fresh interactive login.
    """
    error_code = "reauth_required"

    def __init__(
        self,
        message: str = "re-authentication required",
        *,
        reason: Optional[str] = None,
        **kwargs,
    ) -> None:
        detail = kwargs.pop("detail", None) or {}
        detail.setdefault("requiresReauth", True)
        super().__init__(message, detail=detail, **kwargs)
        self.reason = reason


class UpstreamError(ServiceError):
    """Base for IdP transport failures, distinct from credential failures."""
    status_code = 503
    error_code = "upstream_unavailable"


class UpstreamTimeoutError(UpstreamError):
    """An IdP or JWKS call exceeded its timeout (504)."""
    status_code = 504
    error_code = "upstream_timeout"


class UpstreamUnavailableError(UpstreamError):
    """The IdP could not be reached or answered with a server error (503)."""
    status_code = 503
    error_code = "upstream_unavailable"


__all__ = [
    "ServiceError",
    "ValidationError",
    "AuthenticationError",
    "NotFoundError",
    "ServerError",
    "StateMismatchError",
    "TokenExchangeFailedError",
    "StateTokenInvalidOrExpiredError",
    "InvalidTokenError",
    "RefreshInvalidGrantError",
    "UpstreamError",
    "UpstreamTimeoutError",
    "UpstreamUnavailableError",
]
