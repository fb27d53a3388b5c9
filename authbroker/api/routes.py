from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from authbroker.api.error_handling import _error_response
from authbroker.api.schemas import (
    AuthCheckResponse,
    Envelope,
    MessageResponse,
    RefreshFallbackRequest,
    RefreshResponse,
    TokenExchangeRequest,
    TokenExchangeResponse,
    TokenValidationResponse,
    UserProfile,
)
from authbroker.config import Settings
from authbroker.logging import get_logger
from authbroker.service.errors import (
    InvalidTokenError,
    NotFoundError,
    RefreshInvalidGrantError,
    StateMismatchError,
    TokenExchangeFailedError,
)
from authbroker.service.refresh import RefreshResult
from authbroker.service.runtime import get_runtime
from authbroker.service.verifier import Identity

logger = get_logger(__name__)

router = APIRouter()

LOGIN_PATH = "/auth/login"


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    token = token.strip()
    if scheme.lower() != "bearer" or not token or " " in token:
        return None
    return token


async def get_identity(
    request: Request, authorization: Optional[str] = Header(None)
) -> Identity:
    """Verify the bearer access token and attach the identity to the request.

    Requests without a well-formed ``Authorization: Bearer`` header are
    rejected before any key lookup.
    """
    token = _bearer_token(authorization)
    if token is None:
        raise _http_error("unauthorized", "missing bearer token", status_code=401)
    identity = await get_runtime().verifier.verify_identity(token)
    request.state.identity = identity
    return identity


async def require_identity(
    request: Request, identity: Identity = Depends(get_identity)
) -> Identity:
    if getattr(request.state, "identity", None) is None:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return identity


def _set_refresh_cookie(response: Response, settings: Settings, refresh_token: str) -> None:
    response.set_cookie(
        settings.refresh_cookie_name,
        refresh_token,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite=settings.refresh_cookie_samesite,
        max_age=settings.session_ttl_days * 24 * 60 * 60,
        path=settings.refresh_cookie_path,
        domain=settings.refresh_cookie_domain,
    )


def _clear_refresh_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.refresh_cookie_name,
        path=settings.refresh_cookie_path,
        domain=settings.refresh_cookie_domain,
        secure=settings.refresh_cookie_secure,
        samesite=settings.refresh_cookie_samesite,
        httponly=True,
    )


def _clear_login_cookie(response: Response, settings: Settings) -> None:
    response.delete_cookie(
        settings.login_cookie_name,
        path="/",
        secure=settings.refresh_cookie_secure,
        samesite="lax",
        httponly=True,
    )


def _reauth_response(settings: Settings, exc: RefreshInvalidGrantError) -> JSONResponse:
    """401 envelope telling the client to restart login; the dead refresh cookie is dropped."""
    details = {**exc.detail, "requiresReauth": True, "loginUrl": LOGIN_PATH}
    if exc.reason:
        details["reason"] = exc.reason
    response = _error_response(401, exc.message, details, code=exc.error_code)
    _clear_refresh_cookie(response, settings)
    return response


def _refresh_payload(response: Response, settings: Settings, result: RefreshResult) -> Envelope:
    if result.rotated_refresh_token:
        _set_refresh_cookie(response, settings, result.rotated_refresh_token)
    data = RefreshResponse(
        access_token=result.bundle.access_token,
        expires_in=result.bundle.expires_in,
        token_type=result.bundle.token_type,
        user=UserProfile.from_user(result.user),
    )
    return Envelope(status="ok", data=data.model_dump(by_alias=True, mode="json"))


@router.get(LOGIN_PATH, tags=["auth"])
async def login():
    """Start the Authorization Code + PKCE flow.

    Stores the PKCE context server-side, sets the short-lived login cookie
    and redirects the browser to the IdP authorize endpoint.
    """
    runtime = get_runtime()
    settings = runtime.settings
    start = await runtime.orchestrator.start_login()
    response = RedirectResponse(start.authorize_url, status_code=302)
    response.set_cookie(
        settings.login_cookie_name,
        start.login_session_id,
        httponly=True,
        secure=settings.refresh_cookie_secure,
        samesite="lax",
        max_age=settings.pkce_ttl_seconds,
        path="/",
    )
    logger.info("login_started", flow_id=start.flow_id)
    return response


@router.get("/auth/callback", tags=["auth"])
async def callback(
    request: Request,
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
    error: Optional[str] = Query(None, max_length=256),
    error_description: Optional[str] = Query(None, max_length=1024),
):
    """Complete the IdP redirect.

    Redirects to the frontend with a one-time ``state_token`` and sets the
    refresh cookie when the IdP issued a refresh token.

    Raises:
        400: state mismatch or rejected code (unless LOGIN_ERROR_URL is set)
        503/504: IdP unreachable or timed out
    """
    runtime = get_runtime()
    settings = runtime.settings
    try:
        result = await runtime.orchestrator.complete_callback(
            request.cookies.get(settings.login_cookie_name),
            code=code,
            state=state,
            error=error,
            error_description=error_description,
            user_agent=request.headers.get("user-agent"),
        )
    except (StateMismatchError, TokenExchangeFailedError, InvalidTokenError) as exc:
        if not settings.login_error_url:
            raise
        separator = "&" if "?" in settings.login_error_url else "?"
        redirect = RedirectResponse(
            f"{settings.login_error_url}{separator}{urlencode({'error': exc.error_code})}",
            status_code=302,
        )
        _clear_login_cookie(redirect, settings)
        return redirect

    response = RedirectResponse(result.redirect_url, status_code=302)
    _clear_login_cookie(response, settings)
    if result.refresh_token:
        _set_refresh_cookie(response, settings, result.refresh_token)
    logger.info("login_callback_completed", user_id=result.user.id)
    return response


@router.post("/auth/token-exchange", response_model=Envelope, tags=["auth"])
async def token_exchange(body: TokenExchangeRequest):
    """Trade a one-time state token for the access token and user profile.

    Raises:
        401: state token unknown, expired or already used
    """
    runtime = get_runtime()
    result = await runtime.orchestrator.exchange_state_token(body.state_token)
    data = TokenExchangeResponse(
        access_token=result.access_token,
        expires_in=result.expires_in,
        token_type=result.token_type,
        user=UserProfile.from_user(result.user),
        fallback_ref=result.fallback_ref,
    )
    return Envelope(status="ok", data=data.model_dump(by_alias=True, mode="json"))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh(request: Request, response: Response):
    """Refresh the access token using the HttpOnly refresh cookie.

    Raises:
        401: no refresh cookie, or the refresh token is dead (``reauth_required``)
    """
    runtime = get_runtime()
    settings = runtime.settings
    refresh_token = request.cookies.get(settings.refresh_cookie_name)
    if not refresh_token:
        raise _http_error("unauthorized", "refresh token missing", status_code=401)
    try:
        result = await runtime.refresh.refresh(refresh_token)
    except RefreshInvalidGrantError as exc:
        return _reauth_response(settings, exc)
    return _refresh_payload(response, settings, result)


@router.post("/auth/refresh-fallback", response_model=Envelope, tags=["auth"])
async def refresh_fallback(body: RefreshFallbackRequest, response: Response):
    """Refresh for browsers that block the refresh cookie.

    The caller proves it completed the login that stored the session by
    presenting the fallback reference handed out at token exchange.
    """
    runtime = get_runtime()
    settings = runtime.settings
    try:
        result = await runtime.refresh.refresh_for_user(body.user_id, body.fallback_ref)
    except RefreshInvalidGrantError as exc:
        return _reauth_response(settings, exc)
    return _refresh_payload(response, settings, result)


@router.post("/auth/reauth-required", tags=["auth"])
async def reauth_required(request: Request):
    """Drop a dead session and tell the client to restart the interactive login."""
    runtime = get_runtime()
    settings = runtime.settings
    refresh_token = request.cookies.get(settings.refresh_cookie_name)
    reason = None
    if refresh_token:
        session = runtime.sessions.session_for_refresh_token(refresh_token)
        if session is not None and session.requires_reauth:
            reason = session.reauth_reason
            runtime.sessions.revoke(session.user_id)
    return _reauth_response(
        settings, RefreshInvalidGrantError("re-authentication required", reason=reason)
    )


@router.get("/auth/check", response_model=Envelope, tags=["auth"])
async def check(request: Request, authorization: Optional[str] = Header(None)):
    """Report whether the caller holds a usable refresh cookie or a valid bearer token."""
    runtime = get_runtime()
    settings = runtime.settings
    user = None
    authenticated = False
    refresh_token = request.cookies.get(settings.refresh_cookie_name)
    if refresh_token:
        session = runtime.sessions.session_for_refresh_token(refresh_token)
        if session is not None and session.is_usable:
            user = runtime.store.get_user(session.user_id)
            authenticated = user is not None
    token = _bearer_token(authorization)
    if not authenticated and token:
        try:
            identity = await runtime.verifier.verify_identity(token)
        except InvalidTokenError:
            identity = None
        if identity is not None:
            authenticated = True
            user = runtime.store.get_user_by_subject(identity.subject)
    data = AuthCheckResponse(
        is_authenticated=authenticated,
        user=UserProfile.from_user(user) if user else None,
    )
    return Envelope(status="ok", data=data.model_dump(by_alias=True, mode="json"))


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request, response: Response, authorization: Optional[str] = Header(None)
):
    """Clear auth cookies and delete the stored refresh-token session."""
    runtime = get_runtime()
    settings = runtime.settings
    user_id = None
    refresh_token = request.cookies.get(settings.refresh_cookie_name)
    if refresh_token:
        session = runtime.sessions.session_for_refresh_token(refresh_token)
        if session is not None:
            user_id = session.user_id
    token = _bearer_token(authorization)
    if user_id is None and token:
        try:
            identity = await runtime.verifier.verify_identity(token)
        except InvalidTokenError:
            identity = None
        if identity is not None:
            user = runtime.store.get_user_by_subject(identity.subject)
            user_id = user.id if user else None
    if user_id:
        runtime.sessions.revoke(user_id)
    _clear_refresh_cookie(response, settings)
    _clear_login_cookie(response, settings)
    logger.info("logout_completed", user_id=user_id)
    return Envelope(
        status="ok", data=MessageResponse(message="logged out").model_dump(by_alias=True)
    )


@router.post("/auth/validate-token", response_model=Envelope, tags=["auth"])
async def validate_token(authorization: Optional[str] = Header(None)):
    runtime = get_runtime()
    token = _bearer_token(authorization)
    identity = None
    if token:
        try:
            identity = await runtime.verifier.verify_identity(token)
        except InvalidTokenError:
            identity = None
    data = TokenValidationResponse(
        is_valid=identity is not None,
        subject=identity.subject if identity else None,
    )
    return Envelope(status="ok", data=data.model_dump(by_alias=True, mode="json"))


@router.get("/auth/profile", response_model=Envelope, tags=["auth"])
async def profile(identity: Identity = Depends(require_identity)):
    """Return the local profile of the bearer token's subject.

    Raises:
        401: missing or invalid bearer token
        404: the subject never completed a login here
    """
    runtime = get_runtime()
    user = runtime.store.get_user_by_subject(identity.subject)
    if user is None:
        raise NotFoundError("user not found")
    return Envelope(
        status="ok",
        data=UserProfile.from_user(user).model_dump(by_alias=True, mode="json"),
    )
