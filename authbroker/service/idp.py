"""HTTP client for the identity provider's authorize, token and JWKS endpoints.

Every call gets a fresh ``httpx.AsyncClient`` with the configured timeout.
Transport failures are raised as ``UpstreamTimeoutError`` or
``UpstreamUnavailableError`` so callers can tell an unreachable IdP apart
from a rejected credential.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx
import jwt

from authbroker.config import Settings
from authbroker.logging import get_logger, sanitize_error_message
from authbroker.service.errors import (
    RefreshInvalidGrantError,
    TokenExchangeFailedError,
    UpstreamTimeoutError,
    UpstreamUnavailableError,
)

logger = get_logger(__name__)

DEFAULT_EXPIRES_IN = 3600
_PROFILE_CLAIMS = ("email", "name", "nickname", "picture")


@dataclass(frozen=True)
class TokenBundle:
    access_token: str
    token_type: str = "Bearer"
    expires_in: int = DEFAULT_EXPIRES_IN
    id_token: Optional[str] = None
    refresh_token: Optional[str] = None
    scope: Optional[str] = None

    @classmethod
    def from_response(cls, payload: Any) -> "TokenBundle":
        if not isinstance(payload, dict) or not payload.get("access_token"):
            raise TokenExchangeFailedError(detail={"reason": "missing_access_token"})
        try:
            expires_in = int(payload.get("expires_in") or DEFAULT_EXPIRES_IN)
        except (TypeError, ValueError):
            expires_in = DEFAULT_EXPIRES_IN
        return cls(
            access_token=str(payload["access_token"]),
            token_type=str(payload.get("token_type") or "Bearer"),
            expires_in=expires_in,
            id_token=payload.get("id_token"),
            refresh_token=payload.get("refresh_token"),
            scope=payload.get("scope"),
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TokenBundle":
        return cls(**{k: data.get(k) for k in cls.__dataclass_fields__ if k in data})


def profile_from_id_token(id_token: Optional[str]) -> Dict[str, Any]:
    """Read profile claims from an ID token received directly from the token endpoint.

    The token arrives over the authenticated TLS channel of the code grant, so
    its signature is not re-checked; the subject is cross-checked against the
    verified access token by the caller.
    """
    if not id_token:
        return {}
    try:
        claims = jwt.decode(id_token, options={"verify_signature": False})
    except jwt.InvalidTokenError as exc:
        logger.warning("id_token_unreadable", error=str(exc))
        return {}
    profile = {key: claims.get(key) for key in _PROFILE_CLAIMS if claims.get(key)}
    if claims.get("sub"):
        profile["sub"] = claims["sub"]
    return profile


class IdentityProviderClient:
    def __init__(
        self, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> None:
        self.settings = settings
        self._transport = transport
        self._timeout = httpx.Timeout(settings.idp_timeout_seconds)

    @property
    def authorize_endpoint(self) -> str:
        return f"{self.settings.idp_origin}/authorize"

    @property
    def token_endpoint(self) -> str:
        return f"{self.settings.idp_origin}/oauth/token"

    @property
    def jwks_endpoint(self) -> str:
        return f"{self.settings.idp_origin}/.well-known/jwks.json"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._timeout, follow_redirects=False, transport=self._transport
        )

    def authorize_url(self, *, state: str, code_challenge: str, redirect_uri: str) -> str:
        params = {
            "response_type": "code",
            "client_id": self.settings.idp_client_id,
            "redirect_uri": redirect_uri,
            "scope": " ".join(self.settings.idp_scopes),
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        }
        if self.settings.idp_audience:
            params["audience"] = self.settings.idp_audience
        return f"{self.authorize_endpoint}?{urlencode(params)}"

    async def exchange_code(
        self, code: str, code_verifier: str, redirect_uri: str
    ) -> TokenBundle:
        form = {
            "grant_type": "authorization_code",
            "client_id": self.settings.idp_client_id,
            "code": code,
            "code_verifier": code_verifier,
            "redirect_uri": redirect_uri,
        }
        return await self._token_request(form)

    async def refresh(self, refresh_token: str) -> TokenBundle:
        """Run the refresh grant. ``invalid_grant`` raises ``RefreshInvalidGrantError``."""
        form = {
            "grant_type": "refresh_token",
            "client_id": self.settings.idp_client_id,
            "refresh_token": refresh_token,
        }
        return await self._token_request(form)

    async def _token_request(self, form: Dict[str, str]) -> TokenBundle:
        grant_type = form["grant_type"]
        if self.settings.idp_client_secret:
            form["client_secret"] = self.settings.idp_client_secret
        if self.settings.idp_audience:
            form["audience"] = self.settings.idp_audience
        try:
            async with self._client() as client:
                response = await client.post(
                    self.token_endpoint, data=form, headers={"Accept": "application/json"}
                )
        except httpx.TimeoutException as exc:
            logger.error("idp_token_timeout", grant_type=grant_type, error=str(exc))
            raise UpstreamTimeoutError("identity provider timed out") from exc
        except httpx.TransportError as exc:
            logger.error("idp_token_unreachable", grant_type=grant_type, error=str(exc))
            raise UpstreamUnavailableError("identity provider unavailable") from exc

        if response.status_code >= 500:
            logger.error(
                "idp_token_server_error",
                grant_type=grant_type,
                status_code=response.status_code,
                body=sanitize_error_message(response.text),
            )
            raise UpstreamUnavailableError("identity provider unavailable")
        if response.status_code >= 400:
            self._raise_rejected(grant_type, response)

        try:
            payload = response.json()
        except ValueError as exc:
            logger.error("idp_token_parse_error", grant_type=grant_type, error=str(exc))
            raise UpstreamUnavailableError("identity provider returned malformed data") from exc
        return TokenBundle.from_response(payload)

    @staticmethod
    def _raise_rejected(grant_type: str, response: httpx.Response) -> None:
        try:
            body = response.json()
        except ValueError:
            body = {}
        error = body.get("error") if isinstance(body, dict) else None
        logger.warning(
            "idp_token_rejected",
            grant_type=grant_type,
            status_code=response.status_code,
            idp_error=error,
            body=sanitize_error_message(response.text),
        )
        if grant_type == "refresh_token":
            if error == "invalid_grant":
                raise RefreshInvalidGrantError(reason="token_rotation_limit")
            raise TokenExchangeFailedError(
                upstream_status=response.status_code, status_code=401
            )
        raise TokenExchangeFailedError(upstream_status=response.status_code)

    async def fetch_jwks(self) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.get(
                    self.jwks_endpoint, headers={"Accept": "application/json"}
                )
        except httpx.TimeoutException as exc:
            raise UpstreamTimeoutError("signing keys unavailable") from exc
        except httpx.TransportError as exc:
            raise UpstreamUnavailableError("signing keys unavailable") from exc
        if response.status_code != 200:
            logger.error("jwks_fetch_failed", status_code=response.status_code)
            raise UpstreamUnavailableError("signing keys unavailable")
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamUnavailableError("signing keys malformed") from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("keys"), list):
            raise UpstreamUnavailableError("signing keys malformed")
        return payload
