"""Authorization Code + PKCE login flow.

A login moves through these stages, each transition logged with the flow id:

    INITIATED -> AUTHORIZED_REDIRECT -> CALLBACK_RECEIVED -> CODE_EXCHANGED
      -> STATE_TOKEN_ISSUED -> EXCHANGED_FOR_ACCESS_TOKEN -> AUTHENTICATED

``FAILED`` is reachable from every non-terminal stage. The flow spans three
HTTP requests (login, callback, token exchange), so its stage travels with the
PKCE context and the state-token entry rather than living in process memory.
"""

from __future__ import annotations

import hmac
import secrets
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional
from urllib.parse import urlencode

from authbroker.config import Settings
from authbroker.logging import get_logger
from authbroker.service.errors import (
    InvalidTokenError,
    ServiceError,
    StateMismatchError,
    TokenExchangeFailedError,
)
from authbroker.service.idp import IdentityProviderClient, profile_from_id_token
from authbroker.service.pkce import generate_pkce_pair
from authbroker.service.sessions import SessionService
from authbroker.service.state_tokens import StateTokenBroker
from authbroker.service.verifier import TokenVerifier
from authbroker.storage.models import SessionRecord, User

logger = get_logger(__name__)

_PKCE_KEY_PREFIX = "pkce:"


class FlowStage(str, Enum):
    INITIATED = "initiated"
    AUTHORIZED_REDIRECT = "authorized_redirect"
    CALLBACK_RECEIVED = "callback_received"
    CODE_EXCHANGED = "code_exchanged"
    STATE_TOKEN_ISSUED = "state_token_issued"
    EXCHANGED_FOR_ACCESS_TOKEN = "exchanged_for_access_token"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


_NEXT_STAGE = {
    FlowStage.INITIATED: FlowStage.AUTHORIZED_REDIRECT,
    FlowStage.AUTHORIZED_REDIRECT: FlowStage.CALLBACK_RECEIVED,
    FlowStage.CALLBACK_RECEIVED: FlowStage.CODE_EXCHANGED,
    FlowStage.CODE_EXCHANGED: FlowStage.STATE_TOKEN_ISSUED,
    FlowStage.STATE_TOKEN_ISSUED: FlowStage.EXCHANGED_FOR_ACCESS_TOKEN,
    FlowStage.EXCHANGED_FOR_ACCESS_TOKEN: FlowStage.AUTHENTICATED,
}
_TERMINAL = frozenset({FlowStage.AUTHENTICATED, FlowStage.FAILED})


@dataclass
class LoginFlow:
    flow_id: str = field(default_factory=lambda: secrets.token_hex(8))
    stage: FlowStage = FlowStage.INITIATED

    @property
    def is_terminal(self) -> bool:
        return self.stage in _TERMINAL

    def advance(self, stage: FlowStage) -> None:
        allowed = stage is FlowStage.FAILED and not self.is_terminal
        allowed = allowed or _NEXT_STAGE.get(self.stage) is stage
        if not allowed:
            raise ValueError(f"illegal login flow transition {self.stage.value} -> {stage.value}")
        logger.info(
            "login_flow_transition",
            flow_id=self.flow_id,
            from_stage=self.stage.value,
            to_stage=stage.value,
        )
        self.stage = stage

    def fail(self, reason: str) -> None:
        if self.is_terminal:
            return
        logger.warning("login_flow_failed", flow_id=self.flow_id, stage=self.stage.value, reason=reason)
        self.advance(FlowStage.FAILED)


@dataclass(frozen=True)
class PKCEContext:
    code_verifier: str
    state: str
    redirect_uri: str
    flow_id: str
    stage: str = FlowStage.AUTHORIZED_REDIRECT.value
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PKCEContext":
        return cls(
            code_verifier=data["code_verifier"],
            state=data["state"],
            redirect_uri=data["redirect_uri"],
            flow_id=data.get("flow_id") or secrets.token_hex(8),
            stage=data.get("stage", FlowStage.AUTHORIZED_REDIRECT.value),
            created_at=float(data.get("created_at") or time.time()),
        )


@dataclass(frozen=True)
class LoginStart:
    login_session_id: str
    authorize_url: str
    flow_id: str


@dataclass(frozen=True)
class CallbackResult:
    redirect_url: str
    state_token: str
    user: User
    refresh_token: Optional[str] = None
    session: Optional[SessionRecord] = None


@dataclass(frozen=True)
class ExchangeResult:
    access_token: str
    expires_in: int
    token_type: str
    user: User
    fallback_ref: Optional[str] = None


def _append_query(url: str, params: Dict[str, str]) -> str:
    separator = "&" if "?" in url else "?"
    return f"{url}{separator}{urlencode(params)}"


class LoginOrchestrator:
    def __init__(
        self,
        settings: Settings,
        *,
        idp: IdentityProviderClient,
        cache,
        verifier: TokenVerifier,
        state_tokens: StateTokenBroker,
        sessions: SessionService,
    ) -> None:
        self.settings = settings
        self.idp = idp
        self.cache = cache
        self.verifier = verifier
        self.state_tokens = state_tokens
        self.sessions = sessions

    async def start_login(self) -> LoginStart:
        flow = LoginFlow()
        pair = generate_pkce_pair(self.settings.pkce_verifier_length)
        context = PKCEContext(
            code_verifier=pair.verifier,
            state=secrets.token_hex(16),
            redirect_uri=self.settings.idp_callback_url,
            flow_id=flow.flow_id,
        )
        login_session_id = secrets.token_urlsafe(32)
        await self.cache.set_json(
            _PKCE_KEY_PREFIX + login_session_id,
            context.to_dict(),
            self.settings.pkce_ttl_seconds,
        )
        authorize_url = self.idp.authorize_url(
            state=context.state,
            code_challenge=pair.challenge,
            redirect_uri=context.redirect_uri,
        )
        flow.advance(FlowStage.AUTHORIZED_REDIRECT)
        return LoginStart(
            login_session_id=login_session_id,
            authorize_url=authorize_url,
            flow_id=flow.flow_id,
        )

    async def complete_callback(
        self,
        login_session_id: Optional[str],
        *,
        code: Optional[str],
        state: Optional[str],
        error: Optional[str] = None,
        error_description: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> CallbackResult:
        """Validate the IdP redirect, redeem the code and park the tokens under a state token.

        The PKCE context is consumed before anything else, so a callback URL
        can be processed at most once.
        """
        raw = (
            await self.cache.pop_json(_PKCE_KEY_PREFIX + login_session_id)
            if login_session_id
            else None
        )
        if raw is None:
            logger.warning("login_callback_without_context", has_cookie=bool(login_session_id))
            raise StateMismatchError("state mismatch")
        try:
            context = PKCEContext.from_dict(raw)
        except (KeyError, TypeError, ValueError) as exc:
            logger.error("login_context_corrupt", error=str(exc))
            raise StateMismatchError("state mismatch") from exc

        flow = LoginFlow(flow_id=context.flow_id, stage=FlowStage(context.stage))
        flow.advance(FlowStage.CALLBACK_RECEIVED)

        if error:
            logger.warning(
                "login_idp_error",
                flow_id=flow.flow_id,
                idp_error=error,
                description=error_description,
            )
            flow.fail("idp_error")
            raise TokenExchangeFailedError()
        if not state or not hmac.compare_digest(state.encode(), context.state.encode()):
            flow.fail("state_mismatch")
            raise StateMismatchError("state mismatch")
        if not code:
            flow.fail("missing_code")
            raise TokenExchangeFailedError()

        try:
            bundle = await self.idp.exchange_code(code, context.code_verifier, context.redirect_uri)
            flow.advance(FlowStage.CODE_EXCHANGED)

            # Verified here so the state token only ever parks a usable access token
            claims = await self.verifier.verify_access_token(bundle.access_token)
            subject = str(claims["sub"])
            profile = profile_from_id_token(bundle.id_token)
            id_subject = profile.pop("sub", None)
            if id_subject is not None and str(id_subject) != subject:
                logger.warning("id_token_subject_mismatch", flow_id=flow.flow_id)
                raise InvalidTokenError("invalid token")
            if claims.get("email"):
                profile.setdefault("email", claims["email"])
            user = self.sessions.store.upsert_user_profile(subject, profile)

            state_token = await self.state_tokens.issue(bundle, user, flow_id=flow.flow_id)
            flow.advance(FlowStage.STATE_TOKEN_ISSUED)
        except ServiceError as exc:
            flow.fail(exc.error_code)
            raise

        session = None
        if bundle.refresh_token:
            session = self.sessions.store_refresh_token(
                user.id, bundle.refresh_token, user_agent=user_agent
            )
        return CallbackResult(
            redirect_url=_append_query(
                self.settings.frontend_redirect_url, {"state_token": state_token}
            ),
            state_token=state_token,
            user=user,
            refresh_token=bundle.refresh_token,
            session=session,
        )

    async def exchange_state_token(self, state_token: str) -> ExchangeResult:
        """Trade the state token for the parked access token.

        The token was verified at callback time, so nothing here calls out to
        the IdP and an upstream outage cannot burn the single-use state token.
        """
        pending = await self.state_tokens.exchange(state_token)
        flow = LoginFlow(
            flow_id=pending.flow_id or secrets.token_hex(8),
            stage=FlowStage.STATE_TOKEN_ISSUED,
        )
        flow.advance(FlowStage.EXCHANGED_FOR_ACCESS_TOKEN)

        fallback_ref = None
        session = self.sessions.session_for_user(pending.user.id)
        if session is not None and session.is_usable:
            fallback_ref = self.sessions.issue_fallback_reference(session)
        flow.advance(FlowStage.AUTHENTICATED)
        return ExchangeResult(
            access_token=pending.bundle.access_token,
            expires_in=pending.bundle.expires_in,
            token_type=pending.bundle.token_type,
            user=pending.user,
            fallback_ref=fallback_ref,
        )
