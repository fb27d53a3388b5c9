"""Tests for the login orchestrator and its flow state machine."""

from urllib.parse import parse_qs, urlparse

import pytest

from authbroker.service.errors import (
    InvalidTokenError,
    StateMismatchError,
    TokenExchangeFailedError,
    UpstreamUnavailableError,
)
from authbroker.service.orchestrator import FlowStage, LoginFlow, PKCEContext
from authbroker.service.pkce import generate_code_challenge


def code_grants(idp):
    return [r for r in idp.token_requests if r.get("grant_type") == "authorization_code"]


class TestLoginFlow:
    def test_happy_path_walks_every_stage(self):
        flow = LoginFlow()
        for stage in [
            FlowStage.AUTHORIZED_REDIRECT,
            FlowStage.CALLBACK_RECEIVED,
            FlowStage.CODE_EXCHANGED,
            FlowStage.STATE_TOKEN_ISSUED,
            FlowStage.EXCHANGED_FOR_ACCESS_TOKEN,
            FlowStage.AUTHENTICATED,
        ]:
            flow.advance(stage)
        assert flow.stage is FlowStage.AUTHENTICATED
        assert flow.is_terminal

    def test_skipping_a_stage_is_illegal(self):
        flow = LoginFlow(stage=FlowStage.CALLBACK_RECEIVED)
        with pytest.raises(ValueError):
            flow.advance(FlowStage.STATE_TOKEN_ISSUED)

    def test_fail_from_any_open_stage(self):
        flow = LoginFlow(stage=FlowStage.CODE_EXCHANGED)
        flow.fail("upstream_timeout")
        assert flow.stage is FlowStage.FAILED

    def test_terminal_stages_are_final(self):
        flow = LoginFlow(stage=FlowStage.AUTHENTICATED)
        flow.fail("late")
        assert flow.stage is FlowStage.AUTHENTICATED
        with pytest.raises(ValueError):
            flow.advance(FlowStage.FAILED)


class TestStartLogin:
    @pytest.mark.asyncio
    async def test_context_stored_and_challenge_sent(self, runtime):
        start = await runtime.orchestrator.start_login()

        raw = await runtime.cache.pop_json("pkce:" + start.login_session_id)
        context = PKCEContext.from_dict(raw)
        params = {k: v[0] for k, v in parse_qs(urlparse(start.authorize_url).query).items()}

        assert params["state"] == context.state
        assert params["code_challenge"] == generate_code_challenge(context.code_verifier)
        assert context.code_verifier not in start.authorize_url
        assert context.flow_id == start.flow_id
        assert context.stage == FlowStage.AUTHORIZED_REDIRECT.value


class TestCompleteCallback:
    @pytest.mark.asyncio
    async def test_successful_callback_issues_state_token(self, runtime, idp):
        start = await runtime.orchestrator.start_login()
        code, state = idp.authorize(start.authorize_url, subject="auth0|alice", email="a@example.com")

        result = await runtime.orchestrator.complete_callback(
            start.login_session_id, code=code, state=state, user_agent="pytest"
        )

        assert result.redirect_url == f"http://app.test/dashboard?state_token={result.state_token}"
        assert result.user.subject == "auth0|alice"
        assert result.user.email == "a@example.com"
        assert result.refresh_token
        assert result.session.refresh_token == result.refresh_token

    @pytest.mark.asyncio
    async def test_state_mismatch_never_reaches_token_endpoint(self, runtime, idp):
        start = await runtime.orchestrator.start_login()
        code, _ = idp.authorize(start.authorize_url, subject="auth0|alice", email="a@example.com")

        with pytest.raises(StateMismatchError):
            await runtime.orchestrator.complete_callback(
                start.login_session_id, code=code, state="forged"
            )
        assert code_grants(idp) == []

    @pytest.mark.asyncio
    async def test_missing_login_context(self, runtime, idp):
        with pytest.raises(StateMismatchError):
            await runtime.orchestrator.complete_callback(None, code="c", state="s")
        with pytest.raises(StateMismatchError):
            await runtime.orchestrator.complete_callback("unknown", code="c", state="s")
        assert code_grants(idp) == []

    @pytest.mark.asyncio
    async def test_callback_is_single_use(self, runtime, idp):
        start = await runtime.orchestrator.start_login()
        code, state = idp.authorize(start.authorize_url, subject="auth0|alice", email="a@example.com")
        await runtime.orchestrator.complete_callback(start.login_session_id, code=code, state=state)

        with pytest.raises(StateMismatchError):
            await runtime.orchestrator.complete_callback(
                start.login_session_id, code=code, state=state
            )

    @pytest.mark.asyncio
    async def test_idp_error_redirect(self, runtime, idp):
        start = await runtime.orchestrator.start_login()
        with pytest.raises(TokenExchangeFailedError):
            await runtime.orchestrator.complete_callback(
                start.login_session_id,
                code=None,
                state=None,
                error="access_denied",
                error_description="User cancelled",
            )
        assert code_grants(idp) == []

    @pytest.mark.asyncio
    async def test_missing_code(self, runtime):
        start = await runtime.orchestrator.start_login()
        key = "pkce:" + start.login_session_id
        raw = await runtime.cache.pop_json(key)
        await runtime.cache.set_json(key, raw, 600)
        with pytest.raises(TokenExchangeFailedError):
            await runtime.orchestrator.complete_callback(
                start.login_session_id, code=None, state=raw["state"]
            )

    @pytest.mark.asyncio
    async def test_no_refresh_token_means_no_session(self, runtime, idp):
        idp.issue_refresh_tokens = False
        start = await runtime.orchestrator.start_login()
        code, state = idp.authorize(start.authorize_url, subject="auth0|alice", email="a@example.com")

        result = await runtime.orchestrator.complete_callback(
            start.login_session_id, code=code, state=state
        )
        assert result.refresh_token is None
        assert result.session is None
        assert runtime.sessions.session_for_user(result.user.id) is None


class TestExchangeStateToken:
    @pytest.mark.asyncio
    async def test_exchange_returns_access_token_and_fallback_ref(self, runtime, idp):
        start = await runtime.orchestrator.start_login()
        code, state = idp.authorize(start.authorize_url, subject="auth0|alice", email="a@example.com")
        callback = await runtime.orchestrator.complete_callback(
            start.login_session_id, code=code, state=state
        )

        result = await runtime.orchestrator.exchange_state_token(callback.state_token)

        assert result.user.id == callback.user.id
        assert result.token_type == "Bearer"
        assert result.fallback_ref
        claims = await runtime.verifier.verify_access_token(result.access_token)
        assert claims["sub"] == "auth0|alice"

    @pytest.mark.asyncio
    async def test_exchange_survives_signing_key_outage(self, runtime, idp):
        start = await runtime.orchestrator.start_login()
        code, state = idp.authorize(start.authorize_url, subject="auth0|alice", email="a@example.com")
        callback = await runtime.orchestrator.complete_callback(
            start.login_session_id, code=code, state=state
        )
        idp.jwks_status = 503
        jwks_calls = idp.jwks_calls

        result = await runtime.orchestrator.exchange_state_token(callback.state_token)

        assert result.user.subject == "auth0|alice"
        assert idp.jwks_calls == jwks_calls

    @pytest.mark.asyncio
    async def test_signing_key_outage_during_callback_issues_no_state_token(self, runtime, idp):
        idp.jwks_status = 503
        start = await runtime.orchestrator.start_login()
        code, state = idp.authorize(start.authorize_url, subject="auth0|alice", email="a@example.com")

        with pytest.raises(UpstreamUnavailableError):
            await runtime.orchestrator.complete_callback(
                start.login_session_id, code=code, state=state
            )
        assert runtime.store.get_user_by_subject("auth0|alice") is None

    @pytest.mark.asyncio
    async def test_id_token_for_other_subject_rejected(self, runtime, idp):
        start = await runtime.orchestrator.start_login()
        code, state = idp.authorize(start.authorize_url, subject="auth0|alice", email="a@example.com")
        idp.codes[code]["profile"]["sub"] = "auth0|mallory"

        with pytest.raises(InvalidTokenError):
            await runtime.orchestrator.complete_callback(
                start.login_session_id, code=code, state=state
            )
        assert runtime.store.get_user_by_subject("auth0|mallory") is None
        assert runtime.store.get_user_by_subject("auth0|alice") is None
