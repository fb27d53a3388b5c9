"""Tests for the error envelope format and error-code mapping.

Error responses share one shape:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from pydantic import ValidationError

from authbroker.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from authbroker.api.schemas import Envelope, ErrorBody
from authbroker.service import errors


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid token")
        assert error.code == "unauthorized"
        assert error.message == "Invalid token"
        assert error.details is None

    def test_error_body_with_details_dict(self):
        error = ErrorBody(
            code="reauth_required",
            message="re-authentication required",
            details={"requiresReauth": True, "loginUrl": "/auth/login"},
        )
        assert error.details["loginUrl"] == "/auth/login"

    def test_error_body_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")

    def test_error_body_unknown_code_raises(self):
        """Codes outside the stable set are rejected."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestEnvelope:
    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"accessToken": "x"})
        assert envelope.status == "ok"
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")
        assert len(envelope.request_id) == 36  # UUID format

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")


class TestErrorCodeMapping:
    """HTTP status to error code mapping for errors raised without a code."""

    @pytest.mark.parametrize(
        "status,code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (500, "server_error"),
            (502, "bad_gateway"),
            (503, "upstream_unavailable"),
            (504, "upstream_timeout"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(999) == "server_error"

    def test_mapped_codes_are_valid_envelope_codes(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="m")


class TestServiceErrorTaxonomy:
    """Each domain error carries a status and a code the envelope accepts."""

    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (errors.StateMismatchError("state mismatch"), 400, "state_mismatch"),
            (errors.TokenExchangeFailedError(), 400, "token_exchange_failed"),
            (
                errors.StateTokenInvalidOrExpiredError("state token invalid or expired"),
                401,
                "state_token_invalid",
            ),
            (errors.InvalidTokenError("invalid token"), 401, "invalid_token"),
            (errors.RefreshInvalidGrantError(), 401, "reauth_required"),
            (errors.UpstreamTimeoutError("timed out"), 504, "upstream_timeout"),
            (errors.UpstreamUnavailableError("down"), 503, "upstream_unavailable"),
            (errors.NotFoundError("user not found"), 404, "not_found"),
        ],
    )
    def test_error_status_and_code(self, exc, status, code):
        assert exc.status_code == status
        assert exc.error_code == code
        ErrorBody(code=exc.error_code, message=exc.message)

    def test_reauth_error_flags_requires_reauth(self):
        exc = errors.RefreshInvalidGrantError(reason="token_rotation_limit")
        assert exc.detail["requiresReauth"] is True
        assert exc.reason == "token_rotation_limit"

    def test_exchange_failure_hides_upstream_status(self):
        exc = errors.TokenExchangeFailedError(upstream_status=403)
        assert exc.upstream_status == 403
        assert "403" not in exc.message
        assert exc.detail == {}

    def test_upstream_errors_share_base(self):
        assert issubclass(errors.UpstreamTimeoutError, errors.UpstreamError)
        assert issubclass(errors.UpstreamUnavailableError, errors.UpstreamError)
        assert not issubclass(errors.UpstreamError, errors.AuthenticationError)


class TestErrorResponseFactory:
    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")

        assert response.status_code == 401
        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["error"]["message"] == "Invalid credentials"
        assert "request_id" in data

    def test_error_response_custom_code(self):
        response = _error_response(401, "re-authentication required", code="reauth_required")
        data = json.loads(response.body.decode())
        assert data["error"]["code"] == "reauth_required"

    def test_error_response_empty_details_are_null(self):
        response = _error_response(404, "Not found", details={})
        data = json.loads(response.body.decode())
        assert data["error"]["details"] is None

    def test_error_response_list_details(self):
        response = _error_response(400, "Multiple errors", details=[{"field": "a"}, {"field": "b"}])
        data = json.loads(response.body.decode())
        assert len(data["error"]["details"]) == 2
