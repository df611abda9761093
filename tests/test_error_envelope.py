"""Tests for the error envelope format and error handling.

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

from throttlecove.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
)
from throttlecove.api.schemas import Envelope, ErrorBody
from throttlecove.service.errors import (
    AccountLockedError,
    DuplicateUserError,
    InvalidCredentialsError,
    InvalidTokenError,
    SessionExpiredError,
)


class TestErrorBody:
    def test_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.details is None

    def test_details_accept_dict_or_list(self):
        assert ErrorBody(
            code="duplicate_user", message="taken", details={"field": "email"}
        ).details == {"field": "email"}
        assert len(
            ErrorBody(code="validation_error", message="bad", details=[{"loc": ["a"]}, {}]).details
        ) == 2

    @pytest.mark.parametrize(
        "code",
        ["invalid_credentials", "invalid_token", "account_locked", "rate_limited", "duplicate_user"],
    )
    def test_auth_codes_are_valid(self, code):
        assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")


class TestEnvelope:
    def test_request_id_is_generated(self):
        first = Envelope(status="ok", data={})
        second = Envelope(status="ok", data={})
        assert first.request_id and first.request_id != second.request_id

    def test_status_is_constrained(self):
        with pytest.raises(ValidationError):
            Envelope(status="maybe")


class TestStatusMapping:
    def test_known_statuses(self):
        assert _STATUS_TO_CODE[401] == "unauthorized"
        assert _STATUS_TO_CODE[403] == "forbidden"
        assert _STATUS_TO_CODE[423] == "account_locked"
        assert _STATUS_TO_CODE[429] == "rate_limited"

    def test_unknown_status_falls_back(self):
        assert _error_code_for_status(418) == "server_error"

    def test_error_response_shape(self):
        response = _error_response(400, "email already exists", {"field": "email"}, code="duplicate_user")
        body = json.loads(response.body)
        assert response.status_code == 400
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "duplicate_user",
            "message": "email already exists",
            "details": {"field": "email"},
        }
        assert body["request_id"]

    def test_error_response_derives_code(self):
        body = json.loads(_error_response(423, "locked").body)
        assert body["error"]["code"] == "account_locked"


class TestServiceErrors:
    @pytest.mark.parametrize(
        "exc,status,code",
        [
            (InvalidCredentialsError(), 401, "invalid_credentials"),
            (SessionExpiredError("Session expired"), 401, "unauthorized"),
            (InvalidTokenError(), 403, "invalid_token"),
            (AccountLockedError(), 423, "account_locked"),
            (DuplicateUserError("username"), 400, "duplicate_user"),
        ],
    )
    def test_status_and_code(self, exc, status, code):
        assert exc.status_code == status
        assert exc.error_code == code

    def test_invalid_token_reason_stays_internal(self):
        exc = InvalidTokenError(reason="bad_signature")
        assert exc.reason == "bad_signature"
        assert "signature" not in exc.message
        assert exc.detail == {}
