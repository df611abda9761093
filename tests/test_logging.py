"""Tests for log redaction and correlation ids."""

from throttlecove.logging import (
    _add_correlation_id,
    _redact_secrets,
    get_correlation_id,
    set_correlation_id,
)


class TestRedaction:
    def test_credentials_are_masked(self):
        event = _redact_secrets(
            None,
            "info",
            {
                "event": "login_failed",
                "password": "Secret123!",
                "refresh_token": "eyJhbGciOiJIUzI1NiJ9.x.y",
                "authorization": "Bearer abc",
                "password_hash": "$argon2id$v=19$...",
                "pin_secret": "1234",
            },
        )
        assert event["password"] == "Se***3!"
        assert "eyJhbGciOiJIUzI1NiJ9" not in event["refresh_token"]
        assert event["authorization"].startswith("Be***")
        assert event["pin_secret"] == "***"
        assert event["event"] == "login_failed"

    def test_references_and_labels_pass_through(self):
        event = _redact_secrets(
            None,
            "info",
            {"refresh_token_ref": "abc123", "token_type": "access", "user_id": "u1"},
        )
        assert event == {"refresh_token_ref": "abc123", "token_type": "access", "user_id": "u1"}


class TestCorrelationId:
    def test_supplied_id_is_kept(self):
        assert set_correlation_id("req-42") == "req-42"
        assert _add_correlation_id(None, "info", {})["correlation_id"] == "req-42"

    def test_missing_id_is_generated(self):
        generated = set_correlation_id(None)
        assert generated
        assert get_correlation_id() == generated
