"""Tests for JWT issuance and verification."""

import base64
import json
from datetime import timedelta

import pytest

from throttlecove.service.errors import InvalidTokenError
from throttlecove.service.tokens import TokenIssuer
from throttlecove.storage.models import Role, User

ACCESS_SECRET = "a" * 40
REFRESH_SECRET = "r" * 40


@pytest.fixture
def issuer(clock):
    return TokenIssuer(
        access_secret=ACCESS_SECRET,
        refresh_secret=REFRESH_SECRET,
        access_ttl=timedelta(minutes=15),
        refresh_ttl=timedelta(days=7),
        clock=clock,
    )


@pytest.fixture
def user():
    return User.new("alice", "alice@example.com", "Alice Example", role=Role.ADMIN)


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).rstrip(b"=").decode()


def _claims(token: str) -> dict:
    segment = token.split(".")[1]
    return json.loads(base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4)))


class TestIssue:
    def test_access_token_round_trip(self, issuer, user, clock):
        pair = issuer.issue(user, "session-1")
        payload = issuer.verify_access(pair.access_token)
        assert payload.user_id == user.id
        assert payload.username == "alice"
        assert payload.email == "alice@example.com"
        assert payload.role is Role.ADMIN
        assert payload.session_id == "session-1"
        assert payload.jti == pair.access_jti
        assert payload.expires_at == clock.now + timedelta(minutes=15)
        assert pair.token_type == "bearer"

    def test_refresh_token_round_trip(self, issuer, user):
        pair = issuer.issue(user, "session-1")
        refresh = issuer.verify_refresh(pair.refresh_token)
        assert refresh.session_id == "session-1"
        assert refresh.user_id == user.id

    def test_refresh_token_carries_no_profile(self, issuer, user):
        pair = issuer.issue(user, "session-1")
        claims = _claims(pair.refresh_token)
        assert "email" not in claims
        assert claims["token_type"] == "refresh"

    def test_each_issue_gets_fresh_ids(self, issuer, user):
        first = issuer.issue(user, "s")
        second = issuer.issue(user, "s")
        assert first.access_jti != second.access_jti
        assert first.refresh_token != second.refresh_token

    def test_fingerprint_is_stable_sha256(self, issuer):
        assert issuer.fingerprint("abc") == issuer.fingerprint("abc")
        assert len(issuer.fingerprint("abc")) == 64
        assert issuer.fingerprint("abc") != issuer.fingerprint("abd")


class TestRejection:
    def test_expired_access_token(self, issuer, user, clock):
        pair = issuer.issue(user, "s")
        clock.advance(minutes=15)
        with pytest.raises(InvalidTokenError) as excinfo:
            issuer.verify_access(pair.access_token)
        assert excinfo.value.reason == "expired"
        assert excinfo.value.status_code == 403

    def test_leeway_tolerates_small_skew(self, clock, user):
        lenient = TokenIssuer(
            access_secret=ACCESS_SECRET,
            refresh_secret=REFRESH_SECRET,
            access_ttl=timedelta(minutes=15),
            refresh_ttl=timedelta(days=7),
            leeway=timedelta(seconds=30),
            clock=clock,
        )
        pair = lenient.issue(user, "s")
        clock.advance(minutes=15, seconds=10)
        assert lenient.verify_access(pair.access_token).user_id == user.id

    def test_tampered_payload(self, issuer, user):
        header, _, signature = issuer.issue(user, "s").access_token.split(".")
        forged = _claims(issuer.issue(user, "s").access_token)
        forged["role"] = "admin"
        forged["sub"] = "someone-else"
        with pytest.raises(InvalidTokenError) as excinfo:
            issuer.verify_access(f"{header}.{_b64(forged)}.{signature}")
        assert excinfo.value.reason == "bad_signature"

    def test_refresh_token_rejected_as_access(self, issuer, user):
        pair = issuer.issue(user, "s")
        with pytest.raises(InvalidTokenError):
            issuer.verify_access(pair.refresh_token)

    def test_access_token_rejected_as_refresh(self, issuer, user):
        pair = issuer.issue(user, "s")
        with pytest.raises(InvalidTokenError):
            issuer.verify_refresh(pair.access_token)

    def test_alg_none_rejected(self, issuer, user):
        claims = _claims(issuer.issue(user, "s").access_token)
        token = f"{_b64({'alg': 'none', 'typ': 'JWT'})}.{_b64(claims)}."
        with pytest.raises(InvalidTokenError) as excinfo:
            issuer.verify_access(token)
        assert excinfo.value.reason == "bad_algorithm"

    def test_other_secret_rejected(self, issuer, user, clock):
        other = TokenIssuer(
            access_secret="x" * 40,
            refresh_secret="y" * 40,
            access_ttl=timedelta(minutes=15),
            refresh_ttl=timedelta(days=7),
            clock=clock,
        )
        with pytest.raises(InvalidTokenError):
            issuer.verify_access(other.issue(user, "s").access_token)

    def test_wrong_audience_rejected(self, issuer, user, clock):
        other = TokenIssuer(
            access_secret=ACCESS_SECRET,
            refresh_secret=REFRESH_SECRET,
            access_ttl=timedelta(minutes=15),
            refresh_ttl=timedelta(days=7),
            audience="someone-else",
            clock=clock,
        )
        with pytest.raises(InvalidTokenError) as excinfo:
            issuer.verify_access(other.issue(user, "s").access_token)
        assert excinfo.value.reason == "wrong_audience"

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!.??.##"])
    def test_garbage_rejected(self, issuer, token):
        with pytest.raises(InvalidTokenError):
            issuer.verify_access(token)

    def test_non_ascii_signature_rejected(self, issuer, user):
        header, payload, _ = issuer.issue(user, "s").access_token.split(".")
        with pytest.raises(InvalidTokenError) as excinfo:
            issuer.verify_access(f"{header}.{payload}.\u00e9")
        assert excinfo.value.reason == "malformed"
        with pytest.raises(InvalidTokenError):
            issuer.verify_refresh(f"{header}.{payload}.\u00e9")


def test_identical_secrets_refused():
    with pytest.raises(ValueError):
        TokenIssuer(
            access_secret=ACCESS_SECRET,
            refresh_secret=ACCESS_SECRET,
            access_ttl=timedelta(minutes=15),
            refresh_ttl=timedelta(days=7),
        )
