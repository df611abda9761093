from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from throttlecove.config import Settings
from throttlecove.logging import get_logger
from throttlecove.service.errors import InvalidTokenError
from throttlecove.storage.models import Role, User, utcnow

logger = get_logger(__name__)

ACCESS = "access"
REFRESH = "refresh"


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime
    access_jti: str
    token_type: str = "bearer"


@dataclass
class TokenPayload:
    """Verified claims of an access token."""

    user_id: str
    username: str
    email: str
    role: Role
    session_id: str
    issued_at: datetime
    expires_at: datetime
    jti: str


@dataclass
class RefreshPayload:
    session_id: str
    user_id: str
    jti: str
    expires_at: datetime


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).rstrip(b"=").decode()


def _decode_segment(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


class TokenIssuer:
    """Signs and verifies HS256 access/refresh JWTs bound to a session id.

    Access and refresh tokens use different secrets, so a leaked refresh
    secret cannot mint access tokens and vice versa.
    """

    def __init__(
        self,
        *,
        access_secret: str,
        refresh_secret: str,
        access_ttl: timedelta,
        refresh_ttl: timedelta,
        issuer: str = "throttlecove",
        audience: str = "throttlecove-clients",
        leeway: timedelta = timedelta(0),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if access_secret == refresh_secret:
            raise ValueError("access and refresh secrets must differ")
        self._secrets = {ACCESS: access_secret.encode(), REFRESH: refresh_secret.encode()}
        self.access_ttl = access_ttl
        self.refresh_ttl = refresh_ttl
        self.issuer = issuer
        self.audience = audience
        self.leeway = leeway
        self._clock = clock or utcnow

    @classmethod
    def from_settings(
        cls, settings: Settings, *, clock: Optional[Callable[[], datetime]] = None
    ) -> "TokenIssuer":
        return cls(
            access_secret=settings.jwt_secret,
            refresh_secret=settings.jwt_refresh_secret,
            access_ttl=timedelta(minutes=settings.access_token_ttl_minutes),
            refresh_ttl=timedelta(minutes=settings.refresh_token_ttl_minutes),
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            leeway=timedelta(seconds=settings.jwt_leeway_seconds),
            clock=clock,
        )

    def _now(self) -> datetime:
        return self._clock()

    @staticmethod
    def fingerprint(token: str) -> str:
        """Stable reference to a token that is safe to persist."""
        return hashlib.sha256(token.encode()).hexdigest()

    def issue(self, user: User, session_id: str) -> TokenPair:
        now = self._now()
        iat = int(now.timestamp())
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        access_jti = str(uuid.uuid4())
        access_payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
            "username": user.username,
            "email": user.email,
            "role": Role(user.role).value,
            "sid": session_id,
            "token_type": ACCESS,
            "jti": access_jti,
            "iat": iat,
            "exp": int(access_exp.timestamp()),
        }
        refresh_payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": user.id,
            "sid": session_id,
            "token_type": REFRESH,
            "jti": str(uuid.uuid4()),
            "iat": iat,
            "exp": int(refresh_exp.timestamp()),
        }
        return TokenPair(
            access_token=self._encode(access_payload, ACCESS),
            refresh_token=self._encode(refresh_payload, REFRESH),
            access_expires_at=datetime.fromtimestamp(access_payload["exp"], tz=timezone.utc),
            refresh_expires_at=datetime.fromtimestamp(refresh_payload["exp"], tz=timezone.utc),
            access_jti=access_jti,
        )

    def verify_access(self, token: str) -> TokenPayload:
        claims = self._decode(token, ACCESS)
        try:
            return TokenPayload(
                user_id=str(claims["sub"]),
                username=str(claims["username"]),
                email=str(claims["email"]),
                role=Role(claims["role"]),
                session_id=str(claims["sid"]),
                issued_at=datetime.fromtimestamp(int(claims["iat"]), tz=timezone.utc),
                expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
                jti=str(claims["jti"]),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidTokenError(reason="missing_claims") from exc

    def verify_refresh(self, token: str) -> RefreshPayload:
        claims = self._decode(token, REFRESH)
        try:
            return RefreshPayload(
                session_id=str(claims["sid"]),
                user_id=str(claims["sub"]),
                jti=str(claims["jti"]),
                expires_at=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise InvalidTokenError(reason="missing_claims") from exc

    def _sign(self, signing_input: str, kind: str) -> str:
        digest = hmac.new(self._secrets[kind], signing_input.encode(), hashlib.sha256).digest()
        return _encode_segment(digest)

    def _encode(self, payload: dict[str, Any], kind: str) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input, kind)}"

    def _decode(self, token: str, kind: str) -> dict[str, Any]:
        if not token or not isinstance(token, str):
            raise InvalidTokenError(reason="empty")
        if not token.isascii():
            raise InvalidTokenError(reason="malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError(reason="malformed") from None

        # Pin the algorithm; never trust the header to pick it.
        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError(reason="malformed_header") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning("jwt_invalid_algorithm", alg=header.get("alg") if isinstance(header, dict) else None)
            raise InvalidTokenError(reason="bad_algorithm")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}", kind)
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError(reason="bad_signature")
        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError):
            raise InvalidTokenError(reason="malformed_payload") from None
        if not isinstance(payload, dict):
            raise InvalidTokenError(reason="malformed_payload")
        if payload.get("token_type") != kind:
            raise InvalidTokenError(reason="wrong_token_type")
        if payload.get("iss") != self.issuer or payload.get("aud") != self.audience:
            raise InvalidTokenError(reason="wrong_audience")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise InvalidTokenError(reason="missing_exp") from None
        if exp_ts <= (self._now() - self.leeway).timestamp():
            raise InvalidTokenError("Token has expired", reason="expired")
        return payload
