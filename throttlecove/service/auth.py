from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterator, List, Optional, Protocol, Tuple

from throttlecove.config import Settings
from throttlecove.logging import get_logger, get_security_logger
from throttlecove.service.errors import (
    AccountLockedError,
    AuthenticationError,
    DuplicateUserError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    ServerError,
    ServiceError,
    SessionExpiredError,
    UnauthorizedError,
    ValidationError,
)
from throttlecove.service.lockout import LockoutPolicy
from throttlecove.service.passwords import MalformedHashError, PasswordHasher
from throttlecove.service.tokens import TokenIssuer, TokenPair
from throttlecove.storage.errors import ConstraintViolation
from throttlecove.storage.models import (
    PROFILE_FIELDS,
    LockoutStatus,
    Role,
    Session,
    User,
    utcnow,
)

logger = get_logger(__name__)
security_log = get_security_logger()

_USER_FIELDS = {"username", "email"}


class AuthStore(Protocol):
    def create_user(
        self, user: User, password_hash: str, *, session: Optional[Session] = None
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def get_password_hash(self, user_id: str) -> Optional[str]: ...

    def save_password(self, user_id: str, password_hash: str) -> None: ...

    def replace_password(
        self,
        user_id: str,
        password_hash: str,
        *,
        revoke_sessions: bool,
        except_session_id: Optional[str] = None,
    ) -> int: ...

    def update_user_profile(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]: ...

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_until: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[LockoutStatus]: ...

    def clear_expired_lock(self, user_id: str, now: datetime) -> bool: ...

    def record_successful_login(self, user_id: str, now: datetime) -> Optional[User]: ...

    def delete_user(self, user_id: str) -> bool: ...

    def create_session(self, session: Session) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def rotate_session_tokens(
        self,
        session_id: str,
        *,
        expected_refresh_ref: str,
        access_token_ref: str,
        refresh_token_ref: str,
    ) -> bool: ...

    def revoke_session(self, session_id: str) -> bool: ...

    def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int: ...

    def list_user_sessions(self, user_id: str, now: Optional[datetime] = None) -> List[Session]: ...

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int: ...


@dataclass
class RequestContext:
    """Client metadata recorded on sessions and in the security log."""

    ip_addr: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class AuthContext:
    """Identity attached to an authenticated request."""

    user_id: str
    username: str
    email: str
    role: Role
    session_id: str


@dataclass
class AuthResult:
    user: User
    session: Session
    tokens: TokenPair


class AuthService:
    """Registration, login, session and credential lifecycle.

    Every public operation runs inside ``_boundary``: service errors pass
    through unchanged, storage constraint errors become ``DuplicateUserError``
    where a user field collided, and anything else is logged and replaced by
    a generic ``ServerError`` so internal details never reach the caller.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        tokens: Optional[TokenIssuer] = None,
        lockout: Optional[LockoutPolicy] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self._clock = clock or utcnow
        self.hasher = hasher or PasswordHasher.from_settings(settings)
        self.tokens = tokens or TokenIssuer.from_settings(settings, clock=self._clock)
        self.lockout = lockout or LockoutPolicy.from_settings(
            store, settings, clock=self._clock
        )
        self.logger = logger
        # Verified against when the identity is unknown so both failure paths cost the same
        self._timing_hash: Optional[str] = None

    def _now(self) -> datetime:
        return self._clock()

    async def _store_call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        # Store and lockout calls block on I/O; keep them off the event loop.
        return await asyncio.to_thread(fn, *args, **kwargs)

    @contextlib.contextmanager
    def _boundary(self, operation: str, **context: Any) -> Iterator[None]:
        try:
            yield
        except ServiceError as exc:
            self.logger.info(
                f"{operation}_rejected",
                error_code=exc.error_code,
                status_code=exc.status_code,
                **context,
            )
            raise
        except ConstraintViolation as exc:
            if exc.field in _USER_FIELDS:
                security_log.info(f"{operation}_duplicate_user", field=exc.field, **context)
                raise DuplicateUserError(exc.field) from exc
            self.logger.error(
                f"{operation}_constraint_violation", detail=exc.detail, **context
            )
            raise ServerError("request could not be completed") from exc
        except Exception as exc:
            self.logger.exception(
                f"{operation}_failed",
                error_type=type(exc).__name__,
                **context,
            )
            raise ServerError("internal server error") from exc

    def _new_session(self, user: User, context: RequestContext) -> Tuple[Session, TokenPair]:
        session = Session.new(
            user.id,
            ttl_minutes=self.settings.session_ttl_minutes,
            user_agent=context.user_agent,
            ip_addr=context.ip_addr,
            now=self._now(),
        )
        tokens = self.tokens.issue(user, session.id)
        session.access_token_ref = tokens.access_jti
        session.refresh_token_ref = self.tokens.fingerprint(tokens.refresh_token)
        return session, tokens

    async def _burn_verification(self, password: str) -> None:
        if self._timing_hash is None:
            self._timing_hash = await self.hasher.hash_async("throttlecove-timing-guard")
        await self.hasher.verify_async(password, self._timing_hash)

    async def _verify_stored(self, user_id: str, password: str) -> Tuple[bool, Optional[str]]:
        stored_hash = await self._store_call(self.store.get_password_hash, user_id)
        if not stored_hash:
            self.logger.error("password_record_missing", user_id=user_id)
            await self._burn_verification(password)
            return False, None
        try:
            return await self.hasher.verify_async(password, stored_hash), stored_hash
        except MalformedHashError:
            self.logger.error("password_hash_malformed", user_id=user_id)
            return False, stored_hash

    async def _maybe_rehash(self, user_id: str, password: str, stored_hash: str) -> None:
        try:
            stale = self.hasher.needs_rehash(stored_hash)
        except MalformedHashError:
            return
        if stale:
            new_hash = await self.hasher.hash_async(password)
            await self._store_call(self.store.save_password, user_id, new_hash)
            self.logger.info("password_rehashed", user_id=user_id)

    async def register(
        self,
        username: str,
        email: str,
        password: str,
        full_name: str,
        context: Optional[RequestContext] = None,
    ) -> AuthResult:
        context = context or RequestContext()
        username = username.strip()
        email = email.strip().lower()
        with self._boundary(
            "register",
            username=username,
            ip_addr=context.ip_addr,
            user_agent=context.user_agent,
        ):
            if await self._store_call(self.store.get_user_by_username, username):
                raise DuplicateUserError("username")
            if await self._store_call(self.store.get_user_by_email, email):
                raise DuplicateUserError("email")
            password_hash = await self.hasher.hash_async(password)
            user = User.new(username, email, full_name.strip())
            session, tokens = self._new_session(user, context)
            # User row and first session commit together.
            stored = await self._store_call(
                self.store.create_user, user, password_hash, session=session
            )
            security_log.info(
                "user_registered",
                user_id=stored.id,
                username=stored.username,
                session_id=session.id,
                ip_addr=context.ip_addr,
                user_agent=context.user_agent,
            )
            return AuthResult(stored, session, tokens)

    async def login(
        self,
        identifier: str,
        password: str,
        context: Optional[RequestContext] = None,
    ) -> AuthResult:
        """Authenticate by username, falling back to email.

        Unknown identities and wrong passwords raise the same
        ``InvalidCredentialsError``. A locked account raises
        ``AccountLockedError`` before the password is looked at.
        """
        context = context or RequestContext()
        identifier = identifier.strip()
        with self._boundary(
            "login",
            identifier=identifier,
            ip_addr=context.ip_addr,
            user_agent=context.user_agent,
        ):
            user = await self._store_call(self.store.get_user_by_username, identifier)
            if user is None:
                user = await self._store_call(self.store.get_user_by_email, identifier.lower())
            if user is None:
                await self._burn_verification(password)
                security_log.warning(
                    "login_failed",
                    reason="unknown_identity",
                    identifier=identifier,
                    ip_addr=context.ip_addr,
                    user_agent=context.user_agent,
                )
                raise InvalidCredentialsError()

            if await self._store_call(self.lockout.check, user):
                raise AccountLockedError()

            matched, stored_hash = await self._verify_stored(user.id, password)
            if not matched:
                status = await self._store_call(self.lockout.record_failure, user.id)
                security_log.warning(
                    "login_failed",
                    reason="bad_password",
                    user_id=user.id,
                    username=user.username,
                    attempts=status.login_attempts,
                    ip_addr=context.ip_addr,
                    user_agent=context.user_agent,
                )
                raise InvalidCredentialsError()

            user = await self._store_call(self.lockout.record_success, user.id)
            if stored_hash:
                await self._maybe_rehash(user.id, password, stored_hash)
            session, tokens = self._new_session(user, context)
            await self._store_call(self.store.create_session, session)
            security_log.info(
                "login_succeeded",
                user_id=user.id,
                username=user.username,
                session_id=session.id,
                ip_addr=context.ip_addr,
                user_agent=context.user_agent,
            )
            return AuthResult(user, session, tokens)

    async def logout(self, session_id: str) -> None:
        """Delete the session. Unknown or already-removed sessions are a no-op."""
        with self._boundary("logout", session_id=session_id):
            removed = await self._store_call(self.store.revoke_session, session_id)
            security_log.info("logout", session_id=session_id, removed=removed)

    async def refresh(
        self, refresh_token: str, context: Optional[RequestContext] = None
    ) -> AuthResult:
        """Rotate the token pair of a live session.

        The presented refresh token must be the one most recently issued for
        its session; a replayed older token is rejected.
        """
        context = context or RequestContext()
        with self._boundary("refresh", ip_addr=context.ip_addr, user_agent=context.user_agent):
            try:
                claims = self.tokens.verify_refresh(refresh_token)
            except InvalidTokenError as exc:
                security_log.info("token_rejected", token_type="refresh", reason=exc.reason)
                raise AuthenticationError("invalid refresh token") from exc
            session = await self._store_call(self.store.get_session, claims.session_id)
            if (
                session is None
                or session.user_id != claims.user_id
                or not session.is_active(self._now())
            ):
                raise SessionExpiredError("session expired or revoked")
            presented_ref = self.tokens.fingerprint(refresh_token)
            if session.refresh_token_ref != presented_ref:
                security_log.warning(
                    "refresh_token_reuse",
                    user_id=session.user_id,
                    session_id=session.id,
                    ip_addr=context.ip_addr,
                )
                raise AuthenticationError("invalid refresh token")
            user = await self._store_call(self.store.get_user, session.user_id)
            if user is None:
                raise SessionExpiredError("session expired or revoked")
            tokens = self.tokens.issue(user, session.id)
            new_ref = self.tokens.fingerprint(tokens.refresh_token)
            rotated = await self._store_call(
                self.store.rotate_session_tokens,
                session.id,
                expected_refresh_ref=presented_ref,
                access_token_ref=tokens.access_jti,
                refresh_token_ref=new_ref,
            )
            if not rotated:
                # Lost a race with a concurrent refresh of the same token
                raise AuthenticationError("invalid refresh token")
            session.access_token_ref = tokens.access_jti
            session.refresh_token_ref = new_ref
            security_log.info("tokens_refreshed", user_id=user.id, session_id=session.id)
            return AuthResult(user, session, tokens)

    async def get_user(self, user_id: str) -> User:
        with self._boundary("get_user", user_id=user_id):
            user = await self._store_call(self.store.get_user, user_id)
            if user is None:
                raise NotFoundError("user not found")
            return user

    async def update_profile(self, user_id: str, fields: Dict[str, Any]) -> User:
        with self._boundary("update_profile", user_id=user_id):
            unknown = set(fields) - PROFILE_FIELDS
            if unknown:
                raise ValidationError(
                    "unsupported profile fields", detail={"fields": sorted(unknown)}
                )
            if not fields:
                raise ValidationError("no profile fields supplied")
            if await self._store_call(self.store.get_user, user_id) is None:
                raise NotFoundError("user not found")
            updates = dict(fields)
            if updates.get("email") is not None:
                updates["email"] = updates["email"].strip().lower()
                other = await self._store_call(self.store.get_user_by_email, updates["email"])
                if other is not None and other.id != user_id:
                    raise DuplicateUserError("email")
            user = await self._store_call(self.store.update_user_profile, user_id, updates)
            if user is None:
                raise NotFoundError("user not found")
            self.logger.info("profile_updated", user_id=user_id, fields=sorted(updates))
            return user

    async def change_password(
        self,
        user_id: str,
        current_password: str,
        new_password: str,
        *,
        current_session_id: Optional[str] = None,
    ) -> int:
        """Replace the password after re-verifying the current one.

        Returns the number of other sessions revoked (zero when
        ``revoke_sessions_on_password_change`` is off).
        """
        with self._boundary("change_password", user_id=user_id):
            if await self._store_call(self.store.get_user, user_id) is None:
                raise NotFoundError("user not found")
            matched, _ = await self._verify_stored(user_id, current_password)
            if not matched:
                security_log.warning("password_change_rejected", user_id=user_id)
                raise InvalidCredentialsError("Current password is incorrect")
            new_hash = await self.hasher.hash_async(new_password)
            # New hash and session revocation commit together.
            revoked = await self._store_call(
                self.store.replace_password,
                user_id,
                new_hash,
                revoke_sessions=self.settings.revoke_sessions_on_password_change,
                except_session_id=current_session_id,
            )
            security_log.info(
                "password_changed", user_id=user_id, revoked_sessions=revoked
            )
            return revoked

    async def delete_account(self, user_id: str) -> None:
        with self._boundary("delete_account", user_id=user_id):
            if not await self._store_call(self.store.delete_user, user_id):
                raise NotFoundError("user not found")
            security_log.info("account_deleted", user_id=user_id)

    async def get_session_identity(self, session_id: str) -> Tuple[User, Session]:
        with self._boundary("get_session", session_id=session_id):
            session = await self._store_call(self.store.get_session, session_id)
            if session is None or not session.is_active(self._now()):
                raise SessionExpiredError("session expired or revoked")
            user = await self._store_call(self.store.get_user, session.user_id)
            if user is None:
                raise SessionExpiredError("session expired or revoked")
            return user, session

    async def list_sessions(self, user_id: str) -> List[Session]:
        with self._boundary("list_sessions", user_id=user_id):
            return await self._store_call(self.store.list_user_sessions, user_id, self._now())

    async def revoke_session_for_user(self, user_id: str, session_id: str) -> None:
        with self._boundary("revoke_session", user_id=user_id, session_id=session_id):
            session = await self._store_call(self.store.get_session, session_id)
            # Someone else's session looks exactly like a missing one
            if session is None or session.user_id != user_id:
                raise NotFoundError("session not found")
            await self._store_call(self.store.revoke_session, session_id)
            security_log.info("session_revoked", user_id=user_id, session_id=session_id)

    async def revoke_all_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._boundary("revoke_all_sessions", user_id=user_id):
            revoked = await self._store_call(
                self.store.revoke_user_sessions, user_id, except_session_id
            )
            security_log.info(
                "sessions_revoked",
                user_id=user_id,
                kept_session_id=except_session_id,
                revoked=revoked,
            )
            return revoked

    def cleanup_expired_sessions(self) -> int:
        purged = self.store.purge_expired_sessions(self._now())
        if purged:
            self.logger.info("expired_sessions_purged", purged=purged)
        return purged

    def _extract_bearer(self, header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer" or not token.strip():
            return None
        return token.strip()

    async def authenticate(
        self,
        authorization: Optional[str],
        *,
        check_session: Optional[bool] = None,
    ) -> AuthContext:
        """Resolve an ``Authorization`` header into an identity.

        Raises ``UnauthorizedError`` when no bearer token is present,
        ``InvalidTokenError`` when it fails verification, and
        ``SessionExpiredError`` when ``check_session`` is on and the token's
        session no longer exists.
        """
        token = self._extract_bearer(authorization)
        if not token:
            raise UnauthorizedError("Access token required")
        try:
            payload = self.tokens.verify_access(token)
        except InvalidTokenError as exc:
            security_log.info("token_rejected", token_type="access", reason=exc.reason)
            raise
        if check_session is None:
            check_session = self.settings.session_check_on_request
        if check_session:
            session = await self._store_call(self.store.get_session, payload.session_id)
            if (
                session is None
                or session.user_id != payload.user_id
                or not session.is_active(self._now())
            ):
                security_log.info(
                    "token_rejected",
                    token_type="access",
                    reason="session_revoked",
                    user_id=payload.user_id,
                    session_id=payload.session_id,
                )
                raise SessionExpiredError("Session expired or revoked")
        return AuthContext(
            user_id=payload.user_id,
            username=payload.username,
            email=payload.email,
            role=payload.role,
            session_id=payload.session_id,
        )
