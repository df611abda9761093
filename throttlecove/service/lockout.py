from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum
from typing import Callable, Optional, Protocol

from throttlecove.config import Settings
from throttlecove.logging import get_logger, get_security_logger
from throttlecove.service.errors import NotFoundError
from throttlecove.storage.models import LockoutStatus, User, as_utc, utcnow

logger = get_logger(__name__)
security_log = get_security_logger()


class LockState(str, Enum):
    OPEN = "open"
    LOCKED = "locked"


class LockoutStore(Protocol):
    def get_user(self, user_id: str) -> Optional[User]: ...

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


class LockoutPolicy:
    """Failed-login counter with temporary lockout.

    ``open`` until ``max_attempts`` consecutive failures, then ``locked``
    until ``now + lock_duration``. Expired locks are cleared lazily the next
    time the account is checked. Every transition is written to the store
    before the caller sees the decision.
    """

    def __init__(
        self,
        store: LockoutStore,
        *,
        max_attempts: int = 5,
        lock_duration: timedelta = timedelta(minutes=30),
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        self.store = store
        self.max_attempts = max_attempts
        self.lock_duration = lock_duration
        self._clock = clock or utcnow

    @classmethod
    def from_settings(
        cls,
        store: LockoutStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "LockoutPolicy":
        return cls(
            store,
            max_attempts=settings.max_login_attempts,
            lock_duration=timedelta(minutes=settings.account_lock_minutes),
            clock=clock,
        )

    def _now(self) -> datetime:
        return self._clock()

    def state_of(self, user: User, now: Optional[datetime] = None) -> LockState:
        now = now or self._now()
        if user.locked_until is not None and now < as_utc(user.locked_until):
            return LockState.LOCKED
        return LockState.OPEN

    def is_locked(self, user_id: str) -> bool:
        """Report whether the account is locked, clearing an expired lock first."""
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return self.check(user)

    def check(self, user: User) -> bool:
        """Same as ``is_locked`` for a user row the caller already loaded."""
        now = self._now()
        if user.locked_until is None:
            return False
        if self.state_of(user, now) is LockState.LOCKED:
            security_log.warning(
                "login_blocked_account_locked",
                user_id=user.id,
                locked_until=as_utc(user.locked_until).isoformat(),
            )
            return True
        if self.store.clear_expired_lock(user.id, now):
            logger.info("account_lock_expired", user_id=user.id)
        user.login_attempts = 0
        user.locked_until = None
        return False

    def record_failure(self, user_id: str) -> LockoutStatus:
        now = self._now()
        status = self.store.record_failed_login(
            user_id,
            max_attempts=self.max_attempts,
            lock_until=now + self.lock_duration,
            now=now,
        )
        if status is None:
            raise NotFoundError("user not found")
        if status.locked:
            security_log.warning(
                "account_locked",
                user_id=user_id,
                attempts=status.login_attempts,
                locked_until=as_utc(status.locked_until).isoformat(),
            )
        return status

    def record_success(self, user_id: str) -> User:
        user = self.store.record_successful_login(user_id, self._now())
        if user is None:
            raise NotFoundError("user not found")
        return user
