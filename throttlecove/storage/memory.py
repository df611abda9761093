from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from throttlecove.logging import get_logger
from throttlecove.storage.errors import ConstraintViolation
from throttlecove.storage.models import (
    PROFILE_FIELDS,
    LockoutStatus,
    Role,
    Session,
    User,
    as_utc,
    utcnow,
)


class MemoryStore:
    """In-process credential and session store for tests and local development.

    State lives in dicts guarded by a single re-entrant lock and is mirrored
    to a JSON snapshot under ``fs_root`` after every mutation so a dev server
    restart keeps its users. Reads return copies; callers never hold live rows.
    """

    def __init__(self, fs_root: str = "/tmp/throttlecove", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.passwords: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        # RLock so helpers can nest inside public methods
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        if self.persist:
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt is not None else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return as_utc(datetime.fromisoformat(raw)) if raw else None

    # users
    def _find_user(self, *, username: str | None = None, email: str | None = None) -> Optional[User]:
        for user in self.users.values():
            if username is not None and user.username == username:
                return user
            if email is not None and user.email == email:
                return user
        return None

    def create_user(
        self, user: User, password_hash: str, *, session: Optional[Session] = None
    ) -> User:
        """Insert a user, its password hash and optionally its first session together."""
        with self._data_lock:
            if self._find_user(username=user.username):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if self._find_user(email=user.email):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if user.id in self.users:
                raise ConstraintViolation("user id already exists", {"field": "id"})
            if session is not None and session.user_id != user.id:
                raise ConstraintViolation("session user mismatch", {"user_id": session.user_id})
            stored = replace(user)
            self.users[stored.id] = stored
            self.passwords[stored.id] = password_hash
            if session is not None:
                self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(stored)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user(username=username)
            return replace(user) if user else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_user(email=email)
            return replace(user) if user else None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            ordered = sorted(self.users.values(), key=lambda u: u.created_at, reverse=True)
            return [replace(u) for u in ordered[:limit]]

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._data_lock:
            return self.passwords.get(user_id)

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            self.passwords[user_id] = password_hash
            user.updated_at = utcnow()
            self._persist_state()

    def replace_password(
        self,
        user_id: str,
        password_hash: str,
        *,
        revoke_sessions: bool,
        except_session_id: Optional[str] = None,
    ) -> int:
        """Store a new hash and, optionally, drop the user's other sessions in one step."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            stale = []
            if revoke_sessions:
                stale = [
                    sid
                    for sid, sess in self.sessions.items()
                    if sess.user_id == user_id and sid != except_session_id
                ]
            self.passwords[user_id] = password_hash
            for sid in stale:
                self.sessions.pop(sid, None)
            user.updated_at = utcnow()
            self._persist_state()
            return len(stale)

    def update_user_profile(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        unknown = set(fields) - PROFILE_FIELDS
        if unknown:
            raise ValueError(f"not profile fields: {sorted(unknown)}")
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            new_email = fields.get("email")
            if new_email is not None and new_email != user.email:
                other = self._find_user(email=new_email)
                if other and other.id != user_id:
                    raise ConstraintViolation("email already exists", {"field": "email"})
                user.email_verified = False
            for name, value in fields.items():
                setattr(user, name, value)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = Role(role)
            user.updated_at = utcnow()
            self._persist_state()
            return replace(user)

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_until: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[LockoutStatus]:
        """Increment the attempt counter and lock once it reaches ``max_attempts``."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.login_attempts += 1
            if user.login_attempts >= max_attempts:
                user.locked_until = lock_until
            user.updated_at = now or utcnow()
            self._persist_state()
            return LockoutStatus(user.login_attempts, user.locked_until)

    def clear_expired_lock(self, user_id: str, now: datetime) -> bool:
        """Reset attempts and the lock if ``locked_until`` has passed."""
        with self._data_lock:
            user = self.users.get(user_id)
            if not user or user.locked_until is None or as_utc(user.locked_until) > now:
                return False
            user.login_attempts = 0
            user.locked_until = None
            user.updated_at = now
            self._persist_state()
            return True

    def record_successful_login(self, user_id: str, now: datetime) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            user.login_attempts = 0
            user.locked_until = None
            user.last_login = now
            user.updated_at = now
            self._persist_state()
            return replace(user)

    def delete_user(self, user_id: str) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            self.users.pop(user_id, None)
            self.passwords.pop(user_id, None)
            for sess_id, sess in list(self.sessions.items()):
                if sess.user_id == user_id:
                    self.sessions.pop(sess_id, None)
            self._persist_state()
            return True

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": session.user_id})
            self.sessions[session.id] = replace(session)
            self._persist_state()
            return replace(session)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def rotate_session_tokens(
        self,
        session_id: str,
        *,
        expected_refresh_ref: str,
        access_token_ref: str,
        refresh_token_ref: str,
    ) -> bool:
        """Swap token references only if the stored refresh reference still matches."""
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.refresh_token_ref != expected_refresh_ref:
                return False
            sess.access_token_ref = access_token_ref
            sess.refresh_token_ref = refresh_token_ref
            self._persist_state()
            return True

    def revoke_session(self, session_id: str) -> bool:
        with self._data_lock:
            removed = self.sessions.pop(session_id, None)
            if removed:
                self._persist_state()
            return removed is not None

    def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._data_lock:
            stale = [
                sid
                for sid, sess in self.sessions.items()
                if sess.user_id == user_id and sid != except_session_id
            ]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_user_sessions(self, user_id: str, now: Optional[datetime] = None) -> List[Session]:
        now = now or utcnow()
        with self._data_lock:
            active = [
                replace(sess)
                for sess in self.sessions.values()
                if sess.user_id == user_id and sess.is_active(now)
            ]
        return sorted(active, key=lambda s: s.created_at, reverse=True)

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        now = now or utcnow()
        with self._data_lock:
            expired = [sid for sid, sess in self.sessions.items() if not sess.is_active(now)]
            for sid in expired:
                self.sessions.pop(sid, None)
            if expired:
                self._persist_state()
            return len(expired)

    def verify_connection(self) -> None:
        self._state_path()

    def close(self) -> None:
        return None

    # snapshot persistence
    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "passwords": [
                {"user_id": user_id, "password_hash": pwd_hash}
                for user_id, pwd_hash in self.passwords.items()
            ],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.warning("memory_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.passwords = {
            entry["user_id"]: entry["password_hash"] for entry in data.get("passwords", [])
        }
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self.logger.info(
            "memory_state_loaded", users=len(self.users), sessions=len(self.sessions)
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "full_name": user.full_name,
            "role": user.role.value,
            "email_verified": user.email_verified,
            "phone": user.phone,
            "avatar_url": user.avatar_url,
            "login_attempts": user.login_attempts,
            "locked_until": self._serialize_datetime(user.locked_until),
            "last_login": self._serialize_datetime(user.last_login),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=data["id"],
            username=data["username"],
            email=data["email"],
            full_name=data.get("full_name", ""),
            role=Role(data.get("role", Role.USER.value)),
            email_verified=bool(data.get("email_verified", False)),
            phone=data.get("phone"),
            avatar_url=data.get("avatar_url"),
            login_attempts=int(data.get("login_attempts", 0)),
            locked_until=self._deserialize_datetime(data.get("locked_until")),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
            updated_at=self._deserialize_datetime(data.get("updated_at")) or utcnow(),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "access_token_ref": session.access_token_ref,
            "refresh_token_ref": session.refresh_token_ref,
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=data["user_id"],
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            access_token_ref=data.get("access_token_ref"),
            refresh_token_ref=data.get("refresh_token_ref"),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
        )
