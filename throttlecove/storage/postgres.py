from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from throttlecove.logging import get_logger
from throttlecove.storage.errors import ConstraintViolation
from throttlecove.storage.models import (
    PROFILE_FIELDS,
    LockoutStatus,
    Role,
    Session,
    User,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        full_name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'user' CHECK (role IN ('user', 'admin')),
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        phone TEXT,
        avatar_url TEXT,
        login_attempts INTEGER NOT NULL DEFAULT 0 CHECK (login_attempts >= 0),
        locked_until TIMESTAMPTZ,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT app_user_username_key UNIQUE (username),
        CONSTRAINT app_user_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        access_token_ref TEXT,
        refresh_token_ref TEXT,
        ip_addr TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_idx ON auth_session (user_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_idx ON auth_session (expires_at)",
)

_USER_COLUMNS = (
    "id, username, email, full_name, role, email_verified, phone, avatar_url, "
    "login_attempts, locked_until, last_login, created_at, updated_at"
)

# Maps unique constraint names to the user-facing field they protect.
_UNIQUE_FIELDS = {
    "app_user_username_key": "username",
    "app_user_email_key": "email",
}


def _unique_violation(exc: errors.UniqueViolation) -> ConstraintViolation:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    field = _UNIQUE_FIELDS.get(constraint)
    if field is None:
        return ConstraintViolation("duplicate record", {"constraint": constraint})
    return ConstraintViolation(f"{field} already exists", {"field": field})


def _as_uuid(value: str) -> Optional[uuid.UUID]:
    # Ids are UUID columns; anything else cannot match a row.
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


class PostgresStore:
    """Postgres-backed credential and session store.

    Every ``with self._connect()`` block runs in a single transaction; the
    pool commits on clean exit and rolls back on error.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            full_name=row.get("full_name") or "",
            role=Role(row.get("role") or Role.USER.value),
            email_verified=bool(row.get("email_verified", False)),
            phone=row.get("phone"),
            avatar_url=row.get("avatar_url"),
            login_attempts=int(row.get("login_attempts") or 0),
            locked_until=row.get("locked_until"),
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or utcnow(),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            created_at=row.get("created_at") or utcnow(),
            expires_at=row["expires_at"],
            access_token_ref=row.get("access_token_ref"),
            refresh_token_ref=row.get("refresh_token_ref"),
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

    @staticmethod
    def _insert_session(conn, session: Session) -> None:
        conn.execute(
            """
            INSERT INTO auth_session (id, user_id, access_token_ref, refresh_token_ref, ip_addr, user_agent, created_at, expires_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                session.id,
                session.user_id,
                session.access_token_ref,
                session.refresh_token_ref,
                session.ip_addr,
                session.user_agent,
                session.created_at,
                session.expires_at,
            ),
        )

    # users
    def create_user(
        self, user: User, password_hash: str, *, session: Optional[Session] = None
    ) -> User:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO app_user (id, username, email, password_hash, full_name, role, email_verified, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        password_hash,
                        user.full_name,
                        user.role.value,
                        user.email_verified,
                        user.created_at,
                        user.updated_at,
                    ),
                )
                if session is not None:
                    self._insert_session(conn, session)
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        return user

    def _get_user_where(self, clause: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user WHERE {clause} = %s", (value,)
            ).fetchone()
        return self._user_from_row(row) if row else None

    def get_user(self, user_id: str) -> Optional[User]:
        return self._get_user_where("id", user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._get_user_where("username", username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._get_user_where("email", email)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM app_user ORDER BY created_at DESC LIMIT %s",
                (limit,),
            ).fetchall()
        return [self._user_from_row(row) for row in rows]

    def get_password_hash(self, user_id: str) -> Optional[str]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT password_hash FROM app_user WHERE id = %s", (user_id,)
            ).fetchone()
        return str(row["password_hash"]) if row else None

    def save_password(self, user_id: str, password_hash: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )

    def replace_password(
        self,
        user_id: str,
        password_hash: str,
        *,
        revoke_sessions: bool,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._connect() as conn:
            with conn.transaction():
                result = conn.execute(
                    "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                    (password_hash, user_id),
                )
                if result.rowcount == 0:
                    raise ConstraintViolation(
                        "user not found for credentials", {"user_id": user_id}
                    )
                if not revoke_sessions:
                    return 0
                if except_session_id:
                    result = conn.execute(
                        "DELETE FROM auth_session WHERE user_id = %s AND id <> %s",
                        (user_id, except_session_id),
                    )
                else:
                    result = conn.execute(
                        "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
                    )
                return result.rowcount

    def update_user_profile(self, user_id: str, fields: Dict[str, Any]) -> Optional[User]:
        unknown = set(fields) - PROFILE_FIELDS
        if unknown:
            raise ValueError(f"not profile fields: {sorted(unknown)}")
        if not fields:
            return self.get_user(user_id)
        # Column names come from the PROFILE_FIELDS allow-list, never from input.
        names = sorted(fields)
        assignments = [f"{name} = %s" for name in names]
        params: List[Any] = [fields[name] for name in names]
        if "email" in fields:
            assignments.append(
                "email_verified = CASE WHEN email = %s THEN email_verified ELSE FALSE END"
            )
            params.append(fields["email"])
        params.append(user_id)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE app_user SET {", ".join(assignments)}, updated_at = now()
                    WHERE id = %s
                    RETURNING {_USER_COLUMNS}
                    """,
                    tuple(params),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise _unique_violation(exc) from exc
        return self._user_from_row(row) if row else None

    def update_user_role(self, user_id: str, role: Role) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE app_user SET role = %s, updated_at = now() WHERE id = %s RETURNING {_USER_COLUMNS}",
                (Role(role).value, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def record_failed_login(
        self,
        user_id: str,
        *,
        max_attempts: int,
        lock_until: datetime,
        now: Optional[datetime] = None,
    ) -> Optional[LockoutStatus]:
        """Atomically bump the attempt counter, locking at ``max_attempts``.

        The right-hand side of SET sees the pre-update row, so concurrent
        failures serialize on the row lock and none are lost.
        """
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE app_user
                SET login_attempts = login_attempts + 1,
                    locked_until = CASE
                        WHEN login_attempts + 1 >= %s THEN %s
                        ELSE locked_until
                    END,
                    updated_at = %s
                WHERE id = %s
                RETURNING login_attempts, locked_until
                """,
                (max_attempts, lock_until, now or utcnow(), user_id),
            ).fetchone()
        if not row:
            return None
        return LockoutStatus(int(row["login_attempts"]), row.get("locked_until"))

    def clear_expired_lock(self, user_id: str, now: datetime) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE app_user
                SET login_attempts = 0, locked_until = NULL, updated_at = %s
                WHERE id = %s AND locked_until IS NOT NULL AND locked_until <= %s
                """,
                (now, user_id, now),
            )
            return result.rowcount > 0

    def record_successful_login(self, user_id: str, now: datetime) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE app_user
                SET login_attempts = 0, locked_until = NULL, last_login = %s, updated_at = %s
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (now, now, user_id),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def delete_user(self, user_id: str) -> bool:
        with self._connect() as conn:
            with conn.transaction():
                conn.execute("DELETE FROM auth_session WHERE user_id = %s", (user_id,))
                result = conn.execute("DELETE FROM app_user WHERE id = %s", (user_id,))
                return result.rowcount > 0

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                self._insert_session(conn, session)
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "session user missing", {"user_id": session.user_id}
            ) from exc
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        if _as_uuid(session_id) is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def rotate_session_tokens(
        self,
        session_id: str,
        *,
        expected_refresh_ref: str,
        access_token_ref: str,
        refresh_token_ref: str,
    ) -> bool:
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_session
                SET access_token_ref = %s, refresh_token_ref = %s
                WHERE id = %s AND refresh_token_ref = %s
                """,
                (access_token_ref, refresh_token_ref, session_id, expected_refresh_ref),
            )
            return result.rowcount > 0

    def revoke_session(self, session_id: str) -> bool:
        if _as_uuid(session_id) is None:
            return False
        with self._connect() as conn:
            result = conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))
            return result.rowcount > 0

    def revoke_user_sessions(
        self, user_id: str, except_session_id: Optional[str] = None
    ) -> int:
        with self._connect() as conn:
            if except_session_id:
                result = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s AND id <> %s",
                    (user_id, except_session_id),
                )
            else:
                result = conn.execute(
                    "DELETE FROM auth_session WHERE user_id = %s", (user_id,)
                )
            return result.rowcount

    def list_user_sessions(self, user_id: str, now: Optional[datetime] = None) -> List[Session]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM auth_session
                WHERE user_id = %s AND expires_at > %s
                ORDER BY created_at DESC
                """,
                (user_id, now or utcnow()),
            ).fetchall()
        return [self._session_from_row(row) for row in rows]

    def purge_expired_sessions(self, now: Optional[datetime] = None) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now or utcnow(),)
            )
            return result.rowcount
