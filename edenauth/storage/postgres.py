from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from edenauth.logging import get_logger
from edenauth.storage.errors import ConstraintViolation
from edenauth.storage.models import UNSET, Session, User, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        first_name TEXT NOT NULL,
        last_name TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        last_login_at TIMESTAMPTZ,
        is_email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0,
        locked_until TIMESTAMPTZ
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS app_user_email_key ON app_user (lower(email))",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES app_user (id) ON DELETE CASCADE,
        refresh_token TEXT NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        ip_address TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_user_id_idx ON auth_session (user_id)",
    "CREATE INDEX IF NOT EXISTS auth_session_expires_at_idx ON auth_session (expires_at)",
)


def _parse_uuid(value: Any) -> Optional[str]:
    """Return the canonical UUID string, or None for anything malformed."""
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError, AttributeError):
        return None


class PostgresStore:
    """Postgres-backed user and session store.

    Every public method borrows one pooled connection for a single statement
    and returns it on exit, so no connection is held across awaits upstream.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        pool_timeout: float = 5.0,
        connect_timeout: int = 10,
        statement_timeout_ms: int = 45000,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=pool_timeout,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "connect_timeout": connect_timeout,
                "options": f"-c statement_timeout={int(statement_timeout_ms)}",
            },
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the user and session tables and their constraints if missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            first_name=row["first_name"],
            last_name=row["last_name"],
            password_hash=row["password_hash"],
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or row.get("created_at") or utcnow(),
            last_login_at=row.get("last_login_at"),
            is_email_verified=bool(row.get("is_email_verified", False)),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=row.get("locked_until"),
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            refresh_token=row["refresh_token"],
            created_at=row["created_at"],
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
        )

    # -- users -------------------------------------------------------------

    def create_user(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        *,
        is_email_verified: bool = False,
    ) -> User:
        if not password_hash:
            raise ValueError("password_hash is required")
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, first_name, last_name, password_hash, is_email_verified)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        str(uuid.uuid4()),
                        email,
                        first_name,
                        last_name,
                        password_hash,
                        is_email_verified,
                    ),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation("email already exists", {"field": "email"})
        return self._row_to_user(row)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE lower(email) = lower(%s)", (email,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def get_user(self, user_id: str) -> Optional[User]:
        parsed = _parse_uuid(user_id)
        if parsed is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM app_user WHERE id = %s", (parsed,)
            ).fetchone()
        if not row:
            return None
        return self._row_to_user(row)

    def update_login_outcome(
        self,
        user_id: str,
        failed_attempts: int,
        *,
        locked_until: Any = UNSET,
        last_login_at: Any = UNSET,
    ) -> None:
        parsed = _parse_uuid(user_id)
        if parsed is None:
            return
        assignments = ["failed_login_attempts = %s", "updated_at = now()"]
        params: list[Any] = [failed_attempts]
        if locked_until is not UNSET:
            assignments.append("locked_until = %s")
            params.append(locked_until)
        if last_login_at is not UNSET:
            assignments.append("last_login_at = %s")
            params.append(last_login_at)
        params.append(parsed)
        with self._connect() as conn:
            conn.execute(
                f"UPDATE app_user SET {', '.join(assignments)} WHERE id = %s",
                tuple(params),
            )

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        if not password_hash:
            raise ValueError("password_hash is required")
        parsed = _parse_uuid(user_id)
        if parsed is None:
            return
        with self._connect() as conn:
            conn.execute(
                "UPDATE app_user SET password_hash = %s, updated_at = now() WHERE id = %s",
                (password_hash, parsed),
            )

    # -- sessions ----------------------------------------------------------

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO auth_session (id, user_id, refresh_token, created_at, expires_at, user_agent, ip_address)
                    VALUES (%s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.user_id,
                        session.refresh_token,
                        session.created_at,
                        session.expires_at,
                        session.user_agent,
                        session.ip_address,
                    ),
                )
        except errors.ForeignKeyViolation:
            raise ConstraintViolation("session user missing", {"user_id": session.user_id})
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "refresh token already exists", {"field": "refresh_token"}
            )
        return session

    def get_session_by_refresh_token(
        self, refresh_token: str, *, now: datetime | None = None
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE refresh_token = %s AND expires_at > %s",
                (refresh_token, now or utcnow()),
            ).fetchone()
        if not row:
            return None
        return self._row_to_session(row)

    def delete_session_by_refresh_token(self, refresh_token: str) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE refresh_token = %s", (refresh_token,)
            )
            return cur.rowcount or 0

    def delete_expired_sessions(self, *, now: datetime | None = None) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (now or utcnow(),)
            )
            return cur.rowcount or 0

    # -- lifecycle ---------------------------------------------------------

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()
