from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from cajauth.logging import get_logger
from cajauth.storage.errors import ConstraintViolation
from cajauth.storage.models import Profile, Session, User, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        is_admin BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified_at TIMESTAMPTZ,
        last_sign_in_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT users_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        token TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        user_agent TEXT,
        ip_address TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT sessions_token_key UNIQUE (token)
    )
    """,
    "CREATE INDEX IF NOT EXISTS sessions_user_id_idx ON sessions (user_id)",
    "CREATE INDEX IF NOT EXISTS sessions_expires_at_idx ON sessions (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS profiles (
        user_id UUID PRIMARY KEY REFERENCES users(id) ON DELETE CASCADE,
        full_name TEXT NOT NULL DEFAULT '',
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


def _user_from_row(row: dict[str, Any]) -> User:
    return User(
        id=str(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        is_admin=bool(row.get("is_admin", False)),
        created_at=row.get("created_at") or utcnow(),
        updated_at=row.get("updated_at") or utcnow(),
        email_verified_at=row.get("email_verified_at"),
        last_sign_in_at=row.get("last_sign_in_at"),
    )


def _session_from_row(row: dict[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token=row["token"],
        created_at=row.get("created_at") or utcnow(),
        expires_at=row["expires_at"],
        is_active=bool(row.get("is_active", True)),
        user_agent=row.get("user_agent"),
        ip_address=row.get("ip_address"),
    )


class PostgresTransaction:
    """Unit of work bound to one pooled connection inside ``BEGIN``/``COMMIT``."""

    def __init__(self, conn) -> None:
        self.conn = conn

    @contextmanager
    def savepoint(self) -> Iterator[None]:
        # A nested psycopg transaction block issues SAVEPOINT / ROLLBACK TO
        with self.conn.transaction():
            yield

    def get_user(self, user_id: str) -> Optional[User]:
        row = self.conn.execute("SELECT * FROM users WHERE id = %s", (user_id,)).fetchone()
        return _user_from_row(row) if row else None

    def get_user_by_email(self, email: str) -> Optional[User]:
        row = self.conn.execute("SELECT * FROM users WHERE email = %s", (email,)).fetchone()
        return _user_from_row(row) if row else None

    def insert_user(self, user: User) -> User:
        try:
            self.conn.execute(
                """
                INSERT INTO users (id, email, password_hash, is_admin, email_verified_at, created_at, updated_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    user.id,
                    user.email,
                    user.password_hash,
                    user.is_admin,
                    user.email_verified_at,
                    user.created_at,
                    user.updated_at,
                ),
            )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return user

    def insert_profile(self, profile: Profile) -> None:
        try:
            self.conn.execute(
                """
                INSERT INTO profiles (user_id, full_name, created_at)
                VALUES (%s, %s, %s)
                ON CONFLICT (user_id) DO NOTHING
                """,
                (profile.user_id, profile.full_name, profile.created_at),
            )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"field": "user_id"}) from exc

    def insert_session(self, session: Session) -> Session:
        try:
            self.conn.execute(
                """
                INSERT INTO sessions (id, user_id, token, expires_at, is_active, user_agent, ip_address, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    session.id,
                    session.user_id,
                    session.token,
                    session.expires_at,
                    session.is_active,
                    session.user_agent,
                    session.ip_address,
                    session.created_at,
                ),
            )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("session token already exists", {"field": "token"}) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"field": "user_id"}) from exc
        return session

    def purge_sessions(self, user_id: str, now: datetime) -> int:
        cur = self.conn.execute(
            "DELETE FROM sessions WHERE user_id = %s AND (expires_at <= %s OR is_active = FALSE)",
            (user_id, now),
        )
        return cur.rowcount or 0

    def record_sign_in(self, user_id: str, now: datetime) -> Optional[User]:
        row = self.conn.execute(
            "UPDATE users SET last_sign_in_at = %s, updated_at = %s WHERE id = %s RETURNING *",
            (now, now, user_id),
        ).fetchone()
        return _user_from_row(row) if row else None

    def update_password(self, user_id: str, password_hash: str, now: datetime) -> Optional[User]:
        row = self.conn.execute(
            "UPDATE users SET password_hash = %s, updated_at = %s WHERE id = %s RETURNING *",
            (password_hash, now, user_id),
        ).fetchone()
        return _user_from_row(row) if row else None

    def deactivate_user_sessions(self, user_id: str) -> int:
        cur = self.conn.execute(
            "UPDATE sessions SET is_active = FALSE WHERE user_id = %s AND is_active = TRUE",
            (user_id,),
        )
        return cur.rowcount or 0


class PostgresStore:
    """Postgres-backed store for users, sessions and profiles."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 5.0,
        statement_timeout_ms: int = 5000,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.statement_timeout_ms = statement_timeout_ms
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the auth tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    @contextmanager
    def transaction(self, timeout_ms: int | None = None) -> Iterator[PostgresTransaction]:
        """Run a block as one database transaction.

        Commits when the block exits normally; any exception rolls back every
        write made through the yielded :class:`PostgresTransaction`.
        """
        timeout = self.statement_timeout_ms if timeout_ms is None else timeout_ms
        with self._connect() as conn:
            with conn.transaction():
                if timeout:
                    conn.execute(
                        "SELECT set_config('statement_timeout', %s, true)", (str(timeout),)
                    )
                yield PostgresTransaction(conn)

    def get_user(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            return PostgresTransaction(conn).get_user(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._connect() as conn:
            return PostgresTransaction(conn).get_user_by_email(email)

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM users ORDER BY created_at DESC LIMIT %s", (limit,)
            ).fetchall()
        return [_user_from_row(row) for row in rows]

    def get_profile(self, user_id: str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM profiles WHERE user_id = %s", (user_id,)
            ).fetchone()
        if not row:
            return None
        return Profile(
            user_id=str(row["user_id"]),
            full_name=row.get("full_name") or "",
            created_at=row.get("created_at") or utcnow(),
        )

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = %s", (session_id,)
            ).fetchone()
        return _session_from_row(row) if row else None

    def find_live_session(self, token: str, now: datetime | None = None) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM sessions
                WHERE token = %s AND is_active = TRUE AND expires_at > %s
                """,
                (token, now or utcnow()),
            ).fetchone()
        return _session_from_row(row) if row else None

    def deactivate_session(self, token: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE sessions SET is_active = FALSE WHERE token = %s AND is_active = TRUE",
                (token,),
            )
            return bool(cur.rowcount)

    def deactivate_session_by_id(self, session_id: str) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE sessions SET is_active = FALSE WHERE id = %s AND is_active = TRUE",
                (session_id,),
            )
            return bool(cur.rowcount)

    def verify_connection(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    def close(self) -> None:
        self.pool.close()
