from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from authsession.logging import get_logger, short_id
from authsession.storage.errors import ConstraintViolation, StorageError
from authsession.storage.models import Session, User, ensure_utc

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        salt TEXT NOT NULL,
        hash_version TEXT NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(email) ON DELETE CASCADE,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_expires_at_idx ON auth_session (expires_at)",
)

_REQUIRED_TABLES = ("app_user", "auth_session")


class PostgresStore:
    """Postgres-backed user and session tables behind a connection pool."""

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        timeout: float = 10.0,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )
        self._ensure_schema()
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[Any]:
        """Yield a pooled connection, translating driver failures to StorageError."""
        try:
            with self._connect() as conn:
                yield conn
        except PoolTimeout as exc:
            raise StorageError(
                "connection pool exhausted", {"operation": operation}
            ) from exc
        except psycopg.Error as exc:
            raise StorageError(
                f"{operation} failed", {"operation": operation, "error": type(exc).__name__}
            ) from exc

    def _ensure_schema(self) -> None:
        with self._transaction("ensure_schema") as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def _verify_required_schema(self) -> None:
        with self._transaction("verify_schema") as conn:
            missing = []
            for table in _REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            self.logger.error("schema_missing_tables", tables=missing)
            raise StorageError("required tables missing", {"tables": missing})

    def close(self) -> None:
        self.pool.close()

    def verify_connection(self) -> None:
        with self._transaction("verify_connection") as conn:
            conn.execute("SELECT 1").fetchone()

    # users
    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            salt=row["salt"],
            hash_version=row["hash_version"],
            created_at=ensure_utc(row["created_at"]),
        )

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._transaction("get_user_by_email") as conn:
            row = conn.execute(
                "SELECT id, email, password_hash, salt, hash_version, created_at "
                "FROM app_user WHERE email = %s",
                (email,),
            ).fetchone()
        return self._user_from_row(row) if row else None

    def create_user(
        self, email: str, password_hash: str, salt: str, hash_version: str
    ) -> User:
        user_id = str(uuid.uuid4())
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, email, password_hash, salt, hash_version)
                    VALUES (%s, %s, %s, %s, %s)
                    RETURNING id, email, password_hash, salt, hash_version, created_at
                    """,
                    (user_id, email, password_hash, salt, hash_version),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        except PoolTimeout as exc:
            raise StorageError("connection pool exhausted", {"operation": "create_user"}) from exc
        except psycopg.Error as exc:
            raise StorageError("create_user failed", {"operation": "create_user"}) from exc
        return self._user_from_row(row)

    # sessions
    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=row["id"],
            user_id=str(row["user_id"]),
            expires_at=ensure_utc(row["expires_at"]),
            created_at=ensure_utc(row["created_at"]),
        )

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._transaction("get_session") as conn:
            row = conn.execute(
                "SELECT id, user_id, expires_at, created_at FROM auth_session WHERE id = %s",
                (session_id,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO auth_session (id, user_id, expires_at, created_at) "
                    "VALUES (%s, %s, %s, %s)",
                    (session.id, session.user_id, session.expires_at, session.created_at),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "session id already exists", {"session": short_id(session.id)}
            ) from exc
        except PoolTimeout as exc:
            raise StorageError("connection pool exhausted", {"operation": "create_session"}) from exc
        except psycopg.Error as exc:
            raise StorageError("create_session failed", {"operation": "create_session"}) from exc
        return session

    def update_session_expiry(self, session_id: str, expires_at: datetime) -> None:
        with self._transaction("update_session_expiry") as conn:
            conn.execute(
                "UPDATE auth_session SET expires_at = %s WHERE id = %s",
                (expires_at, session_id),
            )

    def delete_session(self, session_id: str) -> None:
        with self._transaction("delete_session") as conn:
            conn.execute("DELETE FROM auth_session WHERE id = %s", (session_id,))

    def delete_expired_sessions(self, before: datetime) -> int:
        with self._transaction("delete_expired_sessions") as conn:
            cur = conn.execute(
                "DELETE FROM auth_session WHERE expires_at <= %s", (before,)
            )
            return cur.rowcount or 0
