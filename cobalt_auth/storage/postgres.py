from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Callable, Iterator, Optional, TypeVar

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from cobalt_auth.logging import get_logger, sanitize_error_message
from cobalt_auth.storage.errors import ConstraintViolation, StoreError, StoreTimeout
from cobalt_auth.storage.models import (
    REVOKED_ALL,
    REVOKED_LOGOUT,
    CredentialRecord,
    RefreshTokenRecord,
    User,
)

T = TypeVar("T")

REQUIRED_TABLES = ("app_user", "refresh_tokens")

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS app_user (
        id TEXT PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        password_algo TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_tokens (
        id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL REFERENCES app_user(id) ON DELETE CASCADE,
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked_at TIMESTAMPTZ,
        revoked_reason TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "ALTER TABLE refresh_tokens ADD COLUMN IF NOT EXISTS revoked_reason TEXT",
    "CREATE INDEX IF NOT EXISTS idx_refresh_tokens_user_id ON refresh_tokens (user_id)",
)


def _record_from_row(row: dict) -> RefreshTokenRecord:
    return RefreshTokenRecord(
        id=str(row["id"]),
        user_id=str(row["user_id"]),
        token_hash=row["token_hash"],
        expires_at=row["expires_at"],
        revoked_at=row.get("revoked_at"),
        created_at=row.get("created_at") or datetime.now(timezone.utc),
        revoked_reason=row.get("revoked_reason"),
    )


def _user_from_row(row: dict) -> User:
    return User(
        id=str(row["id"]),
        username=row["username"],
        email=row["email"],
        created_at=row.get("created_at") or datetime.now(timezone.utc),
        is_active=row.get("is_active", True),
    )


class PostgresTransaction:
    """Refresh-token operations bound to one open connection and transaction."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self.conn = conn

    def find(self, token_id: str) -> Optional[RefreshTokenRecord]:
        row = self.conn.execute(
            "SELECT * FROM refresh_tokens WHERE id = %s FOR UPDATE", (token_id,)
        ).fetchone()
        return _record_from_row(row) if row else None

    def store(
        self, token_id: str, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        row = self.conn.execute(
            """
            INSERT INTO refresh_tokens (id, user_id, token_hash, expires_at)
            VALUES (%s, %s, %s, %s)
            RETURNING *
            """,
            (token_id, user_id, token_hash, expires_at),
        ).fetchone()
        return _record_from_row(row)

    def revoke(
        self, token_id: str, at: datetime, reason: str = REVOKED_LOGOUT
    ) -> bool:
        # Conditional update: concurrent revokers serialize on the row lock and
        # only the first one sees revoked_at IS NULL.
        row = self.conn.execute(
            """
            UPDATE refresh_tokens SET revoked_at = %s, revoked_reason = %s
            WHERE id = %s AND revoked_at IS NULL
            RETURNING id
            """,
            (at, reason, token_id),
        ).fetchone()
        return row is not None

    def revoke_all_for_user(
        self, user_id: str, at: datetime, reason: str = REVOKED_ALL
    ) -> int:
        cur = self.conn.execute(
            """
            UPDATE refresh_tokens SET revoked_at = %s, revoked_reason = %s
            WHERE user_id = %s AND revoked_at IS NULL
            """,
            (at, reason, user_id),
        )
        return max(cur.rowcount, 0)


class PostgresStore:
    """Postgres-backed user and refresh-token store."""

    def __init__(
        self,
        dsn: str,
        *,
        timeout_seconds: float = 5.0,
        retry_attempts: int = 2,
        min_size: int = 1,
        max_size: int = 10,
        ensure_schema: bool = False,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.timeout_seconds = timeout_seconds
        self.retry_attempts = max(0, retry_attempts)
        statement_timeout_ms = int(timeout_seconds * 1000)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout_seconds,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={statement_timeout_ms}",
            },
        )
        if ensure_schema:
            self.ensure_schema()
        self.verify_schema()

    def _connect(self):
        return self.pool.connection()

    def close(self) -> None:
        self.pool.close()

    @contextmanager
    def _translate_errors(self, operation: str) -> Iterator[None]:
        try:
            yield
        except errors.UniqueViolation as exc:
            field = "token_hash"
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", None) or ""
            if "username" in constraint:
                field = "username"
            elif "email" in constraint:
                field = "email"
            elif "pkey" in constraint:
                field = "id"
            raise ConstraintViolation(
                f"{field} already exists", {"field": field}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("referenced user not found") from exc
        except (PoolTimeout, errors.QueryCanceled) as exc:
            self.logger.warning("postgres_timeout", operation=operation)
            raise StoreTimeout(
                f"{operation} timed out", {"timeout_seconds": self.timeout_seconds}
            ) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_operation_failed",
                operation=operation,
                error=sanitize_error_message(str(exc)),
            )
            raise StoreError(f"{operation} failed") from exc

    def _read(self, operation: str, fn: Callable[[psycopg.Connection], T]) -> T:
        """Run a read-only query, retrying transient failures."""
        attempt = 0
        while True:
            try:
                with self._translate_errors(operation):
                    with self._connect() as conn:
                        return fn(conn)
            except ConstraintViolation:
                raise
            except StoreError:
                if attempt >= self.retry_attempts:
                    raise
                attempt += 1
                self.logger.info("postgres_read_retry", operation=operation, attempt=attempt)

    # -- schema -----------------------------------------------------------

    def ensure_schema(self) -> None:
        """Create ``app_user`` and ``refresh_tokens`` if they are missing."""

        with self._translate_errors("ensure_schema"):
            with self._connect() as conn:
                for statement in _SCHEMA_STATEMENTS:
                    conn.execute(statement)

    def verify_schema(self) -> None:
        with self._translate_errors("verify_schema"):
            with self._connect() as conn:
                missing = []
                for table in REQUIRED_TABLES:
                    row = conn.execute(
                        "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                    ).fetchone()
                    if not row or not row.get("oid"):
                        missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run with ensure_schema=True or apply migrations.".format(
                    ", ".join(sorted(missing))
                )
            )

    # -- users ------------------------------------------------------------

    def create_user(self, username: str, email: str) -> User:
        user_id = str(uuid.uuid4())
        with self._translate_errors("create_user"):
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO app_user (id, username, email)
                    VALUES (%s, %s, %s)
                    RETURNING *
                    """,
                    (user_id, username, email),
                ).fetchone()
        return _user_from_row(row)

    def get_user(self, user_id: str) -> Optional[User]:
        return self._get_user_where("id", user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._get_user_where("username", username)

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self._get_user_where("email", email)

    def _get_user_where(self, column: str, value: str) -> Optional[User]:
        def query(conn: psycopg.Connection) -> Optional[dict]:
            return conn.execute(
                f"SELECT * FROM app_user WHERE {column} = %s", (value,)
            ).fetchone()

        row = self._read(f"get_user_by_{column}", query)
        return _user_from_row(row) if row else None

    def save_password(
        self, user_id: str, password_hash: str, password_algo: str
    ) -> None:
        with self._translate_errors("save_password"):
            with self._connect() as conn:
                cur = conn.execute(
                    """
                    UPDATE app_user
                    SET password_hash = %s, password_algo = %s, updated_at = now()
                    WHERE id = %s
                    """,
                    (password_hash, password_algo, user_id),
                )
                if cur.rowcount == 0:
                    raise ConstraintViolation(
                        "user not found for credentials", {"user_id": user_id}
                    )

    def get_password_record(self, user_id: str) -> Optional[CredentialRecord]:
        def query(conn: psycopg.Connection) -> Optional[dict]:
            return conn.execute(
                "SELECT id, password_hash, password_algo FROM app_user WHERE id = %s",
                (user_id,),
            ).fetchone()

        row = self._read("get_password_record", query)
        if not row:
            return None
        return CredentialRecord(
            user_id=str(row["id"]),
            password_hash=row.get("password_hash"),
            password_algo=row.get("password_algo") or "",
        )

    # -- refresh tokens ---------------------------------------------------

    def find(self, token_id: str) -> Optional[RefreshTokenRecord]:
        def query(conn: psycopg.Connection) -> Optional[dict]:
            return conn.execute(
                "SELECT * FROM refresh_tokens WHERE id = %s", (token_id,)
            ).fetchone()

        row = self._read("find_refresh_token", query)
        return _record_from_row(row) if row else None

    def store(
        self, token_id: str, user_id: str, token_hash: str, expires_at: datetime
    ) -> RefreshTokenRecord:
        with self.transaction() as tx:
            return tx.store(token_id, user_id, token_hash, expires_at)

    def revoke(
        self, token_id: str, at: datetime, reason: str = REVOKED_LOGOUT
    ) -> bool:
        with self.transaction() as tx:
            return tx.revoke(token_id, at, reason)

    def revoke_all_for_user(
        self, user_id: str, at: datetime, reason: str = REVOKED_ALL
    ) -> int:
        with self.transaction() as tx:
            return tx.revoke_all_for_user(user_id, at, reason)

    @contextmanager
    def transaction(self) -> Iterator[PostgresTransaction]:
        with self._translate_errors("transaction"):
            with self._connect() as conn:
                with conn.transaction():
                    yield PostgresTransaction(conn)


__all__ = ["PostgresStore", "PostgresTransaction", "REQUIRED_TABLES"]
