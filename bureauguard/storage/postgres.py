from __future__ import annotations

import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional, Sequence

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from bureauguard.logging import get_logger
from bureauguard.storage.errors import (
    ConstraintViolation,
    StorageError,
    StorageInitError,
)
from bureauguard.storage.models import (
    AttemptCounts,
    Block,
    BlockStatus,
    IssuedToken,
    UserCredential,
)

SCHEMA_STATEMENTS: Sequence[str] = (
    """
    CREATE TABLE IF NOT EXISTS failed_login_attempt (
        id BIGSERIAL PRIMARY KEY,
        ts TIMESTAMPTZ NOT NULL,
        origin TEXT NOT NULL,
        account TEXT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS failed_login_attempt_ts_idx ON failed_login_attempt (ts)",
    "CREATE INDEX IF NOT EXISTS failed_login_attempt_account_idx ON failed_login_attempt (account)",
    "CREATE INDEX IF NOT EXISTS failed_login_attempt_origin_idx ON failed_login_attempt (origin)",
    """
    CREATE TABLE IF NOT EXISTS login_block (
        id BIGSERIAL PRIMARY KEY,
        account TEXT NULL,
        origin TEXT NULL,
        created_at TIMESTAMPTZ NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS login_block_account_idx ON login_block (account)",
    "CREATE INDEX IF NOT EXISTS login_block_origin_idx ON login_block (origin)",
    "CREATE INDEX IF NOT EXISTS login_block_expires_idx ON login_block (expires_at)",
    """
    CREATE TABLE IF NOT EXISTS jwt_jti (
        jti TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        issued_at TIMESTAMPTZ NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS jwt_jti_user_idx ON jwt_jti (user_id)",
    """
    CREATE TABLE IF NOT EXISTS auth_user (
        id TEXT PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        password_hash TEXT NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


def create_pool(dsn: str, *, min_size: int = 1, max_size: int = 10) -> ConnectionPool:
    return ConnectionPool(
        dsn,
        min_size=min_size,
        max_size=max_size,
        kwargs={"row_factory": dict_row, "autocommit": False},
    )


def apply_schema(pool: ConnectionPool) -> None:
    """Create the rate limit, whitelist and credential tables if missing."""

    with pool.connection() as conn:
        for statement in SCHEMA_STATEMENTS:
            conn.execute(statement)


class _PostgresBase:
    required_tables: Sequence[str] = ()

    def __init__(self, pool: ConnectionPool, *, verify_schema: bool = True) -> None:
        self.pool = pool
        self.logger = get_logger(__name__)
        if verify_schema:
            self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _guard(self, operation: str) -> Iterator[None]:
        try:
            yield
        except psycopg.Error as exc:
            self.logger.error(
                "storage_operation_failed", operation=operation, error=str(exc)
            )
            raise StorageError(
                f"{operation} failed", {"operation": operation}
            ) from exc

    def _verify_required_schema(self) -> None:
        with self._guard("verify_schema"):
            with self._connect() as conn:
                missing = []
                for table in self.required_tables:
                    row = conn.execute(
                        "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                    ).fetchone()
                    if not row or not row.get("oid"):
                        missing.append(table)
        if missing:
            raise StorageInitError(
                "Missing required Postgres tables: {}. Run scripts/security.py create-tables.".format(
                    ", ".join(sorted(missing))
                )
            )


class PostgresRateLimitStore(_PostgresBase):
    """Failed-attempt and block tables; every call is a single statement."""

    required_tables = ("failed_login_attempt", "login_block")

    def record_failure(
        self, account: Optional[str], origin: str, now: datetime
    ) -> None:
        with self._guard("record_failure"):
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO failed_login_attempt (ts, origin, account) VALUES (%s, %s, %s)",
                    (now, origin, account),
                )

    def count_recent_failures(
        self,
        account: Optional[str],
        origin: str,
        now: datetime,
        window_minutes: int,
    ) -> AttemptCounts:
        if window_minutes <= 0:
            raise ValueError("window_minutes must be greater than zero")
        since = now - timedelta(minutes=window_minutes)
        with self._guard("count_recent_failures"):
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT
                        COALESCE(SUM(CASE WHEN account = %s THEN 1 ELSE 0 END), 0) AS account_count,
                        COALESCE(SUM(CASE WHEN origin = %s THEN 1 ELSE 0 END), 0) AS origin_count
                    FROM failed_login_attempt
                    WHERE ts > %s
                    """,
                    (account, origin, since),
                ).fetchone()
        if not row:
            return AttemptCounts()
        return AttemptCounts(
            account=int(row.get("account_count") or 0),
            origin=int(row.get("origin_count") or 0),
        )

    def get_block_status(
        self, account: Optional[str], origin: Optional[str], now: datetime
    ) -> BlockStatus:
        with self._guard("get_block_status"):
            with self._connect() as conn:
                row = conn.execute(
                    """
                    SELECT account, origin, created_at, expires_at
                    FROM login_block
                    WHERE (account = %s OR origin = %s) AND expires_at > %s
                    ORDER BY expires_at DESC
                    LIMIT 1
                    """,
                    (account, origin, now),
                ).fetchone()
        if not row:
            return BlockStatus.clear()
        return BlockStatus.from_block(
            Block(
                created_at=row["created_at"],
                expires_at=row["expires_at"],
                account=row.get("account"),
                origin=row.get("origin"),
            )
        )

    def create_block(
        self,
        account: Optional[str],
        origin: Optional[str],
        expires_at: datetime,
        *,
        now: datetime,
    ) -> Block:
        with self._guard("create_block"):
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO login_block (account, origin, created_at, expires_at)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (account, origin, now, expires_at),
                )
        return Block(created_at=now, expires_at=expires_at, account=account, origin=origin)

    def clear_account_failures(self, account: str) -> int:
        with self._guard("clear_account_failures"):
            with self._connect() as conn:
                cur = conn.execute(
                    "UPDATE failed_login_attempt SET account = NULL WHERE account = %s",
                    (account,),
                )
                return cur.rowcount or 0

    def purge_expired(self, now: datetime, window_minutes: int) -> int:
        if window_minutes <= 0:
            raise ValueError("window_minutes must be greater than zero")
        cutoff = now - timedelta(minutes=window_minutes)
        with self._guard("purge_expired"):
            with self._connect() as conn:
                row = conn.execute(
                    """
                    WITH purged_attempts AS (
                        DELETE FROM failed_login_attempt WHERE ts <= %s RETURNING 1
                    ), purged_blocks AS (
                        DELETE FROM login_block WHERE expires_at <= %s RETURNING 1
                    )
                    SELECT
                        (SELECT COUNT(*) FROM purged_attempts)
                        + (SELECT COUNT(*) FROM purged_blocks) AS removed
                    """,
                    (cutoff, now),
                ).fetchone()
        removed = int(row.get("removed") or 0) if row else 0
        if removed:
            self.logger.info("rate_limit_purged", removed=removed)
        return removed


class PostgresReplayGuard(_PostgresBase):
    required_tables = ("jwt_jti",)

    def register(self, jti: str, user_id: str, issued_at: datetime) -> IssuedToken:
        with self._guard("register_token"):
            try:
                with self._connect() as conn:
                    conn.execute(
                        "INSERT INTO jwt_jti (jti, user_id, issued_at) VALUES (%s, %s, %s)",
                        (jti, user_id, issued_at),
                    )
            except errors.UniqueViolation as exc:
                raise ConstraintViolation(
                    "token identifier exists", {"jti": jti}
                ) from exc
        return IssuedToken(jti=jti, user_id=user_id, issued_at=issued_at)

    def get(self, jti: str) -> Optional[IssuedToken]:
        with self._guard("get_token"):
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT jti, user_id, issued_at FROM jwt_jti WHERE jti = %s",
                    (jti,),
                ).fetchone()
        if not row:
            return None
        return IssuedToken(
            jti=row["jti"], user_id=row["user_id"], issued_at=row["issued_at"]
        )

    def contains(self, jti: str) -> bool:
        return self.get(jti) is not None

    def revoke(self, jti: str) -> bool:
        with self._guard("revoke_token"):
            with self._connect() as conn:
                cur = conn.execute("DELETE FROM jwt_jti WHERE jti = %s", (jti,))
                removed = bool(cur.rowcount)
        if removed:
            self.logger.info("replay_guard_revoked", jti=jti)
        return removed


class PostgresCredentialStore(_PostgresBase):
    required_tables = ("auth_user",)

    def get_by_email(self, email: str) -> Optional[UserCredential]:
        with self._guard("get_user"):
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT id, email, password_hash, is_active FROM auth_user WHERE email = %s",
                    (email,),
                ).fetchone()
        if not row:
            return None
        return UserCredential(
            user_id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            is_active=bool(row.get("is_active", True)),
        )

    def create_user(
        self, email: str, password_hash: str, *, user_id: Optional[str] = None
    ) -> UserCredential:
        user_id = user_id or str(uuid.uuid4())
        with self._guard("create_user"):
            try:
                with self._connect() as conn:
                    conn.execute(
                        "INSERT INTO auth_user (id, email, password_hash) VALUES (%s, %s, %s)",
                        (user_id, email, password_hash),
                    )
            except errors.UniqueViolation as exc:
                raise ConstraintViolation(
                    "email already registered", {"field": "email"}
                ) from exc
        return UserCredential(user_id=user_id, email=email, password_hash=password_hash)
