from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from uniportal.logging import get_logger
from uniportal.service.errors import UpstreamUnavailableError
from uniportal.storage.errors import ConstraintViolation
from uniportal.storage.models import Account, OtpRecord


_ACCOUNT_COLUMNS = (
    "id, username, email, password_hash, role, is_active, mfa_email_enabled, created_at"
)


class PostgresStore:
    """Postgres-backed store for portal accounts and one-time codes.

    Every mutation is a single statement so concurrent requests never observe
    a half-applied change. Pool exhaustion and dropped connections surface as
    ``UpstreamUnavailableError``.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        timeout: float = 10.0,
        pool: Optional[ConnectionPool] = None,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            kwargs={"row_factory": dict_row, "autocommit": True},
        )
        # otp_codes references users, so check for it before creating anything
        self._verify_required_schema()
        self._ensure_otp_table()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except PoolTimeout as exc:
            self.logger.error("db_pool_timeout", error=str(exc))
            raise UpstreamUnavailableError() from exc
        except OperationalError as exc:
            self.logger.error("db_operational_error", error=str(exc))
            raise UpstreamUnavailableError() from exc

    def close(self) -> None:
        self.pool.close()

    def _ensure_otp_table(self) -> None:
        """Create the ``otp_codes`` table if it is missing."""

        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS otp_codes (
                    id BIGSERIAL PRIMARY KEY,
                    user_id INTEGER NOT NULL REFERENCES users(id) ON DELETE CASCADE,
                    code_hash VARCHAR(64) NOT NULL,
                    channel VARCHAR(20) NOT NULL DEFAULT 'email',
                    purpose VARCHAR(50) NOT NULL,
                    expires_at TIMESTAMP NOT NULL,
                    created_at TIMESTAMP NOT NULL DEFAULT (now() AT TIME ZONE 'utc'),
                    used_at TIMESTAMP NULL
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_otp_user_purpose ON otp_codes (user_id, purpose)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_otp_expires ON otp_codes (expires_at)"
            )

    def _verify_required_schema(self) -> None:
        """Ensure the account table exists before serving requests."""

        with self._connect() as conn:
            row = conn.execute(
                "SELECT to_regclass(%s) AS oid", ("public.users",)
            ).fetchone()
        if not row or not row.get("oid"):
            raise RuntimeError(
                "Missing required Postgres table: users. Create the account schema before starting the portal."
            )

    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=int(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            role=row.get("role", "student"),
            is_active=bool(row.get("is_active", True)),
            mfa_email_enabled=bool(row.get("mfa_email_enabled", False)),
            created_at=row.get("created_at") or datetime.utcnow(),
        )

    @staticmethod
    def _otp_from_row(row: dict) -> OtpRecord:
        return OtpRecord(
            id=int(row["id"]),
            user_id=int(row["user_id"]),
            code_hash=row["code_hash"],
            purpose=row["purpose"],
            expires_at=row["expires_at"],
            channel=row.get("channel", "email"),
            created_at=row.get("created_at") or datetime.utcnow(),
            used_at=row.get("used_at"),
        )

    # -- accounts --------------------------------------------------------

    def create_account(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        role: str = "student",
        is_active: bool = True,
        mfa_email_enabled: bool = False,
    ) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (username, email, password_hash, role, is_active, mfa_email_enabled)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (username, email, password_hash, role, is_active, mfa_email_enabled),
                ).fetchone()
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "username or email already exists", {"field": "username"}
            )
        return self._account_from_row(row)

    def get_account(self, account_id: int) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM users WHERE id = %s LIMIT 1",
                (account_id,),
            ).fetchone()
        if not row:
            return None
        return self._account_from_row(row)

    def get_account_by_identifier(self, identifier: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                SELECT {_ACCOUNT_COLUMNS} FROM users
                WHERE username = %s OR email = %s
                ORDER BY id
                LIMIT 1
                """,
                (identifier, identifier),
            ).fetchone()
        if not row:
            return None
        return self._account_from_row(row)

    def update_account(
        self,
        account_id: int,
        *,
        role: Optional[str] = None,
        is_active: Optional[bool] = None,
        password_hash: Optional[str] = None,
        mfa_email_enabled: Optional[bool] = None,
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users SET
                    role = COALESCE(%s, role),
                    is_active = COALESCE(%s, is_active),
                    password_hash = COALESCE(%s, password_hash),
                    mfa_email_enabled = COALESCE(%s, mfa_email_enabled)
                WHERE id = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (role, is_active, password_hash, mfa_email_enabled, account_id),
            ).fetchone()
        if not row:
            return None
        return self._account_from_row(row)

    # -- otp codes -------------------------------------------------------

    def invalidate_otp_records(self, user_id: int, purpose: str, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE otp_codes SET used_at = %s
                WHERE user_id = %s AND purpose = %s AND used_at IS NULL
                """,
                (now, user_id, purpose),
            )
            return cur.rowcount or 0

    def create_otp_record(
        self,
        user_id: int,
        code_hash: str,
        purpose: str,
        expires_at: datetime,
        *,
        now: datetime,
        channel: str = "email",
    ) -> OtpRecord:
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO otp_codes (user_id, code_hash, channel, purpose, expires_at, created_at)
                VALUES (%s, %s, %s, %s, %s, %s)
                RETURNING *
                """,
                (user_id, code_hash, channel, purpose, expires_at, now),
            ).fetchone()
        return self._otp_from_row(row)

    def find_otp_record(
        self, user_id: int, purpose: str, code_hash: str
    ) -> Optional[OtpRecord]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT * FROM otp_codes
                WHERE user_id = %s AND purpose = %s AND code_hash = %s
                ORDER BY created_at DESC, id DESC
                LIMIT 1
                """,
                (user_id, purpose, code_hash),
            ).fetchone()
        if not row:
            return None
        return self._otp_from_row(row)

    def mark_otp_used(self, record_id: int, now: datetime) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE otp_codes SET used_at = %s WHERE id = %s AND used_at IS NULL",
                (now, record_id),
            )
            return bool(cur.rowcount)

    def list_otp_records(
        self, user_id: int, purpose: Optional[str] = None
    ) -> List[OtpRecord]:
        with self._connect() as conn:
            if purpose:
                rows = conn.execute(
                    "SELECT * FROM otp_codes WHERE user_id = %s AND purpose = %s ORDER BY created_at, id",
                    (user_id, purpose),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM otp_codes WHERE user_id = %s ORDER BY created_at, id",
                    (user_id,),
                ).fetchall()
        return [self._otp_from_row(row) for row in rows]

    def purge_otp_records(self, before: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                "DELETE FROM otp_codes WHERE expires_at < %s OR used_at < %s",
                (before, before),
            )
            count = cur.rowcount or 0
        if count:
            self.logger.info("otp_records_purged", count=count)
        return count
