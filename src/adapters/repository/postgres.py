"""
PostgreSQL repository adapter - Implements the domain's store ports.

This module provides the PostgreSQL implementation of the account, email
record, change log, and pending signup stores using psycopg3 with raw SQL.

Atomicity and Concurrency:
--------------------------
1. **One connection, one transaction**: PostgresUnitOfWork checks a
   connection out of the pool and wraps the whole unit of work in
   conn.transaction(). Leaving the block commits; any exception rolls back,
   so no partial email record or change log row is ever visible.

2. **Address lock**: lock_address() takes pg_advisory_xact_lock on a hash of
   the address. Two units of work claiming the same address queue behind
   each other, so the availability check and the insert that follows it
   cannot interleave. The lock is released at commit or rollback.

3. **Row locks**: lookups that precede a state change use SELECT ... FOR
   UPDATE. A second consumer of the same token blocks, then finds the row
   already verified.

4. **Compare-and-set promotion**: promote() only updates rows with
   verified_at IS NULL, so a replayed token can verify at most once.

5. **Index backstop**: partial unique indexes enforce one active claim per
   address and one primary per account; a violation is reported as
   EmailUnavailable.
"""

import logging
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from psycopg import Cursor, errors, sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from src.domain.exceptions import EmailUnavailable
from src.domain.ports import (
    Account,
    ChangeLogEntry,
    ChangeStatus,
    ChangeType,
    CodeKind,
    EmailRecord,
    EmailStatus,
    PendingUser,
    WorkerIdentity,
)
from src.domain.profiles import AccountKind, Profile, profile_from_payload

logger = logging.getLogger(__name__)

_EMAIL_COLUMNS = """
    id, account_id, address, status, verification_code, code_kind, code_expires_at,
    code_sent_at, failed_attempts, verified_at, detached_at, grace_expires_at, created_at, updated_at
"""

_ACCOUNT_COLUMNS = """
    id, kind, primary_email, password_hash, display_name, profile, created_at, updated_at
"""

_PENDING_COLUMNS = """
    id, email, hashed_password, account_kind, profile, verification_token, token_expiry,
    resend_count, created_at
"""

# Fields PostgresPendingSignupStore.update() may change
_PENDING_UPDATABLE = frozenset(
    {
        "hashed_password",
        "account_kind",
        "profile",
        "verification_token",
        "token_expiry",
        "resend_count",
    }
)


def _parse_uuid(value: str) -> uuid.UUID | None:
    try:
        return uuid.UUID(str(value))
    except ValueError:
        return None


def _email_record(row: dict[str, Any]) -> EmailRecord:
    return EmailRecord(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        address=row["address"],
        status=EmailStatus(row["status"]),
        verification_code=row["verification_code"],
        code_kind=CodeKind(row["code_kind"]) if row["code_kind"] is not None else None,
        code_expires_at=row["code_expires_at"],
        code_sent_at=row["code_sent_at"],
        failed_attempts=row["failed_attempts"],
        verified_at=row["verified_at"],
        detached_at=row["detached_at"],
        grace_expires_at=row["grace_expires_at"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _account(row: dict[str, Any]) -> Account:
    kind = AccountKind(row["kind"])
    return Account(
        id=str(row["id"]),
        kind=kind,
        primary_email=row["primary_email"],
        password_hash=row["password_hash"],
        display_name=row["display_name"],
        profile=profile_from_payload(kind, row["profile"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _pending_user(row: dict[str, Any]) -> PendingUser:
    kind = AccountKind(row["account_kind"])
    return PendingUser(
        id=str(row["id"]),
        email=row["email"],
        hashed_password=row["hashed_password"],
        account_kind=kind,
        profile=profile_from_payload(kind, row["profile"]),
        verification_token=row["verification_token"],
        token_expiry=row["token_expiry"],
        resend_count=row["resend_count"],
        created_at=row["created_at"],
    )


class PostgresAccountStore:
    """Implements AccountStore protocol over the accounts table."""

    def __init__(self, cursor: Cursor[dict[str, Any]]) -> None:
        self._cursor = cursor

    def get(self, account_id: str, *, for_update: bool = False) -> Account | None:
        parsed = _parse_uuid(account_id)
        if parsed is None:
            return None
        query = f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE id = %s"
        if for_update:
            query += " FOR UPDATE"
        self._cursor.execute(query, (parsed,))
        row = self._cursor.fetchone()
        return _account(row) if row is not None else None

    def create(
        self,
        kind: AccountKind,
        primary_email: str,
        password_hash: str,
        profile: Profile,
        now: datetime,
    ) -> Account:
        self._cursor.execute(
            f"""
            INSERT INTO accounts (kind, primary_email, password_hash, display_name, profile,
                                  created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING {_ACCOUNT_COLUMNS}
            """,
            (
                kind.value,
                primary_email,
                password_hash,
                profile.display_name,
                Jsonb(profile.to_payload()),
                now,
                now,
            ),
        )
        return _account(self._cursor.fetchone())

    def set_primary_email(self, account_id: str, email: str, now: datetime) -> None:
        self._cursor.execute(
            "UPDATE accounts SET primary_email = %s, updated_at = %s WHERE id = %s",
            (email, now, _parse_uuid(account_id)),
        )

    def recent_workers(self, since: datetime, limit: int) -> list[WorkerIdentity]:
        self._cursor.execute(
            """
            SELECT id, display_name, primary_email, created_at
            FROM accounts
            WHERE kind = %s AND created_at >= %s
            ORDER BY created_at DESC
            LIMIT %s
            """,
            (AccountKind.WORKER.value, since, limit),
        )
        return [
            WorkerIdentity(
                account_id=str(row["id"]),
                full_name=row["display_name"],
                email=row["primary_email"],
                created_at=row["created_at"],
            )
            for row in self._cursor.fetchall()
        ]


class PostgresEmailRecordStore:
    """Implements EmailRecordStore protocol over the email_records table."""

    def __init__(self, cursor: Cursor[dict[str, Any]]) -> None:
        self._cursor = cursor

    def lock_address(self, address: str) -> None:
        self._cursor.execute("SELECT pg_advisory_xact_lock(hashtext(%s))", (address,))

    def find_active(self, address: str) -> EmailRecord | None:
        return self._fetch_one(
            f"""
            SELECT {_EMAIL_COLUMNS} FROM email_records
            WHERE address = %s AND status IN ('primary', 'pending_verification')
            LIMIT 1
            """,
            (address,),
        )

    def find_in_grace(self, address: str, now: datetime) -> EmailRecord | None:
        return self._fetch_one(
            f"""
            SELECT {_EMAIL_COLUMNS} FROM email_records
            WHERE address = %s AND status = 'detached' AND grace_expires_at > %s
            ORDER BY grace_expires_at DESC
            LIMIT 1
            """,
            (address, now),
        )

    def find_by_code(self, code: str, address: str, kind: CodeKind) -> EmailRecord | None:
        return self._fetch_one(
            f"""
            SELECT {_EMAIL_COLUMNS} FROM email_records
            WHERE verification_code = %s
              AND code_kind = %s
              AND address = %s
              AND status = 'pending_verification'
              AND verified_at IS NULL
            LIMIT 1
            FOR UPDATE
            """,
            (code, kind.value, address),
        )

    def find_for_account(self, account_id: str, address: str) -> EmailRecord | None:
        parsed = _parse_uuid(account_id)
        if parsed is None:
            return None
        return self._fetch_one(
            f"""
            SELECT {_EMAIL_COLUMNS} FROM email_records
            WHERE account_id = %s AND address = %s AND status <> 'detached'
            ORDER BY created_at DESC
            LIMIT 1
            FOR UPDATE
            """,
            (parsed, address),
        )

    def find_primary(self, account_id: str) -> EmailRecord | None:
        return self._fetch_one(
            f"""
            SELECT {_EMAIL_COLUMNS} FROM email_records
            WHERE account_id = %s AND status = 'primary'
            FOR UPDATE
            """,
            (_parse_uuid(account_id),),
        )

    def find_unconfirmed(self, account_id: str) -> EmailRecord | None:
        return self._fetch_one(
            f"""
            SELECT {_EMAIL_COLUMNS} FROM email_records
            WHERE account_id = %s
              AND status IN ('unverified', 'pending_verification')
              AND verified_at IS NULL
            ORDER BY created_at DESC
            LIMIT 1
            FOR UPDATE
            """,
            (_parse_uuid(account_id),),
        )

    def has_verified(self, account_id: str) -> bool:
        self._cursor.execute(
            """
            SELECT EXISTS (
                SELECT 1 FROM email_records WHERE account_id = %s AND verified_at IS NOT NULL
            ) AS verified
            """,
            (_parse_uuid(account_id),),
        )
        row = self._cursor.fetchone()
        return bool(row and row["verified"])

    def insert(
        self,
        account_id: str,
        address: str,
        status: EmailStatus,
        now: datetime,
        *,
        code: str | None = None,
        code_kind: CodeKind | None = None,
        code_expires_at: datetime | None = None,
        verified_at: datetime | None = None,
    ) -> EmailRecord:
        query = f"""
            INSERT INTO email_records (account_id, address, status, verification_code, code_kind,
                                       code_expires_at, code_sent_at, verified_at,
                                       created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING {_EMAIL_COLUMNS}
        """
        params = (
            _parse_uuid(account_id),
            address,
            status.value,
            code,
            code_kind.value if code_kind is not None else None,
            code_expires_at,
            now if code is not None else None,
            verified_at,
            now,
            now,
        )
        with self._unique_violation_as_unavailable():
            self._cursor.execute(query, params)
        return _email_record(self._cursor.fetchone())

    def set_code(
        self,
        record_id: str,
        status: EmailStatus,
        code: str,
        kind: CodeKind,
        expires_at: datetime,
        now: datetime,
    ) -> None:
        with self._unique_violation_as_unavailable():
            self._cursor.execute(
                """
                UPDATE email_records
                SET status = %s, verification_code = %s, code_kind = %s, code_expires_at = %s,
                    code_sent_at = %s, failed_attempts = 0, updated_at = %s
                WHERE id = %s AND verified_at IS NULL
                """,
                (status.value, code, kind.value, expires_at, now, now, record_id),
            )

    def record_failed_attempt(self, record_id: str, now: datetime) -> int:
        self._cursor.execute(
            """
            UPDATE email_records
            SET failed_attempts = failed_attempts + 1, updated_at = %s
            WHERE id = %s
            RETURNING failed_attempts
            """,
            (now, record_id),
        )
        row = self._cursor.fetchone()
        return row["failed_attempts"] if row is not None else 0

    def clear_code(self, record_id: str, now: datetime) -> None:
        self._cursor.execute(
            """
            UPDATE email_records
            SET verification_code = NULL, code_kind = NULL, code_expires_at = NULL, updated_at = %s
            WHERE id = %s
            """,
            (now, record_id),
        )

    def promote(self, record_id: str, now: datetime) -> bool:
        with self._unique_violation_as_unavailable():
            self._cursor.execute(
                """
                UPDATE email_records
                SET status = 'primary', verified_at = %s, verification_code = NULL, code_kind = NULL,
                    code_expires_at = NULL, failed_attempts = 0, updated_at = %s
                WHERE id = %s AND verified_at IS NULL
                """,
                (now, now, record_id),
            )
        return self._cursor.rowcount == 1

    def detach(self, record_id: str, now: datetime, grace_expires_at: datetime) -> None:
        self._cursor.execute(
            """
            UPDATE email_records
            SET status = 'detached', detached_at = %s, grace_expires_at = %s, updated_at = %s
            WHERE id = %s AND status = 'primary'
            """,
            (now, grace_expires_at, now, record_id),
        )

    def change_address(self, record_id: str, address: str, now: datetime) -> None:
        with self._unique_violation_as_unavailable():
            self._cursor.execute(
                "UPDATE email_records SET address = %s, updated_at = %s WHERE id = %s",
                (address, now, record_id),
            )

    def delete_unverified(self, address: str) -> int:
        self._cursor.execute(
            """
            DELETE FROM email_records
            WHERE address = %s AND status = 'unverified' AND verified_at IS NULL
            """,
            (address,),
        )
        return self._cursor.rowcount

    def delete_expired_detached(self, now: datetime) -> int:
        self._cursor.execute(
            "DELETE FROM email_records WHERE status = 'detached' AND grace_expires_at < %s",
            (now,),
        )
        return self._cursor.rowcount

    def list_for_account(self, account_id: str) -> list[EmailRecord]:
        self._cursor.execute(
            f"""
            SELECT {_EMAIL_COLUMNS} FROM email_records
            WHERE account_id = %s
            ORDER BY created_at DESC
            """,
            (_parse_uuid(account_id),),
        )
        return [_email_record(row) for row in self._cursor.fetchall()]

    def _fetch_one(self, query: str, params: tuple[Any, ...]) -> EmailRecord | None:
        self._cursor.execute(query, params)
        row = self._cursor.fetchone()
        return _email_record(row) if row is not None else None

    @contextmanager
    def _unique_violation_as_unavailable(self) -> Iterator[None]:
        try:
            yield
        except errors.UniqueViolation as e:
            logger.info("Unique index rejected email claim: %s", e.diag.constraint_name)
            raise EmailUnavailable("Email is currently in use") from e


class PostgresChangeLog:
    """Implements ChangeLog protocol over the email_change_logs table."""

    def __init__(self, cursor: Cursor[dict[str, Any]]) -> None:
        self._cursor = cursor

    def append(self, entry: ChangeLogEntry) -> None:
        self._cursor.execute(
            """
            INSERT INTO email_change_logs (account_id, old_email, new_email, change_type, status,
                                           verification_token, ip_address, user_agent,
                                           two_factor_used, created_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, NOW()))
            """,
            (
                _parse_uuid(entry.account_id),
                entry.old_email,
                entry.new_email,
                entry.change_type.value,
                entry.status.value,
                entry.verification_token,
                entry.ip_address,
                entry.user_agent,
                entry.two_factor_used,
                entry.timestamp,
            ),
        )

    def history(self, account_id: str) -> list[ChangeLogEntry]:
        self._cursor.execute(
            """
            SELECT account_id, old_email, new_email, change_type, status, verification_token,
                   ip_address, user_agent, two_factor_used, created_at
            FROM email_change_logs
            WHERE account_id = %s
            ORDER BY created_at DESC, id DESC
            """,
            (_parse_uuid(account_id),),
        )
        return [
            ChangeLogEntry(
                account_id=str(row["account_id"]),
                old_email=row["old_email"],
                new_email=row["new_email"],
                change_type=ChangeType(row["change_type"]),
                status=ChangeStatus(row["status"]),
                verification_token=row["verification_token"],
                ip_address=row["ip_address"],
                user_agent=row["user_agent"],
                two_factor_used=row["two_factor_used"],
                timestamp=row["created_at"],
            )
            for row in self._cursor.fetchall()
        ]


class PostgresPendingSignupStore:
    """Implements PendingSignupStore protocol over the pending_users table."""

    def __init__(self, cursor: Cursor[dict[str, Any]]) -> None:
        self._cursor = cursor

    def create(self, pending: PendingUser) -> PendingUser:
        self._cursor.execute(
            f"""
            INSERT INTO pending_users (id, email, hashed_password, account_kind, profile,
                                       verification_token, token_expiry, resend_count,
                                       created_at, updated_at)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s, COALESCE(%s, NOW()), NOW())
            RETURNING {_PENDING_COLUMNS}
            """,
            (
                _parse_uuid(pending.id) or uuid.uuid4(),
                pending.email,
                pending.hashed_password,
                pending.account_kind.value,
                Jsonb(pending.profile.to_payload()),
                pending.verification_token,
                pending.token_expiry,
                pending.resend_count,
                pending.created_at,
            ),
        )
        return _pending_user(self._cursor.fetchone())

    def find_by_email(self, email: str) -> PendingUser | None:
        self._cursor.execute(
            f"SELECT {_PENDING_COLUMNS} FROM pending_users WHERE email = %s FOR UPDATE",
            (email,),
        )
        row = self._cursor.fetchone()
        return _pending_user(row) if row is not None else None

    def find_by_token(self, token: str) -> PendingUser | None:
        self._cursor.execute(
            f"SELECT {_PENDING_COLUMNS} FROM pending_users WHERE verification_token = %s FOR UPDATE",
            (token,),
        )
        row = self._cursor.fetchone()
        return _pending_user(row) if row is not None else None

    def update(self, pending_id: str, **fields: object) -> None:
        unknown = set(fields) - _PENDING_UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update pending user fields: {sorted(unknown)}")
        if not fields:
            return

        values: list[object] = []
        assignments = []
        for name, value in fields.items():
            if name == "profile":
                value = Jsonb(value.to_payload())  # type: ignore[attr-defined]
            elif name == "account_kind":
                value = AccountKind(value).value  # type: ignore[arg-type]
            assignments.append(sql.SQL("{} = %s").format(sql.Identifier(name)))
            values.append(value)

        query = sql.SQL("UPDATE pending_users SET {}, updated_at = NOW() WHERE id = %s").format(
            sql.SQL(", ").join(assignments)
        )
        self._cursor.execute(query, (*values, _parse_uuid(pending_id)))

    def delete(self, pending_id: str) -> None:
        self._cursor.execute("DELETE FROM pending_users WHERE id = %s", (_parse_uuid(pending_id),))

    def delete_expired(self, now: datetime) -> int:
        self._cursor.execute("DELETE FROM pending_users WHERE token_expiry < %s", (now,))
        return self._cursor.rowcount


@dataclass
class PostgresTransaction:
    """Implements Transaction protocol: all stores share one cursor."""

    accounts: PostgresAccountStore
    emails: PostgresEmailRecordStore
    change_log: PostgresChangeLog
    pending_signups: PostgresPendingSignupStore

    @classmethod
    def from_cursor(cls, cursor: Cursor[dict[str, Any]]) -> "PostgresTransaction":
        return cls(
            accounts=PostgresAccountStore(cursor),
            emails=PostgresEmailRecordStore(cursor),
            change_log=PostgresChangeLog(cursor),
            pending_signups=PostgresPendingSignupStore(cursor),
        )


class PostgresUnitOfWork:
    """
    Implements UnitOfWork protocol via psycopg3.

    Uses structural subtyping - no explicit inheritance from Protocol.
    All SQL uses parameterized queries for security.
    """

    def __init__(self, pool: ConnectionPool) -> None:
        """
        Initialize unit of work factory with connection pool.

        Args:
            pool: psycopg3 ConnectionPool for database connections
        """
        self._pool = pool

    @contextmanager
    def __call__(self) -> Iterator[PostgresTransaction]:
        with (
            self._pool.connection() as conn,
            conn.transaction(),
            conn.cursor(row_factory=dict_row) as cursor,
        ):
            yield PostgresTransaction.from_cursor(cursor)


def run_migrations(pool: ConnectionPool) -> None:
    """
    Execute all SQL migration files from the migrations directory.

    Migrations are executed in sorted order (alphabetically by filename).
    Each migration should be idempotent (use IF NOT EXISTS, etc.).

    Args:
        pool: psycopg3 ConnectionPool instance
    """
    # Structure: src/adapters/repository/postgres.py -> migrations/
    migrations_dir = Path(__file__).parent.parent.parent.parent / "migrations"

    if not migrations_dir.exists():
        logger.warning(f"Migrations directory not found: {migrations_dir}")
        return

    sql_files = sorted(migrations_dir.glob("*.sql"))

    if not sql_files:
        logger.info("No migration files found")
        return

    logger.info(f"Running {len(sql_files)} migration(s)")

    for sql_file in sql_files:
        logger.info(f"Executing migration: {sql_file.name}")
        try:
            sql_content = sql_file.read_text()

            with pool.connection() as conn:
                conn.execute(sql_content)

            logger.info(f"Migration complete: {sql_file.name}")
        except Exception as e:
            logger.error(f"Migration failed: {sql_file.name} - {e}")
            raise RuntimeError(f"Database migration failed: {sql_file.name}") from e
