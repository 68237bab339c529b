"""
In-memory repository adapter - Process-local implementation of the store ports.

Used by the unit tests and for local experiments without PostgreSQL. A unit
of work operates on a private copy of the state, which replaces the shared
state only when the block exits cleanly. A process-wide lock serializes
units of work, standing in for the row and advisory locks of PostgreSQL.
"""

import copy
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from src.domain.exceptions import EmailUnavailable
from src.domain.ports import (
    Account,
    ChangeLogEntry,
    CodeKind,
    EmailRecord,
    EmailStatus,
    PendingUser,
    WorkerIdentity,
)
from src.domain.profiles import AccountKind, Profile

_ACTIVE = (EmailStatus.PRIMARY, EmailStatus.PENDING_VERIFICATION)
_EPOCH = datetime.min.replace(tzinfo=UTC)


@dataclass
class _MemoryState:
    accounts: dict[str, Account] = field(default_factory=dict)
    emails: dict[str, EmailRecord] = field(default_factory=dict)
    change_log: list[ChangeLogEntry] = field(default_factory=list)
    pending: dict[str, PendingUser] = field(default_factory=dict)


class InMemoryAccountStore:
    def __init__(self, state: _MemoryState) -> None:
        self._state = state

    def get(self, account_id: str, *, for_update: bool = False) -> Account | None:
        account = self._state.accounts.get(account_id)
        return copy.copy(account) if account is not None else None

    def create(
        self,
        kind: AccountKind,
        primary_email: str,
        password_hash: str,
        profile: Profile,
        now: datetime,
    ) -> Account:
        account = Account(
            id=str(uuid.uuid4()),
            kind=kind,
            primary_email=primary_email,
            password_hash=password_hash,
            display_name=profile.display_name,
            profile=profile,
            created_at=now,
            updated_at=now,
        )
        self._state.accounts[account.id] = account
        return copy.copy(account)

    def set_primary_email(self, account_id: str, email: str, now: datetime) -> None:
        account = self._state.accounts.get(account_id)
        if account is not None:
            account.primary_email = email
            account.updated_at = now

    def recent_workers(self, since: datetime, limit: int) -> list[WorkerIdentity]:
        workers = sorted(
            (
                a
                for a in self._state.accounts.values()
                if a.kind is AccountKind.WORKER and a.created_at >= since
            ),
            key=lambda a: a.created_at,
            reverse=True,
        )
        return [
            WorkerIdentity(
                account_id=a.id,
                full_name=a.display_name,
                email=a.primary_email,
                created_at=a.created_at,
            )
            for a in workers[:limit]
        ]


class InMemoryEmailRecordStore:
    def __init__(self, state: _MemoryState) -> None:
        self._state = state

    def lock_address(self, address: str) -> None:
        # Units of work are already serialized by InMemoryUnitOfWork.
        pass

    def find_active(self, address: str) -> EmailRecord | None:
        return self._first(lambda r: r.address == address and r.status in _ACTIVE)

    def find_in_grace(self, address: str, now: datetime) -> EmailRecord | None:
        return self._first(
            lambda r: r.address == address
            and r.status is EmailStatus.DETACHED
            and r.grace_expires_at is not None
            and r.grace_expires_at > now
        )

    def find_by_code(self, code: str, address: str, kind: CodeKind) -> EmailRecord | None:
        return self._first(
            lambda r: r.verification_code == code
            and r.code_kind is kind
            and r.address == address
            and r.status is EmailStatus.PENDING_VERIFICATION
            and r.verified_at is None
        )

    def find_for_account(self, account_id: str, address: str) -> EmailRecord | None:
        return self._newest(
            lambda r: r.account_id == account_id
            and r.address == address
            and r.status is not EmailStatus.DETACHED
        )

    def find_primary(self, account_id: str) -> EmailRecord | None:
        return self._first(lambda r: r.account_id == account_id and r.status is EmailStatus.PRIMARY)

    def find_unconfirmed(self, account_id: str) -> EmailRecord | None:
        return self._newest(
            lambda r: r.account_id == account_id
            and r.status in (EmailStatus.UNVERIFIED, EmailStatus.PENDING_VERIFICATION)
            and r.verified_at is None
        )

    def has_verified(self, account_id: str) -> bool:
        return any(
            r.account_id == account_id and r.verified_at is not None
            for r in self._state.emails.values()
        )

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
        record = EmailRecord(
            id=str(uuid.uuid4()),
            account_id=account_id,
            address=address,
            status=status,
            verification_code=code,
            code_kind=code_kind,
            code_expires_at=code_expires_at,
            code_sent_at=now if code is not None else None,
            verified_at=verified_at,
            created_at=now,
            updated_at=now,
        )
        self._check_unique(record)
        self._state.emails[record.id] = record
        return copy.copy(record)

    def set_code(
        self,
        record_id: str,
        status: EmailStatus,
        code: str,
        kind: CodeKind,
        expires_at: datetime,
        now: datetime,
    ) -> None:
        record = self._state.emails.get(record_id)
        if record is None or record.verified_at is not None:
            return
        self._check_unique(replace(record, status=status))
        record.status = status
        record.verification_code = code
        record.code_kind = kind
        record.code_expires_at = expires_at
        record.code_sent_at = now
        record.failed_attempts = 0
        record.updated_at = now

    def record_failed_attempt(self, record_id: str, now: datetime) -> int:
        record = self._state.emails.get(record_id)
        if record is None:
            return 0
        record.failed_attempts += 1
        record.updated_at = now
        return record.failed_attempts

    def clear_code(self, record_id: str, now: datetime) -> None:
        record = self._state.emails.get(record_id)
        if record is not None:
            record.verification_code = None
            record.code_kind = None
            record.code_expires_at = None
            record.updated_at = now

    def promote(self, record_id: str, now: datetime) -> bool:
        record = self._state.emails.get(record_id)
        if record is None or record.verified_at is not None:
            return False
        self._check_unique(replace(record, status=EmailStatus.PRIMARY))
        record.status = EmailStatus.PRIMARY
        record.verified_at = now
        record.verification_code = None
        record.code_kind = None
        record.code_expires_at = None
        record.failed_attempts = 0
        record.updated_at = now
        return True

    def detach(self, record_id: str, now: datetime, grace_expires_at: datetime) -> None:
        record = self._state.emails.get(record_id)
        if record is not None and record.status is EmailStatus.PRIMARY:
            record.status = EmailStatus.DETACHED
            record.detached_at = now
            record.grace_expires_at = grace_expires_at
            record.updated_at = now

    def change_address(self, record_id: str, address: str, now: datetime) -> None:
        record = self._state.emails.get(record_id)
        if record is None:
            return
        self._check_unique(replace(record, address=address))
        record.address = address
        record.updated_at = now

    def delete_unverified(self, address: str) -> int:
        stale = [
            r.id
            for r in self._state.emails.values()
            if r.address == address and r.status is EmailStatus.UNVERIFIED and r.verified_at is None
        ]
        for record_id in stale:
            del self._state.emails[record_id]
        return len(stale)

    def delete_expired_detached(self, now: datetime) -> int:
        expired = [
            r.id
            for r in self._state.emails.values()
            if r.status is EmailStatus.DETACHED
            and r.grace_expires_at is not None
            and r.grace_expires_at < now
        ]
        for record_id in expired:
            del self._state.emails[record_id]
        return len(expired)

    def list_for_account(self, account_id: str) -> list[EmailRecord]:
        records = [r for r in self._state.emails.values() if r.account_id == account_id]
        records.sort(key=lambda r: r.created_at or _EPOCH, reverse=True)
        return [copy.copy(r) for r in records]

    def _first(self, predicate) -> EmailRecord | None:
        for record in self._state.emails.values():
            if predicate(record):
                return copy.copy(record)
        return None

    def _newest(self, predicate) -> EmailRecord | None:
        matches = [r for r in self._state.emails.values() if predicate(r)]
        if not matches:
            return None
        return copy.copy(max(matches, key=lambda r: r.created_at or _EPOCH))

    def _check_unique(self, candidate: EmailRecord) -> None:
        """Mirror the partial unique indexes of the email_records table."""
        for other in self._state.emails.values():
            if other.id == candidate.id:
                continue
            if (
                candidate.status in _ACTIVE
                and other.status in _ACTIVE
                and other.address == candidate.address
            ):
                raise EmailUnavailable("Email is currently in use")
            if (
                candidate.status is EmailStatus.PRIMARY
                and other.status is EmailStatus.PRIMARY
                and other.account_id == candidate.account_id
            ):
                raise EmailUnavailable("Account already has a primary email")


class InMemoryChangeLog:
    def __init__(self, state: _MemoryState) -> None:
        self._state = state

    def append(self, entry: ChangeLogEntry) -> None:
        self._state.change_log.append(entry)

    def history(self, account_id: str) -> list[ChangeLogEntry]:
        return [e for e in reversed(self._state.change_log) if e.account_id == account_id]


class InMemoryPendingSignupStore:
    _UPDATABLE = frozenset(
        {
            "hashed_password",
            "account_kind",
            "profile",
            "verification_token",
            "token_expiry",
            "resend_count",
        }
    )

    def __init__(self, state: _MemoryState) -> None:
        self._state = state

    def create(self, pending: PendingUser) -> PendingUser:
        if any(p.email == pending.email for p in self._state.pending.values()):
            raise EmailUnavailable("Email is currently in use")
        self._state.pending[pending.id] = copy.copy(pending)
        return copy.copy(pending)

    def find_by_email(self, email: str) -> PendingUser | None:
        for pending in self._state.pending.values():
            if pending.email == email:
                return copy.copy(pending)
        return None

    def find_by_token(self, token: str) -> PendingUser | None:
        for pending in self._state.pending.values():
            if pending.verification_token == token:
                return copy.copy(pending)
        return None

    def update(self, pending_id: str, **fields: object) -> None:
        unknown = set(fields) - self._UPDATABLE
        if unknown:
            raise ValueError(f"Cannot update pending user fields: {sorted(unknown)}")
        pending = self._state.pending.get(pending_id)
        if pending is not None:
            self._state.pending[pending_id] = replace(pending, **fields)

    def delete(self, pending_id: str) -> None:
        self._state.pending.pop(pending_id, None)

    def delete_expired(self, now: datetime) -> int:
        expired = [p.id for p in self._state.pending.values() if p.token_expiry < now]
        for pending_id in expired:
            del self._state.pending[pending_id]
        return len(expired)


@dataclass
class InMemoryTransaction:
    accounts: InMemoryAccountStore
    emails: InMemoryEmailRecordStore
    change_log: InMemoryChangeLog
    pending_signups: InMemoryPendingSignupStore


class InMemoryUnitOfWork:
    """Implements UnitOfWork protocol over process memory."""

    def __init__(self) -> None:
        self._state = _MemoryState()
        self._lock = threading.RLock()

    @contextmanager
    def __call__(self) -> Iterator[InMemoryTransaction]:
        with self._lock:
            working = copy.deepcopy(self._state)
            yield InMemoryTransaction(
                accounts=InMemoryAccountStore(working),
                emails=InMemoryEmailRecordStore(working),
                change_log=InMemoryChangeLog(working),
                pending_signups=InMemoryPendingSignupStore(working),
            )
            self._state = working
