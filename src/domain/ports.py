"""
Port interfaces - Records and protocol definitions for infrastructure abstraction.

This module defines the records the domain works with and the interfaces
(ports) it requires from infrastructure. Adapters implement these
protocols structurally, without inheriting from them.
"""

from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol

from .profiles import AccountKind, Profile


class EmailStatus(str, Enum):
    """
    Email record lifecycle states.

    State Transitions (forward-only):
    - UNVERIFIED -> PENDING_VERIFICATION (code or token issued)
    - UNVERIFIED | PENDING_VERIFICATION -> PRIMARY (ownership proven)
    - PRIMARY -> DETACHED (superseded by a newly promoted address)

    DETACHED rows keep their address reserved until the grace period
    ends, after which the cleanup sweep deletes them.
    """

    UNVERIFIED = "unverified"
    PENDING_VERIFICATION = "pending_verification"
    PRIMARY = "primary"
    DETACHED = "detached"


class ChangeType(str, Enum):
    """Kind of transition recorded in the change log."""

    SIGNUP_VERIFIED = "signup_verified"
    SIGNUP_UNVERIFIED = "signup_unverified"
    UPDATE_UNVERIFIED = "update_unverified"
    VERIFICATION_REQUIRED = "verification_required"
    VERIFICATION_COMPLETED = "verification_completed"
    VERIFICATION_REQUESTED = "verification_requested"
    PRIMARY_CHANGE = "primary_change"
    OTP_VERIFICATION_SENT = "otp_verification_sent"
    OTP_VERIFICATION_COMPLETED = "otp_verification_completed"


class CodeKind(str, Enum):
    """
    Flow that issued the code held by an email record.

    A code is only accepted by the flow that issued it: a 6-digit OTP
    cannot be followed as a link, and a change link cannot complete a
    delayed verification.
    """

    LINK = "link"
    CHANGE = "change"
    OTP = "otp"


class ChangeStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"


@dataclass
class Account:
    """A materialized account, as far as this service needs to see it."""

    id: str
    kind: AccountKind
    primary_email: str
    password_hash: str
    display_name: str
    profile: Profile
    created_at: datetime
    updated_at: datetime


@dataclass
class EmailRecord:
    """Ownership record of one address by one account."""

    id: str
    account_id: str
    address: str
    status: EmailStatus
    verification_code: str | None = None
    code_kind: CodeKind | None = None
    code_expires_at: datetime | None = None
    code_sent_at: datetime | None = None
    failed_attempts: int = 0
    verified_at: datetime | None = None
    detached_at: datetime | None = None
    grace_expires_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def code_expired(self, now: datetime) -> bool:
        return self.code_expires_at is None or now > self.code_expires_at


@dataclass
class PendingUser:
    """A signup awaiting its first email verification."""

    id: str
    email: str
    hashed_password: str
    account_kind: AccountKind
    profile: Profile
    verification_token: str
    token_expiry: datetime
    resend_count: int = 0
    created_at: datetime | None = None


@dataclass(frozen=True)
class ChangeLogEntry:
    """Append-only audit entry for an email state transition."""

    account_id: str
    old_email: str
    new_email: str
    change_type: ChangeType
    status: ChangeStatus
    verification_token: str | None = None
    ip_address: str | None = None
    user_agent: str | None = None
    two_factor_used: bool = False
    timestamp: datetime | None = None


@dataclass(frozen=True)
class WorkerIdentity:
    """Read-only view of a worker account, used for fraud screening."""

    account_id: str
    full_name: str
    email: str
    created_at: datetime


@dataclass(frozen=True)
class RequestContext:
    """Client details recorded in the change log."""

    ip_address: str | None = None
    user_agent: str | None = None


class AccountStore(Protocol):
    """Port interface for account persistence."""

    def get(self, account_id: str, *, for_update: bool = False) -> Account | None: ...

    def create(
        self,
        kind: AccountKind,
        primary_email: str,
        password_hash: str,
        profile: Profile,
        now: datetime,
    ) -> Account: ...

    def set_primary_email(self, account_id: str, email: str, now: datetime) -> None: ...

    def recent_workers(self, since: datetime, limit: int) -> list[WorkerIdentity]:
        """Return worker identities created at or after `since`, newest first."""
        ...


class EmailRecordStore(Protocol):
    """
    Port interface for email ownership records.

    Lookups that precede a state change lock the returned row until the
    unit of work ends.
    """

    def lock_address(self, address: str) -> None:
        """Serialize all units of work touching `address` until commit."""
        ...

    def find_active(self, address: str) -> EmailRecord | None:
        """Return the PRIMARY or PENDING_VERIFICATION record for an address."""
        ...

    def find_in_grace(self, address: str, now: datetime) -> EmailRecord | None:
        """Return a DETACHED record for an address whose grace has not ended."""
        ...

    def find_by_code(self, code: str, address: str, kind: CodeKind) -> EmailRecord | None:
        """Return the PENDING_VERIFICATION record holding a `kind` code for `address` (locked)."""
        ...

    def find_for_account(self, account_id: str, address: str) -> EmailRecord | None:
        """Return the account's non-detached record for an address (locked)."""
        ...

    def find_primary(self, account_id: str) -> EmailRecord | None: ...

    def find_unconfirmed(self, account_id: str) -> EmailRecord | None:
        """Return the account's newest UNVERIFIED or PENDING_VERIFICATION record."""
        ...

    def has_verified(self, account_id: str) -> bool: ...

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
    ) -> EmailRecord: ...

    def set_code(
        self,
        record_id: str,
        status: EmailStatus,
        code: str,
        kind: CodeKind,
        expires_at: datetime,
        now: datetime,
    ) -> None:
        """Attach a fresh code, stamp its send time and reset the failed attempt counter."""
        ...

    def record_failed_attempt(self, record_id: str, now: datetime) -> int:
        """Increment and return the failed attempt counter."""
        ...

    def clear_code(self, record_id: str, now: datetime) -> None:
        """Discard the outstanding code. The send time is kept for resend pacing."""
        ...

    def promote(self, record_id: str, now: datetime) -> bool:
        """
        Mark a record PRIMARY and verified, clearing its code.

        Compare-and-set on verified_at IS NULL: returns False when the
        record was already verified by a concurrent unit of work.
        """
        ...

    def detach(self, record_id: str, now: datetime, grace_expires_at: datetime) -> None: ...

    def change_address(self, record_id: str, address: str, now: datetime) -> None: ...

    def delete_unverified(self, address: str) -> int:
        """Delete stale UNVERIFIED records for an address, across accounts."""
        ...

    def delete_expired_detached(self, now: datetime) -> int: ...

    def list_for_account(self, account_id: str) -> list[EmailRecord]: ...


class ChangeLog(Protocol):
    """Port interface for the append-only email change audit trail."""

    def append(self, entry: ChangeLogEntry) -> None: ...

    def history(self, account_id: str) -> list[ChangeLogEntry]:
        """Return the account's entries, newest first."""
        ...


class PendingSignupStore(Protocol):
    """Port interface for not-yet-materialized signups."""

    def create(self, pending: PendingUser) -> PendingUser: ...

    def find_by_email(self, email: str) -> PendingUser | None: ...

    def find_by_token(self, token: str) -> PendingUser | None: ...

    def update(self, pending_id: str, **fields: object) -> None: ...

    def delete(self, pending_id: str) -> None: ...

    def delete_expired(self, now: datetime) -> int: ...


class Transaction(Protocol):
    """Stores bound to a single atomic unit of work."""

    accounts: AccountStore
    emails: EmailRecordStore
    change_log: ChangeLog
    pending_signups: PendingSignupStore


class UnitOfWork(Protocol):
    """
    Factory of atomic units of work.

    Usage:
        with unit_of_work() as tx:
            tx.emails.insert(...)
            tx.change_log.append(...)

    Leaving the block normally commits; an exception rolls everything back.
    """

    def __call__(self) -> AbstractContextManager[Transaction]: ...


class EmailSender(Protocol):
    """Port interface for outbound mail delivery."""

    def send(self, to: str, from_address: str, subject: str, html_body: str) -> bool:
        """
        Deliver one message.

        Returns:
            True if the transport accepted the message, False otherwise
        """
        ...


class SecondFactorVerifier(Protocol):
    """Port interface for checking a second-factor code."""

    def verify(self, account_id: str, code: str) -> bool: ...
