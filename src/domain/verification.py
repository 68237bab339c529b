"""
Verification domain service - Email lifecycle state machine.

This module contains the core business logic for proving and changing
email ownership.

Email Lifecycle (Forward-Only Transitions)
==========================================

States:
- unverified: captured at onboarding, no proof of ownership, freely editable
- pending_verification: a token or OTP was issued and not yet consumed
- primary: ownership proven, the account's login address
- detached: a former primary, reserved during the grace period

Valid Transitions:
    unverified           -> pending_verification  (token or OTP issued)
    pending_verification -> primary               (token or OTP consumed)
    primary              -> detached              (only while promoting another record)
    detached             -> deleted               (cleanup after grace expiry)

A signup follows a separate path: the account does not exist until its
link is followed, so the first record is created directly as primary.

Each outstanding code remembers the flow that issued it (delayed
verification link, change link, or 6-digit OTP) and is accepted only by
that flow.

Every compound change happens inside one unit of work. Availability of an
address is checked inside the same unit of work that claims it, after the
address lock is taken. Mail is only sent once the state is committed.
"""

import logging
import math
import secrets
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import bcrypt
from email_validator import EmailNotValidError, validate_email

from .exceptions import (
    AccountNotFound,
    EmailAlreadyVerified,
    EmailUnavailable,
    InvalidCredentials,
    InvalidEmailAddress,
    InvalidOrExpiredToken,
    InvalidProfile,
    MailDeliveryFailed,
    NoEmailOnFile,
    PendingSignupNotFound,
    ResendCooldown,
    SuspectedDualRegistration,
    TokenExpired,
    TooManyAttempts,
    VerificationAlreadyPending,
)
from .fraud import FraudAssessment, FraudDetector
from .mailer import VerificationMailer
from .ports import (
    Account,
    ChangeLogEntry,
    ChangeStatus,
    ChangeType,
    CodeKind,
    EmailRecord,
    EmailStatus,
    PendingUser,
    RequestContext,
    SecondFactorVerifier,
    Transaction,
    UnitOfWork,
)
from .profiles import OrganizationProfile, Profile, validate_profile
from .tokens import issue_otp, issue_token

logger = logging.getLogger(__name__)

_NO_CONTEXT = RequestContext()


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _minutes(delta: timedelta) -> int:
    return max(1, math.ceil(delta.total_seconds() / 60))


def _hours(delta: timedelta) -> int:
    return max(1, math.ceil(delta.total_seconds() / 3600))


@dataclass(frozen=True)
class VerificationPolicy:
    """Expiry windows and limits of the verification flows."""

    signup_token_ttl: timedelta = timedelta(minutes=15)
    otp_ttl: timedelta = timedelta(minutes=10)
    change_token_ttl: timedelta = timedelta(hours=24)
    grace_period: timedelta = timedelta(days=30)
    max_resend_count: int = 3
    max_otp_attempts: int = 5
    otp_resend_cooldown: timedelta = timedelta(minutes=1)
    bcrypt_cost: int = 10
    # False keeps the flow going when mail is not delivered; the caller
    # still sees delivered=False in the result.
    mail_failures_fatal: bool = False
    fraud_block_suspicious: bool = False
    fraud_scan_window: timedelta = timedelta(days=7)
    fraud_scan_limit: int = 200


@dataclass(frozen=True)
class Availability:
    available: bool
    reason: str | None = None
    days_remaining: int | None = None
    blocking_status: EmailStatus | None = None


@dataclass(frozen=True)
class SignupInitiated:
    email: str
    expires_at: datetime
    resend_count: int
    delivered: bool
    fraud: FraudAssessment | None = None
    token: str = field(default="", repr=False)


@dataclass(frozen=True)
class VerificationRequirement:
    requires_verification: bool
    email: str | None = None
    expires_at: datetime | None = None
    delivered: bool = False
    token: str = field(default="", repr=False)


@dataclass(frozen=True)
class EmailChangeRequested:
    account_id: str
    new_email: str
    expires_at: datetime
    delivered: bool
    token: str = field(default="", repr=False)


@dataclass(frozen=True)
class OtpIssued:
    email: str
    expires_at: datetime
    delivered: bool
    code: str = field(default="", repr=False)


@dataclass(frozen=True)
class VerificationStatus:
    is_verified: bool
    has_pending: bool
    can_resend: bool
    seconds_until_resend: int = 0


@dataclass
class VerificationService:
    """
    Domain service for email verification and change control.

    Orchestrates pending signups, token and OTP verification, secure
    email changes, and grace-period cleanup over the store ports.
    """

    unit_of_work: UnitOfWork
    mailer: VerificationMailer
    policy: VerificationPolicy = field(default_factory=VerificationPolicy)
    fraud_detector: FraudDetector = field(default_factory=FraudDetector)
    second_factor: SecondFactorVerifier | None = None
    clock: Callable[[], datetime] = _utcnow

    # ------------------------------------------------------------------
    # Signup before the account exists
    # ------------------------------------------------------------------

    def initiate_signup(
        self,
        email: str,
        password: str,
        profile: Profile,
        context: RequestContext = _NO_CONTEXT,
    ) -> SignupInitiated:
        """
        Store a pending signup and send its verification link.

        Args:
            email: Address to verify (will be normalized)
            password: Plaintext password (will be hashed)
            profile: Worker or organization profile to materialize later

        Returns:
            SignupInitiated describing the issued link

        Raises:
            EmailAlreadyVerified: Address belongs to a verified account
            EmailUnavailable: Address is pending elsewhere or in its grace period
            TooManyAttempts: Resend limit reached for this address
            VerificationAlreadyPending: A still-valid link was already sent
            SuspectedDualRegistration: Fraud screening blocked the signup
        """
        address = self._normalize_email(email)
        self._validate_profile(profile)
        password_hash = self._hash_password(password)
        now = self.clock()
        issued = issue_token(self.policy.signup_token_ttl, now)
        assessment = None

        with self.unit_of_work() as tx:
            tx.emails.lock_address(address)
            self._raise_for_signup(self._availability(tx, address, now))

            if isinstance(profile, OrganizationProfile):
                assessment = self._screen_organization(tx, address, profile, now)

            pending = tx.pending_signups.find_by_email(address)
            if pending is not None:
                if pending.resend_count >= self.policy.max_resend_count:
                    raise TooManyAttempts(
                        "Too many verification attempts. Please try again in 24 hours."
                    )
                if now < pending.token_expiry:
                    raise VerificationAlreadyPending(_minutes(pending.token_expiry - now))
                resend_count = pending.resend_count + 1
                tx.pending_signups.update(
                    pending.id,
                    hashed_password=password_hash,
                    account_kind=profile.kind,
                    profile=profile,
                    verification_token=issued.value,
                    token_expiry=issued.expires_at,
                    resend_count=resend_count,
                )
            else:
                resend_count = 0
                tx.pending_signups.create(
                    PendingUser(
                        id=str(uuid.uuid4()),
                        email=address,
                        hashed_password=password_hash,
                        account_kind=profile.kind,
                        profile=profile,
                        verification_token=issued.value,
                        token_expiry=issued.expires_at,
                        resend_count=0,
                        created_at=now,
                    )
                )

        logger.info("Signup initiated for %s (resend_count=%d)", address, resend_count)
        delivered = self.mailer.send_signup_verification(
            address, issued.value, _minutes(self.policy.signup_token_ttl)
        )
        self._check_delivery(delivered, address)
        return SignupInitiated(
            email=address,
            expires_at=issued.expires_at,
            resend_count=resend_count,
            delivered=delivered,
            fraud=assessment,
            token=issued.value,
        )

    def resend_signup_verification(self, email: str) -> SignupInitiated:
        """
        Issue a fresh link for a pending signup, regardless of the old link's expiry.

        Raises:
            PendingSignupNotFound: No pending signup for this address
            TooManyAttempts: Resend limit reached
        """
        address = self._normalize_email(email)
        now = self.clock()
        issued = issue_token(self.policy.signup_token_ttl, now)

        with self.unit_of_work() as tx:
            pending = tx.pending_signups.find_by_email(address)
            if pending is None:
                raise PendingSignupNotFound("No pending signup found for this email.")
            if pending.resend_count >= self.policy.max_resend_count:
                raise TooManyAttempts("Too many verification attempts. Please try again in 24 hours.")
            resend_count = pending.resend_count + 1
            tx.pending_signups.update(
                pending.id,
                verification_token=issued.value,
                token_expiry=issued.expires_at,
                resend_count=resend_count,
            )

        delivered = self.mailer.send_signup_verification(
            address, issued.value, _minutes(self.policy.signup_token_ttl)
        )
        self._check_delivery(delivered, address)
        return SignupInitiated(
            email=address,
            expires_at=issued.expires_at,
            resend_count=resend_count,
            delivered=delivered,
            token=issued.value,
        )

    def complete_signup_verification(
        self, token: str, context: RequestContext = _NO_CONTEXT
    ) -> Account:
        """
        Materialize the account of a pending signup whose link was followed.

        Raises:
            InvalidOrExpiredToken: No pending signup holds this token
            TokenExpired: The token matched but has expired
            EmailAlreadyVerified, EmailUnavailable: The address was claimed meanwhile
        """
        now = self.clock()
        with self.unit_of_work() as tx:
            pending = tx.pending_signups.find_by_token(token)
            if pending is None:
                raise InvalidOrExpiredToken(
                    "Invalid verification link. Please request a new verification email."
                )
            if now > pending.token_expiry:
                raise TokenExpired()

            tx.emails.lock_address(pending.email)
            self._raise_for_signup(self._availability(tx, pending.email, now))

            account = tx.accounts.create(
                pending.account_kind, pending.email, pending.hashed_password, pending.profile, now
            )
            tx.emails.insert(account.id, pending.email, EmailStatus.PRIMARY, now, verified_at=now)
            tx.change_log.append(
                ChangeLogEntry(
                    account_id=account.id,
                    old_email="",
                    new_email=pending.email,
                    change_type=ChangeType.SIGNUP_VERIFIED,
                    status=ChangeStatus.VERIFIED,
                    verification_token=token,
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                    timestamp=now,
                )
            )
            tx.pending_signups.delete(pending.id)

        logger.info("Account %s created for %s", account.id, account.primary_email)
        return account

    # ------------------------------------------------------------------
    # Delayed verification of already materialized accounts
    # ------------------------------------------------------------------

    def create_account_with_unverified_email(
        self,
        email: str,
        password: str,
        profile: Profile,
        context: RequestContext = _NO_CONTEXT,
    ) -> Account:
        """
        Create an account whose email is captured but not yet proven.

        Verification is deferred until require_email_verification is called
        before a critical action.
        """
        address = self._normalize_email(email)
        self._validate_profile(profile)
        password_hash = self._hash_password(password)
        now = self.clock()

        with self.unit_of_work() as tx:
            tx.emails.lock_address(address)
            self._raise_for_signup(self._availability(tx, address, now))
            account = tx.accounts.create(profile.kind, address, password_hash, profile, now)
            tx.emails.delete_unverified(address)
            tx.emails.insert(account.id, address, EmailStatus.UNVERIFIED, now)
            tx.change_log.append(
                ChangeLogEntry(
                    account_id=account.id,
                    old_email="",
                    new_email=address,
                    change_type=ChangeType.SIGNUP_UNVERIFIED,
                    status=ChangeStatus.PENDING,
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                    timestamp=now,
                )
            )
        return account

    def update_unverified_email(
        self, account_id: str, new_email: str, context: RequestContext = _NO_CONTEXT
    ) -> EmailRecord:
        """
        Replace an account's unverified address.

        Only allowed until the account has verified any address; after that
        the secure change flow must be used.
        """
        address = self._normalize_email(new_email)
        now = self.clock()

        with self.unit_of_work() as tx:
            account = self._get_account(tx, account_id, for_update=True)
            if tx.emails.has_verified(account_id):
                raise EmailAlreadyVerified(
                    "Cannot freely edit email - you have a verified email. "
                    "Use the secure change flow instead."
                )
            record = tx.emails.find_unconfirmed(account_id)
            if record is None:
                raise NoEmailOnFile("No email found for this account")
            if record.address == address:
                return record

            tx.emails.lock_address(address)
            self._raise_for_signup(self._availability(tx, address, now))
            tx.emails.delete_unverified(address)
            tx.emails.change_address(record.id, address, now)
            if record.status is EmailStatus.PENDING_VERIFICATION:
                # The outstanding code was sent to the old address.
                tx.emails.clear_code(record.id, now)
            tx.accounts.set_primary_email(account_id, address, now)
            tx.change_log.append(
                ChangeLogEntry(
                    account_id=account_id,
                    old_email=record.address,
                    new_email=address,
                    change_type=ChangeType.UPDATE_UNVERIFIED,
                    status=ChangeStatus.PENDING,
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                    timestamp=now,
                )
            )
            updated = tx.emails.find_for_account(account.id, address)
        return updated or record

    def require_email_verification(self, account_id: str) -> VerificationRequirement:
        """
        Gate a critical action on a verified email.

        No-op when the account already has a primary address; otherwise a
        verification link is issued for its unverified address.

        Raises:
            AccountNotFound: Unknown account
            NoEmailOnFile: The account has no address to verify
            EmailUnavailable: Another account claimed the address meanwhile
        """
        now = self.clock()
        issued = issue_token(self.policy.change_token_ttl, now)

        with self.unit_of_work() as tx:
            self._get_account(tx, account_id, for_update=True)
            if tx.emails.find_primary(account_id) is not None:
                return VerificationRequirement(requires_verification=False)

            record = tx.emails.find_unconfirmed(account_id)
            if record is None:
                raise NoEmailOnFile("No email found for this account")

            tx.emails.lock_address(record.address)
            availability = self._availability(tx, record.address, now, account_id=account_id)
            if not availability.available:
                raise EmailUnavailable(availability.reason or "Email is unavailable", availability.days_remaining)

            tx.emails.set_code(
                record.id,
                EmailStatus.PENDING_VERIFICATION,
                issued.value,
                CodeKind.LINK,
                issued.expires_at,
                now,
            )
            tx.change_log.append(
                ChangeLogEntry(
                    account_id=account_id,
                    old_email=record.address,
                    new_email=record.address,
                    change_type=ChangeType.VERIFICATION_REQUIRED,
                    status=ChangeStatus.PENDING,
                    verification_token=issued.value,
                    timestamp=now,
                )
            )

        delivered = self.mailer.send_delayed_verification(
            record.address, issued.value, _hours(self.policy.change_token_ttl)
        )
        self._check_delivery(delivered, record.address)
        return VerificationRequirement(
            requires_verification=True,
            email=record.address,
            expires_at=issued.expires_at,
            delivered=delivered,
            token=issued.value,
        )

    def verify_and_promote_to_primary(
        self, token: str, email: str, context: RequestContext = _NO_CONTEXT
    ) -> Account:
        """
        Consume a verification link and make its address primary.

        Only links issued by require_email_verification are accepted;
        change links and 6-digit codes are refused.

        Raises:
            InvalidOrExpiredToken: No outstanding verification matches, or
                the token was already used
            TokenExpired: The token matched but has expired
        """
        return self._consume_token(token, email, CodeKind.LINK, ChangeType.VERIFICATION_COMPLETED, context)

    # ------------------------------------------------------------------
    # Secure change of a verified address
    # ------------------------------------------------------------------

    def request_email_change(
        self,
        account_id: str,
        new_email: str,
        current_password: str,
        two_factor_code: str | None = None,
        context: RequestContext = _NO_CONTEXT,
    ) -> EmailChangeRequested:
        """
        Start replacing an account's primary address.

        The new address is recorded as pending_verification next to the
        current primary; nothing else changes until the link is followed.

        Raises:
            AccountNotFound: Unknown account
            InvalidCredentials: Wrong password or second factor
            EmailUnavailable: Address in use or in its grace period
        """
        address = self._normalize_email(new_email)

        with self.unit_of_work() as tx:
            account = self._get_account(tx, account_id)
        self._require_password(current_password, account.password_hash)
        two_factor_used = self._check_second_factor(account_id, two_factor_code)

        now = self.clock()
        issued = issue_token(self.policy.change_token_ttl, now)
        with self.unit_of_work() as tx:
            account = self._get_account(tx, account_id, for_update=True)
            tx.emails.lock_address(address)
            availability = self._availability(tx, address, now)
            if not availability.available:
                raise EmailUnavailable(availability.reason or "Email is unavailable", availability.days_remaining)

            tx.emails.insert(
                account_id,
                address,
                EmailStatus.PENDING_VERIFICATION,
                now,
                code=issued.value,
                code_kind=CodeKind.CHANGE,
                code_expires_at=issued.expires_at,
            )
            tx.change_log.append(
                ChangeLogEntry(
                    account_id=account_id,
                    old_email=account.primary_email,
                    new_email=address,
                    change_type=ChangeType.VERIFICATION_REQUESTED,
                    status=ChangeStatus.PENDING,
                    verification_token=issued.value,
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                    two_factor_used=two_factor_used,
                    timestamp=now,
                )
            )

        logger.info("Email change requested for account %s", account_id)
        grace_days = self.policy.grace_period.days
        delivered = self.mailer.send_email_change_verification(
            address, issued.value, _hours(self.policy.change_token_ttl), grace_days
        )
        if account.primary_email:
            self.mailer.send_email_change_notice(account.primary_email, address, grace_days)
        self._check_delivery(delivered, address)
        return EmailChangeRequested(
            account_id=account_id,
            new_email=address,
            expires_at=issued.expires_at,
            delivered=delivered,
            token=issued.value,
        )

    def complete_email_change(
        self, token: str, email: str, context: RequestContext = _NO_CONTEXT
    ) -> Account:
        """
        Consume an email change link: detach the old primary, promote the new one.

        Only links issued by request_email_change are accepted.

        Raises:
            InvalidOrExpiredToken: No pending change matches, or it was already used
            TokenExpired: The token matched but has expired
        """
        return self._consume_token(token, email, CodeKind.CHANGE, ChangeType.PRIMARY_CHANGE, context)

    # ------------------------------------------------------------------
    # OTP variant for authenticated users
    # ------------------------------------------------------------------

    def send_email_otp(
        self,
        account_id: str,
        email: str,
        current_password: str | None = None,
        two_factor_code: str | None = None,
        context: RequestContext = _NO_CONTEXT,
    ) -> OtpIssued:
        """
        Issue a 6-digit code for confirming an address on an existing account.

        Confirming the code makes the address primary. Once the account has
        a verified primary, the current password is required, as for
        request_email_change, and the current primary is told about the
        pending change. Codes for one address are paced by the resend
        cooldown.

        Raises:
            AccountNotFound: Unknown account
            InvalidCredentials: Password missing or wrong while a primary exists,
                or wrong second factor
            EmailAlreadyVerified: Address already verified (here or elsewhere)
            EmailUnavailable: Address pending elsewhere or in its grace period
            ResendCooldown: A code for this address was sent too recently
        """
        address = self._normalize_email(email)

        with self.unit_of_work() as tx:
            account = self._get_account(tx, account_id)
            has_primary = tx.emails.find_primary(account_id) is not None
        credentials_checked = False
        two_factor_used = False
        if has_primary:
            self._require_password(current_password, account.password_hash)
            two_factor_used = self._check_second_factor(account_id, two_factor_code)
            credentials_checked = True

        now = self.clock()
        issued = issue_otp(self.policy.otp_ttl, now)
        with self.unit_of_work() as tx:
            account = self._get_account(tx, account_id, for_update=True)
            previous = tx.emails.find_primary(account_id)
            if previous is not None and not credentials_checked:
                # A primary was verified since the first read.
                raise InvalidCredentials("Current password is required to change a verified email")

            tx.emails.lock_address(address)
            own = tx.emails.find_for_account(account_id, address)
            if own is not None and own.status is EmailStatus.PRIMARY:
                raise EmailAlreadyVerified("This email is already verified on your account")

            availability = self._availability(tx, address, now, account_id=account_id)
            if not availability.available:
                if availability.blocking_status is EmailStatus.PRIMARY:
                    raise EmailAlreadyVerified("This email is already verified by another account")
                raise EmailUnavailable(availability.reason or "Email is unavailable", availability.days_remaining)

            if own is not None:
                wait = self._resend_wait(own, now)
                if wait:
                    raise ResendCooldown(wait)
                tx.emails.set_code(
                    own.id,
                    EmailStatus.PENDING_VERIFICATION,
                    issued.value,
                    CodeKind.OTP,
                    issued.expires_at,
                    now,
                )
            else:
                tx.emails.insert(
                    account_id,
                    address,
                    EmailStatus.PENDING_VERIFICATION,
                    now,
                    code=issued.value,
                    code_kind=CodeKind.OTP,
                    code_expires_at=issued.expires_at,
                )
            tx.change_log.append(
                ChangeLogEntry(
                    account_id=account_id,
                    old_email=account.primary_email,
                    new_email=address,
                    change_type=ChangeType.OTP_VERIFICATION_SENT,
                    status=ChangeStatus.PENDING,
                    ip_address=context.ip_address,
                    user_agent=context.user_agent,
                    two_factor_used=two_factor_used,
                    timestamp=now,
                )
            )

        delivered = self.mailer.send_otp(address, issued.value, _minutes(self.policy.otp_ttl))
        if previous is not None:
            self.mailer.send_email_change_notice(
                previous.address, address, self.policy.grace_period.days
            )
        self._check_delivery(delivered, address)
        return OtpIssued(email=address, expires_at=issued.expires_at, delivered=delivered, code=issued.value)

    def verify_email_otp(
        self,
        account_id: str,
        email: str,
        code: str,
        context: RequestContext = _NO_CONTEXT,
    ) -> Account:
        """
        Check a 6-digit code and promote its address to primary.

        Wrong codes count against the record; at the configured maximum the
        code is discarded and a new one must be requested.

        Raises:
            InvalidOrExpiredToken: No outstanding code, or the code is wrong
            TokenExpired: The code has expired
            TooManyAttempts: Too many wrong codes for this issuance
        """
        address = self._normalize_email(email)
        now = self.clock()
        failure: Exception | None = None

        with self.unit_of_work() as tx:
            record = tx.emails.find_for_account(account_id, address)
            if (
                record is None
                or record.status is not EmailStatus.PENDING_VERIFICATION
                or record.verification_code is None
                or record.code_kind is not CodeKind.OTP
            ):
                raise InvalidOrExpiredToken()
            if record.code_expired(now):
                raise TokenExpired("Verification code has expired. Please request a new one.")

            if secrets.compare_digest(record.verification_code.encode(), code.encode()):
                account = self._promote(
                    tx, record, now, ChangeType.OTP_VERIFICATION_COMPLETED, None, context
                )
            else:
                # Counter changes must be committed, so the error is raised
                # after the unit of work ends.
                attempts = tx.emails.record_failed_attempt(record.id, now)
                if attempts >= self.policy.max_otp_attempts:
                    tx.emails.clear_code(record.id, now)
                    failure = TooManyAttempts(
                        "Too many incorrect codes. Please request a new verification code."
                    )
                else:
                    failure = InvalidOrExpiredToken()

        if failure is not None:
            logger.info("Rejected OTP for account %s (%s)", account_id, type(failure).__name__)
            raise failure
        logger.info("Email %s verified by OTP for account %s", address, account_id)
        return account

    def email_verification_status(self, account_id: str, email: str) -> VerificationStatus:
        """Report whether an address is verified on the account and when a new code may be sent."""
        address = self._normalize_email(email)
        now = self.clock()
        with self.unit_of_work() as tx:
            self._get_account(tx, account_id)
            record = tx.emails.find_for_account(account_id, address)
        if record is None:
            return VerificationStatus(is_verified=False, has_pending=False, can_resend=True)

        wait = self._resend_wait(record, now)
        return VerificationStatus(
            is_verified=record.verified_at is not None,
            has_pending=record.status is EmailStatus.PENDING_VERIFICATION
            and record.verification_code is not None
            and not record.code_expired(now),
            can_resend=wait == 0,
            seconds_until_resend=wait,
        )

    # ------------------------------------------------------------------
    # Maintenance and read models
    # ------------------------------------------------------------------

    def cleanup_expired_grace_periods(self) -> int:
        """Delete detached records whose grace period has ended. Idempotent."""
        with self.unit_of_work() as tx:
            deleted = tx.emails.delete_expired_detached(self.clock())
        if deleted:
            logger.info("Released %d detached email(s) after grace expiry", deleted)
        return deleted

    def cleanup_expired_pending_signups(self) -> int:
        """Delete pending signups whose link has expired. Idempotent."""
        with self.unit_of_work() as tx:
            deleted = tx.pending_signups.delete_expired(self.clock())
        if deleted:
            logger.info("Removed %d expired pending signup(s)", deleted)
        return deleted

    def check_email_availability(self, email: str) -> Availability:
        address = self._normalize_email(email)
        with self.unit_of_work() as tx:
            return self._availability(tx, address, self.clock())

    def list_account_emails(self, account_id: str) -> list[EmailRecord]:
        with self.unit_of_work() as tx:
            self._get_account(tx, account_id)
            return tx.emails.list_for_account(account_id)

    def email_change_history(self, account_id: str) -> list[ChangeLogEntry]:
        with self.unit_of_work() as tx:
            self._get_account(tx, account_id)
            return tx.change_log.history(account_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _consume_token(
        self,
        token: str,
        email: str,
        kind: CodeKind,
        change_type: ChangeType,
        context: RequestContext,
    ) -> Account:
        address = self._normalize_email(email)
        now = self.clock()
        with self.unit_of_work() as tx:
            record = tx.emails.find_by_code(token, address, kind)
            if record is None:
                raise InvalidOrExpiredToken("Invalid or expired verification link")
            if record.code_expired(now):
                raise TokenExpired()
            account = self._promote(tx, record, now, change_type, token, context)
        logger.info("Email %s is now primary for account %s (%s)", address, account.id, change_type.value)
        return account

    def _promote(
        self,
        tx: Transaction,
        record: EmailRecord,
        now: datetime,
        change_type: ChangeType,
        token: str | None,
        context: RequestContext,
    ) -> Account:
        """Detach the current primary (if any) and promote `record`, atomically."""
        account = self._get_account(tx, record.account_id, for_update=True)
        previous = tx.emails.find_primary(account.id)
        if previous is not None and previous.id != record.id:
            tx.emails.detach(previous.id, now, now + self.policy.grace_period)
        if not tx.emails.promote(record.id, now):
            raise InvalidOrExpiredToken("Invalid or expired verification link")
        tx.accounts.set_primary_email(account.id, record.address, now)
        tx.change_log.append(
            ChangeLogEntry(
                account_id=account.id,
                old_email=previous.address if previous is not None else account.primary_email,
                new_email=record.address,
                change_type=change_type,
                status=ChangeStatus.VERIFIED,
                verification_token=token,
                ip_address=context.ip_address,
                user_agent=context.user_agent,
                timestamp=now,
            )
        )
        account.primary_email = record.address
        account.updated_at = now
        return account

    def _availability(
        self, tx: Transaction, address: str, now: datetime, *, account_id: str | None = None
    ) -> Availability:
        """
        Decide whether `address` can be claimed.

        A pending record of `account_id` itself does not block, so an
        account can re-issue a code for its own address.
        """
        active = tx.emails.find_active(address)
        if active is not None and not (
            account_id is not None
            and active.account_id == account_id
            and active.status is EmailStatus.PENDING_VERIFICATION
        ):
            return Availability(False, "Email is currently in use", blocking_status=active.status)

        detached = tx.emails.find_in_grace(address, now)
        if detached is not None and detached.grace_expires_at is not None:
            days = max(1, math.ceil((detached.grace_expires_at - now) / timedelta(days=1)))
            return Availability(
                False,
                f"Email is in {days}-day grace period after being detached",
                days_remaining=days,
                blocking_status=EmailStatus.DETACHED,
            )
        return Availability(True)

    def _raise_for_signup(self, availability: Availability) -> None:
        if availability.available:
            return
        if availability.blocking_status is EmailStatus.PRIMARY:
            raise EmailAlreadyVerified("Email already registered. Please use a different email or login.")
        raise EmailUnavailable(availability.reason or "Email is unavailable", availability.days_remaining)

    def _screen_organization(
        self, tx: Transaction, address: str, profile: OrganizationProfile, now: datetime
    ) -> FraudAssessment:
        workers = tx.accounts.recent_workers(
            now - self.policy.fraud_scan_window, self.policy.fraud_scan_limit
        )
        assessment = self.fraud_detector.assess(address, profile.name, workers, now=now)
        if assessment.suspicious:
            logger.warning(
                "Suspicious organization signup %s (%s): %s",
                address,
                profile.name,
                "; ".join(assessment.reasons),
            )
            if self.policy.fraud_block_suspicious:
                raise SuspectedDualRegistration(assessment.reasons)
        return assessment

    def _resend_wait(self, record: EmailRecord, now: datetime) -> int:
        """Seconds until another code may be sent for `record`; 0 when one may be sent now."""
        if record.code_sent_at is None:
            return 0
        remaining = record.code_sent_at + self.policy.otp_resend_cooldown - now
        return max(0, math.ceil(remaining.total_seconds()))

    def _require_password(self, password: str | None, password_hash: str) -> None:
        if not password:
            raise InvalidCredentials("Current password is required to change a verified email")
        if not self._check_password(password, password_hash):
            raise InvalidCredentials("Current password is incorrect")

    def _check_second_factor(self, account_id: str, code: str | None) -> bool:
        if not code:
            return False
        if self.second_factor is None:
            logger.warning("Second factor supplied for %s but no verifier is configured", account_id)
            return False
        if not self.second_factor.verify(account_id, code):
            raise InvalidCredentials("Two-factor code is incorrect")
        return True

    def _check_delivery(self, delivered: bool, address: str) -> None:
        if not delivered and self.policy.mail_failures_fatal:
            raise MailDeliveryFailed(
                f"Could not deliver the verification email to {address}. Please request a new one."
            )

    def _get_account(self, tx: Transaction, account_id: str, *, for_update: bool = False) -> Account:
        account = tx.accounts.get(account_id, for_update=for_update)
        if account is None:
            raise AccountNotFound("Account not found")
        return account

    def _validate_profile(self, profile: Profile) -> None:
        try:
            validate_profile(profile)
        except ValueError as e:
            raise InvalidProfile(str(e)) from None

    def _normalize_email(self, email: str) -> str:
        """
        Normalize and validate an email address.

        Applies: strip whitespace + lowercase, then a syntax check (no DNS).
        """
        normalized = email.strip().lower()
        try:
            validate_email(normalized, check_deliverability=False)
        except EmailNotValidError as e:
            raise InvalidEmailAddress(str(e)) from None
        return normalized

    def _hash_password(self, password: str) -> str:
        return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=self.policy.bcrypt_cost)).decode()

    def _check_password(self, password: str, password_hash: str) -> bool:
        try:
            return bcrypt.checkpw(password.encode(), password_hash.encode())
        except ValueError:
            logger.error("Stored password hash is not a valid bcrypt hash")
            return False
