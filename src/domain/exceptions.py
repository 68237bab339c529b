"""
Domain exceptions - Semantic error types for email verification.

Every failure here is recoverable by the caller (retry, request a new
code, pick a different address). Messages are written for end users.
"""

import math


class VerificationError(Exception):
    """Base class for email verification domain errors."""

    pass


class InvalidEmailAddress(VerificationError):
    """Address is not a syntactically valid email."""

    pass


class InvalidProfile(VerificationError):
    """Signup profile is missing identifying fields."""

    pass


class InvalidOrExpiredToken(VerificationError):
    """Token or code does not match any outstanding verification."""

    def __init__(self, message: str = "Invalid or expired verification code") -> None:
        super().__init__(message)


class TokenExpired(InvalidOrExpiredToken):
    """Token matched, but its expiry has passed. A new one can be requested."""

    def __init__(self, message: str = "Verification link has expired. Please request a new one.") -> None:
        super().__init__(message)


class EmailUnavailable(VerificationError):
    """Address is in use, or reserved during a detached grace period."""

    def __init__(self, reason: str, days_remaining: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.days_remaining = days_remaining

    @property
    def in_grace_period(self) -> bool:
        return self.days_remaining is not None


class EmailAlreadyVerified(VerificationError):
    """Address already belongs to a verified account."""

    pass


class TooManyAttempts(VerificationError):
    """Resend or code-entry limit reached."""

    pass


class VerificationAlreadyPending(VerificationError):
    """A still-valid verification was already sent for this address."""

    def __init__(self, retry_after_minutes: int) -> None:
        super().__init__(
            "Verification email already sent. Please check your email or wait "
            f"{retry_after_minutes} minutes before requesting a new one."
        )
        self.retry_after_seconds = retry_after_minutes * 60
        self.retry_after_minutes = retry_after_minutes


class ResendCooldown(VerificationAlreadyPending):
    """A code was sent moments ago; another may be requested once the cooldown passes."""

    def __init__(self, retry_after_seconds: int) -> None:
        VerificationError.__init__(
            self, f"Please wait {retry_after_seconds} seconds before requesting a new code."
        )
        self.retry_after_seconds = retry_after_seconds
        self.retry_after_minutes = max(1, math.ceil(retry_after_seconds / 60))


class AccountNotFound(VerificationError):
    """No account with the given identifier."""

    pass


class PendingSignupNotFound(AccountNotFound):
    """No pending signup for the given address."""

    pass


class NoEmailOnFile(VerificationError):
    """Account has no email record that could be verified."""

    pass


class InvalidCredentials(VerificationError):
    """Current password or second factor did not match."""

    pass


class MailDeliveryFailed(VerificationError):
    """Mail transport refused the message (only raised when configured fatal)."""

    pass


class SuspectedDualRegistration(VerificationError):
    """Organization signup looks like a self-issued duplicate of a worker identity."""

    def __init__(self, reasons: list[str]) -> None:
        super().__init__("Registration requires manual review")
        self.reasons = reasons
