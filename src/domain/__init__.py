"""
Domain layer - Pure business logic with zero framework imports.

This package contains the email verification state machine, the fraud
heuristics that screen organization signups, and the port interfaces the
logic needs from infrastructure (stores, mail transport).
"""

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
    VerificationError,
)
from .fraud import FraudAssessment, FraudDetector
from .mailer import VerificationMailer
from .ports import CodeKind, EmailSender, EmailStatus, RequestContext, UnitOfWork
from .profiles import AccountKind, OrganizationProfile, WorkerProfile
from .verification import VerificationPolicy, VerificationService

__all__ = [
    "AccountKind",
    "AccountNotFound",
    "CodeKind",
    "EmailAlreadyVerified",
    "EmailSender",
    "EmailStatus",
    "EmailUnavailable",
    "FraudAssessment",
    "FraudDetector",
    "InvalidCredentials",
    "InvalidEmailAddress",
    "InvalidOrExpiredToken",
    "InvalidProfile",
    "MailDeliveryFailed",
    "NoEmailOnFile",
    "OrganizationProfile",
    "PendingSignupNotFound",
    "RequestContext",
    "ResendCooldown",
    "SuspectedDualRegistration",
    "TokenExpired",
    "TooManyAttempts",
    "UnitOfWork",
    "VerificationAlreadyPending",
    "VerificationError",
    "VerificationMailer",
    "VerificationPolicy",
    "VerificationService",
    "WorkerProfile",
]
