"""
Token and OTP generation.

Verification links carry opaque URL-safe tokens; the numeric flow uses
6-digit one-time codes. Both come from the secrets module so they are
unpredictable to an attacker.
"""

import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta

OTP_LOWER_BOUND = 100000
OTP_UPPER_BOUND = 999999


@dataclass(frozen=True)
class IssuedCode:
    """A token or OTP together with the instant it stops being accepted."""

    value: str
    expires_at: datetime


def new_token() -> str:
    """Return an opaque verification token (256 bits, URL-safe)."""
    return secrets.token_urlsafe(32)


def new_otp() -> str:
    """
    Return a 6-digit numeric code, uniform over 100000-999999.

    Returned as a string so callers compare it the same way as tokens.
    """
    return str(OTP_LOWER_BOUND + secrets.randbelow(OTP_UPPER_BOUND - OTP_LOWER_BOUND + 1))


def issue_token(ttl: timedelta, now: datetime) -> IssuedCode:
    return IssuedCode(value=new_token(), expires_at=now + ttl)


def issue_otp(ttl: timedelta, now: datetime) -> IssuedCode:
    return IssuedCode(value=new_otp(), expires_at=now + ttl)
