"""
Exception handlers - Map domain errors to HTTP responses.

Domain services raise VerificationError subclasses; routes do not catch
them. The handlers here turn them into the standard response envelope
with a status code chosen by error type.
"""

import logging

import psycopg
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from src.domain.exceptions import (
    AccountNotFound,
    EmailAlreadyVerified,
    EmailUnavailable,
    InvalidCredentials,
    InvalidEmailAddress,
    InvalidOrExpiredToken,
    InvalidProfile,
    MailDeliveryFailed,
    NoEmailOnFile,
    ResendCooldown,
    SuspectedDualRegistration,
    TokenExpired,
    TooManyAttempts,
    VerificationAlreadyPending,
    VerificationError,
)

logger = logging.getLogger(__name__)

# Checked in order; subclasses must precede their bases.
_STATUS_BY_ERROR: tuple[tuple[type[VerificationError], int], ...] = (
    (TokenExpired, status.HTTP_410_GONE),
    (InvalidOrExpiredToken, status.HTTP_400_BAD_REQUEST),
    (EmailUnavailable, status.HTTP_409_CONFLICT),
    (EmailAlreadyVerified, status.HTTP_409_CONFLICT),
    (VerificationAlreadyPending, status.HTTP_429_TOO_MANY_REQUESTS),
    (TooManyAttempts, status.HTTP_429_TOO_MANY_REQUESTS),
    (AccountNotFound, status.HTTP_404_NOT_FOUND),
    (NoEmailOnFile, status.HTTP_404_NOT_FOUND),
    (InvalidCredentials, status.HTTP_401_UNAUTHORIZED),
    (InvalidEmailAddress, status.HTTP_422_UNPROCESSABLE_CONTENT),
    (InvalidProfile, status.HTTP_422_UNPROCESSABLE_CONTENT),
    (MailDeliveryFailed, status.HTTP_502_BAD_GATEWAY),
    (SuspectedDualRegistration, status.HTTP_403_FORBIDDEN),
)


def status_for(error: VerificationError) -> int:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(error, error_type):
            return status_code
    return status.HTTP_400_BAD_REQUEST


def _envelope(message: str, data: dict[str, object] | None = None) -> dict[str, object]:
    return {"success": False, "message": message, "data": data}


async def verification_error_handler(request: Request, exc: VerificationError) -> JSONResponse:
    status_code = status_for(exc)
    headers: dict[str, str] = {}
    data: dict[str, object] | None = None

    if isinstance(exc, ResendCooldown):
        headers["Retry-After"] = str(exc.retry_after_seconds)
        data = {"retry_after_seconds": exc.retry_after_seconds}
    elif isinstance(exc, VerificationAlreadyPending):
        headers["Retry-After"] = str(exc.retry_after_seconds)
        data = {"retry_after_minutes": exc.retry_after_minutes}
    elif isinstance(exc, EmailUnavailable) and exc.in_grace_period:
        data = {"days_remaining": exc.days_remaining}

    logger.info(
        "%s %s -> %d %s", request.method, request.url.path, status_code, type(exc).__name__
    )
    return JSONResponse(status_code=status_code, content=_envelope(str(exc), data), headers=headers)


async def database_error_handler(request: Request, exc: psycopg.Error) -> JSONResponse:
    logger.error("Database error on %s %s", request.method, request.url.path, exc_info=exc)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_envelope("Internal server error"),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(VerificationError, verification_error_handler)
    app.add_exception_handler(psycopg.Error, database_error_handler)
