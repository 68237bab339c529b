"""
API v1 routes.

Defines REST endpoints for email verification and change control.
Domain errors propagate to the handlers in src.api.errors.
"""

from fastapi import APIRouter, Depends, Query, status

from src.api.dependencies import get_request_context, get_verification_service
from src.api.models import (
    AccountData,
    ApiResponse,
    AvailabilityData,
    ChangeLogData,
    CleanupData,
    EmailChangeData,
    EmailChangeRequest,
    EmailRecordData,
    EmailRequest,
    EmailTokenRequest,
    ErrorResponse,
    OtpData,
    OtpSendRequest,
    OtpVerifyRequest,
    PendingSignupData,
    SignupRequest,
    TokenRequest,
    VerificationRequirementData,
    VerificationStatusData,
)
from src.domain.ports import RequestContext
from src.domain.verification import VerificationService

router = APIRouter(tags=["v1"])

_TOKEN_ERRORS = {
    400: {"model": ErrorResponse, "description": "Invalid or already used token"},
    410: {"model": ErrorResponse, "description": "Token expired"},
}


@router.post(
    "/signup",
    response_model=ApiResponse[PendingSignupData],
    status_code=status.HTTP_201_CREATED,
    responses={
        403: {"model": ErrorResponse, "description": "Signup held for manual review"},
        409: {"model": ErrorResponse, "description": "Email registered or reserved"},
        429: {"model": ErrorResponse, "description": "Verification already pending or resend limit reached"},
        502: {"model": ErrorResponse, "description": "Verification email could not be delivered"},
    },
    summary="Start a signup",
    description="Store a pending signup and email a verification link. "
    "The account is created only when the link is followed.",
)
def signup(
    request_data: SignupRequest,
    service: VerificationService = Depends(get_verification_service),
    context: RequestContext = Depends(get_request_context),
) -> ApiResponse[PendingSignupData]:
    result = service.initiate_signup(
        request_data.email, request_data.password, request_data.profile.to_domain(), context
    )
    return ApiResponse(
        message="Verification email sent. Please check your inbox.",
        data=PendingSignupData(
            email=result.email,
            expires_at=result.expires_at,
            resend_count=result.resend_count,
            delivered=result.delivered,
        ),
    )


@router.post(
    "/signup/resend",
    response_model=ApiResponse[PendingSignupData],
    responses={
        404: {"model": ErrorResponse, "description": "No pending signup"},
        429: {"model": ErrorResponse, "description": "Resend limit reached"},
    },
    summary="Resend the signup verification link",
)
def resend_signup(
    request_data: EmailRequest,
    service: VerificationService = Depends(get_verification_service),
) -> ApiResponse[PendingSignupData]:
    result = service.resend_signup_verification(request_data.email)
    return ApiResponse(
        message="Verification email resent.",
        data=PendingSignupData(
            email=result.email,
            expires_at=result.expires_at,
            resend_count=result.resend_count,
            delivered=result.delivered,
        ),
    )


@router.post(
    "/signup/verify",
    response_model=ApiResponse[AccountData],
    status_code=status.HTTP_201_CREATED,
    responses={**_TOKEN_ERRORS, 409: {"model": ErrorResponse, "description": "Email claimed meanwhile"}},
    summary="Complete a signup by following its link",
)
def verify_signup(
    request_data: TokenRequest,
    service: VerificationService = Depends(get_verification_service),
    context: RequestContext = Depends(get_request_context),
) -> ApiResponse[AccountData]:
    account = service.complete_signup_verification(request_data.token, context)
    return ApiResponse(
        message="Email verified successfully. Your account is ready.",
        data=AccountData.from_domain(account),
    )


@router.post(
    "/accounts",
    response_model=ApiResponse[AccountData],
    status_code=status.HTTP_201_CREATED,
    responses={409: {"model": ErrorResponse, "description": "Email registered or reserved"}},
    summary="Create an account with an unverified email",
    description="Verification is deferred until a critical action requires it.",
)
def create_account(
    request_data: SignupRequest,
    service: VerificationService = Depends(get_verification_service),
    context: RequestContext = Depends(get_request_context),
) -> ApiResponse[AccountData]:
    account = service.create_account_with_unverified_email(
        request_data.email, request_data.password, request_data.profile.to_domain(), context
    )
    return ApiResponse(message="Account created", data=AccountData.from_domain(account))


@router.put(
    "/accounts/{account_id}/email",
    response_model=ApiResponse[EmailRecordData],
    responses={
        404: {"model": ErrorResponse, "description": "Unknown account or no email on file"},
        409: {"model": ErrorResponse, "description": "Email verified already, or in use"},
    },
    summary="Edit an email that has not been verified yet",
)
def update_unverified_email(
    account_id: str,
    request_data: EmailRequest,
    service: VerificationService = Depends(get_verification_service),
    context: RequestContext = Depends(get_request_context),
) -> ApiResponse[EmailRecordData]:
    record = service.update_unverified_email(account_id, request_data.email, context)
    return ApiResponse(message="Email updated", data=EmailRecordData.from_domain(record))


@router.post(
    "/accounts/{account_id}/email/require-verification",
    response_model=ApiResponse[VerificationRequirementData],
    responses={404: {"model": ErrorResponse, "description": "Unknown account or no email on file"}},
    summary="Require a verified email before a critical action",
)
def require_verification(
    account_id: str,
    service: VerificationService = Depends(get_verification_service),
) -> ApiResponse[VerificationRequirementData]:
    result = service.require_email_verification(account_id)
    message = "Verification email sent" if result.requires_verification else "Email already verified"
    return ApiResponse(
        message=message,
        data=VerificationRequirementData(
            requires_verification=result.requires_verification,
            email=result.email,
            expires_at=result.expires_at,
            delivered=result.delivered,
        ),
    )


@router.post(
    "/email/verify",
    response_model=ApiResponse[AccountData],
    responses=_TOKEN_ERRORS,
    summary="Verify an email and make it primary",
)
def verify_email(
    request_data: EmailTokenRequest,
    service: VerificationService = Depends(get_verification_service),
    context: RequestContext = Depends(get_request_context),
) -> ApiResponse[AccountData]:
    account = service.verify_and_promote_to_primary(request_data.token, request_data.email, context)
    return ApiResponse(message="Email verified successfully", data=AccountData.from_domain(account))


@router.post(
    "/accounts/{account_id}/email/change",
    response_model=ApiResponse[EmailChangeData],
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        401: {"model": ErrorResponse, "description": "Wrong password or second factor"},
        404: {"model": ErrorResponse, "description": "Unknown account"},
        409: {"model": ErrorResponse, "description": "Email in use or in its grace period"},
    },
    summary="Request a change of the primary email",
    description="Requires the current password. The new address must be verified "
    "through the emailed link; the current address is notified.",
)
def request_email_change(
    account_id: str,
    request_data: EmailChangeRequest,
    service: VerificationService = Depends(get_verification_service),
    context: RequestContext = Depends(get_request_context),
) -> ApiResponse[EmailChangeData]:
    result = service.request_email_change(
        account_id,
        request_data.new_email,
        request_data.current_password,
        request_data.two_factor_code,
        context,
    )
    return ApiResponse(
        message="Verification email sent to new address. Check your inbox.",
        data=EmailChangeData(
            new_email=result.new_email, expires_at=result.expires_at, delivered=result.delivered
        ),
    )


@router.post(
    "/email/change/complete",
    response_model=ApiResponse[AccountData],
    responses=_TOKEN_ERRORS,
    summary="Complete a primary email change",
)
def complete_email_change(
    request_data: EmailTokenRequest,
    service: VerificationService = Depends(get_verification_service),
    context: RequestContext = Depends(get_request_context),
) -> ApiResponse[AccountData]:
    account = service.complete_email_change(request_data.token, request_data.email, context)
    return ApiResponse(message="Email changed successfully", data=AccountData.from_domain(account))


@router.post(
    "/accounts/{account_id}/email/otp",
    response_model=ApiResponse[OtpData],
    responses={
        401: {"model": ErrorResponse, "description": "Password missing or wrong while a primary exists"},
        404: {"model": ErrorResponse, "description": "Unknown account"},
        409: {"model": ErrorResponse, "description": "Email verified already, or unavailable"},
        429: {"model": ErrorResponse, "description": "A code was sent too recently"},
    },
    summary="Send a 6-digit verification code",
    description="Confirming the code makes the address primary. Once the account has a "
    "verified primary, the current password is required and the current address is notified.",
)
def send_otp(
    account_id: str,
    request_data: OtpSendRequest,
    service: VerificationService = Depends(get_verification_service),
    context: RequestContext = Depends(get_request_context),
) -> ApiResponse[OtpData]:
    result = service.send_email_otp(
        account_id,
        request_data.email,
        request_data.current_password,
        request_data.two_factor_code,
        context,
    )
    return ApiResponse(
        message="Verification code sent",
        data=OtpData(email=result.email, expires_at=result.expires_at, delivered=result.delivered),
    )


@router.post(
    "/accounts/{account_id}/email/otp/verify",
    response_model=ApiResponse[AccountData],
    responses={**_TOKEN_ERRORS, 429: {"model": ErrorResponse, "description": "Too many wrong codes"}},
    summary="Confirm an email with its 6-digit code",
)
def verify_otp(
    account_id: str,
    request_data: OtpVerifyRequest,
    service: VerificationService = Depends(get_verification_service),
    context: RequestContext = Depends(get_request_context),
) -> ApiResponse[AccountData]:
    account = service.verify_email_otp(account_id, request_data.email, request_data.code, context)
    return ApiResponse(message="Email verified successfully", data=AccountData.from_domain(account))


@router.get(
    "/accounts/{account_id}/email/otp/status",
    response_model=ApiResponse[VerificationStatusData],
    responses={404: {"model": ErrorResponse, "description": "Unknown account"}},
    summary="Verification state of an address and when a new code may be sent",
)
def otp_status(
    account_id: str,
    email: str = Query(..., min_length=3, max_length=320),
    service: VerificationService = Depends(get_verification_service),
) -> ApiResponse[VerificationStatusData]:
    result = service.email_verification_status(account_id, email)
    return ApiResponse(
        message="Email verified" if result.is_verified else "Email not verified",
        data=VerificationStatusData(
            email=email.strip().lower(),
            is_verified=result.is_verified,
            has_pending=result.has_pending,
            can_resend=result.can_resend,
            seconds_until_resend=result.seconds_until_resend,
        ),
    )


@router.get(
    "/email/availability",
    response_model=ApiResponse[AvailabilityData],
    summary="Check whether an email can be claimed",
)
def email_availability(
    email: str = Query(..., min_length=3, max_length=320),
    service: VerificationService = Depends(get_verification_service),
) -> ApiResponse[AvailabilityData]:
    result = service.check_email_availability(email)
    return ApiResponse(
        message="Email is available" if result.available else (result.reason or "Email is unavailable"),
        data=AvailabilityData(
            email=email.strip().lower(),
            available=result.available,
            reason=result.reason,
            days_remaining=result.days_remaining,
        ),
    )


@router.get(
    "/accounts/{account_id}/emails",
    response_model=ApiResponse[list[EmailRecordData]],
    responses={404: {"model": ErrorResponse, "description": "Unknown account"}},
    summary="List an account's email records",
)
def list_emails(
    account_id: str,
    service: VerificationService = Depends(get_verification_service),
) -> ApiResponse[list[EmailRecordData]]:
    records = service.list_account_emails(account_id)
    return ApiResponse(
        message=f"{len(records)} email record(s)",
        data=[EmailRecordData.from_domain(r) for r in records],
    )


@router.get(
    "/accounts/{account_id}/email/history",
    response_model=ApiResponse[list[ChangeLogData]],
    responses={404: {"model": ErrorResponse, "description": "Unknown account"}},
    summary="Email change audit trail, newest first",
)
def email_history(
    account_id: str,
    service: VerificationService = Depends(get_verification_service),
) -> ApiResponse[list[ChangeLogData]]:
    entries = service.email_change_history(account_id)
    return ApiResponse(
        message=f"{len(entries)} change(s)",
        data=[ChangeLogData.from_domain(e) for e in entries],
    )


@router.post(
    "/maintenance/cleanup",
    response_model=ApiResponse[CleanupData],
    summary="Release expired grace periods and pending signups",
)
def cleanup(
    service: VerificationService = Depends(get_verification_service),
) -> ApiResponse[CleanupData]:
    released = service.cleanup_expired_grace_periods()
    removed = service.cleanup_expired_pending_signups()
    return ApiResponse(
        message="Cleanup complete",
        data=CleanupData(detached_released=released, pending_signups_removed=removed),
    )
