"""
API request and response models.

Pydantic models for FastAPI endpoint validation and OpenAPI schema generation.
Every response uses the same envelope: success flag, message, optional data.
"""

from datetime import datetime
from typing import Annotated, Generic, Literal, TypeVar

from pydantic import BaseModel, EmailStr, Field

from src.domain.ports import Account, ChangeLogEntry, EmailRecord
from src.domain.profiles import OrganizationProfile, WorkerProfile

T = TypeVar("T")


class WorkerProfileIn(BaseModel):
    """Profile fields of a worker signup."""

    account_kind: Literal["worker"]
    first_name: str = Field(..., min_length=1, max_length=100)
    last_name: str = Field(..., min_length=1, max_length=100)
    phone: str | None = Field(default=None, max_length=32)

    def to_domain(self) -> WorkerProfile:
        return WorkerProfile(first_name=self.first_name, last_name=self.last_name, phone=self.phone)


class OrganizationProfileIn(BaseModel):
    """Profile fields of an organization signup."""

    account_kind: Literal["organization"]
    name: str = Field(..., min_length=1, max_length=200)
    industry: str | None = Field(default=None, max_length=100)
    size: str | None = Field(default=None, max_length=50)
    location: str | None = Field(default=None, max_length=200)
    description: str | None = Field(default=None, max_length=2000)

    def to_domain(self) -> OrganizationProfile:
        return OrganizationProfile(
            name=self.name,
            industry=self.industry,
            size=self.size,
            location=self.location,
            description=self.description,
        )


ProfileIn = Annotated[WorkerProfileIn | OrganizationProfileIn, Field(discriminator="account_kind")]


class SignupRequest(BaseModel):
    """Request model for signup (pending or with an unverified email)."""

    email: EmailStr
    password: str = Field(..., min_length=8, description="User password (min 8 characters)")
    profile: ProfileIn


class EmailRequest(BaseModel):
    """Request model carrying a single address."""

    email: EmailStr


class TokenRequest(BaseModel):
    """Request model for following a signup verification link."""

    token: str = Field(..., min_length=1, max_length=256)


class EmailTokenRequest(BaseModel):
    """Request model for following a link bound to an address."""

    token: str = Field(..., min_length=1, max_length=256)
    email: EmailStr


class EmailChangeRequest(BaseModel):
    """Request model for starting a primary email change."""

    new_email: EmailStr
    current_password: str = Field(..., min_length=1)
    two_factor_code: str | None = Field(default=None, max_length=16)


class OtpSendRequest(BaseModel):
    """
    Request model for sending a 6-digit code.

    The current password is required once the account has a verified primary.
    """

    email: EmailStr
    current_password: str | None = Field(default=None, min_length=1)
    two_factor_code: str | None = Field(default=None, max_length=16)


class OtpVerifyRequest(BaseModel):
    """Request model for confirming an address with a 6-digit code."""

    email: EmailStr
    code: str = Field(
        ...,
        min_length=6,
        max_length=6,
        pattern=r"^\d{6}$",
        description="6-digit verification code",
    )


class ApiResponse(BaseModel, Generic[T]):
    """Response envelope shared by all endpoints."""

    success: bool = True
    message: str
    data: T | None = None


class ErrorResponse(BaseModel):
    """Standard error response model."""

    success: bool = False
    message: str
    data: dict[str, object] | None = None


class PendingSignupData(BaseModel):
    email: str
    expires_at: datetime
    resend_count: int
    delivered: bool


class AccountData(BaseModel):
    id: str
    kind: str
    primary_email: str
    display_name: str

    @classmethod
    def from_domain(cls, account: Account) -> "AccountData":
        return cls(
            id=account.id,
            kind=account.kind.value,
            primary_email=account.primary_email,
            display_name=account.display_name,
        )


class EmailRecordData(BaseModel):
    id: str
    address: str
    status: str
    verified_at: datetime | None = None
    detached_at: datetime | None = None
    grace_expires_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_domain(cls, record: EmailRecord) -> "EmailRecordData":
        return cls(
            id=record.id,
            address=record.address,
            status=record.status.value,
            verified_at=record.verified_at,
            detached_at=record.detached_at,
            grace_expires_at=record.grace_expires_at,
            created_at=record.created_at,
        )


class ChangeLogData(BaseModel):
    old_email: str
    new_email: str
    change_type: str
    status: str
    two_factor_used: bool
    ip_address: str | None = None
    user_agent: str | None = None
    timestamp: datetime | None = None

    @classmethod
    def from_domain(cls, entry: ChangeLogEntry) -> "ChangeLogData":
        return cls(
            old_email=entry.old_email,
            new_email=entry.new_email,
            change_type=entry.change_type.value,
            status=entry.status.value,
            two_factor_used=entry.two_factor_used,
            ip_address=entry.ip_address,
            user_agent=entry.user_agent,
            timestamp=entry.timestamp,
        )


class AvailabilityData(BaseModel):
    email: str
    available: bool
    reason: str | None = None
    days_remaining: int | None = None


class VerificationRequirementData(BaseModel):
    requires_verification: bool
    email: str | None = None
    expires_at: datetime | None = None
    delivered: bool = False


class EmailChangeData(BaseModel):
    new_email: str
    expires_at: datetime
    delivered: bool


class OtpData(BaseModel):
    email: str
    expires_at: datetime
    delivered: bool


class VerificationStatusData(BaseModel):
    email: str
    is_verified: bool
    has_pending: bool
    can_resend: bool
    seconds_until_resend: int = 0


class CleanupData(BaseModel):
    detached_released: int
    pending_signups_removed: int
