"""
Account profiles - Tagged union keyed by account kind.

A pending signup carries the profile it will be materialized with. The
profile is validated when the signup is initiated, stored as JSON, and
rebuilt into the matching dataclass when read back.
"""

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any


class AccountKind(str, Enum):
    """Kind of account an email belongs to."""

    WORKER = "worker"
    ORGANIZATION = "organization"


@dataclass(frozen=True)
class WorkerProfile:
    """Profile of an individual worker."""

    first_name: str
    last_name: str
    phone: str | None = None

    kind = AccountKind.WORKER

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class OrganizationProfile:
    """Profile of an organization (company) account."""

    name: str
    industry: str | None = None
    size: str | None = None
    location: str | None = None
    description: str | None = None

    kind = AccountKind.ORGANIZATION

    @property
    def display_name(self) -> str:
        return self.name.strip()

    def to_payload(self) -> dict[str, Any]:
        return asdict(self)


Profile = WorkerProfile | OrganizationProfile


def profile_from_payload(kind: AccountKind | str, payload: dict[str, Any]) -> Profile:
    """
    Rebuild a profile from its stored JSON form.

    Raises:
        ValueError: If the kind is unknown or required fields are missing
    """
    kind = AccountKind(kind)
    try:
        if kind is AccountKind.WORKER:
            return WorkerProfile(
                first_name=payload["first_name"],
                last_name=payload["last_name"],
                phone=payload.get("phone"),
            )
        return OrganizationProfile(
            name=payload["name"],
            industry=payload.get("industry"),
            size=payload.get("size"),
            location=payload.get("location"),
            description=payload.get("description"),
        )
    except KeyError as e:
        raise ValueError(f"{kind.value} profile is missing field {e.args[0]!r}") from e


def validate_profile(profile: Profile) -> None:
    """
    Reject profiles with blank identifying fields.

    Raises:
        ValueError: If a required field is empty
    """
    if isinstance(profile, WorkerProfile):
        if not profile.first_name.strip() or not profile.last_name.strip():
            raise ValueError("Worker profile requires a first and last name")
    elif isinstance(profile, OrganizationProfile):
        if not profile.name.strip():
            raise ValueError("Organization profile requires a name")
    else:
        raise ValueError(f"Unsupported profile type: {type(profile).__name__}")
