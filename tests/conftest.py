"""
Shared test fixtures and configuration.

This module provides pytest fixtures for:
- A controllable clock and a recording mail transport
- The verification service over the in-memory unit of work
- A PostgreSQL connection pool (skipped when the database is unreachable)
  and the same service over it
"""

from collections.abc import Generator
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta

import psycopg
import pytest
from psycopg_pool import ConnectionPool

from src.adapters.repository.memory import InMemoryUnitOfWork
from src.adapters.repository.postgres import PostgresUnitOfWork, run_migrations
from src.config.settings import get_settings
from src.domain.fraud import FraudDetector
from src.domain.mailer import VerificationMailer
from src.domain.profiles import OrganizationProfile, WorkerProfile
from src.domain.verification import VerificationPolicy, VerificationService

START = datetime(2025, 3, 1, 9, 0, tzinfo=UTC)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@dataclass
class SentMail:
    to: str
    from_address: str
    subject: str
    html_body: str


@dataclass
class RecordingSender:
    """EmailSender that keeps every message; `accept` controls the result."""

    accept: bool = True
    outbox: list[SentMail] = field(default_factory=list)

    def send(self, to: str, from_address: str, subject: str, html_body: str) -> bool:
        self.outbox.append(SentMail(to, from_address, subject, html_body))
        return self.accept

    def to(self, address: str) -> list[SentMail]:
        return [m for m in self.outbox if m.to == address]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sender() -> RecordingSender:
    return RecordingSender()


@pytest.fixture
def mailer(sender: RecordingSender) -> VerificationMailer:
    return VerificationMailer(
        sender=sender,
        base_url="https://app.example.com",
        mail_from="noreply@example.com",
        security_mail_from="security@example.com",
        app_name="Signedwork",
    )


@pytest.fixture
def policy() -> VerificationPolicy:
    # Lowest bcrypt cost keeps the suite fast.
    return VerificationPolicy(bcrypt_cost=4)


@pytest.fixture
def unit_of_work() -> InMemoryUnitOfWork:
    return InMemoryUnitOfWork()


@pytest.fixture
def service(
    unit_of_work: InMemoryUnitOfWork,
    mailer: VerificationMailer,
    policy: VerificationPolicy,
    clock: FakeClock,
) -> VerificationService:
    return VerificationService(
        unit_of_work=unit_of_work,
        mailer=mailer,
        policy=policy,
        fraud_detector=FraudDetector(clock=clock),
        clock=clock,
    )


@pytest.fixture
def worker_profile() -> WorkerProfile:
    return WorkerProfile(first_name="Alice", last_name="Smith")


@pytest.fixture
def org_profile() -> OrganizationProfile:
    return OrganizationProfile(name="Northwind Traders", industry="Retail")


@pytest.fixture(scope="session")
def pg_pool() -> Generator[ConnectionPool, None, None]:
    """Connection pool against DATABASE_URL with migrations applied."""
    settings = get_settings()
    try:
        with psycopg.connect(settings.database_url, connect_timeout=2):
            pass
    except psycopg.OperationalError:
        pytest.skip("PostgreSQL is not reachable")

    pool = ConnectionPool(conninfo=settings.database_url, min_size=1, max_size=10, open=True)
    run_migrations(pool)
    yield pool
    pool.close()


@pytest.fixture
def clean_pg(pg_pool: ConnectionPool) -> ConnectionPool:
    """The session pool, with every table emptied."""
    with pg_pool.connection() as conn:
        conn.execute(
            "TRUNCATE email_change_logs, email_records, pending_users, accounts RESTART IDENTITY CASCADE"
        )
    return pg_pool


@pytest.fixture
def password() -> str:
    return "correct-horse-battery"


@pytest.fixture
def verified_account(service: VerificationService, password: str):
    """Factory: run a signup through its link and return the new account."""

    def create(email: str = "alice@example.com", profile=None):
        profile = profile or WorkerProfile(first_name="Alice", last_name="Smith")
        result = service.initiate_signup(email, password, profile)
        return service.complete_signup_verification(result.token)

    return create


@pytest.fixture
def pg_unit_of_work(clean_pg: ConnectionPool) -> PostgresUnitOfWork:
    return PostgresUnitOfWork(clean_pg)


@pytest.fixture
def pg_service(
    pg_unit_of_work: PostgresUnitOfWork,
    mailer: VerificationMailer,
    policy: VerificationPolicy,
    clock: FakeClock,
) -> VerificationService:
    """The verification service over PostgreSQL, with the fake clock and mail transport."""
    return VerificationService(
        unit_of_work=pg_unit_of_work,
        mailer=mailer,
        policy=policy,
        fraud_detector=FraudDetector(clock=clock),
        clock=clock,
    )
