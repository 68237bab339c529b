"""
Shared fixtures for adversarial tests.

Provides common test infrastructure for race condition and brute force tests
against the verification service over PostgreSQL.
"""

import threading
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor

import pytest

from src.domain.ports import Account
from src.domain.profiles import WorkerProfile
from src.domain.verification import VerificationService

# Module-level marker for all adversarial tests
pytestmark = pytest.mark.adversarial


def run_concurrently(attempt: Callable[[int], object], attackers: int) -> list[object]:
    """
    Start `attackers` calls of attempt(i) at the same moment.

    Returns each call's result, or the exception it raised.
    """
    barrier = threading.Barrier(attackers)

    def run(i: int) -> object:
        barrier.wait()
        try:
            return attempt(i)
        except Exception as e:
            return e

    with ThreadPoolExecutor(max_workers=attackers) as executor:
        return list(executor.map(run, range(attackers)))


@pytest.fixture
def pg_account(pg_service: VerificationService, password: str) -> Callable[..., Account]:
    """Factory: a verified worker account stored in PostgreSQL."""

    def create(email: str, first_name: str = "Alice") -> Account:
        result = pg_service.initiate_signup(email, password, WorkerProfile(first_name, "Smith"))
        return pg_service.complete_signup_verification(result.token)

    return create


@pytest.fixture
def concurrently() -> Callable[[Callable[[int], object], int], list[object]]:
    return run_concurrently
