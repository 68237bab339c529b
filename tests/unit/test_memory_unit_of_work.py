"""
Unit tests for the in-memory unit of work.

The in-memory stores stand in for PostgreSQL in the service tests, so they
must honor the same atomicity and uniqueness guarantees.
"""

from datetime import UTC, datetime, timedelta

import pytest

from src.adapters.repository.memory import InMemoryUnitOfWork
from src.domain.exceptions import EmailUnavailable
from src.domain.ports import ChangeLogEntry, ChangeStatus, ChangeType, CodeKind, EmailStatus
from src.domain.profiles import AccountKind, OrganizationProfile, WorkerProfile

NOW = datetime(2025, 3, 1, tzinfo=UTC)


@pytest.fixture
def uow() -> InMemoryUnitOfWork:
    return InMemoryUnitOfWork()


def create_account(uow: InMemoryUnitOfWork, email: str = "a@x.com") -> str:
    with uow() as tx:
        account = tx.accounts.create(AccountKind.WORKER, email, "hash", WorkerProfile("A", "B"), NOW)
    return account.id


class TestAtomicity:
    def test_commit_on_clean_exit(self, uow: InMemoryUnitOfWork) -> None:
        account_id = create_account(uow)
        with uow() as tx:
            assert tx.accounts.get(account_id) is not None

    def test_rollback_on_exception(self, uow: InMemoryUnitOfWork) -> None:
        account_id = create_account(uow)

        with pytest.raises(RuntimeError), uow() as tx:
            tx.emails.insert(account_id, "a@x.com", EmailStatus.PRIMARY, NOW, verified_at=NOW)
            tx.change_log.append(
                ChangeLogEntry(
                    account_id=account_id,
                    old_email="",
                    new_email="a@x.com",
                    change_type=ChangeType.SIGNUP_VERIFIED,
                    status=ChangeStatus.VERIFIED,
                )
            )
            raise RuntimeError("boom")

        with uow() as tx:
            assert tx.emails.list_for_account(account_id) == []
            assert tx.change_log.history(account_id) == []

    def test_returned_records_are_detached_copies(self, uow: InMemoryUnitOfWork) -> None:
        account_id = create_account(uow)
        with uow() as tx:
            account = tx.accounts.get(account_id)
        account.primary_email = "mutated@x.com"

        with uow() as tx:
            assert tx.accounts.get(account_id).primary_email == "a@x.com"


class TestUniqueness:
    def test_second_active_claim_on_address_rejected(self, uow: InMemoryUnitOfWork) -> None:
        first = create_account(uow, "a@x.com")
        second = create_account(uow, "b@x.com")
        with uow() as tx:
            tx.emails.insert(first, "c@x.com", EmailStatus.PENDING_VERIFICATION, NOW)

        with pytest.raises(EmailUnavailable), uow() as tx:
            tx.emails.insert(second, "c@x.com", EmailStatus.PENDING_VERIFICATION, NOW)

    def test_detached_rows_coexist_with_active(self, uow: InMemoryUnitOfWork) -> None:
        first = create_account(uow)
        second = create_account(uow, "b@x.com")
        with uow() as tx:
            record = tx.emails.insert(first, "c@x.com", EmailStatus.PRIMARY, NOW, verified_at=NOW)
            tx.emails.detach(record.id, NOW, NOW + timedelta(days=30))
            tx.emails.insert(second, "c@x.com", EmailStatus.UNVERIFIED, NOW)

        with uow() as tx:
            assert tx.emails.find_in_grace("c@x.com", NOW) is not None
            assert tx.emails.find_active("c@x.com") is None

    def test_one_primary_per_account(self, uow: InMemoryUnitOfWork) -> None:
        account_id = create_account(uow)
        with uow() as tx:
            tx.emails.insert(account_id, "a@x.com", EmailStatus.PRIMARY, NOW, verified_at=NOW)
            pending = tx.emails.insert(account_id, "b@x.com", EmailStatus.PENDING_VERIFICATION, NOW)

        with pytest.raises(EmailUnavailable), uow() as tx:
            tx.emails.promote(pending.id, NOW)


class TestCompareAndSet:
    def test_promote_only_once(self, uow: InMemoryUnitOfWork) -> None:
        account_id = create_account(uow)
        with uow() as tx:
            record = tx.emails.insert(account_id, "a@x.com", EmailStatus.PENDING_VERIFICATION, NOW)
            assert tx.emails.promote(record.id, NOW) is True
            assert tx.emails.promote(record.id, NOW) is False


class TestCodes:
    def test_code_found_only_by_issuing_flow(self, uow: InMemoryUnitOfWork) -> None:
        account_id = create_account(uow)
        with uow() as tx:
            record = tx.emails.insert(
                account_id,
                "b@x.com",
                EmailStatus.PENDING_VERIFICATION,
                NOW,
                code="123456",
                code_kind=CodeKind.OTP,
            )

        with uow() as tx:
            assert tx.emails.find_by_code("123456", "b@x.com", CodeKind.LINK) is None
            assert tx.emails.find_by_code("123456", "b@x.com", CodeKind.OTP).id == record.id

    def test_new_code_restamps_send_time_and_clear_keeps_it(self, uow: InMemoryUnitOfWork) -> None:
        account_id = create_account(uow)
        later = NOW + timedelta(minutes=2)
        with uow() as tx:
            record = tx.emails.insert(account_id, "b@x.com", EmailStatus.UNVERIFIED, NOW)
            assert record.code_sent_at is None
            tx.emails.set_code(
                record.id, EmailStatus.PENDING_VERIFICATION, "tok", CodeKind.LINK, later, later
            )
            tx.emails.clear_code(record.id, later)
            cleared = tx.emails.find_for_account(account_id, "b@x.com")

        assert cleared.code_sent_at == later
        assert (cleared.verification_code, cleared.code_kind) == (None, None)


class TestPendingSignups:
    def test_update_rejects_unknown_fields(self, uow: InMemoryUnitOfWork) -> None:
        with pytest.raises(ValueError), uow() as tx:
            tx.pending_signups.update("p1", email="other@x.com")


class TestRecentWorkers:
    def test_newest_first_and_limited(self, uow: InMemoryUnitOfWork) -> None:
        with uow() as tx:
            for i in range(3):
                tx.accounts.create(
                    AccountKind.WORKER,
                    f"w{i}@x.com",
                    "hash",
                    WorkerProfile(f"W{i}", "Worker"),
                    NOW + timedelta(hours=i),
                )
            tx.accounts.create(
                AccountKind.ORGANIZATION,
                "org@x.com",
                "hash",
                OrganizationProfile("Not Counted"),
                NOW + timedelta(hours=5),
            )

        with uow() as tx:
            workers = tx.accounts.recent_workers(NOW, limit=2)

        assert [w.email for w in workers] == ["w2@x.com", "w1@x.com"]
