"""
Unit tests for delayed verification of already materialized accounts.

The account is created with an unverified address; verification is only
demanded before a critical action.
"""

import pytest

from src.domain.exceptions import (
    AccountNotFound,
    EmailAlreadyVerified,
    InvalidOrExpiredToken,
    NoEmailOnFile,
    TokenExpired,
)
from src.domain.ports import ChangeType, EmailStatus
from src.domain.profiles import WorkerProfile


@pytest.fixture
def account(service, worker_profile, password):
    return service.create_account_with_unverified_email("alice@x.com", password, worker_profile)


class TestCreateAccountWithUnverifiedEmail:
    def test_record_is_unverified(self, service, account) -> None:
        [record] = service.list_account_emails(account.id)
        assert record.address == "alice@x.com"
        assert record.status is EmailStatus.UNVERIFIED
        assert record.verified_at is None

    def test_change_log_records_signup(self, service, account) -> None:
        [entry] = service.email_change_history(account.id)
        assert entry.change_type is ChangeType.SIGNUP_UNVERIFIED

    def test_unverified_address_does_not_reserve_it(self, service, account, password) -> None:
        """A stale unverified claim is dropped when someone else signs up with the address."""
        other = service.create_account_with_unverified_email(
            "alice@x.com", password, WorkerProfile("Alice", "Jones")
        )

        assert [r.address for r in service.list_account_emails(other.id)] == ["alice@x.com"]
        assert service.list_account_emails(account.id) == []
        with pytest.raises(NoEmailOnFile):
            service.require_email_verification(account.id)

    def test_verified_address_is_rejected(self, service, verified_account, worker_profile, password) -> None:
        verified_account("taken@x.com")

        with pytest.raises(EmailAlreadyVerified):
            service.create_account_with_unverified_email("taken@x.com", password, worker_profile)


class TestUpdateUnverifiedEmail:
    def test_address_is_replaced(self, service, account) -> None:
        record = service.update_unverified_email(account.id, "alice2@x.com")

        assert record.address == "alice2@x.com"
        assert [r.address for r in service.list_account_emails(account.id)] == ["alice2@x.com"]
        latest = service.email_change_history(account.id)[0]
        assert latest.change_type is ChangeType.UPDATE_UNVERIFIED
        assert latest.old_email == "alice@x.com"

    def test_same_address_is_a_no_op(self, service, account) -> None:
        service.update_unverified_email(account.id, "ALICE@x.com")
        assert len(service.email_change_history(account.id)) == 1

    def test_outstanding_link_is_invalidated(self, service, account) -> None:
        requirement = service.require_email_verification(account.id)
        service.update_unverified_email(account.id, "alice2@x.com")

        with pytest.raises(InvalidOrExpiredToken):
            service.verify_and_promote_to_primary(requirement.token, "alice@x.com")

    def test_refused_after_verification(self, service, account) -> None:
        requirement = service.require_email_verification(account.id)
        service.verify_and_promote_to_primary(requirement.token, "alice@x.com")

        with pytest.raises(EmailAlreadyVerified, match="secure change flow"):
            service.update_unverified_email(account.id, "alice2@x.com")

    def test_unknown_account(self, service) -> None:
        with pytest.raises(AccountNotFound):
            service.update_unverified_email("missing", "alice2@x.com")


class TestRequireEmailVerification:
    def test_link_is_issued(self, service, account, sender, clock) -> None:
        requirement = service.require_email_verification(account.id)

        assert requirement.requires_verification is True
        assert requirement.email == "alice@x.com"
        assert requirement.expires_at == clock.now + service.policy.change_token_ttl
        [mail] = sender.to("alice@x.com")
        assert mail.subject == "Verify Your Email Address - Signedwork"
        assert requirement.token in mail.html_body
        [record] = service.list_account_emails(account.id)
        assert record.status is EmailStatus.PENDING_VERIFICATION

    def test_verified_account_needs_nothing(self, service, verified_account, sender) -> None:
        account = verified_account("v@x.com")
        sender.outbox.clear()

        requirement = service.require_email_verification(account.id)

        assert requirement.requires_verification is False
        assert sender.outbox == []

    def test_unknown_account(self, service) -> None:
        with pytest.raises(AccountNotFound):
            service.require_email_verification("missing")

    def test_can_be_requested_again(self, service, account) -> None:
        first = service.require_email_verification(account.id)
        second = service.require_email_verification(account.id)

        with pytest.raises(InvalidOrExpiredToken):
            service.verify_and_promote_to_primary(first.token, "alice@x.com")
        service.verify_and_promote_to_primary(second.token, "alice@x.com")


class TestVerifyAndPromoteToPrimary:
    def test_address_becomes_primary(self, service, account, clock) -> None:
        requirement = service.require_email_verification(account.id)

        updated = service.verify_and_promote_to_primary(requirement.token, "alice@x.com")

        assert updated.primary_email == "alice@x.com"
        [record] = service.list_account_emails(account.id)
        assert record.status is EmailStatus.PRIMARY
        assert record.verified_at == clock.now
        assert record.verification_code is None
        latest = service.email_change_history(account.id)[0]
        assert latest.change_type is ChangeType.VERIFICATION_COMPLETED

    def test_token_is_single_use(self, service, account) -> None:
        requirement = service.require_email_verification(account.id)
        service.verify_and_promote_to_primary(requirement.token, "alice@x.com")

        with pytest.raises(InvalidOrExpiredToken):
            service.verify_and_promote_to_primary(requirement.token, "alice@x.com")

    def test_expired_token(self, service, account, clock) -> None:
        requirement = service.require_email_verification(account.id)
        clock.advance(hours=24, seconds=1)

        with pytest.raises(TokenExpired):
            service.verify_and_promote_to_primary(requirement.token, "alice@x.com")

    def test_unknown_token(self, service, account) -> None:
        service.require_email_verification(account.id)
        with pytest.raises(InvalidOrExpiredToken):
            service.verify_and_promote_to_primary("forged", "alice@x.com")


class TestAvailabilityAndReadModels:
    def test_free_address(self, service) -> None:
        availability = service.check_email_availability("free@x.com")
        assert availability.available
        assert availability.reason is None

    def test_primary_address(self, service, verified_account) -> None:
        verified_account("v@x.com")
        availability = service.check_email_availability("V@X.com")
        assert not availability.available
        assert availability.reason == "Email is currently in use"
        assert availability.blocking_status is EmailStatus.PRIMARY

    def test_unverified_address_is_available(self, service, account) -> None:
        assert service.check_email_availability("alice@x.com").available

    def test_list_emails_unknown_account(self, service) -> None:
        with pytest.raises(AccountNotFound):
            service.list_account_emails("missing")

    def test_history_unknown_account(self, service) -> None:
        with pytest.raises(AccountNotFound):
            service.email_change_history("missing")
