"""
Unit tests for the secure primary email change flow.

Covers the grace period that reserves a detached address, token single
use and expiry, and the credential checks that guard the request.
"""

from datetime import timedelta
from unittest.mock import Mock

import pytest

from src.domain.exceptions import (
    AccountNotFound,
    EmailUnavailable,
    InvalidCredentials,
    InvalidOrExpiredToken,
    TokenExpired,
)
from src.domain.ports import ChangeType, EmailStatus
from src.domain.profiles import WorkerProfile


def statuses(service, account_id: str) -> dict[str, EmailStatus]:
    return {r.address: r.status for r in service.list_account_emails(account_id)}


@pytest.fixture
def account(verified_account):
    return verified_account("a@x.com")


class TestRequestEmailChange:
    """Tests for request_email_change."""

    def test_new_address_is_pending_next_to_primary(self, service, account, password, clock) -> None:
        result = service.request_email_change(account.id, "b@x.com", password)

        assert result.new_email == "b@x.com"
        assert result.expires_at == clock.now + timedelta(hours=24)
        assert statuses(service, account.id) == {
            "a@x.com": EmailStatus.PRIMARY,
            "b@x.com": EmailStatus.PENDING_VERIFICATION,
        }

    def test_verification_and_security_notice_are_mailed(self, service, account, password, sender) -> None:
        result = service.request_email_change(account.id, "b@x.com", password)

        [verification] = sender.to("b@x.com")
        assert verification.subject == "Verify Your New Email Address - Signedwork"
        assert result.token in verification.html_body
        assert "30 days" in verification.html_body

        notices = [m for m in sender.to("a@x.com") if "Security Alert" in m.subject]
        assert len(notices) == 1
        assert notices[0].from_address == "security@example.com"
        assert "b@x.com" in notices[0].html_body

    def test_change_log_records_request(self, service, account, password) -> None:
        service.request_email_change(account.id, "b@x.com", password)

        latest = service.email_change_history(account.id)[0]
        assert latest.change_type is ChangeType.VERIFICATION_REQUESTED
        assert latest.old_email == "a@x.com"
        assert latest.new_email == "b@x.com"
        assert latest.two_factor_used is False

    def test_wrong_password(self, service, account, sender) -> None:
        sender.outbox.clear()

        with pytest.raises(InvalidCredentials):
            service.request_email_change(account.id, "b@x.com", "wrong-password")

        assert "b@x.com" not in statuses(service, account.id)
        assert sender.outbox == []

    def test_wrong_password_takes_precedence_over_unavailable(self, service, account, verified_account) -> None:
        verified_account("b@x.com", WorkerProfile("Bob", "Jones"))

        with pytest.raises(InvalidCredentials):
            service.request_email_change(account.id, "b@x.com", "wrong-password")

    def test_address_in_use_by_another_account(self, service, account, verified_account, password) -> None:
        verified_account("b@x.com", WorkerProfile("Bob", "Jones"))

        with pytest.raises(EmailUnavailable, match="in use"):
            service.request_email_change(account.id, "b@x.com", password)

    def test_address_pending_for_another_account(self, service, account, verified_account, password) -> None:
        bob = verified_account("bob@x.com", WorkerProfile("Bob", "Jones"))
        service.request_email_change(bob.id, "b@x.com", password)

        with pytest.raises(EmailUnavailable):
            service.request_email_change(account.id, "b@x.com", password)

    def test_unknown_account(self, service, password) -> None:
        with pytest.raises(AccountNotFound):
            service.request_email_change("missing", "b@x.com", password)

    def test_second_factor_is_checked(self, service, account, password) -> None:
        verifier = Mock()
        verifier.verify.return_value = True
        service.second_factor = verifier

        service.request_email_change(account.id, "b@x.com", password, two_factor_code="123456")

        verifier.verify.assert_called_once_with(account.id, "123456")
        assert service.email_change_history(account.id)[0].two_factor_used is True

    def test_wrong_second_factor(self, service, account, password) -> None:
        verifier = Mock()
        verifier.verify.return_value = False
        service.second_factor = verifier

        with pytest.raises(InvalidCredentials):
            service.request_email_change(account.id, "b@x.com", password, two_factor_code="000000")

    def test_second_factor_without_verifier_is_ignored(self, service, account, password) -> None:
        service.request_email_change(account.id, "b@x.com", password, two_factor_code="123456")
        assert service.email_change_history(account.id)[0].two_factor_used is False


class TestCompleteEmailChange:
    """Tests for complete_email_change."""

    def test_old_primary_detached_new_promoted(self, service, account, password, clock) -> None:
        result = service.request_email_change(account.id, "b@x.com", password)

        updated = service.complete_email_change(result.token, "b@x.com")

        assert updated.primary_email == "b@x.com"
        records = {r.address: r for r in service.list_account_emails(account.id)}
        assert records["b@x.com"].status is EmailStatus.PRIMARY
        assert records["a@x.com"].status is EmailStatus.DETACHED
        assert records["a@x.com"].detached_at == clock.now
        assert records["a@x.com"].grace_expires_at == clock.now + timedelta(days=30)

    def test_exactly_one_primary_after_change(self, service, account, password) -> None:
        result = service.request_email_change(account.id, "b@x.com", password)
        service.complete_email_change(result.token, "b@x.com")

        primaries = [
            r for r in service.list_account_emails(account.id) if r.status is EmailStatus.PRIMARY
        ]
        assert [r.address for r in primaries] == ["b@x.com"]

    def test_change_log_records_primary_change(self, service, account, password) -> None:
        result = service.request_email_change(account.id, "b@x.com", password)
        service.complete_email_change(result.token, "b@x.com")

        latest = service.email_change_history(account.id)[0]
        assert latest.change_type is ChangeType.PRIMARY_CHANGE
        assert latest.old_email == "a@x.com"
        assert latest.new_email == "b@x.com"

    def test_token_is_single_use(self, service, account, password) -> None:
        result = service.request_email_change(account.id, "b@x.com", password)
        service.complete_email_change(result.token, "b@x.com")

        with pytest.raises(InvalidOrExpiredToken):
            service.complete_email_change(result.token, "b@x.com")

    def test_token_bound_to_address(self, service, account, password) -> None:
        result = service.request_email_change(account.id, "b@x.com", password)

        with pytest.raises(InvalidOrExpiredToken):
            service.complete_email_change(result.token, "c@x.com")

    def test_expired_token_changes_nothing(self, service, account, password, clock) -> None:
        result = service.request_email_change(account.id, "b@x.com", password)
        clock.advance(hours=24, seconds=1)

        with pytest.raises(TokenExpired):
            service.complete_email_change(result.token, "b@x.com")
        assert statuses(service, account.id)["a@x.com"] is EmailStatus.PRIMARY


class TestGracePeriod:
    """A detached address stays reserved until its grace period ends."""

    @pytest.fixture
    def changed(self, service, account, password):
        result = service.request_email_change(account.id, "b@x.com", password)
        service.complete_email_change(result.token, "b@x.com")
        return account

    def test_third_party_signup_blocked(self, service, changed, worker_profile, password) -> None:
        with pytest.raises(EmailUnavailable) as exc_info:
            service.initiate_signup("a@x.com", password, worker_profile)
        assert exc_info.value.in_grace_period
        assert exc_info.value.days_remaining == 30
        assert "grace period" in str(exc_info.value)

    def test_other_account_cannot_change_to_detached_address(
        self, service, changed, verified_account, password
    ) -> None:
        bob = verified_account("bob@x.com", WorkerProfile("Bob", "Jones"))

        with pytest.raises(EmailUnavailable):
            service.request_email_change(bob.id, "a@x.com", password)

    def test_former_owner_cannot_reclaim(self, service, changed, password) -> None:
        with pytest.raises(EmailUnavailable):
            service.request_email_change(changed.id, "a@x.com", password)

    def test_days_remaining_counts_down(self, service, changed, clock) -> None:
        clock.advance(days=10)
        availability = service.check_email_availability("a@x.com")
        assert not availability.available
        assert availability.days_remaining == 20

    def test_cleanup_before_expiry_keeps_record(self, service, changed, clock) -> None:
        clock.advance(days=29)
        assert service.cleanup_expired_grace_periods() == 0

    def test_cleanup_after_expiry_releases_address(
        self, service, changed, worker_profile, password, clock
    ) -> None:
        clock.advance(days=30, seconds=1)

        assert service.cleanup_expired_grace_periods() == 1
        assert "a@x.com" not in statuses(service, changed.id)

        result = service.initiate_signup("a@x.com", password, worker_profile)
        assert result.email == "a@x.com"

    def test_cleanup_is_idempotent(self, service, changed, clock) -> None:
        clock.advance(days=31)
        service.cleanup_expired_grace_periods()
        assert service.cleanup_expired_grace_periods() == 0

    def test_expired_grace_no_longer_blocks_before_cleanup(self, service, changed, clock) -> None:
        clock.advance(days=30, seconds=1)
        assert service.check_email_availability("a@x.com").available
