"""
Unit Tests for the Commission Engine

Tests cover:
1. Commission generated from referred top-ups
2. Rate frozen at creation time
3. Paid guard
4. Skipped top-ups (no referral, inactive provider, duplicates)
"""

import pytest
from decimal import Decimal

from settlement.config import SettlementConfig
from settlement.errors import AlreadyPaidError, ConflictError, NotFoundError, ValidationError
from settlement.models import (
    AccountStatus,
    CommissionStatus,
    OpenAccountRequest,
    RecordCommissionRequest,
    SetLevelCommissionRequest,
    TopupRequest,
    TransactionType,
    UserRole,
)
from settlement.service import LedgerService

from conftest import MENTEE_ID, PROVIDER_ID, REFERRED_ID


def _topup(service, user_id=REFERRED_ID, amount="100"):
    return service.topup(user_id, TopupRequest(amount_usd=Decimal(amount)))


class TestTopupCommission:
    """Tests for commissions generated by top-ups."""

    def test_topup_converts_to_credits(self, service):
        """Top-ups buy credits at the configured ratio."""
        tx = _topup(service)

        assert tx.type == TransactionType.TOPUP
        assert tx.amount == Decimal("100.00")
        assert service.get_account(REFERRED_ID).credits == Decimal("80.00")

    def test_referred_topup_records_commission(self, service):
        """A silver provider earns 8% of the referred mentee's top-up."""
        tx = _topup(service)

        commissions = service.list_commissions(PROVIDER_ID)
        assert len(commissions) == 1
        commission = commissions[0]
        assert commission.topup_id == tx.id
        assert commission.commission_percent == Decimal("8")
        assert commission.commission_amount_usd == Decimal("8.00")
        assert commission.commission_credits == Decimal("6.40")
        assert commission.status == CommissionStatus.PENDING
        assert service.get_account(PROVIDER_ID).payable == Decimal("8.00")

    def test_referral_totals_updated(self, service):
        """The referral accumulates spending and commission."""
        _topup(service)
        _topup(service, amount="50")

        referral = service.storage.find("referrals", lambda r: r["mentee_id"] == REFERRED_ID)[0]
        assert referral["total_spending"] == Decimal("150.00")
        assert referral["total_commission"] == Decimal("12.00")

    def test_unreferred_topup_has_no_commission(self, service):
        """Mentees without a referral generate nothing."""
        _topup(service, user_id=MENTEE_ID)

        assert service.list_commissions() == []

    def test_inactive_provider_skipped(self, service):
        """Banned providers earn no commission and the skip is logged."""
        service.storage.compare_and_set("accounts", PROVIDER_ID, {}, {"status": AccountStatus.BANNED})

        _topup(service)

        assert service.list_commissions() == []
        assert service.system_logs()[0]["lvl"] == "warn"

    def test_only_mentees_top_up(self, service):
        """Providers cannot buy credits."""
        with pytest.raises(ValidationError):
            _topup(service, user_id=PROVIDER_ID)


class TestRecordCommission:
    """Tests for recording commissions directly."""

    def test_duplicate_rejected(self, service):
        """A top-up pays commission once."""
        tx = _topup(service)

        with pytest.raises(ConflictError):
            service.record_commission(RecordCommissionRequest(topup_transaction_id=tx.id, provider_id=PROVIDER_ID))

    def test_unknown_topup(self, service):
        """The top-up transaction must exist."""
        with pytest.raises(NotFoundError):
            service.record_commission(RecordCommissionRequest(topup_transaction_id="tx_missing", provider_id=PROVIDER_ID))

    def test_rate_immutable_after_level_change(self, service):
        """Changing the level rate leaves recorded commissions alone."""
        _topup(service)
        level = service.set_level_commission("silver", SetLevelCommissionRequest(commission_percent=Decimal("20")))
        assert level.commission_percent == Decimal("20")

        commission = service.list_commissions(PROVIDER_ID)[0]
        assert commission.commission_percent == Decimal("8")
        assert commission.commission_amount_usd == Decimal("8.00")

        _topup(service)
        newest = service.list_commissions(PROVIDER_ID)[0]
        assert newest.commission_amount_usd == Decimal("20.00")

    def test_unknown_level(self, service):
        """Level changes require an existing level."""
        with pytest.raises(NotFoundError):
            service.set_level_commission("platinum", SetLevelCommissionRequest(commission_percent=Decimal("30")))


class TestMarkCommissionPaid:
    """Tests for settling commissions."""

    def test_mark_paid(self, service):
        """Paying a commission settles it and debits the provider's payable."""
        _topup(service)
        commission_id = service.list_commissions(PROVIDER_ID)[0].id

        paid = service.mark_commission_paid(commission_id)

        assert paid.status == CommissionStatus.PAID
        assert paid.paid_at is not None
        assert service.get_account(PROVIDER_ID).payable == Decimal("0.00")
        assert f"Commission {commission_id} paid" in service.system_logs()[0]["msg"]

    def test_mark_paid_twice(self, service):
        """The second payment attempt fails instead of succeeding silently."""
        _topup(service)
        commission_id = service.list_commissions(PROVIDER_ID)[0].id
        service.mark_commission_paid(commission_id)

        with pytest.raises(AlreadyPaidError):
            service.mark_commission_paid(commission_id)
        assert service.get_account(PROVIDER_ID).payable == Decimal("0.00")

    def test_pending_totals(self, service):
        """Pending commission totals only count unpaid commissions."""
        _topup(service)
        _topup(service, amount="50")
        first = service.commissions.pending_commissions(PROVIDER_ID)[-1]
        service.mark_commission_paid(first.id)

        assert service.commissions.total_pending(PROVIDER_ID) == Decimal("4.00")


class TestProviderRate:
    """Tests for resolving the commission rate of a provider."""

    def test_level_rate(self, service):
        assert service.commissions.provider_rate(PROVIDER_ID) == Decimal("8")

    def test_missing_level_uses_configured_default(self, service):
        """Providers without a level earn at the default level from config."""
        service.open_account(OpenAccountRequest(user_id="provider-2", role=UserRole.PROVIDER))
        service.open_account(OpenAccountRequest(user_id="mentee-3", role=UserRole.MENTEE, provider_id="provider-2"))

        assert service.commissions.provider_rate("provider-2") == Decimal("5")
        _topup(service, user_id="mentee-3")
        assert service.list_commissions("provider-2")[0].commission_amount_usd == Decimal("5.00")

    def test_default_level_from_config(self):
        svc = LedgerService(config=SettlementConfig(default_level_id="gold"))
        svc.open_account(OpenAccountRequest(user_id="provider-2", role=UserRole.PROVIDER))

        assert svc.commissions.provider_rate("provider-2") == Decimal("12")

    def test_unknown_default_level(self):
        svc = LedgerService(config=SettlementConfig(default_level_id="platinum"))
        svc.open_account(OpenAccountRequest(user_id="provider-2", role=UserRole.PROVIDER))

        with pytest.raises(NotFoundError):
            svc.commissions.provider_rate("provider-2")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
