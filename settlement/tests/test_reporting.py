"""
Unit Tests for Financial Reporting and ledger health checks

Tests cover:
1. Conservation per booking
2. Credit statistics and solvency
3. CAC dashboard and revenue buckets
4. Orphaned references and tolerance of missing data
"""

import pytest
from decimal import Decimal

from settlement.accounts import utcnow
from settlement.models import (
    ApprovePayoutRequest,
    CancelBookingRequest,
    CreateBookingRequest,
    DisputeOutcome,
    MarkPayoutPaidRequest,
    PayoutRequest,
    PayoutStatus,
    ReportDisputeRequest,
    ResolveDisputeRequest,
    TopupRequest,
    TransactionStatus,
    TransactionType,
)

from conftest import MENTEE_ID, MENTOR_ID, PROVIDER_ID, REFERRED_ID


class TestConservation:
    """Tests that every booking nets to zero across accounts."""

    def test_released_booking_balances(self, service, completed_booking):
        booking_id = completed_booking()

        assert service.reports.booking_conservation(booking_id) == Decimal("0")

    def test_refunded_booking_balances(self, service, completed_booking):
        booking_id = completed_booking("60")
        service.request_payout(PayoutRequest(user_id=MENTOR_ID, amount=Decimal("50"), method="bank"))
        service.report_dispute(booking_id, ReportDisputeRequest(reason="Fraud"))
        service.resolve_dispute(booking_id, ResolveDisputeRequest(outcome=DisputeOutcome.REFUND_MENTEE))

        assert service.reports.booking_conservation(booking_id) == Decimal("0")
        assert service.reports.check_conservation() == []

    def test_cancelled_booking_balances(self, service):
        booking_id = service.create_booking(
            CreateBookingRequest(mentee_id=MENTEE_ID, mentor_id=MENTOR_ID, total_cost=Decimal("25"))
        ).booking.id
        service.cancel_booking(booking_id, CancelBookingRequest(cancelled_by="admin"))

        assert service.reports.booking_conservation(booking_id) == Decimal("0")

    def test_health_after_full_flow(self, service, completed_booking):
        """Bookings, payouts and commissions leave the ledger healthy."""
        completed_booking("60")
        service.topup(REFERRED_ID, TopupRequest(amount_usd=Decimal("100")))
        payout_id = service.request_payout(
            PayoutRequest(user_id=MENTOR_ID, amount=Decimal("50"), method="bank")
        ).payout.id
        service.approve_payout(payout_id, ApprovePayoutRequest())
        service.mark_payout_paid(payout_id, MarkPayoutPaidRequest(evidence_file="receipt.pdf"))

        health = service.health()
        assert health["ok"] is True
        assert service.reports.negative_balances() == []


class TestAggregates:
    """Tests for the read-only dashboards."""

    def test_credit_stats(self, service, completed_booking):
        completed_booking("30")
        service.create_booking(CreateBookingRequest(mentee_id=MENTEE_ID, mentor_id=MENTOR_ID, total_cost=Decimal("20")))

        stats = service.reports.credit_stats()
        assert stats["released"]["credits"] == Decimal("30")
        assert stats["holding"]["count"] == 1
        assert stats["holding"]["usd"] == Decimal("20.00")
        assert stats["returned"]["count"] == 0

    def test_solvency(self, service):
        service.topup(REFERRED_ID, TopupRequest(amount_usd=Decimal("100")))

        report = service.reports.solvency()
        assert report["cash_in"] == Decimal("100.00")
        assert report["cash_out"] == Decimal("0")
        assert report["liabilities"]["provider_payable"] == Decimal("8.00")
        assert report["total_liability"] == Decimal("188.00")
        assert report["is_solvent"] is False

    def test_solvency_counts_pending_payouts(self, service, completed_booking):
        """Open payouts are reported as their own liability and leave the total unchanged until paid."""
        completed_booking("60")
        payout_id = service.request_payout(
            PayoutRequest(user_id=MENTOR_ID, amount=Decimal("50"), method="bank")
        ).payout.id

        liabilities = service.reports.solvency()["liabilities"]
        assert liabilities["wallet_credits"] == Decimal("40.00")
        assert liabilities["pending_payouts"] == Decimal("50.00")
        assert liabilities["mentor_payable"] == Decimal("10.00")
        assert service.reports.solvency()["total_liability"] == Decimal("100.00")

        service.approve_payout(payout_id, ApprovePayoutRequest())
        service.mark_payout_paid(payout_id, MarkPayoutPaidRequest(evidence_file="receipt.pdf"))

        report = service.reports.solvency()
        assert report["cash_out"] == Decimal("50.00")
        assert report["liabilities"]["pending_payouts"] == Decimal("0")
        assert report["liabilities"]["mentor_payable"] == Decimal("10.00")
        assert report["total_liability"] == Decimal("50.00")

    def test_cac_dashboard(self, service):
        service.topup(REFERRED_ID, TopupRequest(amount_usd=Decimal("100")))
        service.topup(MENTEE_ID, TopupRequest(amount_usd=Decimal("100")))

        dashboard = service.reports.cac_dashboard()
        assert dashboard["summary"]["revenue"] == Decimal("200.00")
        assert dashboard["summary"]["total_commission"] == Decimal("8.00")
        assert dashboard["summary"]["cac_ratio"] == Decimal("0.0400")
        assert dashboard["by_provider"][PROVIDER_ID]["cac_ratio"] == Decimal("0.0800")
        assert dashboard["by_level"]["silver"]["providers"] == 1
        assert len(dashboard["time_series"]) == 1

    def test_revenue_buckets(self, service):
        service.topup(MENTEE_ID, TopupRequest(amount_usd=Decimal("40")))
        today = utcnow().date()

        daily = service.reports.daily_revenue(7, today=today)
        assert len(daily) == 7
        assert daily[-1]["topups"] == Decimal("40.00")

        monthly = service.reports.monthly_revenue(today.year, today.month)
        assert monthly["total_topups"] == Decimal("40.00")
        assert monthly["total_payouts"] == Decimal("0")


class TestIntegrityChecks:
    """Tests for referential integrity reporting."""

    def test_orphaned_payout_flagged(self, service):
        service.storage.insert("payouts", {
            "id": "po_orphan", "user_id": MENTOR_ID, "role": "MENTOR", "amount": Decimal("50"),
            "credits_deducted": Decimal("50"), "status": PayoutStatus.APPROVED_PENDING_PAYMENT,
            "requested_at": utcnow(), "payment_transaction_id": "tx_missing",
        })

        orphans = service.reports.orphaned_references()
        assert {"collection": "payouts", "id": "po_orphan", "missing": "transactions/tx_missing"} in orphans
        assert service.health()["ok"] is False

    def test_missing_amounts_count_as_zero(self, service):
        service.storage.insert("transactions", {
            "id": "tx_partial", "user_id": MENTEE_ID, "amount": None,
            "type": TransactionType.TOPUP, "status": TransactionStatus.SUCCESS, "date": utcnow(),
        })

        assert service.reports.solvency()["cash_in"] == Decimal("0")
        assert service.reports.cac_dashboard()["summary"]["revenue"] == Decimal("0")


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
