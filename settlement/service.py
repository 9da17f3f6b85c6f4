from decimal import Decimal
from typing import Optional

from .accounts import AccountService
from .bookings import BookingService
from .commissions import CommissionService
from .config import SettlementConfig, load_config
from .models import (
    Account,
    ApprovePayoutRequest,
    BalanceDetails,
    Booking,
    BookingResponse,
    CancelBookingRequest,
    CreateBookingRequest,
    CreditAdjustmentRequest,
    CreditHistoryResponse,
    MarkPayoutFailedRequest,
    MarkPayoutPaidRequest,
    NoShowRequest,
    OpenAccountRequest,
    Payout,
    PayoutRequest,
    PayoutResponse,
    PayoutStatus,
    PriceQuote,
    ProviderCommission,
    ProviderLevel,
    RecordCommissionRequest,
    RejectPayoutRequest,
    ReportDisputeRequest,
    RescheduleRequest,
    ResolveDisputeRequest,
    RetryPayoutRequest,
    SetLevelCommissionRequest,
    SystemCreditLedgerEntry,
    Transaction,
    TopupRequest,
)
from .payouts import PayoutService
from .pricing import calculate_price
from .reporting import ReportingService
from .storage import InMemoryStorage
from .syslog import AuditLog


class LedgerService:
    """Entry point for every ledger operation; the HTTP API and the admin CLI both go through it."""

    def __init__(self, storage: Optional[InMemoryStorage] = None, config: Optional[SettlementConfig] = None):
        self.config = config or load_config()
        self.storage = storage or InMemoryStorage(max_logs=self.config.max_log_entries)
        self.audit = AuditLog(self.storage, "settlement")
        self.accounts = AccountService(self.storage, self.config, self.audit)
        self.bookings = BookingService(self.storage, self.accounts, self.config, self.audit)
        self.payouts = PayoutService(self.storage, self.accounts, self.config, self.audit)
        self.commissions = CommissionService(self.storage, self.accounts, self.config, self.audit)
        self.reports = ReportingService(self.storage, self.config)

    # accounts
    def open_account(self, request: OpenAccountRequest) -> Account:
        return self.accounts.open_account(request)

    def get_account(self, user_id: str) -> Account:
        return self.accounts.get_account(user_id)

    def topup(self, user_id: str, request: TopupRequest) -> Transaction:
        transaction = self.accounts.topup(user_id, request)
        self.commissions.process_topup_commission(transaction)
        return transaction

    def adjust_credits(self, user_id: str, request: CreditAdjustmentRequest) -> Account:
        return self.accounts.adjust_credits(user_id, request)

    def get_credit_history(self, user_id: str, limit: int = 50, offset: int = 0) -> CreditHistoryResponse:
        return self.accounts.history(user_id, limit, offset)

    def balance_details(self, user_id: str) -> BalanceDetails:
        return self.payouts.balance_details(user_id)

    # bookings
    def create_booking(self, request: CreateBookingRequest) -> BookingResponse:
        return self.bookings.create_booking(request)

    def get_booking(self, booking_id: str) -> Booking:
        return self.bookings.get_booking(booking_id)

    def get_ledger_entry(self, booking_id: str) -> Optional[SystemCreditLedgerEntry]:
        return self.bookings.get_ledger_entry(booking_id)

    def hold_credits(self, booking_id: str) -> SystemCreditLedgerEntry:
        return self.bookings.hold_credits(self.bookings.get_booking(booking_id))

    def release_credits(self, booking_id: str) -> SystemCreditLedgerEntry:
        return self.bookings.release_credits(self.bookings.get_booking(booking_id))

    def return_credits(self, booking_id: str, reason: str = "") -> SystemCreditLedgerEntry:
        return self.bookings.return_credits(self.bookings.get_booking(booking_id), reason)

    def complete_booking(self, booking_id: str) -> BookingResponse:
        return self.bookings.complete_booking(booking_id)

    def cancel_booking(self, booking_id: str, request: CancelBookingRequest) -> BookingResponse:
        return self.bookings.cancel_booking(booking_id, request)

    def mark_no_show(self, booking_id: str, request: NoShowRequest) -> BookingResponse:
        return self.bookings.mark_no_show(booking_id, request)

    def reschedule_booking(self, booking_id: str, request: RescheduleRequest) -> BookingResponse:
        return self.bookings.reschedule_booking(booking_id, request)

    def report_dispute(self, booking_id: str, request: ReportDisputeRequest) -> BookingResponse:
        return self.bookings.report_dispute(booking_id, request)

    def resolve_dispute(self, booking_id: str, request: ResolveDisputeRequest) -> BookingResponse:
        return self.bookings.resolve_dispute(booking_id, request)

    def list_disputed(self) -> list[Booking]:
        return self.bookings.list_disputed()

    # payouts
    def request_payout(self, request: PayoutRequest) -> PayoutResponse:
        return self.payouts.request_payout(request)

    def get_payout(self, payout_id: str) -> Payout:
        return self.payouts.get_payout(payout_id)

    def list_payouts(self, status: Optional[PayoutStatus] = None, user_id: Optional[str] = None) -> list[Payout]:
        return self.payouts.list_payouts(status, user_id)

    def approve_payout(self, payout_id: str, request: ApprovePayoutRequest) -> PayoutResponse:
        return self.payouts.approve_payout(payout_id, request)

    def reject_payout(self, payout_id: str, request: RejectPayoutRequest) -> PayoutResponse:
        return self.payouts.reject_payout(payout_id, request)

    def mark_payout_paid(self, payout_id: str, request: MarkPayoutPaidRequest) -> PayoutResponse:
        return self.payouts.mark_payout_paid(payout_id, request)

    def mark_payout_failed(self, payout_id: str, request: MarkPayoutFailedRequest) -> PayoutResponse:
        return self.payouts.mark_payout_failed(payout_id, request)

    def retry_payout(self, payout_id: str, request: RetryPayoutRequest) -> PayoutResponse:
        return self.payouts.retry_payout(payout_id, request)

    # commissions
    def record_commission(self, request: RecordCommissionRequest) -> ProviderCommission:
        return self.commissions.record_commission(request)

    def mark_commission_paid(self, commission_id: str) -> ProviderCommission:
        return self.commissions.mark_commission_paid(commission_id)

    def get_commission(self, commission_id: str) -> ProviderCommission:
        return self.commissions.get_commission(commission_id)

    def list_commissions(self, provider_id: Optional[str] = None) -> list[ProviderCommission]:
        return self.commissions.list_commissions(provider_id)

    def set_level_commission(self, level_id: str, request: SetLevelCommissionRequest) -> ProviderLevel:
        return self.commissions.set_level_commission(level_id, request)

    # pricing
    def calculate_price(self, mentor_group_id: str, country_id: Optional[str] = None,
                        base_price: Optional[Decimal] = None) -> PriceQuote:
        return calculate_price(
            self.storage, base_price if base_price is not None else self.config.base_lesson_price,
            mentor_group_id, country_id,
        )

    # audit
    def health(self) -> dict:
        conservation = self.reports.check_conservation()
        orphans = self.reports.orphaned_references()
        negatives = self.reports.negative_balances()
        return {
            "ok": not (conservation or orphans or negatives),
            "conservation_violations": conservation,
            "orphaned_references": orphans,
            "negative_balances": negatives,
        }

    def system_logs(self, limit: int = 100) -> list[dict]:
        return self.storage.recent_logs(limit)
