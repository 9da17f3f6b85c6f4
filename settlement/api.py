from datetime import date
from typing import Optional

from fastapi import FastAPI, HTTPException, Query, status
from fastapi.middleware.cors import CORSMiddleware

from .errors import (
    AlreadyPaidError,
    ConflictError,
    InvalidStateTransitionError,
    NotFoundError,
    SettlementError,
)
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
from .service import LedgerService
from .syslog import setup_logger

setup_logger()

app = FastAPI(
    title="Credit Settlement API",
    description="Credit ledger, booking settlement, payouts and provider commissions for a tutoring marketplace",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ledger_service = LedgerService()


def http_error(e: SettlementError) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if isinstance(e, (ConflictError, InvalidStateTransitionError, AlreadyPaidError)):
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@app.get("/health", tags=["System"])
def health_check():
    return {"status": "healthy", "service": "credit-settlement"}


# --- accounts ---

@app.post("/accounts", response_model=Account, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
def open_account(request: OpenAccountRequest) -> Account:
    try:
        return ledger_service.open_account(request)
    except SettlementError as e:
        raise http_error(e)


@app.get("/accounts/{user_id}", response_model=Account, tags=["Accounts"])
def get_account(user_id: str) -> Account:
    try:
        return ledger_service.get_account(user_id)
    except SettlementError as e:
        raise http_error(e)


@app.get("/accounts/{user_id}/balance", response_model=BalanceDetails, tags=["Accounts"])
def get_balance(user_id: str) -> BalanceDetails:
    try:
        return ledger_service.balance_details(user_id)
    except SettlementError as e:
        raise http_error(e)


@app.get("/accounts/{user_id}/history", response_model=CreditHistoryResponse, tags=["Accounts"])
def get_history(user_id: str, limit: int = 50, offset: int = 0) -> CreditHistoryResponse:
    try:
        return ledger_service.get_credit_history(user_id, limit, offset)
    except SettlementError as e:
        raise http_error(e)


@app.post("/accounts/{user_id}/topup", response_model=Transaction, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
def topup(user_id: str, request: TopupRequest) -> Transaction:
    try:
        return ledger_service.topup(user_id, request)
    except SettlementError as e:
        raise http_error(e)


@app.post("/accounts/{user_id}/adjust", response_model=Account, tags=["Accounts"])
def adjust_credits(user_id: str, request: CreditAdjustmentRequest) -> Account:
    try:
        return ledger_service.adjust_credits(user_id, request)
    except SettlementError as e:
        raise http_error(e)


# --- bookings ---

@app.post("/bookings", response_model=BookingResponse, status_code=status.HTTP_201_CREATED, tags=["Bookings"])
def create_booking(request: CreateBookingRequest) -> BookingResponse:
    try:
        return ledger_service.create_booking(request)
    except SettlementError as e:
        raise http_error(e)


@app.get("/bookings/{booking_id}", response_model=Booking, tags=["Bookings"])
def get_booking(booking_id: str) -> Booking:
    try:
        return ledger_service.get_booking(booking_id)
    except SettlementError as e:
        raise http_error(e)


@app.get("/bookings/{booking_id}/ledger", response_model=SystemCreditLedgerEntry, tags=["Bookings"])
def get_ledger_entry(booking_id: str) -> SystemCreditLedgerEntry:
    entry = ledger_service.get_ledger_entry(booking_id)
    if entry is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"No ledger entry for booking {booking_id}")
    return entry


@app.post("/bookings/{booking_id}/complete", response_model=BookingResponse, tags=["Bookings"])
def complete_booking(booking_id: str) -> BookingResponse:
    try:
        return ledger_service.complete_booking(booking_id)
    except SettlementError as e:
        raise http_error(e)


@app.post("/bookings/{booking_id}/cancel", response_model=BookingResponse, tags=["Bookings"])
def cancel_booking(booking_id: str, request: CancelBookingRequest) -> BookingResponse:
    try:
        return ledger_service.cancel_booking(booking_id, request)
    except SettlementError as e:
        raise http_error(e)


@app.post("/bookings/{booking_id}/no-show", response_model=BookingResponse, tags=["Bookings"])
def mark_no_show(booking_id: str, request: NoShowRequest) -> BookingResponse:
    try:
        return ledger_service.mark_no_show(booking_id, request)
    except SettlementError as e:
        raise http_error(e)


@app.post("/bookings/{booking_id}/reschedule", response_model=BookingResponse, tags=["Bookings"])
def reschedule_booking(booking_id: str, request: RescheduleRequest) -> BookingResponse:
    try:
        return ledger_service.reschedule_booking(booking_id, request)
    except SettlementError as e:
        raise http_error(e)


@app.post("/bookings/{booking_id}/release", response_model=SystemCreditLedgerEntry, tags=["Bookings"])
def release_credits(booking_id: str) -> SystemCreditLedgerEntry:
    try:
        return ledger_service.release_credits(booking_id)
    except SettlementError as e:
        raise http_error(e)


@app.post("/bookings/{booking_id}/return", response_model=SystemCreditLedgerEntry, tags=["Bookings"])
def return_credits(booking_id: str, reason: str = "") -> SystemCreditLedgerEntry:
    try:
        return ledger_service.return_credits(booking_id, reason)
    except SettlementError as e:
        raise http_error(e)


@app.post("/bookings/{booking_id}/dispute", response_model=BookingResponse, tags=["Disputes"])
def report_dispute(booking_id: str, request: ReportDisputeRequest) -> BookingResponse:
    try:
        return ledger_service.report_dispute(booking_id, request)
    except SettlementError as e:
        raise http_error(e)


@app.post("/bookings/{booking_id}/resolve", response_model=BookingResponse, tags=["Disputes"])
def resolve_dispute(booking_id: str, request: ResolveDisputeRequest) -> BookingResponse:
    try:
        return ledger_service.resolve_dispute(booking_id, request)
    except SettlementError as e:
        raise http_error(e)


@app.get("/disputes", response_model=list[Booking], tags=["Disputes"])
def list_disputes() -> list[Booking]:
    return ledger_service.list_disputed()


# --- payouts ---

@app.post("/payouts", response_model=PayoutResponse, status_code=status.HTTP_201_CREATED, tags=["Payouts"])
def request_payout(request: PayoutRequest) -> PayoutResponse:
    try:
        return ledger_service.request_payout(request)
    except SettlementError as e:
        raise http_error(e)


@app.get("/payouts", response_model=list[Payout], tags=["Payouts"])
def list_payouts(status_filter: Optional[PayoutStatus] = Query(default=None, alias="status"), user_id: Optional[str] = None) -> list[Payout]:
    return ledger_service.list_payouts(status_filter, user_id)


@app.get("/payouts/{payout_id}", response_model=Payout, tags=["Payouts"])
def get_payout(payout_id: str) -> Payout:
    try:
        return ledger_service.get_payout(payout_id)
    except SettlementError as e:
        raise http_error(e)


@app.post("/payouts/{payout_id}/approve", response_model=PayoutResponse, tags=["Payouts"])
def approve_payout(payout_id: str, request: ApprovePayoutRequest) -> PayoutResponse:
    try:
        return ledger_service.approve_payout(payout_id, request)
    except SettlementError as e:
        raise http_error(e)


@app.post("/payouts/{payout_id}/reject", response_model=PayoutResponse, tags=["Payouts"])
def reject_payout(payout_id: str, request: RejectPayoutRequest) -> PayoutResponse:
    try:
        return ledger_service.reject_payout(payout_id, request)
    except SettlementError as e:
        raise http_error(e)


@app.post("/payouts/{payout_id}/paid", response_model=PayoutResponse, tags=["Payouts"])
def mark_payout_paid(payout_id: str, request: MarkPayoutPaidRequest) -> PayoutResponse:
    try:
        return ledger_service.mark_payout_paid(payout_id, request)
    except SettlementError as e:
        raise http_error(e)


@app.post("/payouts/{payout_id}/failed", response_model=PayoutResponse, tags=["Payouts"])
def mark_payout_failed(payout_id: str, request: MarkPayoutFailedRequest) -> PayoutResponse:
    try:
        return ledger_service.mark_payout_failed(payout_id, request)
    except SettlementError as e:
        raise http_error(e)


@app.post("/payouts/{payout_id}/retry", response_model=PayoutResponse, status_code=status.HTTP_201_CREATED, tags=["Payouts"])
def retry_payout(payout_id: str, request: RetryPayoutRequest) -> PayoutResponse:
    try:
        return ledger_service.retry_payout(payout_id, request)
    except SettlementError as e:
        raise http_error(e)


# --- commissions ---

@app.post("/commissions", response_model=ProviderCommission, status_code=status.HTTP_201_CREATED, tags=["Commissions"])
def record_commission(request: RecordCommissionRequest) -> ProviderCommission:
    try:
        return ledger_service.record_commission(request)
    except SettlementError as e:
        raise http_error(e)


@app.get("/commissions", response_model=list[ProviderCommission], tags=["Commissions"])
def list_commissions(provider_id: Optional[str] = None) -> list[ProviderCommission]:
    return ledger_service.list_commissions(provider_id)


@app.post("/commissions/{commission_id}/paid", response_model=ProviderCommission, tags=["Commissions"])
def mark_commission_paid(commission_id: str) -> ProviderCommission:
    try:
        return ledger_service.mark_commission_paid(commission_id)
    except SettlementError as e:
        raise http_error(e)


@app.put("/levels/{level_id}/commission", response_model=ProviderLevel, tags=["Commissions"])
def set_level_commission(level_id: str, request: SetLevelCommissionRequest) -> ProviderLevel:
    try:
        return ledger_service.set_level_commission(level_id, request)
    except SettlementError as e:
        raise http_error(e)


# --- pricing & reports ---

@app.get("/pricing/quote", response_model=PriceQuote, tags=["Pricing"])
def price_quote(group_id: str, country_id: Optional[str] = None) -> PriceQuote:
    try:
        return ledger_service.calculate_price(group_id, country_id)
    except SettlementError as e:
        raise http_error(e)


@app.get("/reports/credits", tags=["Reports"])
def credit_stats():
    return ledger_service.reports.credit_stats()


@app.get("/reports/cac", tags=["Reports"])
def cac_dashboard(start: Optional[date] = None, end: Optional[date] = None):
    return ledger_service.reports.cac_dashboard(start, end)


@app.get("/reports/solvency", tags=["Reports"])
def solvency():
    return ledger_service.reports.solvency()


@app.get("/reports/revenue/daily", tags=["Reports"])
def daily_revenue(days: int = 30):
    return ledger_service.reports.daily_revenue(days)


@app.get("/reports/revenue/monthly", tags=["Reports"])
def monthly_revenue(year: int, month: int):
    if not 1 <= month <= 12:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="month must be between 1 and 12")
    return ledger_service.reports.monthly_revenue(year, month)


@app.get("/reports/health", tags=["Reports"])
def ledger_health():
    return ledger_service.health()


@app.get("/logs", tags=["System"])
def system_logs(limit: int = 100):
    return ledger_service.system_logs(limit)


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
