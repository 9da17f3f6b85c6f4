from datetime import timedelta
from decimal import Decimal
from typing import Optional

from .accounts import AccountService, new_id, utcnow
from .config import SettlementConfig
from .errors import (
    InsufficientCreditsError,
    InvalidStateTransitionError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from .models import (
    SYSTEM_ACCOUNT_ID,
    AbsentParty,
    AccountStatus,
    Booking,
    BookingResponse,
    BookingStatus,
    BookingType,
    Bucket,
    CancelBookingRequest,
    CreateBookingRequest,
    CreditStatus,
    DisputeOutcome,
    EarningStatus,
    HistoryType,
    LedgerStatus,
    LogSource,
    MentorEarning,
    NoShowRequest,
    ReportDisputeRequest,
    RescheduleRequest,
    ResolveDisputeRequest,
    SystemCreditLedgerEntry,
    TransactionStatus,
    TransactionType,
    UserRole,
)
from .syslog import AuditLog


ALLOWED_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.SCHEDULED: {
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
        BookingStatus.RESCHEDULED,
    },
    BookingStatus.RESCHEDULED: {
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
        BookingStatus.RESCHEDULED,
    },
    BookingStatus.COMPLETED: {BookingStatus.DISPUTED},
    BookingStatus.DISPUTED: {BookingStatus.COMPLETED, BookingStatus.REFUNDED},
    BookingStatus.CANCELLED: set(),
    BookingStatus.NO_SHOW: set(),
    BookingStatus.REFUNDED: set(),
}


def validate_booking_cost(booking_id: str, total_cost: Decimal) -> None:
    if (total_cost or Decimal("0")) < 0:
        raise ValidationError(f"Negative Total Cost for booking {booking_id}")


class BookingService:
    def __init__(self, storage, accounts: AccountService, config: SettlementConfig, audit: AuditLog):
        self.storage = storage
        self.accounts = accounts
        self.config = config
        self.audit = audit

    # --- reads ---

    def get_booking(self, booking_id: str) -> Booking:
        data = self.storage.get("bookings", booking_id)
        if not data:
            raise NotFoundError(f"Booking {booking_id} not found")
        return Booking(**data)

    def get_ledger_entry(self, booking_id: str) -> Optional[SystemCreditLedgerEntry]:
        entries = self.storage.find("ledger_entries", lambda e: e["booking_id"] == booking_id)
        return SystemCreditLedgerEntry(**entries[0]) if entries else None

    def list_disputed(self) -> list[Booking]:
        return [
            Booking(**b) for b in self.storage.find(
                "bookings", lambda b: b["status"] == BookingStatus.DISPUTED
            )
        ]

    def _require_entry(self, booking: Booking) -> SystemCreditLedgerEntry:
        entry = self.get_ledger_entry(booking.id)
        if entry is None:
            raise NotFoundError(f"No ledger entry found for booking {booking.id}")
        return entry

    def _check_transition(self, booking: Booking, new_status: BookingStatus) -> None:
        allowed = ALLOWED_TRANSITIONS[booking.status]
        if new_status not in allowed:
            allowed_text = ", ".join(sorted(s.value for s in allowed)) or "none"
            raise InvalidStateTransitionError(
                f"Invalid status transition: {booking.status.value} -> {new_status.value}. Allowed: {allowed_text}"
            )

    def _transition(self, booking: Booking, new_status: BookingStatus, changes: Optional[dict] = None) -> Booking:
        self._check_transition(booking, new_status)
        updates = {"status": new_status}
        updates.update(changes or {})
        stored = self.storage.compare_and_set("bookings", booking.id, {"status": booking.status}, updates)
        return Booking(**stored)

    def _set_credit_status(self, booking: Booking, credit_status: CreditStatus) -> None:
        if self.storage.get("bookings", booking.id) is None:
            return
        self.storage.compare_and_set(
            "bookings", booking.id, {"credit_status": booking.credit_status}, {"credit_status": credit_status}
        )

    # --- ledger movements ---

    def hold_credits(self, booking: Booking) -> SystemCreditLedgerEntry:
        validate_booking_cost(booking.id, booking.total_cost)
        if self.get_ledger_entry(booking.id) is not None:
            raise ConflictError(f"Credits already held for booking {booking.id}")

        mentee = self.accounts.get_account(booking.mentee_id)
        if mentee.credits < booking.total_cost:
            raise InsufficientCreditsError(
                f"Insufficient credits. Required: {booking.total_cost}, Available: {mentee.credits}"
            )

        self.accounts.move(
            booking.mentee_id, Bucket.CREDITS, -booking.total_cost, HistoryType.BOOKING_USE,
            reference_id=booking.id, note=f"Booking #{booking.id[-8:]} (Pending)",
        )
        self.accounts.move(
            SYSTEM_ACCOUNT_ID, Bucket.CREDITS, booking.total_cost, HistoryType.HOLD,
            reference_id=booking.id, note=f"Held for booking #{booking.id}",
        )

        now = utcnow()
        entry = self.storage.insert("ledger_entries", {
            "id": new_id("sc"),
            "booking_id": booking.id,
            "from_user_id": booking.mentee_id,
            "to_user_id": SYSTEM_ACCOUNT_ID,
            "amount": booking.total_cost,
            "status": LedgerStatus.HOLDING,
            "created_at": now,
            "updated_at": now,
        })
        self.accounts.record_transaction(
            booking.mentee_id, -booking.total_cost, TransactionType.BOOKING_USE, TransactionStatus.SUCCESS,
            f"Held for booking #{booking.id}", related_entity_id=booking.id,
        )
        self.audit.info(
            LogSource.BOOKING, f"Held {booking.total_cost} credits from {booking.mentee_id} for booking {booking.id}", booking.id
        )
        return SystemCreditLedgerEntry(**entry)

    def release_credits(self, booking: Booking) -> SystemCreditLedgerEntry:
        entry = self._require_entry(booking)
        if entry.status != LedgerStatus.HOLDING:
            raise InvalidStateTransitionError(
                f"Cannot release credits for booking {booking.id}: ledger entry is {entry.status.value}"
            )

        stored = self.storage.compare_and_set(
            "ledger_entries", entry.id, {"status": LedgerStatus.HOLDING},
            {"status": LedgerStatus.RELEASED, "to_user_id": booking.mentor_id, "updated_at": utcnow()},
        )
        amount = entry.amount
        self.accounts.move(
            SYSTEM_ACCOUNT_ID, Bucket.CREDITS, -amount, HistoryType.RELEASE,
            reference_id=booking.id, note=f"Released for booking #{booking.id}",
        )
        self._credit_mentor(booking.mentor_id, amount, booking.id)

        existing = self.storage.find("mentor_earnings", lambda e: e["booking_id"] == booking.id)
        if existing:
            earning = MentorEarning(**existing[0])
            self.storage.compare_and_set(
                "mentor_earnings", earning.id, {"status": earning.status}, {"status": EarningStatus.PAYABLE}
            )
        else:
            self.storage.insert("mentor_earnings", {
                "id": new_id("me"),
                "mentor_id": booking.mentor_id,
                "booking_id": booking.id,
                "amount": amount,
                "status": EarningStatus.PAYABLE,
                "created_at": utcnow(),
                "paid_at": None,
                "payout_id": None,
            })

        self.accounts.record_transaction(
            booking.mentor_id, amount, TransactionType.EARNING, TransactionStatus.SUCCESS,
            f"Released for booking #{booking.id}", related_entity_id=booking.id,
        )
        self._set_credit_status(booking, CreditStatus.RELEASED)
        self.audit.info(LogSource.BOOKING, f"Released {amount} credits to mentor {booking.mentor_id} for booking {booking.id}", booking.id)
        return SystemCreditLedgerEntry(**stored)

    def _credit_mentor(self, mentor_id: str, amount: Decimal, booking_id: str) -> None:
        mentor = self.accounts.get_account(mentor_id)
        settle = min(mentor.liability, amount)
        if settle > 0:
            self.accounts.move(
                mentor_id, Bucket.LIABILITY, settle, HistoryType.EARNING,
                reference_id=booking_id, note="Earnings applied to outstanding clawback",
            )
        if amount - settle > 0:
            self.accounts.move(
                mentor_id, Bucket.PAYABLE, amount - settle, HistoryType.EARNING,
                reference_id=booking_id, note=f"Earnings from Booking #{booking_id[-8:]}",
            )

    def return_credits(self, booking: Booking, reason: str = "") -> SystemCreditLedgerEntry:
        entry = self._require_entry(booking)
        if entry.status == LedgerStatus.RETURNED:
            raise InvalidStateTransitionError(f"Credits already returned for booking {booking.id}")

        was_released = entry.status == LedgerStatus.RELEASED
        stored = self.storage.compare_and_set(
            "ledger_entries", entry.id, {"status": entry.status},
            {"status": LedgerStatus.RETURNED, "to_user_id": booking.mentee_id, "updated_at": utcnow()},
        )
        amount = entry.amount

        if was_released:
            self._reverse_mentor_earning(booking, amount, reason)
        else:
            self.accounts.move(
                SYSTEM_ACCOUNT_ID, Bucket.CREDITS, -amount, HistoryType.REFUND,
                reference_id=booking.id, note=f"Returned for booking #{booking.id}",
            )

        self.accounts.move(
            booking.mentee_id, Bucket.CREDITS, amount, HistoryType.REFUND,
            reference_id=booking.id, note=f"Refund for Booking #{booking.id[-8:]}",
        )
        self.accounts.record_transaction(
            booking.mentee_id, amount, TransactionType.REFUND, TransactionStatus.SUCCESS,
            f"Refund for booking #{booking.id}" + (f": {reason}" if reason else ""),
            related_entity_id=booking.id,
        )
        self._set_credit_status(booking, CreditStatus.REFUNDED)
        self.audit.info(
            LogSource.BOOKING,
            f"Returned {amount} credits to mentee {booking.mentee_id} for booking {booking.id}"
            + (" (reversal)" if was_released else ""),
            booking.id,
        )
        return SystemCreditLedgerEntry(**stored)

    def _reverse_mentor_earning(self, booking: Booking, amount: Decimal, reason: str) -> None:
        with self.storage.atomic():
            available = self.accounts.payable_available(booking.mentor_id)
            debit = min(available, amount)
            shortfall = amount - debit

            if debit > 0:
                self.accounts.move(
                    booking.mentor_id, Bucket.PAYABLE, -debit, HistoryType.REVERSAL,
                    reference_id=booking.id, note=f"Reversal for booking #{booking.id}",
                )
            if shortfall > 0:
                self.accounts.move(
                    booking.mentor_id, Bucket.LIABILITY, -shortfall, HistoryType.REVERSAL,
                    reference_id=booking.id, note=f"Clawback owed for booking #{booking.id}",
                )
        if shortfall > 0:
            self.accounts.record_transaction(
                booking.mentor_id, shortfall, TransactionType.CLAWBACK, TransactionStatus.PENDING,
                f"Clawback for reversed booking #{booking.id}" + (f": {reason}" if reason else ""),
                related_entity_id=booking.id,
            )
            self.audit.warn(
                LogSource.PAYMENT,
                f"Reversal for booking {booking.id} exceeded payable balance of {booking.mentor_id}; "
                f"{shortfall} credits recorded as liability",
                booking.id,
            )

        for data in self.storage.find(
            "mentor_earnings",
            lambda e: e["booking_id"] == booking.id and e["status"] == EarningStatus.PAYABLE,
        ):
            self.storage.compare_and_set(
                "mentor_earnings", data["id"], {"status": EarningStatus.PAYABLE}, {"status": EarningStatus.REVERSED}
            )

    # --- lifecycle ---

    def create_booking(self, request: CreateBookingRequest) -> BookingResponse:
        booking_id = new_id("bk")
        validate_booking_cost(booking_id, request.total_cost)

        mentee = self.accounts.get_account(request.mentee_id)
        mentor = self.accounts.get_account(request.mentor_id)
        if mentee.role != UserRole.MENTEE:
            raise ValidationError(f"User {request.mentee_id} is not a mentee")
        if mentor.role != UserRole.MENTOR:
            raise ValidationError(f"User {request.mentor_id} is not a mentor")
        if mentor.status != AccountStatus.ACTIVE:
            raise ValidationError(f"Mentor {request.mentor_id} is not active")
        if request.type == BookingType.SUBSCRIPTION and not request.subscription_id:
            raise ValidationError("Subscription ID required for subscription bookings")

        now = utcnow()
        booking = Booking(
            id=booking_id,
            mentee_id=request.mentee_id,
            mentor_id=request.mentor_id,
            start_time=request.start_time,
            end_time=request.end_time,
            status=BookingStatus.SCHEDULED,
            credit_status=CreditStatus.PENDING if request.type == BookingType.CREDIT else CreditStatus.RELEASED,
            type=request.type,
            subscription_id=request.subscription_id,
            total_cost=request.total_cost,
            notes=request.notes,
            created_at=now,
        )

        entry = self.hold_credits(booking) if booking.type == BookingType.CREDIT else None
        stored = Booking(**self.storage.insert("bookings", booking.model_dump()))
        return BookingResponse(booking=stored, ledger_entry=entry, message="Booking created successfully")

    def complete_booking(self, booking_id: str) -> BookingResponse:
        booking = self.get_booking(booking_id)
        self._check_transition(booking, BookingStatus.COMPLETED)
        if booking.type == BookingType.CREDIT:
            entry = self._require_entry(booking)
            if entry.status != LedgerStatus.HOLDING:
                raise InvalidStateTransitionError(
                    f"Cannot complete booking {booking_id}: credits are {entry.status.value}"
                )

        booking = self._transition(booking, BookingStatus.COMPLETED, {"completed_at": utcnow()})
        entry = self.release_credits(booking) if booking.type == BookingType.CREDIT else None
        return BookingResponse(booking=self.get_booking(booking_id), ledger_entry=entry, message="Booking completed")

    def cancel_booking(self, booking_id: str, request: CancelBookingRequest) -> BookingResponse:
        booking = self.get_booking(booking_id)
        self._check_transition(booking, BookingStatus.CANCELLED)
        entry = None
        booking = self._transition(booking, BookingStatus.CANCELLED, {
            "cancelled_by": request.cancelled_by,
            "cancelled_at": utcnow(),
            "cancellation_reason": request.reason,
        })
        if booking.type == BookingType.CREDIT:
            entry = self.return_credits(booking, request.reason or "Booking cancelled")
        return BookingResponse(booking=self.get_booking(booking_id), ledger_entry=entry, message="Booking cancelled")

    def mark_no_show(self, booking_id: str, request: NoShowRequest) -> BookingResponse:
        booking = self.get_booking(booking_id)
        booking = self._transition(booking, BookingStatus.NO_SHOW)
        entry = None
        if booking.type == BookingType.CREDIT:
            if request.absent_party == AbsentParty.MENTOR:
                entry = self.return_credits(booking, "Mentor no-show")
            else:
                entry = self.release_credits(booking)
        return BookingResponse(booking=self.get_booking(booking_id), ledger_entry=entry, message="Booking marked as no-show")

    def reschedule_booking(self, booking_id: str, request: RescheduleRequest) -> BookingResponse:
        booking = self.get_booking(booking_id)
        booking = self._transition(booking, BookingStatus.RESCHEDULED, {
            "start_time": request.start_time,
            "end_time": request.end_time,
            "reschedule_reason": request.reason,
        })
        self.audit.info(LogSource.BOOKING, f"Booking {booking_id} rescheduled to {request.start_time.isoformat()}", booking_id)
        return BookingResponse(booking=booking, ledger_entry=self.get_ledger_entry(booking_id), message="Booking rescheduled")

    def report_dispute(self, booking_id: str, request: ReportDisputeRequest) -> BookingResponse:
        booking = self.get_booking(booking_id)
        self._check_transition(booking, BookingStatus.DISPUTED)

        completed_at = booking.completed_at
        window = timedelta(hours=self.config.dispute_window_hours)
        if completed_at is not None and utcnow() > completed_at + window:
            raise InvalidStateTransitionError(
                f"Dispute window of {self.config.dispute_window_hours} hours has closed for booking {booking_id}"
            )

        booking = self._transition(booking, BookingStatus.DISPUTED, {
            "dispute_reason": request.reason,
            "dispute_evidence": request.evidence,
            "dispute_date": utcnow(),
        })
        self.audit.warn(LogSource.BOOKING, f"Booking {booking_id} disputed: {request.reason}", booking_id)
        return BookingResponse(booking=booking, ledger_entry=self.get_ledger_entry(booking_id), message="Dispute reported")

    def resolve_dispute(self, booking_id: str, request: ResolveDisputeRequest) -> BookingResponse:
        booking = self.get_booking(booking_id)
        if booking.status != BookingStatus.DISPUTED:
            raise InvalidStateTransitionError(
                f"Cannot resolve dispute for booking with status: {booking.status.value}"
            )

        resolution = {"resolution_note": request.note, "resolved_at": utcnow()}
        entry = None

        if request.outcome == DisputeOutcome.REFUND_MENTEE:
            needs_return = (
                booking.type == BookingType.CREDIT and booking.credit_status != CreditStatus.REFUNDED
            )
            if needs_return:
                self._require_entry(booking)
            booking = self._transition(booking, BookingStatus.REFUNDED, resolution)
            if needs_return:
                entry = self.return_credits(booking, f"Dispute resolved in favour of mentee: {request.note}")
        else:
            booking = self._transition(booking, BookingStatus.COMPLETED, resolution)
            entry = self.get_ledger_entry(booking_id)

        self.audit.info(
            LogSource.BOOKING,
            f"Dispute on booking {booking_id} resolved as {request.outcome.value} by admin "
            f"{request.admin_id or 'unknown'}: {request.note}",
            booking_id,
        )
        return BookingResponse(
            booking=self.get_booking(booking_id),
            ledger_entry=entry,
            message=f"Dispute resolved: {request.outcome.value}",
        )
