from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


SYSTEM_ACCOUNT_ID = "system"


class UserRole(str, Enum):
    MENTEE = "MENTEE"
    MENTOR = "MENTOR"
    PROVIDER = "PROVIDER"
    ADMIN = "ADMIN"
    SYSTEM = "SYSTEM"


class AccountStatus(str, Enum):
    ACTIVE = "ACTIVE"
    BANNED = "BANNED"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    REJECTED = "REJECTED"


class BookingStatus(str, Enum):
    SCHEDULED = "SCHEDULED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"
    RESCHEDULED = "RESCHEDULED"
    DISPUTED = "DISPUTED"
    REFUNDED = "REFUNDED"


class BookingType(str, Enum):
    CREDIT = "CREDIT"
    SUBSCRIPTION = "SUBSCRIPTION"


class CreditStatus(str, Enum):
    PENDING = "PENDING"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"


class LedgerStatus(str, Enum):
    HOLDING = "HOLDING"
    RELEASED = "RELEASED"
    RETURNED = "RETURNED"


class EarningStatus(str, Enum):
    PENDING = "PENDING"
    PAYABLE = "PAYABLE"
    PAID = "PAID"
    REVERSED = "REVERSED"


class PayoutStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED_PENDING_PAYMENT = "APPROVED_PENDING_PAYMENT"
    PAID = "PAID"
    REJECTED = "REJECTED"
    PAYMENT_FAILED = "PAYMENT_FAILED"


class TransactionType(str, Enum):
    TOPUP = "TOPUP"
    BOOKING_USE = "BOOKING_USE"
    EARNING = "EARNING"
    REFUND = "REFUND"
    PAYOUT = "PAYOUT"
    PROVIDER_COMMISSION = "PROVIDER_COMMISSION"
    ADMIN_ADJUSTMENT = "ADMIN_ADJUSTMENT"
    CLAWBACK = "CLAWBACK"
    PLATFORM_FEE = "PLATFORM_FEE"
    SUBSCRIPTION = "SUBSCRIPTION"


class TransactionStatus(str, Enum):
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"


class CommissionStatus(str, Enum):
    PENDING = "PENDING"
    PAID = "PAID"


class DisputeOutcome(str, Enum):
    REFUND_MENTEE = "REFUND_MENTEE"
    DISMISS = "DISMISS"


class AbsentParty(str, Enum):
    MENTOR = "MENTOR"
    MENTEE = "MENTEE"


class AdjustmentKind(str, Enum):
    ADD = "add"
    SUBTRACT = "subtract"
    SET = "set"


class HistoryType(str, Enum):
    TOPUP = "topup"
    BOOKING_USE = "booking_use"
    HOLD = "hold"
    RELEASE = "release"
    EARNING = "earning"
    REFUND = "refund"
    REVERSAL = "reversal"
    PAYOUT = "payout"
    COMMISSION = "commission"
    ADMIN_ADJUSTMENT = "admin_adjustment"


class Bucket(str, Enum):
    CREDITS = "credits"
    PAYABLE = "payable"
    LIABILITY = "liability"


class LogLevel(str, Enum):
    INFO = "info"
    WARN = "warn"
    ERROR = "error"


class LogSource(str, Enum):
    BOOKING = "booking"
    PAYMENT = "payment"
    USER = "user"
    SYSTEM = "system"


# --- entities ---

class Account(BaseModel):
    user_id: str
    role: UserRole
    name: str = ""
    status: AccountStatus = AccountStatus.ACTIVE
    credits: Decimal = Decimal("0")
    payable: Decimal = Decimal("0")
    liability: Decimal = Decimal("0")
    balance: Decimal = Decimal("0")
    provider_id: Optional[str] = None
    created_at: datetime
    version: int = 0

    model_config = ConfigDict(from_attributes=True)


class Booking(BaseModel):
    id: str
    mentee_id: str
    mentor_id: str
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    status: BookingStatus
    credit_status: CreditStatus
    type: BookingType = BookingType.CREDIT
    subscription_id: Optional[str] = None
    total_cost: Decimal
    notes: Optional[str] = None
    completed_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancellation_reason: Optional[str] = None
    reschedule_reason: Optional[str] = None
    dispute_reason: Optional[str] = None
    dispute_evidence: Optional[str] = None
    dispute_date: Optional[datetime] = None
    resolution_note: Optional[str] = None
    resolved_at: Optional[datetime] = None
    created_at: datetime
    version: int = 0

    model_config = ConfigDict(from_attributes=True)


class SystemCreditLedgerEntry(BaseModel):
    id: str
    booking_id: str
    from_user_id: str
    to_user_id: str
    amount: Decimal
    status: LedgerStatus
    created_at: datetime
    updated_at: datetime
    version: int = 0

    model_config = ConfigDict(from_attributes=True)


class MentorEarning(BaseModel):
    id: str
    mentor_id: str
    booking_id: str
    amount: Decimal
    status: EarningStatus
    created_at: datetime
    paid_at: Optional[datetime] = None
    payout_id: Optional[str] = None
    version: int = 0

    model_config = ConfigDict(from_attributes=True)


class Payout(BaseModel):
    id: str
    user_id: str
    role: UserRole
    amount: Decimal
    credits_deducted: Decimal = Decimal("0")
    status: PayoutStatus
    requested_at: datetime
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    rejected_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None
    method: Optional[str] = None
    note: Optional[str] = None
    admin_note: Optional[str] = None
    evidence_file: Optional[str] = None
    payment_transaction_id: Optional[str] = None
    retry_of: Optional[str] = None
    version: int = 0

    model_config = ConfigDict(from_attributes=True)

    @property
    def reserved_amount(self) -> Decimal:
        if self.role == UserRole.PROVIDER:
            return self.amount
        return self.credits_deducted


class Transaction(BaseModel):
    id: str
    user_id: str
    amount: Decimal
    type: TransactionType
    status: TransactionStatus
    description: str = ""
    date: datetime
    related_entity_id: Optional[str] = None
    evidence_file: Optional[str] = None
    method: Optional[str] = None
    reason: Optional[str] = None
    version: int = 0

    model_config = ConfigDict(from_attributes=True)


class ProviderLevel(BaseModel):
    id: str
    name: str
    commission_percent: Decimal

    model_config = ConfigDict(from_attributes=True)


class Provider(BaseModel):
    id: str
    level_id: Optional[str] = None
    referral_code: str
    payout_details: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class Referral(BaseModel):
    id: str
    provider_id: str
    mentee_id: str
    signup_date: datetime
    total_spending: Decimal = Decimal("0")
    total_commission: Decimal = Decimal("0")

    model_config = ConfigDict(from_attributes=True)


class ProviderCommission(BaseModel):
    id: str
    provider_id: str
    topup_id: str
    mentee_id: str
    topup_amount_usd: Decimal
    commission_percent: Decimal
    commission_amount_usd: Decimal
    commission_credits: Decimal
    status: CommissionStatus
    created_at: datetime
    paid_at: Optional[datetime] = None
    version: int = 0

    model_config = ConfigDict(from_attributes=True)


class CreditHistoryEntry(BaseModel):
    id: str
    user_id: str
    type: HistoryType
    amount: Decimal
    balance_after: Decimal
    bucket: Bucket = Bucket.CREDITS
    reference_id: Optional[str] = None
    note: Optional[str] = None
    timestamp: datetime
    admin_id: Optional[str] = None

    model_config = ConfigDict(from_attributes=True)


class PricingCountry(BaseModel):
    id: str
    code: str
    name: str
    multiplier: Decimal
    currency: str = "USD"
    timezone: str = "UTC"

    model_config = ConfigDict(from_attributes=True)


class PricingGroup(BaseModel):
    id: str
    name: str
    multiplier: Decimal

    model_config = ConfigDict(from_attributes=True)


class SystemLog(BaseModel):
    ts: int
    lvl: LogLevel
    src: LogSource
    msg: str


# --- requests ---

class OpenAccountRequest(BaseModel):
    user_id: str = Field(..., min_length=1)
    role: UserRole
    name: str = ""
    credits: Decimal = Field(default=Decimal("0"), ge=0)
    provider_id: Optional[str] = Field(default=None, description="Referring provider for mentees")
    level_id: Optional[str] = Field(default=None, description="Provider level for providers")


class TopupRequest(BaseModel):
    amount_usd: Decimal = Field(..., gt=0)
    method: str = "card"


class CreditAdjustmentRequest(BaseModel):
    kind: AdjustmentKind
    amount: Decimal = Field(..., ge=0)
    note: str = ""
    admin_id: Optional[str] = None


class CreateBookingRequest(BaseModel):
    mentee_id: str
    mentor_id: str
    total_cost: Decimal
    type: BookingType = BookingType.CREDIT
    subscription_id: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    notes: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "mentee_id": "mentee_1",
            "mentor_id": "mentor_1",
            "total_cost": 30,
            "type": "CREDIT"
        }
    })


class CancelBookingRequest(BaseModel):
    cancelled_by: str
    reason: str = ""


class NoShowRequest(BaseModel):
    absent_party: AbsentParty


class RescheduleRequest(BaseModel):
    start_time: datetime
    end_time: Optional[datetime] = None
    reason: str = ""


class ReportDisputeRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    evidence: Optional[str] = None


class ResolveDisputeRequest(BaseModel):
    outcome: DisputeOutcome
    note: str = ""
    admin_id: Optional[str] = None


class PayoutRequest(BaseModel):
    user_id: str
    amount: Decimal = Field(..., gt=0, description="Credits for mentors, USD for providers")
    method: str = Field(..., min_length=1)
    note: Optional[str] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {
            "user_id": "mentor_1",
            "amount": 50,
            "method": "PayPal",
            "note": "Monthly withdrawal"
        }
    })


class ApprovePayoutRequest(BaseModel):
    method: Optional[str] = None
    admin_note: Optional[str] = None


class RejectPayoutRequest(BaseModel):
    reason: str = Field(..., min_length=1)
    admin_note: Optional[str] = None


class MarkPayoutPaidRequest(BaseModel):
    evidence_file: str = ""


class MarkPayoutFailedRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class RetryPayoutRequest(BaseModel):
    admin_note: Optional[str] = None


class RecordCommissionRequest(BaseModel):
    topup_transaction_id: str
    provider_id: str


class SetLevelCommissionRequest(BaseModel):
    commission_percent: Decimal = Field(..., ge=0, le=100)


# --- responses ---

class BookingResponse(BaseModel):
    booking: Booking
    ledger_entry: Optional[SystemCreditLedgerEntry] = None
    message: str


class PayoutResponse(BaseModel):
    payout: Payout
    transaction: Optional[Transaction] = None
    message: str


class BalanceDetails(BaseModel):
    user_id: str
    credits: Decimal
    payable: Decimal
    reserved: Decimal
    available: Decimal
    liability: Decimal
    paid: Decimal
    pending: Decimal


class CreditHistoryResponse(BaseModel):
    user_id: str
    entries: list[CreditHistoryEntry]
    total_count: int
    current_credits: Decimal


class PriceQuote(BaseModel):
    mentor_group_id: str
    country_id: Optional[str] = None
    base_price: Decimal
    country_multiplier: Decimal
    group_multiplier: Decimal
    price: Decimal

    @field_validator("price")
    @classmethod
    def _non_negative(cls, value: Decimal) -> Decimal:
        if value < 0:
            raise ValueError("price must be non-negative")
        return value
