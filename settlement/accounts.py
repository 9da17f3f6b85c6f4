from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional
from uuid import uuid4

from .config import SettlementConfig
from .errors import (
    InsufficientCreditsError,
    InsufficientPayableBalanceError,
    NotFoundError,
    ValidationError,
)
from .models import (
    SYSTEM_ACCOUNT_ID,
    Account,
    AdjustmentKind,
    Bucket,
    CreditAdjustmentRequest,
    CreditHistoryEntry,
    CreditHistoryResponse,
    HistoryType,
    LogSource,
    OpenAccountRequest,
    Payout,
    PayoutStatus,
    TopupRequest,
    Transaction,
    TransactionStatus,
    TransactionType,
    UserRole,
)
from .syslog import AuditLog


CENT = Decimal("0.01")
OPEN_PAYOUT_STATUSES = (PayoutStatus.PENDING, PayoutStatus.APPROVED_PENDING_PAYMENT)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid4().hex[:16]}"


def quantize(amount: Decimal) -> Decimal:
    return Decimal(amount).quantize(CENT, rounding=ROUND_HALF_UP)


class AccountService:
    def __init__(self, storage, config: SettlementConfig, audit: AuditLog):
        self.storage = storage
        self.config = config
        self.audit = audit

    def open_account(self, request: OpenAccountRequest) -> Account:
        if request.user_id == SYSTEM_ACCOUNT_ID or request.role == UserRole.SYSTEM:
            raise ValidationError("The system account is created by the platform")
        if request.role != UserRole.MENTEE and request.provider_id:
            raise ValidationError("Only mentees can be referred by a provider")
        if request.provider_id:
            provider = self.get_account(request.provider_id)
            if provider.role != UserRole.PROVIDER:
                raise ValidationError(f"User {request.provider_id} is not a provider")
        if request.level_id and self.storage.get("provider_levels", request.level_id) is None:
            raise NotFoundError(f"Provider level {request.level_id} not found")

        now = utcnow()
        account_data = {
            "user_id": request.user_id,
            "role": request.role,
            "name": request.name,
            "credits": Decimal("0"),
            "payable": Decimal("0"),
            "liability": Decimal("0"),
            "balance": Decimal("0"),
            "provider_id": request.provider_id,
            "created_at": now,
        }
        account = Account(**self.storage.insert("accounts", Account(**account_data).model_dump()))

        if request.role == UserRole.PROVIDER:
            self.storage.insert("providers", {
                "id": request.user_id,
                "level_id": request.level_id,
                "referral_code": f"REF-{request.user_id.upper()}",
                "payout_details": None,
            })
        if request.provider_id:
            self.storage.insert("referrals", {
                "id": new_id("ref"),
                "provider_id": request.provider_id,
                "mentee_id": request.user_id,
                "signup_date": now,
                "total_spending": Decimal("0"),
                "total_commission": Decimal("0"),
            })
        if request.credits > 0:
            account = self.move(
                request.user_id, Bucket.CREDITS, request.credits, HistoryType.ADMIN_ADJUSTMENT,
                note="Opening balance",
            )

        self.audit.info(LogSource.USER, f"Opened {request.role.value} account {request.user_id}", request.user_id)
        return account

    def get_account(self, user_id: str) -> Account:
        data = self.storage.get("accounts", user_id)
        if not data:
            raise NotFoundError(f"User {user_id} not found")
        return Account(**data)

    def move(
        self,
        user_id: str,
        bucket: Bucket,
        amount: Decimal,
        history_type: HistoryType,
        reference_id: Optional[str] = None,
        note: Optional[str] = None,
        admin_id: Optional[str] = None,
    ) -> Account:
        """Apply a signed change to one balance bucket and record it in the credit history.

        For the liability bucket the amount is the change in the holder's net position,
        so a negative amount increases what the user owes.
        """
        account = self.get_account(user_id)
        field_name = bucket.value
        current = getattr(account, field_name)
        new_value = current - amount if bucket == Bucket.LIABILITY else current + amount

        if new_value < 0:
            if bucket == Bucket.CREDITS:
                raise InsufficientCreditsError(
                    f"Insufficient credits. Required: {abs(amount)}, Available: {current}"
                )
            if bucket == Bucket.PAYABLE:
                raise InsufficientPayableBalanceError(
                    f"Insufficient payable balance. Required: {abs(amount)}, Available: {current}"
                )
            raise ValidationError(f"Liability for {user_id} cannot be settled below zero")

        stored = self.storage.compare_and_set(
            "accounts", user_id, {"version": account.version}, {field_name: new_value}
        )
        self.storage.insert("credit_history", {
            "id": new_id("ch"),
            "user_id": user_id,
            "type": history_type,
            "amount": amount,
            "balance_after": -new_value if bucket == Bucket.LIABILITY else new_value,
            "bucket": bucket,
            "reference_id": reference_id,
            "note": note,
            "timestamp": utcnow(),
            "admin_id": admin_id,
        })
        return Account(**stored)

    def record_transaction(
        self,
        user_id: str,
        amount: Decimal,
        tx_type: TransactionType,
        status: TransactionStatus,
        description: str,
        related_entity_id: Optional[str] = None,
        method: Optional[str] = None,
        transaction_id: Optional[str] = None,
    ) -> Transaction:
        data = {
            "id": transaction_id or new_id("tx"),
            "user_id": user_id,
            "amount": amount,
            "type": tx_type,
            "status": status,
            "description": description,
            "date": utcnow(),
            "related_entity_id": related_entity_id,
            "evidence_file": None,
            "method": method,
            "reason": None,
        }
        return Transaction(**self.storage.insert("transactions", data))

    def get_transaction(self, transaction_id: str) -> Transaction:
        data = self.storage.get("transactions", transaction_id)
        if not data:
            raise NotFoundError(f"Transaction {transaction_id} not found")
        return Transaction(**data)

    def topup(self, user_id: str, request: TopupRequest) -> Transaction:
        account = self.get_account(user_id)
        if account.role != UserRole.MENTEE:
            raise ValidationError("Only mentees can top up credits")

        amount_usd = quantize(request.amount_usd)
        credits = quantize(amount_usd * self.config.topup_ratio)
        transaction = self.record_transaction(
            user_id, amount_usd, TransactionType.TOPUP, TransactionStatus.SUCCESS,
            f"Credit top-up via {request.method}: ${amount_usd} -> {credits} credits",
            method=request.method,
        )
        self.move(user_id, Bucket.CREDITS, credits, HistoryType.TOPUP,
                  reference_id=transaction.id, note=f"Top-up via {request.method}")
        self.audit.info(LogSource.PAYMENT, f"User {user_id} topped up ${amount_usd} ({credits} credits)", transaction.id)
        return transaction

    def adjust_credits(self, user_id: str, request: CreditAdjustmentRequest) -> Account:
        account = self.get_account(user_id)
        if request.kind == AdjustmentKind.ADD:
            delta = request.amount
        elif request.kind == AdjustmentKind.SUBTRACT:
            delta = -request.amount
        else:
            delta = request.amount - account.credits

        if account.credits + delta < 0:
            raise InsufficientCreditsError(
                f"Cannot subtract {request.amount} credits from {user_id}: balance is {account.credits}"
            )

        transaction = self.record_transaction(
            user_id, delta, TransactionType.ADMIN_ADJUSTMENT, TransactionStatus.SUCCESS,
            request.note or f"Admin adjustment ({request.kind.value})",
        )
        updated = self.move(
            user_id, Bucket.CREDITS, delta, HistoryType.ADMIN_ADJUSTMENT,
            reference_id=transaction.id, note=request.note, admin_id=request.admin_id,
        )
        self.audit.info(
            LogSource.USER,
            f"Admin {request.admin_id or 'unknown'} adjusted credits of {user_id} by {delta} (now {updated.credits})",
            user_id,
        )
        return updated

    def history(self, user_id: str, limit: int = 50, offset: int = 0) -> CreditHistoryResponse:
        account = self.get_account(user_id)
        entries = [
            CreditHistoryEntry(**e)
            for e in self.storage.find("credit_history", lambda e: e["user_id"] == user_id)
        ]
        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return CreditHistoryResponse(
            user_id=user_id,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            current_credits=account.credits,
        )

    def open_payouts(self, user_id: str) -> list[Payout]:
        return [
            Payout(**p) for p in self.storage.find(
                "payouts", lambda p: p["user_id"] == user_id and p["status"] in OPEN_PAYOUT_STATUSES
            )
        ]

    def reserved(self, user_id: str) -> Decimal:
        return sum((p.reserved_amount for p in self.open_payouts(user_id)), Decimal("0"))

    def payable_available(self, user_id: str) -> Decimal:
        """Payable that is neither reserved by an open payout nor owed back as a clawback."""
        account = self.get_account(user_id)
        return max(Decimal("0"), account.payable - self.reserved(user_id) - account.liability)

    def settle_liability(self, user_id: str, reference_id: Optional[str] = None) -> Decimal:
        """Apply unreserved payable to an outstanding clawback. Returns the amount settled."""
        with self.storage.atomic():
            account = self.get_account(user_id)
            settle = min(account.liability, account.payable - self.reserved(user_id))
            if settle <= 0:
                return Decimal("0")
            self.move(
                user_id, Bucket.PAYABLE, -settle, HistoryType.REVERSAL,
                reference_id=reference_id, note="Payable applied to outstanding clawback",
            )
            self.move(
                user_id, Bucket.LIABILITY, settle, HistoryType.REVERSAL,
                reference_id=reference_id, note="Clawback settled from payable",
            )
        self.audit.info(LogSource.PAYMENT, f"Settled {settle} of outstanding clawback for {user_id}", reference_id)
        return settle
