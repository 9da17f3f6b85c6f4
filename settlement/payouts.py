from decimal import Decimal
from typing import Optional

from .accounts import AccountService, OPEN_PAYOUT_STATUSES, new_id, quantize, utcnow
from .config import SettlementConfig
from .errors import (
    AlreadyPaidError,
    BelowMinimumError,
    ConflictError,
    InsufficientPayableBalanceError,
    InvalidStateTransitionError,
    MissingEvidenceError,
    NotFoundError,
    ValidationError,
)
from .models import (
    ApprovePayoutRequest,
    BalanceDetails,
    Bucket,
    CommissionStatus,
    EarningStatus,
    HistoryType,
    LogSource,
    MarkPayoutFailedRequest,
    MarkPayoutPaidRequest,
    Payout,
    PayoutRequest,
    PayoutResponse,
    PayoutStatus,
    RejectPayoutRequest,
    RetryPayoutRequest,
    Transaction,
    TransactionStatus,
    TransactionType,
    UserRole,
)
from .syslog import AuditLog


class PayoutService:
    def __init__(self, storage, accounts: AccountService, config: SettlementConfig, audit: AuditLog):
        self.storage = storage
        self.accounts = accounts
        self.config = config
        self.audit = audit

    def _load(self, payout_id: str) -> Payout:
        data = self.storage.get("payouts", payout_id)
        if not data:
            raise NotFoundError(f"Payout {payout_id} not found")
        return Payout(**data)

    def get_payout(self, payout_id: str) -> Payout:
        payout = self._load(payout_id)
        if payout.payment_transaction_id and self.storage.get("transactions", payout.payment_transaction_id) is None:
            raise NotFoundError(
                f"Payout {payout_id} references missing transaction {payout.payment_transaction_id}"
            )
        return payout

    def list_payouts(self, status: Optional[PayoutStatus] = None, user_id: Optional[str] = None) -> list[Payout]:
        payouts = [
            Payout(**p) for p in self.storage.find(
                "payouts",
                lambda p: (status is None or p["status"] == status) and (user_id is None or p["user_id"] == user_id),
            )
        ]
        payouts.sort(key=lambda p: p.requested_at, reverse=True)
        return payouts

    def _linked_transaction(self, payout: Payout) -> Transaction:
        if not payout.payment_transaction_id:
            raise NotFoundError(f"Payout {payout.id} has no linked payment transaction")
        return self.accounts.get_transaction(payout.payment_transaction_id)

    def _response(self, payout_id: str, message: str) -> PayoutResponse:
        payout = self.get_payout(payout_id)
        transaction = None
        if payout.payment_transaction_id:
            transaction = self.accounts.get_transaction(payout.payment_transaction_id)
        return PayoutResponse(payout=payout, transaction=transaction, message=message)

    def _approval_headroom(self, payout: Payout) -> Decimal:
        """Payable left for this payout once other open payouts and clawbacks are covered."""
        account = self.accounts.get_account(payout.user_id)
        others = self.accounts.reserved(payout.user_id) - payout.reserved_amount
        return account.payable - account.liability - others

    def request_payout(self, request: PayoutRequest) -> PayoutResponse:
        account = self.accounts.get_account(request.user_id)
        if account.role == UserRole.MENTOR:
            minimum = self.config.min_payout_credits
            if request.amount < minimum:
                raise BelowMinimumError(f"Minimum withdrawal is {minimum} credits")
            credits_deducted = request.amount
            amount_usd = quantize(request.amount * self.config.payout_ratio)
            unit = "credits"
        elif account.role == UserRole.PROVIDER:
            minimum = self.config.min_provider_payout_usd
            if request.amount < minimum:
                raise BelowMinimumError(f"Minimum withdrawal is ${minimum}")
            credits_deducted = Decimal("0")
            amount_usd = quantize(request.amount)
            unit = "USD"
        else:
            raise ValidationError(f"User {request.user_id} cannot request payouts")

        payout_id = new_id("po")
        with self.storage.atomic():
            available = self.accounts.payable_available(request.user_id)
            if request.amount > available:
                raise InsufficientPayableBalanceError(
                    f"Insufficient payable balance. Requested: {request.amount} {unit}, Available: {available} {unit}"
                )
            self.storage.insert("payouts", {
                "id": payout_id,
                "user_id": request.user_id,
                "role": account.role,
                "amount": amount_usd,
                "credits_deducted": credits_deducted,
                "status": PayoutStatus.PENDING,
                "requested_at": utcnow(),
                "method": request.method,
                "note": request.note,
            })
        self.audit.info(
            LogSource.PAYMENT, f"Payout {payout_id} requested by {request.user_id}: {request.amount} {unit}", payout_id
        )
        return self._response(payout_id, "Payout requested")

    def approve_payout(self, payout_id: str, request: ApprovePayoutRequest) -> PayoutResponse:
        with self.storage.atomic():
            payout = self._load(payout_id)
            if payout.status != PayoutStatus.PENDING:
                raise InvalidStateTransitionError(f"Cannot approve payout with status: {payout.status.value}")
            headroom = self._approval_headroom(payout)
            if payout.reserved_amount > headroom:
                raise InsufficientPayableBalanceError(
                    f"Cannot approve payout {payout_id}: {payout.reserved_amount} exceeds payable balance "
                    f"of {max(Decimal('0'), headroom)}"
                )

            transaction_id = new_id("tx")
            method = request.method or payout.method
            self.storage.compare_and_set("payouts", payout_id, {"status": PayoutStatus.PENDING}, {
                "status": PayoutStatus.APPROVED_PENDING_PAYMENT,
                "approved_at": utcnow(),
                "method": method,
                "admin_note": request.admin_note,
                "payment_transaction_id": transaction_id,
            })
            self.accounts.record_transaction(
                payout.user_id, payout.amount, TransactionType.PAYOUT, TransactionStatus.PENDING,
                f"Payout #{payout_id} via {method}", related_entity_id=payout_id,
                method=method, transaction_id=transaction_id,
            )
        self.audit.info(LogSource.PAYMENT, f"Payout {payout_id} approved (${payout.amount} via {method})", payout_id)
        return self._response(payout_id, "Payout approved, awaiting payment")

    def reject_payout(self, payout_id: str, request: RejectPayoutRequest) -> PayoutResponse:
        admin_note = f"{request.reason} ({request.admin_note})" if request.admin_note else request.reason
        with self.storage.atomic():
            payout = self.get_payout(payout_id)
            if payout.status not in OPEN_PAYOUT_STATUSES:
                raise InvalidStateTransitionError(f"Cannot reject payout with status: {payout.status.value}")

            self.storage.compare_and_set("payouts", payout_id, {"status": payout.status}, {
                "status": PayoutStatus.REJECTED,
                "rejected_at": utcnow(),
                "admin_note": admin_note,
            })
            if payout.status == PayoutStatus.APPROVED_PENDING_PAYMENT:
                transaction = self._linked_transaction(payout)
                self.storage.compare_and_set(
                    "transactions", transaction.id, {"status": TransactionStatus.PENDING},
                    {"status": TransactionStatus.FAILED, "reason": request.reason},
                )
            self.accounts.settle_liability(payout.user_id, reference_id=payout_id)
        self.audit.warn(LogSource.PAYMENT, f"Payout {payout_id} rejected: {request.reason}", payout_id)
        return self._response(payout_id, "Payout rejected")

    def mark_payout_paid(self, payout_id: str, request: MarkPayoutPaidRequest) -> PayoutResponse:
        evidence = (request.evidence_file or "").strip()
        if not evidence:
            raise MissingEvidenceError("Payment evidence is required before marking a payout as paid")

        with self.storage.atomic():
            payout = self.get_payout(payout_id)
            if payout.status == PayoutStatus.PAID:
                raise AlreadyPaidError(f"Payout {payout_id} is already paid")
            if payout.status != PayoutStatus.APPROVED_PENDING_PAYMENT:
                raise InvalidStateTransitionError(f"Cannot mark payout as paid with status: {payout.status.value}")
            transaction = self._linked_transaction(payout)
            payable = self.accounts.get_account(payout.user_id).payable
            if payout.reserved_amount > payable:
                raise InsufficientPayableBalanceError(
                    f"Cannot pay payout {payout_id}: {payout.reserved_amount} exceeds payable balance of {payable}"
                )

            self.storage.compare_and_set(
                "payouts", payout_id, {"status": PayoutStatus.APPROVED_PENDING_PAYMENT},
                {"status": PayoutStatus.PAID, "paid_at": utcnow(), "evidence_file": evidence},
            )
            self.storage.compare_and_set(
                "transactions", transaction.id, {"status": TransactionStatus.PENDING},
                {"status": TransactionStatus.SUCCESS, "evidence_file": evidence},
            )
            self.accounts.move(
                payout.user_id, Bucket.PAYABLE, -payout.reserved_amount, HistoryType.PAYOUT,
                reference_id=payout_id, note=f"Payout #{payout_id}",
            )
            if payout.role == UserRole.PROVIDER:
                self._settle_commissions(payout.user_id, payout.amount)
            else:
                self._settle_earnings(payout.user_id, payout.credits_deducted, payout_id)

        self.audit.info(LogSource.PAYMENT, f"Payout {payout_id} paid (${payout.amount}), evidence {evidence}", payout_id)
        return self._response(payout_id, "Payout marked as paid")

    def _settle_earnings(self, mentor_id: str, credits: Decimal, payout_id: str) -> None:
        remaining = credits
        earnings = self.storage.find(
            "mentor_earnings", lambda e: e["mentor_id"] == mentor_id and e["status"] == EarningStatus.PAYABLE
        )
        for earning in sorted(earnings, key=lambda e: e["created_at"]):
            if earning["amount"] > remaining:
                break
            self.storage.compare_and_set(
                "mentor_earnings", earning["id"], {"status": EarningStatus.PAYABLE},
                {"status": EarningStatus.PAID, "paid_at": utcnow(), "payout_id": payout_id},
            )
            remaining -= earning["amount"]

    def _settle_commissions(self, provider_id: str, amount_usd: Decimal) -> None:
        remaining = amount_usd
        commissions = self.storage.find(
            "commissions", lambda c: c["provider_id"] == provider_id and c["status"] == CommissionStatus.PENDING
        )
        for commission in sorted(commissions, key=lambda c: c["created_at"]):
            if commission["commission_amount_usd"] > remaining:
                break
            self.storage.compare_and_set(
                "commissions", commission["id"], {"status": CommissionStatus.PENDING},
                {"status": CommissionStatus.PAID, "paid_at": utcnow()},
            )
            remaining -= commission["commission_amount_usd"]

    def mark_payout_failed(self, payout_id: str, request: MarkPayoutFailedRequest) -> PayoutResponse:
        with self.storage.atomic():
            payout = self.get_payout(payout_id)
            if payout.status != PayoutStatus.APPROVED_PENDING_PAYMENT:
                raise InvalidStateTransitionError(f"Cannot mark payout as failed with status: {payout.status.value}")
            transaction = self._linked_transaction(payout)

            self.storage.compare_and_set(
                "payouts", payout_id, {"status": PayoutStatus.APPROVED_PENDING_PAYMENT},
                {"status": PayoutStatus.PAYMENT_FAILED, "failed_at": utcnow(), "admin_note": request.reason},
            )
            self.storage.compare_and_set(
                "transactions", transaction.id, {"status": TransactionStatus.PENDING},
                {"status": TransactionStatus.FAILED, "reason": request.reason},
            )
            self.accounts.settle_liability(payout.user_id, reference_id=payout_id)
        self.audit.error(LogSource.PAYMENT, f"Payout {payout_id} payment failed: {request.reason}", payout_id)
        return self._response(payout_id, "Payout marked as failed")

    def retry_payout(self, payout_id: str, request: RetryPayoutRequest) -> PayoutResponse:
        retry_id = new_id("po")
        with self.storage.atomic():
            payout = self.get_payout(payout_id)
            if payout.status != PayoutStatus.PAYMENT_FAILED:
                raise InvalidStateTransitionError(f"Only failed payouts can be retried, status is {payout.status.value}")
            if self.storage.find("payouts", lambda p: p.get("retry_of") == payout_id):
                raise ConflictError(f"Payout {payout_id} has already been retried")

            available = self.accounts.payable_available(payout.user_id)
            if payout.reserved_amount > available:
                raise InsufficientPayableBalanceError(
                    f"Insufficient payable balance to retry. Requested: {payout.reserved_amount}, Available: {available}"
                )
            self.storage.insert("payouts", {
                "id": retry_id,
                "user_id": payout.user_id,
                "role": payout.role,
                "amount": payout.amount,
                "credits_deducted": payout.credits_deducted,
                "status": PayoutStatus.PENDING,
                "requested_at": utcnow(),
                "method": payout.method,
                "note": payout.note,
                "admin_note": request.admin_note,
                "retry_of": payout_id,
            })
        self.audit.info(LogSource.PAYMENT, f"Payout {payout_id} retried as {retry_id}", retry_id)
        return self._response(retry_id, "Payout resubmitted for approval")

    def balance_details(self, user_id: str) -> BalanceDetails:
        account = self.accounts.get_account(user_id)
        reserved = self.accounts.reserved(user_id)
        paid = sum(
            (Payout(**p).reserved_amount for p in self.storage.find(
                "payouts", lambda p: p["user_id"] == user_id and p["status"] == PayoutStatus.PAID
            )),
            Decimal("0"),
        )
        return BalanceDetails(
            user_id=user_id,
            credits=account.credits,
            payable=account.payable,
            reserved=reserved,
            available=self.accounts.payable_available(user_id),
            liability=account.liability,
            paid=paid,
            pending=reserved,
        )
