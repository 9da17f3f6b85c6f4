from decimal import Decimal
from typing import Optional

from .accounts import AccountService, new_id, quantize, utcnow
from .config import SettlementConfig
from .errors import (
    AlreadyPaidError,
    ConflictError,
    InsufficientPayableBalanceError,
    NotFoundError,
    ValidationError,
)
from .models import (
    AccountStatus,
    Bucket,
    CommissionStatus,
    HistoryType,
    LogSource,
    ProviderCommission,
    ProviderLevel,
    RecordCommissionRequest,
    Referral,
    SetLevelCommissionRequest,
    Transaction,
    TransactionStatus,
    TransactionType,
    UserRole,
)
from .syslog import AuditLog


class CommissionService:
    def __init__(self, storage, accounts: AccountService, config: SettlementConfig, audit: AuditLog):
        self.storage = storage
        self.accounts = accounts
        self.config = config
        self.audit = audit

    def get_commission(self, commission_id: str) -> ProviderCommission:
        data = self.storage.get("commissions", commission_id)
        if not data:
            raise NotFoundError(f"Commission {commission_id} not found")
        return ProviderCommission(**data)

    def list_commissions(self, provider_id: Optional[str] = None) -> list[ProviderCommission]:
        commissions = [
            ProviderCommission(**c) for c in self.storage.find(
                "commissions", lambda c: provider_id is None or c["provider_id"] == provider_id
            )
        ]
        commissions.sort(key=lambda c: c.created_at, reverse=True)
        return commissions

    def get_level(self, level_id: str) -> ProviderLevel:
        data = self.storage.get("provider_levels", level_id)
        if not data:
            raise NotFoundError(f"Provider level {level_id} not found")
        return ProviderLevel(**data)

    def provider_rate(self, provider_id: str) -> Decimal:
        provider = self.storage.get("providers", provider_id)
        if not provider:
            raise NotFoundError(f"Provider {provider_id} not found")
        level = None
        if provider.get("level_id"):
            level = self.storage.get("provider_levels", provider["level_id"])
        if level is None:
            # Providers without a known level earn at the configured default level
            return self.get_level(self.config.default_level_id).commission_percent
        return Decimal(level["commission_percent"])

    def _referral_for(self, mentee_id: str) -> Optional[Referral]:
        referrals = self.storage.find("referrals", lambda r: r["mentee_id"] == mentee_id)
        return Referral(**referrals[0]) if referrals else None

    def process_topup_commission(self, topup: Transaction) -> Optional[ProviderCommission]:
        referral = self._referral_for(topup.user_id)
        if referral is None:
            return None

        provider = self.accounts.get_account(referral.provider_id)
        if provider.status != AccountStatus.ACTIVE:
            self.audit.warn(
                LogSource.PAYMENT,
                f"Skipped commission for top-up {topup.id}: provider {provider.user_id} is {provider.status.value}",
                topup.id,
            )
            return None
        if self.storage.find("commissions", lambda c: c["topup_id"] == topup.id):
            self.audit.warn(LogSource.PAYMENT, f"Commission for top-up {topup.id} already recorded", topup.id)
            return None

        return self.record_commission(
            RecordCommissionRequest(topup_transaction_id=topup.id, provider_id=referral.provider_id)
        )

    def record_commission(self, request: RecordCommissionRequest) -> ProviderCommission:
        topup = self.accounts.get_transaction(request.topup_transaction_id)
        if topup.type != TransactionType.TOPUP or topup.status != TransactionStatus.SUCCESS:
            raise ValidationError(f"Transaction {topup.id} is not a successful top-up")
        provider = self.accounts.get_account(request.provider_id)
        if provider.role != UserRole.PROVIDER:
            raise ValidationError(f"User {request.provider_id} is not a provider")
        if self.storage.find("commissions", lambda c: c["topup_id"] == topup.id):
            raise ConflictError(f"Commission for top-up {topup.id} already recorded")

        percent = self.provider_rate(request.provider_id)
        amount_usd = quantize(topup.amount * percent / 100)
        credits = quantize(topup.amount * self.config.topup_ratio * percent / 100)

        commission_id = new_id("pc")
        commission = self.storage.insert("commissions", {
            "id": commission_id,
            "provider_id": request.provider_id,
            "topup_id": topup.id,
            "mentee_id": topup.user_id,
            "topup_amount_usd": topup.amount,
            "commission_percent": percent,
            "commission_amount_usd": amount_usd,
            "commission_credits": credits,
            "status": CommissionStatus.PENDING,
            "created_at": utcnow(),
        })
        self.accounts.move(
            request.provider_id, Bucket.PAYABLE, amount_usd, HistoryType.COMMISSION,
            reference_id=commission_id, note=f"Commission {percent}% on top-up #{topup.id}",
        )
        self.accounts.record_transaction(
            request.provider_id, amount_usd, TransactionType.PROVIDER_COMMISSION, TransactionStatus.SUCCESS,
            f"Commission {percent}% on ${topup.amount} top-up by {topup.user_id}",
            related_entity_id=commission_id,
        )

        referral = self._referral_for(topup.user_id)
        if referral is not None and referral.provider_id == request.provider_id:
            self.storage.compare_and_set(
                "referrals", referral.id, {"total_commission": referral.total_commission},
                {
                    "total_spending": referral.total_spending + topup.amount,
                    "total_commission": referral.total_commission + amount_usd,
                },
            )

        self.audit.info(
            LogSource.PAYMENT,
            f"Recorded ${amount_usd} commission ({percent}%) for provider {request.provider_id}",
            commission_id,
        )
        return ProviderCommission(**commission)

    def mark_commission_paid(self, commission_id: str) -> ProviderCommission:
        commission = self.get_commission(commission_id)
        if commission.status == CommissionStatus.PAID:
            raise AlreadyPaidError(f"Commission {commission_id} is already paid")

        available = self.accounts.payable_available(commission.provider_id)
        if commission.commission_amount_usd > available:
            raise InsufficientPayableBalanceError(
                f"Insufficient payable balance. Required: {commission.commission_amount_usd}, Available: {available}"
            )

        stored = self.storage.compare_and_set(
            "commissions", commission_id, {"status": CommissionStatus.PENDING},
            {"status": CommissionStatus.PAID, "paid_at": utcnow()},
        )
        self.accounts.move(
            commission.provider_id, Bucket.PAYABLE, -commission.commission_amount_usd, HistoryType.PAYOUT,
            reference_id=commission_id, note=f"Commission #{commission_id} paid",
        )
        self.audit.info(
            LogSource.PAYMENT,
            f"Commission {commission_id} paid to {commission.provider_id} (${commission.commission_amount_usd})",
            commission_id,
        )
        return ProviderCommission(**stored)

    def set_level_commission(self, level_id: str, request: SetLevelCommissionRequest) -> ProviderLevel:
        level = self.get_level(level_id)
        stored = self.storage.compare_and_set(
            "provider_levels", level_id, {"commission_percent": level.commission_percent},
            {"commission_percent": request.commission_percent},
        )
        self.audit.info(
            LogSource.SYSTEM,
            f"Level {level_id} commission changed from {level.commission_percent}% to {request.commission_percent}%",
            level_id,
        )
        return ProviderLevel(**stored)

    def pending_commissions(self, provider_id: str) -> list[ProviderCommission]:
        return [c for c in self.list_commissions(provider_id) if c.status == CommissionStatus.PENDING]

    def total_pending(self, provider_id: str) -> Decimal:
        return sum((c.commission_amount_usd for c in self.pending_commissions(provider_id)), Decimal("0"))
