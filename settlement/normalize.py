"""
Migration layer for legacy status and type values.

Older snapshots mix casings and synonyms for the same concept
('success' / 'COMPLETED', 'PAYOUT' / 'mentor_payout', 'holding' / 'HOLDING')
and use camelCase keys. Every record loaded from a snapshot passes through
``normalize_record`` so the engines only ever see canonical enums.
"""

import re
from typing import Any, Callable

from .errors import ValidationError
from .models import (
    BookingStatus,
    BookingType,
    CommissionStatus,
    CreditStatus,
    EarningStatus,
    HistoryType,
    LedgerStatus,
    PayoutStatus,
    TransactionStatus,
    TransactionType,
)


TRANSACTION_STATUS_ALIASES = {
    "PENDING": TransactionStatus.PENDING,
    "APPROVED": TransactionStatus.PENDING,
    "SUCCESS": TransactionStatus.SUCCESS,
    "COMPLETED": TransactionStatus.SUCCESS,
    "FAILED": TransactionStatus.FAILED,
    "REJECTED": TransactionStatus.FAILED,
}

TRANSACTION_TYPE_ALIASES = {
    "TOPUP": TransactionType.TOPUP,
    "CREDIT_TOPUP": TransactionType.TOPUP,
    "BOOKING_USE": TransactionType.BOOKING_USE,
    "EARNING": TransactionType.EARNING,
    "REFUND": TransactionType.REFUND,
    "REFUND_CREDIT": TransactionType.REFUND,
    "SUBSCRIPTION_REFUND": TransactionType.REFUND,
    "PAYOUT": TransactionType.PAYOUT,
    "MENTOR_PAYOUT": TransactionType.PAYOUT,
    "PROVIDER_PAYOUT": TransactionType.PAYOUT,
    "PROVIDER_COMMISSION": TransactionType.PROVIDER_COMMISSION,
    "ADMIN_ADJUSTMENT": TransactionType.ADMIN_ADJUSTMENT,
    "CLAWBACK": TransactionType.CLAWBACK,
    "PLATFORM_FEE": TransactionType.PLATFORM_FEE,
    "SUBSCRIPTION": TransactionType.SUBSCRIPTION,
    "SUBSCRIPTION_PURCHASE": TransactionType.SUBSCRIPTION,
    "SUBSCRIPTION_RENEWAL": TransactionType.SUBSCRIPTION,
    "SUBSCRIPTION_UPGRADE": TransactionType.SUBSCRIPTION,
    "SUBSCRIPTION_DOWNGRADE": TransactionType.SUBSCRIPTION,
}

HISTORY_TYPE_ALIASES = {
    "SUBSCRIPTION_PURCHASE": HistoryType.BOOKING_USE,
    "SUBSCRIPTION_RENEWAL": HistoryType.BOOKING_USE,
    "SUBSCRIPTION_UPGRADE": HistoryType.BOOKING_USE,
    "SUBSCRIPTION_DOWNGRADE": HistoryType.BOOKING_USE,
    "SUBSCRIPTION_REFUND": HistoryType.REFUND,
}

# Legacy payouts were keyed by mentorId even for providers.
KEY_ALIASES = {
    "payouts": {"mentor_id": "user_id"},
}

_CAMEL = re.compile(r"(?<!^)(?=[A-Z])")


def _key(value: Any) -> str:
    if value is None:
        raise ValidationError("Missing status value")
    return str(getattr(value, "value", value)).strip().upper()


def _lookup(enum_cls, value: Any, aliases: dict | None = None):
    key = _key(value)
    if aliases and key in aliases:
        return aliases[key]
    for member in enum_cls:
        if member.value.upper() == key:
            return member
    raise ValidationError(f"Unknown {enum_cls.__name__} value: {value!r}")


def normalize_transaction_status(value: Any) -> TransactionStatus:
    return _lookup(TransactionStatus, value, TRANSACTION_STATUS_ALIASES)


def normalize_transaction_type(value: Any) -> TransactionType:
    return _lookup(TransactionType, value, TRANSACTION_TYPE_ALIASES)


def normalize_ledger_status(value: Any) -> LedgerStatus:
    return _lookup(LedgerStatus, value, {"REFUNDED": LedgerStatus.RETURNED})


def normalize_credit_status(value: Any) -> CreditStatus:
    return _lookup(CreditStatus, value, {"RETURNED": CreditStatus.REFUNDED})


def normalize_earning_status(value: Any) -> EarningStatus:
    return _lookup(EarningStatus, value)


def normalize_payout_status(value: Any) -> PayoutStatus:
    return _lookup(PayoutStatus, value, {"APPROVED": PayoutStatus.APPROVED_PENDING_PAYMENT})


def normalize_booking_status(value: Any) -> BookingStatus:
    return _lookup(BookingStatus, value)


def normalize_booking_type(value: Any) -> BookingType:
    return _lookup(BookingType, value)


def normalize_commission_status(value: Any) -> CommissionStatus:
    return _lookup(CommissionStatus, value, {"AVAILABLE": CommissionStatus.PENDING})


def normalize_history_type(value: Any) -> HistoryType:
    return _lookup(HistoryType, value, HISTORY_TYPE_ALIASES)


FIELD_NORMALIZERS: dict[str, dict[str, Callable[[Any], Any]]] = {
    "transactions": {
        "status": normalize_transaction_status,
        "type": normalize_transaction_type,
    },
    "ledger_entries": {"status": normalize_ledger_status},
    "bookings": {
        "status": normalize_booking_status,
        "credit_status": normalize_credit_status,
        "type": normalize_booking_type,
    },
    "mentor_earnings": {"status": normalize_earning_status},
    "payouts": {"status": normalize_payout_status},
    "commissions": {"status": normalize_commission_status},
    "credit_history": {"type": normalize_history_type},
}


def snake_case(key: str) -> str:
    return _CAMEL.sub("_", key).lower()


def normalize_record(collection: str, record: dict) -> dict:
    aliases = KEY_ALIASES.get(collection, {})
    normalized = {}
    for key, value in record.items():
        name = snake_case(key)
        normalized[aliases.get(name, name)] = value

    for field_name, normalizer in FIELD_NORMALIZERS.get(collection, {}).items():
        if normalized.get(field_name) is not None:
            normalized[field_name] = normalizer(normalized[field_name])
    return normalized
