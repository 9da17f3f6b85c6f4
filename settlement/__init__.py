"""
Credit Ledger and Settlement Service for a Tutoring Marketplace

This module provides:
- Credit holding, release and return for bookings, including disputes
- Payout lifecycle: pending → approved → paid / failed, or rejected
- Provider commissions frozen at the rate in force when recorded
- Optimistic concurrency through status and version guarded writes
- Read-only financial reports and ledger health checks
"""

from .errors import SettlementError
from .models import (
    BookingStatus,
    LedgerStatus,
    PayoutStatus,
    CommissionStatus,
    TransactionStatus,
    TransactionType,
)
from .service import LedgerService
from .storage import InMemoryStorage

__all__ = [
    "BookingStatus",
    "LedgerStatus",
    "PayoutStatus",
    "CommissionStatus",
    "TransactionStatus",
    "TransactionType",
    "SettlementError",
    "LedgerService",
    "InMemoryStorage",
]
