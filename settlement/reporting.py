"""
Read-only financial aggregation over the settlement stores.

Nothing here mutates storage. Records with missing or null amounts count
as zero so partially migrated snapshots still produce a report.
"""

from collections import defaultdict
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional

from .config import SettlementConfig
from .models import (
    SYSTEM_ACCOUNT_ID,
    CommissionStatus,
    LedgerStatus,
    PayoutStatus,
    TransactionStatus,
    TransactionType,
    UserRole,
)


ZERO = Decimal("0")


def _amount(record: dict, field_name: str = "amount") -> Decimal:
    value = record.get(field_name)
    if value is None or value == "":
        return ZERO
    return Decimal(str(value))


def _day(value) -> Optional[date]:
    if value is None:
        return None
    if isinstance(value, str):
        value = datetime.fromisoformat(value)
    return value.date()


def _in_range(value, start: Optional[date], end: Optional[date]) -> bool:
    day = _day(value)
    if day is None:
        return False
    return (start is None or day >= start) and (end is None or day <= end)


def _ratio(part: Decimal, whole: Decimal) -> Decimal:
    if whole == 0:
        return ZERO
    return (part / whole).quantize(Decimal("0.0001"))


class ReportingService:
    def __init__(self, storage, config: SettlementConfig):
        self.storage = storage
        self.config = config

    def _transactions(self, tx_type: TransactionType, status: TransactionStatus = TransactionStatus.SUCCESS) -> list[dict]:
        return self.storage.find("transactions", lambda t: t.get("type") == tx_type and t.get("status") == status)

    def credit_stats(self) -> dict:
        totals = {status: ZERO for status in LedgerStatus}
        counts = {status: 0 for status in LedgerStatus}
        for entry in self.storage.find("ledger_entries"):
            status = entry.get("status")
            if status in totals:
                totals[status] += _amount(entry)
                counts[status] += 1
        ratio = self.config.payout_ratio
        return {
            status.value.lower(): {
                "count": counts[status],
                "credits": totals[status],
                "usd": (totals[status] * ratio).quantize(Decimal("0.01")),
            }
            for status in LedgerStatus
        }

    def cac_dashboard(self, start: Optional[date] = None, end: Optional[date] = None) -> dict:
        topups = [t for t in self._transactions(TransactionType.TOPUP) if _in_range(t.get("date"), start, end)]
        commissions = [c for c in self.storage.find("commissions") if _in_range(c.get("created_at"), start, end)]

        revenue = sum((_amount(t) for t in topups), ZERO)
        total_commission = sum((_amount(c, "commission_amount_usd") for c in commissions), ZERO)

        referrals = self.storage.find("referrals")
        provider_of = {r["mentee_id"]: r["provider_id"] for r in referrals}
        providers = {p["id"]: p for p in self.storage.find("providers")}

        by_provider: dict[str, dict] = defaultdict(lambda: {"mentees": 0, "revenue": ZERO, "commission": ZERO})
        for referral in referrals:
            by_provider[referral["provider_id"]]["mentees"] += 1
        for topup in topups:
            provider_id = provider_of.get(topup.get("user_id"))
            if provider_id:
                by_provider[provider_id]["revenue"] += _amount(topup)
        for commission in commissions:
            by_provider[commission["provider_id"]]["commission"] += _amount(commission, "commission_amount_usd")

        by_level: dict[str, dict] = defaultdict(lambda: {"providers": 0, "revenue": ZERO, "commission": ZERO})
        for provider_id, row in by_provider.items():
            row["cac_ratio"] = _ratio(row["commission"], row["revenue"])
            level_id = (providers.get(provider_id) or {}).get("level_id") or "unassigned"
            level_row = by_level[level_id]
            level_row["providers"] += 1
            level_row["revenue"] += row["revenue"]
            level_row["commission"] += row["commission"]
        for row in by_level.values():
            row["cac_ratio"] = _ratio(row["commission"], row["revenue"])

        series: dict[date, dict] = defaultdict(lambda: {"revenue": ZERO, "commission": ZERO})
        for topup in topups:
            series[_day(topup["date"])]["revenue"] += _amount(topup)
        for commission in commissions:
            series[_day(commission["created_at"])]["commission"] += _amount(commission, "commission_amount_usd")

        return {
            "summary": {
                "revenue": revenue,
                "total_commission": total_commission,
                "cac_ratio": _ratio(total_commission, revenue),
                "gross_profit": revenue - total_commission,
                "topups": len(topups),
            },
            "by_provider": dict(by_provider),
            "by_level": dict(by_level),
            "time_series": [{"date": day.isoformat(), **series[day]} for day in sorted(series)],
        }

    def solvency(self) -> dict:
        """Cash position against everything owed to users.

        Reserved payable is reported under ``pending_payouts`` (USD of open payouts),
        so ``mentor_payable`` and ``provider_payable`` only hold unreserved balances.
        """
        cash_in = sum((_amount(t) for t in self._transactions(TransactionType.TOPUP)), ZERO)
        cash_out = sum((_amount(t) for t in self._transactions(TransactionType.PAYOUT)), ZERO)

        ratio = self.config.payout_ratio
        wallet_credits = ZERO
        held_credits = ZERO
        mentor_payable = ZERO
        provider_payable = ZERO
        clawbacks_owed = ZERO
        for account in self.storage.find("accounts"):
            if account.get("user_id") == SYSTEM_ACCOUNT_ID:
                held_credits += _amount(account, "credits")
                continue
            wallet_credits += _amount(account, "credits")
            clawbacks_owed += _amount(account, "liability")
            if account.get("role") == UserRole.PROVIDER:
                provider_payable += _amount(account, "payable")
            else:
                mentor_payable += _amount(account, "payable")

        pending_payouts = ZERO
        for payout in self.storage.find(
            "payouts",
            lambda p: p.get("status") in (PayoutStatus.PENDING, PayoutStatus.APPROVED_PENDING_PAYMENT),
        ):
            pending_payouts += _amount(payout)
            if payout.get("role") == UserRole.PROVIDER:
                provider_payable -= _amount(payout)
            else:
                mentor_payable -= _amount(payout, "credits_deducted")

        liabilities = {
            "wallet_credits": (wallet_credits * ratio).quantize(Decimal("0.01")),
            "held_credits": (held_credits * ratio).quantize(Decimal("0.01")),
            "pending_payouts": pending_payouts,
            "mentor_payable": (mentor_payable * ratio).quantize(Decimal("0.01")),
            "provider_payable": provider_payable,
            "clawbacks_owed": -(clawbacks_owed * ratio).quantize(Decimal("0.01")),
        }
        total_liability = sum(liabilities.values(), ZERO)
        real_cash = cash_in - cash_out
        return {
            "cash_in": cash_in,
            "cash_out": cash_out,
            "real_cash": real_cash,
            "liabilities": liabilities,
            "total_liability": total_liability,
            "cash_surplus": real_cash - total_liability,
            "is_solvent": real_cash >= total_liability,
        }

    def _revenue_by_day(self, start: date, end: date) -> list[dict]:
        days: dict[date, dict] = {}
        current = start
        while current <= end:
            days[current] = {"topups": ZERO, "payouts": ZERO}
            current += timedelta(days=1)
        for key, tx_type in (("topups", TransactionType.TOPUP), ("payouts", TransactionType.PAYOUT)):
            for tx in self._transactions(tx_type):
                day = _day(tx.get("date"))
                if day in days:
                    days[day][key] += _amount(tx)
        return [
            {"date": day.isoformat(), **row, "net": row["topups"] - row["payouts"]}
            for day, row in days.items()
        ]

    def daily_revenue(self, days: int = 30, today: Optional[date] = None) -> list[dict]:
        end = today or datetime.now(timezone.utc).date()
        return self._revenue_by_day(end - timedelta(days=days - 1), end)

    def monthly_revenue(self, year: int, month: int) -> dict:
        start = date(year, month, 1)
        next_month = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
        days = self._revenue_by_day(start, next_month - timedelta(days=1))
        return {
            "year": year,
            "month": month,
            "days": days,
            "total_topups": sum((d["topups"] for d in days), ZERO),
            "total_payouts": sum((d["payouts"] for d in days), ZERO),
        }

    def booking_conservation(self, booking_id: str) -> Decimal:
        """Signed sum of every balance movement tagged with the booking; zero when the books balance."""
        return sum(
            (_amount(e) for e in self.storage.find("credit_history", lambda e: e.get("reference_id") == booking_id)),
            ZERO,
        )

    def check_conservation(self) -> list[dict]:
        booking_ids = {e["booking_id"] for e in self.storage.find("ledger_entries")}
        violations = []
        for booking_id in sorted(booking_ids):
            net = self.booking_conservation(booking_id)
            if net != 0:
                violations.append({"booking_id": booking_id, "net": net})
        return violations

    def orphaned_references(self) -> list[dict]:
        transactions = {t["id"]: t for t in self.storage.find("transactions")}
        payout_ids = {p["id"] for p in self.storage.find("payouts")}
        booking_ids = {b["id"] for b in self.storage.find("bookings")}

        orphans = []
        for payout in self.storage.find("payouts"):
            tx_id = payout.get("payment_transaction_id")
            if tx_id and tx_id not in transactions:
                orphans.append({"collection": "payouts", "id": payout["id"], "missing": f"transactions/{tx_id}"})
        for tx in transactions.values():
            related = tx.get("related_entity_id")
            if tx.get("type") == TransactionType.PAYOUT and related and related not in payout_ids:
                orphans.append({"collection": "transactions", "id": tx["id"], "missing": f"payouts/{related}"})
        for entry in self.storage.find("ledger_entries"):
            if entry.get("booking_id") not in booking_ids:
                orphans.append({
                    "collection": "ledger_entries", "id": entry["id"], "missing": f"bookings/{entry.get('booking_id')}"
                })
        return orphans

    def negative_balances(self) -> list[dict]:
        return [
            {"user_id": a["user_id"], "credits": _amount(a, "credits"), "payable": _amount(a, "payable"),
             "liability": _amount(a, "liability")}
            for a in self.storage.find("accounts")
            if _amount(a, "credits") < 0 or _amount(a, "payable") < 0 or _amount(a, "liability") < 0
        ]

    def pending_commission_total(self) -> Decimal:
        return sum(
            (_amount(c, "commission_amount_usd") for c in self.storage.find(
                "commissions", lambda c: c.get("status") == CommissionStatus.PENDING
            )),
            ZERO,
        )
