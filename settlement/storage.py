import copy
import json
import threading
from collections import deque
from contextlib import contextmanager
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from itertools import islice
from pathlib import Path
from typing import Callable, Optional

from .errors import ConflictError, NotFoundError
from .models import (
    SYSTEM_ACCOUNT_ID,
    Account,
    Booking,
    CreditHistoryEntry,
    MentorEarning,
    Payout,
    PricingCountry,
    PricingGroup,
    Provider,
    ProviderCommission,
    ProviderLevel,
    Referral,
    SystemCreditLedgerEntry,
    SystemLog,
    Transaction,
    UserRole,
)
from .normalize import normalize_record


COLLECTION_MODELS = {
    "accounts": Account,
    "bookings": Booking,
    "ledger_entries": SystemCreditLedgerEntry,
    "mentor_earnings": MentorEarning,
    "payouts": Payout,
    "transactions": Transaction,
    "commissions": ProviderCommission,
    "credit_history": CreditHistoryEntry,
    "provider_levels": ProviderLevel,
    "providers": Provider,
    "referrals": Referral,
    "pricing_countries": PricingCountry,
    "pricing_groups": PricingGroup,
}

ID_FIELDS = {"accounts": "user_id"}

MAX_LOG_ENTRIES = 1000


def _json_default(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Cannot serialize {type(value).__name__}")


class InMemoryStorage:
    def __init__(self, seed: bool = True, max_logs: int = MAX_LOG_ENTRIES):
        self._lock = threading.RLock()
        self._collections: dict[str, dict[str, dict]] = {name: {} for name in COLLECTION_MODELS}
        self.logs: deque[dict] = deque(maxlen=max_logs)
        if seed:
            self._seed_data()

    def _seed_data(self):
        self._collections["accounts"][SYSTEM_ACCOUNT_ID] = _system_account()

        for level_id, name, percent in (
            ("bronze", "Bronze Partner", "5"),
            ("silver", "Silver Partner", "8"),
            ("gold", "Gold Partner", "12"),
        ):
            self._collections["provider_levels"][level_id] = {
                "id": level_id, "name": name, "commission_percent": Decimal(percent)
            }

        for code, name, multiplier, currency, tz in (
            ("VN", "Vietnam", "0.9", "VND", "Asia/Ho_Chi_Minh"),
            ("JP", "Japan", "1.15", "JPY", "Asia/Tokyo"),
            ("KR", "South Korea", "1.1", "KRW", "Asia/Seoul"),
            ("CN", "China", "1.05", "CNY", "Asia/Shanghai"),
            ("US", "United States", "1.0", "USD", "America/New_York"),
            ("GB", "United Kingdom", "1.0", "GBP", "Europe/London"),
        ):
            self._collections["pricing_countries"][code] = {
                "id": code, "code": code, "name": name, "multiplier": Decimal(multiplier),
                "currency": currency, "timezone": tz,
            }

        for group_id, name, multiplier in (
            ("basic", "Standard Mentor", "1.0"),
            ("expert", "Expert Mentor", "1.2"),
            ("native", "Native Speaker", "1.4"),
            ("vip", "VIP Mentor", "1.5"),
        ):
            self._collections["pricing_groups"][group_id] = {
                "id": group_id, "name": name, "multiplier": Decimal(multiplier)
            }

    def _records(self, collection: str) -> dict[str, dict]:
        try:
            return self._collections[collection]
        except KeyError:
            raise NotFoundError(f"Unknown collection {collection}")

    def insert(self, collection: str, record: dict) -> dict:
        key = record[ID_FIELDS.get(collection, "id")]
        with self._lock:
            records = self._records(collection)
            if key in records:
                raise ConflictError(f"{collection} record {key} already exists")
            stored = copy.deepcopy(record)
            if "version" in COLLECTION_MODELS[collection].model_fields:
                stored.setdefault("version", 0)
            records[key] = stored
            return copy.deepcopy(stored)

    def get(self, collection: str, key: str) -> Optional[dict]:
        with self._lock:
            record = self._records(collection).get(key)
            return copy.deepcopy(record) if record is not None else None

    def find(self, collection: str, predicate: Optional[Callable[[dict], bool]] = None) -> list[dict]:
        with self._lock:
            return [
                copy.deepcopy(r) for r in self._records(collection).values()
                if predicate is None or predicate(r)
            ]

    @contextmanager
    def atomic(self):
        """Hold the store lock so a read-check-write sequence cannot interleave with other writers."""
        with self._lock:
            yield self

    def compare_and_set(self, collection: str, key: str, expected: dict, changes: dict) -> dict:
        with self._lock:
            record = self._records(collection).get(key)
            if record is None:
                raise NotFoundError(f"{collection} record {key} not found")
            for field_name, value in expected.items():
                if record.get(field_name) != value:
                    raise ConflictError(
                        f"{collection} record {key} was modified concurrently: "
                        f"expected {field_name}={_display(value)}, found {_display(record.get(field_name))}"
                    )
            record.update(copy.deepcopy(changes))
            record["version"] = record.get("version", 0) + 1
            return copy.deepcopy(record)

    def append_log(self, entry: SystemLog) -> None:
        with self._lock:
            self.logs.appendleft(entry.model_dump())

    def recent_logs(self, limit: int = 100) -> list[dict]:
        with self._lock:
            return [copy.deepcopy(e) for e in islice(self.logs, limit)]

    def snapshot(self) -> dict:
        with self._lock:
            data = {name: list(records.values()) for name, records in self._collections.items()}
            data["logs"] = list(self.logs)
            return json.loads(json.dumps(data, default=_json_default))

    def restore(self, data: dict) -> None:
        collections: dict[str, dict[str, dict]] = {name: {} for name in COLLECTION_MODELS}
        for name, model in COLLECTION_MODELS.items():
            for raw in data.get(name, []):
                record = model(**normalize_record(name, raw)).model_dump()
                collections[name][record[ID_FIELDS.get(name, "id")]] = record
        collections["accounts"].setdefault(SYSTEM_ACCOUNT_ID, _system_account())
        with self._lock:
            self._collections = collections
            maxlen = self.logs.maxlen
            self.logs = deque(list(data.get("logs", []))[:maxlen], maxlen=maxlen)

    def save(self, path: str) -> None:
        Path(path).write_text(json.dumps(self.snapshot(), indent=2), encoding="utf-8")

    @classmethod
    def load(cls, path: str, max_logs: int = MAX_LOG_ENTRIES) -> "InMemoryStorage":
        storage = cls(seed=False, max_logs=max_logs)
        storage.restore(json.loads(Path(path).read_text(encoding="utf-8")))
        return storage


def _system_account() -> dict:
    return Account(
        user_id=SYSTEM_ACCOUNT_ID,
        role=UserRole.SYSTEM,
        name="Platform",
        created_at=datetime.now(timezone.utc),
    ).model_dump()


def _display(value) -> str:
    return str(getattr(value, "value", value))
