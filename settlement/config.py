import os
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Optional


@dataclass(frozen=True)
class SettlementConfig:
    min_payout_credits: Decimal = Decimal("50")
    min_provider_payout_usd: Decimal = Decimal("50")
    payout_ratio: Decimal = Decimal("1.0")
    topup_ratio: Decimal = Decimal("0.8")
    base_lesson_price: Decimal = Decimal("10")
    dispute_window_hours: int = 72
    default_level_id: str = "bronze"
    max_log_entries: int = 1000
    log_level: str = "INFO"
    state_file: Optional[str] = None


def _decimal_env(name: str, default: Decimal) -> Decimal:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        value = Decimal(raw)
    except InvalidOperation:
        raise ValueError(f"{name} must be a number, got {raw!r}")
    if value < 0:
        raise ValueError(f"{name} must be non-negative, got {raw!r}")
    return value


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}")


def load_config() -> SettlementConfig:
    defaults = SettlementConfig()
    return SettlementConfig(
        min_payout_credits=_decimal_env("SETTLEMENT_MIN_PAYOUT_CREDITS", defaults.min_payout_credits),
        min_provider_payout_usd=_decimal_env("SETTLEMENT_MIN_PROVIDER_PAYOUT_USD", defaults.min_provider_payout_usd),
        payout_ratio=_decimal_env("SETTLEMENT_PAYOUT_RATIO", defaults.payout_ratio),
        topup_ratio=_decimal_env("SETTLEMENT_TOPUP_RATIO", defaults.topup_ratio),
        base_lesson_price=_decimal_env("SETTLEMENT_BASE_LESSON_PRICE", defaults.base_lesson_price),
        dispute_window_hours=_int_env("SETTLEMENT_DISPUTE_WINDOW_HOURS", defaults.dispute_window_hours),
        default_level_id=os.getenv("SETTLEMENT_DEFAULT_LEVEL_ID") or defaults.default_level_id,
        max_log_entries=_int_env("SETTLEMENT_MAX_LOG_ENTRIES", defaults.max_log_entries),
        log_level=os.getenv("SETTLEMENT_LOG_LEVEL", defaults.log_level),
        state_file=os.getenv("SETTLEMENT_STATE_FILE") or None,
    )
