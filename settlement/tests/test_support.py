"""
Tests for configuration, pricing, the system log and the admin CLI
"""

import dataclasses
import json
import logging
import pytest
from decimal import Decimal

from settlement import cli
from settlement.config import SettlementConfig, load_config
from settlement.errors import NotFoundError
from settlement.models import LogLevel, LogSource
from settlement.storage import InMemoryStorage
from settlement.syslog import AuditLog, JsonFormatter


class TestConfig:
    def test_defaults(self, monkeypatch):
        for name in (
            "SETTLEMENT_MIN_PAYOUT_CREDITS", "SETTLEMENT_TOPUP_RATIO", "SETTLEMENT_DISPUTE_WINDOW_HOURS",
            "SETTLEMENT_DEFAULT_LEVEL_ID", "SETTLEMENT_MAX_LOG_ENTRIES",
        ):
            monkeypatch.delenv(name, raising=False)

        config = load_config()
        assert config.min_payout_credits == Decimal("50")
        assert config.topup_ratio == Decimal("0.8")
        assert config.dispute_window_hours == 72
        assert config.default_level_id == "bronze"
        assert config.max_log_entries == 1000

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("SETTLEMENT_MIN_PAYOUT_CREDITS", "100")
        monkeypatch.setenv("SETTLEMENT_DISPUTE_WINDOW_HOURS", "24")

        config = load_config()
        assert config.min_payout_credits == Decimal("100")
        assert config.dispute_window_hours == 24

    def test_invalid_value_names_variable(self, monkeypatch):
        monkeypatch.setenv("SETTLEMENT_PAYOUT_RATIO", "lots")

        with pytest.raises(ValueError, match="SETTLEMENT_PAYOUT_RATIO"):
            load_config()


class TestPricing:
    def test_price_applies_both_multipliers(self, service):
        quote = service.calculate_price("native", "JP")

        assert quote.country_multiplier == Decimal("1.15")
        assert quote.group_multiplier == Decimal("1.4")
        assert quote.price == Decimal("16.10")

    def test_missing_country_counts_as_one(self, service):
        assert service.calculate_price("vip").price == Decimal("15.00")
        assert service.calculate_price("vip", "ZZ").price == Decimal("15.00")

    def test_unknown_group(self, service):
        with pytest.raises(NotFoundError):
            service.calculate_price("legend", "US")


class TestSystemLog:
    def test_audit_entries_newest_first(self):
        storage = InMemoryStorage()
        audit = AuditLog(storage, "settlement.test")

        audit.info(LogSource.BOOKING, "first")
        audit.error(LogSource.PAYMENT, "second")

        assert [e["msg"] for e in storage.logs] == ["second", "first"]
        assert storage.logs[0]["lvl"] == LogLevel.ERROR
        assert storage.logs[0]["src"] == LogSource.PAYMENT
        assert isinstance(storage.logs[0]["ts"], int)

    def test_log_is_capped(self):
        """Only the newest entries are kept once the cap is reached."""
        storage = InMemoryStorage(max_logs=3)
        audit = AuditLog(storage, "settlement.test")

        for i in range(5):
            audit.info(LogSource.SYSTEM, f"entry {i}")

        assert [e["msg"] for e in storage.recent_logs()] == ["entry 4", "entry 3", "entry 2"]
        assert [e["msg"] for e in storage.recent_logs(limit=1)] == ["entry 4"]

    def test_restore_keeps_cap(self):
        storage = InMemoryStorage(max_logs=2)
        storage.restore({"logs": [{"ts": i, "lvl": "info", "src": "system", "msg": str(i)} for i in range(4)]})

        assert [e["msg"] for e in storage.recent_logs()] == ["0", "1"]

    def test_json_formatter(self):
        record = logging.LogRecord("settlement", logging.WARNING, __file__, 1, "payout %s", ("po_1",), None)
        record.src = "payment"

        line = json.loads(JsonFormatter().format(record))
        assert line["level"] == "WARNING"
        assert line["message"] == "payout po_1"
        assert line["src"] == "payment"


class TestCli:
    def test_seed_book_complete(self, tmp_path, capsys, monkeypatch):
        monkeypatch.delenv("SETTLEMENT_STATE_FILE", raising=False)
        state = str(tmp_path / "state.json")

        assert cli.main(["--state", state, "seed"]) == 0
        capsys.readouterr()

        assert cli.main(["--state", state, "book", "mentee-1", "mentor-1", "30"]) == 0
        booking_id = json.loads(capsys.readouterr().out)["booking"]["id"]

        assert cli.main(["--state", state, "complete", booking_id]) == 0
        capsys.readouterr()

        assert cli.main(["--state", state, "balance", "mentor-1"]) == 0
        balance = json.loads(capsys.readouterr().out)
        assert Decimal(balance["payable"]) == Decimal("30")

        assert cli.main(["--state", state, "health"]) == 0
        assert json.loads(capsys.readouterr().out)["ok"] is True

    def test_engine_errors_exit_nonzero(self, tmp_path, capsys):
        state = str(tmp_path / "state.json")
        cli.main(["--state", state, "seed"])

        assert cli.main(["--state", state, "request-payout", "mentor-1", "10"]) == 1
        assert "Minimum withdrawal" in capsys.readouterr().err

    def test_default_config_is_frozen(self):
        with pytest.raises(dataclasses.FrozenInstanceError):
            SettlementConfig().min_payout_credits = Decimal("1")
