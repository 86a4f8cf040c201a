"""
Tests for configuration, structured logging and amount/date helpers
"""

import json
import logging
import sys
import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from loan_engine.amounts import Currency, quantize, to_decimal, within_tolerance, format_amount
from loan_engine.config import LoanEngineConfig, get_config, reload_config
from loan_engine.dates import add_months, add_periods, parse_date, today_local
from loan_engine.exceptions import DataError
from loan_engine.logging_config import JSONFormatter, setup_logging, log_action


class TestConfig:
    """Test environment-based configuration"""

    def test_defaults(self):
        config = LoanEngineConfig()

        assert config.aggregate_read_attempts == 3
        assert config.require_authoritative_aggregates is False
        assert config.local_utc_offset_hours == -4
        assert config.currency == "DOP"

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("LOAN_ENGINE_API_PORT", "9100")
        monkeypatch.setenv("LOAN_ENGINE_REQUIRE_AUTHORITATIVE_AGGREGATES", "true")
        config = LoanEngineConfig()

        assert config.api_port == 9100
        assert config.require_authoritative_aggregates is True

    def test_reload_config(self, monkeypatch):
        monkeypatch.setenv("LOAN_ENGINE_DEFAULT_LATE_FEE_RATE", "4")
        try:
            assert reload_config().default_late_fee_rate == "4"
            assert get_config().default_late_fee_rate == "4"
        finally:
            monkeypatch.undo()
            reload_config()


class TestStructuredLogging:
    """Test JSON logging setup and log_action"""

    def teardown_method(self):
        for name in ("loan_engine_test_json", "loan_engine_test_text"):
            logger = logging.getLogger(name)
            for handler in logger.handlers[:]:
                handler.close()
                logger.removeHandler(handler)

    def test_json_lines_to_file(self, tmp_path):
        log_file = tmp_path / "engine.log"
        logger = setup_logging("INFO", logger_name="loan_engine_test_json", log_file=str(log_file))

        log_action(
            logger, "info", "Payment recorded",
            user_id="teller1", action="record_payment", resource="loan:LOAN001",
            extra={"amount": "3000.00"}
        )

        entry = json.loads(log_file.read_text().strip())
        assert entry["message"] == "Payment recorded"
        assert entry["level"] == "INFO"
        assert entry["logger"] == "loan_engine_test_json"
        assert "module" not in entry
        assert entry["user_id"] == "teller1"
        assert entry["resource"] == "loan:LOAN001"
        assert entry["extra"] == {"amount": "3000.00"}
        assert "correlation_id" not in entry

    def test_level_filtering(self, tmp_path):
        log_file = tmp_path / "engine.log"
        logger = setup_logging("WARNING", logger_name="loan_engine_test_json", log_file=str(log_file))

        log_action(logger, "info", "Not written")
        log_action(logger, "warning", "Written")

        lines = log_file.read_text().strip().splitlines()
        assert len(lines) == 1
        assert json.loads(lines[0])["message"] == "Written"

    def test_text_format(self, tmp_path):
        log_file = tmp_path / "engine.log"
        logger = setup_logging("INFO", logger_name="loan_engine_test_text", log_format="text",
                               log_file=str(log_file))

        log_action(logger, "warning", "Balance clamped")

        assert "WARNING loan_engine_test_text: Balance clamped" in log_file.read_text()

    def test_setup_is_idempotent(self, tmp_path):
        log_file = tmp_path / "engine.log"
        setup_logging("INFO", logger_name="loan_engine_test_json", log_file=str(log_file))
        logger = setup_logging("INFO", logger_name="loan_engine_test_json", log_file=str(log_file))

        assert len(logger.handlers) == 1

    def test_formatter_includes_exception(self):
        try:
            raise ValueError("bad row")
        except ValueError:
            record = logging.LogRecord("loan_engine", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        entry = json.loads(JSONFormatter().format(record))
        assert "ValueError: bad row" in entry["exception"]


class TestAmountsAndDates:
    """Test monetary and calendar helpers"""

    def test_quantize_half_up(self):
        assert quantize(Decimal('2.345')) == Decimal('2.35')
        assert quantize(Decimal('10000') / 3) == Decimal('3333.33')

    def test_to_decimal(self):
        assert to_decimal("10.10") == Decimal('10.10')
        assert to_decimal(None) == Decimal('0')
        assert to_decimal(3) == Decimal('3')
        with pytest.raises(DataError):
            to_decimal("ten")

    def test_within_tolerance(self):
        assert within_tolerance(Decimal('2475'), Decimal('2500'), Decimal('0.01'))
        assert not within_tolerance(Decimal('2474.99'), Decimal('2500'), Decimal('0.01'))
        assert within_tolerance(Decimal('0'), Decimal('0'), Decimal('0.01'))

    def test_format_amount(self):
        assert format_amount(Decimal('1234.5'), Currency.DOP) == "RD$1,234.50"

    def test_add_months_clamps(self):
        assert add_months(date(2024, 1, 31), 1) == date(2024, 2, 29)
        assert add_months(date(2023, 1, 31), 1) == date(2023, 2, 28)
        assert add_months(date(2024, 12, 15), 1) == date(2025, 1, 15)

    def test_add_periods_unknown_frequency(self):
        with pytest.raises(ValueError):
            add_periods(date(2024, 1, 1), "yearly", 1)

    def test_parse_date(self):
        assert parse_date("2024-02-15") == date(2024, 2, 15)
        assert parse_date("2024-02-15T23:30:00-04:00") == date(2024, 2, 15)
        with pytest.raises(DataError):
            parse_date("15/02/2024")
        with pytest.raises(DataError):
            parse_date(None)

    def test_today_in_local_calendar(self):
        """02:00 UTC is still the previous day in Santo Domingo"""
        now = datetime(2024, 3, 1, 2, 0, tzinfo=timezone.utc)
        assert today_local(-4, now=now) == date(2024, 2, 29)
