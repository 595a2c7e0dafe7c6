"""
Tests for configuration and structured logging
"""

import json
import logging

import pytest
from pydantic import ValidationError

from loan_ledger.config import LedgerConfig, get_config, reload_config
from loan_ledger.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class TestLedgerConfig:
    """Test environment-driven configuration"""

    def test_defaults(self, monkeypatch):
        """Test default configuration values"""
        for name in ["LEDGER_STORAGE_BACKEND", "LEDGER_DEFAULT_CURRENCY",
                     "LEDGER_INSTALLMENT_OVERPAYMENT", "LEDGER_LOAN_ID_MAX_RETRIES"]:
            monkeypatch.delenv(name, raising=False)

        config = LedgerConfig(_env_file=None)

        assert config.storage_backend == "sqlite"
        assert config.default_currency == "MYR"
        assert config.installment_overpayment == "allow"
        assert config.loan_id_max_retries == 5
        assert config.enable_audit_logging is True

    def test_environment_overrides(self, monkeypatch):
        """Test environment variables override defaults"""
        monkeypatch.setenv("LEDGER_STORAGE_BACKEND", "memory")
        monkeypatch.setenv("LEDGER_DEFAULT_CURRENCY", "SGD")
        monkeypatch.setenv("LEDGER_INSTALLMENT_OVERPAYMENT", "reject")
        monkeypatch.setenv("LEDGER_CURRENCY_PRECISION", '{"KWD": 3, "XTS": 4}')

        config = LedgerConfig(_env_file=None)

        assert config.storage_backend == "memory"
        assert config.default_currency == "SGD"
        assert config.installment_overpayment == "reject"
        assert config.currency_precision == {"KWD": 3, "XTS": 4}

    @pytest.mark.parametrize("field,value", [
        ("installment_overpayment", "Reject"),
        ("installment_overpayment", "rejct"),
        ("storage_backend", "postgres"),
        ("log_format", "xml"),
    ])
    def test_unknown_choice_rejected(self, field, value):
        """Test values outside the allowed choices are rejected"""
        with pytest.raises(ValidationError):
            LedgerConfig(_env_file=None, **{field: value})

    def test_unknown_overpayment_policy_in_environment_rejected(self, monkeypatch):
        """Test a misspelled policy in the environment is rejected"""
        monkeypatch.setenv("LEDGER_INSTALLMENT_OVERPAYMENT", "Reject")

        with pytest.raises(ValidationError, match="installment_overpayment"):
            LedgerConfig(_env_file=None)

    def test_sqlite_path(self):
        """Test SQLite path extraction"""
        assert LedgerConfig(database_url="sqlite:///data/ledger.db").sqlite_path == "data/ledger.db"
        assert LedgerConfig(database_url="sqlite:///").sqlite_path == ":memory:"

    def test_reload_config(self, monkeypatch):
        """Test configuration reload"""
        monkeypatch.setenv("LEDGER_API_PORT", "9001")

        reloaded = reload_config()

        assert reloaded.api_port == 9001
        assert get_config() is reloaded

        monkeypatch.delenv("LEDGER_API_PORT")
        reload_config()


class CaptureHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


class TestStructuredLogging:
    """Test JSON formatting and action logs"""

    def test_json_formatter_includes_action_fields(self):
        """Test JSON output carries action fields"""
        logger = logging.getLogger("loan_ledger.test.formatter")
        record = logger.makeRecord(logger.name, logging.INFO, __file__, 1, "Loan created", (), None)
        record.user_id = "HR01"
        record.action = "create_loan"
        record.resource = "loan:L1"
        record.extra = {"total_amount": "1100.00"}

        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "Loan created"
        assert entry["level"] == "INFO"
        assert entry["user_id"] == "HR01"
        assert entry["action"] == "create_loan"
        assert entry["resource"] == "loan:L1"
        assert entry["extra"] == {"total_amount": "1100.00"}

    def test_json_formatter_drops_missing_fields(self):
        """Test absent action fields are omitted"""
        record = logging.LogRecord("x", logging.WARNING, __file__, 1, "plain", (), None)

        entry = json.loads(JSONFormatter().format(record))

        assert "user_id" not in entry
        assert "extra" not in entry

    def test_setup_logging_configures_handler(self, tmp_path):
        """Test logging setup replaces handlers"""
        log_file = tmp_path / "ledger.log"

        logger = setup_logging("DEBUG", logger_name="loan_ledger.test.setup", log_file=str(log_file))
        logger.info("hello")
        for handler in logger.handlers:
            handler.flush()

        assert logger.level == logging.DEBUG
        assert len(logger.handlers) == 1
        assert json.loads(log_file.read_text().strip())["message"] == "hello"

        setup_logging("INFO", logger_name="loan_ledger.test.setup", log_format="text")
        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_log_action_attaches_structured_data(self):
        """Test action logs carry structured data"""
        logger = get_logger("loan_ledger.test.action")
        logger.setLevel(logging.INFO)
        handler = CaptureHandler()
        logger.addHandler(handler)
        try:
            log_action(logger, "info", "Payment recorded", user_id="PAYROLL",
                       action="record_payment", resource="loan:L1", extra={"amount": "50.00"})
            log_action(logger, "debug", "not emitted")
        finally:
            logger.removeHandler(handler)

        assert len(handler.records) == 1
        record = handler.records[0]
        assert record.action == "record_payment"
        assert record.user_id == "PAYROLL"
        assert record.extra == {"amount": "50.00"}
