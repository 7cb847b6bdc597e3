"""
Tests for configuration and structured logging
"""

import json
from decimal import Decimal

from p2p_lending.config import LendingConfig, get_config, reload_config
from p2p_lending.logging_config import get_logger, log_action, setup_logging


class TestLendingConfig:
    """Test configuration defaults and environment overrides"""

    def test_defaults(self):
        """Test the documented defaults"""
        config = LendingConfig(_env_file=None)

        assert config.offer_ttl_hours == 24
        assert config.payment_failed_penalty == -5
        assert config.restriction_days == 90
        assert Decimal(config.repayment_threshold) == Decimal("0.75")
        assert config.tier_limits()[1] == "150"
        assert config.tier_limits()[6] is None

    def test_environment_override(self, monkeypatch):
        """Test LENDING_ variables override defaults on reload"""
        monkeypatch.setenv("LENDING_OFFER_TTL_HOURS", "12")
        try:
            reload_config()
            assert get_config().offer_ttl_hours == 12
        finally:
            monkeypatch.delenv("LENDING_OFFER_TTL_HOURS")
            reload_config()

        assert get_config().offer_ttl_hours == 24


class TestStructuredLogging:
    """Test JSON log output"""

    def test_log_action_fields(self, capsys):
        """Test structured fields appear in the JSON line"""
        logger = setup_logging(level="INFO", logger_name="p2p_lending.tests.json")

        log_action(logger, "info", "Loan completed", user_id="alice", loan_id="loan-1",
                   action="complete", resource="loan")

        entry = json.loads(capsys.readouterr().err.strip().splitlines()[-1])
        assert entry["message"] == "Loan completed"
        assert entry["level"] == "INFO"
        assert entry["loan_id"] == "loan-1"
        assert entry["action"] == "complete"
        assert "correlation_id" not in entry

    def test_level_filtering(self, capsys):
        """Test records below the configured level are dropped"""
        logger = setup_logging(level="WARNING", logger_name="p2p_lending.tests.quiet")

        log_action(logger, "info", "ignored")

        assert capsys.readouterr().err == ""

    def test_get_logger(self):
        """Test loggers are shared by name"""
        assert get_logger("p2p_lending.tests.shared") is get_logger("p2p_lending.tests.shared")
