"""
Unit tests for engine configuration and logging setup.
"""

import logging

import json_log_formatter
import pytest

from ruledb.config import EngineConfig
from ruledb.engine import RuleEngine, setup_logging


class TestEngineConfig:
    """Tests for EngineConfig."""

    def test_defaults(self):
        """Defaults match the documented values."""
        config = EngineConfig()
        assert config.max_cascade_depth == 16
        assert config.reject_contradictory_state is True
        assert config.enforce_state_on_reactions is False
        assert config.log_format == "json"

    def test_env_prefix(self, monkeypatch):
        """Settings load from RULEDB_ environment variables."""
        monkeypatch.setenv("RULEDB_MAX_CASCADE_DEPTH", "4")
        monkeypatch.setenv("RULEDB_ENFORCE_STATE_ON_REACTIONS", "true")

        config = EngineConfig()

        assert config.max_cascade_depth == 4
        assert config.enforce_state_on_reactions is True

    def test_check_rejects_bad_depth(self):
        """Non-positive depth is invalid."""
        with pytest.raises(ValueError, match="must be positive"):
            EngineConfig(max_cascade_depth=0).check()

    def test_check_rejects_bad_format(self):
        """Unknown log formats are invalid."""
        with pytest.raises(ValueError, match="Invalid RULEDB_LOG_FORMAT"):
            EngineConfig(log_format="xml").check()


class TestSetupLogging:
    """Tests for setup_logging."""

    @pytest.fixture(autouse=True)
    def restore_root(self):
        root = logging.getLogger()
        handlers, level = root.handlers[:], root.level
        yield
        root.handlers = handlers
        root.setLevel(level)

    def test_json_formatter(self):
        """json format installs the JSON formatter."""
        setup_logging(EngineConfig(log_format="json", log_level="debug"))

        root = logging.getLogger()
        assert root.level == logging.DEBUG
        assert isinstance(root.handlers[0].formatter, json_log_formatter.JSONFormatter)

    def test_text_formatter(self):
        """text format installs a plain formatter."""
        setup_logging(EngineConfig(log_format="text"))

        formatter = logging.getLogger().handlers[0].formatter
        assert not isinstance(formatter, json_log_formatter.JSONFormatter)
        assert "%(levelname)s" in formatter._fmt


class TestEngineStartup:
    """Tests for configuration handling when the engine starts."""

    def test_engine_logs_effective_config(self, caplog):
        """The engine logs its configuration once it has been checked."""
        with caplog.at_level(logging.INFO, logger="ruledb.config"):
            RuleEngine(config=EngineConfig(max_cascade_depth=5))

        records = [r for r in caplog.records if r.getMessage() == "Engine configuration loaded"]
        assert len(records) == 1
        assert records[0].max_cascade_depth == 5

    def test_engine_rejects_invalid_config(self, caplog):
        """An invalid configuration fails before anything is logged."""
        with caplog.at_level(logging.INFO, logger="ruledb.config"):
            with pytest.raises(ValueError):
                RuleEngine(config=EngineConfig(log_format="xml"))

        assert "Engine configuration loaded" not in caplog.text
