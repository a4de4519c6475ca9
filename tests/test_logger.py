"""Tests for logging configuration and sensitive data censoring."""

import logging

import pytest
import structlog

from mediastore.config import Settings
from mediastore.logger import add_log_level, censor_sensitive_data, configure_logging, get_logger


@pytest.fixture
def reset_logging():
    """Restore structlog and root logger state after a test."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    structlog.reset_defaults()
    root.handlers[:] = handlers
    root.setLevel(level)


class TestCensorSensitiveData:
    """Tests for the censoring processor."""

    def test_masks_sensitive_keys(self):
        event = {
            "event": "storage_resolved",
            "password": "pw1",
            "upstash_token": "tok",
            "database_url": "postgresql://u:p@h/db",
            "username": "alice",
        }

        result = censor_sensitive_data(None, "info", event)

        assert result["password"] == "***"
        assert result["upstash_token"] == "***"
        assert result["database_url"] == "***"
        assert result["username"] == "alice"
        assert result["event"] == "storage_resolved"

    def test_masks_nested(self):
        event = {"event": "x", "config": {"redis_url": "redis://h", "pool": 5}}

        result = censor_sensitive_data(None, "info", event)

        assert result["config"] == {"redis_url": "***", "pool": 5}

    def test_masks_dicts_in_lists(self):
        event = {"event": "x", "items": [{"api_key": "k"}, "plain"]}

        result = censor_sensitive_data(None, "info", event)

        assert result["items"] == [{"api_key": "***"}, "plain"]


class TestLogLevel:
    def test_warn_becomes_warning(self):
        assert add_log_level(None, "warn", {})["level"] == "warning"

    def test_passthrough(self):
        assert add_log_level(None, "error", {})["level"] == "error"


class TestConfigureLogging:
    def test_production_sets_level(self, reset_logging):
        configure_logging(Settings(_env_file=None, log_level="WARNING"))

        assert logging.getLogger().level == logging.WARNING

    def test_json_output(self, reset_logging, capsys):
        configure_logging(Settings(_env_file=None, environment="production"))

        get_logger("test").info("user_registered", username="alice", password="pw1")

        out = capsys.readouterr().out
        assert '"event": "user_registered"' in out
        assert '"password": "***"' in out
        assert "pw1" not in out

    def test_development_console(self, reset_logging):
        configure_logging(Settings(_env_file=None, environment="development"))

        assert len(logging.getLogger().handlers) == 1
