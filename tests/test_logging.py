"""
Tests for structured logging setup.
"""
import json
import logging
from typing import Any, Iterator

import pytest
import structlog
from pythonjsonlogger.json import JsonFormatter

from subscription_ledger.config import Settings
from subscription_ledger.monitoring.logging import app_context, setup_logging


@pytest.fixture
def restore_logging() -> Iterator[None]:
    root_logger = logging.getLogger()
    handlers = root_logger.handlers[:]
    level = root_logger.level
    yield
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    for handler in handlers:
        root_logger.addHandler(handler)
    root_logger.setLevel(level)
    structlog.reset_defaults()


@pytest.fixture
def custom_settings() -> Settings:
    return Settings(
        _env_file=None,
        app_name="custom-ledger",
        app_env="staging",
        owner_address="0xgovernor",
        log_level="INFO",
    )


class TestAppContext:
    """Test suite for the app context processor."""

    @pytest.mark.unit
    def test_uses_the_settings_it_was_built_with(self, custom_settings: Settings) -> None:
        """Test events carry the passed settings, not the process-wide ones."""
        processor = app_context(custom_settings)

        event = processor(None, "info", {"event": "charged"})

        assert event["app_name"] == "custom-ledger"
        assert event["app_env"] == "staging"
        assert event["ledger_owner"] == "0xgovernor"

    @pytest.mark.unit
    def test_does_not_overwrite_event_fields(self, custom_settings: Settings) -> None:
        processor = app_context(custom_settings)

        event = processor(None, "info", {"event": "charged", "app_env": "replay"})

        assert event["app_env"] == "replay"


class TestSetupLogging:
    """Test suite for setup_logging."""

    @pytest.mark.unit
    def test_single_json_handler_after_repeated_setup(
        self, custom_settings: Settings, restore_logging: None
    ) -> None:
        setup_logging(custom_settings)
        setup_logging(custom_settings)

        handlers = logging.getLogger().handlers
        assert len(handlers) == 1
        assert isinstance(handlers[0].formatter, JsonFormatter)
        assert logging.getLogger().level == logging.INFO
        assert logging.getLogger("asyncio").level == logging.WARNING

    @pytest.mark.unit
    def test_events_are_stamped_with_custom_settings(
        self,
        custom_settings: Settings,
        restore_logging: None,
        capsys: pytest.CaptureFixture[str],
    ) -> None:
        """Test a logged event renders as JSON carrying the configured app name."""
        setup_logging(custom_settings)
        capsys.readouterr()

        structlog.get_logger("subscription_ledger.test").info("payment_charged", amount=10)

        lines = [line for line in capsys.readouterr().out.splitlines() if line.strip()]
        record: Any = json.loads(lines[-1])
        event = json.loads(record["message"])
        assert record["level"] == "INFO"
        assert event["event"] == "payment_charged"
        assert event["amount"] == 10
        assert event["app_name"] == "custom-ledger"
        assert event["app_env"] == "staging"
