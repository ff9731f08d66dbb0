"""Unit tests for logging configuration."""

import logging

import pytest
import structlog

from transaction_engine.logging import SERVICE_NAME, add_service_name, configure_logging


@pytest.fixture
def restore_logging():
    root_logger = logging.getLogger()
    handlers = list(root_logger.handlers)
    level = root_logger.level
    yield root_logger
    root_logger.handlers[:] = handlers
    root_logger.setLevel(level)
    structlog.reset_defaults()


class TestLogging:
    def test_add_service_name(self) -> None:
        event_dict = add_service_name(None, "info", {"event": "transaction_created"})

        assert event_dict["service"] == SERVICE_NAME

    def test_add_service_name_keeps_existing(self) -> None:
        event_dict = add_service_name(None, "info", {"event": "x", "service": "worker"})

        assert event_dict["service"] == "worker"

    def test_configure_logging_quiets_library_loggers(self, restore_logging: logging.Logger) -> None:
        configure_logging(level="DEBUG", log_format="console", quiet_loggers=("aiokafka",))

        assert restore_logging.level == logging.DEBUG
        assert logging.getLogger("aiokafka").level == logging.WARNING
        assert len(restore_logging.handlers) == 1
