"""Test the wallet logger module."""

import asyncio
import logging

import pytest
from unittest.mock import AsyncMock, MagicMock

from wallet_core.logger import MAX_NOTIFICATION_LENGTH, NotificationHandler, get_logger, setup_logger


@pytest.fixture(autouse=True)
def _restore_logger():
    yield
    setup_logger(level=logging.INFO)


def _record(message: str, level: int = logging.INFO, name: str = "wallet_core") -> logging.LogRecord:
    return logging.LogRecord(name, level, __file__, 1, message, None, None)


def test_get_logger_returns_logger():
    """Test that get_logger returns a valid logger instance."""
    logger = get_logger()
    assert logger is not None
    assert logger.name == "wallet_core"
    assert hasattr(logger, 'info')
    assert hasattr(logger, 'error')


def test_get_logger_child():
    assert get_logger("audit").name == "wallet_core.audit"


def test_setup_logger_creates_configured_logger():
    """Test that setup_logger creates a properly configured logger."""
    logger = setup_logger(level=logging.DEBUG)
    assert logger.level == logging.DEBUG
    assert logger.propagate is False
    assert len(logger.handlers) == 1


def test_notification_handler_without_notifier_is_silent():
    handler = NotificationHandler()
    handler.emit(_record("nothing happens"))


def test_notification_handler_calls_sync_notifier():
    notifier = MagicMock()
    handler = NotificationHandler(notifier)

    handler.emit(_record("credited 5"))

    notifier.assert_called_once_with("INFO: credited 5")


def test_notification_handler_truncates_long_messages():
    notifier = MagicMock()
    handler = NotificationHandler(notifier)

    handler.emit(_record("x" * (MAX_NOTIFICATION_LENGTH * 2)))

    sent = notifier.call_args[0][0]
    assert len(sent) == MAX_NOTIFICATION_LENGTH
    assert sent.endswith("...")


@pytest.mark.asyncio
async def test_notification_handler_schedules_async_notifier():
    notifier = AsyncMock()
    handler = NotificationHandler(notifier)

    handler.emit(_record("async message", level=logging.ERROR))
    await asyncio.sleep(0.01)

    notifier.assert_awaited_once_with("ERROR: async message")


def test_notifier_failure_does_not_raise(capsys):
    handler = NotificationHandler(MagicMock(side_effect=RuntimeError("down")))

    handler.emit(_record("still fine"))

    assert "Failed to dispatch" in capsys.readouterr().err


def test_audit_notifier_only_receives_audit_records():
    audit = MagicMock()
    errors = MagicMock()
    setup_logger(level=logging.INFO, audit_notifier=audit, error_notifier=errors)

    get_logger("audit").info("Credited 5 to user 1")
    get_logger().info("Current database schema version: 6")
    get_logger().error("Migration failed")

    audit.assert_called_once_with("INFO: Credited 5 to user 1")
    errors.assert_called_once_with("ERROR: Migration failed")
