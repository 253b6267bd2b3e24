"""
Logging module for the wallet core.

Provides centralized console logging plus an optional notification handler
that forwards audit and error records to a host-supplied notifier.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import sys
from typing import Any, Callable, Optional

# Global logger instance
logger: Optional[logging.Logger] = None

LOG_FORMAT = "[%(asctime)s] %(levelname)s:%(name)s: %(message)s"
MAX_NOTIFICATION_LENGTH = 2000

Notifier = Callable[[str], Any]


class NotificationHandler(logging.Handler):
    """Logging handler that passes formatted records to a notifier callable.

    The notifier may be a plain function or a coroutine function; coroutines
    are scheduled on the running event loop.
    """

    def __init__(self, notifier: Optional[Notifier] = None, loop: Optional[asyncio.AbstractEventLoop] = None):
        super().__init__()
        self.notifier = notifier
        self.loop = loop

    def emit(self, record: logging.LogRecord) -> None:
        """Emit a log record to the notifier if one is configured."""
        if self.notifier is None:
            return

        try:
            base_msg = f"{record.levelname}: {record.getMessage()}"
            if record.exc_info:
                formatted_trace = self.format(record)
                if len(formatted_trace) > MAX_NOTIFICATION_LENGTH - 150:
                    formatted_trace = formatted_trace[: MAX_NOTIFICATION_LENGTH - 150] + "... (truncated)"
                msg = f"{base_msg}\n{formatted_trace}"
            else:
                msg = base_msg
        except Exception:
            msg = f"{record.levelname}: {record.getMessage()}"

        if len(msg) > MAX_NOTIFICATION_LENGTH:
            msg = msg[: MAX_NOTIFICATION_LENGTH - 3] + "..."

        self._dispatch(msg)

    def _dispatch(self, message: str) -> None:
        """Call the notifier, scheduling it when it is a coroutine function."""
        try:
            if not inspect.iscoroutinefunction(self.notifier):
                self.notifier(message)
                return

            try:
                loop = asyncio.get_running_loop()
            except RuntimeError:
                loop = self.loop
            if loop is None or not loop.is_running():
                return

            if self.loop is not None and loop is not self.loop:
                asyncio.run_coroutine_threadsafe(self._notify(message), self.loop)
            else:
                loop.create_task(self._notify(message))
        except Exception as e:
            # Log to stderr to prevent recursive logging failures
            print(f"NotificationHandler: Failed to dispatch message: {e}", file=sys.stderr)

    async def _notify(self, message: str) -> None:
        try:
            await self.notifier(message)
        except Exception as e:
            print(f"NotificationHandler: Failed to send message: {e}", file=sys.stderr)


def setup_logger(
    level: int = logging.INFO,
    audit_notifier: Optional[Notifier] = None,
    error_notifier: Optional[Notifier] = None,
) -> logging.Logger:
    """
    Set up the wallet logger with a console handler and optional notifiers.

    Args:
        level: Logging level (default: INFO)
        audit_notifier: Receives INFO+ records from ``wallet_core.audit``
        error_notifier: Receives ERROR+ records from any wallet logger

    Returns:
        Configured logger instance
    """
    global logger

    logger = logging.getLogger("wallet_core")
    logger.setLevel(level)

    # Remove existing handlers to avoid duplicates
    logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
    logger.addHandler(console_handler)

    if audit_notifier is not None:
        audit_handler = NotificationHandler(audit_notifier)
        audit_handler.setLevel(logging.INFO)
        audit_handler.addFilter(lambda record: "audit" in record.name.lower())
        logger.addHandler(audit_handler)

    if error_notifier is not None:
        error_handler = NotificationHandler(error_notifier)
        error_handler.setLevel(logging.ERROR)
        logger.addHandler(error_handler)

    # Prevent propagation to root logger to avoid duplicates
    logger.propagate = False

    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """
    Get the wallet logger, or one of its children.

    Args:
        name: Optional child name, e.g. "audit" gives ``wallet_core.audit``

    Returns:
        Logger instance; a basic console logger is created if setup_logger
        has not been called yet
    """
    global logger
    if logger is None:
        logger = logging.getLogger("wallet_core")
        logger.setLevel(logging.INFO)

        if not logger.handlers:
            handler = logging.StreamHandler(sys.stdout)
            handler.setFormatter(logging.Formatter(LOG_FORMAT))
            logger.addHandler(handler)
            logger.propagate = False

    if name:
        return logger.getChild(name)
    return logger


# Initialize a basic logger for immediate use
logger = get_logger()

# Records written here reach the audit notifier
audit_logger = get_logger("audit")
