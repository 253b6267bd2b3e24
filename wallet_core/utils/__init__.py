"""Shared utilities for the wallet core."""

from .currency import format_amount, parse_amount, quantize
from .error_messages import classify_error, get_error_message, message_for
from .timestamps import now_ts, to_timestamp, within_window

__all__ = [
    "format_amount",
    "parse_amount",
    "quantize",
    "classify_error",
    "get_error_message",
    "message_for",
    "now_ts",
    "to_timestamp",
    "within_window",
]
