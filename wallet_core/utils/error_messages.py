"""Standardized error messages so a UI layer can tell failure kinds apart."""

from __future__ import annotations

from typing import Any

from ..exceptions import (
    ConcurrencyConflict,
    CouponError,
    CouponExpired,
    CouponNotApplicable,
    CouponNotFound,
    CouponUsageExceeded,
    InsufficientBalance,
    InvalidAmount,
    ReferralError,
)

# Error categories, most specific first in classify_error.
KIND_INSUFFICIENT_BALANCE = "insufficient_balance"
KIND_COUPON_INVALID = "coupon_invalid"
KIND_INVALID_AMOUNT = "invalid_amount"
KIND_TRANSIENT = "transient"
KIND_REFERRAL = "referral"
KIND_FATAL = "fatal"


def classify_error(error: BaseException) -> str:
    """
    Map an exception to the failure category shown to the user.

    Insufficient balance and invalid coupons are actionable, concurrency
    conflicts should be retried later, and anything else aborts.
    """
    if isinstance(error, InsufficientBalance):
        return KIND_INSUFFICIENT_BALANCE
    if isinstance(error, CouponError):
        return KIND_COUPON_INVALID
    if isinstance(error, InvalidAmount):
        return KIND_INVALID_AMOUNT
    if isinstance(error, ConcurrencyConflict):
        return KIND_TRANSIENT
    if isinstance(error, ReferralError):
        return KIND_REFERRAL
    return KIND_FATAL


def get_error_message(error_type: str, **kwargs: Any) -> str:
    """
    Get formatted error message with variables.

    Args:
        error_type: Type of error (key from ERROR_MESSAGES)
        **kwargs: Variables to format into the message

    Returns:
        Formatted error message string
    """
    message_template = ERROR_MESSAGES.get(error_type, ERROR_MESSAGES[KIND_FATAL])

    try:
        return message_template.format(**kwargs)
    except KeyError:
        # If a required variable is missing, return a generic message
        return f"{error_type.replace('_', ' ').title()} error occurred."


def message_for(error: BaseException) -> str:
    """Build the user-facing message for an exception raised by the wallet core."""
    if isinstance(error, InsufficientBalance):
        return get_error_message(
            KIND_INSUFFICIENT_BALANCE,
            current_balance=error.available,
            required_amount=error.required,
        )
    if isinstance(error, CouponNotFound):
        return get_error_message("coupon_not_found", code=error.code)
    if isinstance(error, CouponExpired):
        return get_error_message("coupon_expired", code=error.code)
    if isinstance(error, CouponUsageExceeded):
        return get_error_message("coupon_max_uses", code=error.code)
    if isinstance(error, CouponNotApplicable):
        return get_error_message("coupon_not_applicable", code=error.code, reason=error.reason)
    return get_error_message(classify_error(error), detail=str(error))


ERROR_MESSAGES = {
    KIND_INSUFFICIENT_BALANCE: (
        "Insufficient Balance\n"
        "You don't have enough balance for this purchase.\n"
        "- Current balance: {current_balance}\n"
        "- Required: {required_amount}\n"
        "- Top up your wallet to continue"
    ),
    KIND_COUPON_INVALID: (
        "Invalid Coupon\n"
        "The coupon could not be applied: {detail}\n"
        "- Remove the coupon to pay the full price"
    ),
    "coupon_not_found": (
        "Invalid Coupon\n"
        "The coupon `{code}` does not exist.\n"
        "- Check the code spelling or remove the coupon"
    ),
    "coupon_expired": (
        "Coupon Expired\n"
        "The coupon `{code}` is not valid at this time.\n"
        "- Remove the coupon to pay the full price"
    ),
    "coupon_max_uses": (
        "Coupon Limit Reached\n"
        "The coupon `{code}` has reached its usage limit.\n"
        "- Remove the coupon to pay the full price"
    ),
    "coupon_not_applicable": (
        "Coupon Not Applicable\n"
        "The coupon `{code}` is {reason}.\n"
        "- Remove the coupon to pay the full price"
    ),
    KIND_INVALID_AMOUNT: (
        "Invalid Amount\n"
        "{detail}\n"
        "- Amounts must be positive numbers"
    ),
    KIND_TRANSIENT: (
        "Temporarily Unavailable\n"
        "Your wallet is busy with another operation.\n"
        "- Please try again in a moment"
    ),
    KIND_REFERRAL: (
        "Referral Error\n"
        "{detail}"
    ),
    KIND_FATAL: (
        "An error occurred. Nothing was charged.\n"
        "- Please try again later or contact support"
    ),
}
