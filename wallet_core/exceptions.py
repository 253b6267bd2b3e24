"""Exception taxonomy for wallet operations."""

from __future__ import annotations

from decimal import Decimal
from typing import Optional


class WalletError(Exception):
    """Base class for every error raised by the wallet core."""


class InvalidAmount(WalletError, ValueError):
    """Raised when an amount is non-positive or not a number."""

    def __init__(self, value: object) -> None:
        self.value = value
        super().__init__(f"Invalid amount: {value!r}")


class InsufficientBalance(WalletError):
    """Raised when a debit exceeds what the user can spend."""

    def __init__(self, userid: int, required: Decimal, available: Decimal) -> None:
        self.userid = userid
        self.required = required
        self.available = available
        super().__init__(
            f"Insufficient balance for user {userid}: required {required}, available {available}"
        )


class ConcurrencyConflict(WalletError):
    """Raised when a balance row or lock was contended. The whole operation may be retried."""


class LedgerCorruption(WalletError):
    """Raised when stored balance data violates its invariants."""


class CouponError(WalletError):
    """Base class for coupon failures. The purchase falls back to the base cost."""

    def __init__(self, code: str, message: Optional[str] = None) -> None:
        self.code = code
        super().__init__(message or f"Coupon {code!r} cannot be used")


class CouponNotFound(CouponError):
    def __init__(self, code: str) -> None:
        super().__init__(code, f"Coupon {code!r} does not exist")


class CouponExpired(CouponError):
    def __init__(self, code: str) -> None:
        super().__init__(code, f"Coupon {code!r} is outside its validity window")


class CouponUsageExceeded(CouponError):
    def __init__(self, code: str, per_user: bool = False) -> None:
        self.per_user = per_user
        scope = "per-user" if per_user else "total"
        super().__init__(code, f"Coupon {code!r} reached its {scope} usage limit")


class CouponNotApplicable(CouponError):
    def __init__(self, code: str, reason: str = "not applicable here") -> None:
        self.reason = reason
        super().__init__(code, f"Coupon {code!r} is {reason}")


class ReferralError(WalletError):
    """Base class for referral program failures."""


class ReferralDisabled(ReferralError):
    pass


class ReferralCodeNotFound(ReferralError):
    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"Referral code {code!r} does not exist")


class ReferralAlreadyRegistered(ReferralError):
    def __init__(self, referred: str) -> None:
        self.referred = referred
        super().__init__(f"{referred!r} has already been referred")


class ReferralLimitReached(ReferralError):
    def __init__(self, code: str) -> None:
        self.code = code
        super().__init__(f"Referral code {code!r} reached its maximum number of referrals")


class ReferralAlreadyReleased(ReferralError):
    """Signals an already released gift. Callers treat it as success."""

    def __init__(self, heldgift_id: int) -> None:
        self.heldgift_id = heldgift_id
        super().__init__(f"Held gift {heldgift_id} was already released")


class HeldGiftNotFound(ReferralError):
    def __init__(self, heldgift_id: int) -> None:
        self.heldgift_id = heldgift_id
        super().__init__(f"Held gift {heldgift_id} does not exist")


class PaymentItemNotFound(WalletError):
    def __init__(self, itemid: int) -> None:
        self.itemid = itemid
        super().__init__(f"Payment item {itemid} does not exist")
