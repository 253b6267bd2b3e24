"""Global constants for the wallet core."""

from __future__ import annotations

# ============================================================================
# Database
# ============================================================================

DATABASE_MAX_RETRIES = 5
DATABASE_RETRY_BASE_DELAY_SECONDS = 1
DEFAULT_CONNECT_TIMEOUT_SECONDS = 5.0

# ============================================================================
# Concurrency
# ============================================================================

CONFLICT_MAX_RETRIES = 3  # attempts after the first one
CONFLICT_RETRY_BASE_DELAY_SECONDS = 0.01

# ============================================================================
# Transactions
# ============================================================================

TRANSACTION_DEBIT = "debit"
TRANSACTION_CREDIT = "credit"

# Columns a ledger query may be ordered by. Display-only columns are excluded.
LEDGER_SORTABLE_COLUMNS = frozenset(
    {"timecreated", "amount", "type", "balbefore", "balance", "descripe"}
)
LEDGER_DEFAULT_ORDER = "id DESC"

# ============================================================================
# Coupons
# ============================================================================

COUPON_TYPE_FIXED = "fixed"
COUPON_TYPE_PERCENT = "percent"

COUPONS_NONE = 0
COUPONS_FIXED_ONLY = 1
COUPONS_PERCENT_ONLY = 2
COUPONS_ALL = 3

COUPON_CODE_MAX_LENGTH = 20

# ============================================================================
# Referrals
# ============================================================================

REFERRAL_CODE_RANDOM_LENGTH = 15

# ============================================================================
# Financial defaults
# ============================================================================

DEFAULT_CURRENCY = "USD"
DEFAULT_CASHBACK_PERCENT = 0.0
DEFAULT_REFERRAL_AMOUNT = 0.0
