"""Core modules for the wallet ledger and discount engine."""

from .awards import AwardCalculator
from .balance import BalanceStore
from .config import WalletConfig, load_config, parse_config
from .coupons import CouponEngine
from .database import Database
from .discounts import ConditionalDiscountResolver
from .ledger import TransactionLedger
from .referrals import ReferralProgram
from .wallet import WalletService, apply_user_discount, create_wallet

__all__ = [
    "WalletConfig",
    "load_config",
    "parse_config",
    "Database",
    "TransactionLedger",
    "BalanceStore",
    "CouponEngine",
    "ConditionalDiscountResolver",
    "ReferralProgram",
    "AwardCalculator",
    "WalletService",
    "apply_user_discount",
    "create_wallet",
]
