"""Configuration management for the wallet core."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from .constants import (
    COUPONS_ALL,
    COUPONS_FIXED_ONLY,
    COUPONS_NONE,
    COUPONS_PERCENT_ONLY,
    CONFLICT_MAX_RETRIES,
    DEFAULT_CASHBACK_PERCENT,
    DEFAULT_CONNECT_TIMEOUT_SECONDS,
    DEFAULT_CURRENCY,
    DEFAULT_REFERRAL_AMOUNT,
)

CONFIG_PATH = Path("wallet_config.json")
DEFAULT_DB_PATH = "wallet.db"

VALID_COUPON_MODES = {
    "none": COUPONS_NONE,
    "fixed": COUPONS_FIXED_ONLY,
    "percent": COUPONS_PERCENT_ONLY,
    "all": COUPONS_ALL,
}


@dataclass(frozen=True)
class CashbackSettings:
    enabled: bool = False
    percent: float = DEFAULT_CASHBACK_PERCENT


@dataclass(frozen=True)
class NewUserGiftSettings:
    enabled: bool = False
    value: float = 0.0


@dataclass(frozen=True)
class ReferralSettings:
    enabled: bool = False
    amount: float = DEFAULT_REFERRAL_AMOUNT
    max_referrals: int = 0  # 0 means unlimited


@dataclass(frozen=True)
class AwardSettings:
    """Defaults applied to purchasable instances that don't carry their own award rules."""
    enabled: bool = False
    criteria_percent: float = 0.0
    credit_per_point: float = 0.0


@dataclass(frozen=True)
class DatabaseSettings:
    path: str = DEFAULT_DB_PATH
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT_SECONDS


@dataclass
class WalletConfig:
    currency: str = DEFAULT_CURRENCY
    coupons: int = COUPONS_ALL
    conditional_discount_enabled: bool = True
    max_retries: int = CONFLICT_MAX_RETRIES
    cashback: CashbackSettings = field(default_factory=CashbackSettings)
    new_user_gift: NewUserGiftSettings = field(default_factory=NewUserGiftSettings)
    referral: ReferralSettings = field(default_factory=ReferralSettings)
    awards: AwardSettings = field(default_factory=AwardSettings)
    database: DatabaseSettings = field(default_factory=DatabaseSettings)


def _coerce_percent(value: Any, *, field_name: str) -> float:
    try:
        percent = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field_name} must be a number (got {value!r})") from exc
    if not 0 <= percent <= 100:
        raise ValueError(f"{field_name} must be between 0 and 100 (got {percent})")
    return percent


def _coerce_non_negative(value: Any, *, field_name: str) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"{field_name} must be a number (got {value!r})") from exc
    if number < 0:
        raise ValueError(f"{field_name} must be non-negative (got {number})")
    return number


def _parse_coupon_mode(value: Any) -> int:
    """Accept either a mode name or its integer value."""
    if isinstance(value, str):
        mode = VALID_COUPON_MODES.get(value.lower())
        if mode is None:
            raise ValueError(
                f"coupons must be one of {sorted(VALID_COUPON_MODES)} (got {value!r})"
            )
        return mode
    try:
        mode = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"coupons must be a mode name or integer (got {value!r})") from exc
    if mode not in VALID_COUPON_MODES.values():
        raise ValueError(f"coupons must be between {COUPONS_NONE} and {COUPONS_ALL} (got {mode})")
    return mode


def _parse_cashback(payload: dict[str, Any] | None) -> CashbackSettings:
    """Parse cashback settings from config payload."""
    if not payload:
        return CashbackSettings()
    if not isinstance(payload, dict):
        raise ValueError("cashback must be an object")

    return CashbackSettings(
        enabled=bool(payload.get("enabled", False)),
        percent=_coerce_percent(payload.get("percent", DEFAULT_CASHBACK_PERCENT), field_name="cashback.percent"),
    )


def _parse_new_user_gift(payload: dict[str, Any] | None) -> NewUserGiftSettings:
    """Parse new user gift settings from config payload."""
    if not payload:
        return NewUserGiftSettings()
    if not isinstance(payload, dict):
        raise ValueError("new_user_gift must be an object")

    return NewUserGiftSettings(
        enabled=bool(payload.get("enabled", False)),
        value=_coerce_non_negative(payload.get("value", 0), field_name="new_user_gift.value"),
    )


def _parse_referral(payload: dict[str, Any] | None) -> ReferralSettings:
    """Parse referral settings from config payload."""
    if not payload:
        return ReferralSettings()
    if not isinstance(payload, dict):
        raise ValueError("referral must be an object")

    raw_max = payload.get("max_referrals", 0)
    try:
        max_referrals = int(raw_max)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"referral.max_referrals must be an integer (got {raw_max!r})") from exc
    if max_referrals < 0:
        raise ValueError(f"referral.max_referrals must be non-negative (got {max_referrals})")

    return ReferralSettings(
        enabled=bool(payload.get("enabled", False)),
        amount=_coerce_non_negative(payload.get("amount", DEFAULT_REFERRAL_AMOUNT), field_name="referral.amount"),
        max_referrals=max_referrals,
    )


def _parse_awards(payload: dict[str, Any] | None) -> AwardSettings:
    """Parse completion award defaults from config payload."""
    if not payload:
        return AwardSettings()
    if not isinstance(payload, dict):
        raise ValueError("awards must be an object")

    return AwardSettings(
        enabled=bool(payload.get("enabled", False)),
        criteria_percent=_coerce_percent(payload.get("criteria_percent", 0), field_name="awards.criteria_percent"),
        credit_per_point=_coerce_non_negative(payload.get("credit_per_point", 0), field_name="awards.credit_per_point"),
    )


def _parse_database(payload: dict[str, Any] | None) -> DatabaseSettings:
    """Parse database settings. Environment variables take precedence over the file."""
    payload = payload or {}
    if not isinstance(payload, dict):
        raise ValueError("database must be an object")

    path = os.getenv("WALLET_DB_PATH") or payload.get("path", DEFAULT_DB_PATH)
    raw_timeout = os.getenv("DB_CONNECT_TIMEOUT") or payload.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT_SECONDS)
    try:
        connect_timeout = float(raw_timeout)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"database.connect_timeout must be a number (got {raw_timeout!r})") from exc
    if connect_timeout <= 0:
        raise ValueError(f"database.connect_timeout must be positive (got {connect_timeout})")

    return DatabaseSettings(path=str(path), connect_timeout=connect_timeout)


def _parse_max_retries(value: Any) -> int:
    try:
        retries = int(value)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"max_retries must be an integer (got {value!r})") from exc
    if not 0 <= retries <= 20:
        raise ValueError(f"max_retries must be between 0 and 20 (got {retries})")
    return retries


def parse_config(data: dict[str, Any]) -> WalletConfig:
    """Build a WalletConfig from an already decoded JSON object."""
    currency = str(data.get("currency", DEFAULT_CURRENCY)).upper()
    if len(currency) != 3:
        raise ValueError(f"currency must be a 3-letter code (got {currency!r})")

    return WalletConfig(
        currency=currency,
        coupons=_parse_coupon_mode(data.get("coupons", "all")),
        conditional_discount_enabled=bool(data.get("conditional_discount_enabled", True)),
        max_retries=_parse_max_retries(data.get("max_retries", CONFLICT_MAX_RETRIES)),
        cashback=_parse_cashback(data.get("cashback")),
        new_user_gift=_parse_new_user_gift(data.get("new_user_gift")),
        referral=_parse_referral(data.get("referral")),
        awards=_parse_awards(data.get("awards")),
        database=_parse_database(data.get("database")),
    )


def load_config(config_path: str | Path = CONFIG_PATH) -> WalletConfig:
    """Load and parse configuration from a JSON file, after loading a .env file if present."""
    load_dotenv()
    path = Path(config_path)

    if not path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {path}\n"
            "Please copy wallet_config.example.json to wallet_config.json and fill in your values."
        )

    with path.open("r", encoding="utf-8") as file:
        data: dict[str, Any] = json.load(file)

    return parse_config(data)
