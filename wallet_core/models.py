"""Record types shared by the wallet components."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterator, Mapping, Optional

import aiosqlite

from .exceptions import LedgerCorruption
from .utils.currency import ZERO, from_cents, quantize, to_decimal


class CategoryBalances(Mapping[int, Decimal]):
    """Ring-fenced credit per category id.

    The amounts live inside the nonrefundable and free-gift pools, so their sum
    may never exceed ``nonrefundable + freegift``.
    """

    def __init__(self, data: Optional[Mapping[int, Decimal]] = None) -> None:
        self._data: dict[int, Decimal] = {}
        for key, value in (data or {}).items():
            amount = quantize(value)
            if amount:
                self._data[int(key)] = amount

    def __getitem__(self, category: int) -> Decimal:
        return self._data[category]

    def __iter__(self) -> Iterator[int]:
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"CategoryBalances({self._data!r})"

    def get_amount(self, category: Optional[int]) -> Decimal:
        if not category:
            return ZERO
        return self._data.get(int(category), ZERO)

    def total(self) -> Decimal:
        return sum(self._data.values(), ZERO)

    def adjusted(self, category: int, delta: Decimal) -> "CategoryBalances":
        """Return a copy with ``delta`` applied to one category."""
        data = dict(self._data)
        data[int(category)] = data.get(int(category), ZERO) + delta
        return CategoryBalances(data)

    def validate(self, pool: Decimal) -> None:
        """Raise LedgerCorruption unless every entry is non-negative and the sum fits in ``pool``."""
        for category, amount in self._data.items():
            if amount < 0:
                raise LedgerCorruption(f"Category {category} balance is negative: {amount}")
        if self.total() > pool:
            raise LedgerCorruption(
                f"Category balances {self.total()} exceed the non-refundable pool {pool}"
            )

    def to_json(self) -> Optional[str]:
        if not self._data:
            return None
        return json.dumps({str(key): str(value) for key, value in sorted(self._data.items())})

    @classmethod
    def from_json(cls, raw: Optional[str]) -> "CategoryBalances":
        if not raw:
            return cls()
        try:
            payload = json.loads(raw)
            return cls({int(key): Decimal(str(value)) for key, value in payload.items()})
        except (ValueError, TypeError, AttributeError, ArithmeticError) as exc:
            raise LedgerCorruption(f"Malformed category balance data: {raw!r}") from exc


@dataclass(frozen=True)
class UserBalance:
    userid: int
    refundable: Decimal = ZERO
    nonrefundable: Decimal = ZERO
    freegift: Decimal = ZERO
    categories: CategoryBalances = field(default_factory=CategoryBalances)
    version: int = 0
    timecreated: int = 0
    timemodified: int = 0

    @property
    def total(self) -> Decimal:
        return self.refundable + self.nonrefundable + self.freegift

    @property
    def pool(self) -> Decimal:
        """Credit that is not refundable (nonrefundable plus free gift)."""
        return self.nonrefundable + self.freegift

    @property
    def free_pool(self) -> Decimal:
        """Non-refundable credit not ring-fenced to any category."""
        return self.pool - self.categories.total()

    def spendable(self, category: Optional[int] = None) -> Decimal:
        return self.refundable + self.free_pool + self.categories.get_amount(category)

    def validate(self) -> None:
        for name in ("refundable", "nonrefundable", "freegift"):
            if getattr(self, name) < 0:
                raise LedgerCorruption(f"Balance component {name} is negative for user {self.userid}")
        self.categories.validate(self.pool)

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "UserBalance":
        return cls(
            userid=row["userid"],
            refundable=from_cents(row["refundable"]),
            nonrefundable=from_cents(row["nonrefundable"]),
            freegift=from_cents(row["freegift"]),
            categories=CategoryBalances.from_json(row["cat_balance"]),
            version=row["version"],
            timecreated=row["timecreated"],
            timemodified=row["timemodified"],
        )


@dataclass(frozen=True)
class TransactionRecord:
    userid: int
    type: str
    amount: Decimal
    balbefore: Decimal
    balance: Decimal
    norefund: Decimal = ZERO
    freegift: Decimal = ZERO
    catamount: Decimal = ZERO
    category: Optional[int] = None
    descripe: str = ""
    timecreated: int = 0
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "TransactionRecord":
        return cls(
            id=row["id"],
            userid=row["userid"],
            type=row["type"],
            amount=from_cents(row["amount"]),
            balbefore=from_cents(row["balbefore"]),
            balance=from_cents(row["balance"]),
            norefund=from_cents(row["norefund"]),
            freegift=from_cents(row["freegift"]),
            catamount=from_cents(row["catamount"]),
            category=row["category"] or None,
            descripe=row["descripe"] or "",
            timecreated=row["timecreated"],
        )


def _split_ids(raw: Optional[str]) -> tuple[int, ...]:
    """Parse a comma separated id list as stored in the coupons table."""
    return tuple(int(part) for part in str(raw or "").split(",") if part.strip())


@dataclass(frozen=True)
class Coupon:
    code: str
    type: str
    value: Decimal
    maxusage: int = 0
    maxperuser: int = 0
    usetimes: int = 0
    validfrom: int = 0
    validto: int = 0
    categories: tuple[int, ...] = ()
    courses: tuple[int, ...] = ()
    description: Optional[str] = None
    timecreated: int = 0
    lastuse: int = 0
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "Coupon":
        courses = _split_ids(row["courses"])
        return cls(
            id=row["id"],
            code=row["code"],
            type=row["type"],
            value=to_decimal(row["value"]),
            maxusage=row["maxusage"] or 0,
            maxperuser=row["maxperuser"] or 0,
            usetimes=row["usetimes"] or 0,
            validfrom=row["validfrom"] or 0,
            validto=row["validto"] or 0,
            categories=_split_ids(row["category"]),
            courses=courses,
            description=row["description"],
            timecreated=row["timecreated"] or 0,
            lastuse=row["lastuse"] or 0,
        )


@dataclass(frozen=True)
class CouponUsage:
    code: str
    type: str
    value: Decimal
    userid: int
    instanceid: int
    timeused: int

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "CouponUsage":
        return cls(
            code=row["code"],
            type=row["type"],
            value=from_cents(row["value"]),
            userid=row["userid"],
            instanceid=row["instanceid"],
            timeused=row["timeused"],
        )


@dataclass(frozen=True)
class DiscountDescriptor:
    """A validated coupon ready to be priced."""
    code: str
    type: str
    value: Decimal


@dataclass(frozen=True)
class ConditionalDiscountTier:
    cond: Decimal
    percent: Decimal
    category: Optional[int] = None
    timefrom: int = 0
    timeto: int = 0
    usermodified: int = 0
    timecreated: int = 0
    timemodified: int = 0
    id: Optional[int] = None

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "ConditionalDiscountTier":
        return cls(
            id=row["id"],
            cond=quantize(to_decimal(row["cond"])),
            percent=to_decimal(row["percent"]),
            category=row["category"] or None,
            timefrom=row["timefrom"] or 0,
            timeto=row["timeto"] or 0,
            usermodified=row["usermodified"] or 0,
            timecreated=row["timecreated"] or 0,
            timemodified=row["timemodified"] or 0,
        )


@dataclass(frozen=True)
class TopupQuote:
    """How a top-up splits into collected cash and bonus credit.

    ``value`` is what the tier lookup sees; ``cash`` is what is actually collected.
    """
    value: Decimal
    cash: Decimal
    bonus: Decimal
    tier: Optional[ConditionalDiscountTier] = None


@dataclass(frozen=True)
class ReferralCode:
    code: str
    userid: int
    usetimes: int = 0
    users: tuple[str, ...] = ()

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "ReferralCode":
        users = tuple(json.loads(row["users"])) if row["users"] else ()
        return cls(code=row["code"], userid=row["userid"], usetimes=row["usetimes"] or 0, users=users)


@dataclass(frozen=True)
class HeldGift:
    id: int
    referrer: int
    referred: str
    amount: Decimal
    courseid: Optional[int] = None
    released: bool = False
    timecreated: int = 0
    timemodified: int = 0

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "HeldGift":
        return cls(
            id=row["id"],
            referrer=row["referrer"],
            referred=row["referred"],
            amount=from_cents(row["amount"]),
            courseid=row["courseid"],
            released=bool(row["released"]),
            timecreated=row["timecreated"],
            timemodified=row["timemodified"],
        )


@dataclass(frozen=True)
class AwardRecord:
    userid: int
    courseid: int
    instanceid: int
    grade: float
    maxgrade: float
    percent: float
    amount: Decimal
    timecreated: int

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "AwardRecord":
        return cls(
            userid=row["userid"],
            courseid=row["courseid"],
            instanceid=row["instanceid"],
            grade=row["grade"],
            maxgrade=row["maxgrade"],
            percent=row["percent"],
            amount=from_cents(row["amount"]),
            timecreated=row["timecreated"],
        )


@dataclass(frozen=True)
class PaymentItem:
    id: int
    cost: Decimal
    currency: str
    userid: int
    instanceid: Optional[int] = None
    category: Optional[int] = None
    paymentid: Optional[int] = None
    timecreated: int = 0

    @classmethod
    def from_row(cls, row: aiosqlite.Row) -> "PaymentItem":
        return cls(
            id=row["id"],
            cost=from_cents(row["cost"]),
            currency=row["currency"],
            userid=row["userid"],
            instanceid=row["instanceid"],
            category=row["category"] or None,
            paymentid=row["paymentid"],
            timecreated=row["timecreated"],
        )


@dataclass(frozen=True)
class EnrolmentInstance:
    """A purchasable resource as described by the host system."""
    id: int
    courseid: int
    cost: Decimal
    category: Optional[int] = None
    award_enabled: Optional[bool] = None
    award_criteria: Optional[float] = None
    award_per_point: Optional[float] = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class TopupResult:
    userid: int
    quote: TopupQuote
    balance: Decimal


@dataclass(frozen=True)
class PriceQuote:
    base_cost: Decimal
    cost_after: Decimal
    coupon: Optional[DiscountDescriptor] = None
    cost_after_coupon: Optional[Decimal] = None

    @property
    def coupon_saving(self) -> Decimal:
        """What the coupon alone took off the base cost."""
        if self.coupon is None or self.cost_after_coupon is None:
            return ZERO
        return self.base_cost - self.cost_after_coupon


@dataclass(frozen=True)
class PurchaseResult:
    userid: int
    instanceid: int
    cost_before: Decimal
    cost_after: Decimal
    coupon_code: Optional[str]
    cashback: Decimal
    balance: Decimal


@dataclass(frozen=True)
class PaymentOutcome:
    itemid: int
    paymentid: int
    credited: Decimal
    balance: Decimal
    instanceid: Optional[int] = None
    duplicate: bool = False


# ---------------------------------------------------------------------------
# Inbound events
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class PaymentConfirmed:
    itemid: int
    paymentid: int
    userid: int
    amount: Decimal


@dataclass(frozen=True)
class CourseCompleted:
    userid: int
    courseid: int
    grade_percent: float
    grade: Optional[float] = None
    maxgrade: Optional[float] = None


@dataclass(frozen=True)
class UserRegistered:
    userid: int


@dataclass(frozen=True)
class ReferralRegistered:
    code: str
    referred: str
    courseid: Optional[int] = None
