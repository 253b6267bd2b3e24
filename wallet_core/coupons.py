"""Coupon validation, pricing and redemption."""

from __future__ import annotations

import sqlite3
from decimal import Decimal
from typing import Callable, Iterable, Optional

import aiosqlite

from .constants import (
    COUPON_CODE_MAX_LENGTH,
    COUPON_TYPE_FIXED,
    COUPON_TYPE_PERCENT,
    COUPONS_ALL,
    COUPONS_FIXED_ONLY,
    COUPONS_NONE,
    COUPONS_PERCENT_ONLY,
)
from .database import Database
from .exceptions import (
    CouponExpired,
    CouponNotApplicable,
    CouponNotFound,
    CouponUsageExceeded,
)
from .logger import get_logger
from .models import Coupon, CouponUsage, DiscountDescriptor, EnrolmentInstance
from .utils.currency import ZERO, from_cents, quantize, to_cents
from .utils.timestamps import now_ts, within_window

logger = get_logger()
audit_logger = get_logger("audit")

_ENABLED_TYPES = {
    COUPONS_NONE: frozenset(),
    COUPONS_FIXED_ONLY: frozenset({COUPON_TYPE_FIXED}),
    COUPONS_PERCENT_ONLY: frozenset({COUPON_TYPE_PERCENT}),
    COUPONS_ALL: frozenset({COUPON_TYPE_FIXED, COUPON_TYPE_PERCENT}),
}


def _join_ids(ids: Iterable[int]) -> Optional[str]:
    joined = ",".join(str(int(i)) for i in ids)
    return joined or None


class CouponEngine:
    """Fixed and percentage coupons applied to purchases."""

    def __init__(
        self,
        db: Database,
        mode: int = COUPONS_ALL,
        clock: Callable[[], int] = now_ts,
    ) -> None:
        self.db = db
        self.mode = mode
        self.clock = clock

    async def create_coupon(
        self,
        *,
        code: str,
        type: str,
        value,
        maxusage: int = 0,
        maxperuser: int = 0,
        validfrom: int = 0,
        validto: int = 0,
        categories: Iterable[int] = (),
        courses: Iterable[int] = (),
        description: Optional[str] = None,
    ) -> int:
        """Create a new coupon.

        Returns:
            Coupon ID

        Raises:
            ValueError: on a malformed or duplicate coupon
        """
        code = (code or "").strip()
        if not code or len(code) > COUPON_CODE_MAX_LENGTH:
            raise ValueError(f"Coupon code must be 1-{COUPON_CODE_MAX_LENGTH} characters")
        if type not in (COUPON_TYPE_FIXED, COUPON_TYPE_PERCENT):
            raise ValueError(f"Unknown coupon type {type!r}")

        amount = Decimal(str(value))
        if amount <= 0:
            raise ValueError("Coupon value must be positive")
        if type == COUPON_TYPE_PERCENT and amount > 100:
            raise ValueError("Percentage coupons cannot exceed 100")
        if maxusage < 0 or maxperuser < 0:
            raise ValueError("Usage limits must be non-negative")
        if validfrom and validto and validto < validfrom:
            raise ValueError("Coupon validity ends before it starts")

        try:
            async with self.db.transaction() as connection:
                cursor = await connection.execute(
                    """
                    INSERT INTO coupons (
                        code, type, value, maxusage, maxperuser, validfrom, validto,
                        category, courses, description, timecreated
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        code,
                        type,
                        float(amount),
                        maxusage,
                        maxperuser,
                        validfrom,
                        validto,
                        _join_ids(categories),
                        _join_ids(courses),
                        description,
                        self.clock(),
                    ),
                )
        except sqlite3.IntegrityError as exc:
            raise ValueError(f"Coupon {code!r} already exists") from exc

        logger.info(f"Created {type} coupon {code} (value={amount}, maxusage={maxusage})")
        return cursor.lastrowid

    async def _fetch(self, connection: aiosqlite.Connection, code: str) -> Optional[Coupon]:
        cursor = await connection.execute(
            "SELECT * FROM coupons WHERE code = ? COLLATE NOCASE", ((code or "").strip(),)
        )
        row = await cursor.fetchone()
        return Coupon.from_row(row) if row else None

    async def get_coupon(self, code: str) -> Optional[Coupon]:
        """Get coupon by code string."""
        async with self.db.read() as connection:
            return await self._fetch(connection, code)

    async def _count_usage(self, connection: aiosqlite.Connection, code: str, userid: int) -> int:
        cursor = await connection.execute(
            "SELECT COUNT(*) as count FROM coupons_usage WHERE code = ? AND userid = ?",
            (code, userid),
        )
        row = await cursor.fetchone()
        return row["count"] if row else 0

    async def usage_count(self, code: str, userid: int) -> int:
        async with self.db.read() as connection:
            coupon = await self._fetch(connection, code)
            if coupon is None:
                return 0
            return await self._count_usage(connection, coupon.code, userid)

    async def get_usages(self, code: str) -> list[CouponUsage]:
        async with self.db.read() as connection:
            coupon = await self._fetch(connection, code)
            if coupon is None:
                return []
            cursor = await connection.execute(
                "SELECT * FROM coupons_usage WHERE code = ? ORDER BY id ASC", (coupon.code,)
            )
            rows = await cursor.fetchall()
        return [CouponUsage.from_row(row) for row in rows]

    async def usage_stats(self, code: str) -> dict:
        """Get usage statistics for a coupon."""
        async with self.db.read() as connection:
            coupon = await self._fetch(connection, code)
            if coupon is None:
                return {}

            cursor = await connection.execute(
                """
                SELECT
                    COUNT(*) as total_uses,
                    COUNT(DISTINCT userid) as unique_users,
                    SUM(value) as total_value
                FROM coupons_usage
                WHERE code = ?
                """,
                (coupon.code,),
            )
            stats = await cursor.fetchone()

        return {
            "code": coupon.code,
            "usetimes": coupon.usetimes,
            "maxusage": coupon.maxusage,
            "total_uses": stats["total_uses"] if stats else 0,
            "unique_users": stats["unique_users"] if stats else 0,
            "total_value": from_cents(stats["total_value"]) if stats else ZERO,
        }

    def _check(
        self,
        coupon: Optional[Coupon],
        code: str,
        used_by_user: int,
        instance: Optional[EnrolmentInstance],
        now: int,
    ) -> Coupon:
        if coupon is None:
            raise CouponNotFound(code)
        if coupon.type not in _ENABLED_TYPES.get(self.mode, frozenset()):
            raise CouponNotApplicable(coupon.code, f"a {coupon.type} coupon, which is disabled")
        if not within_window(now, coupon.validfrom, coupon.validto):
            raise CouponExpired(coupon.code)
        if coupon.maxusage and coupon.usetimes >= coupon.maxusage:
            raise CouponUsageExceeded(coupon.code)
        if coupon.maxperuser and used_by_user >= coupon.maxperuser:
            raise CouponUsageExceeded(coupon.code, per_user=True)

        if instance is not None:
            if coupon.categories and instance.category not in coupon.categories:
                raise CouponNotApplicable(coupon.code, "not valid in this category")
            if coupon.courses and instance.courseid not in coupon.courses:
                raise CouponNotApplicable(coupon.code, "not valid for this course")
        return coupon

    async def _validate(
        self,
        connection: aiosqlite.Connection,
        code: str,
        userid: int,
        instance: Optional[EnrolmentInstance],
        now: int,
    ) -> Coupon:
        coupon = await self._fetch(connection, code)
        used = await self._count_usage(connection, coupon.code, userid) if coupon else 0
        return self._check(coupon, (code or "").strip(), used, instance, now)

    async def validate(
        self,
        code: str,
        userid: int,
        instance: Optional[EnrolmentInstance] = None,
        now: Optional[int] = None,
    ) -> DiscountDescriptor:
        """
        Check a coupon for a user and purchase without consuming it.

        Raises:
            CouponNotFound: unknown code
            CouponExpired: outside validfrom/validto
            CouponUsageExceeded: total or per-user limit reached
            CouponNotApplicable: disabled coupon type, or the instance is outside
                the coupon's categories or courses
        """
        async with self.db.read() as connection:
            coupon = await self._validate(
                connection, code, userid, instance, self.clock() if now is None else now
            )
        return DiscountDescriptor(code=coupon.code, type=coupon.type, value=coupon.value)

    @staticmethod
    def compute_cost_after(base_cost, descriptor: Optional[DiscountDescriptor]) -> Decimal:
        """Apply a coupon to a cost. The result never drops below zero."""
        base = quantize(base_cost)
        if descriptor is None:
            return base
        if descriptor.type == COUPON_TYPE_PERCENT:
            cost = base * (1 - descriptor.value / 100)
        else:
            cost = base - descriptor.value
        return max(quantize(cost), ZERO)

    async def redeem(
        self,
        code: str,
        userid: int,
        instance: Optional[EnrolmentInstance],
        value_applied,
        now: Optional[int] = None,
    ) -> DiscountDescriptor:
        """
        Record one use of a coupon.

        The usage counter is bumped with a conditional update, so concurrent
        redeemers can never push it past ``maxusage``. Joins the caller's
        transaction when there is one.
        """
        timestamp = self.clock() if now is None else now
        instanceid = instance.id if instance is not None else 0

        async def _redeem() -> DiscountDescriptor:
            async with self.db.transaction() as connection:
                coupon = await self._validate(connection, code, userid, instance, timestamp)

                cursor = await connection.execute(
                    """
                    UPDATE coupons
                    SET usetimes = usetimes + 1, lastuse = ?
                    WHERE id = ? AND (maxusage = 0 OR usetimes < maxusage)
                    """,
                    (timestamp, coupon.id),
                )
                if cursor.rowcount != 1:
                    raise CouponUsageExceeded(coupon.code)

                await connection.execute(
                    """
                    INSERT INTO coupons_usage (code, type, value, userid, instanceid, timeused)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (coupon.code, coupon.type, to_cents(quantize(value_applied)), userid, instanceid, timestamp),
                )

            audit_logger.info(
                f"Coupon {coupon.code} redeemed by user {userid} on instance {instanceid} "
                f"(value applied {quantize(value_applied)})"
            )
            return DiscountDescriptor(code=coupon.code, type=coupon.type, value=coupon.value)

        return await self.db.run_with_retry(_redeem, description=f"coupon redemption for user {userid}")
