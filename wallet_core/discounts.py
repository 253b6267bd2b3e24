"""Conditional top-up discount tiers."""

from __future__ import annotations

from decimal import Decimal
from typing import Callable, Optional

from .database import Database
from .logger import get_logger
from .models import ConditionalDiscountTier, TopupQuote
from .utils.currency import ZERO, parse_amount, quantize
from .utils.timestamps import now_ts, within_window

logger = get_logger()

_HUNDRED = Decimal(100)


class ConditionalDiscountResolver:
    """Bonus credit for top-ups that reach a configured threshold.

    A tier ``(cond, percent)`` means: a top-up worth at least ``cond`` costs
    ``percent`` less in cash, and the difference is credited as non-refundable
    bonus.
    """

    def __init__(
        self,
        db: Database,
        enabled: bool = True,
        clock: Callable[[], int] = now_ts,
    ) -> None:
        self.db = db
        self.enabled = enabled
        self.clock = clock

    async def add_tier(
        self,
        cond,
        percent,
        *,
        category: Optional[int] = None,
        timefrom: int = 0,
        timeto: int = 0,
        usermodified: int = 0,
    ) -> int:
        """Create a tier and return its id."""
        threshold = parse_amount(cond)
        rate = Decimal(str(percent))
        if not 0 < rate < 100:
            raise ValueError(f"Discount percent must be between 0 and 100 (got {percent})")
        if timefrom and timeto and timeto < timefrom:
            raise ValueError("Discount window ends before it starts")

        now = self.clock()
        async with self.db.transaction() as connection:
            cursor = await connection.execute(
                """
                INSERT INTO cond_discount (
                    cond, percent, category, timefrom, timeto,
                    usermodified, timecreated, timemodified
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (float(threshold), float(rate), category or 0, timefrom, timeto, usermodified, now, now),
            )
        logger.info(f"Added conditional discount tier {threshold} -> {rate}% (category={category or 'all'})")
        return cursor.lastrowid

    async def list_tiers(self) -> list[ConditionalDiscountTier]:
        async with self.db.read() as connection:
            cursor = await connection.execute("SELECT * FROM cond_discount ORDER BY cond ASC, id ASC")
            rows = await cursor.fetchall()
        return [ConditionalDiscountTier.from_row(row) for row in rows]

    async def delete_tier(self, tier_id: int) -> bool:
        async with self.db.transaction() as connection:
            cursor = await connection.execute("DELETE FROM cond_discount WHERE id = ?", (tier_id,))
        return cursor.rowcount > 0

    async def _candidates(self, category: Optional[int], now: Optional[int]) -> list[ConditionalDiscountTier]:
        """Active tiers for a category, best first: largest threshold, then newest."""
        if not self.enabled:
            return []
        timestamp = self.clock() if now is None else now
        tiers = [
            tier
            for tier in await self.list_tiers()
            if within_window(timestamp, tier.timefrom, tier.timeto)
            and (not tier.category or tier.category == category)
        ]
        return sorted(tiers, key=lambda tier: (tier.cond, tier.id or 0), reverse=True)

    async def resolve(
        self,
        value,
        category: Optional[int] = None,
        now: Optional[int] = None,
    ) -> Optional[ConditionalDiscountTier]:
        """Return the applicable tier with the largest threshold not above ``value``."""
        amount = quantize(value)
        for tier in await self._candidates(category, now):
            if tier.cond <= amount:
                return tier
        return None

    @staticmethod
    def compute_bonus(value, tier: Optional[ConditionalDiscountTier]) -> Decimal:
        if tier is None:
            return ZERO
        return quantize(quantize(value) * tier.percent / _HUNDRED)

    async def quote(
        self,
        value,
        category: Optional[int] = None,
        now: Optional[int] = None,
    ) -> TopupQuote:
        """Split an intended top-up value into cash to collect and bonus credit."""
        amount = parse_amount(value)
        tier = await self.resolve(amount, category, now)
        bonus = self.compute_bonus(amount, tier)
        return TopupQuote(value=amount, cash=amount - bonus, bonus=bonus, tier=tier)

    async def quote_from_cash(
        self,
        cash,
        category: Optional[int] = None,
        now: Optional[int] = None,
    ) -> TopupQuote:
        """
        Work out the top-up value a cash payment buys.

        The cash was already discounted, so each tier is tested against the
        value it would have produced, ``cash / (1 - percent/100)``.
        """
        paid = parse_amount(cash)
        for tier in await self._candidates(category, now):
            value = quantize(paid * _HUNDRED / (_HUNDRED - tier.percent))
            if value >= tier.cond:
                return TopupQuote(value=value, cash=paid, bonus=value - paid, tier=tier)
        return TopupQuote(value=paid, cash=paid, bonus=ZERO)
