"""Completion awards and purchase cashback."""

from __future__ import annotations

from decimal import Decimal
from typing import Callable, Optional

from .balance import BalanceStore
from .database import Database
from .logger import get_logger
from .models import AwardRecord
from .utils.currency import ZERO, quantize, to_cents
from .utils.timestamps import now_ts

logger = get_logger()
audit_logger = get_logger("audit")


def _as_decimal(value) -> Decimal:
    return value if isinstance(value, Decimal) else Decimal(str(value))


class AwardCalculator:
    """Turns a completion grade or a purchase into bonus credit."""

    def __init__(
        self,
        db: Database,
        balances: BalanceStore,
        clock: Callable[[], int] = now_ts,
    ) -> None:
        self.db = db
        self.balances = balances
        self.clock = clock

    @staticmethod
    def compute_award(grade_percent, criteria_percent, credit_per_point) -> Decimal:
        """
        Credit earned for every grade point above the award criteria.

        Example: criteria 50, 0.5 per point and a grade of 90% earn
        ``(90 - 50) * 0.5 = 20``. Grades below the criteria earn nothing.
        """
        grade = _as_decimal(grade_percent)
        criteria = _as_decimal(criteria_percent)
        if grade < criteria:
            return ZERO
        return max(quantize((grade - criteria) * _as_decimal(credit_per_point)), ZERO)

    @staticmethod
    def compute_cashback(cost_after_discount, cashback_percent) -> Decimal:
        return max(quantize(_as_decimal(cost_after_discount) * _as_decimal(cashback_percent) / 100), ZERO)

    async def award_completion(
        self,
        userid: int,
        courseid: int,
        instanceid: int,
        grade_percent,
        criteria_percent,
        credit_per_point,
        *,
        grade: Optional[float] = None,
        maxgrade: Optional[float] = None,
    ) -> Decimal:
        """
        Credit the completion award for one enrolment instance.

        The award row and the non-refundable credit commit together. The
        ``(userid, instanceid)`` pair is unique, so a repeated completion
        event inserts nothing and credits nothing.

        Returns:
            The amount credited, 0 when below the criteria or already awarded
        """
        amount = self.compute_award(grade_percent, criteria_percent, credit_per_point)
        if amount <= ZERO:
            logger.debug(
                f"No completion award for user {userid} in course {courseid}: "
                f"grade {grade_percent}% below criteria {criteria_percent}%"
            )
            return ZERO

        percent = float(grade_percent)
        if grade is None:
            grade = percent
        if maxgrade is None:
            maxgrade = 100.0

        async def _award() -> Decimal:
            async with self.db.transaction() as connection:
                cursor = await connection.execute(
                    """
                    INSERT INTO awards (userid, courseid, instanceid, grade, maxgrade, percent, amount, timecreated)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(userid, instanceid) DO NOTHING
                    """,
                    (userid, courseid, instanceid, grade, maxgrade, percent, to_cents(amount), self.clock()),
                )
                if cursor.rowcount != 1:
                    return ZERO

                await self.balances.credit(
                    userid,
                    amount,
                    nonrefundable=True,
                    description=f"Award for completing course {courseid} with grade {percent:g}%",
                )
                return amount

        credited = await self.db.run_with_retry(_award, description=f"completion award for user {userid}")
        if credited:
            audit_logger.info(f"Completion award {credited} credited to user {userid} for instance {instanceid}")
        else:
            logger.info(f"Completion award for user {userid} on instance {instanceid} already granted")
        return credited

    async def get_awards(self, userid: int) -> list[AwardRecord]:
        async with self.db.read() as connection:
            cursor = await connection.execute(
                "SELECT * FROM awards WHERE userid = ? ORDER BY id ASC", (userid,)
            )
            rows = await cursor.fetchall()
        return [AwardRecord.from_row(row) for row in rows]
