"""Per-user balance store.

Every mutation runs inside ``Database.transaction()``, updates the balance
row with an optimistic version check and appends exactly one ledger record
before the transaction commits.
"""

from __future__ import annotations

from dataclasses import replace
from decimal import Decimal
from typing import Callable, Optional

import aiosqlite

from .constants import TRANSACTION_CREDIT, TRANSACTION_DEBIT
from .database import Database
from .exceptions import ConcurrencyConflict, InsufficientBalance
from .ledger import TransactionLedger
from .logger import get_logger
from .models import TransactionRecord, UserBalance
from .utils.currency import ZERO, parse_amount, to_cents
from .utils.timestamps import now_ts

logger = get_logger()
audit_logger = get_logger("audit")


class BalanceStore:
    """Refundable, non-refundable, free-gift and category balances per user."""

    def __init__(
        self,
        db: Database,
        ledger: Optional[TransactionLedger] = None,
        clock: Callable[[], int] = now_ts,
    ) -> None:
        self.db = db
        self.ledger = ledger or TransactionLedger(db)
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _fetch(self, connection: aiosqlite.Connection, userid: int) -> Optional[UserBalance]:
        cursor = await connection.execute("SELECT * FROM balance WHERE userid = ?", (userid,))
        row = await cursor.fetchone()
        return UserBalance.from_row(row) if row else None

    async def _load(self, connection: aiosqlite.Connection, userid: int) -> UserBalance:
        """Fetch the balance row, creating a zero record on first use."""
        balance = await self._fetch(connection, userid)
        if balance is not None:
            return balance

        now = self.clock()
        await connection.execute(
            """
            INSERT INTO balance (userid, timecreated, timemodified)
            VALUES (?, ?, ?)
            ON CONFLICT(userid) DO NOTHING
            """,
            (userid, now, now),
        )
        balance = await self._fetch(connection, userid)
        if balance is None:
            raise RuntimeError(f"Failed to create or retrieve balance record for user {userid}.")
        return balance

    async def exists(self, userid: int) -> bool:
        async with self.db.read() as connection:
            return await self._fetch(connection, userid) is not None

    async def get_balance(self, userid: int) -> UserBalance:
        async with self.db.read() as connection:
            existing = await self._fetch(connection, userid)
        if existing is not None:
            return existing
        async with self.db.transaction() as connection:
            return await self._load(connection, userid)

    async def get_total(self, userid: int) -> Decimal:
        return (await self.get_balance(userid)).total

    async def get_nonrefundable(self, userid: int) -> Decimal:
        """Credit that can be spent but not refunded: non-refundable plus free gift."""
        return (await self.get_balance(userid)).pool

    async def get_category_balance(self, userid: int, category: int) -> Decimal:
        return (await self.get_balance(userid)).categories.get_amount(category)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def _store(
        self,
        connection: aiosqlite.Connection,
        before: UserBalance,
        after: UserBalance,
    ) -> None:
        """Write ``after`` if the row still carries ``before.version``."""
        after.validate()
        cursor = await connection.execute(
            """
            UPDATE balance
            SET refundable = ?,
                nonrefundable = ?,
                freegift = ?,
                cat_balance = ?,
                version = version + 1,
                timemodified = ?
            WHERE userid = ? AND version = ?
            """,
            (
                to_cents(after.refundable),
                to_cents(after.nonrefundable),
                to_cents(after.freegift),
                after.categories.to_json(),
                after.timemodified,
                before.userid,
                before.version,
            ),
        )
        if cursor.rowcount != 1:
            raise ConcurrencyConflict(
                f"Balance of user {before.userid} changed concurrently (expected version {before.version})"
            )

    async def credit(
        self,
        userid: int,
        amount,
        *,
        nonrefundable: bool = False,
        freegift: bool = False,
        category: Optional[int] = None,
        description: str = "",
    ) -> Decimal:
        """
        Add credit to a user's wallet.

        Args:
            userid: The user to credit
            amount: Positive amount
            nonrefundable: Credit the non-refundable pool instead of refundable cash
            freegift: Credit the free-gift pool (implies non-refundable)
            category: Also ring-fence a non-refundable or free-gift credit for
                purchases in this category, capped by the non-refundable credit
                not already ring-fenced. Refundable cash is never ring-fenced
            description: Ledger description

        Returns:
            The user's new total balance

        Raises:
            InvalidAmount: if amount is not a positive number
        """
        value = parse_amount(amount)

        async def _credit() -> Decimal:
            async with self.db.transaction() as connection:
                return await self._apply_credit(
                    connection, userid, value, nonrefundable, freegift, category, description
                )

        return await self.db.run_with_retry(_credit, description=f"credit for user {userid}")

    async def _apply_credit(
        self,
        connection: aiosqlite.Connection,
        userid: int,
        amount: Decimal,
        nonrefundable: bool,
        freegift: bool,
        category: Optional[int],
        description: str,
    ) -> Decimal:
        before = await self._load(connection, userid)
        now = self.clock()

        norefund = fg_part = ZERO
        if freegift:
            after = replace(before, freegift=before.freegift + amount)
            norefund = fg_part = amount
        elif nonrefundable:
            after = replace(before, nonrefundable=before.nonrefundable + amount)
            norefund = amount
        else:
            after = replace(before, refundable=before.refundable + amount)

        cat_part = ZERO
        if category and norefund:
            room = after.pool - after.categories.total()
            cat_part = max(min(amount, room), ZERO)
            if cat_part:
                after = replace(after, categories=after.categories.adjusted(category, cat_part))
            if cat_part < amount:
                logger.warning(
                    f"Category credit for user {userid} capped at {cat_part} of {amount} "
                    f"(category {category})"
                )

        after = replace(after, timemodified=now)
        await self._store(connection, before, after)
        await self.ledger.append(
            connection,
            TransactionRecord(
                userid=userid,
                type=TRANSACTION_CREDIT,
                amount=amount,
                balbefore=before.total,
                balance=after.total,
                norefund=norefund,
                freegift=fg_part,
                catamount=cat_part,
                category=category or None,
                descripe=description,
                timecreated=now,
            ),
        )
        audit_logger.info(
            f"Credited {amount} to user {userid} "
            f"(norefund={norefund}, freegift={fg_part}, category={category}): "
            f"{before.total} -> {after.total}"
        )
        return after.total

    async def debit(
        self,
        userid: int,
        amount,
        *,
        category: Optional[int] = None,
        description: str = "",
    ) -> Decimal:
        """
        Deduct an amount from a user's wallet.

        Draw order: the purchase category's ring-fenced credit, then
        non-refundable, then free gift, and refundable cash last.

        Returns:
            The user's new total balance

        Raises:
            InvalidAmount: if amount is not a positive number
            InsufficientBalance: if the user cannot cover the amount
        """
        value = parse_amount(amount)

        async def _debit() -> Decimal:
            async with self.db.transaction() as connection:
                return await self._apply_debit(connection, userid, value, category, description)

        return await self.db.run_with_retry(_debit, description=f"debit for user {userid}")

    async def _apply_debit(
        self,
        connection: aiosqlite.Connection,
        userid: int,
        amount: Decimal,
        category: Optional[int],
        description: str,
    ) -> Decimal:
        before = await self._load(connection, userid)
        available = before.spendable(category)
        if amount > available:
            logger.info(f"Debit of {amount} rejected for user {userid}: only {available} spendable")
            raise InsufficientBalance(userid, amount, available)

        from_category = min(amount, before.categories.get_amount(category))
        remaining = amount - from_category
        from_free = min(remaining, before.free_pool)
        from_refundable = remaining - from_free

        # Category credit is backed by the same pools, drawn in the same order
        pool_draw = from_category + from_free
        from_nonrefundable = min(pool_draw, before.nonrefundable)
        from_freegift = pool_draw - from_nonrefundable

        categories = before.categories
        if from_category:
            categories = categories.adjusted(category, -from_category)

        now = self.clock()
        after = replace(
            before,
            refundable=before.refundable - from_refundable,
            nonrefundable=before.nonrefundable - from_nonrefundable,
            freegift=before.freegift - from_freegift,
            categories=categories,
            timemodified=now,
        )
        await self._store(connection, before, after)
        await self.ledger.append(
            connection,
            TransactionRecord(
                userid=userid,
                type=TRANSACTION_DEBIT,
                amount=amount,
                balbefore=before.total,
                balance=after.total,
                norefund=pool_draw,
                freegift=from_freegift,
                catamount=from_category,
                category=category or None,
                descripe=description,
                timecreated=now,
            ),
        )
        audit_logger.info(
            f"Debited {amount} from user {userid} "
            f"(category={from_category}, nonrefundable={from_nonrefundable}, "
            f"freegift={from_freegift}, refundable={from_refundable}): {before.total} -> {after.total}"
        )
        return after.total

