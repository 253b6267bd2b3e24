"""Append-only transaction ledger."""

from __future__ import annotations

from typing import Optional

import aiosqlite

from .constants import LEDGER_DEFAULT_ORDER, LEDGER_SORTABLE_COLUMNS, TRANSACTION_CREDIT, TRANSACTION_DEBIT
from .database import Database
from .exceptions import LedgerCorruption
from .logger import get_logger
from .models import CategoryBalances, TransactionRecord, UserBalance
from .utils.currency import ZERO, to_cents

logger = get_logger()


class TransactionLedger:
    """History of every balance mutation.

    Records are only written by the balance store, inside the same
    transaction as the mutation they describe. The table rejects updates and
    deletes at the database level.
    """

    def __init__(self, db: Database) -> None:
        self.db = db

    async def append(self, connection: aiosqlite.Connection, record: TransactionRecord) -> int:
        """Insert a record and return its id. Must run inside ``Database.transaction()``."""
        if not self.db.in_transaction():
            raise RuntimeError("Ledger records can only be appended inside a transaction.")
        if record.type not in (TRANSACTION_CREDIT, TRANSACTION_DEBIT):
            raise ValueError(f"Unknown transaction type {record.type!r}")

        cursor = await connection.execute(
            """
            INSERT INTO transactions (
                userid, type, amount, balbefore, balance, norefund,
                freegift, catamount, category, descripe, timecreated
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.userid,
                record.type,
                to_cents(record.amount),
                to_cents(record.balbefore),
                to_cents(record.balance),
                to_cents(record.norefund),
                to_cents(record.freegift),
                to_cents(record.catamount),
                record.category,
                record.descripe,
                record.timecreated,
            ),
        )
        return cursor.lastrowid

    @staticmethod
    def _build_filters(
        userid: Optional[int],
        type: Optional[str],
        time_from: Optional[int],
        time_to: Optional[int],
        amount,
    ) -> tuple[str, list]:
        clauses: list[str] = []
        params: list = []
        if userid is not None:
            clauses.append("userid = ?")
            params.append(userid)
        if type:
            clauses.append("type = ?")
            params.append(type)
        if time_from is not None:
            clauses.append("timecreated >= ?")
            params.append(time_from)
        if time_to is not None:
            clauses.append("timecreated <= ?")
            params.append(time_to)
        if amount is not None:
            clauses.append("amount = ?")
            params.append(to_cents(amount))
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return where, params

    @staticmethod
    def order_clause(sort: Optional[str], direction: str = "DESC") -> str:
        """Return a safe ORDER BY clause. Unknown or unsortable columns fall back to the default."""
        if not sort or sort not in LEDGER_SORTABLE_COLUMNS:
            return LEDGER_DEFAULT_ORDER
        direction = "ASC" if str(direction).upper() == "ASC" else "DESC"
        # id breaks ties so the order stays total
        return f"{sort} {direction}, id {direction}"

    async def query(
        self,
        *,
        userid: Optional[int] = None,
        type: Optional[str] = None,
        time_from: Optional[int] = None,
        time_to: Optional[int] = None,
        amount=None,
        sort: Optional[str] = None,
        direction: str = "DESC",
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[TransactionRecord]:
        """Return matching records, newest first unless a sortable column is requested."""
        where, params = self._build_filters(userid, type, time_from, time_to, amount)
        sql = f"SELECT * FROM transactions {where} ORDER BY {self.order_clause(sort, direction)}"
        if limit is not None:
            sql += " LIMIT ? OFFSET ?"
            params.extend([limit, offset])

        async with self.db.read() as connection:
            cursor = await connection.execute(sql, params)
            rows = await cursor.fetchall()
        return [TransactionRecord.from_row(row) for row in rows]

    async def count(
        self,
        *,
        userid: Optional[int] = None,
        type: Optional[str] = None,
        time_from: Optional[int] = None,
        time_to: Optional[int] = None,
        amount=None,
    ) -> int:
        where, params = self._build_filters(userid, type, time_from, time_to, amount)
        async with self.db.read() as connection:
            cursor = await connection.execute(
                f"SELECT COUNT(*) as count FROM transactions {where}", params
            )
            row = await cursor.fetchone()
        return row["count"] if row else 0

    async def replay(self, userid: int) -> UserBalance:
        """Rebuild a user's balance from zero by applying their records in id order."""
        refundable = nonrefundable = freegift = ZERO
        categories = CategoryBalances()

        async with self.db.read() as connection:
            cursor = await connection.execute(
                "SELECT * FROM transactions WHERE userid = ? ORDER BY id ASC", (userid,)
            )
            rows = await cursor.fetchall()

        for row in rows:
            record = TransactionRecord.from_row(row)
            sign = 1 if record.type == TRANSACTION_CREDIT else -1
            refundable += sign * (record.amount - record.norefund)
            nonrefundable += sign * (record.norefund - record.freegift)
            freegift += sign * record.freegift
            if record.category and record.catamount:
                categories = categories.adjusted(record.category, sign * record.catamount)

            if refundable + nonrefundable + freegift != record.balance:
                raise LedgerCorruption(
                    f"Ledger record {record.id} for user {userid} does not match its running balance"
                )

        return UserBalance(
            userid=userid,
            refundable=refundable,
            nonrefundable=nonrefundable,
            freegift=freegift,
            categories=categories,
        )
