import asyncio
import sqlite3
from decimal import Decimal

import pytest

from wallet_core.balance import BalanceStore
from wallet_core.database import Database
from wallet_core.exceptions import ConcurrencyConflict


@pytest.mark.asyncio
async def test_migrations_are_recorded(db):
    cursor = await db.connection.execute("SELECT version, name FROM schema_migrations ORDER BY version")
    rows = await cursor.fetchall()

    assert [row["version"] for row in rows] == list(range(1, db.target_schema_version + 1))
    assert rows[0]["name"] == "balance_table"


@pytest.mark.asyncio
async def test_schema_has_wallet_tables(db):
    cursor = await db.connection.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
    tables = {row["name"] for row in await cursor.fetchall()}

    assert {
        "balance",
        "transactions",
        "coupons",
        "coupons_usage",
        "cond_discount",
        "referral",
        "hold_gift",
        "awards",
        "items",
        "new_user_gift",
    }.issubset(tables)


@pytest.mark.asyncio
async def test_transactions_table_columns(db):
    cursor = await db.connection.execute("PRAGMA table_info(transactions)")
    columns = {row[1] for row in await cursor.fetchall()}

    assert {
        "userid", "type", "amount", "balbefore", "balance",
        "norefund", "freegift", "catamount", "category", "descripe", "timecreated",
    }.issubset(columns)


@pytest.mark.asyncio
async def test_transactions_are_append_only(db):
    async with db.transaction() as conn:
        await conn.execute(
            "INSERT INTO transactions (userid, type, amount, balance) VALUES (1, 'credit', 100, 100)"
        )

    with pytest.raises(sqlite3.DatabaseError, match="append-only"):
        async with db.transaction() as conn:
            await conn.execute("UPDATE transactions SET amount = 1")

    with pytest.raises(sqlite3.DatabaseError, match="append-only"):
        async with db.transaction() as conn:
            await conn.execute("DELETE FROM transactions")

    cursor = await db.connection.execute("SELECT amount FROM transactions")
    assert [row["amount"] for row in await cursor.fetchall()] == [100]


@pytest.mark.asyncio
async def test_reconnect_does_not_reapply_migrations(tmp_path):
    path = tmp_path / "wallet.db"
    first = Database(path)
    await first.connect()
    await first.close()

    second = Database(path)
    await second.connect()
    cursor = await second.connection.execute("SELECT COUNT(*) as count FROM schema_migrations")
    row = await cursor.fetchone()
    await second.close()

    assert row["count"] == second.target_schema_version


def test_connection_requires_connect():
    database = Database(":memory:")
    with pytest.raises(RuntimeError, match="not initialized"):
        database.connection


@pytest.mark.asyncio
async def test_transaction_rolls_back_on_error(db):
    with pytest.raises(ValueError):
        async with db.transaction() as conn:
            await conn.execute("INSERT INTO balance (userid) VALUES (1)")
            raise ValueError("boom")

    cursor = await db.connection.execute("SELECT COUNT(*) as count FROM balance")
    assert (await cursor.fetchone())["count"] == 0
    assert not db.in_transaction()


@pytest.mark.asyncio
async def test_nested_transaction_joins_outer(db):
    with pytest.raises(ValueError):
        async with db.transaction() as outer:
            await outer.execute("INSERT INTO balance (userid) VALUES (1)")
            async with db.transaction() as inner:
                assert db.in_transaction()
                await inner.execute("INSERT INTO balance (userid) VALUES (2)")
            raise ValueError("abort the whole unit")

    cursor = await db.connection.execute("SELECT COUNT(*) as count FROM balance")
    assert (await cursor.fetchone())["count"] == 0


@pytest.mark.asyncio
async def test_run_with_retry_retries_conflicts(db):
    attempts = []

    async def _operation() -> str:
        attempts.append(1)
        if len(attempts) < 3:
            raise ConcurrencyConflict("contended")
        return "done"

    assert await db.run_with_retry(_operation) == "done"
    assert len(attempts) == 3


@pytest.mark.asyncio
async def test_run_with_retry_gives_up():
    database = Database(":memory:", max_retries=1)
    attempts = []

    async def _operation() -> None:
        attempts.append(1)
        raise ConcurrencyConflict("always contended")

    with pytest.raises(ConcurrencyConflict):
        await database.run_with_retry(_operation)
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_run_with_retry_inside_transaction_runs_once(db):
    attempts = []

    async def _operation() -> None:
        attempts.append(1)
        raise ConcurrencyConflict("contended")

    with pytest.raises(ConcurrencyConflict):
        async with db.transaction():
            await db.run_with_retry(_operation)
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_readers_never_see_a_transaction_that_rolls_back(db, balances, ledger):
    await balances.credit(3, 100)
    debited = asyncio.Event()

    async def _aborted_purchase() -> None:
        with pytest.raises(RuntimeError):
            async with db.transaction():
                await balances.debit(3, 60)
                debited.set()
                await asyncio.sleep(0.05)
                raise RuntimeError("enrolment failed")

    async def _reader() -> tuple:
        await debited.wait()
        return await balances.get_total(3), await ledger.count(userid=3)

    _, observed = await asyncio.gather(_aborted_purchase(), _reader())

    assert observed == (Decimal("100.00"), 1)
    assert await balances.get_total(3) == Decimal("100.00")


@pytest.mark.asyncio
async def test_read_inside_transaction_sees_own_writes(db, balances):
    async with db.transaction():
        await balances.credit(4, 15)
        assert await balances.get_total(4) == Decimal("15.00")


@pytest.mark.asyncio
async def test_read_block_can_materialise_a_balance(db):
    balances = BalanceStore(db)

    async with db.read():
        balance = await balances.get_balance(5)
        assert not db.in_transaction()

    assert balance.total == Decimal("0.00")
    assert await balances.exists(5)


@pytest.mark.asyncio
async def test_transaction_on_another_database_is_not_joined(db):
    other = Database(":memory:")
    await other.connect()
    try:
        with pytest.raises(ValueError):
            async with db.transaction() as conn:
                assert not other.in_transaction()
                async with other.transaction() as other_conn:
                    assert other.in_transaction()
                    await other_conn.execute("INSERT INTO balance (userid) VALUES (1)")
                assert not other.connection.in_transaction
                await conn.execute("INSERT INTO balance (userid) VALUES (1)")
                raise ValueError("roll back the first database only")

        cursor = await other.connection.execute("SELECT COUNT(*) as count FROM balance")
        assert (await cursor.fetchone())["count"] == 1
        cursor = await db.connection.execute("SELECT COUNT(*) as count FROM balance")
        assert (await cursor.fetchone())["count"] == 0
    finally:
        await other.close()


@pytest.mark.asyncio
async def test_coupon_codes_are_unique_ignoring_case(db):
    await db.connection.execute(
        "INSERT INTO coupons (code, type, value) VALUES ('SAVE', 'percent', 10)"
    )
    with pytest.raises(sqlite3.IntegrityError):
        await db.connection.execute(
            "INSERT INTO coupons (code, type, value) VALUES ('save', 'fixed', 40)"
        )
    await db.connection.rollback()
