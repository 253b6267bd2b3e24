"""Async SQLite data layer for the wallet core."""

from __future__ import annotations

import asyncio
import contextvars
import os
import sqlite3
from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator, Awaitable, Callable, Optional, TypeVar

import aiosqlite

from .constants import (
    CONFLICT_MAX_RETRIES,
    CONFLICT_RETRY_BASE_DELAY_SECONDS,
    DATABASE_MAX_RETRIES,
    DATABASE_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_CONNECT_TIMEOUT_SECONDS,
)
from .exceptions import ConcurrencyConflict
from .logger import get_logger

logger = get_logger()

T = TypeVar("T")

# The Database whose transaction() or read() the current task is inside
_active_transaction: contextvars.ContextVar[Optional["Database"]] = contextvars.ContextVar(
    "wallet_active_transaction", default=None
)
_active_reader: contextvars.ContextVar[Optional["Database"]] = contextvars.ContextVar(
    "wallet_active_reader", default=None
)


class Database:
    """Async database handler using SQLite."""

    def __init__(
        self,
        db_path: str | Path = "wallet.db",
        connect_timeout: float | None = None,
        max_retries: int = CONFLICT_MAX_RETRIES,
    ) -> None:
        self.db_path = Path(db_path)
        self._connection: Optional[aiosqlite.Connection] = None
        self._transaction_lock = asyncio.Lock()
        self.max_retries = max_retries
        self.target_schema_version = 7

        if connect_timeout is None:
            connect_timeout = float(os.getenv("DB_CONNECT_TIMEOUT", str(DEFAULT_CONNECT_TIMEOUT_SECONDS)))
        self.connect_timeout = connect_timeout

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._connection is None:
            raise RuntimeError("Database connection not initialized.")
        return self._connection

    async def connect(self) -> None:
        """Connect to the database with timeout protection and retry logic."""
        if self._connection is not None:
            return

        for attempt in range(DATABASE_MAX_RETRIES + 1):
            try:
                self._connection = await asyncio.wait_for(
                    aiosqlite.connect(str(self.db_path)),
                    timeout=self.connect_timeout,
                )

                try:
                    self._connection.row_factory = aiosqlite.Row
                    await self._connection.execute("PRAGMA foreign_keys = ON;")
                    await self._connection.commit()
                    await self._initialize_schema()
                except Exception as init_error:
                    if self._connection:
                        await self._connection.close()
                    self._connection = None
                    logger.error(
                        f"Failed to initialize database after connection: {init_error}. "
                        f"Database path: {self.db_path}"
                    )
                    raise

                return

            except asyncio.TimeoutError:
                self._connection = None
                timeout_msg = (
                    f"Database connection timed out after {self.connect_timeout}s "
                    f"(attempt {attempt + 1}/{DATABASE_MAX_RETRIES + 1}). Database path: {self.db_path}"
                )
                if attempt < DATABASE_MAX_RETRIES:
                    wait_seconds = DATABASE_RETRY_BASE_DELAY_SECONDS * 2 ** attempt
                    logger.warning(f"{timeout_msg}. Waiting {wait_seconds}s before retry...")
                    await asyncio.sleep(wait_seconds)
                else:
                    logger.error(f"{timeout_msg}. Max retries exhausted.")
                    raise TimeoutError(timeout_msg) from None

            except sqlite3.Error as conn_error:
                self._connection = None
                error_msg = (
                    f"Failed to connect to database (attempt {attempt + 1}/{DATABASE_MAX_RETRIES + 1}): "
                    f"{conn_error}. Database path: {self.db_path}"
                )
                if attempt < DATABASE_MAX_RETRIES:
                    wait_seconds = DATABASE_RETRY_BASE_DELAY_SECONDS * 2 ** attempt
                    logger.warning(f"{error_msg}. Waiting {wait_seconds}s before retry...")
                    await asyncio.sleep(wait_seconds)
                else:
                    logger.error(f"{error_msg}. Max retries exhausted.")
                    raise RuntimeError(error_msg) from conn_error

    async def close(self) -> None:
        if self._connection:
            await self._connection.close()
            self._connection = None

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def in_transaction(self) -> bool:
        """True when the calling task already runs inside ``transaction()`` on this database."""
        return _active_transaction.get() is self

    def _holds_lock(self) -> bool:
        return self.in_transaction() or _active_reader.get() is self

    @asynccontextmanager
    async def read(self) -> AsyncIterator[aiosqlite.Connection]:
        """Context manager for reads that must not see another task's open transaction.

        The connection is shared, so uncommitted writes of a running
        ``transaction()`` are visible on it. Readers wait for the transaction
        lock instead; reads grouped in one block see a single committed state.
        Inside ``transaction()`` or another ``read()`` the block joins it.
        """
        if self._holds_lock():
            yield self.connection
            return

        async with self._transaction_lock:
            token = _active_reader.set(self)
            try:
                yield self.connection
            finally:
                _active_reader.reset(token)

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[aiosqlite.Connection]:
        """Context manager for atomic database transactions.

        Starts ``BEGIN IMMEDIATE`` so the write lock is taken up front, commits
        on a clean exit and rolls back on any exception. A nested call from
        the same task joins the outer transaction, so balance mutations, ledger
        appends and coupon redemptions commit together or not at all.

        Example:
            async with db.transaction() as conn:
                await conn.execute("UPDATE ...")
                await conn.execute("INSERT ...")
        """
        if self.in_transaction():
            yield self.connection
            return

        if _active_reader.get() is self:
            # The lock is already held by the enclosing read()
            async with self._begin() as connection:
                yield connection
            return

        async with self._transaction_lock:
            async with self._begin() as connection:
                yield connection

    @asynccontextmanager
    async def _begin(self) -> AsyncIterator[aiosqlite.Connection]:
        connection = self.connection
        try:
            await connection.execute("BEGIN IMMEDIATE")
        except sqlite3.OperationalError as exc:
            raise self._as_conflict(exc) from exc

        token = _active_transaction.set(self)
        try:
            yield connection
        except BaseException as e:
            try:
                await connection.rollback()
                logger.debug(f"Database transaction rolled back due to: {e!r}")
            except Exception as rollback_error:
                logger.error(f"Failed to rollback transaction: {rollback_error}")
            raise
        else:
            try:
                await connection.commit()
            except sqlite3.OperationalError as exc:
                await connection.rollback()
                raise self._as_conflict(exc) from exc
        finally:
            _active_transaction.reset(token)

    @staticmethod
    def _as_conflict(exc: sqlite3.OperationalError) -> Exception:
        message = str(exc).lower()
        if "locked" in message or "busy" in message:
            return ConcurrencyConflict(f"Database is busy: {exc}")
        return exc

    async def run_with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        *,
        description: str = "wallet operation",
    ) -> T:
        """Run ``operation``, retrying it on ConcurrencyConflict with exponential backoff.

        Inside an enclosing transaction the operation runs once and a conflict
        propagates, so the whole outer unit of work is what gets retried.
        """
        if self.in_transaction():
            return await operation()

        for attempt in range(self.max_retries + 1):
            try:
                return await operation()
            except ConcurrencyConflict as exc:
                if attempt >= self.max_retries:
                    logger.error(
                        f"{description} failed after {attempt + 1} attempts due to contention: {exc}"
                    )
                    raise
                wait_seconds = CONFLICT_RETRY_BASE_DELAY_SECONDS * 2 ** attempt
                logger.warning(
                    f"{description} hit a concurrency conflict "
                    f"(attempt {attempt + 1}/{self.max_retries + 1}): {exc}. Retrying in {wait_seconds}s"
                )
                await asyncio.sleep(wait_seconds)
        raise AssertionError("unreachable")

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    async def _initialize_schema(self) -> None:
        """Initialize the database schema with versioning support."""
        connection = self.connection

        await connection.execute(
            """
            CREATE TABLE IF NOT EXISTS schema_migrations (
                version INTEGER PRIMARY KEY,
                name TEXT NOT NULL UNIQUE,
                applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
            """
        )
        await connection.commit()

        current_version = await self._get_current_schema_version()
        logger.info(f"Current database schema version: {current_version}")

        await self._apply_pending_migrations(current_version)

        final_version = await self._get_current_schema_version()
        logger.info(f"Database schema migration complete. Final version: {final_version}")

    async def _get_current_schema_version(self) -> int:
        """Get the current schema version from the migrations table."""
        cursor = await self.connection.execute(
            "SELECT MAX(version) as version FROM schema_migrations"
        )
        row = await cursor.fetchone()
        return row["version"] if row and row["version"] else 0

    async def _apply_pending_migrations(self, current_version: int) -> None:
        """Apply all pending migrations after the current version."""
        migrations = {
            1: ("balance_table", self._migration_v1),
            2: ("transactions_table", self._migration_v2),
            3: ("coupons_system", self._migration_v3),
            4: ("conditional_discounts", self._migration_v4),
            5: ("referral_program", self._migration_v5),
            6: ("awards_and_payment_items", self._migration_v6),
            7: ("coupon_code_nocase_and_user_gifts", self._migration_v7),
        }

        for version in sorted(migrations.keys()):
            if version > current_version:
                name, migration_fn = migrations[version]
                logger.info(f"Applying migration v{version}: {name}")
                try:
                    await migration_fn()
                    await self._record_migration(version, name)
                    logger.info(f"Migration v{version}: {name} applied successfully")
                except Exception as e:
                    logger.exception(f"Failed to apply migration v{version} ({name}): {e}")
                    raise RuntimeError(f"Migration v{version} ({name}) failed: {e}") from e

    async def _record_migration(self, version: int, name: str) -> None:
        """Record a migration as applied in the schema_migrations table."""
        await self.connection.execute(
            "INSERT INTO schema_migrations (version, name) VALUES (?, ?)",
            (version, name),
        )
        await self.connection.commit()

    async def _migration_v1(self) -> None:
        """Migration v1: Per-user balance with refundable, non-refundable, gift and category pools.

        Amount columns hold integer cents.
        """
        await self.connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS balance (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                userid INTEGER NOT NULL UNIQUE,
                refundable INTEGER NOT NULL DEFAULT 0,
                nonrefundable INTEGER NOT NULL DEFAULT 0,
                freegift INTEGER NOT NULL DEFAULT 0,
                cat_balance TEXT,
                version INTEGER NOT NULL DEFAULT 0,
                timecreated INTEGER NOT NULL DEFAULT 0,
                timemodified INTEGER NOT NULL DEFAULT 0,
                CHECK (refundable >= 0 AND nonrefundable >= 0 AND freegift >= 0)
            );
            """
        )
        await self.connection.commit()

    async def _migration_v2(self) -> None:
        """Migration v2: Append-only transactions ledger."""
        await self.connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                userid INTEGER NOT NULL,
                type TEXT NOT NULL CHECK (type IN ('debit', 'credit')),
                amount INTEGER NOT NULL,
                balbefore INTEGER NOT NULL DEFAULT 0,
                balance INTEGER NOT NULL DEFAULT 0,
                norefund INTEGER NOT NULL DEFAULT 0,
                freegift INTEGER NOT NULL DEFAULT 0,
                catamount INTEGER NOT NULL DEFAULT 0,
                category INTEGER,
                descripe TEXT NOT NULL DEFAULT '',
                timecreated INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_transactions_user
                ON transactions(userid, id);
            CREATE INDEX IF NOT EXISTS idx_transactions_type
                ON transactions(type);

            CREATE TRIGGER IF NOT EXISTS transactions_no_update
                BEFORE UPDATE ON transactions
                BEGIN
                    SELECT RAISE(ABORT, 'transactions are append-only');
                END;

            CREATE TRIGGER IF NOT EXISTS transactions_no_delete
                BEFORE DELETE ON transactions
                BEGIN
                    SELECT RAISE(ABORT, 'transactions are append-only');
                END;
            """
        )
        await self.connection.commit()

    async def _migration_v3(self) -> None:
        """Migration v3: Coupons and coupon usage tables."""
        await self.connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS coupons (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT NOT NULL UNIQUE,
                type TEXT NOT NULL CHECK (type IN ('fixed', 'percent')),
                value REAL NOT NULL DEFAULT 0,
                maxusage INTEGER NOT NULL DEFAULT 0,
                maxperuser INTEGER NOT NULL DEFAULT 0,
                usetimes INTEGER NOT NULL DEFAULT 0,
                validfrom INTEGER NOT NULL DEFAULT 0,
                validto INTEGER NOT NULL DEFAULT 0,
                category TEXT,
                courses TEXT,
                description TEXT,
                timecreated INTEGER NOT NULL DEFAULT 0,
                lastuse INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS coupons_usage (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT NOT NULL,
                type TEXT NOT NULL,
                value INTEGER NOT NULL DEFAULT 0,
                userid INTEGER NOT NULL,
                instanceid INTEGER NOT NULL DEFAULT 0,
                timeused INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_coupons_usage_code_user
                ON coupons_usage(code, userid);
            """
        )
        await self.connection.commit()
        logger.info("Created coupon system tables")

    async def _migration_v4(self) -> None:
        """Migration v4: Conditional top-up discount tiers."""
        await self.connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS cond_discount (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                cond REAL NOT NULL,
                percent REAL NOT NULL,
                category INTEGER DEFAULT 0,
                timefrom INTEGER NOT NULL DEFAULT 0,
                timeto INTEGER NOT NULL DEFAULT 0,
                usermodified INTEGER NOT NULL DEFAULT 0,
                timecreated INTEGER NOT NULL DEFAULT 0,
                timemodified INTEGER NOT NULL DEFAULT 0
            );
            """
        )
        await self.connection.commit()

    async def _migration_v5(self) -> None:
        """Migration v5: Referral codes and held referral gifts."""
        await self.connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS referral (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                code TEXT NOT NULL UNIQUE,
                userid INTEGER NOT NULL UNIQUE,
                usetimes INTEGER NOT NULL DEFAULT 0,
                users TEXT,
                timemodified INTEGER NOT NULL DEFAULT 0
            );

            CREATE TABLE IF NOT EXISTS hold_gift (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                referrer INTEGER NOT NULL,
                referred TEXT NOT NULL UNIQUE,
                courseid INTEGER,
                amount INTEGER NOT NULL,
                released INTEGER NOT NULL DEFAULT 0,
                timecreated INTEGER NOT NULL DEFAULT 0,
                timemodified INTEGER NOT NULL DEFAULT 0
            );

            CREATE INDEX IF NOT EXISTS idx_hold_gift_pending
                ON hold_gift(released, referrer);
            """
        )
        await self.connection.commit()
        logger.info("Created referral program tables")

    async def _migration_v6(self) -> None:
        """Migration v6: Completion awards and payment items."""
        await self.connection.executescript(
            """
            CREATE TABLE IF NOT EXISTS awards (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                userid INTEGER NOT NULL,
                courseid INTEGER NOT NULL,
                instanceid INTEGER NOT NULL,
                grade REAL NOT NULL DEFAULT 0,
                maxgrade REAL NOT NULL DEFAULT 0,
                percent REAL NOT NULL DEFAULT 0,
                amount INTEGER NOT NULL DEFAULT 0,
                timecreated INTEGER NOT NULL DEFAULT 0,
                UNIQUE (userid, instanceid)
            );

            CREATE TABLE IF NOT EXISTS items (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                cost INTEGER NOT NULL,
                currency TEXT NOT NULL,
                userid INTEGER NOT NULL,
                instanceid INTEGER,
                category INTEGER,
                paymentid INTEGER UNIQUE,
                timecreated INTEGER NOT NULL DEFAULT 0
            );
            """
        )
        await self.connection.commit()

    async def _migration_v7(self) -> None:
        """Migration v7: Case-insensitive coupon code uniqueness and the new-user gift marker.

        Coupons are looked up with ``COLLATE NOCASE``, so codes differing only
        in case are rejected. ``new_user_gift`` holds one row per gifted user.
        """
        await self.connection.executescript(
            """
            CREATE UNIQUE INDEX IF NOT EXISTS idx_coupons_code_nocase
                ON coupons(code COLLATE NOCASE);

            CREATE TABLE IF NOT EXISTS new_user_gift (
                userid INTEGER PRIMARY KEY,
                amount INTEGER NOT NULL,
                timecreated INTEGER NOT NULL DEFAULT 0
            );
            """
        )
        await self.connection.commit()
