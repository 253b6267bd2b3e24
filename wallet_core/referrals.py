"""Referral codes and escrowed referral gifts."""

from __future__ import annotations

import inspect
import json
import secrets
import sqlite3
import string
from typing import Awaitable, Callable, Optional, Union

import aiosqlite

from .balance import BalanceStore
from .config import ReferralSettings
from .constants import REFERRAL_CODE_RANDOM_LENGTH
from .database import Database
from .exceptions import (
    ConcurrencyConflict,
    HeldGiftNotFound,
    ReferralAlreadyRegistered,
    ReferralAlreadyReleased,
    ReferralCodeNotFound,
    ReferralDisabled,
    ReferralLimitReached,
)
from .logger import get_logger
from .models import HeldGift, ReferralCode
from .utils.currency import ZERO, quantize, to_cents
from .utils.timestamps import now_ts

logger = get_logger()
audit_logger = get_logger("audit")

_CODE_ALPHABET = string.ascii_letters + string.digits

DuePredicate = Callable[[HeldGift], Union[bool, Awaitable[bool]]]


class ReferralProgram:
    """Issues referral codes and holds the referrer's gift until it is released.

    Registering a referral escrows ``settings.amount`` in ``hold_gift``. The
    host decides when the referred user has done enough (first payment,
    course completion) and calls ``release``, which credits the referrer
    with non-refundable credit exactly once.
    """

    def __init__(
        self,
        db: Database,
        balances: BalanceStore,
        settings: Optional[ReferralSettings] = None,
        clock: Callable[[], int] = now_ts,
    ) -> None:
        self.db = db
        self.balances = balances
        self.settings = settings or ReferralSettings()
        self.clock = clock

    # ------------------------------------------------------------------
    # Codes
    # ------------------------------------------------------------------

    @staticmethod
    def _generate_code(userid: int) -> str:
        random_part = "".join(secrets.choice(_CODE_ALPHABET) for _ in range(REFERRAL_CODE_RANDOM_LENGTH))
        return f"{random_part}{userid}"

    async def get_code(self, userid: int) -> Optional[ReferralCode]:
        async with self.db.read() as connection:
            cursor = await connection.execute("SELECT * FROM referral WHERE userid = ?", (userid,))
            row = await cursor.fetchone()
        return ReferralCode.from_row(row) if row else None

    async def get_referral(self, code: str) -> Optional[ReferralCode]:
        async with self.db.read() as connection:
            cursor = await connection.execute("SELECT * FROM referral WHERE code = ?", ((code or "").strip(),))
            row = await cursor.fetchone()
        return ReferralCode.from_row(row) if row else None

    async def issue_code(self, userid: int) -> str:
        """Return the user's referral code, creating it on first request."""
        existing = await self.get_code(userid)
        if existing is not None:
            return existing.code

        for _ in range(3):
            code = self._generate_code(userid)
            try:
                async with self.db.transaction() as connection:
                    await connection.execute(
                        "INSERT INTO referral (code, userid, timemodified) VALUES (?, ?, ?)",
                        (code, userid, self.clock()),
                    )
            except sqlite3.IntegrityError:
                # Either a concurrent request issued this user's code or the random part clashed
                existing = await self.get_code(userid)
                if existing is not None:
                    return existing.code
                continue
            logger.info(f"Issued referral code for user {userid}")
            return code
        raise RuntimeError(f"Could not generate a unique referral code for user {userid}")

    # ------------------------------------------------------------------
    # Held gifts
    # ------------------------------------------------------------------

    async def _get_gift(self, connection: aiosqlite.Connection, heldgift_id: int) -> Optional[HeldGift]:
        cursor = await connection.execute("SELECT * FROM hold_gift WHERE id = ?", (heldgift_id,))
        row = await cursor.fetchone()
        return HeldGift.from_row(row) if row else None

    async def get_gift(self, heldgift_id: int) -> Optional[HeldGift]:
        async with self.db.read() as connection:
            return await self._get_gift(connection, heldgift_id)

    async def get_gift_for(self, referred: str) -> Optional[HeldGift]:
        async with self.db.read() as connection:
            cursor = await connection.execute("SELECT * FROM hold_gift WHERE referred = ?", (referred,))
            row = await cursor.fetchone()
        return HeldGift.from_row(row) if row else None

    async def register_referral(
        self,
        code: str,
        referred: str,
        courseid: Optional[int] = None,
    ) -> HeldGift:
        """
        Record that ``referred`` signed up with ``code`` and escrow the referrer's gift.

        Raises:
            ReferralDisabled: the program is switched off
            ReferralCodeNotFound: unknown code
            ReferralAlreadyRegistered: ``referred`` already has a held gift
            ReferralLimitReached: the code reached the configured maximum
        """
        if not self.settings.enabled:
            raise ReferralDisabled("The referral program is disabled")
        referred = str(referred).strip()
        if not referred:
            raise ValueError("A referred identifier is required")

        amount = quantize(self.settings.amount)

        async def _register() -> int:
            async with self.db.transaction() as connection:
                cursor = await connection.execute(
                    "SELECT * FROM referral WHERE code = ?", ((code or "").strip(),)
                )
                row = await cursor.fetchone()
                if row is None:
                    raise ReferralCodeNotFound(code)
                referral = ReferralCode.from_row(row)

                cursor = await connection.execute("SELECT id FROM hold_gift WHERE referred = ?", (referred,))
                if await cursor.fetchone():
                    raise ReferralAlreadyRegistered(referred)

                limit = self.settings.max_referrals
                if limit and referral.usetimes >= limit:
                    raise ReferralLimitReached(referral.code)

                now = self.clock()
                users = json.dumps([*referral.users, referred])
                cursor = await connection.execute(
                    """
                    UPDATE referral
                    SET usetimes = usetimes + 1, users = ?, timemodified = ?
                    WHERE code = ? AND usetimes = ?
                    """,
                    (users, now, referral.code, referral.usetimes),
                )
                if cursor.rowcount != 1:
                    raise ConcurrencyConflict(f"Referral code {referral.code} changed concurrently")

                try:
                    cursor = await connection.execute(
                        """
                        INSERT INTO hold_gift (referrer, referred, courseid, amount, released, timecreated, timemodified)
                        VALUES (?, ?, ?, ?, 0, ?, ?)
                        """,
                        (referral.userid, referred, courseid, to_cents(amount), now, now),
                    )
                except sqlite3.IntegrityError as exc:
                    raise ReferralAlreadyRegistered(referred) from exc
                return cursor.lastrowid

        heldgift_id = await self.db.run_with_retry(_register, description=f"referral registration for {referred}")
        audit_logger.info(f"Referral registered for {referred} with held gift {heldgift_id} ({amount})")
        gift = await self.get_gift(heldgift_id)
        if gift is None:
            raise HeldGiftNotFound(heldgift_id)
        return gift

    async def _release(self, heldgift_id: int) -> HeldGift:
        """Flip the gift to released and credit the referrer in one transaction."""
        async with self.db.transaction() as connection:
            gift = await self._get_gift(connection, heldgift_id)
            if gift is None:
                raise HeldGiftNotFound(heldgift_id)

            cursor = await connection.execute(
                "UPDATE hold_gift SET released = 1, timemodified = ? WHERE id = ? AND released = 0",
                (self.clock(), heldgift_id),
            )
            if cursor.rowcount != 1:
                raise ReferralAlreadyReleased(heldgift_id)

            if gift.amount > ZERO:
                await self.balances.credit(
                    gift.referrer,
                    gift.amount,
                    nonrefundable=True,
                    description=f"Referral gift for {gift.referred}",
                )
            return gift

    async def release(self, heldgift_id: int) -> bool:
        """
        Release a held gift to its referrer.

        Returns:
            True when the referrer was credited, False when the gift had
            already been released

        Raises:
            HeldGiftNotFound: unknown id
        """
        try:
            gift = await self.db.run_with_retry(
                lambda: self._release(heldgift_id), description=f"release of held gift {heldgift_id}"
            )
        except ReferralAlreadyReleased:
            logger.debug(f"Held gift {heldgift_id} already released, nothing to do")
            return False

        audit_logger.info(f"Released referral gift {heldgift_id}: {gift.amount} to user {gift.referrer}")
        return True

    async def release_for(self, referred: str) -> bool:
        """Release the gift held for a referred identifier. False when there is none or it was released."""
        gift = await self.get_gift_for(str(referred).strip())
        if gift is None:
            return False
        return await self.release(gift.id)

    async def pending_gifts(self, referrer: Optional[int] = None) -> list[HeldGift]:
        sql = "SELECT * FROM hold_gift WHERE released = 0"
        params: list = []
        if referrer is not None:
            sql += " AND referrer = ?"
            params.append(referrer)
        async with self.db.read() as connection:
            cursor = await connection.execute(sql + " ORDER BY id ASC", params)
            rows = await cursor.fetchall()
        return [HeldGift.from_row(row) for row in rows]

    async def release_due(self, is_due: DuePredicate) -> int:
        """
        Release every pending gift the host reports as due.

        Pending gifts are read fresh on every call, so an interrupted sweep
        simply resumes on the next run. Returns the number of gifts credited.
        """
        released = 0
        for gift in await self.pending_gifts():
            due = is_due(gift)
            if inspect.isawaitable(due):
                due = await due
            if due and await self.release(gift.id):
                released += 1
        if released:
            logger.info(f"Released {released} referral gift(s)")
        return released
