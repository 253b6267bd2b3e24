"""Wallet service: the operations a host application calls."""

from __future__ import annotations

import re
from decimal import Decimal
from typing import Callable, Optional

from .awards import AwardCalculator
from .balance import BalanceStore
from .config import WalletConfig
from .coupons import CouponEngine
from .database import Database
from .discounts import ConditionalDiscountResolver
from .exceptions import LedgerCorruption, PaymentItemNotFound
from .ledger import TransactionLedger
from .logger import get_logger
from .models import (
    CourseCompleted,
    EnrolmentInstance,
    HeldGift,
    PaymentConfirmed,
    PaymentItem,
    PaymentOutcome,
    PriceQuote,
    PurchaseResult,
    ReferralRegistered,
    TopupQuote,
    TopupResult,
    TransactionRecord,
    UserBalance,
    UserRegistered,
)
from .referrals import ReferralProgram
from .utils.currency import ZERO, format_amount, parse_amount, quantize, to_cents
from .utils.timestamps import now_ts

logger = get_logger()
audit_logger = get_logger("audit")

_DISCOUNT_NUMBER = re.compile(r"\d+")


def apply_user_discount(cost, user_discount) -> Decimal:
    """
    Apply a per-user discount taken from the user's profile.

    "free" anywhere in the value makes the cost 0 and "no" leaves it as is.
    Otherwise the first integer N in the value takes N% off. Empty values and
    values without a number change nothing.
    """
    cost = quantize(cost)
    if user_discount is None:
        return cost
    text = str(user_discount).strip().lower()
    if not text:
        return cost
    if "free" in text:
        return ZERO
    if "no" in text:
        return cost
    match = _DISCOUNT_NUMBER.search(text)
    if match is None:
        return cost
    percent = min(int(match.group()), 100)
    return quantize(cost * (100 - percent) / 100)


class WalletService:
    """Top-ups, purchases and the life-cycle events that move wallet credit.

    Every component shares one ``Database`` so that a purchase's debit,
    coupon redemption and cashback commit as a single unit. The service
    never enrols users or sends notifications; it returns results and the
    host acts on them.
    """

    def __init__(
        self,
        db: Database,
        config: Optional[WalletConfig] = None,
        clock: Callable[[], int] = now_ts,
    ) -> None:
        self.db = db
        self.config = config or WalletConfig()
        self.clock = clock

        self.ledger = TransactionLedger(db)
        self.balances = BalanceStore(db, self.ledger, clock=clock)
        self.coupons = CouponEngine(db, mode=self.config.coupons, clock=clock)
        self.discounts = ConditionalDiscountResolver(
            db, enabled=self.config.conditional_discount_enabled, clock=clock
        )
        self.referrals = ReferralProgram(db, self.balances, self.config.referral, clock=clock)
        self.awards = AwardCalculator(db, self.balances, clock=clock)

    # ------------------------------------------------------------------
    # Balance queries
    # ------------------------------------------------------------------

    async def get_balance(self, userid: int) -> UserBalance:
        return await self.balances.get_balance(userid)

    async def get_transactions(self, userid: int, **filters) -> list[TransactionRecord]:
        return await self.ledger.query(userid=userid, **filters)

    async def reconcile(self, userid: int) -> UserBalance:
        """Check the stored balance against a replay of the user's ledger."""
        async with self.db.read():
            stored = await self.balances.get_balance(userid)
            replayed = await self.ledger.replay(userid)
        mismatched = [
            name
            for name in ("refundable", "nonrefundable", "freegift")
            if getattr(stored, name) != getattr(replayed, name)
        ]
        if dict(stored.categories) != dict(replayed.categories):
            mismatched.append("categories")
        if mismatched:
            logger.error(f"Balance of user {userid} does not match its ledger: {', '.join(mismatched)}")
            raise LedgerCorruption(f"Balance of user {userid} does not match its ledger ({', '.join(mismatched)})")
        return stored

    # ------------------------------------------------------------------
    # Top-ups
    # ------------------------------------------------------------------

    async def _credit_quote(
        self,
        userid: int,
        quote: TopupQuote,
        *,
        category: Optional[int],
        refundable: bool,
        description: str,
    ) -> TopupResult:
        """Credit the cash part and the bonus part of a top-up in one transaction."""

        async def _topup() -> Decimal:
            async with self.db.transaction():
                total = await self.balances.credit(
                    userid,
                    quote.cash,
                    nonrefundable=not refundable,
                    category=None if refundable else category,
                    description=description,
                )
                if quote.bonus > ZERO:
                    total = await self.balances.credit(
                        userid,
                        quote.bonus,
                        nonrefundable=True,
                        category=category,
                        description=f"Discount bonus of {quote.tier.percent}% on top-up of {quote.value}"
                        if quote.tier
                        else "Top-up bonus",
                    )
                return total

        total = await self.db.run_with_retry(_topup, description=f"top-up for user {userid}")
        audit_logger.info(
            f"Top-up for user {userid}: value {quote.value}, cash {quote.cash}, bonus {quote.bonus}"
        )
        return TopupResult(userid=userid, quote=quote, balance=total)

    async def topup(
        self,
        userid: int,
        value,
        *,
        category: Optional[int] = None,
        description: Optional[str] = None,
        now: Optional[int] = None,
    ) -> TopupResult:
        """
        Top up a wallet by an intended value.

        The tier is looked up on ``value``. The cash part is refundable, the
        bonus part non-refundable (and ring-fenced to ``category`` if given).
        """
        quote = await self.discounts.quote(value, category, now)
        return await self._credit_quote(
            userid,
            quote,
            category=category,
            refundable=True,
            description=description or f"Top-up of {format_amount(quote.value, self.config.currency)}",
        )

    async def payment_topup(
        self,
        userid: int,
        cash,
        *,
        category: Optional[int] = None,
        apply_discount: bool = True,
        refundable: bool = True,
        description: Optional[str] = None,
        now: Optional[int] = None,
    ) -> TopupResult:
        """
        Top up a wallet with cash already collected by a payment gateway.

        With ``apply_discount`` the active tiers are tested against the value
        the cash would have bought before the discount.
        """
        if apply_discount:
            quote = await self.discounts.quote_from_cash(cash, category, now)
        else:
            paid = parse_amount(cash)
            quote = TopupQuote(value=paid, cash=paid, bonus=ZERO)
        return await self._credit_quote(
            userid,
            quote,
            category=category,
            refundable=refundable,
            description=description
            or f"Top-up payment of {format_amount(quote.cash, self.config.currency)}",
        )

    # ------------------------------------------------------------------
    # Purchases
    # ------------------------------------------------------------------

    async def cost_after_discount(
        self,
        userid: int,
        instance: EnrolmentInstance,
        coupon_code: Optional[str] = None,
        user_discount=None,
    ) -> PriceQuote:
        """
        Price an instance for a user.

        The coupon applies first, then ``user_discount``, the per-user
        discount the host reads from the user's profile (see
        ``apply_user_discount``).

        Raises:
            CouponError: when ``coupon_code`` is given and cannot be used
        """
        base = quantize(instance.cost)
        descriptor = None
        after_coupon = base
        if coupon_code:
            descriptor = await self.coupons.validate(coupon_code, userid, instance)
            after_coupon = self.coupons.compute_cost_after(base, descriptor)
        return PriceQuote(
            base_cost=base,
            cost_after=apply_user_discount(after_coupon, user_discount),
            coupon=descriptor,
            cost_after_coupon=after_coupon,
        )

    async def purchase(
        self,
        userid: int,
        instance: EnrolmentInstance,
        coupon_code: Optional[str] = None,
        user_discount=None,
    ) -> PurchaseResult:
        """
        Pay for an instance from the wallet.

        Coupon validation, the debit, the coupon redemption and the cashback
        credit commit together. Nothing is written when any step fails.

        Raises:
            CouponError: the coupon cannot be used for this purchase
            InsufficientBalance: the user cannot cover the discounted cost
            ConcurrencyConflict: contention persisted after the retries
        """

        async def _purchase() -> PurchaseResult:
            async with self.db.transaction():
                price = await self.cost_after_discount(userid, instance, coupon_code, user_discount)
                description = f"Enrolment in course {instance.courseid} (instance {instance.id})"

                if price.cost_after > ZERO:
                    total = await self.balances.debit(
                        userid,
                        price.cost_after,
                        category=instance.category,
                        description=description,
                    )
                else:
                    total = (await self.balances.get_balance(userid)).total

                if price.coupon_saving > ZERO:
                    await self.coupons.redeem(price.coupon.code, userid, instance, price.coupon_saving)

                cashback = ZERO
                settings = self.config.cashback
                if settings.enabled and price.cost_after > ZERO:
                    cashback = self.awards.compute_cashback(price.cost_after, settings.percent)
                    if cashback > ZERO:
                        total = await self.balances.credit(
                            userid,
                            cashback,
                            nonrefundable=True,
                            description=f"Cashback for enrolment in course {instance.courseid}",
                        )

                return PurchaseResult(
                    userid=userid,
                    instanceid=instance.id,
                    cost_before=price.base_cost,
                    cost_after=price.cost_after,
                    coupon_code=price.coupon.code if price.coupon else None,
                    cashback=cashback,
                    balance=total,
                )

        result = await self.db.run_with_retry(_purchase, description=f"purchase by user {userid}")
        audit_logger.info(
            f"User {userid} purchased instance {instance.id} for {result.cost_after} "
            f"(base {result.cost_before}, coupon {result.coupon_code}, cashback {result.cashback})"
        )
        return result

    # ------------------------------------------------------------------
    # Payment items
    # ------------------------------------------------------------------

    async def create_payment_item(
        self,
        userid: int,
        cost,
        *,
        currency: Optional[str] = None,
        instanceid: Optional[int] = None,
        category: Optional[int] = None,
    ) -> PaymentItem:
        """Record what a gateway payment is for before sending the user to pay."""
        amount = parse_amount(cost)
        currency = (currency or self.config.currency).upper()
        now = self.clock()
        async with self.db.transaction() as connection:
            cursor = await connection.execute(
                """
                INSERT INTO items (cost, currency, userid, instanceid, category, timecreated)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (to_cents(amount), currency, userid, instanceid, category or None, now),
            )
        return PaymentItem(
            id=cursor.lastrowid,
            cost=amount,
            currency=currency,
            userid=userid,
            instanceid=instanceid,
            category=category or None,
            timecreated=now,
        )

    async def get_payment_item(self, itemid: int) -> Optional[PaymentItem]:
        async with self.db.read() as connection:
            cursor = await connection.execute("SELECT * FROM items WHERE id = ?", (itemid,))
            row = await cursor.fetchone()
        return PaymentItem.from_row(row) if row else None

    # ------------------------------------------------------------------
    # Inbound events
    # ------------------------------------------------------------------

    async def on_payment_confirmed(self, event: PaymentConfirmed) -> PaymentOutcome:
        """
        Credit a confirmed gateway payment.

        The item is claimed by setting its ``paymentid`` once, in the same
        transaction as the credit, so a redelivered confirmation is reported
        as a duplicate instead of crediting twice. Payments for an instance
        are credited as non-refundable; the host then calls ``purchase``.
        """
        item = await self.get_payment_item(event.itemid)
        if item is None:
            raise PaymentItemNotFound(event.itemid)
        if quantize(event.amount) != item.cost:
            logger.warning(
                f"Payment {event.paymentid} for item {item.id} reports {event.amount}, "
                f"item cost is {item.cost}. Crediting the item cost."
            )
        if event.userid != item.userid:
            logger.warning(
                f"Payment {event.paymentid} for item {item.id} reports user {event.userid}, "
                f"item belongs to user {item.userid}. Crediting the item owner."
            )

        async def _deliver() -> Optional[TopupResult]:
            async with self.db.transaction() as connection:
                cursor = await connection.execute(
                    "UPDATE items SET paymentid = ? WHERE id = ? AND paymentid IS NULL",
                    (event.paymentid, item.id),
                )
                if cursor.rowcount != 1:
                    return None
                return await self.payment_topup(
                    item.userid,
                    item.cost,
                    category=item.category,
                    refundable=item.instanceid is None,
                    description=f"Payment {event.paymentid}: {format_amount(item.cost, item.currency)}",
                )

        result = await self.db.run_with_retry(_deliver, description=f"payment {event.paymentid}")
        if result is None:
            logger.info(f"Payment {event.paymentid} for item {item.id} was already delivered")
            balance = await self.balances.get_total(item.userid)
            return PaymentOutcome(
                itemid=item.id,
                paymentid=event.paymentid,
                credited=ZERO,
                balance=balance,
                instanceid=item.instanceid,
                duplicate=True,
            )

        return PaymentOutcome(
            itemid=item.id,
            paymentid=event.paymentid,
            credited=result.quote.value,
            balance=result.balance,
            instanceid=item.instanceid,
        )

    async def on_course_completed(self, event: CourseCompleted, instance: EnrolmentInstance) -> Decimal:
        """Credit the completion award, using the site defaults where the instance sets none."""
        defaults = self.config.awards
        enabled = defaults.enabled if instance.award_enabled is None else instance.award_enabled
        if not enabled:
            return ZERO

        criteria = defaults.criteria_percent if instance.award_criteria is None else instance.award_criteria
        per_point = defaults.credit_per_point if instance.award_per_point is None else instance.award_per_point
        return await self.awards.award_completion(
            event.userid,
            event.courseid,
            instance.id,
            event.grade_percent,
            criteria,
            per_point,
            grade=event.grade,
            maxgrade=event.maxgrade,
        )

    async def on_user_registered(self, event: UserRegistered) -> Decimal:
        """Credit the new-user gift once per user.

        The gift is keyed on its own ``new_user_gift`` row, so reading or
        funding the wallet before the registration event arrives does not
        forfeit it.
        """
        settings = self.config.new_user_gift
        if not settings.enabled or settings.value <= 0:
            return ZERO
        amount = quantize(settings.value)

        async def _gift() -> Decimal:
            async with self.db.transaction() as connection:
                cursor = await connection.execute(
                    """
                    INSERT INTO new_user_gift (userid, amount, timecreated)
                    VALUES (?, ?, ?)
                    ON CONFLICT(userid) DO NOTHING
                    """,
                    (event.userid, to_cents(amount), self.clock()),
                )
                if cursor.rowcount != 1:
                    return ZERO
                await self.balances.credit(
                    event.userid,
                    amount,
                    freegift=True,
                    description="New user gift",
                )
                return amount

        gifted = await self.db.run_with_retry(_gift, description=f"new user gift for {event.userid}")
        if gifted:
            audit_logger.info(f"New user gift of {gifted} credited to user {event.userid}")
        return gifted

    async def on_referral_registered(self, event: ReferralRegistered) -> HeldGift:
        return await self.referrals.register_referral(event.code, event.referred, event.courseid)


async def create_wallet(config: WalletConfig) -> WalletService:
    """Open the configured database and build a service on it."""
    db = Database(
        config.database.path,
        connect_timeout=config.database.connect_timeout,
        max_retries=config.max_retries,
    )
    await db.connect()
    return WalletService(db, config)
