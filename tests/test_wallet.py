from decimal import Decimal
from unittest.mock import MagicMock

import pytest

from wallet_core import wallet as wallet_module

from wallet_core.config import CashbackSettings, NewUserGiftSettings, WalletConfig
from wallet_core.exceptions import (
    CouponNotFound,
    CouponUsageExceeded,
    InsufficientBalance,
    PaymentItemNotFound,
)
from wallet_core.models import CourseCompleted, PaymentConfirmed, UserRegistered
from wallet_core.wallet import WalletService, apply_user_discount


@pytest.mark.asyncio
async def test_topup_credits_cash_refundable_and_bonus_non_refundable(wallet, discount_tiers):
    result = await wallet.topup(31, 500)

    assert result.quote.cash == Decimal("425.00")
    assert result.quote.bonus == Decimal("75.00")
    assert result.balance == Decimal("500.00")

    balance = await wallet.get_balance(31)
    assert balance.refundable == Decimal("425.00")
    assert balance.nonrefundable == Decimal("75.00")
    assert await wallet.ledger.count(userid=31) == 2


@pytest.mark.asyncio
async def test_topup_without_tiers(wallet):
    result = await wallet.topup(32, "25.50")

    assert result.balance == Decimal("25.50")
    assert result.quote.bonus == Decimal("0.00")
    assert await wallet.ledger.count(userid=32) == 1


@pytest.mark.asyncio
async def test_payment_topup_applies_discount_on_cash(wallet, discount_tiers):
    result = await wallet.payment_topup(33, 425)
    assert result.balance == Decimal("500.00")

    plain = await wallet.payment_topup(34, 425, apply_discount=False)
    assert plain.balance == Decimal("425.00")


@pytest.mark.asyncio
async def test_cost_after_discount(wallet, coupon_factory, instance_factory):
    await coupon_factory("TENOFF", type="fixed", value=10)
    instance = instance_factory(cost=Decimal("50"))

    plain = await wallet.cost_after_discount(35, instance)
    assert plain.cost_after == Decimal("50.00")
    assert plain.coupon is None

    quote = await wallet.cost_after_discount(35, instance, "TENOFF")
    assert quote.base_cost == Decimal("50.00")
    assert quote.cost_after == Decimal("40.00")
    assert quote.coupon.code == "TENOFF"


@pytest.mark.asyncio
async def test_purchase_debits_discounted_cost_and_redeems_coupon(wallet, coupon_factory, instance_factory):
    await wallet.topup(36, 100)
    await coupon_factory("HALF", type="percent", value=50, maxusage=1)

    result = await wallet.purchase(36, instance_factory(cost=Decimal("60")), "HALF")

    assert result.cost_before == Decimal("60.00")
    assert result.cost_after == Decimal("30.00")
    assert result.coupon_code == "HALF"
    assert result.balance == Decimal("70.00")
    assert (await wallet.coupons.get_coupon("HALF")).usetimes == 1

    with pytest.raises(CouponUsageExceeded):
        await wallet.purchase(36, instance_factory(2, cost=Decimal("10")), "HALF")
    assert await wallet.balances.get_total(36) == Decimal("70.00")


@pytest.mark.asyncio
async def test_insufficient_balance_commits_nothing(wallet, coupon_factory, instance_factory):
    await wallet.topup(37, 20)
    await coupon_factory("SMALL", type="fixed", value=5)

    with pytest.raises(InsufficientBalance):
        await wallet.purchase(37, instance_factory(cost=Decimal("50")), "SMALL")

    assert await wallet.balances.get_total(37) == Decimal("20.00")
    assert (await wallet.coupons.get_coupon("SMALL")).usetimes == 0
    assert await wallet.ledger.count(userid=37, type="debit") == 0


@pytest.mark.asyncio
async def test_invalid_coupon_aborts_purchase(wallet, instance_factory):
    await wallet.topup(38, 100)

    with pytest.raises(CouponNotFound):
        await wallet.purchase(38, instance_factory(), "GHOST")

    assert await wallet.balances.get_total(38) == Decimal("100.00")


@pytest.mark.asyncio
async def test_free_purchase_with_full_coupon(wallet, coupon_factory, instance_factory):
    await coupon_factory("FREE", type="percent", value=100)

    result = await wallet.purchase(39, instance_factory(cost=Decimal("15")), "FREE")

    assert result.cost_after == Decimal("0.00")
    assert result.balance == Decimal("0.00")
    assert await wallet.ledger.count(userid=39) == 0
    assert (await wallet.coupons.get_coupon("FREE")).usetimes == 1


@pytest.mark.asyncio
async def test_purchase_with_cashback(db, instance_factory):
    service = WalletService(db, WalletConfig(cashback=CashbackSettings(enabled=True, percent=10)))
    await service.topup(40, 100)

    result = await service.purchase(40, instance_factory(cost=Decimal("50")))

    assert result.cashback == Decimal("5.00")
    assert result.balance == Decimal("55.00")
    balance = await service.get_balance(40)
    assert balance.nonrefundable == Decimal("5.00")
    assert balance.refundable == Decimal("50.00")


@pytest.mark.asyncio
async def test_new_user_gift_is_credited_once(wallet):
    assert await wallet.on_user_registered(UserRegistered(userid=41)) == Decimal("20.00")
    assert await wallet.on_user_registered(UserRegistered(userid=41)) == Decimal("0.00")

    assert await wallet.balances.get_total(41) == Decimal("20.00")
    assert await wallet.balances.get_nonrefundable(41) == Decimal("20.00")
    assert (await wallet.get_balance(41)).freegift == Decimal("20.00")


@pytest.mark.asyncio
async def test_new_user_gift_disabled(db):
    service = WalletService(db, WalletConfig(new_user_gift=NewUserGiftSettings(enabled=False, value=20)))

    assert await service.on_user_registered(UserRegistered(userid=42)) == Decimal("0.00")
    assert not await service.balances.exists(42)


@pytest.mark.asyncio
async def test_payment_confirmed_is_idempotent(wallet):
    item = await wallet.create_payment_item(43, "30")
    event = PaymentConfirmed(itemid=item.id, paymentid=9001, userid=43, amount=Decimal("30"))

    first = await wallet.on_payment_confirmed(event)
    second = await wallet.on_payment_confirmed(event)

    assert first.credited == Decimal("30.00")
    assert not first.duplicate
    assert second.duplicate
    assert second.credited == Decimal("0.00")
    assert await wallet.balances.get_total(43) == Decimal("30.00")
    assert (await wallet.get_payment_item(item.id)).paymentid == 9001


@pytest.mark.asyncio
async def test_payment_for_instance_is_non_refundable(wallet):
    item = await wallet.create_payment_item(44, "50", instanceid=3)

    outcome = await wallet.on_payment_confirmed(
        PaymentConfirmed(itemid=item.id, paymentid=9002, userid=44, amount=Decimal("50"))
    )

    assert outcome.instanceid == 3
    assert (await wallet.get_balance(44)).nonrefundable == Decimal("50.00")


@pytest.mark.asyncio
async def test_payment_for_unknown_item(wallet):
    with pytest.raises(PaymentItemNotFound):
        await wallet.on_payment_confirmed(PaymentConfirmed(itemid=404, paymentid=1, userid=1, amount=Decimal("1")))


@pytest.mark.asyncio
async def test_course_completion_respects_instance_override(wallet, instance_factory):
    disabled = instance_factory(5, award_enabled=False)
    event = CourseCompleted(userid=45, courseid=disabled.courseid, grade_percent=95)

    assert await wallet.on_course_completed(event, disabled) == Decimal("0.00")

    custom = instance_factory(6, award_criteria=80, award_per_point=2)
    event = CourseCompleted(userid=45, courseid=custom.courseid, grade_percent=95)
    assert await wallet.on_course_completed(event, custom) == Decimal("30.00")


@pytest.mark.asyncio
async def test_reconcile_matches_ledger(wallet, discount_tiers, instance_factory):
    await wallet.topup(46, 600, category=2)
    await wallet.purchase(46, instance_factory(cost=Decimal("150"), category=2))
    await wallet.on_user_registered(UserRegistered(userid=46))

    balance = await wallet.reconcile(46)
    assert balance.total == Decimal("450.00")


@pytest.mark.asyncio
async def test_new_user_gift_survives_an_earlier_balance_read(wallet):
    assert await wallet.balances.get_total(47) == Decimal("0.00")
    await wallet.topup(47, 10)

    assert await wallet.on_user_registered(UserRegistered(userid=47)) == Decimal("20.00")
    assert await wallet.on_user_registered(UserRegistered(userid=47)) == Decimal("0.00")
    assert (await wallet.get_balance(47)).freegift == Decimal("20.00")
    await wallet.reconcile(47)


@pytest.mark.parametrize(
    "user_discount, expected",
    [
        (None, "45.00"),
        ("", "45.00"),
        ("free", "0.00"),
        ("Free access", "0.00"),
        ("no", "45.00"),
        ("No discount", "45.00"),
        ("20", "36.00"),
        ("20% staff", "36.00"),
        (30, "31.50"),
        ("gold member", "45.00"),
        ("150", "0.00"),
    ],
)
def test_apply_user_discount(user_discount, expected):
    assert apply_user_discount(Decimal("45"), user_discount) == Decimal(expected)


@pytest.mark.asyncio
async def test_user_discount_applies_after_coupon(wallet, coupon_factory, instance_factory):
    await coupon_factory("TEN", value=10)
    instance = instance_factory(cost=Decimal("50"))

    price = await wallet.cost_after_discount(48, instance, "TEN", user_discount="20")

    assert price.cost_after_coupon == Decimal("45.00")
    assert price.coupon_saving == Decimal("5.00")
    assert price.cost_after == Decimal("36.00")

    await wallet.topup(48, 100)
    result = await wallet.purchase(48, instance, "TEN", user_discount="20")

    assert result.cost_after == Decimal("36.00")
    assert result.balance == Decimal("64.00")
    usages = await wallet.coupons.get_usages("TEN")
    assert [usage.value for usage in usages] == [Decimal("5.00")]


@pytest.mark.asyncio
async def test_free_user_discount_skips_the_debit(wallet, instance_factory):
    await wallet.topup(49, 10)

    result = await wallet.purchase(49, instance_factory(cost=Decimal("50")), user_discount="free")

    assert result.cost_after == Decimal("0.00")
    assert result.balance == Decimal("10.00")
    assert await wallet.ledger.count(userid=49) == 1


@pytest.mark.asyncio
async def test_no_user_discount_keeps_the_price(wallet, instance_factory):
    price = await wallet.cost_after_discount(50, instance_factory(cost=Decimal("50")), user_discount="no")

    assert price.cost_after == Decimal("50.00")
    assert price.coupon is None
    assert price.coupon_saving == Decimal("0.00")


@pytest.mark.asyncio
async def test_payment_for_another_users_item_is_logged(wallet, monkeypatch):
    mock_logger = MagicMock()
    monkeypatch.setattr(wallet_module, "logger", mock_logger)
    item = await wallet.create_payment_item(51, "15")

    outcome = await wallet.on_payment_confirmed(
        PaymentConfirmed(itemid=item.id, paymentid=9100, userid=52, amount=Decimal("15"))
    )

    assert outcome.credited == Decimal("15.00")
    assert await wallet.balances.get_total(51) == Decimal("15.00")
    warnings = [call.args[0] for call in mock_logger.warning.call_args_list]
    assert any("item belongs to user 51" in message for message in warnings)
