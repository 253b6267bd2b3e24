import asyncio
from decimal import Decimal

import pytest

from wallet_core.exceptions import InsufficientBalance, InvalidAmount


@pytest.mark.asyncio
async def test_new_user_has_zero_balance(balances):
    balance = await balances.get_balance(4242)

    assert balance.total == Decimal("0.00")
    assert balance.version == 0
    assert await balances.exists(4242)


@pytest.mark.asyncio
async def test_credit_refundable_updates_total_and_ledger(balances, ledger):
    total = await balances.credit(1, "12.50", description="Top up")

    assert total == Decimal("12.50")
    balance = await balances.get_balance(1)
    assert balance.refundable == Decimal("12.50")
    assert balance.nonrefundable == Decimal("0.00")

    records = await ledger.query(userid=1)
    assert len(records) == 1
    record = records[0]
    assert record.type == "credit"
    assert record.amount == Decimal("12.50")
    assert record.balbefore == Decimal("0.00")
    assert record.balance == Decimal("12.50")
    assert record.norefund == Decimal("0.00")
    assert record.descripe == "Top up"


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, -5, "abc", None, float("nan"), True])
async def test_invalid_amounts_are_rejected_without_side_effects(balances, ledger, amount):
    with pytest.raises(InvalidAmount):
        await balances.credit(2, amount)
    with pytest.raises(InvalidAmount):
        await balances.debit(2, amount)

    assert await ledger.count(userid=2) == 0


@pytest.mark.asyncio
async def test_debit_beyond_balance_is_rejected(balances, ledger):
    await balances.credit(3, 10)

    with pytest.raises(InsufficientBalance) as excinfo:
        await balances.debit(3, "10.01")

    assert excinfo.value.available == Decimal("10.00")
    assert await balances.get_total(3) == Decimal("10.00")
    assert await ledger.count(userid=3, type="debit") == 0


@pytest.mark.asyncio
async def test_debit_draws_non_refundable_before_refundable(balances):
    await balances.credit(4, 30)
    await balances.credit(4, 20, nonrefundable=True)
    await balances.credit(4, 10, freegift=True)

    total = await balances.debit(4, 25)

    balance = await balances.get_balance(4)
    assert total == Decimal("35.00")
    assert balance.nonrefundable == Decimal("0.00")
    assert balance.freegift == Decimal("5.00")
    assert balance.refundable == Decimal("30.00")


@pytest.mark.asyncio
async def test_get_nonrefundable_includes_free_gift(balances):
    await balances.credit(5, 20, freegift=True)
    await balances.credit(5, 5, nonrefundable=True)
    await balances.credit(5, 50)

    assert await balances.get_nonrefundable(5) == Decimal("25.00")
    assert await balances.get_total(5) == Decimal("75.00")


@pytest.mark.asyncio
async def test_category_credit_is_ring_fenced(balances):
    await balances.credit(6, 40, nonrefundable=True, category=7)
    await balances.credit(6, 10)

    balance = await balances.get_balance(6)
    assert balance.categories.get_amount(7) == Decimal("40.00")
    assert balance.spendable(8) == Decimal("10.00")
    assert balance.spendable(7) == Decimal("50.00")

    with pytest.raises(InsufficientBalance):
        await balances.debit(6, 20, category=8)

    await balances.debit(6, 20, category=7)
    balance = await balances.get_balance(6)
    assert balance.categories.get_amount(7) == Decimal("20.00")
    assert balance.nonrefundable == Decimal("20.00")
    assert balance.refundable == Decimal("10.00")


@pytest.mark.asyncio
async def test_category_credit_is_capped_by_non_refundable_pool(balances):
    await balances.credit(7, 30, category=5)

    balance = await balances.get_balance(7)
    assert balance.refundable == Decimal("30.00")
    assert balance.categories.get_amount(5) == Decimal("0.00")


@pytest.mark.asyncio
async def test_refundable_credit_never_fences_existing_pool(balances, ledger):
    await balances.credit(1, 50, nonrefundable=True)
    await balances.credit(1, 20, category=5)

    balance = await balances.get_balance(1)
    assert balance.categories.get_amount(5) == Decimal("0.00")
    assert balance.refundable == Decimal("20.00")
    assert balance.spendable(9) == Decimal("70.00")

    latest = (await ledger.query(userid=1, limit=1))[0]
    assert latest.catamount == Decimal("0.00")
    assert dict((await ledger.replay(1)).categories) == dict(balance.categories)


@pytest.mark.asyncio
async def test_concurrent_credits_are_all_applied(balances, ledger):
    await asyncio.gather(*(balances.credit(8, 5) for _ in range(20)))

    assert await balances.get_total(8) == Decimal("100.00")
    assert await ledger.count(userid=8) == 20


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(balances):
    await balances.credit(9, 100)

    results = await asyncio.gather(
        *(balances.debit(9, 10) for _ in range(15)),
        return_exceptions=True,
    )

    failures = [result for result in results if isinstance(result, InsufficientBalance)]
    assert len(failures) == 5
    assert await balances.get_total(9) == Decimal("0.00")


@pytest.mark.asyncio
async def test_version_increments_on_every_mutation(balances):
    await balances.credit(10, 5)
    await balances.credit(10, 5)
    await balances.debit(10, 3)

    balance = await balances.get_balance(10)
    assert balance.version == 3
