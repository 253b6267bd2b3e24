from decimal import Decimal

import pytest
import pytest_asyncio

from wallet_core.balance import BalanceStore
from wallet_core.config import (
    AwardSettings,
    CashbackSettings,
    NewUserGiftSettings,
    ReferralSettings,
    WalletConfig,
)
from wallet_core.coupons import CouponEngine
from wallet_core.database import Database
from wallet_core.discounts import ConditionalDiscountResolver
from wallet_core.ledger import TransactionLedger
from wallet_core.models import EnrolmentInstance
from wallet_core.wallet import WalletService


@pytest.fixture
def wallet_config() -> WalletConfig:
    return WalletConfig(
        cashback=CashbackSettings(enabled=False, percent=0.0),
        new_user_gift=NewUserGiftSettings(enabled=True, value=20.0),
        referral=ReferralSettings(enabled=True, amount=10.0, max_referrals=0),
        awards=AwardSettings(enabled=True, criteria_percent=50.0, credit_per_point=0.5),
    )


@pytest_asyncio.fixture
async def db():
    database = Database(":memory:")
    await database.connect()

    yield database

    await database.close()


@pytest_asyncio.fixture
async def ledger(db: Database) -> TransactionLedger:
    return TransactionLedger(db)


@pytest_asyncio.fixture
async def balances(db: Database, ledger: TransactionLedger) -> BalanceStore:
    return BalanceStore(db, ledger)


@pytest_asyncio.fixture
async def coupons(db: Database) -> CouponEngine:
    return CouponEngine(db)


@pytest_asyncio.fixture
async def discounts(db: Database) -> ConditionalDiscountResolver:
    return ConditionalDiscountResolver(db)


@pytest_asyncio.fixture
async def wallet(db: Database, wallet_config: WalletConfig) -> WalletService:
    return WalletService(db, wallet_config)


@pytest_asyncio.fixture
async def discount_tiers(discounts: ConditionalDiscountResolver) -> ConditionalDiscountResolver:
    """Site-wide tiers: 15% from 400, 20% from 600, 25% from 800."""
    await discounts.add_tier(400, 15)
    await discounts.add_tier(600, 20)
    await discounts.add_tier(800, 25)
    return discounts


@pytest_asyncio.fixture
async def coupon_factory(coupons: CouponEngine):
    async def _factory(code: str, **overrides) -> str:
        payload = {"code": code, "type": "percent", "value": 10}
        payload.update(overrides)
        await coupons.create_coupon(**payload)
        return code

    return _factory


@pytest.fixture
def instance_factory():
    def _factory(instanceid: int = 1, **overrides) -> EnrolmentInstance:
        payload = {"id": instanceid, "courseid": 100 + instanceid, "cost": Decimal("50.00")}
        payload.update(overrides)
        return EnrolmentInstance(**payload)

    return _factory
