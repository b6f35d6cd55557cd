"""SQL repositories and the unit of work against sqlite+aiosqlite"""

import asyncio
from datetime import timedelta

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, AsyncSession

from checkout.database import build_engine, create_tables
from checkout.domain.models import (
    Cart, CartLine, CartTotals, CheckoutSession, Coupon, CouponRedemption, CouponType, OrderStatus, PaymentMethod,
    StoredCartLine,
)
from checkout.domain.exceptions import CouponRejection
from checkout.application.coupons import CouponEngine
from checkout.application.orders import OrderLifecycleManager
from checkout.infrastructure.unit_of_work import UnitOfWork

from conftest import NOW, fixed_clock

TOTALS = CartTotals(subtotal=100.0, tax=8.0, delivery_fee=10.0, discount=0.0, total=118.0)
LINES = [CartLine(product_id="shirt", quantity=2, price=50.0, name="Linen Shirt", image="shirt.png")]


@pytest_asyncio.fixture
async def sql_uow(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'checkout.db'}")
    await create_tables(engine)
    yield UnitOfWork(async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False))
    await engine.dispose()


def _coupon(**overrides):
    fields = dict(
        id="coupon-1", code="SAVE20", type=CouponType.PERCENTAGE, value=20,
        start_date=NOW - timedelta(days=1), end_date=NOW + timedelta(days=1),
        created_at=NOW, updated_at=NOW,
    )
    fields.update(overrides)
    return Coupon(**fields)


async def test_order_round_trip_and_status(sql_uow, address):
    lifecycle = OrderLifecycleManager(sql_uow, clock=fixed_clock)
    order = await lifecycle.create_order("user-1", LINES, address, TOTALS, PaymentMethod.CARD)

    async with sql_uow() as uow:
        await uow.orders.update_payment_reference(order.id, "PAY_1")
        await uow.commit()

    await lifecycle.update_order_status(order.id, OrderStatus.CONFIRMED)

    async with sql_uow() as uow:
        stored = await uow.orders.get_by_payment_reference("PAY_1")

    assert stored.id == order.id
    assert stored.status == OrderStatus.CONFIRMED
    assert stored.items[0].name == "Linen Shirt"
    assert stored.shipping_address.postal_code == address.postal_code
    assert stored.total == 118.0
    assert stored.created_at == NOW


async def test_uncommitted_writes_are_dropped(sql_uow, address):
    lifecycle = OrderLifecycleManager(sql_uow, clock=fixed_clock)
    order = await lifecycle.create_order("user-1", LINES, address, TOTALS)

    async with sql_uow() as uow:
        current = await uow.orders.get_by_id(order.id)
        await lifecycle.apply_status(uow, current, OrderStatus.FAILED)

    async with sql_uow() as uow:
        assert (await uow.orders.get_by_id(order.id)).status == OrderStatus.PENDING


async def test_list_filters_and_sorts(sql_uow, address):
    lifecycle = OrderLifecycleManager(sql_uow, clock=fixed_clock)
    cheap = CartTotals(subtotal=10.0, tax=0.8, delivery_fee=0.0, discount=0.0, total=10.8)
    await lifecycle.create_order("user-1", LINES, address, TOTALS)
    small = await lifecycle.create_order("user-1", LINES, address, cheap)
    await lifecycle.create_order("user-2", LINES, address, TOTALS)
    await lifecycle.update_order_status(small.id, OrderStatus.CANCELLED)

    async with sql_uow() as uow:
        items, total = await uow.orders.list(user_id="user-1", sort_by="total", sort_order="asc")
        cancelled, _ = await uow.orders.list(status=OrderStatus.CANCELLED)
        placed = await uow.orders.count_placed_by_user("user-1")

    assert total == 2
    assert [o.total for o in items] == [10.8, 118.0]
    assert [o.id for o in cancelled] == [small.id]
    assert placed == 1


async def test_coupon_redemption_counts_once_per_order(sql_uow):
    async with sql_uow() as uow:
        await uow.coupons.create(_coupon(usage_limit=2))
        await uow.commit()

    coupons = CouponEngine(sql_uow, clock=fixed_clock)
    assert await coupons.redeem("save20", "user-1", "order-1", 10.0)
    assert not await coupons.redeem("SAVE20", "user-1", "order-1", 10.0)
    assert await coupons.redeem("SAVE20", "user-2", "order-2", 10.0)

    with pytest.raises(CouponRejection):
        await coupons.redeem("SAVE20", "user-3", "order-3", 10.0)

    async with sql_uow() as uow:
        coupon = await uow.coupons.get_by_code("save20")
        totals = await uow.coupons.redemption_totals()

    assert coupon.usage_count == 2
    assert totals == {"coupon-1": (2, 20.0)}


async def test_concurrent_redemptions_never_exceed_usage_limit(sql_uow):
    async with sql_uow() as uow:
        await uow.coupons.create(_coupon(usage_limit=3))
        await uow.commit()

    coupons = CouponEngine(sql_uow, clock=fixed_clock)
    results = await asyncio.gather(
        *(coupons.redeem("SAVE20", f"user-{i}", f"order-{i}", 10.0) for i in range(8)),
        return_exceptions=True,
    )

    assert sum(r is True for r in results) == 3
    assert all(r is True or isinstance(r, CouponRejection) for r in results)
    async with sql_uow() as uow:
        assert (await uow.coupons.get_by_code("SAVE20")).usage_count == 3
        assert (await uow.coupons.redemption_totals())["coupon-1"][0] == 3


async def test_concurrent_redemptions_respect_user_limit(sql_uow):
    async with sql_uow() as uow:
        await uow.coupons.create(_coupon(user_limit=1))
        await uow.commit()

    coupons = CouponEngine(sql_uow, clock=fixed_clock)
    results = await asyncio.gather(
        coupons.redeem("SAVE20", "user-1", "order-1", 10.0),
        coupons.redeem("SAVE20", "user-1", "order-2", 10.0),
        return_exceptions=True,
    )

    assert sum(r is True for r in results) == 1
    assert sum(isinstance(r, CouponRejection) for r in results) == 1
    async with sql_uow() as uow:
        assert await uow.coupons.count_user_redemptions("coupon-1", "user-1") == 1
        assert (await uow.coupons.get_by_code("SAVE20")).usage_count == 1


async def test_duplicate_redemption_row_is_refused(sql_uow):
    redemption = CouponRedemption(
        coupon_id="coupon-1", user_id="user-1", order_id="order-1", discount_amount=5.0, created_at=NOW
    )
    async with sql_uow() as uow:
        await uow.coupons.create(_coupon())
        assert await uow.coupons.add_redemption(redemption)
        await uow.commit()

    async with sql_uow() as uow:
        assert not await uow.coupons.add_redemption(redemption)


async def test_coupon_update_and_delete(sql_uow):
    async with sql_uow() as uow:
        await uow.coupons.create(_coupon(usage_count=3, applicable_categories=["tops"]))
        await uow.commit()

    async with sql_uow() as uow:
        coupon = await uow.coupons.get_by_id("coupon-1")
        await uow.coupons.update(coupon.model_copy(update={"value": 30, "usage_count": 0}))
        await uow.commit()

    async with sql_uow() as uow:
        coupon = await uow.coupons.get_by_id("coupon-1")
        assert coupon.value == 30
        assert coupon.usage_count == 3
        assert coupon.applicable_categories == ["tops"]
        assert await uow.coupons.delete("coupon-1")
        assert not await uow.coupons.delete("coupon-1")


async def test_cart_and_session_upsert(sql_uow):
    async with sql_uow() as uow:
        assert (await uow.carts.get("user-1")).lines == []
        await uow.carts.save(Cart(user_id="user-1", lines=[StoredCartLine(product_id="shirt", quantity=2)]))
        await uow.sessions.save(CheckoutSession(user_id="user-1", payment_reference="PAY_1", order_id="o-1"))
        await uow.commit()

    async with sql_uow() as uow:
        cart = await uow.carts.get("user-1")
        cart.coupon_code = "SAVE20"
        await uow.carts.save(cart)
        session = await uow.sessions.get("user-1")
        session.buy_now = StoredCartLine(product_id="cap", quantity=1, size="M")
        await uow.sessions.save(session)
        await uow.commit()

    async with sql_uow() as uow:
        cart = await uow.carts.get("user-1")
        session = await uow.sessions.get("user-1")
        await uow.carts.clear("user-1")
        await uow.commit()

    assert cart.coupon_code == "SAVE20"
    assert cart.lines[0].quantity == 2
    assert session.payment_reference == "PAY_1"
    assert session.buy_now.size == "M"

    async with sql_uow() as uow:
        assert (await uow.carts.get("user-1")).lines == []
