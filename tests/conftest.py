"""
Shared fixtures: an in-memory unit of work and fake external services.

The in-memory store applies writes immediately and returns copies on read,
so use cases see the same isolation they get from a real session.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest

from checkout.domain.models import (
    Address, Cart, CheckoutSession, Coupon, CouponType, DeliveryOptions, DeliveryZone, Item,
    Order, OrderStatus, PaymentInitialization, PaymentStatus, PaymentVerification, StoredCartLine,
)
from checkout.domain.exceptions import PaymentServiceError
from checkout.application.cart import CartAggregator
from checkout.application.coupons import CouponEngine
from checkout.application.delivery import DeliveryZoneResolver
from checkout.application.orders import OrderLifecycleManager
from checkout.application.checkout import PlaceOrderUseCase, CreateOrderUseCase, VerifyPaymentUseCase

NOW = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)


def fixed_clock():
    return NOW


# ---------------------------------------------------------------------------
# In-memory repositories
# ---------------------------------------------------------------------------

class InMemoryStore:
    def __init__(self):
        self.orders: Dict[str, Order] = {}
        self.coupons: Dict[str, Coupon] = {}
        self.redemptions: list = []
        self.carts: Dict[str, Cart] = {}
        self.sessions: Dict[str, CheckoutSession] = {}


class FakeOrderRepository:
    def __init__(self, store: InMemoryStore):
        self._store = store

    async def get_by_id(self, order_id):
        order = self._store.orders.get(order_id)
        return order.model_copy(deep=True) if order else None

    async def get_by_payment_reference(self, reference):
        for order in self._store.orders.values():
            if order.payment_reference == reference:
                return order.model_copy(deep=True)
        return None

    async def create(self, order):
        self._store.orders[order.id] = order.model_copy(deep=True)

    async def update_status(self, order):
        stored = self._store.orders[order.id]
        stored.status = order.status
        stored.updated_at = order.updated_at
        stored.delivered_at = order.delivered_at

    async def update_payment_reference(self, order_id, reference):
        self._store.orders[order_id].payment_reference = reference

    async def list(self, page=1, limit=10, status=None, user_id=None,
                   sort_by="created_at", sort_order="desc") -> Tuple[List[Order], int]:
        orders = [
            o for o in self._store.orders.values()
            if (status is None or o.status == status) and (user_id is None or o.user_id == user_id)
        ]
        orders.sort(key=lambda o: getattr(o, sort_by), reverse=sort_order == "desc")
        start = (page - 1) * limit
        return [o.model_copy(deep=True) for o in orders[start:start + limit]], len(orders)

    async def count_placed_by_user(self, user_id):
        return sum(
            1 for o in self._store.orders.values()
            if o.user_id == user_id and o.status not in (OrderStatus.FAILED, OrderStatus.CANCELLED)
        )


class FakeCouponRepository:
    def __init__(self, store: InMemoryStore):
        self._store = store

    async def get_by_id(self, coupon_id):
        coupon = self._store.coupons.get(coupon_id)
        return coupon.model_copy(deep=True) if coupon else None

    async def get_by_code(self, code):
        for coupon in self._store.coupons.values():
            if coupon.code == code.strip().upper():
                return coupon.model_copy(deep=True)
        return None

    async def lock_by_code(self, code):
        return await self.get_by_code(code)

    async def list_all(self):
        return [c.model_copy(deep=True) for c in self._store.coupons.values()]

    async def create(self, coupon):
        self._store.coupons[coupon.id] = coupon.model_copy(deep=True)

    async def update(self, coupon):
        usage_count = self._store.coupons[coupon.id].usage_count
        self._store.coupons[coupon.id] = coupon.model_copy(update={"usage_count": usage_count})

    async def delete(self, coupon_id):
        self._store.redemptions = [r for r in self._store.redemptions if r.coupon_id != coupon_id]
        return self._store.coupons.pop(coupon_id, None) is not None

    async def increment_usage(self, coupon_id):
        coupon = self._store.coupons[coupon_id]
        if coupon.usage_limit is not None and coupon.usage_count >= coupon.usage_limit:
            return False
        coupon.usage_count += 1
        return True

    async def get_redemption(self, coupon_id, order_id):
        for r in self._store.redemptions:
            if r.coupon_id == coupon_id and r.order_id == order_id:
                return r
        return None

    async def add_redemption(self, redemption):
        if await self.get_redemption(redemption.coupon_id, redemption.order_id):
            return False
        self._store.redemptions.append(redemption)
        return True

    async def count_user_redemptions(self, coupon_id, user_id):
        return sum(1 for r in self._store.redemptions if r.coupon_id == coupon_id and r.user_id == user_id)

    async def redemption_totals(self, start=None, end=None):
        totals = {}
        for r in self._store.redemptions:
            if (start and r.created_at < start) or (end and r.created_at > end):
                continue
            count, discount = totals.get(r.coupon_id, (0, 0.0))
            totals[r.coupon_id] = (count + 1, discount + r.discount_amount)
        return totals


class FakeCartRepository:
    def __init__(self, store: InMemoryStore):
        self._store = store

    async def get(self, user_id):
        cart = self._store.carts.get(user_id)
        return cart.model_copy(deep=True) if cart else Cart(user_id=user_id)

    async def save(self, cart):
        self._store.carts[cart.user_id] = cart.model_copy(deep=True)

    async def clear(self, user_id):
        self._store.carts[user_id] = Cart(user_id=user_id)


class FakeSessionRepository:
    def __init__(self, store: InMemoryStore):
        self._store = store

    async def get(self, user_id):
        session = self._store.sessions.get(user_id)
        return session.model_copy(deep=True) if session else CheckoutSession(user_id=user_id)

    async def save(self, session):
        self._store.sessions[session.user_id] = session.model_copy(deep=True)


class FakeUnitOfWork:
    def __init__(self, store: Optional[InMemoryStore] = None):
        self.store = store or InMemoryStore()
        self.orders = FakeOrderRepository(self.store)
        self.coupons = FakeCouponRepository(self.store)
        self.carts = FakeCartRepository(self.store)
        self.sessions = FakeSessionRepository(self.store)
        self.commits = 0

    @asynccontextmanager
    async def __call__(self):
        yield self

    async def commit(self):
        self.commits += 1

    async def rollback(self):
        pass


# ---------------------------------------------------------------------------
# External services
# ---------------------------------------------------------------------------

class FakeCatalog:
    def __init__(self, items=None):
        self.items = {item.id: item for item in (items or [])}
        self.calls = 0

    async def get_item(self, item_id):
        self.calls += 1
        return self.items.get(item_id)


class FakePaymentGateway:
    def __init__(self):
        self.initialized = []
        self.verified = []
        self.fail_initialize = False
        self.verify_status = PaymentStatus.SUCCESS
        self.verify_amount: Optional[float] = None
        self.verify_order_id: Optional[str] = None
        self._counter = 0
        self._payments = {}

    @property
    def calls(self):
        return len(self.initialized) + len(self.verified)

    async def initialize_payment(self, order_id, amount, payer_email, metadata=None):
        self.initialized.append((order_id, amount, payer_email))
        if self.fail_initialize:
            raise PaymentServiceError("Payment service error: 502", status_code=502)
        self._counter += 1
        reference = f"PAY_TEST_{self._counter}"
        self._payments[reference] = (order_id, amount)
        return PaymentInitialization(
            status=PaymentStatus.PENDING,
            reference=reference,
            order_id=order_id,
            authorization_url=f"https://pay.test/{reference}",
        )

    async def verify_payment(self, reference):
        self.verified.append(reference)
        order_id, amount = self._payments.get(reference, (None, 0.0))
        return PaymentVerification(
            status=self.verify_status,
            reference=reference,
            order_id=self.verify_order_id or order_id,
            amount=self.verify_amount if self.verify_amount is not None else amount,
            currency="GHS",
        )


EXPRESS_ZONE = DeliveryZone(
    id="accra", name="Accra Metro", price=10.0, estimated_days=1, allows_cash_on_delivery=True
)
REMOTE_ZONE = DeliveryZone(
    id="remote", name="Remote", price=25.0, estimated_days=7, allows_cash_on_delivery=False
)


class FakeDeliveryService:
    def __init__(self):
        self.result = {"isValid": True, "zoneId": "accra"}
        self.options = DeliveryOptions(zones=[EXPRESS_ZONE, REMOTE_ZONE], default_zone="accra")
        self.validated: List[Address] = []

    @property
    def calls(self):
        return len(self.validated)

    async def validate_address(self, address):
        self.validated.append(address)
        return self.result

    async def get_delivery_options(self):
        return self.options


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def uow():
    return FakeUnitOfWork()


@pytest.fixture
def catalog():
    return FakeCatalog([
        Item(id="shirt", name="Linen Shirt", price=50.0, image="shirt.png", category="tops"),
        Item(id="cap", name="Cap", price=20.0, image="cap.png", category="accessories"),
    ])


@pytest.fixture
def gateway():
    return FakePaymentGateway()


@pytest.fixture
def delivery():
    return FakeDeliveryService()


@pytest.fixture
def address():
    return Address(street="12 Ring Rd", city="Accra", state="Greater Accra",
                   country="Ghana", postal_code="GA-100")


@pytest.fixture
def lifecycle(uow):
    return OrderLifecycleManager(uow, currency="GHS", refund_window_days=30, clock=fixed_clock)


@pytest.fixture
def coupon_engine(uow):
    return CouponEngine(uow, clock=fixed_clock)


@pytest.fixture
def resolver(delivery):
    return DeliveryZoneResolver(delivery, debounce_seconds=0.01)


@pytest.fixture
def place_order(uow, catalog, resolver, coupon_engine, lifecycle, gateway):
    return PlaceOrderUseCase(uow, catalog, resolver, coupon_engine, lifecycle, gateway, CartAggregator(0.08))


@pytest.fixture
def create_order(uow, catalog, resolver, coupon_engine, lifecycle):
    return CreateOrderUseCase(uow, catalog, resolver, coupon_engine, lifecycle, CartAggregator(0.08))


@pytest.fixture
def verify_payment(uow, lifecycle, gateway, coupon_engine):
    return VerifyPaymentUseCase(uow, lifecycle, gateway, coupon_engine)


@pytest.fixture
def make_coupon(uow):
    async def _make(code="SAVE20", **overrides):
        fields = dict(
            id=f"coupon-{code.lower()}",
            code=code,
            type=CouponType.PERCENTAGE,
            value=20,
            start_date=NOW - timedelta(days=10),
            end_date=NOW + timedelta(days=10),
            created_at=NOW - timedelta(days=10),
            updated_at=NOW - timedelta(days=10),
        )
        fields.update(overrides)
        coupon = Coupon(**fields)
        await uow.coupons.create(coupon)
        return coupon
    return _make


@pytest.fixture
def fill_cart(uow):
    async def _fill(user_id="user-1", lines=(("shirt", 2),), coupon_code=None):
        await uow.carts.save(Cart(
            user_id=user_id,
            lines=[StoredCartLine(product_id=p, quantity=q) for p, q in lines],
            coupon_code=coupon_code,
        ))
    return _fill
