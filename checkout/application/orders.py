import logging
import math
import uuid
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence
from pydantic import BaseModel, Field

from checkout.domain.models import (
    Address, CartLine, CartTotals, Order, OrderItem, OrderSource, OrderStatus, PaymentMethod, round_money,
)
from checkout.domain.exceptions import ValidationError, OrderNotFoundError
from checkout.domain.state_machine import apply_transition
from checkout.application.coupons import utcnow

logger = logging.getLogger(__name__)

REQUIRED_ADDRESS_FIELDS = ("street", "city", "state", "country", "postal_code")
TOTAL_TOLERANCE = 0.01


class OrderPage(BaseModel):
    items: List[Order]
    total_items: int
    current_page: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool
    has_more: bool


def check_address(address: Optional[Address]) -> Address:
    if address is None:
        raise ValidationError("Shipping address is required", field="shipping_address")
    address = address.stripped()
    missing = [name for name in REQUIRED_ADDRESS_FIELDS if not getattr(address, name)]
    if missing:
        raise ValidationError(
            f"Shipping address is missing: {', '.join(missing)}", field="shipping_address"
        )
    return address


def check_totals(totals: CartTotals) -> None:
    for name in ("subtotal", "tax", "delivery_fee", "discount", "total"):
        value = getattr(totals, name)
        if not math.isfinite(value) or value < 0:
            raise ValidationError(f"Invalid {name}: {value!r}", field=name)
    if totals.total <= 0:
        raise ValidationError("Valid total amount is required", field="total")
    expected = totals.subtotal + totals.tax + totals.delivery_fee - totals.discount
    if abs(expected - totals.total) > TOTAL_TOLERANCE:
        raise ValidationError(
            f"Total {totals.total} does not match its components ({expected:.2f})", field="total"
        )


class OrderLifecycleManager:
    """Creates orders and moves them through the status state machine.

    Order creation and admin status changes both go through here, so every
    status write is checked against the same transition table.
    """

    def __init__(
        self,
        unit_of_work,
        currency: str = "GHS",
        refund_window_days: Optional[int] = 30,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._uow = unit_of_work
        self._currency = currency
        self._refund_window_days = refund_window_days
        self._clock = clock

    async def create_order(
        self,
        user_id: str,
        lines: Sequence[CartLine],
        shipping_address: Address,
        totals: CartTotals,
        payment_method: PaymentMethod = PaymentMethod.CARD,
        coupon_code: Optional[str] = None,
        source: OrderSource = OrderSource.CART,
    ) -> Order:
        if not lines:
            raise ValidationError("Order must contain items", field="items")
        address = check_address(shipping_address)
        check_totals(totals)

        items = [
            OrderItem(
                product_id=line.product_id,
                name=line.name,
                price=round_money(line.price),
                quantity=line.quantity,
                image=line.image,
            )
            for line in lines
        ]
        now = self._clock()
        order = Order(
            id=str(uuid.uuid4()),
            user_id=user_id,
            items=items,
            shipping_address=address,
            status=OrderStatus.PENDING,
            subtotal=totals.subtotal,
            tax=totals.tax,
            delivery_fee=totals.delivery_fee,
            discount=totals.discount,
            total=totals.total,
            currency=self._currency,
            payment_method=payment_method,
            source=source,
            coupon_code=coupon_code,
            created_at=now,
            updated_at=now,
        )

        async with self._uow() as uow:
            await uow.orders.create(order)
            await uow.commit()

        logger.info(f"Order created: {order.id} for user {user_id}, total {order.total} {order.currency}")
        return order

    async def apply_status(self, uow, order: Order, new_status: OrderStatus) -> bool:
        """Writes the transition inside the caller's unit of work, no commit"""
        previous = order.status
        changed = apply_transition(order, new_status, self._clock(), self._refund_window_days)
        if changed:
            await uow.orders.update_status(order)
            logger.info(f"Order {order.id}: {previous.value} -> {new_status.value}")
        else:
            logger.info(f"Order {order.id} already {new_status.value}")
        return changed

    async def update_order_status(self, order_id: str, new_status: OrderStatus) -> Order:
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)
            if not order:
                raise OrderNotFoundError(f"Order {order_id} not found")
            if await self.apply_status(uow, order, new_status):
                await uow.commit()
            return order

    async def get_order(self, order_id: str, user_id: Optional[str] = None) -> Order:
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id)
        if not order or (user_id is not None and order.user_id != user_id):
            raise OrderNotFoundError(f"Order {order_id} not found")
        return order

    async def list_orders(
        self,
        page: int = 1,
        limit: int = 10,
        status: Optional[OrderStatus] = None,
        user_id: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> OrderPage:
        if page < 1 or limit < 1:
            raise ValidationError("Page and limit must be positive", field="page")
        async with self._uow() as uow:
            items, total = await uow.orders.list(
                page=page, limit=limit, status=status, user_id=user_id,
                sort_by=sort_by, sort_order=sort_order,
            )
        total_pages = math.ceil(total / limit) if total else 0
        return OrderPage(
            items=items,
            total_items=total,
            current_page=page,
            total_pages=total_pages,
            has_next_page=page < total_pages,
            has_previous_page=page > 1,
            has_more=page < total_pages,
        )

    async def get_user_orders(
        self, user_id: str, page: int = 1, limit: int = 10, status: Optional[OrderStatus] = None
    ) -> OrderPage:
        return await self.list_orders(page=page, limit=limit, status=status, user_id=user_id)


class BulkUpdateResult(BaseModel):
    total: int
    succeeded: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    errors: Dict[str, str] = Field(default_factory=dict)


class BulkUpdateOrderStatusUseCase:
    """Applies one status to many orders, each in its own transaction"""

    def __init__(self, lifecycle: OrderLifecycleManager):
        self._lifecycle = lifecycle

    async def __call__(self, order_ids: Sequence[str], new_status: OrderStatus) -> BulkUpdateResult:
        unique_ids = list(dict.fromkeys(order_ids))
        result = BulkUpdateResult(total=len(unique_ids))

        for order_id in unique_ids:
            try:
                await self._lifecycle.update_order_status(order_id, new_status)
                result.succeeded.append(order_id)
            except Exception as e:
                logger.error(f"Bulk status update failed for order {order_id}: {e}")
                result.failed.append(order_id)
                result.errors[order_id] = str(e)

        logger.info(
            f"Bulk update to {new_status.value}: {len(result.succeeded)} succeeded, "
            f"{len(result.failed)} failed"
        )
        return result
