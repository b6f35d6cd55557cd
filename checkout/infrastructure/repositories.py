from typing import Optional, List, Tuple, Dict
from datetime import datetime, timezone
from sqlalchemy import select, insert, update, delete, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from checkout.domain.models import (
    Order, OrderItem, OrderStatus, OrderSource, Address, PaymentMethod, Coupon, CouponType, CouponRedemption,
    Cart, StoredCartLine, CheckoutSession,
)
from checkout.infrastructure.db_schema import (
    orders_tbl, coupons_tbl, coupon_redemptions_tbl, carts_tbl, checkout_sessions_tbl,
)
from checkout.application.interfaces import (
    OrderRepository, CouponRepository, CartRepository, CheckoutSessionRepository,
)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes, everything here is UTC"""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


_ORDER_SORT_COLUMNS = {
    "created_at": orders_tbl.c.created_at,
    "total": orders_tbl.c.total,
    "status": orders_tbl.c.status,
}


class SQLAlchemyOrderRepository(OrderRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, order_id: str) -> Optional[Order]:
        result = await self._session.execute(
            select(orders_tbl).where(orders_tbl.c.id == order_id)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def get_by_payment_reference(self, reference: str) -> Optional[Order]:
        result = await self._session.execute(
            select(orders_tbl).where(orders_tbl.c.payment_reference == reference)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def create(self, order: Order) -> None:
        stmt = insert(orders_tbl).values(
            id=order.id,
            user_id=order.user_id,
            items=[item.model_dump() for item in order.items],
            shipping_address=order.shipping_address.model_dump(),
            status=order.status,
            subtotal=order.subtotal,
            tax=order.tax,
            delivery_fee=order.delivery_fee,
            discount=order.discount,
            total=order.total,
            currency=order.currency,
            payment_method=order.payment_method,
            source=order.source,
            coupon_code=order.coupon_code,
            payment_reference=order.payment_reference,
            created_at=order.created_at,
            updated_at=order.updated_at,
            delivered_at=order.delivered_at
        )
        await self._session.execute(stmt)

    async def update_status(self, order: Order) -> None:
        stmt = (
            update(orders_tbl)
            .where(orders_tbl.c.id == order.id)
            .values(
                status=order.status,
                updated_at=order.updated_at,
                delivered_at=order.delivered_at
            )
        )
        await self._session.execute(stmt)

    async def update_payment_reference(self, order_id: str, reference: str) -> None:
        stmt = (
            update(orders_tbl)
            .where(orders_tbl.c.id == order_id)
            .values(
                payment_reference=reference,
                updated_at=datetime.now(timezone.utc)
            )
        )
        await self._session.execute(stmt)

    async def list(
        self,
        page: int = 1,
        limit: int = 10,
        status: Optional[OrderStatus] = None,
        user_id: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[Order], int]:
        conditions = []
        if status is not None:
            conditions.append(orders_tbl.c.status == status)
        if user_id is not None:
            conditions.append(orders_tbl.c.user_id == user_id)

        total = await self._session.scalar(
            select(func.count()).select_from(orders_tbl).where(*conditions)
        )

        column = _ORDER_SORT_COLUMNS.get(sort_by, orders_tbl.c.created_at)
        ordering = column.asc() if sort_order == "asc" else column.desc()
        result = await self._session.execute(
            select(orders_tbl)
            .where(*conditions)
            .order_by(ordering, orders_tbl.c.id)
            .offset((page - 1) * limit)
            .limit(limit)
        )
        return [self._to_domain(row) for row in result.fetchall()], total or 0

    async def count_placed_by_user(self, user_id: str) -> int:
        total = await self._session.scalar(
            select(func.count())
            .select_from(orders_tbl)
            .where(
                orders_tbl.c.user_id == user_id,
                orders_tbl.c.status.notin_([OrderStatus.FAILED, OrderStatus.CANCELLED])
            )
        )
        return total or 0

    def _to_domain(self, row) -> Order:
        """DB -> Domain"""
        return Order(
            id=row.id,
            user_id=row.user_id,
            items=[OrderItem(**item) for item in row._mapping["items"]],
            shipping_address=Address(**row.shipping_address),
            status=OrderStatus(row.status),
            subtotal=row.subtotal,
            tax=row.tax,
            delivery_fee=row.delivery_fee,
            discount=row.discount,
            total=row.total,
            currency=row.currency,
            payment_method=PaymentMethod(row.payment_method),
            source=OrderSource(row.source),
            coupon_code=row.coupon_code,
            payment_reference=row.payment_reference,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at),
            delivered_at=_aware(row.delivered_at)
        )


class SQLAlchemyCouponRepository(CouponRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, coupon_id: str) -> Optional[Coupon]:
        result = await self._session.execute(
            select(coupons_tbl).where(coupons_tbl.c.id == coupon_id)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def get_by_code(self, code: str) -> Optional[Coupon]:
        result = await self._session.execute(
            select(coupons_tbl).where(coupons_tbl.c.code == code.strip().upper())
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def lock_by_code(self, code: str) -> Optional[Coupon]:
        result = await self._session.execute(
            select(coupons_tbl)
            .where(coupons_tbl.c.code == code.strip().upper())
            .with_for_update()
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def list_all(self) -> List[Coupon]:
        result = await self._session.execute(
            select(coupons_tbl).order_by(coupons_tbl.c.created_at.desc())
        )
        return [self._to_domain(row) for row in result.fetchall()]

    async def create(self, coupon: Coupon) -> None:
        await self._session.execute(insert(coupons_tbl).values(**self._to_row(coupon)))

    async def update(self, coupon: Coupon) -> None:
        values = self._to_row(coupon)
        values.pop("id")
        values.pop("usage_count")
        stmt = update(coupons_tbl).where(coupons_tbl.c.id == coupon.id).values(**values)
        await self._session.execute(stmt)

    async def delete(self, coupon_id: str) -> bool:
        await self._session.execute(
            delete(coupon_redemptions_tbl).where(coupon_redemptions_tbl.c.coupon_id == coupon_id)
        )
        result = await self._session.execute(
            delete(coupons_tbl).where(coupons_tbl.c.id == coupon_id)
        )
        return result.rowcount > 0

    async def increment_usage(self, coupon_id: str) -> bool:
        stmt = (
            update(coupons_tbl)
            .where(
                coupons_tbl.c.id == coupon_id,
                or_(
                    coupons_tbl.c.usage_limit.is_(None),
                    coupons_tbl.c.usage_count < coupons_tbl.c.usage_limit
                )
            )
            .values(
                usage_count=coupons_tbl.c.usage_count + 1,
                updated_at=datetime.now(timezone.utc)
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def get_redemption(self, coupon_id: str, order_id: str) -> Optional[CouponRedemption]:
        result = await self._session.execute(
            select(coupon_redemptions_tbl).where(
                coupon_redemptions_tbl.c.coupon_id == coupon_id,
                coupon_redemptions_tbl.c.order_id == order_id
            )
        )
        row = result.fetchone()
        if not row:
            return None
        return CouponRedemption(
            coupon_id=row.coupon_id,
            user_id=row.user_id,
            order_id=row.order_id,
            discount_amount=row.discount_amount,
            created_at=_aware(row.created_at)
        )

    async def add_redemption(self, redemption: CouponRedemption) -> bool:
        stmt = insert(coupon_redemptions_tbl).values(
            coupon_id=redemption.coupon_id,
            user_id=redemption.user_id,
            order_id=redemption.order_id,
            discount_amount=redemption.discount_amount,
            created_at=redemption.created_at
        )
        try:
            await self._session.execute(stmt)
        except IntegrityError:
            return False
        return True

    async def count_user_redemptions(self, coupon_id: str, user_id: str) -> int:
        total = await self._session.scalar(
            select(func.count())
            .select_from(coupon_redemptions_tbl)
            .where(
                coupon_redemptions_tbl.c.coupon_id == coupon_id,
                coupon_redemptions_tbl.c.user_id == user_id
            )
        )
        return total or 0

    async def redemption_totals(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> Dict[str, Tuple[int, float]]:
        conditions = []
        if start is not None:
            conditions.append(coupon_redemptions_tbl.c.created_at >= start)
        if end is not None:
            conditions.append(coupon_redemptions_tbl.c.created_at <= end)
        result = await self._session.execute(
            select(
                coupon_redemptions_tbl.c.coupon_id,
                func.count(),
                func.coalesce(func.sum(coupon_redemptions_tbl.c.discount_amount), 0.0)
            )
            .where(*conditions)
            .group_by(coupon_redemptions_tbl.c.coupon_id)
        )
        return {row[0]: (row[1], float(row[2])) for row in result.fetchall()}

    def _to_row(self, coupon: Coupon) -> dict:
        return {
            "id": coupon.id,
            "code": coupon.code,
            "type": coupon.type,
            "value": coupon.value,
            "description": coupon.description,
            "is_active": coupon.is_active,
            "start_date": coupon.start_date,
            "end_date": coupon.end_date,
            "usage_limit": coupon.usage_limit,
            "usage_count": coupon.usage_count,
            "min_order_amount": coupon.min_order_amount,
            "max_discount": coupon.max_discount,
            "applicable_products": list(coupon.applicable_products),
            "applicable_categories": list(coupon.applicable_categories),
            "user_limit": coupon.user_limit,
            "is_first_time_only": coupon.is_first_time_only,
            "created_at": coupon.created_at,
            "updated_at": coupon.updated_at,
        }

    def _to_domain(self, row) -> Coupon:
        """DB -> Domain"""
        return Coupon(
            id=row.id,
            code=row.code,
            type=CouponType(row.type),
            value=row.value,
            description=row.description or "",
            is_active=row.is_active,
            start_date=_aware(row.start_date),
            end_date=_aware(row.end_date),
            usage_limit=row.usage_limit,
            usage_count=row.usage_count,
            min_order_amount=row.min_order_amount,
            max_discount=row.max_discount,
            applicable_products=row.applicable_products or [],
            applicable_categories=row.applicable_categories or [],
            user_limit=row.user_limit,
            is_first_time_only=row.is_first_time_only,
            created_at=_aware(row.created_at),
            updated_at=_aware(row.updated_at)
        )


class SQLAlchemyCartRepository(CartRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, user_id: str) -> Cart:
        result = await self._session.execute(
            select(carts_tbl).where(carts_tbl.c.user_id == user_id)
        )
        row = result.fetchone()
        if not row:
            return Cart(user_id=user_id)
        return Cart(
            user_id=row.user_id,
            lines=[StoredCartLine(**line) for line in row.lines or []],
            coupon_code=row.coupon_code
        )

    async def save(self, cart: Cart) -> None:
        values = {
            "lines": [line.model_dump() for line in cart.lines],
            "coupon_code": cart.coupon_code,
            "updated_at": datetime.now(timezone.utc),
        }
        result = await self._session.execute(
            update(carts_tbl).where(carts_tbl.c.user_id == cart.user_id).values(**values)
        )
        if result.rowcount == 0:
            await self._session.execute(insert(carts_tbl).values(user_id=cart.user_id, **values))

    async def clear(self, user_id: str) -> None:
        await self.save(Cart(user_id=user_id))


class SQLAlchemyCheckoutSessionRepository(CheckoutSessionRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get(self, user_id: str) -> CheckoutSession:
        result = await self._session.execute(
            select(checkout_sessions_tbl).where(checkout_sessions_tbl.c.user_id == user_id)
        )
        row = result.fetchone()
        if not row:
            return CheckoutSession(user_id=user_id)
        return CheckoutSession(
            user_id=row.user_id,
            payment_reference=row.payment_reference,
            order_id=row.order_id,
            buy_now=StoredCartLine(**row.buy_now) if row.buy_now else None
        )

    async def save(self, session: CheckoutSession) -> None:
        values = {
            "payment_reference": session.payment_reference,
            "order_id": session.order_id,
            "buy_now": session.buy_now.model_dump() if session.buy_now else None,
            "updated_at": datetime.now(timezone.utc),
        }
        result = await self._session.execute(
            update(checkout_sessions_tbl)
            .where(checkout_sessions_tbl.c.user_id == session.user_id)
            .values(**values)
        )
        if result.rowcount == 0:
            await self._session.execute(
                insert(checkout_sessions_tbl).values(user_id=session.user_id, **values)
            )
