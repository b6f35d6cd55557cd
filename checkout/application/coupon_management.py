import logging
import uuid
from datetime import datetime
from typing import Optional, List
from pydantic import BaseModel, Field

from checkout.domain.models import Coupon, CouponType
from checkout.domain.exceptions import ValidationError, CouponNotFoundError
from checkout.application.interfaces import CatalogService
from checkout.application.cart import CartAggregator, hydrate_lines
from checkout.application.coupons import CouponEngine, normalize_code, utcnow

logger = logging.getLogger(__name__)


class CouponDTO(BaseModel):
    code: str
    type: CouponType
    value: float
    description: str = ""
    is_active: bool = True
    start_date: datetime
    end_date: datetime
    usage_limit: Optional[int] = None
    min_order_amount: Optional[float] = None
    max_discount: Optional[float] = None
    applicable_products: List[str] = Field(default_factory=list)
    applicable_categories: List[str] = Field(default_factory=list)
    user_limit: Optional[int] = None
    is_first_time_only: bool = False


def _check_coupon(coupon: Coupon) -> None:
    if coupon.type != CouponType.SHIPPING and coupon.value <= 0:
        raise ValidationError("Coupon value must be positive", field="value")
    if coupon.type == CouponType.PERCENTAGE and coupon.value > 100:
        raise ValidationError("Percentage coupons cannot exceed 100", field="value")
    if coupon.start_date > coupon.end_date:
        raise ValidationError("Start date must be before end date", field="start_date")
    if coupon.usage_limit is not None and coupon.usage_limit < 1:
        raise ValidationError("Usage limit must be at least 1", field="usage_limit")
    if coupon.usage_limit is not None and coupon.usage_count > coupon.usage_limit:
        raise ValidationError("Usage limit is below the current usage count", field="usage_limit")
    if coupon.user_limit is not None and coupon.user_limit < 1:
        raise ValidationError("User limit must be at least 1", field="user_limit")
    for name in ("min_order_amount", "max_discount"):
        value = getattr(coupon, name)
        if value is not None and value < 0:
            raise ValidationError(f"{name} cannot be negative", field=name)


class ListCouponsUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self) -> List[Coupon]:
        async with self._uow() as uow:
            return await uow.coupons.list_all()


class GetCouponUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, coupon_id: str) -> Coupon:
        async with self._uow() as uow:
            coupon = await uow.coupons.get_by_id(coupon_id)
            if not coupon:
                raise CouponNotFoundError(f"Coupon {coupon_id} not found")
            return coupon


class CreateCouponUseCase:
    def __init__(self, unit_of_work, clock=utcnow):
        self._uow = unit_of_work
        self._clock = clock

    async def __call__(self, data: CouponDTO) -> Coupon:
        now = self._clock()
        coupon = Coupon(
            id=str(uuid.uuid4()),
            usage_count=0,
            created_at=now,
            updated_at=now,
            **{**data.model_dump(), "code": normalize_code(data.code)}
        )
        _check_coupon(coupon)

        async with self._uow() as uow:
            if await uow.coupons.get_by_code(coupon.code):
                raise ValidationError(f"Coupon code {coupon.code} already exists", field="code")
            await uow.coupons.create(coupon)
            await uow.commit()

        logger.info(f"Coupon created: {coupon.code} ({coupon.type.value} {coupon.value})")
        return coupon


class UpdateCouponUseCase:
    def __init__(self, unit_of_work, clock=utcnow):
        self._uow = unit_of_work
        self._clock = clock

    async def __call__(self, coupon_id: str, updates: dict) -> Coupon:
        protected = {"id", "usage_count", "created_at", "updated_at"}
        changes = {k: v for k, v in updates.items() if k not in protected}
        if "code" in changes:
            changes["code"] = normalize_code(changes["code"])

        async with self._uow() as uow:
            coupon = await uow.coupons.get_by_id(coupon_id)
            if not coupon:
                raise CouponNotFoundError(f"Coupon {coupon_id} not found")

            if "code" in changes and changes["code"] != coupon.code:
                if await uow.coupons.get_by_code(changes["code"]):
                    raise ValidationError(f"Coupon code {changes['code']} already exists", field="code")

            updated = Coupon(**{**coupon.model_dump(), **changes, "updated_at": self._clock()})
            _check_coupon(updated)
            await uow.coupons.update(updated)
            await uow.commit()

        logger.info(f"Coupon updated: {updated.code}")
        return updated


class DeleteCouponUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, coupon_id: str) -> bool:
        async with self._uow() as uow:
            deleted = await uow.coupons.delete(coupon_id)
            if not deleted:
                raise CouponNotFoundError(f"Coupon {coupon_id} not found")
            await uow.commit()
        logger.info(f"Coupon deleted: {coupon_id}")
        return True


class TopCoupon(BaseModel):
    code: str
    usage_count: int
    total_discount: float


class CouponStats(BaseModel):
    total_coupons: int
    active_coupons: int
    total_usage: int
    total_discount: float
    top_coupons: List[TopCoupon]


class GetCouponStatsUseCase:
    def __init__(self, unit_of_work, clock=utcnow, top: int = 5):
        self._uow = unit_of_work
        self._clock = clock
        self._top = top

    async def __call__(self, start: Optional[datetime] = None, end: Optional[datetime] = None) -> CouponStats:
        now = self._clock()
        async with self._uow() as uow:
            coupons = await uow.coupons.list_all()
            totals = await uow.coupons.redemption_totals(start, end)

        windowed = start is not None or end is not None
        rows = []
        for coupon in coupons:
            count, discount = totals.get(coupon.id, (0, 0.0))
            rows.append(TopCoupon(
                code=coupon.code,
                usage_count=count if windowed else coupon.usage_count,
                total_discount=round(discount, 2),
            ))
        rows.sort(key=lambda r: (r.usage_count, r.total_discount), reverse=True)

        return CouponStats(
            total_coupons=len(coupons),
            active_coupons=sum(1 for c in coupons if c.is_active and c.is_within_window(now)),
            total_usage=sum(r.usage_count for r in rows),
            total_discount=round(sum(r.total_discount for r in rows), 2),
            top_coupons=rows[:self._top],
        )


class CartCouponResult(BaseModel):
    coupon_code: str
    discount_amount: float
    percentage: Optional[float] = None
    description: str


class ApplyCartCouponUseCase:
    def __init__(self, unit_of_work, coupon_engine: CouponEngine, catalog_service: CatalogService,
                 aggregator: Optional[CartAggregator] = None):
        self._uow = unit_of_work
        self._coupons = coupon_engine
        self._catalog = catalog_service
        self._aggregator = aggregator or CartAggregator()

    async def __call__(self, user_id: str, code: str) -> CartCouponResult:
        code = normalize_code(code)
        async with self._uow() as uow:
            cart = await uow.carts.get(user_id)
        if not cart.lines:
            raise ValidationError("Cart is empty", field="items")

        lines = await hydrate_lines(cart.lines, self._catalog)
        subtotal = self._aggregator.subtotal(lines)
        result = await self._coupons.require_valid(code, subtotal, user_id, lines)

        async with self._uow() as uow:
            cart = await uow.carts.get(user_id)
            cart.coupon_code = code
            await uow.carts.save(cart)
            await uow.commit()

        coupon = result.coupon
        if coupon.type == CouponType.SHIPPING:
            description = "Free delivery on this order"
        elif coupon.type == CouponType.PERCENTAGE:
            description = coupon.description or f"{coupon.value:g}% off"
        else:
            description = coupon.description or f"{coupon.value:.2f} off"

        logger.info(f"Coupon {code} applied to cart of user {user_id}")
        return CartCouponResult(
            coupon_code=code,
            discount_amount=result.discount_amount,
            percentage=coupon.value if coupon.type == CouponType.PERCENTAGE else None,
            description=description,
        )


class RemoveCartCouponUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, user_id: str) -> None:
        async with self._uow() as uow:
            cart = await uow.carts.get(user_id)
            if cart.coupon_code is None:
                return
            cart.coupon_code = None
            await uow.carts.save(cart)
            await uow.commit()
        logger.info(f"Coupon removed from cart of user {user_id}")
