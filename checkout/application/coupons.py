import logging
from datetime import datetime, timezone
from typing import Callable, Optional, Sequence
from pydantic import BaseModel

from checkout.domain.models import Coupon, CouponRedemption, CouponType, round_money
from checkout.domain.exceptions import CouponRejection, CouponNotFoundError, ValidationError

logger = logging.getLogger(__name__)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class CouponValidation(BaseModel):
    is_valid: bool
    discount_amount: float = 0.0
    coupon: Optional[Coupon] = None
    error: Optional[str] = None


def normalize_code(code: str) -> str:
    if not code or not code.strip():
        raise ValidationError("Coupon code is required", field="code")
    return code.strip().upper()


def compute_discount(coupon: Coupon, cart_total: float, delivery_fee: float = 0.0) -> float:
    if coupon.type == CouponType.PERCENTAGE:
        discount = cart_total * coupon.value / 100
        if coupon.max_discount is not None:
            discount = min(discount, coupon.max_discount)
        discount = min(discount, cart_total)
    elif coupon.type == CouponType.FIXED:
        discount = min(coupon.value, cart_total)
    elif coupon.type == CouponType.SHIPPING:
        discount = delivery_fee
    else:
        raise ValueError(f"Unhandled coupon type {coupon.type}")
    return round_money(max(discount, 0.0))


def matches_restrictions(coupon: Coupon, lines: Sequence) -> bool:
    if not coupon.applicable_products and not coupon.applicable_categories:
        return True
    products = set(coupon.applicable_products)
    categories = set(coupon.applicable_categories)
    return any(
        line.product_id in products or (getattr(line, "category", None) in categories)
        for line in lines
    )


class CouponEngine:
    def __init__(self, unit_of_work, clock: Callable[[], datetime] = utcnow):
        self._uow = unit_of_work
        self._clock = clock

    async def validate(
        self,
        code: str,
        cart_total: float,
        user_id: Optional[str],
        lines: Sequence = (),
        delivery_fee: float = 0.0,
    ) -> CouponValidation:
        """Checks the rules in a fixed order and stops at the first failure"""
        code = normalize_code(code)

        async with self._uow() as uow:
            coupon = await uow.coupons.get_by_code(code)
            if coupon is None:
                return self._reject(code, "Invalid coupon code")
            if not coupon.is_active:
                return self._reject(code, "This coupon is no longer active", coupon)

            now = self._clock()
            if now < coupon.start_date:
                return self._reject(code, "This coupon is not valid yet", coupon)
            if now > coupon.end_date:
                return self._reject(code, "This coupon has expired", coupon)

            if coupon.min_order_amount is not None and cart_total < coupon.min_order_amount:
                return self._reject(
                    code, f"Minimum order amount of {coupon.min_order_amount:.2f} required", coupon
                )

            if coupon.is_exhausted():
                return self._reject(code, "This coupon has reached its usage limit", coupon)

            if user_id and coupon.user_limit is not None:
                used = await uow.coupons.count_user_redemptions(coupon.id, user_id)
                if used >= coupon.user_limit:
                    return self._reject(code, "You have already used this coupon", coupon)

            if not matches_restrictions(coupon, lines):
                return self._reject(code, "This coupon does not apply to the items in your cart", coupon)

            if coupon.is_first_time_only and user_id:
                if await uow.orders.count_placed_by_user(user_id) > 0:
                    return self._reject(code, "This coupon is only valid on your first order", coupon)

        discount = compute_discount(coupon, cart_total, delivery_fee)
        logger.info(f"Coupon {code} valid for user {user_id}: discount {discount}")
        return CouponValidation(is_valid=True, discount_amount=discount, coupon=coupon)

    async def require_valid(
        self,
        code: str,
        cart_total: float,
        user_id: Optional[str],
        lines: Sequence = (),
        delivery_fee: float = 0.0,
    ) -> CouponValidation:
        result = await self.validate(code, cart_total, user_id, lines, delivery_fee)
        if not result.is_valid:
            raise CouponRejection(normalize_code(code), result.error)
        return result

    async def redeem(self, code: str, user_id: str, order_id: str, discount_amount: float) -> bool:
        """Counts one use of the coupon for `order_id`.

        Returns False when this order already redeemed the coupon, so repeated
        verifications of the same payment never count twice. The coupon row
        stays locked from the first read to the commit, so the per-user count
        and the usage counter are checked against committed redemptions only.
        """
        code = normalize_code(code)
        async with self._uow() as uow:
            coupon = await uow.coupons.lock_by_code(code)
            if coupon is None:
                raise CouponNotFoundError(f"Coupon {code} not found")

            if await uow.coupons.get_redemption(coupon.id, order_id):
                logger.info(f"Coupon {code} already redeemed for order {order_id}")
                return False

            if coupon.user_limit is not None:
                used = await uow.coupons.count_user_redemptions(coupon.id, user_id)
                if used >= coupon.user_limit:
                    await uow.rollback()
                    raise CouponRejection(code, "You have already used this coupon")

            if not await uow.coupons.increment_usage(coupon.id):
                await uow.rollback()
                raise CouponRejection(code, "This coupon has reached its usage limit")

            added = await uow.coupons.add_redemption(CouponRedemption(
                coupon_id=coupon.id,
                user_id=user_id,
                order_id=order_id,
                discount_amount=discount_amount,
                created_at=self._clock(),
            ))
            if not added:
                await uow.rollback()
                logger.info(f"Coupon {code} redeemed concurrently for order {order_id}")
                return False

            await uow.commit()

        logger.info(f"Coupon {code} redeemed for order {order_id} by user {user_id}")
        return True

    def _reject(self, code: str, reason: str, coupon: Optional[Coupon] = None) -> CouponValidation:
        logger.warning(f"Coupon {code} rejected: {reason}")
        return CouponValidation(is_valid=False, error=reason, coupon=coupon)
