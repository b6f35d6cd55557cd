import asyncio
import logging
import math
from typing import List, Optional, Sequence

from checkout.domain.models import (
    CartLine, CartTotals, CouponType, DeliveryZone, StoredCartLine, round_money,
)
from checkout.domain.exceptions import ValidationError
from checkout.application.interfaces import CatalogService
from checkout.application.coupons import CouponValidation

logger = logging.getLogger(__name__)

DEFAULT_TAX_RATE = 0.08


def _check_amount(value: float, name: str) -> float:
    if value is None or not isinstance(value, (int, float)) or not math.isfinite(value) or value < 0:
        raise ValidationError(f"Invalid {name}: {value!r}", field=name)
    return value


class CartAggregator:
    """Turns cart lines, a delivery zone and a coupon into order totals.

    total = subtotal + tax + delivery_fee - discount, never below zero. The
    discount is capped at the gross amount so the identity holds exactly
    after rounding.
    """

    def __init__(self, tax_rate: float = DEFAULT_TAX_RATE):
        self._tax_rate = tax_rate

    def subtotal(self, lines: Sequence[CartLine]) -> float:
        if not lines:
            raise ValidationError("Cart is empty", field="items")
        total = 0.0
        for line in lines:
            _check_amount(line.price, "price")
            if not isinstance(line.quantity, int) or line.quantity <= 0:
                raise ValidationError(f"Invalid quantity for {line.product_id}", field="quantity")
            total += line.price * line.quantity
        return round_money(_check_amount(total, "subtotal"))

    def compute(
        self,
        lines: Sequence[CartLine],
        zone: Optional[DeliveryZone] = None,
        coupon: Optional[CouponValidation] = None,
    ) -> CartTotals:
        subtotal = self.subtotal(lines)
        tax = round_money(_check_amount(subtotal * self._tax_rate, "tax"))
        delivery_fee = round_money(_check_amount(zone.price if zone else 0.0, "delivery_fee"))

        discount = 0.0
        shipping_waived = False
        if coupon is not None and coupon.is_valid:
            if coupon.coupon is not None and coupon.coupon.type == CouponType.SHIPPING:
                discount = delivery_fee
                shipping_waived = True
            else:
                discount = round_money(_check_amount(coupon.discount_amount, "discount"))

        gross = round_money(subtotal + tax + delivery_fee)
        discount = min(discount, gross)
        total = round_money(max(gross - discount, 0.0))
        _check_amount(total, "total")

        return CartTotals(
            subtotal=subtotal,
            tax=tax,
            delivery_fee=delivery_fee,
            discount=discount,
            total=total,
            shipping_waived=shipping_waived,
        )


async def hydrate_lines(stored: Sequence[StoredCartLine], catalog: CatalogService) -> List[CartLine]:
    """Attaches live catalog name/price/image/category to stored cart lines"""
    if not stored:
        raise ValidationError("Cart is empty", field="items")

    items = await asyncio.gather(*(catalog.get_item(line.product_id) for line in stored))
    lines = []
    for line, item in zip(stored, items):
        if item is None:
            raise ValidationError(f"Product {line.product_id} is no longer available", field="items")
        lines.append(CartLine(
            product_id=line.product_id,
            quantity=line.quantity,
            price=item.price,
            name=item.name,
            image=item.image,
            category=item.category,
            size=line.size,
        ))
    logger.info(f"Hydrated {len(lines)} cart lines from catalog")
    return lines
