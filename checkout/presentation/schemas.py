from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from datetime import datetime
from typing import Optional, List, Dict

from checkout.domain.models import (
    Address, OrderSource, OrderStatus, PaymentMethod, CouponType, StoredCartLine,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class AddressSchema(CamelModel):
    street: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    postal_code: str = ""
    zip_code: Optional[str] = None

    def to_domain(self) -> Address:
        return Address(**self.model_dump())

    @classmethod
    def from_domain(cls, address):
        return cls(**address.model_dump())


class OrderItemSchema(CamelModel):
    product_id: str
    name: str = ""
    price: float
    quantity: int
    image: str = ""


class OrderResponse(CamelModel):
    id: str
    user_id: str
    items: List[OrderItemSchema]
    shipping_address: AddressSchema
    subtotal: float
    tax: float
    delivery_fee: float
    discount: float
    total: float
    currency: str
    status: OrderStatus
    payment_method: PaymentMethod
    source: OrderSource = OrderSource.CART
    coupon_code: Optional[str] = None
    payment_reference: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    delivered_at: Optional[datetime] = None

    @classmethod
    def from_domain(cls, order):
        return cls(
            id=order.id,
            user_id=order.user_id,
            items=[OrderItemSchema(**item.model_dump()) for item in order.items],
            shipping_address=AddressSchema.from_domain(order.shipping_address),
            subtotal=order.subtotal,
            tax=order.tax,
            delivery_fee=order.delivery_fee,
            discount=order.discount,
            total=order.total,
            currency=order.currency,
            status=order.status,
            payment_method=order.payment_method,
            source=order.source,
            coupon_code=order.coupon_code,
            payment_reference=order.payment_reference,
            created_at=order.created_at,
            updated_at=order.updated_at,
            delivered_at=order.delivered_at
        )


class OrderPageResponse(CamelModel):
    orders: List[OrderResponse]
    total_items: int
    current_page: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool
    has_more: bool

    @classmethod
    def from_domain(cls, page):
        return cls(
            orders=[OrderResponse.from_domain(o) for o in page.items],
            total_items=page.total_items,
            current_page=page.current_page,
            total_pages=page.total_pages,
            has_next_page=page.has_next_page,
            has_previous_page=page.has_previous_page,
            has_more=page.has_more
        )


class OrderLineRequest(CamelModel):
    product_id: str
    quantity: int = 1
    size: Optional[str] = None

    def to_domain(self) -> StoredCartLine:
        return StoredCartLine(product_id=self.product_id, quantity=self.quantity, size=self.size)


class CreateOrderRequest(CamelModel):
    """Prices come from the catalog, `total` is only compared with the server's figure"""
    items: List[OrderLineRequest]
    shipping_address: AddressSchema
    payment_method: PaymentMethod = PaymentMethod.CARD
    coupon_code: Optional[str] = None
    total: Optional[float] = None


class UpdateStatusRequest(CamelModel):
    status: OrderStatus


class BulkStatusRequest(CamelModel):
    order_ids: List[str] = Field(min_length=1)
    status: OrderStatus


class BulkStatusResponse(CamelModel):
    total: int
    succeeded: List[str]
    failed: List[str]
    errors: Dict[str, str]


class TotalsSchema(CamelModel):
    subtotal: float
    tax: float
    delivery_fee: float
    discount: float
    total: float
    shipping_waived: bool = False


class CheckoutRequest(CamelModel):
    email: str = ""
    shipping_address: AddressSchema
    payment_method: PaymentMethod = PaymentMethod.CARD


class CheckoutResponse(CamelModel):
    order: OrderResponse
    totals: TotalsSchema
    authorization_url: Optional[str] = None
    reference: Optional[str] = None
    cart_cleared: bool = False

    @classmethod
    def from_domain(cls, result):
        return cls(
            order=OrderResponse.from_domain(result.order),
            totals=TotalsSchema(**result.totals.model_dump()),
            authorization_url=result.payment.authorization_url if result.payment else None,
            reference=result.payment.reference if result.payment else None,
            cart_cleared=result.cart_cleared
        )


class InitializePaymentRequest(CamelModel):
    order_id: str
    email: str
    amount: Optional[float] = None


class PaymentInitResponse(CamelModel):
    status: str
    reference: str
    order_id: str
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None

    @classmethod
    def from_domain(cls, payment):
        return cls(
            status=payment.status.value,
            reference=payment.reference,
            order_id=payment.order_id,
            authorization_url=payment.authorization_url,
            access_code=payment.access_code
        )


class VerifyPaymentResponse(CamelModel):
    status: str
    order: OrderResponse
    reference: Optional[str] = None
    already_processed: bool = False

    @classmethod
    def from_domain(cls, outcome):
        return cls(
            status="success",
            order=OrderResponse.from_domain(outcome.order),
            reference=outcome.order.payment_reference,
            already_processed=outcome.already_processed
        )


class PaymentSessionResponse(CamelModel):
    reference: Optional[str] = None
    order_id: Optional[str] = None


class BuyNowRequest(CamelModel):
    product_id: str
    quantity: int = 1
    size: Optional[str] = None


class BuyNowResponse(CamelModel):
    product_id: str
    quantity: int
    size: Optional[str] = None

    @classmethod
    def from_domain(cls, line: StoredCartLine):
        return cls(product_id=line.product_id, quantity=line.quantity, size=line.size)


class CouponLineSchema(CamelModel):
    product_id: str
    category: Optional[str] = None


class ValidateCouponRequest(CamelModel):
    code: str
    cart_total: float = Field(ge=0)
    delivery_fee: float = Field(default=0.0, ge=0)
    items: List[CouponLineSchema] = Field(default_factory=list)


class ValidateCouponResponse(CamelModel):
    is_valid: bool
    discount_amount: float = 0.0
    error: Optional[str] = None
    coupon: Optional["CouponResponse"] = None

    @classmethod
    def from_domain(cls, result):
        return cls(
            is_valid=result.is_valid,
            discount_amount=result.discount_amount,
            error=result.error,
            coupon=CouponResponse.from_domain(result.coupon) if result.is_valid else None
        )


class ApplyCouponRequest(CamelModel):
    code: str


class CartCouponResponse(CamelModel):
    coupon_code: str
    discount_amount: float
    percentage: Optional[float] = None
    description: str


class CouponRequest(CamelModel):
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


class CouponUpdateRequest(CamelModel):
    code: Optional[str] = None
    type: Optional[CouponType] = None
    value: Optional[float] = None
    description: Optional[str] = None
    is_active: Optional[bool] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = None
    min_order_amount: Optional[float] = None
    max_discount: Optional[float] = None
    applicable_products: Optional[List[str]] = None
    applicable_categories: Optional[List[str]] = None
    user_limit: Optional[int] = None
    is_first_time_only: Optional[bool] = None


class CouponResponse(CamelModel):
    id: str
    code: str
    type: CouponType
    value: float
    description: str
    is_active: bool
    start_date: datetime
    end_date: datetime
    usage_limit: Optional[int] = None
    usage_count: int
    min_order_amount: Optional[float] = None
    max_discount: Optional[float] = None
    applicable_products: List[str]
    applicable_categories: List[str]
    user_limit: Optional[int] = None
    is_first_time_only: bool
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_domain(cls, coupon):
        return cls(**coupon.model_dump())


ValidateCouponResponse.model_rebuild()


class TopCouponSchema(CamelModel):
    code: str
    usage_count: int
    total_discount: float


class CouponStatsResponse(CamelModel):
    total_coupons: int
    active_coupons: int
    total_usage: int
    total_discount: float
    top_coupons: List[TopCouponSchema]

    @classmethod
    def from_domain(cls, stats):
        return cls(**stats.model_dump())


class DeliveryZoneSchema(CamelModel):
    id: str
    name: str
    description: str = ""
    price: float
    estimated_days: int = 0
    allows_cash_on_delivery: bool = True


class DeliveryOptionsResponse(CamelModel):
    zones: List[DeliveryZoneSchema]
    default_zone: Optional[str] = None

    @classmethod
    def from_domain(cls, options):
        return cls(
            zones=[DeliveryZoneSchema(**z.model_dump()) for z in options.zones],
            default_zone=options.default_zone
        )


class AddressValidationResponse(CamelModel):
    is_valid: bool
    zone_id: Optional[str] = None
    zone: Optional[DeliveryZoneSchema] = None
    message: Optional[str] = None
    address: Optional[AddressSchema] = None

    @classmethod
    def from_domain(cls, result):
        return cls(
            is_valid=result.is_valid,
            zone_id=result.zone_id,
            zone=DeliveryZoneSchema(**result.zone.model_dump()) if result.zone else None,
            message=result.message,
            address=AddressSchema.from_domain(result.address) if result.address else None
        )


class ErrorResponse(CamelModel):
    detail: str
