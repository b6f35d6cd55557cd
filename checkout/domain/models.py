from datetime import datetime
from enum import Enum
from typing import Optional, List
from pydantic import BaseModel, ConfigDict, Field


class OrderStatus(str, Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"
    FAILED = "failed"


class CouponType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"
    SHIPPING = "shipping"


class PaymentMethod(str, Enum):
    CARD = "card"
    CASH = "cash"


class OrderSource(str, Enum):
    """Where the order lines came from, decides what is cleared once it is placed"""
    CART = "cart"
    BUY_NOW = "buy_now"
    DIRECT = "direct"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


def round_money(value: float) -> float:
    return round(value, 2)


class Address(BaseModel):
    """Value Object: shipping address captured at checkout"""
    model_config = ConfigDict(frozen=True)

    street: str = ""
    city: str = ""
    state: str = ""
    country: str = ""
    postal_code: str = ""
    zip_code: Optional[str] = None

    def stripped(self) -> "Address":
        return Address(
            street=self.street.strip(),
            city=self.city.strip(),
            state=self.state.strip(),
            country=self.country.strip(),
            postal_code=self.postal_code.strip(),
            zip_code=self.zip_code.strip() if self.zip_code else self.zip_code,
        )


class OrderItem(BaseModel):
    """Value Object: price/name/image snapshot taken when the order is placed"""
    model_config = ConfigDict(frozen=True)

    product_id: str
    name: str
    price: float
    quantity: int
    image: str = ""


class Order(BaseModel):
    """Domain Entity: order"""
    id: str
    user_id: str
    items: List[OrderItem]
    shipping_address: Address
    status: OrderStatus
    subtotal: float
    tax: float
    delivery_fee: float
    discount: float
    total: float
    currency: str
    payment_method: PaymentMethod
    source: OrderSource = OrderSource.CART
    coupon_code: Optional[str] = None
    payment_reference: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    delivered_at: Optional[datetime] = None


class Coupon(BaseModel):
    """Domain Entity: discount code with eligibility rules and a usage counter"""
    id: str
    code: str
    type: CouponType
    value: float
    description: str = ""
    is_active: bool = True
    start_date: datetime
    end_date: datetime
    usage_limit: Optional[int] = None
    usage_count: int = 0
    min_order_amount: Optional[float] = None
    max_discount: Optional[float] = None
    applicable_products: List[str] = Field(default_factory=list)
    applicable_categories: List[str] = Field(default_factory=list)
    user_limit: Optional[int] = None
    is_first_time_only: bool = False
    created_at: datetime
    updated_at: datetime

    def is_within_window(self, now: datetime) -> bool:
        return self.start_date <= now <= self.end_date

    def is_exhausted(self) -> bool:
        return self.usage_limit is not None and self.usage_count >= self.usage_limit


class CouponRedemption(BaseModel):
    coupon_id: str
    user_id: str
    order_id: str
    discount_amount: float
    created_at: datetime


class DeliveryZone(BaseModel):
    """Value Object: flat-fee delivery bucket"""
    id: str
    name: str
    description: str = ""
    price: float
    estimated_days: int = 0
    allows_cash_on_delivery: bool = True
    country: Optional[str] = None
    region: Optional[str] = None


DEFAULT_DELIVERY_ZONE = DeliveryZone(
    id="default",
    name="Standard Delivery",
    description="3-5 business days",
    price=5.99,
    estimated_days=5,
    allows_cash_on_delivery=True,
)


class CartLine(BaseModel):
    """Cart line hydrated with live catalog data"""
    product_id: str
    quantity: int
    price: float
    name: str = ""
    image: str = ""
    category: Optional[str] = None
    size: Optional[str] = None


class StoredCartLine(BaseModel):
    product_id: str
    quantity: int
    size: Optional[str] = None


class Cart(BaseModel):
    user_id: str
    lines: List[StoredCartLine] = Field(default_factory=list)
    coupon_code: Optional[str] = None


class CheckoutSession(BaseModel):
    """Per-user state that has to survive the payment provider redirect"""
    user_id: str
    payment_reference: Optional[str] = None
    order_id: Optional[str] = None
    buy_now: Optional[StoredCartLine] = None


class CartTotals(BaseModel):
    subtotal: float
    tax: float
    delivery_fee: float
    discount: float
    total: float
    shipping_waived: bool = False


class Item(BaseModel):
    """Value Object: product from the catalog"""
    id: str
    name: str
    price: float
    image: str = ""
    category: Optional[str] = None


class PaymentInitialization(BaseModel):
    status: PaymentStatus
    reference: str
    order_id: str
    authorization_url: Optional[str] = None
    access_code: Optional[str] = None


class PaymentVerification(BaseModel):
    """Processor-side view of a payment attempt"""
    status: PaymentStatus
    reference: str
    order_id: Optional[str] = None
    amount: float
    currency: str
    gateway_response: Optional[str] = None


class AddressValidation(BaseModel):
    is_valid: bool
    zone: Optional[DeliveryZone] = None
    zone_id: Optional[str] = None
    message: Optional[str] = None
    address: Optional[Address] = None


class DeliveryOptions(BaseModel):
    zones: List[DeliveryZone] = Field(default_factory=list)
    default_zone: Optional[str] = None
