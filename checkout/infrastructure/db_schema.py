from sqlalchemy import (
    Table, Column, String, Integer, Float, Boolean, Enum, DateTime, JSON, MetaData,
    ForeignKey, UniqueConstraint,
)
from sqlalchemy.sql import func

from checkout.domain.models import OrderStatus, OrderSource, CouponType, PaymentMethod

metadata = MetaData()


orders_tbl = Table(
    "orders",
    metadata,
    Column("id", String, primary_key=True),
    Column("user_id", String, nullable=False, index=True),
    Column("items", JSON, nullable=False),
    Column("shipping_address", JSON, nullable=False),
    Column("status", Enum(OrderStatus, values_callable=lambda e: [s.value for s in e]),
           default=OrderStatus.PENDING, nullable=False),
    Column("subtotal", Float, nullable=False),
    Column("tax", Float, nullable=False),
    Column("delivery_fee", Float, nullable=False),
    Column("discount", Float, nullable=False, default=0),
    Column("total", Float, nullable=False),
    Column("currency", String(3), nullable=False),
    Column("payment_method", Enum(PaymentMethod, values_callable=lambda e: [s.value for s in e]),
           nullable=False),
    Column("source", Enum(OrderSource, values_callable=lambda e: [s.value for s in e]),
           default=OrderSource.CART, nullable=False),
    Column("coupon_code", String, nullable=True),
    Column("payment_reference", String, unique=True, nullable=True, index=True),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now()),
    Column("delivered_at", DateTime(timezone=True), nullable=True)
)


coupons_tbl = Table(
    "coupons",
    metadata,
    Column("id", String, primary_key=True),
    Column("code", String, unique=True, nullable=False, index=True),
    Column("type", Enum(CouponType, values_callable=lambda e: [s.value for s in e]), nullable=False),
    Column("value", Float, nullable=False),
    Column("description", String, nullable=False, default=""),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("start_date", DateTime(timezone=True), nullable=False),
    Column("end_date", DateTime(timezone=True), nullable=False),
    Column("usage_limit", Integer, nullable=True),
    Column("usage_count", Integer, nullable=False, default=0),
    Column("min_order_amount", Float, nullable=True),
    Column("max_discount", Float, nullable=True),
    Column("applicable_products", JSON, nullable=False, default=list),
    Column("applicable_categories", JSON, nullable=False, default=list),
    Column("user_limit", Integer, nullable=True),
    Column("is_first_time_only", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
)


coupon_redemptions_tbl = Table(
    "coupon_redemptions",
    metadata,
    Column("coupon_id", String, ForeignKey("coupons.id", ondelete="CASCADE"), nullable=False),
    Column("user_id", String, nullable=False, index=True),
    Column("order_id", String, nullable=False),
    Column("discount_amount", Float, nullable=False),
    Column("created_at", DateTime(timezone=True), server_default=func.now()),
    UniqueConstraint("coupon_id", "order_id", name="uq_coupon_redemption_order")
)


carts_tbl = Table(
    "carts",
    metadata,
    Column("user_id", String, primary_key=True),
    Column("lines", JSON, nullable=False, default=list),
    Column("coupon_code", String, nullable=True),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
)


checkout_sessions_tbl = Table(
    "checkout_sessions",
    metadata,
    Column("user_id", String, primary_key=True),
    Column("payment_reference", String, nullable=True),
    Column("order_id", String, nullable=True),
    Column("buy_now", JSON, nullable=True),
    Column("updated_at", DateTime(timezone=True), server_default=func.now(), onupdate=func.now())
)
