import logging
import math
from typing import List, Optional, Tuple
from pydantic import BaseModel

from checkout.domain.models import (
    Address, CartLine, CartTotals, DeliveryZone, Order, OrderSource, OrderStatus, PaymentMethod,
    PaymentInitialization, PaymentVerification, PaymentStatus, StoredCartLine,
)
from checkout.domain.exceptions import (
    ValidationError, OrderNotFoundError, PaymentServiceError, PaymentVerificationError,
    CouponRejection,
)
from checkout.application.interfaces import CatalogService, PaymentGateway
from checkout.application.cart import CartAggregator, hydrate_lines
from checkout.application.coupons import CouponEngine
from checkout.application.delivery import DeliveryZoneResolver
from checkout.application.orders import OrderLifecycleManager, check_address

logger = logging.getLogger(__name__)

AMOUNT_TOLERANCE = 0.01


class PlaceOrderDTO(BaseModel):
    user_id: str
    email: str = ""
    shipping_address: Address
    payment_method: PaymentMethod = PaymentMethod.CARD


class CreateOrderDTO(BaseModel):
    user_id: str
    items: List[StoredCartLine]
    shipping_address: Address
    payment_method: PaymentMethod = PaymentMethod.CARD
    coupon_code: Optional[str] = None
    expected_total: Optional[float] = None


class PricedOrder(BaseModel):
    lines: List[CartLine]
    zone: DeliveryZone
    totals: CartTotals


class CheckoutResult(BaseModel):
    order: Order
    totals: CartTotals
    payment: Optional[PaymentInitialization] = None
    cart_cleared: bool = False


class PaymentOutcome(BaseModel):
    order: Order
    verification: Optional[PaymentVerification] = None
    already_processed: bool = False


class OrderFinalizer:
    """Everything that happens once an order is known to be placed.

    The cart (or the buy-now record) is cleared only from here.
    """

    def __init__(self, unit_of_work, coupon_engine: CouponEngine, lifecycle: OrderLifecycleManager):
        self._uow = unit_of_work
        self._coupons = coupon_engine
        self._lifecycle = lifecycle

    async def redeem_coupon(self, order: Order) -> None:
        if not order.coupon_code:
            return
        try:
            await self._coupons.redeem(order.coupon_code, order.user_id, order.id, order.discount)
        except CouponRejection as e:
            # funds are already captured at the discounted total, the order stands
            logger.warning(f"Coupon {order.coupon_code} not counted for order {order.id}: {e.reason}")

    async def finalize(self, order: Order, new_status: Optional[OrderStatus] = None) -> None:
        await self.redeem_coupon(order)

        async with self._uow() as uow:
            if new_status is not None:
                current = await uow.orders.get_by_id(order.id)
                await self._lifecycle.apply_status(uow, current, new_status)
                order.status = current.status
                order.updated_at = current.updated_at

            session = await uow.sessions.get(order.user_id)
            if order.source == OrderSource.CART:
                await uow.carts.clear(order.user_id)
            elif order.source == OrderSource.BUY_NOW:
                session.buy_now = None
            if session.order_id == order.id:
                session.payment_reference = None
                session.order_id = None
            await uow.sessions.save(session)
            await uow.commit()

        logger.info(f"Order {order.id} finalized ({order.status.value}), {order.source.value} order")


class OrderPricer:
    """Prices order lines on the server.

    Prices come from the catalog, the delivery fee from the resolved zone and
    the discount from the coupon engine. Nothing the client sends is trusted.
    """

    def __init__(
        self,
        catalog_service: CatalogService,
        delivery_resolver: DeliveryZoneResolver,
        coupon_engine: CouponEngine,
        aggregator: Optional[CartAggregator] = None,
    ):
        self._catalog = catalog_service
        self._delivery = delivery_resolver
        self._coupons = coupon_engine
        self._aggregator = aggregator or CartAggregator()

    async def __call__(
        self,
        user_id: str,
        stored: List[StoredCartLine],
        address: Address,
        payment_method: PaymentMethod,
        coupon_code: Optional[str] = None,
    ) -> PricedOrder:
        lines = await hydrate_lines(stored, self._catalog)
        validation = await self._delivery.validate_address(address)
        if not validation.is_valid:
            raise ValidationError(validation.message or "Invalid delivery address", field="shipping_address")
        zone = validation.zone
        if payment_method == PaymentMethod.CASH and not zone.allows_cash_on_delivery:
            raise ValidationError("Cash on delivery is not available for this address", field="payment_method")

        coupon = None
        if coupon_code:
            subtotal = self._aggregator.subtotal(lines)
            coupon = await self._coupons.require_valid(
                coupon_code, subtotal, user_id, lines, delivery_fee=zone.price
            )
        totals = self._aggregator.compute(lines, zone, coupon)
        return PricedOrder(lines=lines, zone=zone, totals=totals)


class PlaceOrderUseCase:
    def __init__(
        self,
        unit_of_work,
        catalog_service: CatalogService,
        delivery_resolver: DeliveryZoneResolver,
        coupon_engine: CouponEngine,
        lifecycle: OrderLifecycleManager,
        payment_gateway: PaymentGateway,
        aggregator: Optional[CartAggregator] = None,
    ):
        self._uow = unit_of_work
        self._pricer = OrderPricer(catalog_service, delivery_resolver, coupon_engine, aggregator)
        self._lifecycle = lifecycle
        self._payments = payment_gateway
        self._finalizer = OrderFinalizer(unit_of_work, coupon_engine, lifecycle)

    async def __call__(self, data: PlaceOrderDTO) -> CheckoutResult:
        logger.info(f"Checkout started for user {data.user_id} ({data.payment_method.value})")

        # 1. Local checks, no network yet
        async with self._uow() as uow:
            cart = await uow.carts.get(data.user_id)
            session = await uow.sessions.get(data.user_id)

        if session.buy_now is not None:
            stored = [session.buy_now]
            coupon_code = None
            source = OrderSource.BUY_NOW
        else:
            stored = cart.lines
            coupon_code = cart.coupon_code
            source = OrderSource.CART

        if not stored:
            raise ValidationError("Cart is empty", field="items")
        address = check_address(data.shipping_address)
        if data.payment_method == PaymentMethod.CARD and not data.email.strip():
            raise ValidationError("Email is required for card payments", field="email")

        # 2. Pricing
        priced = await self._pricer(data.user_id, stored, address, data.payment_method, coupon_code)
        totals = priced.totals

        # 3. Order
        order = await self._lifecycle.create_order(
            user_id=data.user_id,
            lines=priced.lines,
            shipping_address=address,
            totals=totals,
            payment_method=data.payment_method,
            coupon_code=coupon_code,
            source=source,
        )

        # 4. Payment
        if data.payment_method == PaymentMethod.CASH:
            await self._finalizer.finalize(order)
            return CheckoutResult(order=order, totals=totals, cart_cleared=True)

        payment = await _start_payment(self._uow, self._payments, self._lifecycle, order, data.email)
        return CheckoutResult(order=order, totals=totals, payment=payment)


class CreateOrderUseCase:
    """Places an order for an explicit item list, outside the cart.

    The order is priced like a checkout. A client-side total, when sent, has
    to match the server's figure.
    """

    def __init__(
        self,
        unit_of_work,
        catalog_service: CatalogService,
        delivery_resolver: DeliveryZoneResolver,
        coupon_engine: CouponEngine,
        lifecycle: OrderLifecycleManager,
        aggregator: Optional[CartAggregator] = None,
    ):
        self._pricer = OrderPricer(catalog_service, delivery_resolver, coupon_engine, aggregator)
        self._lifecycle = lifecycle
        self._finalizer = OrderFinalizer(unit_of_work, coupon_engine, lifecycle)

    async def __call__(self, data: CreateOrderDTO) -> Order:
        if not data.items:
            raise ValidationError("Order must contain items", field="items")
        address = check_address(data.shipping_address)
        coupon_code = data.coupon_code.strip() if data.coupon_code and data.coupon_code.strip() else None

        priced = await self._pricer(data.user_id, data.items, address, data.payment_method, coupon_code)

        expected = data.expected_total
        if expected is not None and (
            not math.isfinite(expected) or abs(expected - priced.totals.total) > AMOUNT_TOLERANCE
        ):
            raise ValidationError(
                f"Order total is {priced.totals.total:.2f}, not {expected}", field="total"
            )

        order = await self._lifecycle.create_order(
            user_id=data.user_id,
            lines=priced.lines,
            shipping_address=address,
            totals=priced.totals,
            payment_method=data.payment_method,
            coupon_code=coupon_code,
            source=OrderSource.DIRECT,
        )
        if data.payment_method == PaymentMethod.CASH:
            await self._finalizer.finalize(order)
        return order


async def _start_payment(uow_factory, payments: PaymentGateway, lifecycle: OrderLifecycleManager,
                         order: Order, email: str) -> PaymentInitialization:
    try:
        payment = await payments.initialize_payment(
            order.id, order.total, email, metadata={"customerId": order.user_id}
        )
    except PaymentServiceError:
        logger.error(f"Payment initialization failed for order {order.id}, marking failed")
        await lifecycle.update_order_status(order.id, OrderStatus.FAILED)
        order.status = OrderStatus.FAILED
        raise

    async with uow_factory() as uow:
        await uow.orders.update_payment_reference(order.id, payment.reference)
        session = await uow.sessions.get(order.user_id)
        session.payment_reference = payment.reference
        session.order_id = order.id
        await uow.sessions.save(session)
        await uow.commit()

    order.payment_reference = payment.reference
    logger.info(f"Payment {payment.reference} initialized for order {order.id}")
    return payment


async def _clear_session_payment(uow_factory, order: Order) -> None:
    async with uow_factory() as uow:
        session = await uow.sessions.get(order.user_id)
        if session.order_id != order.id:
            return
        session.payment_reference = None
        session.order_id = None
        await uow.sessions.save(session)
        await uow.commit()


class InitializePaymentUseCase:
    """Starts a new payment attempt for an order that is still pending"""

    def __init__(self, unit_of_work, lifecycle: OrderLifecycleManager, payment_gateway: PaymentGateway):
        self._uow = unit_of_work
        self._lifecycle = lifecycle
        self._payments = payment_gateway

    async def __call__(self, user_id: str, order_id: str, email: str,
                       amount: Optional[float] = None) -> PaymentInitialization:
        if not email or not email.strip():
            raise ValidationError("Email is required", field="email")
        order = await self._lifecycle.get_order(order_id, user_id=user_id)
        if order.status != OrderStatus.PENDING or order.payment_method != PaymentMethod.CARD:
            raise ValidationError(f"Order {order_id} is not awaiting card payment", field="order_id")
        if amount is not None and abs(amount - order.total) > AMOUNT_TOLERANCE:
            raise ValidationError("Amount does not match the order total", field="amount")
        if order.payment_reference:
            await self._check_previous_attempt(order)
        return await _start_payment(self._uow, self._payments, self._lifecycle, order, email)

    async def _check_previous_attempt(self, order: Order) -> None:
        # the old reference stops resolving to the order once it is replaced
        reference = order.payment_reference
        previous = await self._payments.verify_payment(reference)
        if previous.status == PaymentStatus.SUCCESS:
            raise ValidationError(
                f"Payment {reference} for order {order.id} already succeeded, verify it to complete the order",
                field="order_id",
            )
        if previous.status == PaymentStatus.PENDING:
            raise ValidationError(
                f"Payment {reference} for order {order.id} is still in progress", field="order_id"
            )
        logger.info(f"Payment {reference} for order {order.id} did not complete, starting a new attempt")


class VerifyPaymentUseCase:
    """Reconciles a payment attempt with the processor.

    The processor's verify response is the only thing that confirms an
    order. A non-success, a foreign order id or a different amount marks the
    order failed and leaves the cart alone.
    """

    def __init__(self, unit_of_work, lifecycle: OrderLifecycleManager, payment_gateway: PaymentGateway,
                 coupon_engine: CouponEngine):
        self._uow = unit_of_work
        self._lifecycle = lifecycle
        self._payments = payment_gateway
        self._finalizer = OrderFinalizer(unit_of_work, coupon_engine, lifecycle)

    async def __call__(self, user_id: Optional[str], reference: Optional[str] = None) -> PaymentOutcome:
        async with self._uow() as uow:
            if not reference:
                if user_id is None:
                    raise ValidationError("Payment reference is required", field="reference")
                session = await uow.sessions.get(user_id)
                reference = session.payment_reference
                if not reference:
                    raise ValidationError("No payment reference found", field="reference")
            order = await uow.orders.get_by_payment_reference(reference)

        if not order or (user_id is not None and order.user_id != user_id):
            raise OrderNotFoundError(f"No order for payment reference {reference}")

        if order.status != OrderStatus.PENDING:
            if order.status in (OrderStatus.FAILED, OrderStatus.CANCELLED, OrderStatus.REFUNDED):
                raise PaymentVerificationError(
                    f"Order {order.id} is {order.status.value}, please check out again",
                    order_id=order.id, reference=reference,
                )
            logger.info(f"Payment {reference} already reconciled, order {order.id} is {order.status.value}")
            return PaymentOutcome(order=order, already_processed=True)

        verification = await self._payments.verify_payment(reference)

        reason = self._mismatch(order, verification)
        if reason:
            logger.warning(f"Payment {reference} for order {order.id} failed verification: {reason}")
            order = await self._lifecycle.update_order_status(order.id, OrderStatus.FAILED)
            await _clear_session_payment(self._uow, order)
            raise PaymentVerificationError(reason, order_id=order.id, reference=reference)

        await self._finalizer.finalize(order, OrderStatus.CONFIRMED)
        return PaymentOutcome(order=order, verification=verification)

    def _mismatch(self, order: Order, verification: PaymentVerification) -> Optional[str]:
        if verification.status != PaymentStatus.SUCCESS:
            return "Payment was not successful"
        if verification.order_id and verification.order_id != order.id:
            return "Payment belongs to a different order"
        if abs(verification.amount - order.total) > AMOUNT_TOLERANCE:
            return f"Paid amount {verification.amount:.2f} does not match order total {order.total:.2f}"
        return None


class GetStoredPaymentDataUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, user_id: str) -> Tuple[Optional[str], Optional[str]]:
        async with self._uow() as uow:
            session = await uow.sessions.get(user_id)
        return session.payment_reference, session.order_id


class ClearStoredPaymentDataUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, user_id: str) -> None:
        async with self._uow() as uow:
            session = await uow.sessions.get(user_id)
            session.payment_reference = None
            session.order_id = None
            await uow.sessions.save(session)
            await uow.commit()


class BuyNowUseCase:
    """Single-item checkout that bypasses the cart"""

    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def set(self, user_id: str, product_id: str, quantity: int = 1, size: Optional[str] = None) -> StoredCartLine:
        if not product_id:
            raise ValidationError("Product id is required", field="product_id")
        if quantity < 1:
            raise ValidationError("Quantity must be at least 1", field="quantity")
        line = StoredCartLine(product_id=product_id, quantity=quantity, size=size)
        async with self._uow() as uow:
            session = await uow.sessions.get(user_id)
            session.buy_now = line
            await uow.sessions.save(session)
            await uow.commit()
        logger.info(f"Buy now set for user {user_id}: {product_id} x{quantity}")
        return line

    async def clear(self, user_id: str) -> None:
        async with self._uow() as uow:
            session = await uow.sessions.get(user_id)
            session.buy_now = None
            await uow.sessions.save(session)
            await uow.commit()
