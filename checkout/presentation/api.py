import logging
from datetime import datetime
from typing import Optional, List

from fastapi import APIRouter, Depends, Header, HTTPException, Query, status

from checkout.database import AsyncSessionLocal
from checkout.presentation.schemas import (
    OrderResponse, OrderPageResponse, CreateOrderRequest, UpdateStatusRequest,
    BulkStatusRequest, BulkStatusResponse, CheckoutRequest, CheckoutResponse,
    InitializePaymentRequest, PaymentInitResponse, VerifyPaymentResponse, PaymentSessionResponse,
    BuyNowRequest, BuyNowResponse, ValidateCouponRequest, ValidateCouponResponse,
    ApplyCouponRequest, CartCouponResponse, CouponRequest, CouponUpdateRequest, CouponResponse,
    CouponStatsResponse, AddressSchema, AddressValidationResponse, DeliveryOptionsResponse,
    ErrorResponse,
)
from checkout.application.cart import CartAggregator
from checkout.application.coupons import CouponEngine
from checkout.application.coupon_management import (
    CouponDTO, ListCouponsUseCase, GetCouponUseCase, CreateCouponUseCase, UpdateCouponUseCase,
    DeleteCouponUseCase, GetCouponStatsUseCase, ApplyCartCouponUseCase, RemoveCartCouponUseCase,
)
from checkout.application.delivery import DeliveryZoneResolver
from checkout.application.orders import OrderLifecycleManager, BulkUpdateOrderStatusUseCase
from checkout.application.checkout import (
    PlaceOrderUseCase, PlaceOrderDTO, CreateOrderUseCase, CreateOrderDTO, InitializePaymentUseCase,
    VerifyPaymentUseCase, GetStoredPaymentDataUseCase, ClearStoredPaymentDataUseCase, BuyNowUseCase,
)
from checkout.domain.models import OrderStatus, CartLine
from checkout.domain.exceptions import (
    DomainException, ValidationError, NetworkError, PaymentVerificationError,
    InvalidTransitionError, CouponRejection, OrderNotFoundError, CouponNotFoundError,
)
from checkout.infrastructure.unit_of_work import UnitOfWork
from checkout.infrastructure.retry import RetryPolicy
from checkout.infrastructure.http_clients import (
    HTTPCatalogClient, HTTPPaymentGateway, HTTPDeliveryClient
)
from checkout.config import settings

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse},
    404: {"model": ErrorResponse},
    503: {"model": ErrorResponse},
}


def to_http_exception(e: DomainException) -> HTTPException:
    if isinstance(e, CouponRejection):
        return HTTPException(status_code=422, detail=e.reason)
    if isinstance(e, ValidationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, (OrderNotFoundError, CouponNotFoundError)):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, InvalidTransitionError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, PaymentVerificationError):
        return HTTPException(status_code=402, detail=str(e))
    if isinstance(e, NetworkError):
        logger.error(f"Upstream failure: {e}")
        return HTTPException(status_code=503, detail=f"Service unavailable: {str(e)}")
    logger.error(f"Unhandled domain error: {e}")
    return HTTPException(status_code=500, detail=str(e))


# Caller identity
def get_current_user(x_user_id: Optional[str] = Header(None)) -> str:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id


def require_admin(
    user_id: str = Depends(get_current_user),
    x_user_role: Optional[str] = Header(None)
) -> str:
    if x_user_role != "admin":
        raise HTTPException(status_code=403, detail="Admin access required")
    return user_id


# Collaborators
def get_unit_of_work():
    return UnitOfWork(AsyncSessionLocal)


def get_retry_policy():
    return RetryPolicy(settings.RETRY_MAX_ATTEMPTS, settings.RETRY_BASE_DELAY)


def get_catalog(retry: RetryPolicy = Depends(get_retry_policy)):
    return HTTPCatalogClient(settings.CATALOG_BASE_URL, settings.API_TOKEN, retry)


def get_payment_gateway():
    return HTTPPaymentGateway(
        settings.PAYMENT_BASE_URL,
        settings.PAYMENT_SECRET_KEY,
        currency=settings.PAYMENT_CURRENCY,
        callback_url=f"{settings.SERVICE_URL}/payment/verify" if settings.SERVICE_URL else None
    )


def get_delivery_service(retry: RetryPolicy = Depends(get_retry_policy)):
    return HTTPDeliveryClient(settings.DELIVERY_BASE_URL, settings.API_TOKEN, retry)


# Use case factories
def get_lifecycle(uow=Depends(get_unit_of_work)):
    return OrderLifecycleManager(uow, settings.PAYMENT_CURRENCY, settings.REFUND_WINDOW_DAYS)


def get_coupon_engine(uow=Depends(get_unit_of_work)):
    return CouponEngine(uow)


def get_aggregator():
    return CartAggregator(settings.TAX_RATE)


def get_delivery_resolver(delivery=Depends(get_delivery_service)):
    return DeliveryZoneResolver(delivery, settings.ADDRESS_DEBOUNCE_SECONDS)


def get_place_order_use_case(
    uow=Depends(get_unit_of_work),
    catalog=Depends(get_catalog),
    resolver=Depends(get_delivery_resolver),
    coupons=Depends(get_coupon_engine),
    lifecycle=Depends(get_lifecycle),
    payments=Depends(get_payment_gateway),
    aggregator=Depends(get_aggregator),
):
    return PlaceOrderUseCase(uow, catalog, resolver, coupons, lifecycle, payments, aggregator)


def get_create_order_use_case(
    uow=Depends(get_unit_of_work),
    catalog=Depends(get_catalog),
    resolver=Depends(get_delivery_resolver),
    coupons=Depends(get_coupon_engine),
    lifecycle=Depends(get_lifecycle),
    aggregator=Depends(get_aggregator),
):
    return CreateOrderUseCase(uow, catalog, resolver, coupons, lifecycle, aggregator)


def get_initialize_payment_use_case(
    uow=Depends(get_unit_of_work),
    lifecycle=Depends(get_lifecycle),
    payments=Depends(get_payment_gateway),
):
    return InitializePaymentUseCase(uow, lifecycle, payments)


def get_verify_payment_use_case(
    uow=Depends(get_unit_of_work),
    lifecycle=Depends(get_lifecycle),
    payments=Depends(get_payment_gateway),
    coupons=Depends(get_coupon_engine),
):
    return VerifyPaymentUseCase(uow, lifecycle, payments, coupons)


def get_apply_coupon_use_case(
    uow=Depends(get_unit_of_work),
    coupons=Depends(get_coupon_engine),
    catalog=Depends(get_catalog),
    aggregator=Depends(get_aggregator),
):
    return ApplyCartCouponUseCase(uow, coupons, catalog, aggregator)


# Orders
@router.post(
    "/orders",
    response_model=OrderResponse,
    responses={**ERROR_RESPONSES, 422: {"model": ErrorResponse}},
    status_code=status.HTTP_201_CREATED
)
async def create_order(
    request: CreateOrderRequest,
    user_id: str = Depends(get_current_user),
    use_case: CreateOrderUseCase = Depends(get_create_order_use_case)
):
    """Create an order for an item list, priced from the catalog"""
    try:
        order = await use_case(CreateOrderDTO(
            user_id=user_id,
            items=[item.to_domain() for item in request.items],
            shipping_address=request.shipping_address.to_domain(),
            payment_method=request.payment_method,
            coupon_code=request.coupon_code,
            expected_total=request.total
        ))
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise to_http_exception(e)


@router.get("/orders/my", response_model=OrderPageResponse)
async def get_my_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    order_status: Optional[OrderStatus] = Query(None, alias="status"),
    user_id: str = Depends(get_current_user),
    lifecycle: OrderLifecycleManager = Depends(get_lifecycle)
):
    try:
        result = await lifecycle.get_user_orders(user_id, page=page, limit=limit, status=order_status)
        return OrderPageResponse.from_domain(result)
    except DomainException as e:
        raise to_http_exception(e)


@router.get("/orders", response_model=OrderPageResponse)
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(10, ge=1, le=100),
    order_status: Optional[OrderStatus] = Query(None, alias="status"),
    sort_by: str = Query("created_at", alias="sortBy", pattern="^(created_at|total|status)$"),
    sort_order: str = Query("desc", alias="sortOrder", pattern="^(asc|desc)$"),
    admin_id: str = Depends(require_admin),
    lifecycle: OrderLifecycleManager = Depends(get_lifecycle)
):
    """All orders, admin only"""
    try:
        result = await lifecycle.list_orders(
            page=page, limit=limit, status=order_status, sort_by=sort_by, sort_order=sort_order
        )
        return OrderPageResponse.from_domain(result)
    except DomainException as e:
        raise to_http_exception(e)


@router.get(
    "/orders/{order_id}",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}}
)
async def get_order(
    order_id: str,
    user_id: str = Depends(get_current_user),
    x_user_role: Optional[str] = Header(None),
    lifecycle: OrderLifecycleManager = Depends(get_lifecycle)
):
    try:
        owner = None if x_user_role == "admin" else user_id
        order = await lifecycle.get_order(order_id, user_id=owner)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise to_http_exception(e)


@router.patch(
    "/orders/{order_id}/status",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}}
)
async def update_order_status(
    order_id: str,
    request: UpdateStatusRequest,
    admin_id: str = Depends(require_admin),
    lifecycle: OrderLifecycleManager = Depends(get_lifecycle)
):
    try:
        order = await lifecycle.update_order_status(order_id, request.status)
        return OrderResponse.from_domain(order)
    except DomainException as e:
        raise to_http_exception(e)


@router.post("/orders/bulk-status", response_model=BulkStatusResponse)
async def bulk_update_order_status(
    request: BulkStatusRequest,
    admin_id: str = Depends(require_admin),
    lifecycle: OrderLifecycleManager = Depends(get_lifecycle)
):
    result = await BulkUpdateOrderStatusUseCase(lifecycle)(request.order_ids, request.status)
    return BulkStatusResponse(**result.model_dump())


# Checkout and payment
@router.post(
    "/checkout",
    response_model=CheckoutResponse,
    responses={**ERROR_RESPONSES, 422: {"model": ErrorResponse}},
    status_code=status.HTTP_201_CREATED
)
async def place_order(
    request: CheckoutRequest,
    user_id: str = Depends(get_current_user),
    use_case: PlaceOrderUseCase = Depends(get_place_order_use_case)
):
    """Turn the cart (or the buy-now item) into an order and start payment"""
    try:
        result = await use_case(PlaceOrderDTO(
            user_id=user_id,
            email=request.email,
            shipping_address=request.shipping_address.to_domain(),
            payment_method=request.payment_method
        ))
        return CheckoutResponse.from_domain(result)
    except DomainException as e:
        raise to_http_exception(e)


@router.post("/payment/initialize", response_model=PaymentInitResponse, responses=ERROR_RESPONSES)
async def initialize_payment(
    request: InitializePaymentRequest,
    user_id: str = Depends(get_current_user),
    use_case: InitializePaymentUseCase = Depends(get_initialize_payment_use_case)
):
    try:
        payment = await use_case(user_id, request.order_id, request.email, request.amount)
        return PaymentInitResponse.from_domain(payment)
    except DomainException as e:
        raise to_http_exception(e)


@router.get(
    "/payment/verify",
    response_model=VerifyPaymentResponse,
    responses={**ERROR_RESPONSES, 402: {"model": ErrorResponse}}
)
async def verify_stored_payment(
    user_id: str = Depends(get_current_user),
    use_case: VerifyPaymentUseCase = Depends(get_verify_payment_use_case)
):
    """Verify the payment saved in the checkout session"""
    try:
        outcome = await use_case(user_id)
        return VerifyPaymentResponse.from_domain(outcome)
    except DomainException as e:
        raise to_http_exception(e)


@router.get(
    "/payment/verify/{reference}",
    response_model=VerifyPaymentResponse,
    responses={**ERROR_RESPONSES, 402: {"model": ErrorResponse}}
)
async def verify_payment(
    reference: str,
    user_id: str = Depends(get_current_user),
    use_case: VerifyPaymentUseCase = Depends(get_verify_payment_use_case)
):
    try:
        outcome = await use_case(user_id, reference)
        return VerifyPaymentResponse.from_domain(outcome)
    except DomainException as e:
        raise to_http_exception(e)


@router.get("/payment/session", response_model=PaymentSessionResponse)
async def get_payment_session(
    user_id: str = Depends(get_current_user),
    uow=Depends(get_unit_of_work)
):
    reference, order_id = await GetStoredPaymentDataUseCase(uow)(user_id)
    return PaymentSessionResponse(reference=reference, order_id=order_id)


@router.delete("/payment/session", status_code=status.HTTP_204_NO_CONTENT)
async def clear_payment_session(
    user_id: str = Depends(get_current_user),
    uow=Depends(get_unit_of_work)
):
    await ClearStoredPaymentDataUseCase(uow)(user_id)


@router.post("/checkout/buy-now", response_model=BuyNowResponse, responses={400: {"model": ErrorResponse}})
async def set_buy_now(
    request: BuyNowRequest,
    user_id: str = Depends(get_current_user),
    uow=Depends(get_unit_of_work)
):
    try:
        line = await BuyNowUseCase(uow).set(user_id, request.product_id, request.quantity, request.size)
        return BuyNowResponse.from_domain(line)
    except DomainException as e:
        raise to_http_exception(e)


@router.delete("/checkout/buy-now", status_code=status.HTTP_204_NO_CONTENT)
async def clear_buy_now(
    user_id: str = Depends(get_current_user),
    uow=Depends(get_unit_of_work)
):
    await BuyNowUseCase(uow).clear(user_id)


# Coupons
@router.post("/coupons/validate", response_model=ValidateCouponResponse, responses={400: {"model": ErrorResponse}})
async def validate_coupon(
    request: ValidateCouponRequest,
    user_id: str = Depends(get_current_user),
    coupons: CouponEngine = Depends(get_coupon_engine)
):
    """Check a code against a cart total without redeeming it"""
    try:
        lines = [
            CartLine(product_id=item.product_id, quantity=1, price=0.0, category=item.category)
            for item in request.items
        ]
        result = await coupons.validate(
            request.code, request.cart_total, user_id, lines, delivery_fee=request.delivery_fee
        )
        return ValidateCouponResponse.from_domain(result)
    except DomainException as e:
        raise to_http_exception(e)


@router.post(
    "/cart/apply-coupon",
    response_model=CartCouponResponse,
    responses={**ERROR_RESPONSES, 422: {"model": ErrorResponse}}
)
async def apply_cart_coupon(
    request: ApplyCouponRequest,
    user_id: str = Depends(get_current_user),
    use_case: ApplyCartCouponUseCase = Depends(get_apply_coupon_use_case)
):
    try:
        result = await use_case(user_id, request.code)
        return CartCouponResponse(**result.model_dump())
    except DomainException as e:
        raise to_http_exception(e)


@router.post("/cart/remove-coupon")
async def remove_cart_coupon(
    user_id: str = Depends(get_current_user),
    uow=Depends(get_unit_of_work)
):
    await RemoveCartCouponUseCase(uow)(user_id)
    return {"status": "ok", "message": "Coupon removed"}


@router.get("/admin/coupons", response_model=List[CouponResponse])
async def list_coupons(
    admin_id: str = Depends(require_admin),
    uow=Depends(get_unit_of_work)
):
    coupons = await ListCouponsUseCase(uow)()
    return [CouponResponse.from_domain(c) for c in coupons]


@router.post(
    "/admin/coupons",
    response_model=CouponResponse,
    responses={400: {"model": ErrorResponse}},
    status_code=status.HTTP_201_CREATED
)
async def create_coupon(
    request: CouponRequest,
    admin_id: str = Depends(require_admin),
    uow=Depends(get_unit_of_work)
):
    try:
        coupon = await CreateCouponUseCase(uow)(CouponDTO(**request.model_dump()))
        return CouponResponse.from_domain(coupon)
    except DomainException as e:
        raise to_http_exception(e)


@router.get("/admin/coupons/stats", response_model=CouponStatsResponse)
async def get_coupon_stats(
    start_date: Optional[datetime] = Query(None, alias="startDate"),
    end_date: Optional[datetime] = Query(None, alias="endDate"),
    admin_id: str = Depends(require_admin),
    uow=Depends(get_unit_of_work)
):
    stats = await GetCouponStatsUseCase(uow)(start_date, end_date)
    return CouponStatsResponse.from_domain(stats)


@router.get("/admin/coupons/{coupon_id}", response_model=CouponResponse, responses={404: {"model": ErrorResponse}})
async def get_coupon(
    coupon_id: str,
    admin_id: str = Depends(require_admin),
    uow=Depends(get_unit_of_work)
):
    try:
        return CouponResponse.from_domain(await GetCouponUseCase(uow)(coupon_id))
    except DomainException as e:
        raise to_http_exception(e)


@router.put("/admin/coupons/{coupon_id}", response_model=CouponResponse, responses=ERROR_RESPONSES)
async def update_coupon(
    coupon_id: str,
    request: CouponUpdateRequest,
    admin_id: str = Depends(require_admin),
    uow=Depends(get_unit_of_work)
):
    try:
        coupon = await UpdateCouponUseCase(uow)(coupon_id, request.model_dump(exclude_unset=True))
        return CouponResponse.from_domain(coupon)
    except DomainException as e:
        raise to_http_exception(e)


@router.delete("/admin/coupons/{coupon_id}", responses={404: {"model": ErrorResponse}})
async def delete_coupon(
    coupon_id: str,
    admin_id: str = Depends(require_admin),
    uow=Depends(get_unit_of_work)
):
    try:
        await DeleteCouponUseCase(uow)(coupon_id)
        return {"status": "ok", "message": "Coupon deleted"}
    except DomainException as e:
        raise to_http_exception(e)


# Delivery
@router.post("/delivery/validate-delivery-address", response_model=AddressValidationResponse)
async def validate_delivery_address(
    address: AddressSchema,
    resolver: DeliveryZoneResolver = Depends(get_delivery_resolver)
):
    try:
        result = await resolver.validate_address(address.to_domain())
        return AddressValidationResponse.from_domain(result)
    except DomainException as e:
        raise to_http_exception(e)


@router.get("/delivery/delivery-options", response_model=DeliveryOptionsResponse)
async def get_delivery_options(resolver: DeliveryZoneResolver = Depends(get_delivery_resolver)):
    options = await resolver.get_delivery_options()
    return DeliveryOptionsResponse.from_domain(options)
