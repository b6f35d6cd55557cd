import pytest

from checkout.domain.models import OrderSource, OrderStatus, PaymentMethod, PaymentStatus, StoredCartLine
from checkout.domain.exceptions import (
    ValidationError, PaymentServiceError, PaymentVerificationError, CouponRejection,
)
from checkout.application.checkout import (
    PlaceOrderDTO, CreateOrderDTO, BuyNowUseCase, GetStoredPaymentDataUseCase, ClearStoredPaymentDataUseCase,
    InitializePaymentUseCase,
)


def _dto(address, method=PaymentMethod.CARD, email="ama@example.com", user_id="user-1"):
    return PlaceOrderDTO(user_id=user_id, email=email, shipping_address=address, payment_method=method)


async def test_empty_cart_is_rejected_without_network_calls(place_order, address, catalog, gateway, delivery):
    with pytest.raises(ValidationError, match="Cart is empty"):
        await place_order(_dto(address))

    assert catalog.calls == 0
    assert gateway.calls == 0
    assert delivery.calls == 0


async def test_card_checkout_leaves_order_pending_and_cart_intact(place_order, address, fill_cart, uow, gateway):
    await fill_cart()

    result = await place_order(_dto(address))

    assert result.totals.subtotal == 100
    assert result.totals.tax == 8
    assert result.totals.delivery_fee == 10
    assert result.totals.total == 118
    assert result.payment.authorization_url.startswith("https://pay.test/")
    assert gateway.initialized == [(result.order.id, 118, "ama@example.com")]

    stored = uow.store.orders[result.order.id]
    assert stored.status == OrderStatus.PENDING
    assert stored.payment_reference == result.payment.reference
    assert len((await uow.carts.get("user-1")).lines) == 1
    assert await GetStoredPaymentDataUseCase(uow)("user-1") == (result.payment.reference, result.order.id)


async def test_card_checkout_requires_email(place_order, address, fill_cart, gateway):
    await fill_cart()
    with pytest.raises(ValidationError, match="Email"):
        await place_order(_dto(address, email=" "))
    assert gateway.calls == 0


async def test_initialization_failure_marks_order_failed(place_order, address, fill_cart, uow, gateway):
    await fill_cart()
    gateway.fail_initialize = True

    with pytest.raises(PaymentServiceError):
        await place_order(_dto(address))

    [order] = uow.store.orders.values()
    assert order.status == OrderStatus.FAILED
    assert len((await uow.carts.get("user-1")).lines) == 1


async def test_invalid_address_blocks_checkout(place_order, address, fill_cart, delivery, uow):
    await fill_cart()
    delivery.result = {"isValid": False, "message": "We do not deliver to Mars"}

    with pytest.raises(ValidationError, match="Mars"):
        await place_order(_dto(address))
    assert uow.store.orders == {}


async def test_cash_not_allowed_in_remote_zone(place_order, address, fill_cart, delivery):
    await fill_cart()
    delivery.result = {"isValid": True, "zoneId": "remote"}

    with pytest.raises(ValidationError, match="Cash on delivery"):
        await place_order(_dto(address, method=PaymentMethod.CASH))


async def test_cash_checkout_clears_cart_and_redeems(place_order, address, fill_cart, make_coupon, uow, gateway):
    coupon = await make_coupon("SAVE20", value=20, max_discount=15)
    await fill_cart(coupon_code="SAVE20")

    result = await place_order(_dto(address, method=PaymentMethod.CASH, email=""))

    assert result.cart_cleared
    assert result.order.status == OrderStatus.PENDING
    assert result.totals.discount == 15
    assert result.totals.total == 103
    assert gateway.calls == 0
    assert (await uow.carts.get("user-1")).lines == []
    assert uow.store.coupons[coupon.id].usage_count == 1


async def test_rejected_cart_coupon_stops_checkout(place_order, address, fill_cart, make_coupon, uow):
    await make_coupon("BIG", min_order_amount=1000)
    await fill_cart(coupon_code="BIG")

    with pytest.raises(CouponRejection):
        await place_order(_dto(address))
    assert uow.store.orders == {}


async def test_verified_payment_confirms_order_and_clears_cart(
    place_order, verify_payment, address, fill_cart, make_coupon, uow
):
    coupon = await make_coupon("SAVE20", value=20, max_discount=15)
    await fill_cart(coupon_code="SAVE20")
    placed = await place_order(_dto(address))

    outcome = await verify_payment("user-1", placed.payment.reference)

    assert outcome.order.status == OrderStatus.CONFIRMED
    assert uow.store.orders[placed.order.id].status == OrderStatus.CONFIRMED
    assert (await uow.carts.get("user-1")).lines == []
    assert await GetStoredPaymentDataUseCase(uow)("user-1") == (None, None)
    assert uow.store.coupons[coupon.id].usage_count == 1


async def test_repeated_verification_is_a_noop(place_order, verify_payment, address, fill_cart, make_coupon, uow, gateway):
    coupon = await make_coupon("SAVE20", value=20)
    await fill_cart(coupon_code="SAVE20")
    placed = await place_order(_dto(address))

    await verify_payment("user-1", placed.payment.reference)
    again = await verify_payment("user-1", placed.payment.reference)

    assert again.already_processed
    assert len(gateway.verified) == 1
    assert uow.store.coupons[coupon.id].usage_count == 1


async def test_failed_verification_keeps_cart(place_order, verify_payment, address, fill_cart, uow, gateway):
    await fill_cart()
    placed = await place_order(_dto(address))
    gateway.verify_status = PaymentStatus.FAILED

    with pytest.raises(PaymentVerificationError) as exc:
        await verify_payment("user-1", placed.payment.reference)

    assert exc.value.order_id == placed.order.id
    assert uow.store.orders[placed.order.id].status == OrderStatus.FAILED
    cart = await uow.carts.get("user-1")
    assert [(line.product_id, line.quantity) for line in cart.lines] == [("shirt", 2)]


async def test_amount_mismatch_fails_order(place_order, verify_payment, address, fill_cart, uow, gateway):
    await fill_cart()
    placed = await place_order(_dto(address))
    gateway.verify_amount = 1.0

    with pytest.raises(PaymentVerificationError, match="does not match"):
        await verify_payment("user-1", placed.payment.reference)
    assert uow.store.orders[placed.order.id].status == OrderStatus.FAILED


async def test_verify_uses_stored_reference(place_order, verify_payment, address, fill_cart):
    await fill_cart()
    await place_order(_dto(address))

    outcome = await verify_payment("user-1")

    assert outcome.order.status == OrderStatus.CONFIRMED


async def test_verify_without_stored_reference(verify_payment):
    with pytest.raises(ValidationError):
        await verify_payment("user-1")


async def test_buy_now_bypasses_cart(place_order, verify_payment, address, fill_cart, uow):
    await fill_cart()
    await BuyNowUseCase(uow).set("user-1", "cap", 1)

    placed = await place_order(_dto(address))
    assert [item.product_id for item in placed.order.items] == ["cap"]

    await verify_payment("user-1", placed.payment.reference)

    assert (await uow.sessions.get("user-1")).buy_now is None
    assert len((await uow.carts.get("user-1")).lines) == 1


async def test_buy_now_rejects_bad_quantity(uow):
    with pytest.raises(ValidationError):
        await BuyNowUseCase(uow).set("user-1", "cap", 0)


async def test_initialize_payment_for_pending_order(place_order, lifecycle, address, fill_cart, uow, gateway):
    await fill_cart()
    placed = await place_order(_dto(address))

    gateway.verify_status = PaymentStatus.FAILED
    payment = await InitializePaymentUseCase(uow, lifecycle, gateway)(
        "user-1", placed.order.id, "ama@example.com", amount=118
    )

    assert payment.reference != placed.payment.reference
    assert uow.store.orders[placed.order.id].payment_reference == payment.reference

    await ClearStoredPaymentDataUseCase(uow)("user-1")
    assert await GetStoredPaymentDataUseCase(uow)("user-1") == (None, None)


async def test_reinitialize_refused_while_previous_payment_succeeded(
    place_order, verify_payment, lifecycle, address, fill_cart, uow, gateway
):
    await fill_cart()
    placed = await place_order(_dto(address))

    with pytest.raises(ValidationError, match="already succeeded"):
        await InitializePaymentUseCase(uow, lifecycle, gateway)("user-1", placed.order.id, "ama@example.com")

    assert len(gateway.initialized) == 1
    assert uow.store.orders[placed.order.id].payment_reference == placed.payment.reference

    outcome = await verify_payment("user-1", placed.payment.reference)
    assert outcome.order.status == OrderStatus.CONFIRMED


async def test_reinitialize_refused_while_previous_payment_in_progress(
    place_order, lifecycle, address, fill_cart, uow, gateway
):
    await fill_cart()
    placed = await place_order(_dto(address))
    gateway.verify_status = PaymentStatus.PENDING

    with pytest.raises(ValidationError, match="still in progress"):
        await InitializePaymentUseCase(uow, lifecycle, gateway)("user-1", placed.order.id, "ama@example.com")
    assert uow.store.orders[placed.order.id].status == OrderStatus.PENDING


# ---------------------------------------------------------------------------
# Orders placed from an explicit item list
# ---------------------------------------------------------------------------

def _order_dto(address, items=(("shirt", 2),), method=PaymentMethod.CARD, **overrides):
    return CreateOrderDTO(
        user_id="user-1",
        items=[StoredCartLine(product_id=p, quantity=q) for p, q in items],
        shipping_address=address,
        payment_method=method,
        **overrides,
    )


async def test_direct_order_is_priced_on_the_server(create_order, address, make_coupon, uow):
    coupon = await make_coupon("SAVE20", value=20, max_discount=15)

    order = await create_order(_order_dto(address, coupon_code="SAVE20", expected_total=103.0))

    assert order.source == OrderSource.DIRECT
    assert order.items[0].price == 50.0
    assert (order.subtotal, order.tax, order.delivery_fee, order.discount, order.total) == (
        100.0, 8.0, 10.0, 15.0, 103.0
    )
    assert order.coupon_code == "SAVE20"
    assert uow.store.coupons[coupon.id].usage_count == 0


async def test_direct_order_rejects_client_total(create_order, address, make_coupon, uow):
    await make_coupon("SAVE20", value=20)

    with pytest.raises(ValidationError, match="Order total is 98.00"):
        await create_order(_order_dto(address, coupon_code="SAVE20", expected_total=1.0))
    with pytest.raises(ValidationError):
        await create_order(_order_dto(address, expected_total=float("nan")))
    assert uow.store.orders == {}


async def test_direct_order_checks_coupon_and_catalog(create_order, address, make_coupon, uow):
    await make_coupon("BIG", min_order_amount=1000)

    with pytest.raises(CouponRejection):
        await create_order(_order_dto(address, coupon_code="BIG"))
    with pytest.raises(ValidationError, match="no longer available"):
        await create_order(_order_dto(address, items=(("ghost", 1),)))
    with pytest.raises(ValidationError, match="Invalid quantity"):
        await create_order(_order_dto(address, items=(("shirt", 0),)))
    assert uow.store.orders == {}


async def test_verified_direct_order_leaves_cart_alone(
    create_order, verify_payment, lifecycle, address, fill_cart, make_coupon, uow, gateway
):
    coupon = await make_coupon("SAVE20", value=20)
    await fill_cart(lines=(("cap", 1),))
    order = await create_order(_order_dto(address, coupon_code="SAVE20"))

    payment = await InitializePaymentUseCase(uow, lifecycle, gateway)("user-1", order.id, "ama@example.com")
    outcome = await verify_payment("user-1", payment.reference)

    assert outcome.order.status == OrderStatus.CONFIRMED
    assert [line.product_id for line in (await uow.carts.get("user-1")).lines] == ["cap"]
    assert uow.store.coupons[coupon.id].usage_count == 1
    assert await GetStoredPaymentDataUseCase(uow)("user-1") == (None, None)


async def test_cash_direct_order_redeems_coupon(create_order, address, fill_cart, make_coupon, uow):
    coupon = await make_coupon("SAVE20", value=20)
    await fill_cart()

    order = await create_order(_order_dto(address, method=PaymentMethod.CASH, coupon_code="SAVE20"))

    assert order.status == OrderStatus.PENDING
    assert uow.store.coupons[coupon.id].usage_count == 1
    assert len((await uow.carts.get("user-1")).lines) == 1
