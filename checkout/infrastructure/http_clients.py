import math
import random
import string
import time
import httpx
import logging
from typing import Optional, Dict, Any

from checkout.domain.models import (
    Item, Address, DeliveryOptions, PaymentInitialization, PaymentVerification, PaymentStatus,
)
from checkout.domain.exceptions import (
    CatalogServiceError, PaymentServiceError, DeliveryServiceError, ValidationError,
)
from checkout.infrastructure.retry import RetryPolicy, RequestKind

logger = logging.getLogger(__name__)


class HTTPCatalogClient:
    def __init__(
        self,
        base_url: str,
        api_token: str,
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url
        self._api_token = api_token
        self._retry = retry_policy or RetryPolicy()
        self._transport = transport

    async def get_item(self, item_id: str) -> Optional[Item]:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await self._retry.send(
                    lambda: client.get(
                        f"{self._base_url}/api/catalog/items/{item_id}",
                        headers={"X-API-Key": self._api_token},
                        timeout=10.0
                    ),
                    RequestKind.SAFE_READ,
                    description=f"Catalog item {item_id}",
                )

                if response.status_code == 200:
                    data = response.json()
                    return Item(**data)
                elif response.status_code == 404:
                    return None
                else:
                    raise CatalogServiceError(
                        f"Catalog service error: {response.status_code}",
                        status_code=response.status_code,
                        retryable=response.status_code >= 500,
                    )

        except httpx.RequestError as e:
            logger.error(f"Catalog service connection error: {e}")
            raise CatalogServiceError(f"Catalog service unavailable: {str(e)}", retryable=True)


def generate_reference() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"PAY_{int(time.time() * 1000)}_{suffix}"


class HTTPPaymentGateway:
    """Paystack-style processor: initialize a transaction, then verify it by reference"""

    def __init__(
        self,
        base_url: str,
        secret_key: str,
        currency: str = "GHS",
        callback_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url
        self._secret_key = secret_key
        self._currency = currency
        self._callback_url = callback_url
        self._transport = transport
        self._retry = RetryPolicy()

    def _headers(self) -> dict:
        return {
            "Authorization": f"Bearer {self._secret_key}",
            "Content-Type": "application/json"
        }

    async def initialize_payment(
        self,
        order_id: str,
        amount: float,
        payer_email: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentInitialization:
        if not isinstance(amount, (int, float)) or not math.isfinite(amount) or amount <= 0:
            raise ValidationError("Amount must be a positive number", field="amount")
        if not payer_email or not payer_email.strip():
            raise ValidationError("Payer email is required", field="email")
        if not order_id:
            raise ValidationError("Order id is required", field="order_id")

        reference = generate_reference()
        payload = {
            "email": payer_email.strip(),
            "amount": int(round(amount * 100)),
            "currency": self._currency,
            "reference": reference,
            "metadata": {"orderId": order_id, **(metadata or {})},
        }
        if self._callback_url:
            payload["callback_url"] = self._callback_url

        logger.info(f"Initializing payment {reference} for order {order_id}, amount {amount}")
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await self._retry.send(
                    lambda: client.post(
                        f"{self._base_url}/transaction/initialize",
                        json=payload,
                        headers=self._headers(),
                        timeout=30.0
                    ),
                    RequestKind.UNSAFE_WRITE,
                )

                if response.status_code in (200, 201):
                    data = response.json().get("data") or {}
                    return PaymentInitialization(
                        status=PaymentStatus.PENDING,
                        reference=data.get("reference", reference),
                        order_id=order_id,
                        authorization_url=data.get("authorization_url"),
                        access_code=data.get("access_code"),
                    )
                else:
                    raise PaymentServiceError(
                        f"Payment service error: {response.status_code}",
                        status_code=response.status_code,
                    )

        except httpx.RequestError as e:
            logger.error(f"Payment service connection error: {e}")
            raise PaymentServiceError(f"Payment service unavailable: {str(e)}")

    async def verify_payment(self, reference: str) -> PaymentVerification:
        if not reference:
            raise ValidationError("Payment reference is required", field="reference")

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await self._retry.send(
                    lambda: client.get(
                        f"{self._base_url}/transaction/verify/{reference}",
                        headers=self._headers(),
                        timeout=30.0
                    ),
                    RequestKind.UNSAFE_WRITE,
                )

                if response.status_code != 200:
                    raise PaymentServiceError(
                        f"Payment verification error: {response.status_code}",
                        status_code=response.status_code,
                    )

                data = response.json().get("data") or {}
                metadata = data.get("metadata") or {}
                gateway_status = data.get("status")
                if gateway_status == "success":
                    status = PaymentStatus.SUCCESS
                elif gateway_status in ("ongoing", "pending", "processing", "queued"):
                    status = PaymentStatus.PENDING
                else:
                    status = PaymentStatus.FAILED

                verification = PaymentVerification(
                    status=status,
                    reference=data.get("reference", reference),
                    order_id=metadata.get("orderId"),
                    amount=(data.get("amount") or 0) / 100,
                    currency=data.get("currency", self._currency),
                    gateway_response=data.get("gateway_response"),
                )
                logger.info(f"Payment {reference} verified: {verification.status.value}")
                return verification

        except httpx.RequestError as e:
            logger.error(f"Payment service connection error: {e}")
            raise PaymentServiceError(f"Payment service unavailable: {str(e)}")


class HTTPDeliveryClient:
    def __init__(
        self,
        base_url: str,
        api_token: str = "",
        retry_policy: Optional[RetryPolicy] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self._base_url = base_url
        self._api_token = api_token
        self._retry = retry_policy or RetryPolicy()
        self._transport = transport

    async def validate_address(self, address: Address) -> dict:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await client.post(
                    f"{self._base_url}/delivery/validate-delivery-address",
                    json={
                        "street": address.street,
                        "city": address.city,
                        "state": address.state,
                        "country": address.country,
                        "postalCode": address.postal_code,
                    },
                    headers={"X-API-Key": self._api_token},
                    timeout=10.0
                )

                if response.status_code == 200:
                    return response.json()
                else:
                    logger.error(f"Address validation returned {response.status_code}: {response.text}")
                    raise DeliveryServiceError(
                        "Failed to validate delivery address. Please try again later.",
                        status_code=response.status_code,
                        retryable=True,
                    )

        except httpx.RequestError as e:
            logger.error(f"Delivery service connection error: {e}")
            raise DeliveryServiceError(f"Delivery service unavailable: {str(e)}", retryable=True)

    async def get_delivery_options(self) -> DeliveryOptions:
        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                response = await self._retry.send(
                    lambda: client.get(
                        f"{self._base_url}/delivery/delivery-options",
                        headers={"X-API-Key": self._api_token},
                        timeout=10.0
                    ),
                    RequestKind.SAFE_READ,
                    description="Delivery options",
                )

                if response.status_code == 200:
                    data = response.json()
                    return DeliveryOptions(
                        zones=[_zone_from_wire(z) for z in data.get("zones", [])],
                        default_zone=data.get("defaultZone"),
                    )
                else:
                    raise DeliveryServiceError(
                        f"Delivery service error: {response.status_code}",
                        status_code=response.status_code,
                        retryable=response.status_code >= 500,
                    )

        except httpx.RequestError as e:
            logger.error(f"Delivery service connection error: {e}")
            raise DeliveryServiceError(f"Delivery service unavailable: {str(e)}", retryable=True)


def _zone_from_wire(data: dict) -> dict:
    return {
        "id": data["id"],
        "name": data.get("name", ""),
        "description": data.get("description", ""),
        "price": data.get("price", 0),
        "estimated_days": data.get("estimatedDays", 0),
        "allows_cash_on_delivery": data.get("allowsCashOnDelivery", True),
        "country": data.get("country"),
        "region": data.get("region"),
    }
