from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List, Tuple, Dict, Any

from checkout.domain.models import (
    Order, OrderStatus, Coupon, CouponRedemption, Cart, CheckoutSession, Item, Address,
    PaymentInitialization, PaymentVerification, DeliveryOptions,
)


class OrderRepository(ABC):
    @abstractmethod
    async def get_by_id(self, order_id: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_by_payment_reference(self, reference: str) -> Optional[Order]:
        pass

    @abstractmethod
    async def create(self, order: Order) -> None:
        pass

    @abstractmethod
    async def update_status(self, order: Order) -> None:
        pass

    @abstractmethod
    async def update_payment_reference(self, order_id: str, reference: str) -> None:
        pass

    @abstractmethod
    async def list(
        self,
        page: int = 1,
        limit: int = 10,
        status: Optional[OrderStatus] = None,
        user_id: Optional[str] = None,
        sort_by: str = "created_at",
        sort_order: str = "desc",
    ) -> Tuple[List[Order], int]:
        pass

    @abstractmethod
    async def count_placed_by_user(self, user_id: str) -> int:
        """Orders of the user that did not end up failed or cancelled"""
        pass


class CouponRepository(ABC):
    @abstractmethod
    async def get_by_id(self, coupon_id: str) -> Optional[Coupon]:
        pass

    @abstractmethod
    async def get_by_code(self, code: str) -> Optional[Coupon]:
        pass

    @abstractmethod
    async def lock_by_code(self, code: str) -> Optional[Coupon]:
        """Reads the coupon and holds its row lock until the unit of work ends"""
        pass

    @abstractmethod
    async def list_all(self) -> List[Coupon]:
        pass

    @abstractmethod
    async def create(self, coupon: Coupon) -> None:
        pass

    @abstractmethod
    async def update(self, coupon: Coupon) -> None:
        pass

    @abstractmethod
    async def delete(self, coupon_id: str) -> bool:
        pass

    @abstractmethod
    async def increment_usage(self, coupon_id: str) -> bool:
        """Atomically bumps usage_count unless usage_limit is reached"""
        pass

    @abstractmethod
    async def get_redemption(self, coupon_id: str, order_id: str) -> Optional[CouponRedemption]:
        pass

    @abstractmethod
    async def add_redemption(self, redemption: CouponRedemption) -> bool:
        """Returns False when the order already redeemed this coupon"""
        pass

    @abstractmethod
    async def count_user_redemptions(self, coupon_id: str, user_id: str) -> int:
        pass

    @abstractmethod
    async def redemption_totals(
        self, start: Optional[datetime] = None, end: Optional[datetime] = None
    ) -> Dict[str, Tuple[int, float]]:
        """coupon_id -> (redemptions, discount given) within the window"""
        pass


class CartRepository(ABC):
    @abstractmethod
    async def get(self, user_id: str) -> Cart:
        pass

    @abstractmethod
    async def save(self, cart: Cart) -> None:
        pass

    @abstractmethod
    async def clear(self, user_id: str) -> None:
        pass


class CheckoutSessionRepository(ABC):
    @abstractmethod
    async def get(self, user_id: str) -> CheckoutSession:
        pass

    @abstractmethod
    async def save(self, session: CheckoutSession) -> None:
        pass


class UnitOfWork(ABC):
    @property
    @abstractmethod
    def orders(self) -> OrderRepository:
        pass

    @property
    @abstractmethod
    def coupons(self) -> CouponRepository:
        pass

    @property
    @abstractmethod
    def carts(self) -> CartRepository:
        pass

    @property
    @abstractmethod
    def sessions(self) -> CheckoutSessionRepository:
        pass

    @abstractmethod
    async def __call__(self):
        pass

    @abstractmethod
    async def commit(self):
        pass

    @abstractmethod
    async def rollback(self):
        pass


class CatalogService(ABC):
    @abstractmethod
    async def get_item(self, item_id: str) -> Optional[Item]:
        pass


class PaymentGateway(ABC):
    @abstractmethod
    async def initialize_payment(
        self,
        order_id: str,
        amount: float,
        payer_email: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> PaymentInitialization:
        pass

    @abstractmethod
    async def verify_payment(self, reference: str) -> PaymentVerification:
        pass


class DeliveryService(ABC):
    @abstractmethod
    async def validate_address(self, address: Address) -> dict:
        pass

    @abstractmethod
    async def get_delivery_options(self) -> DeliveryOptions:
        pass
