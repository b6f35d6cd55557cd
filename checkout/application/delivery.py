import asyncio
import logging
from typing import Dict, List, Optional

from checkout.domain.models import (
    Address, AddressValidation, DeliveryOptions, DeliveryZone, DEFAULT_DELIVERY_ZONE,
)
from checkout.domain.exceptions import DeliveryServiceError
from checkout.application.interfaces import DeliveryService

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 0.3


class _PendingValidation:
    def __init__(self):
        self.address: Optional[Address] = None
        self.waiters: List[asyncio.Future] = []
        self.timer: Optional[asyncio.TimerHandle] = None


class DeliveryZoneResolver:
    """Maps a shipping address to a delivery zone and its flat fee.

    An invalid address blocks checkout but is never fatal: the address is
    returned untouched so it can be corrected and validated again.
    """

    def __init__(
        self,
        delivery_service: DeliveryService,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        default_zone: DeliveryZone = DEFAULT_DELIVERY_ZONE,
    ):
        self._delivery = delivery_service
        self._debounce = debounce_seconds
        self._default_zone = default_zone
        self._pending: Dict[str, _PendingValidation] = {}
        self._tasks = set()

    async def get_delivery_options(self) -> DeliveryOptions:
        try:
            options = await self._delivery.get_delivery_options()
        except DeliveryServiceError as e:
            logger.warning(f"Delivery options unavailable, using default zone: {e}")
            return DeliveryOptions(zones=[self._default_zone], default_zone=self._default_zone.id)
        if not options.zones:
            return DeliveryOptions(zones=[self._default_zone], default_zone=self._default_zone.id)
        return options

    async def validate_address(self, address: Address) -> AddressValidation:
        if not address.city.strip() or not address.country.strip():
            return AddressValidation(
                is_valid=False,
                message="City and country are required to check delivery",
                address=address,
            )

        result = await self._delivery.validate_address(address)
        is_valid = bool(result.get("isValid"))
        zone_id = result.get("zoneId")
        message = result.get("message")

        if not is_valid:
            logger.warning(f"Address in {address.city}, {address.country} rejected: {message}")
            return AddressValidation(
                is_valid=False,
                zone_id=zone_id,
                message=message or "We do not deliver to this address",
                address=address,
            )

        zone = self._default_zone
        if zone_id:
            options = await self.get_delivery_options()
            zone = next((z for z in options.zones if z.id == zone_id), self._default_zone)

        logger.info(f"Address in {address.city}, {address.country} resolved to zone {zone.id} ({zone.price})")
        return AddressValidation(is_valid=True, zone=zone, zone_id=zone.id, message=message, address=address)

    async def validate_debounced(self, address: Address, key: str = "default") -> AddressValidation:
        """Coalesces calls made within the debounce window.

        Every caller in the window gets the result for the most recent address.
        """
        loop = asyncio.get_running_loop()
        pending = self._pending.setdefault(key, _PendingValidation())
        waiter = loop.create_future()
        pending.waiters.append(waiter)
        pending.address = address
        if pending.timer is not None:
            pending.timer.cancel()
        pending.timer = loop.call_later(self._debounce, self._fire, key)
        return await waiter

    def _fire(self, key: str) -> None:
        pending = self._pending.pop(key, None)
        if pending is None:
            return
        task = asyncio.ensure_future(self._resolve(pending.address, pending.waiters))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resolve(self, address: Address, waiters: List[asyncio.Future]) -> None:
        try:
            result = await self.validate_address(address)
        except Exception as e:
            for waiter in waiters:
                if not waiter.done():
                    waiter.set_exception(e)
            return
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(result)
