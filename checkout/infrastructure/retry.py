import asyncio
import logging
from enum import Enum
from typing import Awaitable, Callable

import httpx

logger = logging.getLogger(__name__)


class RequestKind(str, Enum):
    SAFE_READ = "safe_read"
    UNSAFE_WRITE = "unsafe_write"


class RetryPolicy:
    """Retries idempotent reads on 5xx and transport errors with exponential backoff.

    Writes (order creation, payment initialize/verify) are sent exactly once.
    """

    def __init__(self, max_retries: int = 3, base_delay: float = 0.5, sleep=asyncio.sleep):
        self._max_retries = max_retries
        self._base_delay = base_delay
        self._sleep = sleep

    def delay_for(self, attempt: int) -> float:
        return self._base_delay * (2 ** attempt)

    async def send(
        self,
        request: Callable[[], Awaitable[httpx.Response]],
        kind: RequestKind,
        description: str = "request",
    ) -> httpx.Response:
        if kind == RequestKind.UNSAFE_WRITE:
            return await request()

        attempt = 0
        while True:
            try:
                response = await request()
                if response.status_code < 500 or attempt >= self._max_retries:
                    return response
                logger.warning(
                    f"{description} returned {response.status_code} "
                    f"(retry {attempt + 1}/{self._max_retries})"
                )
            except httpx.RequestError as e:
                if attempt >= self._max_retries:
                    raise
                logger.warning(
                    f"{description} connection error (retry {attempt + 1}/{self._max_retries}): {e}"
                )

            await self._sleep(self.delay_for(attempt))
            attempt += 1
