from contextlib import asynccontextmanager
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from checkout.infrastructure.repositories import (
    SQLAlchemyOrderRepository,
    SQLAlchemyCouponRepository,
    SQLAlchemyCartRepository,
    SQLAlchemyCheckoutSessionRepository
)


class UnitOfWork:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @asynccontextmanager
    async def __call__(self):
        async with self._session_factory() as session:
            try:
                uow_impl = _UnitOfWorkImpl(session)
                yield uow_impl
                # anything not committed is dropped
                await session.rollback()
            except Exception:
                await session.rollback()
                raise


class _UnitOfWorkImpl:
    def __init__(self, session: AsyncSession):
        self._session = session
        self.orders = SQLAlchemyOrderRepository(session)
        self.coupons = SQLAlchemyCouponRepository(session)
        self.carts = SQLAlchemyCartRepository(session)
        self.sessions = SQLAlchemyCheckoutSessionRepository(session)

    async def commit(self):
        await self._session.commit()

    async def rollback(self):
        await self._session.rollback()
