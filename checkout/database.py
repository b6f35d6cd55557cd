from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from checkout.config import settings
from checkout.infrastructure.db_schema import metadata


def build_engine(url: str):
    engine = create_async_engine(url, pool_pre_ping=True)
    if engine.dialect.name == "sqlite":
        # SQLite ignores FOR UPDATE, take the write lock when the transaction starts
        @event.listens_for(engine.sync_engine, "connect")
        def _no_implicit_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")
    return engine


engine = build_engine(settings.DATABASE_URL) if settings.POSTGRES_CONNECTION_STRING else None
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_tables(bind=None):
    async with (bind or engine).begin() as conn:
        await conn.run_sync(metadata.create_all)
