import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI

from checkout.presentation.api import router
from checkout.database import engine, create_tables

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if engine is None:
        logger.warning("POSTGRES_CONNECTION_STRING is not set, skipping table creation")
    else:
        await create_tables()
        logger.info("Tables created")

    yield

    if engine is not None:
        await engine.dispose()
    logger.info("Checkout service stopped")


app = FastAPI(
    title="Checkout Service",
    description="Orders, coupons and payment reconciliation",
    version="1.0.0",
    lifespan=lifespan
)

app.include_router(router, prefix="/api")


@app.get("/health")
async def health():
    return {"status": "healthy"}
