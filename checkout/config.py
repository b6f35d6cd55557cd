import os
from dotenv import load_dotenv

load_dotenv()


class Settings:
    # Database
    POSTGRES_CONNECTION_STRING: str = os.getenv("POSTGRES_CONNECTION_STRING", "")

    # API
    API_TOKEN: str = os.getenv("API_TOKEN", "")
    SERVICE_URL: str = os.getenv("SERVICE_URL", "")

    # Services
    CATALOG_BASE_URL: str = os.getenv("CATALOG_BASE_URL", "http://localhost:5000")
    DELIVERY_BASE_URL: str = os.getenv("DELIVERY_BASE_URL", "http://localhost:5000/api")

    # Payment processor
    PAYMENT_BASE_URL: str = os.getenv("PAYMENT_BASE_URL", "https://api.paystack.co")
    PAYMENT_SECRET_KEY: str = os.getenv("PAYMENT_SECRET_KEY", "")
    PAYMENT_CURRENCY: str = os.getenv("PAYMENT_CURRENCY", "GHS")

    # Pricing
    TAX_RATE: float = float(os.getenv("TAX_RATE", "0.08"))
    REFUND_WINDOW_DAYS: int = int(os.getenv("REFUND_WINDOW_DAYS", "30"))

    # Retry policy for safe reads
    RETRY_MAX_ATTEMPTS: int = int(os.getenv("RETRY_MAX_ATTEMPTS", "3"))
    RETRY_BASE_DELAY: float = float(os.getenv("RETRY_BASE_DELAY", "0.5"))

    # Address validation debounce, seconds
    ADDRESS_DEBOUNCE_SECONDS: float = float(os.getenv("ADDRESS_DEBOUNCE_SECONDS", "0.3"))

    @property
    def DATABASE_URL(self) -> str:
        """Async URL for the application"""
        return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql+asyncpg://")

    @property
    def SYNC_DATABASE_URL(self) -> str:
        """Sync URL for Alembic"""
        return self.POSTGRES_CONNECTION_STRING.replace("postgres://", "postgresql://")


settings = Settings()
