from decimal import Decimal

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENV: str = "local"
    APP_NAME: str = "Marketplace API"
    # Comma-separated origins for CORS. If empty, uses localhost defaults.
    CORS_ORIGINS: str = ""
    LOG_LEVEL: str = "INFO"

    SECRET_KEY: str
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    DATABASE_URL: str

    @field_validator("DATABASE_URL", mode="after")
    @classmethod
    def normalize_database_url(cls, v: str) -> str:
        """Render and others give postgres://; SQLAlchemy expects postgresql+psycopg2://."""
        if v and v.startswith("postgres://"):
            return "postgresql+psycopg2://" + v[11:]
        return v
    REDIS_URL: str = "redis://localhost:6379/0"

    # Pricing
    CURRENCY: str = "RWF"
    PLATFORM_FEE_RATE: Decimal = Decimal("0.05")  # admin may override via settings table

    # Cart snapshots (one JSON file per cart id)
    CART_STORAGE_DIR: str = "./data/carts"
    # Carts untouched for this long are removed by the beat job
    CART_TTL_HOURS: int = 72

    # Pending payments older than this are marked failed by the worker
    PAYMENT_PENDING_TIMEOUT_MINUTES: int = 30

    # PayPack mobile money
    PAYPACK_BASE_URL: str = "https://payments.paypack.rw/api"
    PAYPACK_CLIENT_ID: str = ""
    PAYPACK_CLIENT_SECRET: str = ""
    PAYPACK_WEBHOOK_SECRET: str = ""
    PAYPACK_WEBHOOK_VERIFY: bool = False
    PAYPACK_WEBHOOK_MODE: str = ""  # "development" routes webhooks to the sandbox receiver
    PAYPACK_TOKEN_REFRESH_MARGIN_SECONDS: int = 60
    PAYPACK_TIMEOUT: int = 25
    PAYPACK_SANDBOX: bool = False  # If True, skip real PayPack call and return a fake pending ref (for dev)


settings = Settings()
