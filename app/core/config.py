import logging
from decimal import Decimal

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # DB
    DATABASE_URL: str = "sqlite:///./checkout.db"

    # Security / JWT
    SECRET_KEY: str = "change-me-in-production"
    ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    LOG_LEVEL: str = "INFO"

    # Checkout
    TAX_RATE: Decimal = Decimal("0.08")
    LOOKUP_TIMEOUT_SECONDS: float = 2.0
    SLOW_RESOLUTION_MS: float = 30.0

    # Fraud scoring weights (points added when a check triggers)
    FRAUD_WEIGHT_UNUSUAL_AMOUNT: int = 30
    FRAUD_WEIGHT_NEW_CUSTOMER_HIGH_VALUE: int = 25
    FRAUD_WEIGHT_SHIPPING_MISMATCH: int = 20
    FRAUD_WEIGHT_CONTACT_MISMATCH: int = 10
    FRAUD_WEIGHT_HIGH_DISCOUNT: int = 15
    FRAUD_WEIGHT_VELOCITY: int = 20

    # Fraud scoring thresholds
    FRAUD_AMOUNT_MULTIPLIER: Decimal = Decimal("5")
    FRAUD_HIGH_VALUE_AMOUNT: Decimal = Decimal("500")
    FRAUD_TYPICAL_DISCOUNT_PERCENT: Decimal = Decimal("20")
    FRAUD_DISCOUNT_MULTIPLIER: Decimal = Decimal("1.5")
    FRAUD_VELOCITY_MAX_ORDERS: int = 3
    FRAUD_VELOCITY_WINDOW_MINUTES: int = 60
    FRAUD_MEDIUM_RISK_SCORE: int = 50
    FRAUD_HIGH_RISK_SCORE: int = 80

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()


def setup_logging():
    """Configure root logging from settings."""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
