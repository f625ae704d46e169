import logging
from decimal import Decimal
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """settings loaded from environment variables (or a local .env file)."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore", case_sensitive=True)

    # App
    APP_NAME: str = "Tranche Settlement Service"
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "dbname=tranches user=tranches password=secret host=localhost port=5432"

    # The operator's own id in the agent directory. Sponsor chains stop here.
    OPERATOR_ID: str = "operator"

    # Batch economics
    UNIT_COST: Decimal = Decimal("2400")
    OPERATOR_INVESTMENT_PCT: Decimal = Decimal("50")
    REWARD_FUND_PER_UNIT: Decimal = Decimal("200")
    # batches up to this size get 2 tranches, bigger ones get 3
    TWO_TRANCHE_MAX_QUANTITY: int = 50

    # Settlement triggers (stock percentages)
    EARLY_TRIGGER_STOCK_PCT: Decimal = Decimal("10")
    LATE_TRIGGER_STOCK_PCT: Decimal = Decimal("20")
    LOW_STOCK_NOTICE_PCT: Decimal = Decimal("25")
    # expected-amount changes at or below this are not worth a new notice
    EXPECTED_AMOUNT_TOLERANCE: Decimal = Decimal("1")

    # Commission
    MAX_SPONSOR_HOPS: int = 10

    # Wholesale
    BULK_MIN_QUANTITY: int = 20

    # Tranche sweep
    TRANCHE_AUTO_TRANSIT_HOURS: int = 2
    TRANCHE_SWEEP_MINUTES: int = 5

    # Outbox relay
    OUTBOX_POLL_SECONDS: int = 5
    OUTBOX_BATCH_SIZE: int = 50
    OUTBOX_MAX_RETRIES: int = 3
    OUTBOX_BACKOFF_CAP_SECONDS: int = 8
    OUTBOX_RETENTION_DAYS: int = 7
    OUTBOX_CLEANUP_HOURS: int = 24

    # run the background jobs inside the API process
    SCHEDULER_ENABLED: bool = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()


def configure_logging(level: str = None):
    logging.basicConfig(
        level=(level or settings.LOG_LEVEL).upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
