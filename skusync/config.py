"""All settings, loaded from the .env file."""
from decimal import Decimal
from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

MIN_SYNC_INTERVAL_MINUTES = 5


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    # App
    app_url: str = "http://localhost:8000"
    database_url: str = "sqlite:///./skusync.db"
    log_level: str = "INFO"

    # Naver Commerce (marketplace)
    naver_api_base: str = "https://api.commerce.naver.com"
    naver_client_id: str = ""
    naver_client_secret: str = ""
    naver_webhook_secret: str = ""
    naver_rate_burst: int = 2
    naver_rate_per_second: float = 2.0

    # Shopify (storefront)
    shopify_shop_domain: str = ""
    shopify_access_token: str = ""
    shopify_client_id: str = ""
    shopify_client_secret: str = ""
    shopify_api_version: str = "2024-10"
    shopify_location_id: str = ""
    shopify_webhook_secret: str = ""
    shopify_rate_burst: int = 40
    shopify_rate_per_second: float = 2.0

    # Platform calls
    platform_call_timeout_seconds: float = 10.0
    rate_limit_max_wait_seconds: float = 5.0
    token_refresh_margin_seconds: int = 60
    retry_max_attempts: int = 3
    retry_base_delay_seconds: float = 0.5
    retry_max_delay_seconds: float = 8.0

    # Sync behavior
    sync_enabled: bool = True
    sync_interval_minutes: int = 30
    sync_worker_count: int = Field(default=3, ge=1, le=10)
    pass_timeout_seconds: float = 900.0
    inventory_stale_after_seconds: float = 900.0
    inventory_tolerance: int = 0
    price_tolerance: Decimal = Decimal("0.00")

    # Pricing
    default_price_margin: Decimal = Decimal("1.15")
    source_currency: str = "KRW"
    target_currency: str = "USD"

    # Exchange rates
    exchange_rate_api_url: str = "https://open.er-api.com/v6/latest"
    exchange_rate_api_key: str = ""
    exchange_rate_refresh_minutes: int = 60
    quoted_rate_validity_hours: int = 24
    manual_rate_max_days: int = 7

    # Retention
    webhook_log_retention_days: int = 60
    activity_retention_days: int = 90

    @field_validator("sync_interval_minutes")
    @classmethod
    def _enforce_min_interval(cls, v: int) -> int:
        if v < MIN_SYNC_INTERVAL_MINUTES:
            raise ValueError(
                f"sync_interval_minutes must be at least {MIN_SYNC_INTERVAL_MINUTES}"
            )
        return v

    @property
    def is_production(self) -> bool:
        return self.app_url.startswith("https://") and "localhost" not in self.app_url

    @property
    def shopify_configured(self) -> bool:
        return bool(
            self.shopify_shop_domain
            and (self.shopify_access_token or self.shopify_client_id)
        )

    @property
    def naver_configured(self) -> bool:
        return bool(self.naver_client_id and self.naver_client_secret)


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
