"""
Configuration Management
Loads environment variables and provides typed config objects.
"""

from pydantic_settings import BaseSettings
from pydantic import Field


class Settings(BaseSettings):
    """Application settings loaded from environment variables"""

    # GoHighLevel API (one credential per deployment, locationId per tenant)
    ghl_api_token: str = Field(default="", alias="GHL_API_TOKEN")
    ghl_api_base_url: str = Field(
        default="https://services.leadconnectorhq.com", alias="GHL_API_BASE_URL"
    )
    ghl_api_version: str = "2021-07-28"
    ghl_calendar_api_version: str = "2021-04-15"
    ghl_request_timeout: float = Field(default=30.0, alias="GHL_REQUEST_TIMEOUT")

    # Documented burst quota: 100 requests per 10 seconds
    ghl_rate_limit_capacity: int = Field(default=100, alias="GHL_RATE_LIMIT_CAPACITY")
    ghl_rate_limit_refill_per_second: float = Field(
        default=10.0, alias="GHL_RATE_LIMIT_REFILL_PER_SECOND"
    )

    # Retry policy for transient failures
    ghl_retry_attempts: int = Field(default=5, alias="GHL_RETRY_ATTEMPTS")
    ghl_retry_base_delay: float = Field(default=0.5, alias="GHL_RETRY_BASE_DELAY")
    ghl_retry_max_delay: float = Field(default=30.0, alias="GHL_RETRY_MAX_DELAY")

    # Inbound webhook
    ghl_webhook_token: str = Field(default="", alias="GHL_WEBHOOK_TOKEN")

    # Sync behaviour
    contact_sync_page_size: int = Field(default=100, alias="CONTACT_SYNC_PAGE_SIZE")
    contact_sync_max_items: int = Field(default=1000, alias="CONTACT_SYNC_MAX_ITEMS")
    sync_timeout_seconds: float = Field(default=300.0, alias="SYNC_TIMEOUT_SECONDS")
    sync_interval_minutes: int = Field(default=15, alias="SYNC_INTERVAL_MINUTES")
    default_appointment_minutes: int = Field(
        default=60, alias="DEFAULT_APPOINTMENT_MINUTES"
    )
    default_phone_region_code: str = Field(
        default="1", alias="DEFAULT_PHONE_REGION_CODE"
    )
    opportunity_source: str = "Bravo Service Suite"

    # Storage
    database_url: str = Field(default="sqlite:///./ghl_sync.db", alias="DATABASE_URL")

    # Alerting
    slack_webhook_url: str = Field(default="", alias="SLACK_WEBHOOK_URL")

    # App Settings
    port: int = Field(default=8080, alias="PORT")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    class Config:
        env_file = ".env"
        case_sensitive = False
        extra = "ignore"


# Global settings instance
settings = Settings()
