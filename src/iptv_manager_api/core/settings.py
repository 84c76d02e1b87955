from functools import lru_cache
from typing import Annotated, Any, Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="allow")

    environment: Literal["development", "staging", "production"] = "development"
    database_url: str = "sqlite+aiosqlite:///./iptv_manager.db"
    database_echo: bool = False

    # Logging / tracing
    log_level: str = "INFO"
    log_json: bool = True
    tracing_enabled: bool = True

    # Application URLs
    frontend_url: str = "http://localhost:3000"
    api_base_url: str = "http://localhost:8000"

    # Internal API security (registration flow, subscription service, scrapers)
    internal_api_key: str = ""

    # Referral rewards
    referral_reward_points: int = 500
    referral_auto_complete_on_subscription: bool = False
    referral_code_prefix_length: int = 3
    referral_code_random_length: int = 6
    subscription_renewal_points: int = 0

    # Reward redemptions
    redemption_validity_days: int = 30
    redemption_auto_approve_categories: Annotated[list[str], NoDecode] = Field(default_factory=list)
    reward_low_stock_threshold: int = 5

    # Level table override; empty keeps the built-in Bronze..Diamante ladder
    loyalty_levels: list[dict[str, Any]] = Field(default_factory=list)

    # Transient storage failures
    storage_retry_attempts: int = 3
    storage_retry_base_backoff_seconds: float = 0.05
    storage_retry_max_backoff_seconds: float = 1.0

    # Loyalty scheduler (redemption expiry sweep)
    loyalty_job_scheduler_enabled: bool = False
    loyalty_job_schedule_path: str = "config/schedules.toml"

    @field_validator("redemption_auto_approve_categories", mode="before")
    @classmethod
    def _parse_category_list(cls, value: object) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            return [item.strip().lower() for item in value.split(",") if item.strip()]
        if isinstance(value, (list, tuple, set)):
            return [str(item).strip().lower() for item in value if str(item).strip()]
        return []

    @field_validator("storage_retry_attempts")
    @classmethod
    def _ensure_positive_attempts(cls, value: int) -> int:
        return max(value, 1)


@lru_cache
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
