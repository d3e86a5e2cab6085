from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


BASE_DIR = Path(__file__).resolve().parent.parent
DEFAULT_SQLITE_PATH = BASE_DIR / "studio_booking.db"
DEFAULT_SQLITE_URL = f"sqlite:///{DEFAULT_SQLITE_PATH}"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=BASE_DIR / ".env", env_prefix="STUDIO_", case_sensitive=False)

    api_token: str = Field(default="dev-token", description="Bearer token required for all API calls")
    database_url: str = Field(default=DEFAULT_SQLITE_URL, description="SQLAlchemy database URL")
    # Comma-separated values or '*' for all
    cors_origins: str = Field(default="*")
    environment: str = Field(default="development")

    # Rate limiting (per token+IP per minute)
    rate_limit_enabled: bool = Field(default=False)
    rate_limit_per_minute: int = Field(default=600)

    default_currency: str = Field(default="HUF")

    # Settlement inclusion policy defaults; ConfigEntry rows override these at runtime
    late_cancellation_hours: int = Field(default=24, ge=0)
    no_show_charge_entry_fee: bool = Field(default=True)
    no_show_charge_trainer_fee: bool = Field(default=False)
    late_cancel_charge_entry_fee: bool = Field(default=True)
    late_cancel_charge_trainer_fee: bool = Field(default=False)

    # Background settlement generation
    settlement_task_max_attempts: int = Field(default=3, ge=1)
    settlement_task_retry_delay_seconds: float = Field(default=0.5, ge=0)
    settlement_isolation_level: str = Field(default="SERIALIZABLE")

    @property
    def cors_origins_list(self) -> List[str]:
        s = (self.cors_origins or "").strip()
        if not s or s == "*":
            return ["*"]
        return [part.strip() for part in s.split(",") if part.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()  # type: ignore[call-arg]
