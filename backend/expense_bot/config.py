from functools import lru_cache
import os
from pathlib import Path

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, field_validator, model_validator

_ENV_CANDIDATES = (
    Path(__file__).resolve().parent.parent.parent / ".env",
    Path(__file__).resolve().parent.parent / ".env",
    Path.cwd() / ".env",
)

for env_path in _ENV_CANDIDATES:
    if env_path.is_file():
        load_dotenv(env_path, override=False)
        break


class Settings(BaseSettings):
    """Application configuration sourced from environment variables."""

    database_url: str = "sqlite:///./expense_bot.db"
    telegram_bot_token: str | None = Field(default=None, alias="TELEGRAM_BOT")
    home_currency: str = "JPY"
    ocr_languages: str = "jpn+eng"

    # Receipt understanding
    default_tax_rate: float = 0.10
    max_candidate_amount: int = 10_000_000

    # Synchronous latency budget, in milliseconds
    total_budget_ms: int = 1500
    light_phase_fraction: float = 0.4
    safety_margin_ms: int = 100
    min_full_phase_ms: int = 100
    queued_job_timeout_s: float = 30.0

    # In-memory stores
    token_ttl_seconds: int = 5 * 60
    processed_cache_size: int = 1000
    stale_processing_seconds: int = 10 * 60

    # Exchange rates
    exchange_rate_url: str = "https://api.exchangerate-api.com/v4/latest/{base}"
    exchange_rate_ttl_seconds: int = 8 * 60 * 60
    exchange_rate_timeout_s: float = 5.0

    # Asynchronous escalation
    service_url: str = "http://localhost:8000"
    task_queue_delay_seconds: float = 2.0

    model_config = SettingsConfigDict(env_file=None, populate_by_name=True)

    @field_validator("home_currency", mode="before")
    @classmethod
    def normalise_currency(cls, value: object) -> str:
        if isinstance(value, str) and len(value.strip()) == 3:
            return value.strip().upper()
        raise ValueError("home_currency must be a three-letter ISO code.")

    @field_validator("light_phase_fraction")
    @classmethod
    def check_fraction(cls, value: float) -> float:
        if not 0 < value < 1:
            raise ValueError("light_phase_fraction must be between 0 and 1.")
        return value

    @model_validator(mode="after")
    def populate_from_env(self) -> "Settings":
        if not self.telegram_bot_token:
            self.telegram_bot_token = os.getenv("TELEGRAM_BOT")
        self.service_url = self.service_url.rstrip("/")
        return self


@lru_cache
def get_settings() -> Settings:
    """Return cached settings to avoid repeated environment parsing."""
    return Settings()
