from functools import lru_cache
from pathlib import Path
from typing import Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_DIR = Path(__file__).resolve().parent.parent


class Settings(BaseSettings):
    """Runtime configuration read from the environment and ``.env``."""

    database_url: Optional[str] = Field(default=None, description="SQLAlchemy connection URL")
    app_env: str = Field(default="development", description="development / test / production")
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="console or json")
    jwt_secret: Optional[str] = Field(default=None, description="HS256 secret for bearer tokens")

    # Webhook verification
    card_webhook_secret: Optional[str] = None
    card_webhook_test_signature: str = "test_signature_123"
    aggregator_webhook_secret: Optional[str] = None
    webhook_strict: bool = True
    webhook_allow_unverified: Optional[bool] = Field(
        default=None, description="Unset: allowed outside production, rejected in production"
    )

    # Reconciliation
    status_cache_backend: str = Field(default="memory", description="memory or store")
    status_transitions: str = Field(default="log", description="log (last write wins) or enforce")
    default_currency: str = "KES"

    model_config = SettingsConfigDict(
        env_file=BASE_DIR / ".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        case_sensitive=False,
        extra="ignore",
    )

    @field_validator("log_level", "default_currency")
    @classmethod
    def _upper(cls, v: str) -> str:
        return v.upper()

    @field_validator("app_env", "log_format", "status_cache_backend", "status_transitions")
    @classmethod
    def _lower(cls, v: str) -> str:
        return v.lower()

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"

    @property
    def allow_unverified(self) -> bool:
        # fail-closed in production unless explicitly opened
        if self.webhook_allow_unverified is None:
            return not self.is_production
        return self.webhook_allow_unverified

    @property
    def enforce_transitions(self) -> bool:
        return self.status_transitions == "enforce"


@lru_cache()
def get_settings() -> Settings:
    return Settings()
