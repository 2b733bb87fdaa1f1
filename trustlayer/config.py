"""
Application configuration.
Force-loads the project .env, then reads settings with pydantic-settings.
"""

from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic_settings import BaseSettings, SettingsConfigDict

# Force-load .env (reload-safe); real environment variables win
BASE_DIR = Path(__file__).resolve().parent.parent
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)


class Settings(BaseSettings):
    """Settings loaded from the environment."""

    model_config = SettingsConfigDict(case_sensitive=False, extra="ignore")

    # Application
    app_name: str = "trustlayer"
    app_env: Literal["development", "staging", "production"] = "development"
    debug: bool = False

    # Order store
    database_url: str = "sqlite:///./trustlayer.db"

    # OTP verification
    otp_secret: str
    otp_ttl_minutes: int = 10
    expose_dev_codes: bool = False

    # Payment processor
    stripe_secret_key: str = ""
    webhook_secret: str
    strict_refund_reasons: bool = False

    # Operator auth
    jwt_secret: str

    # Message dispatch
    sendgrid_api_key: str = ""
    mail_from: str = "noreply@example.com"
    mail_from_name: str = "Marketplace"

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def is_production(self) -> bool:
        return self.app_env == "production"


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
