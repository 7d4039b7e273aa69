import logging
import sys
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    api_url: str = "http://localhost:8000/api/v1"
    supabase_url: str = "http://localhost:8000"
    supabase_anon_key: str = ""
    verification_photo_bucket: str = "verification-photos"
    request_timeout: float = 30.0

    # How long the driver submission waits for photo registrations to show up
    registration_confirm_attempts: int = 5
    registration_confirm_interval: float = 0.2

    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_prefix="DRIVEDROP_", env_file=".env", extra="ignore"
    )


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance"""
    return Settings()


def configure_logging(level: str | None = None) -> logging.Logger:
    logger = logging.getLogger("drivedrop")
    logger.setLevel(level or get_settings().log_level)
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")
    )
    logger.handlers.clear()
    logger.addHandler(handler)
    return logger
