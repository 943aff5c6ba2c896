from functools import lru_cache
from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Panel settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Remote Partnership Service
    API_BASE_URL: str = "http://localhost:5000/api"
    API_TOKEN: Optional[str] = None
    REQUEST_TIMEOUT_SECONDS: float = Field(default=10.0, gt=0)

    # Logging
    LOG_LEVEL: str = "INFO"

    # Polling cadence (seconds)
    MESSAGE_POLL_INTERVAL_SECONDS: float = Field(default=5.0, gt=0)
    MEETING_POLL_INTERVAL_SECONDS: float = Field(default=10.0, gt=0)
    COUNTDOWN_TICK_SECONDS: float = Field(default=1.0, gt=0)

    # Page size for a message poll
    MESSAGE_PAGE_SIZE: int = Field(default=200, ge=1)

    @model_validator(mode="after")
    def check_poll_ratio(self) -> "Settings":
        """Messages must be polled at least as often as meetings."""
        if self.MESSAGE_POLL_INTERVAL_SECONDS > self.MEETING_POLL_INTERVAL_SECONDS:
            raise ValueError(
                "MESSAGE_POLL_INTERVAL_SECONDS must not exceed MEETING_POLL_INTERVAL_SECONDS"
            )
        return self


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every panel open.
    """
    return Settings()
