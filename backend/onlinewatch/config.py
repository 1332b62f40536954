"""
Configuration settings for the onlinewatch scraper service
"""
import logging
from datetime import timedelta
from pydantic_settings import BaseSettings
from typing import List

_config_logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Application settings"""

    # Postgres connection (asyncpg)
    DATABASE_URL: str = ""

    # Upstream "online users" API
    ONLINE_USERS_URL: str = "https://new-api.ceo.ca/api/channels/online_users"
    REQUEST_TIMEOUT_SECONDS: float = 5.0

    # Channel list (JSON array of channel names)
    CHANNELS_FILE: str = "channels.json"

    # Scrape cycle
    SCRAPE_INTERVAL_SECONDS: float = 300.0
    SCRAPE_BATCH_SIZE: int = 5
    SCRAPE_BATCH_DELAY_SECONDS: float = 1.0
    RATE_LIMIT_BACKOFF_SECONDS: float = 5.0

    # Visits / presence
    VISIT_DEDUP_MINUTES: int = 10
    MAX_ACTIVE_USERS: int = 10000

    # API
    API_HOST: str = "0.0.0.0"
    API_PORT: int = 3008
    CORS_ORIGINS: str = "*"

    # Sentry
    SENTRY_DSN: str = ""

    # Environment (normalized to lowercase)
    ENVIRONMENT: str = "development"

    def model_post_init(self, __context) -> None:
        # Normalize ENVIRONMENT to lowercase to avoid case-sensitivity issues
        object.__setattr__(self, "ENVIRONMENT", self.ENVIRONMENT.strip().lower())
        if self.SCRAPE_BATCH_SIZE < 1:
            _config_logger.warning("SCRAPE_BATCH_SIZE=%d is invalid, using 1", self.SCRAPE_BATCH_SIZE)
            object.__setattr__(self, "SCRAPE_BATCH_SIZE", 1)
        if self.MAX_ACTIVE_USERS < 1:
            _config_logger.warning("MAX_ACTIVE_USERS=%d is invalid, using 1", self.MAX_ACTIVE_USERS)
            object.__setattr__(self, "MAX_ACTIVE_USERS", 1)

    @property
    def cors_origins_list(self) -> List[str]:
        """Parse CORS origins into a list"""
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",")]

    @property
    def interval_ms(self) -> int:
        return int(self.SCRAPE_INTERVAL_SECONDS * 1000)

    @property
    def dedup_threshold(self) -> timedelta:
        """Minimum gap between two visits of the same user in the same channel."""
        return timedelta(minutes=self.VISIT_DEDUP_MINUTES)

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignore extra environment variables


# Global settings instance
settings = Settings()
