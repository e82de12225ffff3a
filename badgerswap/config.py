from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # Pydantic v2 settings config
    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required from .env
    DATABASE_URL: str

    # Logging Configuration - required from .env
    LOG_LEVEL: str

    # Secret shared with the identity provider for signing X-User-Id assertions
    IDENTITY_SECRET: str

    # Store call policy: no store call may hang indefinitely
    STORE_TIMEOUT_SECONDS: float = 5.0
    STORE_MAX_ATTEMPTS: int = 3
    STORE_RETRY_BACKOFF_SECONDS: float = 0.05

    # Fallbacks for denormalized display fields captured on a conversation
    DEFAULT_BUYER_NAME: str = "Buyer"
    DEFAULT_SELLER_NAME: str = "Seller"
    DEFAULT_PRODUCT_TITLE: str = "Listing"

    MAX_MESSAGE_LENGTH: int = 4096

    # Users must sign up with an institutional address
    INSTITUTION_EMAIL_DOMAIN: str = "wisc.edu"

    # Moderation
    ADMIN_USER_IDS: list[str] = []
    REPORT_REPUTATION_PENALTY: float = 0.2
    DEFAULT_REPUTATION_SCORE: float = 5.0


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()


# Global settings instance
settings = get_settings()
