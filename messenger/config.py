from functools import lru_cache
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Application settings loaded from environment variables.
    Follows 12-factor app configuration principles.
    """

    # env_file is only used as fallback, env vars take precedence
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_ignore_empty=True,
    )

    # Database Configuration - required, SQLAlchemy URL
    DATABASE_URL: str

    # Logging Configuration
    LOG_LEVEL: str = "INFO"

    # Responses smaller than this many bytes are sent uncompressed
    GZIP_MINIMUM_SIZE: int = 500

    # Upper bound on messages accepted by one batch send request
    MAX_BATCH_SIZE: int = 100

    # Upper bound in bytes on a gzip request body once inflated
    MAX_REQUEST_BODY_SIZE: int = 1024 * 1024


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    Uses lru_cache to avoid reading .env file on every request.
    """
    return Settings()
