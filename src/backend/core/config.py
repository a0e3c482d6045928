"""
Application configuration using Pydantic Settings.

All configuration is loaded from environment variables or a local .env file.
"""

from functools import lru_cache
from typing import Any

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
    )

    # Application
    APP_NAME: str = "SecurePolls"
    APP_ENV: str = "development"
    DEBUG: bool = False
    SECRET_KEY: str = ""  # Required - signs caller access tokens

    # Ballot encryption and verification-token keying.
    # Rotating this value makes every outstanding verification token
    # unverifiable and every stored ballot undecryptable.
    VOTE_ENCRYPTION_KEY: str = ""  # Required

    # Database
    DATABASE_URL: str | None = None  # Overrides the POSTGRES_* settings when set
    POSTGRES_HOST: str = "localhost"
    POSTGRES_PORT: int = 5432
    POSTGRES_USER: str = "securepolls"
    POSTGRES_PASSWORD: str = ""
    POSTGRES_DB: str = "securepolls"
    DB_POOL_SIZE: int = 5
    DB_MAX_OVERFLOW: int = 10
    DB_ECHO: bool = False
    SQLITE_BUSY_TIMEOUT_SECONDS: float = 30.0

    # Secure voting
    VOTE_SUBMIT_MAX_ATTEMPTS: int = 3  # Retries on serialization conflicts

    # Authentication
    JWT_ALGORITHM: str = "HS256"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # CORS - stored as comma-separated string to avoid pydantic-settings JSON parsing issues
    CORS_ORIGINS: str = "http://localhost:3000"

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_JSON: bool = False

    @field_validator("SECRET_KEY", "VOTE_ENCRYPTION_KEY")
    @classmethod
    def validate_required_secrets(cls, v: str, info: Any) -> str:
        """Validate that required secrets are set."""
        if not v:
            raise ValueError(f"{info.field_name} must be set in environment")
        return v

    @field_validator("VOTE_SUBMIT_MAX_ATTEMPTS")
    @classmethod
    def validate_attempts(cls, v: int) -> int:
        if v < 1:
            raise ValueError("VOTE_SUBMIT_MAX_ATTEMPTS must be at least 1")
        return v

    @property
    def database_url(self) -> str:
        """Resolve the async database URL."""
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return (
            f"postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}"
            f"@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}"
        )

    @property
    def cors_origins_list(self) -> list[str]:
        """Get CORS origins as a list."""
        import json

        try:
            return json.loads(self.CORS_ORIGINS)
        except json.JSONDecodeError:
            return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


settings = get_settings()
