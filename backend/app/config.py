"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Application
    APP_NAME: str = "Account Automation Engine"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production, testing

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./automation.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Redis Settings (Celery broker + result backend)
    REDIS_URL: str = "redis://localhost:6379/0"

    # Vendor automation API
    VENDOR_API_URL: str = "http://localhost:9000"
    VENDOR_API_KEY: str = ""
    VENDOR_TIMEOUT: float = 30.0
    VENDOR_POLL_INTERVAL: float = 5.0
    VENDOR_POLL_ATTEMPTS: int = 36

    # AI text generation (bios, prompt answers)
    ANTHROPIC_API_KEY: str = ""
    CLAUDE_MODEL: str = "claude-sonnet-4-5-20250929"
    CLAUDE_MAX_TOKENS: int = 600
    CLAUDE_TEMPERATURE: float = 0.85
    CLAUDE_TIMEOUT: int = 120
    CLAUDE_MAX_RETRIES: int = 3
    CLAUDE_RETRY_DELAY: float = 1.0

    # Locks (seconds)
    LOCK_TTL_CONTROL: int = 60  # pause / resume / stop / start
    LOCK_TTL_EXECUTE: int = 300

    # System config cache (seconds)
    CONFIG_CACHE_TTL: int = 300

    # Recovery
    RECOVERY_MIN_AGE_MINUTES: int = 10
    RECOVERY_MAX_AGE_HOURS: int = 24
    RECOVERY_BATCH_SIZE: int = 10
    RECOVERY_BATCH_PAUSE: float = 1.0
    RECOVERY_MAX_ATTEMPTS: int = 3

    # Cleanup retention (days)
    CLEANUP_INSTANCE_RETENTION_DAYS: int = 30
    CLEANUP_LOG_RETENTION_DAYS: int = 7
    CLEANUP_SCHEDULED_TASK_RETENTION_DAYS: int = 1

    # Logging
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "json"  # json or text

    @property
    def is_development(self) -> bool:
        """Check if running in development mode."""
        return self.ENVIRONMENT == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode."""
        return self.ENVIRONMENT == "production"

    def validate_secrets(self) -> None:
        """Validate that the vendor and AI credentials are set in production.

        Raises:
            RuntimeError: If production environment is missing VENDOR_API_KEY
                or ANTHROPIC_API_KEY
        """
        if not self.is_production:
            return
        for name in ("VENDOR_API_KEY", "ANTHROPIC_API_KEY"):
            if not getattr(self, name):
                raise RuntimeError(
                    f"CRITICAL: {name} environment variable must be set in production."
                )

    class Config:
        """Pydantic config."""

        env_file = ".env"
        case_sensitive = True


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings.

    Uses caching to ensure settings are loaded only once.

    Returns:
        Settings object with all configuration values
    """
    return Settings()
