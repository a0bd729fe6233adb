"""Application configuration."""

from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # API Settings
    APP_NAME: str = "Banking Workflow Engine"
    APP_VERSION: str = "1.0.0"
    API_V1_PREFIX: str = "/api/v1"
    DEBUG: bool = False
    ENVIRONMENT: str = "development"  # development, staging, production

    # Server Settings
    HOST: str = "0.0.0.0"
    PORT: int = 8000

    # Database Settings
    DATABASE_URL: str = "sqlite+aiosqlite:///./banking.db"
    SQLALCHEMY_ECHO: bool = False
    DB_POOL_SIZE: int = 20
    DB_MAX_OVERFLOW: int = 10

    # Redis Settings (Celery broker)
    REDIS_URL: str = "redis://localhost:6379/0"

    # CORS Settings
    ALLOWED_ORIGINS: str = "http://localhost:3000,http://localhost:8080"

    # Workflow engine
    DEFAULT_STEP_TIMEOUT_MS: int = 30000
    VALIDATION_STEP_TIMEOUT_MS: int = 10000
    OTP_MAX_ATTEMPTS: int = 5
    SERVICE_GATEWAY_URL: str = "http://localhost:9000"
    SERVICE_GATEWAY_API_KEY: str = ""

    # Transactions
    DEFAULT_CURRENCY: str = "MWK"
    TXN_DEFAULT_MAX_RETRIES: int = 5
    TXN_RETRY_INITIAL_DELAY_SECONDS: int = 120
    TXN_RETRY_MAX_DELAY_SECONDS: int = 3600

    # Core banking ledger
    LEDGER_BASE_URL: str = "http://localhost:9100"
    LEDGER_API_KEY: str = ""
    LEDGER_TIMEOUT_SECONDS: float = 30.0

    # Retry scheduler
    RETRY_SCHEDULER_ENABLED: bool = False  # in-process loop; Celery beat runs it otherwise
    RETRY_SCHEDULER_INTERVAL_SECONDS: int = 30
    RETRY_SCHEDULER_BATCH_SIZE: int = 50
    RETRY_WORKER_CONCURRENCY: int = 4
    # PROCESSING rows older than the ledger timeout plus this are re-driven
    RETRY_STALE_PROCESSING_GRACE_SECONDS: int = 60

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

    @property
    def cors_origins_list(self) -> list[str]:
        """Parse ALLOWED_ORIGINS string into a list."""
        return [origin.strip() for origin in self.ALLOWED_ORIGINS.split(",") if origin.strip()]

    def validate_secrets(self) -> None:
        """Validate that outbound credentials are set in production.

        Raises:
            RuntimeError: If production environment has no LEDGER_API_KEY
        """
        if self.is_production and not self.LEDGER_API_KEY:
            raise RuntimeError(
                "CRITICAL: LEDGER_API_KEY environment variable must be set in production."
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
