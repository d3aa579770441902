from functools import lru_cache
from threading import Lock
from typing import Optional
import structlog
from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field, model_validator

# Environment Constants
ENV_PRODUCTION = "production"
ENV_STAGING = "staging"
ENV_DEVELOPMENT = "development"
ENV_LOCAL = "local"


@lru_cache
def get_settings() -> "Settings":
    """Returns a singleton instance of the application settings."""
    return Settings()


_settings_reload_lock = Lock()


def reload_settings_from_environment() -> "Settings":
    """
    Atomically rebuild and replace cached settings from environment values.

    This avoids mutating the cached singleton instance in-place.
    """
    logger = structlog.get_logger()
    with _settings_reload_lock:
        logger.info("settings_reload_started")
        get_settings.cache_clear()
        refreshed = get_settings()
        logger.info("settings_reload_completed")
        return refreshed


class Settings(BaseSettings):
    """
    Main configuration for the cluster billing service.
    Uses Pydantic-Settings for environment variable parsing from .env.
    """

    APP_NAME: str = "cluster-billing"
    VERSION: str = "0.1.0"
    DEBUG: bool = False
    # ENVIRONMENT options: local, development, staging, production
    ENVIRONMENT: str = ENV_DEVELOPMENT
    TESTING: bool = False

    # Database
    DATABASE_URL: Optional[str] = None
    DB_ECHO: bool = False
    DB_POOL_SIZE: int = 10
    DB_MAX_OVERFLOW: int = 10
    DB_POOL_TIMEOUT: int = 30
    DB_POOL_RECYCLE: int = 3600

    # OpenCost allocation source
    OPENCOST_URL: Optional[str] = None
    OPENCOST_TIMEOUT_SECONDS: float = 300.0
    OPENCOST_CACHE_TTL_SECONDS: float = 3600.0

    # Prometheus metrics backend
    PROMETHEUS_URL: Optional[str] = None
    PROMETHEUS_TIMEOUT_SECONDS: float = 60.0
    # Label carrying the process definition id in vector responses.
    # Unset means "use the only label of each series".
    PROMETHEUS_LABEL_NAME: Optional[str] = None

    HTTP_MAX_RETRIES: int = 3
    SNAPSHOT_WRITE_TIMEOUT_SECONDS: float = 30.0

    # Controller keys (user/namespace/controller) with factor based redistribution
    PROCESS_COST_SOURCES: list[str] = []
    MARSHALLING_COST_SOURCES: list[str] = []
    PROCESS_IO_COST_SOURCES: list[str] = []
    # process cost source -> value substituted for $instance_id
    PROCESS_COST_SOURCE_INSTANCE_IDS: dict[str, str] = {}

    # PromQL templates. Placeholders: $user_id, $__range, $instance_id
    USER_PROCESS_COST_FRACTION_QUERY: str = ""
    PROCESS_MARSHALLER_COST_FRACTION_QUERY: str = ""
    USER_MARSHALLER_COST_FRACTION_QUERY: str = ""
    USER_PROCESS_IO_COST_FRACTION_QUERY: str = ""
    USER_PROCESS_DEFINITION_COST_FRACTION_QUERY: str = ""

    # Scheduled job
    JOB_ENABLED: bool = False
    JOB_MONTHS: int = Field(default=2, description="Trailing full months per run")
    JOB_CRON: Optional[str] = None  # e.g. "0 3 1 * *", UTC

    ADMIN_ROLE: str = "admin"

    model_config = SettingsConfigDict(env_file=".env", env_ignore_empty=True)

    @model_validator(mode="after")
    def validate_all_config(self) -> "Settings":
        """Centralized validation, grouped by concern."""
        if self.TESTING and self.ENVIRONMENT in {ENV_PRODUCTION, ENV_STAGING}:
            raise ValueError(
                "TESTING must be false in staging/production runtime environments."
            )
        self._validate_job_config()
        self._validate_timeouts()
        if self.TESTING:
            return self

        self._validate_upstream_config()
        self._validate_database_config()
        return self

    def _validate_job_config(self) -> None:
        if self.JOB_MONTHS < 1:
            raise ValueError("JOB_MONTHS must be >= 1.")
        if self.JOB_CRON is not None and len(self.JOB_CRON.split()) != 5:
            raise ValueError("JOB_CRON must be a five field crontab expression.")

    def _validate_timeouts(self) -> None:
        for name in (
            "OPENCOST_TIMEOUT_SECONDS",
            "PROMETHEUS_TIMEOUT_SECONDS",
            "SNAPSHOT_WRITE_TIMEOUT_SECONDS",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0.")
        if self.OPENCOST_CACHE_TTL_SECONDS < 0:
            raise ValueError("OPENCOST_CACHE_TTL_SECONDS must be >= 0.")
        if self.HTTP_MAX_RETRIES < 1:
            raise ValueError("HTTP_MAX_RETRIES must be >= 1.")

    def _validate_upstream_config(self) -> None:
        """Both cost and metrics backends are required outside of tests."""
        if not self.OPENCOST_URL:
            raise ValueError("OPENCOST_URL is required.")
        if not self.PROMETHEUS_URL:
            raise ValueError("PROMETHEUS_URL is required.")

    def _validate_database_config(self) -> None:
        if self.is_production and not self.DATABASE_URL:
            raise ValueError("DATABASE_URL is required in production.")

    @property
    def is_production(self) -> bool:
        """True only when ENVIRONMENT is explicitly set to 'production'."""
        return self.ENVIRONMENT == ENV_PRODUCTION
