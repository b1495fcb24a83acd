"""
Centralized configuration management using Pydantic Settings.
Validates environment variables on startup and provides typed config access.
"""

from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import List, Optional


class Settings(BaseSettings):
    """
    Application settings with validation.
    Loads from environment variables with fallback to .env file.
    """

    # Database Configuration
    database_url_sqlite: str = Field(
        default="sqlite+aiosqlite:///./approval_workflow.db",
        description="SQLite database URL for local development"
    )
    database_echo: bool = Field(
        default=False,
        description="Log all SQL queries"
    )

    # Workflow Engine Configuration
    no_config_rejection_roles: List[str] = Field(
        default=["COMPANY_ADMIN", "LOCATION_ADMIN", "SITE_ADMIN", "ADMIN", "SUPER_ADMIN"],
        description="Roles that may reject entities whose type has no workflow configuration. Empty disables the fallback."
    )
    enforce_stage_precondition: bool = Field(
        default=True,
        description="Only write an entity if its stage and status are unchanged since it was read"
    )

    # Notification Configuration
    enable_email_notifications: bool = Field(
        default=False,
        description="Global switch for workflow notifications"
    )
    notifications_demo_mode: bool = Field(
        default=False,
        description="Render and log notifications without delivering them"
    )
    notification_dedupe_window_seconds: int = 300
    quiet_hours_buffer_minutes: int = 1
    default_quiet_hours_timezone: str = "Asia/Kolkata"
    company_config_cache_ttl_seconds: int = 300
    default_brand_name: str = "UDS"
    default_brand_color: str = "#4A90A4"

    # Notification Queue Sweep
    notification_queue_check_interval_seconds: int = 60
    notification_queue_batch_size: int = 50
    notification_queue_max_attempts: int = 3
    notification_queue_retry_delay_seconds: int = 300
    notification_queue_stale_claim_seconds: int = 900

    # Outbound E-mail (HTTP mail API)
    email_api_url: Optional[str] = None
    email_api_key: Optional[str] = None
    email_from_address: Optional[str] = None
    email_from_name: str = "UDS Notifications"
    email_request_timeout_seconds: float = 10.0

    # Retry Configuration
    max_retry_attempts: int = 3
    retry_initial_wait_seconds: float = 2.0
    retry_max_wait_seconds: float = 10.0

    # Circuit Breaker Configuration
    circuit_breaker_fail_max: int = 5
    circuit_breaker_timeout_duration: int = 60

    # Event Bus Configuration
    event_bus_max_queue_size: int = 1000

    # Environment
    environment: str = "development"
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    @property
    def database_url(self) -> str:
        """
        Returns the SQLite database URL.
        """
        return self.database_url_sqlite

    def validate_critical_config(self):
        """
        Validate critical configuration on startup.
        Raises ValueError if critical config is missing.
        """
        errors = []

        if not self.database_url:
            errors.append("DATABASE_URL must be set")

        if self.notification_queue_max_attempts < 1:
            errors.append("NOTIFICATION_QUEUE_MAX_ATTEMPTS must be at least 1")

        # Warn about e-mail if not configured (non-critical)
        if self.enable_email_notifications and not self.email_api_url:
            import structlog
            logger = structlog.get_logger()
            logger.warning(
                "email_not_configured",
                message="EMAIL_API_URL not set - e-mail delivery will fail"
            )

        if errors:
            raise ValueError(f"Configuration errors: {', '.join(errors)}")

    def get_connection_args(self) -> dict:
        """Get SQLite-specific connection arguments"""
        return {
            "timeout": 10.0,
            "check_same_thread": False,
        }


# Global settings instance
settings = Settings()
