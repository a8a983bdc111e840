"""
Configuration management using Pydantic Settings.
Loads environment variables from .env file.
"""
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = "Editorial Clock"
    app_version: str = "0.1.0"
    debug: bool = False

    # CORS Settings (for the editorial dashboard)
    cors_origins: str = "http://localhost:3000"

    # Store Backend
    # "memory" keeps everything in-process (development, tests)
    # "supabase" persists to the Supabase tables in supabase/schema.sql
    store_backend: str = "memory"
    supabase_url: Optional[str] = None
    supabase_service_role_key: Optional[str] = None

    # Deadline arithmetic (calendar days, no business-day skipping)
    deadline_timezone: str = "UTC"

    # Reviewer invitation policy
    invitation_response_days: int = 7  # responseDeadline = invitedAt + 7d
    invitation_review_days: int = 21  # reviewDeadline = acceptedAt + 21d
    invitation_withdrawal_grace_days: int = 7  # auto-withdraw at responseDeadline + 7d

    # Scheduler Settings
    enable_scheduler: bool = True
    # Only ONE instance should tick; claims stay safe either way,
    # but a single ticker avoids pointless conflict churn
    run_scheduler: bool = False
    scheduler_timezone: str = "UTC"
    tick_interval_seconds: int = 60
    dispatch_interval_seconds: int = 60

    # Job Monitoring
    job_failure_alert_threshold: int = 2  # Pause a job after this many failures

    # Notification Transport
    notification_transport: str = "log"  # log | smtp | sendgrid

    # Email Configuration (SMTP)
    smtp_host: Optional[str] = None
    smtp_port: int = 587
    smtp_user: Optional[str] = None
    smtp_password: Optional[str] = None
    smtp_from_email: str = "noreply@editorial-clock.org"
    smtp_from_name: str = "Editorial Office"
    smtp_use_tls: bool = True

    # SendGrid Configuration (alternative to SMTP)
    sendgrid_api_key: Optional[str] = None
    sendgrid_from_email: str = "noreply@editorial-clock.org"

    # Dispatch retry policy
    max_dispatch_attempts: int = 5
    dispatch_backoff_base_seconds: int = 60
    dispatch_backoff_cap_seconds: int = 3600
    dispatch_batch_size: int = 50

    # Recipients
    editorial_office_email: str = "editorial-office@editorial-clock.org"
    editor_in_chief_email: str = "editor-in-chief@editorial-clock.org"
    ops_escalation_email: Optional[str] = None

    # Reviewer response links
    frontend_url: str = "http://localhost:3000"
    response_link_secret: Optional[str] = None
    response_link_ttl_days: int = 30

    @property
    def cors_origin_list(self) -> list[str]:
        """Parse comma-separated CORS origins into a list."""
        return [origin.strip() for origin in self.cors_origins.split(",")]

    @property
    def uses_supabase(self) -> bool:
        return self.store_backend == "supabase"


@lru_cache
def get_settings() -> Settings:
    """
    Cached settings instance.
    Call this function to get application settings.
    """
    return Settings()


# Global settings instance
settings = get_settings()
