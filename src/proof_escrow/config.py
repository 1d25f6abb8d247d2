"""Application configuration via pydantic-settings.

Reads from .env file or environment variables. Secrets default to empty
strings; endpoints guarded by an empty secret reject every request.

Usage:
    from proof_escrow.config import get_settings
    settings = get_settings()
    print(settings.database_url)
"""

from __future__ import annotations

from functools import lru_cache
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Central configuration for the Proof Escrow service."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Application ---
    app_env: Literal["development", "staging", "production", "test"] = "development"
    app_debug: bool = True
    app_log_level: str = "DEBUG"
    app_host: str = "0.0.0.0"
    app_port: int = 8000
    cors_origins: str = "*"

    # --- Database ---
    database_url: str = (
        "postgresql+asyncpg://proof_escrow:proof_escrow_dev"
        "@localhost:5432/proof_escrow"
    )
    db_pool_size: int = 10
    db_max_overflow: int = 20
    db_pool_timeout: int = 30
    db_echo_sql: bool = False

    # --- Redis (settlement locks) ---
    redis_url: str = "redis://localhost:6379/0"
    redis_lock_timeout_seconds: int = 120
    redis_lock_blocking_seconds: int = 30

    # --- External analysis service ---
    analysis_enabled: bool = True
    analysis_url: str = "http://localhost:8080"
    analysis_api_key: str = ""
    analysis_timeout_seconds: float = 600.0
    analysis_callback_secret: str = ""
    worker_base_url: str = "http://localhost:8000"

    # --- Internal endpoints (cron trigger, settlement) ---
    internal_secret: str = ""

    # --- Verification thresholds ---
    success_score_threshold: float = 80.0
    review_score_threshold: float = 60.0
    confidence_threshold: float = 70.0
    high_priority_confidence: float = 50.0

    # --- Scheduler ---
    scheduler_enabled: bool = False
    scheduler_interval_seconds: int = 300
    schedule_lookahead_minutes: int = 5
    dispatch_batch_size: int = 20
    completion_batch_size: int = 20
    pending_batch_size: int = 10
    settlement_retry_batch_size: int = 50
    settlement_max_attempts: int = 5

    # --- HITL notifications ---
    hitl_enabled: bool = True
    hitl_retry_limit: int = 3
    hitl_retry_initial_seconds: int = 300
    hitl_admin_emails: str = ""
    hitl_email_from: str = "Proof Escrow <hitl@proof-escrow.local>"
    hitl_dashboard_url: str = "http://localhost:3000/admin/reviews"
    resend_api_key: str = ""
    resend_api_url: str = "https://api.resend.com/emails"
    test_email_mode: bool = True

    # --- Payments ---
    payment_simulate: bool = True
    stripe_secret_key: str = ""

    @property
    def is_development(self) -> bool:
        return self.app_env == "development"

    @property
    def hitl_admin_email_list(self) -> list[str]:
        """Parse comma-separated admin emails into a list."""
        if not self.hitl_admin_emails:
            return []
        return [e.strip() for e in self.hitl_admin_emails.split(",") if e.strip()]

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()] or ["*"]

    @property
    def callback_url(self) -> str:
        """URL the analysis service posts results back to."""
        return f"{self.worker_base_url.rstrip('/')}/v1/orchestrator/callback"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return a cached singleton of the application settings."""
    return Settings()
