"""SYNCWARD — Central Configuration via Pydantic Settings."""

import os
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables / .env file."""

    # ── Meta API ──
    meta_access_token: str = ""
    meta_api_version: str = "v21.0"
    meta_base_url: str = "https://graph.facebook.com"
    meta_request_timeout: float = 30.0
    meta_page_limit: int = 500
    meta_max_pages: int = 50

    # ── Database ──
    database_url: str = ""

    # ── App ──
    log_level: str = "INFO"
    scheduler_enabled: bool = True
    backfill_hour: int = 3  # Daily gap sweep at 3 AM UTC

    # ── Backfill Window ──
    default_lookback_days: int = 90
    max_lookback_days: int = 365
    same_day_grace_hours: int = 24  # Upstream finalizes same-day metrics late

    # ── Chunking ──
    max_chunk_days: int = 7
    max_rows_per_call: int = 5000
    default_rows_per_day: int = 50
    sync_order: str = "oldest_first"  # oldest_first | newest_first

    # ── Retry / Backoff ──
    max_attempts: int = 3
    base_delay_seconds: float = 2.0
    min_wait_seconds: float = 1.0
    max_wait_seconds: float = 300.0
    throttle_default_delay_seconds: float = 60.0

    # ── Worker Pool ──
    tenant_concurrency: int = 3
    min_job_interval_seconds: float = 0.5
    run_timeout_seconds: float = 1800.0
    estimated_seconds_per_job: float = 5.0

    # ── Store ──
    upsert_batch_size: int = 500

    @property
    def effective_database_url(self) -> str:
        """Return PostgreSQL URL if set, otherwise fall back to SQLite."""
        if self.database_url:
            return self.database_url
        # Serverless hosts have a read-only filesystem; use /tmp for SQLite
        if os.environ.get("VERCEL"):
            return "sqlite:////tmp/syncward.db"
        return "sqlite:///./syncward.db"

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
