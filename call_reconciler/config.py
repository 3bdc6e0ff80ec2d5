"""
Centralised configuration loaded from environment / .env file.
Uses pydantic-settings for validation and type coercion.
"""

from __future__ import annotations

from datetime import timedelta
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ── Voice provider (Retell) ─────────────────────────────────
    retell_api_key: str = Field(default="", description="Fallback API key when a tenant has none")
    retell_agent_id: str = Field(default="", description="Fallback agent ID")
    retell_from_number: str = Field(default="", description="Fallback outbound caller number")
    retell_base_url: str = Field(default="https://api.retellai.com")
    provider_timeout_seconds: float = Field(default=10.0, gt=0, le=120)

    # ── Webhook ─────────────────────────────────────────────────
    webhook_secret: str = Field(default="", description="Fallback signing secret (blank = tenant secrets only)")
    signature_header: str = Field(default="x-retell-signature")

    # ── Polling fallback ────────────────────────────────────────
    initial_poll_delay_seconds: int = Field(default=30, ge=0)
    poll_backoff_seconds: list[int] = Field(default=[15, 30, 60, 120, 300])
    poll_backoff_cap_seconds: int = Field(default=600, ge=1)
    poll_scan_interval_seconds: int = Field(default=30, ge=1)
    poll_concurrency: int = Field(default=5, ge=1, le=50)
    dead_letter_after_minutes: int = Field(default=30, ge=1)

    # ── Call tasks ──────────────────────────────────────────────
    task_scan_interval_seconds: int = Field(default=30, ge=1)
    task_batch_size: int = Field(default=20, ge=1)
    task_max_attempts: int = Field(default=2, ge=1, le=10)
    task_processing_lease_minutes: int = Field(default=10, ge=1)
    follow_up_delay_minutes: int = Field(default=90, ge=1)
    max_follow_ups: int = Field(default=1, ge=0, le=5)

    # ── Phone numbers ───────────────────────────────────────────
    default_phone_region: str = Field(default="GB")

    # ── Paths ───────────────────────────────────────────────────
    database_path: Path = Field(default=Path("data/reconciler.db"))
    log_dir: Path = Field(default=Path("data/logs"))

    # ── Server ──────────────────────────────────────────────────
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    def ensure_dirs(self) -> None:
        """Create required directories if they don't exist."""
        for d in [self.log_dir, self.database_path.parent]:
            d.mkdir(parents=True, exist_ok=True)

    @property
    def initial_poll_delay(self) -> timedelta:
        return timedelta(seconds=self.initial_poll_delay_seconds)

    @property
    def dead_letter_after(self) -> timedelta:
        return timedelta(minutes=self.dead_letter_after_minutes)

    @property
    def follow_up_delay(self) -> timedelta:
        return timedelta(minutes=self.follow_up_delay_minutes)

    @property
    def task_processing_lease(self) -> timedelta:
        return timedelta(minutes=self.task_processing_lease_minutes)


def get_settings() -> Settings:
    """Factory – cached at module level after first call."""
    return Settings()  # type: ignore[call-arg]
