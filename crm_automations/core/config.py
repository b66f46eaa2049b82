"""
Configuration for the CRM automation backend.

Settings cover the database connection, the automation engine's queue and
worker pool, the cascade guard, action retries and timeouts, and the
time-based trigger scanner. Values are loaded from environment variables or a
`.env` file; defaults are suitable for local development.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from pathlib import Path
from dotenv import load_dotenv
import logging
import os

ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(ENV_PATH, override=False)


class Settings(BaseSettings):
    """Application configuration loaded from environment variables."""

    # Database connection string. Default is a local SQLite file.
    database_url: str = Field(default="sqlite+pysqlite:///./crm_automations.db")
    auto_create_db: bool = Field(default=True)

    # Engine queue / pool
    automation_queue_size: int = Field(default=1000)
    automation_dispatcher_threads: int = Field(default=1)
    automation_worker_concurrency: int = Field(default=4)
    automation_max_cascade_depth: int = Field(default=3)
    # 0 disables; when set, repeat runs per (automation, entity) inside the window are dropped
    automation_cooldown_sec: float = Field(default=0.0)

    # Action retries (fire_webhook, send_email)
    automation_action_max_attempts: int = Field(default=3)
    automation_action_backoff_sec: str = Field(default="1,5,15")

    # Per-action timeouts, seconds; 0 waits indefinitely
    automation_webhook_timeout_sec: float = Field(default=10.0)
    automation_research_timeout_sec: float = Field(default=15.0)
    automation_email_timeout_sec: float = Field(default=20.0)
    automation_default_action_timeout_sec: float = Field(default=30.0)

    # Execution recorder
    automation_record_max_attempts: int = Field(default=3)

    # Time-based trigger scanner
    enable_time_triggers: bool = Field(default=True)
    automation_scanner_interval_sec: int = Field(default=300)
    automation_scan_window_hours: int = Field(default=24)
    automation_scan_batch_size: int = Field(default=100)

    # Collaborators
    webhook_signing_secret: str | None = Field(default=None)
    research_service_url: str | None = Field(default=None)
    research_service_token: str | None = Field(default=None)
    smtp_host: str | None = Field(default=None)
    smtp_port: int | None = Field(default=None)
    smtp_user: str | None = Field(default=None)
    smtp_password: str | None = Field(default=None)
    smtp_from: str | None = Field(default=None)
    # unset: STARTTLS everywhere except port 1025 (local catchers)
    smtp_starttls: bool | None = Field(default=None)

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


settings = Settings()


def get_app_env() -> str:
    raw = os.getenv("CRM_ENV") or os.getenv("APP_ENV") or "dev"
    env = raw.strip().lower()
    if env not in {"dev", "prod"}:
        logging.getLogger("config").warning("Unknown CRM_ENV=%s; defaulting to dev", raw)
        env = "dev"
    return env


def parse_backoff_schedule(raw: str | None) -> list[float]:
    """Parse a comma separated backoff schedule such as ``"1,5,15"``."""
    schedule: list[float] = []
    for part in (raw or "").split(","):
        part = part.strip()
        if not part:
            continue
        try:
            schedule.append(max(0.0, float(part)))
        except ValueError:
            logging.getLogger("config").warning("Ignoring invalid backoff value %r", part)
    return schedule


def validate_runtime_settings(cfg: Settings | None = None) -> None:
    cfg = cfg or settings
    env = get_app_env()
    logger = logging.getLogger("config")

    if cfg.automation_worker_concurrency < 1:
        logger.warning("AUTOMATION_WORKER_CONCURRENCY < 1; engine will use 1 worker.")
    if cfg.automation_max_cascade_depth < 0:
        logger.warning("AUTOMATION_MAX_CASCADE_DEPTH < 0; only depth-0 events will be refused.")
    if not parse_backoff_schedule(cfg.automation_action_backoff_sec):
        logger.warning("AUTOMATION_ACTION_BACKOFF_SEC is empty; retries will not wait.")

    if env == "prod":
        if not cfg.webhook_signing_secret:
            logger.error("WEBHOOK_SIGNING_SECRET missing in prod; webhooks without a per-action secret are unsigned.")
        if cfg.database_url.startswith("sqlite"):
            logger.warning("DATABASE_URL points at SQLite in prod. Consider PostgreSQL.")
        if cfg.auto_create_db:
            logger.warning("AUTO_CREATE_DB is enabled in prod. Consider setting it to false.")
        if not cfg.smtp_host:
            logger.info("SMTP_HOST missing; send_email actions will create drafts only.")


validate_runtime_settings()
