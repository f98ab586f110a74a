from __future__ import annotations

import os
from dataclasses import dataclass


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


@dataclass(frozen=True)
class Settings:
    # Core
    db_path: str = os.getenv("DDR_DB_PATH", "ddr.db")
    poll_interval_s: float = _env_float("DDR_POLL_INTERVAL_S", 2.0)
    docker_network: str = os.getenv("DDR_DOCKER_NETWORK", "ddr")
    probe_workers: int = _env_int("DDR_PROBE_WORKERS", 8)
    event_buffer: int = _env_int("DDR_EVENT_BUFFER", 500)
    manifest_path: str | None = os.getenv("DDR_MANIFEST")

    # Retry of transient infrastructure errors (bounded exponential backoff)
    backoff_base_s: float = _env_float("DDR_BACKOFF_BASE_S", 1.0)
    backoff_max_s: float = _env_float("DDR_BACKOFF_MAX_S", 60.0)

    # API basic auth for mutating endpoints
    admin_user: str = os.getenv("DDR_ADMIN_USER", "admin")
    admin_password: str = os.getenv("DDR_ADMIN_PASSWORD", "admin")

    # Email alerting (optional)
    enable_email: bool = _env_bool("DDR_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("DDR_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("DDR_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("DDR_SMTP_USER")
    smtp_password: str | None = os.getenv("DDR_SMTP_PASSWORD")
    email_from: str | None = os.getenv("DDR_EMAIL_FROM")
    email_to: str | None = os.getenv("DDR_EMAIL_TO")


settings = Settings()
