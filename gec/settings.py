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
    db_path: str = os.getenv("GEC_DB_PATH", "gec.db")
    graceful_eviction_timeout_s: int = _env_int("GEC_GRACEFUL_EVICTION_TIMEOUT_S", 600)
    run_controller: bool = _env_bool("GEC_RUN_CONTROLLER", True)
    workers: int = _env_int("GEC_WORKERS", 2)
    reconcile_timeout_s: float = _env_float("GEC_RECONCILE_TIMEOUT_S", 10.0)
    shutdown_grace_s: float = _env_float("GEC_SHUTDOWN_GRACE_S", 5.0)
    # Periodic re-list of all bindings; also redelivers work abandoned on shutdown.
    resync_period_s: float = _env_float("GEC_RESYNC_PERIOD_S", 300.0)

    # Rate limiter (per-item exponential backoff + overall token bucket)
    rate_limiter_base_delay_s: float = _env_float("GEC_RATE_LIMITER_BASE_DELAY_S", 0.005)
    rate_limiter_max_delay_s: float = _env_float("GEC_RATE_LIMITER_MAX_DELAY_S", 1000.0)
    rate_limiter_factor: float = _env_float("GEC_RATE_LIMITER_FACTOR", 2.0)
    rate_limiter_qps: float = _env_float("GEC_RATE_LIMITER_QPS", 10.0)
    rate_limiter_bucket_size: int = _env_int("GEC_RATE_LIMITER_BUCKET_SIZE", 100)

    # Email alerting (optional)
    enable_email: bool = _env_bool("GEC_ENABLE_EMAIL", False)
    smtp_host: str = os.getenv("GEC_SMTP_HOST", "smtp.gmail.com")
    smtp_port: int = _env_int("GEC_SMTP_PORT", 587)
    smtp_user: str | None = os.getenv("GEC_SMTP_USER")
    smtp_password: str | None = os.getenv("GEC_SMTP_PASSWORD")
    email_from: str | None = os.getenv("GEC_EMAIL_FROM")
    email_to: str | None = os.getenv("GEC_EMAIL_TO")


settings = Settings()
