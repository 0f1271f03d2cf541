from __future__ import annotations

import os
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Mapping

from minilend.core.errors import ConfigurationError

DEFAULT_CORS_ORIGINS = ["http://localhost:3000", "http://127.0.0.1:3000"]


def _int_env(env: Mapping[str, str], name: str, default: int, *, minimum: int = 0) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from exc
    if value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    return value


@dataclass(frozen=True, slots=True)
class QueueSettings:
    """Thresholds and connection settings for the disbursement queue."""

    mongodb_uri: str | None = None
    mongodb_db: str = "ministables"
    stuck_after_seconds: int = 300
    max_retries: int = 3
    success_window_hours: int = 24
    recent_limit: int = 20
    retryable_limit: int = 10
    completed_retention_days: int = 7
    alerts_default_limit: int = 50
    cors_origins: list[str] = field(default_factory=lambda: list(DEFAULT_CORS_ORIGINS))
    log_level: str = "INFO"

    @property
    def stuck_after(self) -> timedelta:
        return timedelta(seconds=self.stuck_after_seconds)

    @property
    def success_window(self) -> timedelta:
        return timedelta(hours=self.success_window_hours)

    @property
    def completed_retention(self) -> timedelta:
        return timedelta(days=self.completed_retention_days)

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "QueueSettings":
        env = os.environ if env is None else env

        origins_env = env.get("API_CORS_ORIGINS", "")
        origins = [origin.strip() for origin in origins_env.split(",") if origin.strip()]
        if not origins:
            origins = list(DEFAULT_CORS_ORIGINS)

        return cls(
            mongodb_uri=env.get("MONGODB_URI") or None,
            mongodb_db=env.get("MONGODB_DB") or "ministables",
            stuck_after_seconds=_int_env(env, "DISBURSEMENT_STUCK_AFTER_SECONDS", 300, minimum=1),
            max_retries=_int_env(env, "DISBURSEMENT_MAX_RETRIES", 3),
            success_window_hours=_int_env(env, "DISBURSEMENT_SUCCESS_WINDOW_HOURS", 24, minimum=1),
            recent_limit=_int_env(env, "DISBURSEMENT_RECENT_LIMIT", 20, minimum=1),
            retryable_limit=_int_env(env, "DISBURSEMENT_RETRYABLE_LIMIT", 10, minimum=1),
            completed_retention_days=_int_env(env, "DISBURSEMENT_COMPLETED_RETENTION_DAYS", 7, minimum=1),
            alerts_default_limit=_int_env(env, "ALERTS_DEFAULT_LIMIT", 50, minimum=1),
            cors_origins=origins,
            log_level=(env.get("LOG_LEVEL") or "INFO").upper(),
        )
