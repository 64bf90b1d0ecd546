"""
Environment-driven configuration for the logging infrastructure.

Environment variables:
- ENVIRONMENT: development, test, staging, production (default: development)
- SERVICE_NAME / SERVICE_VERSION: identify the emitting service
- LOG_LEVEL: debug, info, warn, error, fatal
- LOG_OUTPUT: "stdout", "stderr" or a file path (default: stdout)
- ALERT_WEBHOOK_URL: alert sink endpoint; alerting is disabled when unset
- ALERT_COOLDOWN_SECONDS: per-fingerprint alert cooldown (default: 300)
- SLOW_QUERY_THRESHOLD_MS, SLOW_API_THRESHOLD_MS, SLOW_REQUEST_THRESHOLD_MS
- HIGH_MEMORY_THRESHOLD_MB
- LOG_EXCLUDED_PATHS: comma separated path prefixes skipped by the middleware
- DB_POOL_MONITOR_INTERVAL: seconds between pool samples (0 disables)
- DETECT_REPEATED_QUERIES: true/false (default: true in development)
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

DEFAULT_EXCLUDED_PATHS: Tuple[str, ...] = (
    "/health",
    "/readiness",
    "/favicon.ico",
    "/assets",
    "/static",
    "/metrics",
)


def _env_bool(name: str, default: Optional[bool] = None) -> Optional[bool]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _default_log_level(environment: str) -> str:
    if environment == "development":
        return "debug"
    if environment == "test":
        return "debug" if os.getenv("DEBUG") else "warn"
    return "info"


@dataclass
class Settings:
    """Runtime configuration shared by every component."""

    environment: str = "development"
    service: str = "app"
    version: str = "1.0.0"
    log_level: str = "info"
    log_output: str = "stdout"
    alert_webhook_url: Optional[str] = None
    alert_cooldown_seconds: float = 300.0
    slow_query_threshold_ms: float = 100.0
    slow_api_threshold_ms: float = 1000.0
    slow_request_threshold_ms: float = 2000.0
    high_memory_threshold_mb: float = 500.0
    excluded_paths: Tuple[str, ...] = field(default=DEFAULT_EXCLUDED_PATHS)
    pool_monitor_interval: float = 30.0
    detect_repeated_queries: bool = False
    sentry_dsn: Optional[str] = None
    sentry_enable: bool = True

    @property
    def alerts_enabled(self) -> bool:
        """Alerts are never sent from development or test runs."""
        return self.environment not in ("development", "test")

    @classmethod
    def from_env(cls, dotenv_path: Optional[Path] = None) -> "Settings":
        load_dotenv(dotenv_path=dotenv_path, override=False)

        environment = os.getenv("ENVIRONMENT", "development").strip().lower()
        excluded = os.getenv("LOG_EXCLUDED_PATHS")
        excluded_paths = (
            tuple(p.strip() for p in excluded.split(",") if p.strip())
            if excluded
            else DEFAULT_EXCLUDED_PATHS
        )

        return cls(
            environment=environment,
            service=os.getenv("SERVICE_NAME", "app"),
            version=os.getenv("SERVICE_VERSION", "1.0.0"),
            log_level=os.getenv("LOG_LEVEL", _default_log_level(environment)).lower(),
            log_output=os.getenv("LOG_OUTPUT", "stdout"),
            alert_webhook_url=os.getenv("ALERT_WEBHOOK_URL") or None,
            alert_cooldown_seconds=_env_float("ALERT_COOLDOWN_SECONDS", 300.0),
            slow_query_threshold_ms=_env_float("SLOW_QUERY_THRESHOLD_MS", 100.0),
            slow_api_threshold_ms=_env_float("SLOW_API_THRESHOLD_MS", 1000.0),
            slow_request_threshold_ms=_env_float("SLOW_REQUEST_THRESHOLD_MS", 2000.0),
            high_memory_threshold_mb=_env_float("HIGH_MEMORY_THRESHOLD_MB", 500.0),
            excluded_paths=excluded_paths,
            pool_monitor_interval=_env_float("DB_POOL_MONITOR_INTERVAL", 30.0),
            detect_repeated_queries=_env_bool(
                "DETECT_REPEATED_QUERIES", environment == "development"
            ),
            sentry_dsn=os.getenv("SENTRY_DSN") or None,
            sentry_enable=_env_bool("SENTRY_ENABLE", True),
        )
