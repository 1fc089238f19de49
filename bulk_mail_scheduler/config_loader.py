"""Settings loader: INI file first, ``BMS_*`` environment variables as fallback."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict

from .logger import get_logger

logger = get_logger("BulkMailScheduler.config")


def _parse_bool(value: str | None, default: bool | None) -> bool | None:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def load_settings(config_path: str | os.PathLike | None = None) -> Dict[str, Any]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with BMS_):
      BMS_CONFIG - Path to config.ini file (default: config.ini)
      BMS_DB_PATH - Database path (default: /data/bulk_mail.db)
      BMS_HOST / BMS_PORT - HTTP server bind (default: 0.0.0.0:8000)
      BMS_API_TOKEN - API authentication token
      BMS_MAX_EMAILS_PER_HOUR - Per-sender hourly quota (default: 200)
      BMS_WORKER_CONCURRENCY - Dispatcher workers (default: 5)
      BMS_MIN_DELAY_BETWEEN_EMAILS_MS - Pause before each send (default: 2000)
      BMS_RETRY_ATTEMPTS - Send attempts per job (default: 3)
      BMS_RETRY_BACKOFF_MS - First retry delay, doubled each time (default: 5000)
      BMS_SEND_TIMEOUT_SECONDS - Timeout of one send call (default: 30)
      BMS_RATE_WINDOW_RETENTION_HOURS - Age after which rate windows are pruned (default: 48)
      BMS_CLEANUP_INTERVAL_SECONDS - Housekeeping loop period (default: 300)
      BMS_SMTP_HOST / BMS_SMTP_PORT / BMS_SMTP_USER / BMS_SMTP_PASSWORD / BMS_SMTP_USE_TLS
      BMS_LOG_DELIVERY_ACTIVITY - Log every delivery attempt (default: False)

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [limits] max_emails_per_hour, rate_window_retention_hours
      [dispatch] worker_concurrency, min_delay_between_emails_ms, retry_attempts,
                 retry_backoff_ms, send_timeout_seconds, cleanup_interval_seconds
      [smtp] host, port, user, password, use_tls
      [logging] delivery_activity
    """
    path = Path(config_path or os.getenv("BMS_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    if path.exists():
        parser.read(path)
        logger.debug("Loaded settings from %s", path)

    def get(section: str, option: str, env: str, default: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return os.getenv(env, default)

    def get_int(section: str, option: str, env: str, default: int) -> int:
        value = get(section, option, env)
        if value is None or not str(value).strip():
            return default
        try:
            return int(value)
        except ValueError:
            raise ValueError(f"Invalid integer for [{section}] {option}: {value!r}") from None

    def get_float(section: str, option: str, env: str, default: float) -> float:
        value = get(section, option, env)
        if value is None or not str(value).strip():
            return default
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"Invalid number for [{section}] {option}: {value!r}") from None

    settings: Dict[str, Any] = {
        "db_path": get("storage", "db_path", "BMS_DB_PATH", "/data/bulk_mail.db"),
        "http_host": get("server", "host", "BMS_HOST", "0.0.0.0"),
        "http_port": get_int("server", "port", "BMS_PORT", 8000),
        "api_token": get("server", "api_token", "BMS_API_TOKEN"),
        "max_emails_per_hour": get_int("limits", "max_emails_per_hour", "BMS_MAX_EMAILS_PER_HOUR", 200),
        "rate_window_retention_hours": get_int(
            "limits", "rate_window_retention_hours", "BMS_RATE_WINDOW_RETENTION_HOURS", 48
        ),
        "worker_concurrency": get_int("dispatch", "worker_concurrency", "BMS_WORKER_CONCURRENCY", 5),
        "min_delay_between_emails_ms": get_int(
            "dispatch", "min_delay_between_emails_ms", "BMS_MIN_DELAY_BETWEEN_EMAILS_MS", 2000
        ),
        "retry_attempts": get_int("dispatch", "retry_attempts", "BMS_RETRY_ATTEMPTS", 3),
        "retry_backoff_ms": get_int("dispatch", "retry_backoff_ms", "BMS_RETRY_BACKOFF_MS", 5000),
        "send_timeout_seconds": get_float("dispatch", "send_timeout_seconds", "BMS_SEND_TIMEOUT_SECONDS", 30.0),
        "cleanup_interval_seconds": get_float(
            "dispatch", "cleanup_interval_seconds", "BMS_CLEANUP_INTERVAL_SECONDS", 300.0
        ),
        "smtp_host": get("smtp", "host", "BMS_SMTP_HOST", "localhost"),
        "smtp_port": get_int("smtp", "port", "BMS_SMTP_PORT", 587),
        "smtp_user": get("smtp", "user", "BMS_SMTP_USER"),
        "smtp_password": get("smtp", "password", "BMS_SMTP_PASSWORD"),
        "smtp_use_tls": _parse_bool(get("smtp", "use_tls", "BMS_SMTP_USE_TLS"), None),
        "log_delivery_activity": _parse_bool(
            get("logging", "delivery_activity", "BMS_LOG_DELIVERY_ACTIVITY"), False
        ),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    return settings
