"""Service configuration.

Everything is read from environment variables once, by ``load_settings()``,
and handed to ``create_app``. Nothing here is consulted at import time.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional


def _get_str(name: str, default: str = "") -> str:
    return os.getenv(name, default)


def _get_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _get_float(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _get_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class Settings:
    database_url: str
    session_secret: str = "dev-secret-change-me"
    admin_username: str = "admin"
    admin_password: str = "supasecret"
    # 'session' | 'header'
    identity_backend: str = "session"
    # 'mock' | 'http'
    gateway_backend: str = "mock"
    gateway_url: str = ""
    gateway_api_key: str = ""
    gateway_webhook_secret: str = "supersecret"
    gateway_max_attempts: int = 3
    gateway_backoff_seconds: float = 0.5
    # 'pg' | 'redis'
    eventgate_backend: str = "pg"
    eventgate_ttl_seconds: int = 24 * 3600
    redis_url: str = "redis://127.0.0.1:6379"
    redis_max_connections: int = 64
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30
    db_gate_limit: Optional[int] = None
    default_currency: str = "USD"
    log_level: str = "INFO"
    log_json: bool = False


def load_settings() -> Settings:
    database_url = os.environ.get("DATABASE_URL")
    if not database_url:
        raise RuntimeError("DATABASE_URL is required")
    return Settings(
        database_url=database_url,
        session_secret=_get_str("SESSION_SECRET", "dev-secret-change-me"),
        admin_username=_get_str("ADMIN_USERNAME", "admin"),
        admin_password=_get_str("ADMIN_PASSWORD", "supasecret"),
        identity_backend=_get_str("IDENTITY_BACKEND", "session").lower(),
        gateway_backend=_get_str("GATEWAY_BACKEND", "mock").lower(),
        gateway_url=_get_str("GATEWAY_URL"),
        gateway_api_key=_get_str("GATEWAY_API_KEY"),
        gateway_webhook_secret=_get_str(
            "GATEWAY_WEBHOOK_SECRET", "supersecret"
        ),
        gateway_max_attempts=_get_int("GATEWAY_MAX_ATTEMPTS", 3),
        gateway_backoff_seconds=_get_float("GATEWAY_BACKOFF_SECONDS", 0.5),
        eventgate_backend=_get_str("EVENTGATE_BACKEND", "pg").lower(),
        eventgate_ttl_seconds=_get_int("EVENTGATE_TTL_SECONDS", 24 * 3600),
        redis_url=_get_str("REDIS_URL", "redis://127.0.0.1:6379"),
        redis_max_connections=_get_int("REDIS_MAX_CONN", 64),
        db_pool_size=_get_int("DB_POOL_SIZE", 10),
        db_max_overflow=_get_int("DB_MAX_OVERFLOW", 10),
        db_pool_timeout=_get_int("DB_POOL_TIMEOUT", 30),
        db_gate_limit=_get_int("DB_GATE_LIMIT", 0) or None,
        default_currency=_get_str("DEFAULT_CURRENCY", "USD").upper(),
        log_level=_get_str("LOG_LEVEL", "INFO").upper(),
        log_json=_get_bool("LOG_JSON", False),
    )
