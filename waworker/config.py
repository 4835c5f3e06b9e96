"""Environment-driven configuration for the WhatsApp session worker."""
from __future__ import annotations

import os
from dataclasses import dataclass


DEFAULT_REDIS_URL = "redis://redis:6379/0"
DEFAULT_BRIDGE_URL = "http://waweb:9001"


def _coerce_int(value: str | None, default: int = 0) -> int:
    if value is None:
        return default
    try:
        return int(str(value).strip() or default)
    except ValueError:
        return default


def _parse_duration(raw: str | None, *, default: float) -> float:
    if not raw:
        return default
    cleaned = raw.strip().lower()
    if not cleaned:
        return default
    if cleaned.endswith("s"):
        cleaned = cleaned[:-1]
    try:
        value = float(cleaned)
    except ValueError:
        return default
    if value < 0:
        return default
    return value


def _normalize_url(raw: str | None, default: str) -> str:
    if not raw:
        return default
    cleaned = raw.strip()
    if not cleaned:
        return default
    return cleaned.rstrip("/") or default


@dataclass(frozen=True, slots=True)
class WorkerConfig:
    save_interval: float = 300.0
    cleanup_interval: float = 900.0
    reconnect_interval: float = 300.0
    restore_interval: float = 1800.0
    sync_interval: float = 600.0
    max_session_age: float = 604800.0
    disconnected_cleanup_time: float = 300.0
    max_failed_attempts: int = 3
    initial_restore_delay: float = 10.0
    immediate_delete_delay: float = 60.0
    loop_concurrency: int = 16
    redis_url: str = DEFAULT_REDIS_URL
    key_prefix: str = "waworker"
    bridge_url: str = DEFAULT_BRIDGE_URL
    bridge_token: str = ""
    http_timeout: float = 10.0
    store_connect_retries: int = 5
    store_connect_backoff: float = 5.0


def worker_config() -> WorkerConfig:
    """Build a :class:`WorkerConfig` from the process environment."""

    bridge_token = (
        os.getenv("WA_BRIDGE_TOKEN") or os.getenv("WEBHOOK_SECRET") or ""
    ).strip()
    return WorkerConfig(
        save_interval=_parse_duration(os.getenv("WA_AUTO_SAVE_INTERVAL"), default=300.0),
        cleanup_interval=_parse_duration(
            os.getenv("WA_AUTO_CLEANUP_INTERVAL"), default=900.0
        ),
        reconnect_interval=_parse_duration(
            os.getenv("WA_AUTO_RECONNECT_INTERVAL"), default=300.0
        ),
        restore_interval=_parse_duration(
            os.getenv("WA_AUTO_RESTORE_INTERVAL"), default=1800.0
        ),
        sync_interval=_parse_duration(os.getenv("WA_STORE_SYNC_INTERVAL"), default=600.0),
        max_session_age=_parse_duration(
            os.getenv("WA_MAX_SESSION_AGE"), default=604800.0
        ),
        disconnected_cleanup_time=_parse_duration(
            os.getenv("WA_DISCONNECTED_CLEANUP_TIME"), default=300.0
        ),
        max_failed_attempts=max(1, _coerce_int(os.getenv("WA_MAX_FAILED_ATTEMPTS"), 3)),
        initial_restore_delay=_parse_duration(
            os.getenv("WA_INITIAL_RESTORE_DELAY"), default=10.0
        ),
        immediate_delete_delay=_parse_duration(
            os.getenv("WA_IMMEDIATE_DELETE_DELAY"), default=60.0
        ),
        loop_concurrency=max(1, _coerce_int(os.getenv("WA_LOOP_CONCURRENCY"), 16)),
        redis_url=_normalize_url(os.getenv("REDIS_URL"), DEFAULT_REDIS_URL),
        key_prefix=(os.getenv("WA_STORE_PREFIX") or "waworker").strip() or "waworker",
        bridge_url=_normalize_url(
            os.getenv("WA_BRIDGE_URL") or os.getenv("WA_WEB_URL"), DEFAULT_BRIDGE_URL
        ),
        bridge_token=bridge_token,
        http_timeout=_parse_duration(os.getenv("WA_HTTP_TIMEOUT"), default=10.0),
        store_connect_retries=max(
            1, _coerce_int(os.getenv("WA_STORE_CONNECT_RETRIES"), 5)
        ),
        store_connect_backoff=_parse_duration(
            os.getenv("WA_STORE_CONNECT_BACKOFF"), default=5.0
        ),
    )


__all__ = ["WorkerConfig", "worker_config"]
