from __future__ import annotations

import pytest

from waworker.config import DEFAULT_BRIDGE_URL, WorkerConfig, worker_config


_ENV_NAMES = (
    "WA_AUTO_SAVE_INTERVAL",
    "WA_AUTO_CLEANUP_INTERVAL",
    "WA_AUTO_RECONNECT_INTERVAL",
    "WA_AUTO_RESTORE_INTERVAL",
    "WA_STORE_SYNC_INTERVAL",
    "WA_MAX_SESSION_AGE",
    "WA_DISCONNECTED_CLEANUP_TIME",
    "WA_MAX_FAILED_ATTEMPTS",
    "WA_INITIAL_RESTORE_DELAY",
    "WA_IMMEDIATE_DELETE_DELAY",
    "WA_LOOP_CONCURRENCY",
    "REDIS_URL",
    "WA_STORE_PREFIX",
    "WA_BRIDGE_URL",
    "WA_WEB_URL",
    "WA_BRIDGE_TOKEN",
    "WEBHOOK_SECRET",
    "WA_HTTP_TIMEOUT",
    "WA_STORE_CONNECT_RETRIES",
    "WA_STORE_CONNECT_BACKOFF",
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch: pytest.MonkeyPatch):
    for name in _ENV_NAMES:
        monkeypatch.delenv(name, raising=False)


def test_defaults_match_dataclass():
    assert worker_config() == WorkerConfig()


def test_durations_accept_seconds_suffix(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("WA_AUTO_SAVE_INTERVAL", "45s")
    monkeypatch.setenv("WA_DISCONNECTED_CLEANUP_TIME", " 120 ")

    cfg = worker_config()

    assert cfg.save_interval == 45.0
    assert cfg.disconnected_cleanup_time == 120.0


def test_malformed_values_fall_back(monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("WA_AUTO_SAVE_INTERVAL", "soon")
    monkeypatch.setenv("WA_MAX_FAILED_ATTEMPTS", "many")
    monkeypatch.setenv("WA_LOOP_CONCURRENCY", "0")
    monkeypatch.setenv("WA_DISCONNECTED_CLEANUP_TIME", "-5")

    cfg = worker_config()

    assert cfg.save_interval == 300.0
    assert cfg.max_failed_attempts == 3
    assert cfg.loop_concurrency == 1
    assert cfg.disconnected_cleanup_time == 300.0


def test_bridge_settings_fallbacks(monkeypatch: pytest.MonkeyPatch):
    assert worker_config().bridge_url == DEFAULT_BRIDGE_URL

    monkeypatch.setenv("WA_WEB_URL", "http://waweb:9100/")
    monkeypatch.setenv("WEBHOOK_SECRET", "  s3cret ")

    cfg = worker_config()

    assert cfg.bridge_url == "http://waweb:9100"
    assert cfg.bridge_token == "s3cret"
