from __future__ import annotations

from prometheus_client import Counter, Gauge


SESSIONS_BY_HEALTH = Gauge(
    "waworker_sessions",
    "Number of registered WhatsApp sessions grouped by health",
    labelnames=("health",),
)
SESSIONS_OPEN = Gauge(
    "waworker_sessions_open",
    "Number of WhatsApp sessions with an open connection",
)
PENDING_SAVES = Gauge(
    "waworker_pending_saves",
    "Credential snapshots waiting for a store retry",
)
STORE_ERRORS = Counter(
    "waworker_store_errors_total",
    "Session store failures grouped by operation",
    labelnames=("operation",),
)
RECONNECT_ATTEMPTS = Counter(
    "waworker_reconnect_attempts_total",
    "Reconnect attempts grouped by outcome",
    labelnames=("outcome",),
)
TEARDOWNS = Counter(
    "waworker_teardowns_total",
    "Sessions torn down grouped by reason",
    labelnames=("reason",),
)
LOOP_ERRORS = Counter(
    "waworker_loop_errors_total",
    "Unhandled per-tenant errors inside supervisor loops",
    labelnames=("loop",),
)

__all__ = [
    "SESSIONS_BY_HEALTH",
    "SESSIONS_OPEN",
    "PENDING_SAVES",
    "STORE_ERRORS",
    "RECONNECT_ATTEMPTS",
    "TEARDOWNS",
    "LOOP_ERRORS",
]
