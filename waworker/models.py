from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Mapping, Optional, Union

from .errors import InvalidTenantError


HEALTH_ACTIVE = "active"
HEALTH_DEGRADED = "degraded"
HEALTH_DISCONNECTED = "disconnected"
HEALTH_DEAD = "dead"
HEALTH_VALUES = frozenset({HEALTH_ACTIVE, HEALTH_DEGRADED, HEALTH_DISCONNECTED, HEALTH_DEAD})
PERSISTABLE_HEALTH = frozenset({HEALTH_ACTIVE, HEALTH_DEGRADED})

STATUS_CONNECTING = "connecting"
STATUS_OPEN = "open"
STATUS_CLOSED = "closed"
STATUS_BANNED = "banned"

RECORD_ACTIVE = "active"
RECORD_DELETED = "deleted"

REASON_RETRYABLE = "retryable"
REASON_BANNED = "banned"
REASON_REPLACED = "replaced"

_NON_DIGITS = re.compile(r"[^0-9]")

_BANNED_REASONS = {"banned", "logged_out", "loggedout", "forbidden", "401", "403"}
_REPLACED_REASONS = {"replaced", "conflict", "connection_replaced", "440"}


def normalize_tenant(raw: Any) -> str:
    """Reduce a phone number to its digits; raise when nothing is left."""

    digits = _NON_DIGITS.sub("", str(raw if raw is not None else ""))
    if not digits:
        raise InvalidTenantError(f"invalid_tenant value={raw!r}")
    return digits


def classify_disconnect(raw: Any) -> str:
    if raw is None:
        return REASON_RETRYABLE
    cleaned = str(raw).strip().lower()
    if cleaned in (REASON_RETRYABLE, REASON_BANNED, REASON_REPLACED):
        return cleaned
    if cleaned in _BANNED_REASONS:
        return REASON_BANNED
    if cleaned in _REPLACED_REASONS:
        return REASON_REPLACED
    return REASON_RETRYABLE


def validate_credentials(blob: Any) -> bool:
    """Structural check of a credential blob; contents are never interpreted."""

    if not isinstance(blob, Mapping) or not blob:
        return False
    creds = blob.get("creds")
    if not isinstance(creds, Mapping) or not creds:
        return False
    try:
        json.dumps(blob)
    except (TypeError, ValueError):
        return False
    return True


def utcnow_iso(ts: float | None = None) -> str:
    if ts is None:
        return datetime.now(timezone.utc).isoformat()
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


@dataclass(frozen=True, slots=True)
class Connected:
    pass


@dataclass(frozen=True, slots=True)
class Disconnected:
    reason: str = REASON_RETRYABLE
    detail: Optional[str] = None


@dataclass(frozen=True, slots=True)
class CredentialsUpdated:
    blob: Mapping[str, Any]


SessionEvent = Union[Connected, Disconnected, CredentialsUpdated]


@dataclass(slots=True)
class TenantSession:
    tenant_id: str
    created_at: float
    handle: Optional[Any] = None
    handle_token: Optional[object] = None
    last_active_at: Optional[float] = None
    disconnected_at: Optional[float] = None
    health: str = HEALTH_ACTIVE
    reconnect_attempts: int = 0
    last_attempt_at: Optional[float] = None
    connection_status: str = STATUS_CONNECTING
    credentials: Optional[Mapping[str, Any]] = None
    dirty: bool = False
    last_backup_at: Optional[float] = None
    paired: bool = False
    allow_revive: bool = False
    disconnect_reason: Optional[str] = None
    last_error: Optional[str] = None

    @property
    def is_open(self) -> bool:
        return self.connection_status == STATUS_OPEN

    def to_payload(self) -> dict[str, Any]:
        return {
            "tenant": self.tenant_id,
            "health": self.health,
            "connection_status": self.connection_status,
            "reconnect_attempts": self.reconnect_attempts,
            "last_attempt_at": self.last_attempt_at,
            "created_at": self.created_at,
            "last_active_at": self.last_active_at,
            "disconnected_at": self.disconnected_at,
            "last_backup_at": self.last_backup_at,
            "disconnect_reason": self.disconnect_reason,
            "last_error": self.last_error,
            "dirty": self.dirty,
        }


@dataclass(slots=True)
class StoredSessionRecord:
    number: str
    session_data: Optional[Mapping[str, Any]]
    status: str = RECORD_ACTIVE
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    last_active: Optional[str] = None
    health: str = HEALTH_ACTIVE

    @property
    def is_deleted(self) -> bool:
        return self.status == RECORD_DELETED

    def to_document(self) -> dict[str, Any]:
        return {
            "number": self.number,
            "sessionData": self.session_data,
            "status": self.status,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "lastActive": self.last_active,
            "health": self.health,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_document(), ensure_ascii=False)

    @classmethod
    def from_document(cls, document: Mapping[str, Any]) -> "StoredSessionRecord":
        return cls(
            number=str(document.get("number") or ""),
            session_data=document.get("sessionData"),
            status=str(document.get("status") or RECORD_ACTIVE),
            created_at=document.get("createdAt"),
            updated_at=document.get("updatedAt"),
            last_active=document.get("lastActive"),
            health=str(document.get("health") or HEALTH_ACTIVE),
        )

    @classmethod
    def from_json(cls, raw: str | bytes) -> "StoredSessionRecord":
        document = json.loads(raw)
        if not isinstance(document, dict):
            raise ValueError("session_record_not_object")
        return cls.from_document(document)


@dataclass(slots=True)
class PairingToken:
    tenant_id: str
    pairing_code: Optional[str] = None
    restored: bool = False
    extra: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload = {
            "tenant": self.tenant_id,
            "pairing_code": self.pairing_code,
            "restored": self.restored,
        }
        payload.update(self.extra)
        return payload


__all__ = [
    "HEALTH_ACTIVE",
    "HEALTH_DEGRADED",
    "HEALTH_DISCONNECTED",
    "HEALTH_DEAD",
    "HEALTH_VALUES",
    "PERSISTABLE_HEALTH",
    "STATUS_CONNECTING",
    "STATUS_OPEN",
    "STATUS_CLOSED",
    "STATUS_BANNED",
    "RECORD_ACTIVE",
    "RECORD_DELETED",
    "REASON_RETRYABLE",
    "REASON_BANNED",
    "REASON_REPLACED",
    "Connected",
    "Disconnected",
    "CredentialsUpdated",
    "SessionEvent",
    "TenantSession",
    "StoredSessionRecord",
    "PairingToken",
    "normalize_tenant",
    "classify_disconnect",
    "validate_credentials",
    "utcnow_iso",
]
