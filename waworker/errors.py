from __future__ import annotations

from typing import Sequence


class WorkerError(RuntimeError):
    """Base class for session worker failures."""


class TransientStoreError(WorkerError):
    """Raised when the session store is unreachable or times out."""

    def __init__(self, operation: str, tenant_id: str | None = None, detail: str = "") -> None:
        super().__init__(f"store_{operation}_failed tenant_id={tenant_id} {detail}".strip())
        self.operation = operation
        self.tenant_id = tenant_id
        self.detail = detail


class PartialDeleteError(TransientStoreError):
    """Raised when only part of a tenant's records could be removed."""

    def __init__(self, tenant_id: str, failed_keys: Sequence[str]) -> None:
        super().__init__("delete", tenant_id, "failed_keys=" + ",".join(failed_keys))
        self.failed_keys = list(failed_keys)


class InvalidCredentialData(WorkerError, ValueError):
    """Raised when a credential blob is structurally malformed."""

    def __init__(self, tenant_id: str | None = None, reason: str = "invalid_session_data") -> None:
        super().__init__(reason)
        self.tenant_id = tenant_id
        self.reason = reason


class ProtocolConnectFailure(WorkerError):
    """Raised when pairing or reconnecting a session is rejected."""


class PermanentBan(ProtocolConnectFailure):
    """Raised when the protocol reports an irrecoverable session state."""


class ConcurrentModification(WorkerError):
    """Raised when two owners act on the same tenant at once."""


class SessionExistsError(WorkerError):
    """Raised when a new session is requested for an already open tenant."""


class InvalidTenantError(WorkerError, ValueError):
    """Raised when a tenant identifier contains no digits."""


__all__ = [
    "WorkerError",
    "TransientStoreError",
    "PartialDeleteError",
    "InvalidCredentialData",
    "ProtocolConnectFailure",
    "PermanentBan",
    "ConcurrentModification",
    "SessionExistsError",
    "InvalidTenantError",
]
