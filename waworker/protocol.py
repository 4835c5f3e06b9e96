"""Interfaces the supervisor expects from the messaging protocol layer."""
from __future__ import annotations

from typing import Any, Callable, Mapping, Optional, Protocol

from .models import SessionEvent


EventSink = Callable[[SessionEvent], None]


class SessionHandle(Protocol):
    tenant_id: str
    pairing_code: Optional[str]

    async def send(self, tenant_id: str, payload: Mapping[str, Any]) -> Any:
        ...

    async def close(self) -> None:
        ...


class SessionFactory(Protocol):
    async def create_session(
        self,
        tenant_id: str,
        credentials: Optional[Mapping[str, Any]],
        emit: EventSink,
    ) -> SessionHandle:
        """Build a live handle; raise ``ProtocolConnectFailure`` when rejected.

        The handle reports lifecycle changes by calling ``emit`` with
        ``Connected``, ``Disconnected`` or ``CredentialsUpdated`` events, in
        the order they happen.
        """
        ...

    def validate_credentials(self, blob: Any) -> bool:
        ...


__all__ = ["EventSink", "SessionHandle", "SessionFactory"]
