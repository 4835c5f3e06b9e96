"""Session factory backed by a WhatsApp Web bridge sidecar.

The sidecar owns the actual WhatsApp socket. This module starts and stops
sessions over HTTP and turns the sidecar's webhook callbacks into session
events for the supervisor.
"""
from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import httpx

from .errors import PermanentBan, ProtocolConnectFailure
from .models import (
    Connected,
    CredentialsUpdated,
    Disconnected,
    SessionEvent,
    classify_disconnect,
    validate_credentials,
)
from .protocol import EventSink


LOGGER = logging.getLogger("waworker.bridge")

EVENT_CONNECTION_OPEN = "connection.open"
EVENT_CONNECTION_CLOSE = "connection.close"
EVENT_CREDS_UPDATE = "creds.update"


def parse_bridge_event(payload: Mapping[str, Any]) -> Optional[SessionEvent]:
    kind = str(payload.get("event") or payload.get("type") or "").strip().lower()
    if kind == EVENT_CONNECTION_OPEN:
        return Connected()
    if kind == EVENT_CONNECTION_CLOSE:
        raw_reason = payload.get("reason")
        if raw_reason is None:
            raw_reason = payload.get("status_code")
        detail = payload.get("detail")
        return Disconnected(
            reason=classify_disconnect(raw_reason),
            detail=str(detail) if detail is not None else None,
        )
    if kind == EVENT_CREDS_UPDATE:
        creds = payload.get("creds")
        if isinstance(creds, Mapping):
            return CredentialsUpdated(blob=dict(creds))
    return None


class BridgeSessionHandle:
    def __init__(
        self,
        factory: "BridgeSessionFactory",
        tenant_id: str,
        *,
        pairing_code: Optional[str] = None,
    ) -> None:
        self._factory = factory
        self.tenant_id = tenant_id
        self.pairing_code = pairing_code
        self.closed = False

    async def send(self, tenant_id: str, payload: Mapping[str, Any]) -> Any:
        if self.closed:
            raise ProtocolConnectFailure(f"handle_closed tenant_id={tenant_id}")
        return await self._factory.request(
            "POST", f"/session/{self.tenant_id}/send", json=dict(payload)
        )

    async def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._factory.detach(self.tenant_id, self)
        try:
            await self._factory.request("POST", f"/session/{self.tenant_id}/stop", json={})
        except ProtocolConnectFailure as exc:
            LOGGER.warning(
                "event=bridge_stop_failed tenant_id=%s error=%s", self.tenant_id, exc
            )


class BridgeSessionFactory:
    def __init__(
        self,
        base_url: str,
        *,
        token: str | None = None,
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._token = (token or "").strip() or None
        self._http = client or httpx.AsyncClient(timeout=timeout)
        self._sinks: Dict[str, tuple[Optional[BridgeSessionHandle], EventSink]] = {}

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self._token:
            headers["X-Auth-Token"] = self._token
        return headers

    async def request(self, method: str, path: str, *, json: Any = None) -> dict[str, Any]:
        url = f"{self._base_url}{path}"
        try:
            response = await self._http.request(method, url, json=json, headers=self._headers())
        except httpx.HTTPError as exc:
            LOGGER.warning("event=bridge_request_failed path=%s error=%s", path, exc)
            raise ProtocolConnectFailure(f"bridge_unreachable path={path}") from exc
        if response.status_code == 403:
            LOGGER.warning("event=bridge_session_banned path=%s", path)
            raise PermanentBan(f"bridge_banned path={path}")
        if response.status_code >= 400:
            LOGGER.warning(
                "event=bridge_request_rejected path=%s status=%s body=%s",
                path,
                response.status_code,
                response.text[:200],
            )
            raise ProtocolConnectFailure(
                f"bridge_rejected path={path} status={response.status_code}"
            )
        try:
            body = response.json()
        except ValueError:
            return {}
        return body if isinstance(body, dict) else {"result": body}

    async def create_session(
        self,
        tenant_id: str,
        credentials: Optional[Mapping[str, Any]],
        emit: EventSink,
    ) -> BridgeSessionHandle:
        body: dict[str, Any] = {"tenant": tenant_id}
        if credentials is not None:
            body["credentials"] = dict(credentials)
        # the bridge may call back before /start returns
        pending: tuple[Optional[BridgeSessionHandle], EventSink] = (None, emit)
        self._sinks[tenant_id] = pending
        try:
            result = await self.request("POST", f"/session/{tenant_id}/start", json=body)
        except BaseException:
            if self._sinks.get(tenant_id) is pending:
                self._sinks.pop(tenant_id, None)
            raise
        pairing_code = result.get("pairing_code") or result.get("code")
        handle = BridgeSessionHandle(
            self, tenant_id, pairing_code=str(pairing_code) if pairing_code else None
        )
        if self._sinks.get(tenant_id) is pending:
            self._sinks[tenant_id] = (handle, emit)
        LOGGER.info(
            "stage=bridge_session_started tenant_id=%s restored=%s",
            tenant_id,
            credentials is not None,
        )
        return handle

    def validate_credentials(self, blob: Any) -> bool:
        return validate_credentials(blob)

    def detach(self, tenant_id: str, handle: BridgeSessionHandle) -> None:
        current = self._sinks.get(tenant_id)
        if current is not None and current[0] is handle:
            self._sinks.pop(tenant_id, None)

    def dispatch(self, tenant_id: str, payload: Mapping[str, Any]) -> bool:
        """Route one webhook payload to the live handle's event sink."""

        current = self._sinks.get(tenant_id)
        if current is None:
            LOGGER.info("event=bridge_event_dropped tenant_id=%s reason=no_session", tenant_id)
            return False
        event = parse_bridge_event(payload)
        if event is None:
            LOGGER.info(
                "event=bridge_event_dropped tenant_id=%s reason=unknown kind=%s",
                tenant_id,
                payload.get("event") or payload.get("type"),
            )
            return False
        _, emit = current
        emit(event)
        return True

    async def aclose(self) -> None:
        self._sinks.clear()
        await self._http.aclose()


__all__ = [
    "BridgeSessionFactory",
    "BridgeSessionHandle",
    "parse_bridge_event",
]
