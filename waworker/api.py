from __future__ import annotations

import logging
import os
from typing import Any

from fastapi import Body, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .bridge import BridgeSessionFactory
from .config import worker_config
from .errors import (
    InvalidTenantError,
    PermanentBan,
    ProtocolConnectFailure,
    SessionExistsError,
)
from .models import normalize_tenant
from .store import RedisSessionStore
from .supervisor import SessionSupervisor


logger = logging.getLogger("waworker.api")
ADMIN_TOKEN = (os.getenv("ADMIN_TOKEN") or "").strip()

NO_STORE_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


class _TenantModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    @model_validator(mode="before")
    @classmethod
    def _alias_tenant(cls, values: Any) -> Any:
        if isinstance(values, dict) and "tenant" not in values:
            for alias in ("tenant_id", "number"):
                if alias in values:
                    data = dict(values)
                    data["tenant"] = data.pop(alias)
                    return data
        return values


class TenantBody(_TenantModel):
    tenant: int | str


class SendRequest(_TenantModel):
    tenant: int | str
    to: str = Field(..., min_length=1)
    text: str | None = None
    meta: dict[str, Any] = Field(default_factory=dict)


def create_app() -> FastAPI:
    cfg = worker_config()
    factory = BridgeSessionFactory(
        cfg.bridge_url,
        token=cfg.bridge_token,
        timeout=cfg.http_timeout,
    )
    store = RedisSessionStore.from_url(
        cfg.redis_url,
        prefix=cfg.key_prefix,
        validator=factory.validate_credentials,
    )
    supervisor = SessionSupervisor(cfg, store, factory)
    logger.info(
        "stage=app_configured bridge_url=%s token_present=%s prefix=%s",
        cfg.bridge_url,
        "true" if cfg.bridge_token else "false",
        cfg.key_prefix,
    )

    app = FastAPI(title="waworker")
    app.state.supervisor = supervisor
    app.state.session_factory = factory
    app.state.session_store = store

    def _error(status: int, message: str, **extra: Any) -> JSONResponse:
        body: dict[str, Any] = {"error": message}
        body.update(extra)
        return JSONResponse(body, status_code=status, headers=dict(NO_STORE_HEADERS))

    def _enforce_admin(request: Request, route: str, *, tenant: Any = None) -> JSONResponse | None:
        if not ADMIN_TOKEN:
            return None
        header = request.headers.get("X-Admin-Token", "").strip()
        if not header or header != ADMIN_TOKEN:
            logger.warning("event=admin_token_invalid route=%s tenant=%s", route, tenant)
            return _error(401, "not_authorized")
        return None

    def _tenant_id(raw: Any) -> str:
        try:
            return normalize_tenant(raw)
        except InvalidTenantError as exc:
            raise HTTPException(status_code=400, detail="invalid_tenant") from exc

    @app.on_event("startup")
    async def _startup() -> None:  # pragma: no cover - wiring
        await supervisor.start()

    @app.on_event("shutdown")
    async def _shutdown() -> None:  # pragma: no cover - wiring
        await supervisor.shutdown()
        await store.close()
        await factory.aclose()

    @app.post("/session/start")
    async def start_session(request: Request, payload: TenantBody):
        tenant_id = _tenant_id(payload.tenant)
        unauthorized = _enforce_admin(request, "/session/start", tenant=tenant_id)
        if unauthorized is not None:
            return unauthorized
        try:
            token = await supervisor.request_new_session(tenant_id)
        except SessionExistsError:
            logger.info("event=session_start_rejected tenant_id=%s reason=open", tenant_id)
            return _error(409, "session_open")
        except PermanentBan:
            logger.warning("event=session_start_rejected tenant_id=%s reason=banned", tenant_id)
            return _error(403, "banned")
        except ProtocolConnectFailure as exc:
            logger.warning("event=session_start_failed tenant_id=%s error=%s", tenant_id, exc)
            return _error(502, "protocol_connect_failed")
        return JSONResponse(token.to_payload(), headers=dict(NO_STORE_HEADERS))

    @app.post("/session/remove")
    async def remove_session(request: Request, payload: TenantBody):
        tenant_id = _tenant_id(payload.tenant)
        unauthorized = _enforce_admin(request, "/session/remove", tenant=tenant_id)
        if unauthorized is not None:
            return unauthorized
        removed = await supervisor.request_removal(tenant_id)
        return JSONResponse(
            {"ok": True, "tenant": tenant_id, "removed": removed},
            headers=dict(NO_STORE_HEADERS),
        )

    @app.get("/session/status")
    async def session_status(request: Request, tenant: str = Query(...)):
        tenant_id = _tenant_id(tenant)
        unauthorized = _enforce_admin(request, "/session/status", tenant=tenant_id)
        if unauthorized is not None:
            return unauthorized
        entry = supervisor.get_entry(tenant_id)
        if entry is not None:
            body = entry.to_payload()
        else:
            body = {"tenant": tenant_id, "health": supervisor.get_health(tenant_id)}
        body["active"] = supervisor.get_active_handle(tenant_id) is not None
        return JSONResponse(body, headers=dict(NO_STORE_HEADERS))

    @app.post("/send")
    async def send_message(request: Request, raw_payload: dict[str, Any] = Body(...)):
        try:
            payload = SendRequest(**raw_payload)
        except ValidationError as exc:
            raise HTTPException(status_code=422, detail=exc.errors()) from exc
        tenant_id = _tenant_id(payload.tenant)
        unauthorized = _enforce_admin(request, "/send", tenant=tenant_id)
        if unauthorized is not None:
            return unauthorized
        if not (payload.text or "").strip():
            raise HTTPException(
                status_code=422,
                detail=[
                    {
                        "loc": ["body", "text"],
                        "msg": "message_content_required",
                        "type": "value_error",
                    }
                ],
            )
        handle = supervisor.get_active_handle(tenant_id)
        if handle is None:
            logger.info("event=send_rejected tenant_id=%s reason=no_active_session", tenant_id)
            return _error(409, "session_not_active", health=supervisor.get_health(tenant_id))
        message = {"to": payload.to, "text": payload.text, "meta": payload.meta}
        try:
            result = await handle.send(tenant_id, message)
        except ProtocolConnectFailure as exc:
            logger.warning("event=send_failed tenant_id=%s error=%s", tenant_id, exc)
            return _error(502, "send_failed")
        body: dict[str, Any] = {"ok": True}
        if isinstance(result, dict) and result.get("message_id") is not None:
            body["message_id"] = result["message_id"]
        return JSONResponse(body, headers=dict(NO_STORE_HEADERS))

    def require_bridge_token(request: Request) -> None:
        expected = (cfg.bridge_token or "").strip()
        if not expected:
            return None
        if request.headers.get("X-Auth-Token", "").strip() != expected:
            logger.warning("event=bridge_token_invalid route=/webhook/bridge")
            raise HTTPException(status_code=401, detail="not_authorized")
        return None

    @app.post("/webhook/bridge")
    async def bridge_webhook(
        payload: dict[str, Any] = Body(...),
        _: None = Depends(require_bridge_token),
    ):
        tenant_id = _tenant_id(payload.get("tenant") or payload.get("number"))
        accepted = factory.dispatch(tenant_id, payload)
        return {"ok": True, "accepted": accepted}

    @app.get("/health")
    async def health():
        stats = supervisor.stats_snapshot()
        return {
            "ok": True,
            "sessions": int(stats.get("total", 0) or 0),
            "open": int(stats.get("open", 0) or 0),
            "pending_saves": int(stats.get("pending_saves", 0) or 0),
            "store_ready": bool(stats.get("store_ready", False)),
        }

    @app.get("/metrics")
    async def metrics():
        data = generate_latest()
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    return app


__all__ = ["create_app"]
