from __future__ import annotations

import prometheus_client

prometheus_client.REGISTRY._names_to_collectors.clear()
prometheus_client.REGISTRY._collector_to_names.clear()

import asyncio
from typing import Any, Mapping, Optional

import fakeredis
import pytest

from waworker.config import WorkerConfig
from waworker.errors import PermanentBan, ProtocolConnectFailure, TransientStoreError
from waworker.models import Connected, validate_credentials
from waworker.store import RedisSessionStore
from waworker.supervisor import SessionSupervisor


BLOB = {"creds": {"me": {"id": "254700000001:1@s.whatsapp.net"}, "registered": True}}


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeHandle:
    def __init__(self, tenant_id: str, pairing_code: str | None = None) -> None:
        self.tenant_id = tenant_id
        self.pairing_code = pairing_code
        self.closed = False
        self.sent: list[Mapping[str, Any]] = []

    async def send(self, tenant_id: str, payload: Mapping[str, Any]) -> dict[str, Any]:
        self.sent.append(payload)
        return {"message_id": len(self.sent)}

    async def close(self) -> None:
        self.closed = True


class FakeFactory:
    """Records every session it creates and lets tests drive lifecycle events."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, Optional[Mapping[str, Any]]]] = []
        self.handles: dict[str, list[FakeHandle]] = {}
        self.emitters: dict[str, list[Any]] = {}
        self.failures: dict[str, int] = {}
        self.banned: set[str] = set()
        self.connect_on_create = False
        self.gate: asyncio.Event | None = None
        self.entered: asyncio.Event | None = None

    def fail(self, tenant_id: str, times: int = 1) -> None:
        self.failures[tenant_id] = times

    async def create_session(self, tenant_id, credentials, emit):
        self.calls.append((tenant_id, credentials))
        if self.entered is not None:
            self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if tenant_id in self.banned:
            raise PermanentBan(f"account_banned tenant_id={tenant_id}")
        remaining = self.failures.get(tenant_id, 0)
        if remaining > 0:
            self.failures[tenant_id] = remaining - 1
            raise ProtocolConnectFailure(f"connect_refused tenant_id={tenant_id}")
        handle = FakeHandle(tenant_id, pairing_code=f"code-{tenant_id}")
        self.handles.setdefault(tenant_id, []).append(handle)
        self.emitters.setdefault(tenant_id, []).append(emit)
        if self.connect_on_create:
            emit(Connected())
        return handle

    def validate_credentials(self, blob: Any) -> bool:
        return validate_credentials(blob)

    def emit(self, tenant_id: str, event: Any) -> None:
        self.emitters[tenant_id][-1](event)

    def last_handle(self, tenant_id: str) -> FakeHandle:
        return self.handles[tenant_id][-1]


class FlakyStore:
    """Wraps a real store and fails selected operations on demand."""

    def __init__(self, inner: RedisSessionStore) -> None:
        self.inner = inner
        self.fail_saves = False
        self.fail_deletes = False
        self.fail_lists = False
        self.fail_loads = False
        self.saves: list[tuple[str, bool]] = []
        self.deletes: list[str] = []

    async def save(self, tenant_id, blob, *, health="active", allow_revive=False):
        self.saves.append((tenant_id, allow_revive))
        if self.fail_saves:
            raise TransientStoreError("save", tenant_id, "simulated")
        return await self.inner.save(tenant_id, blob, health=health, allow_revive=allow_revive)

    async def delete(self, tenant_id):
        self.deletes.append(tenant_id)
        if self.fail_deletes:
            raise TransientStoreError("delete", tenant_id, "simulated")
        return await self.inner.delete(tenant_id)

    async def list_active(self):
        if self.fail_lists:
            raise TransientStoreError("list", None, "simulated")
        return await self.inner.list_active()

    async def load(self, tenant_id):
        if self.fail_loads:
            raise TransientStoreError("load", tenant_id, "simulated")
        return await self.inner.load(tenant_id)

    def __getattr__(self, name: str) -> Any:
        return getattr(self.inner, name)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def blob() -> dict[str, Any]:
    return {"creds": dict(BLOB["creds"]), "keys": {}}


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def redis_client():
    return fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def redis_store(redis_client) -> RedisSessionStore:
    return RedisSessionStore(redis_client, prefix="watest")


@pytest.fixture
def store(redis_store) -> FlakyStore:
    return FlakyStore(redis_store)


@pytest.fixture
def factory() -> FakeFactory:
    return FakeFactory()


@pytest.fixture
def worker_cfg() -> WorkerConfig:
    return WorkerConfig(
        max_session_age=3600.0,
        disconnected_cleanup_time=300.0,
        max_failed_attempts=3,
        immediate_delete_delay=60.0,
        loop_concurrency=4,
        store_connect_retries=1,
        store_connect_backoff=0.0,
    )


@pytest.fixture
def supervisor(worker_cfg, store, factory, clock) -> SessionSupervisor:
    return SessionSupervisor(worker_cfg, store, factory, clock=clock)
