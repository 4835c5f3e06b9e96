from __future__ import annotations

import pytest

from waworker.errors import ConcurrentModification
from waworker.models import HEALTH_DEAD, HEALTH_DEGRADED, STATUS_OPEN
from waworker.registry import SessionRegistry


class _Handle:
    def __init__(self) -> None:
        self.closed = False

    async def close(self) -> None:
        self.closed = True


class _ExplodingHandle(_Handle):
    async def close(self) -> None:
        raise RuntimeError("socket already gone")


@pytest.mark.anyio
async def test_put_requires_tenant_lock():
    registry = SessionRegistry()

    with pytest.raises(ConcurrentModification):
        await registry.put("1", _Handle(), created_at=0.0)

    assert len(registry) == 0


@pytest.mark.anyio
async def test_put_replaces_and_closes_previous_handle():
    registry = SessionRegistry()
    first, second = _Handle(), _Handle()

    async with registry.tenant_lock("1"):
        entry = await registry.put("1", first, created_at=10.0)
        again = await registry.put("1", second, created_at=20.0)

    assert again is entry
    assert entry.created_at == 10.0
    assert entry.handle is second
    assert first.closed is True
    assert second.closed is False


@pytest.mark.anyio
async def test_handle_only_returned_when_open():
    registry = SessionRegistry()
    handle = _Handle()
    async with registry.tenant_lock("1"):
        entry = await registry.put("1", handle, created_at=0.0)

    assert registry.handle("1") is None
    entry.connection_status = STATUS_OPEN
    assert registry.handle("1") is handle
    assert registry.list_active() == {"1"}
    assert registry.handle("2") is None


@pytest.mark.anyio
async def test_remove_closes_handle_even_when_close_fails():
    registry = SessionRegistry()
    handle = _ExplodingHandle()
    async with registry.tenant_lock("1"):
        await registry.put("1", handle, created_at=0.0)
        entry = await registry.remove("1")

    assert entry is not None
    assert entry.handle is None
    assert "1" not in registry
    assert registry.tenants() == []


@pytest.mark.anyio
async def test_stats_snapshot_counts_health():
    registry = SessionRegistry()
    for tenant in ("1", "2", "3"):
        async with registry.tenant_lock(tenant):
            await registry.put(tenant, _Handle(), created_at=0.0)
    registry.get("2").health = HEALTH_DEGRADED
    registry.get("3").health = HEALTH_DEAD
    registry.get("1").connection_status = STATUS_OPEN

    stats = registry.stats_snapshot()

    assert stats["active"] == 1
    assert stats["degraded"] == 1
    assert stats["dead"] == 1
    assert stats["open"] == 1
    assert stats["total"] == 3


@pytest.mark.anyio
async def test_clear_closes_every_handle():
    registry = SessionRegistry()
    handles = [_Handle(), _Handle()]
    for tenant, handle in zip(("1", "2"), handles):
        async with registry.tenant_lock(tenant):
            await registry.put(tenant, handle, created_at=0.0)

    entries = await registry.clear()

    assert len(entries) == 2
    assert all(handle.closed for handle in handles)
    assert len(registry) == 0
