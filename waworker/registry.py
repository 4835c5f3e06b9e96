from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional

from .errors import ConcurrentModification
from .metrics import SESSIONS_BY_HEALTH, SESSIONS_OPEN
from .models import HEALTH_VALUES, STATUS_OPEN, TenantSession


LOGGER = logging.getLogger("waworker.registry")


async def close_handle(tenant_id: str, handle: Any) -> None:
    if handle is None:
        return
    try:
        await handle.close()
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        LOGGER.warning("event=handle_close_failed tenant_id=%s error=%s", tenant_id, exc)


class SessionRegistry:
    """In-process map of tenant id to its live session entry.

    Field updates on an entry happen under that tenant's lock; inserting and
    removing entries additionally takes the structural lock.
    """

    def __init__(self) -> None:
        self._entries: Dict[str, TenantSession] = {}
        self._tenant_locks: Dict[str, asyncio.Lock] = {}
        self._lock = asyncio.Lock()

    def tenant_lock(self, tenant_id: str) -> asyncio.Lock:
        lock = self._tenant_locks.get(tenant_id)
        if lock is None:
            lock = asyncio.Lock()
            self._tenant_locks[tenant_id] = lock
        return lock

    def _require_owner(self, tenant_id: str, action: str) -> None:
        if not self.tenant_lock(tenant_id).locked():
            LOGGER.error(
                "event=concurrent_modification tenant_id=%s action=%s", tenant_id, action
            )
            raise ConcurrentModification(f"{action}_without_tenant_lock tenant_id={tenant_id}")

    async def put(
        self,
        tenant_id: str,
        handle: Any,
        *,
        entry: Optional[TenantSession] = None,
        created_at: float,
    ) -> TenantSession:
        """Install ``handle`` for the tenant, closing any different prior handle."""

        self._require_owner(tenant_id, "put")
        async with self._lock:
            current = self._entries.get(tenant_id)
            previous = current.handle if current is not None else None
            target = entry or current or TenantSession(tenant_id=tenant_id, created_at=created_at)
            if current is not None and target is not current:
                current.handle = None
                current.handle_token = None
            target.handle = handle
            self._entries[tenant_id] = target
        if previous is not None and previous is not handle:
            await close_handle(tenant_id, previous)
        self.update_metrics()
        return target

    def get(self, tenant_id: str) -> Optional[TenantSession]:
        return self._entries.get(tenant_id)

    def handle(self, tenant_id: str) -> Any:
        entry = self._entries.get(tenant_id)
        if entry is None or entry.connection_status != STATUS_OPEN:
            return None
        return entry.handle

    async def remove(self, tenant_id: str) -> Optional[TenantSession]:
        self._require_owner(tenant_id, "remove")
        async with self._lock:
            entry = self._entries.pop(tenant_id, None)
        if entry is None:
            return None
        handle, entry.handle = entry.handle, None
        entry.handle_token = None
        await close_handle(tenant_id, handle)
        self.update_metrics()
        return entry

    def list_active(self) -> set[str]:
        return {
            tenant_id
            for tenant_id, entry in self._entries.items()
            if entry.connection_status == STATUS_OPEN
        }

    def snapshot(self) -> list[TenantSession]:
        return list(self._entries.values())

    def tenants(self) -> list[str]:
        return list(self._entries.keys())

    async def clear(self) -> list[TenantSession]:
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
        for entry in entries:
            handle, entry.handle = entry.handle, None
            entry.handle_token = None
            await close_handle(entry.tenant_id, handle)
        self.update_metrics()
        return entries

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def stats_snapshot(self) -> Dict[str, int]:
        counts = {health: 0 for health in HEALTH_VALUES}
        for entry in self._entries.values():
            counts[entry.health] = counts.get(entry.health, 0) + 1
        counts["open"] = len(self.list_active())
        counts["total"] = len(self._entries)
        return counts

    def update_metrics(self) -> None:
        snapshot = self.stats_snapshot()
        for health in HEALTH_VALUES:
            SESSIONS_BY_HEALTH.labels(health).set(snapshot.get(health, 0))
        SESSIONS_OPEN.set(snapshot["open"])


__all__ = ["SessionRegistry", "close_handle"]
