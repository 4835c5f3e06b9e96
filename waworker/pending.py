from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from .metrics import PENDING_SAVES


@dataclass(slots=True)
class PendingSave:
    data: Mapping[str, Any]
    timestamp: float
    allow_revive: bool = False


class PendingSaveBuffer:
    """Backlog of credential snapshots whose store write failed."""

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._entries: Dict[str, PendingSave] = {}

    def put(
        self, tenant_id: str, data: Mapping[str, Any], *, allow_revive: bool = False
    ) -> PendingSave:
        entry = PendingSave(data=data, timestamp=self._clock(), allow_revive=allow_revive)
        self._entries[tenant_id] = entry
        PENDING_SAVES.set(len(self._entries))
        return entry

    def get(self, tenant_id: str) -> Optional[PendingSave]:
        return self._entries.get(tenant_id)

    def pop(self, tenant_id: str) -> Optional[PendingSave]:
        entry = self._entries.pop(tenant_id, None)
        PENDING_SAVES.set(len(self._entries))
        return entry

    def discard(self, tenant_id: str, entry: Optional[PendingSave] = None) -> bool:
        """Remove the tenant's entry, only if it is still ``entry`` when given."""

        current = self._entries.get(tenant_id)
        if current is None:
            return False
        if entry is not None and current is not entry:
            return False
        del self._entries[tenant_id]
        PENDING_SAVES.set(len(self._entries))
        return True

    def items(self) -> list[tuple[str, PendingSave]]:
        return list(self._entries.items())

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._entries


__all__ = ["PendingSave", "PendingSaveBuffer"]
