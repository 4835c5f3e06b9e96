from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional

from .config import WorkerConfig
from .errors import (
    InvalidCredentialData,
    InvalidTenantError,
    PermanentBan,
    ProtocolConnectFailure,
    SessionExistsError,
    TransientStoreError,
)
from .metrics import LOOP_ERRORS, RECONNECT_ATTEMPTS, TEARDOWNS
from .models import (
    HEALTH_ACTIVE,
    HEALTH_DEAD,
    HEALTH_DEGRADED,
    HEALTH_DISCONNECTED,
    PERSISTABLE_HEALTH,
    REASON_BANNED,
    REASON_RETRYABLE,
    STATUS_BANNED,
    STATUS_CLOSED,
    STATUS_CONNECTING,
    STATUS_OPEN,
    Connected,
    CredentialsUpdated,
    Disconnected,
    PairingToken,
    SessionEvent,
    StoredSessionRecord,
    TenantSession,
    normalize_tenant,
)
from .pending import PendingSaveBuffer
from .protocol import EventSink, SessionFactory
from .registry import SessionRegistry, close_handle
from .store import RedisSessionStore


LOGGER = logging.getLogger("waworker.supervisor")

LOOP_PERSIST = "persist"
LOOP_CLEANUP = "cleanup"
LOOP_RECONNECT = "reconnect"
LOOP_RESTORE = "restore"
LOOP_SYNC = "sync"
LOOP_NAMES = (LOOP_PERSIST, LOOP_CLEANUP, LOOP_RECONNECT, LOOP_RESTORE, LOOP_SYNC)

ACTION_KEEP = "keep"
ACTION_RECONNECT = "reconnect"
ACTION_TEARDOWN_DEAD = "dead"
ACTION_TEARDOWN_EXPIRED = "max_age"
ACTION_TEARDOWN_RETRY_CAP = "retry_cap"
ACTION_TEARDOWN_PAIRING = "pairing_failed"
TEARDOWN_ACTIONS = frozenset(
    {
        ACTION_TEARDOWN_DEAD,
        ACTION_TEARDOWN_EXPIRED,
        ACTION_TEARDOWN_RETRY_CAP,
        ACTION_TEARDOWN_PAIRING,
    }
)


def classify_entry(entry: TenantSession, now: float, config: WorkerConfig) -> str:
    """Decide what the cleanup loop does with one registry entry.

    An entry disconnected longer than ``max_session_age`` is abandoned even
    when it is still below the retry cap. The grace before the next reconnect
    counts from the latest attempt, the age limit from the first disconnect.
    """

    if entry.health == HEALTH_DEAD or entry.connection_status == STATUS_BANNED:
        return ACTION_TEARDOWN_DEAD
    if entry.connection_status == STATUS_OPEN:
        return ACTION_KEEP
    if not entry.paired:
        if now - entry.created_at >= config.immediate_delete_delay:
            return ACTION_TEARDOWN_PAIRING
        return ACTION_KEEP
    since = entry.disconnected_at if entry.disconnected_at is not None else entry.created_at
    elapsed = now - since
    if elapsed >= config.max_session_age:
        return ACTION_TEARDOWN_EXPIRED
    if entry.reconnect_attempts >= config.max_failed_attempts:
        return ACTION_TEARDOWN_RETRY_CAP
    if entry.last_attempt_at is not None and entry.last_attempt_at > since:
        since = entry.last_attempt_at
    if now - since >= config.disconnected_cleanup_time:
        return ACTION_RECONNECT
    return ACTION_KEEP


class SessionSupervisor:
    """Own every tenant session of this process and the loops that keep them.

    One instance per process. Registry entries are only mutated while the
    tenant's lock is held; lifecycle events of each tenant are applied in
    emission order by a single consumer task for that tenant.
    """

    def __init__(
        self,
        config: WorkerConfig,
        store: RedisSessionStore,
        factory: SessionFactory,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._store = store
        self._factory = factory
        self._clock = clock
        self.registry = SessionRegistry()
        self.pending = PendingSaveBuffer(clock)
        self._reconnect_pending: set[str] = set()
        self._reconnecting: set[str] = set()
        self._reconnect_tasks: Dict[str, asyncio.Task[Any]] = {}
        self._restoring: set[str] = set()
        self._creating: set[str] = set()
        self._pending_deletes: set[str] = set()
        self._dead: Dict[str, float] = {}
        self._event_queues: Dict[str, asyncio.Queue[tuple[object, SessionEvent]]] = {}
        self._event_tasks: Dict[str, asyncio.Task[Any]] = {}
        self._tick_guards: Dict[str, asyncio.Lock] = {name: asyncio.Lock() for name in LOOP_NAMES}
        self._loop_tasks: list[asyncio.Task[Any]] = []
        self._store_ready = False
        self._started = False

    @property
    def config(self) -> WorkerConfig:
        return self._config

    @property
    def reconnect_pending(self) -> frozenset[str]:
        return frozenset(self._reconnect_pending)

    @property
    def pending_deletes(self) -> frozenset[str]:
        return frozenset(self._pending_deletes)

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        cfg = self._config
        self._loop_tasks = [
            asyncio.create_task(
                self._run_loop(LOOP_PERSIST, cfg.save_interval, self.persist_once),
                name="wa-persist-loop",
            ),
            asyncio.create_task(
                self._run_loop(LOOP_CLEANUP, cfg.cleanup_interval, self.cleanup_once),
                name="wa-cleanup-loop",
            ),
            asyncio.create_task(
                self._run_loop(LOOP_RECONNECT, cfg.reconnect_interval, self.reconnect_once),
                name="wa-reconnect-loop",
            ),
            asyncio.create_task(
                self._run_loop(
                    LOOP_RESTORE,
                    cfg.restore_interval,
                    self._connect_and_restore,
                    initial_delay=cfg.initial_restore_delay,
                ),
                name="wa-restore-loop",
            ),
            asyncio.create_task(
                self._run_loop(LOOP_SYNC, cfg.sync_interval, self.sync_once),
                name="wa-sync-loop",
            ),
        ]
        LOGGER.info(
            "stage=supervisor_started save=%ss cleanup=%ss reconnect=%ss restore=%ss sync=%ss",
            cfg.save_interval,
            cfg.cleanup_interval,
            cfg.reconnect_interval,
            cfg.restore_interval,
            cfg.sync_interval,
        )

    async def shutdown(self) -> None:
        tasks = list(self._loop_tasks)
        self._loop_tasks = []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        try:
            await self.persist_once()
        except Exception:
            LOGGER.exception("event=final_persist_failed")
        reconnects = list(self._reconnect_tasks.values())
        self._reconnect_tasks.clear()
        consumers = list(self._event_tasks.values())
        self._event_tasks.clear()
        self._event_queues.clear()
        for task in reconnects + consumers:
            task.cancel()
        await asyncio.gather(*reconnects, *consumers, return_exceptions=True)
        entries = await self.registry.clear()
        self._started = False
        LOGGER.info("stage=supervisor_stopped sessions_closed=%s", len(entries))

    async def _connect_and_restore(self) -> int:
        if not self._store_ready:
            try:
                await self._store.connect(
                    retries=self._config.store_connect_retries,
                    backoff=self._config.store_connect_backoff,
                )
                self._store_ready = True
            except TransientStoreError as exc:
                LOGGER.error("event=store_unavailable mode=buffering error=%s", exc)
                return 0
        return await self.restore_once()

    async def _run_loop(
        self,
        name: str,
        interval: float,
        tick: Callable[[], Awaitable[Any]],
        *,
        initial_delay: Optional[float] = None,
    ) -> None:
        if initial_delay is not None:
            await asyncio.sleep(initial_delay)
            await self._safe_tick(name, tick)
        while True:
            await asyncio.sleep(interval)
            await self._safe_tick(name, tick)

    async def _safe_tick(self, name: str, tick: Callable[[], Awaitable[Any]]) -> None:
        try:
            await tick()
        except asyncio.CancelledError:
            raise
        except Exception:
            LOOP_ERRORS.labels(name).inc()
            LOGGER.exception("event=loop_tick_failed loop=%s", name)

    async def _fan_out(
        self,
        name: str,
        tenant_ids: Iterable[str],
        work: Callable[[str], Awaitable[Any]],
    ) -> int:
        targets = list(tenant_ids)
        if not targets:
            return 0
        semaphore = asyncio.Semaphore(self._config.loop_concurrency)
        tasks = [
            asyncio.create_task(
                self._run_tenant(name, tenant_id, work, semaphore),
                name=f"wa-{name}-{tenant_id}",
            )
            for tenant_id in targets
        ]
        await asyncio.gather(*tasks, return_exceptions=True)
        return len(targets)

    async def _run_tenant(
        self,
        name: str,
        tenant_id: str,
        work: Callable[[str], Awaitable[Any]],
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            try:
                await work(tenant_id)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOOP_ERRORS.labels(name).inc()
                LOGGER.exception("event=loop_tenant_failed loop=%s tenant_id=%s", name, tenant_id)

    # -- surface for the command layer ---------------------------------------

    def get_active_handle(self, tenant: Any) -> Any:
        try:
            tenant_id = normalize_tenant(tenant)
        except InvalidTenantError:
            return None
        return self.registry.handle(tenant_id)

    def get_health(self, tenant: Any) -> Optional[str]:
        try:
            tenant_id = normalize_tenant(tenant)
        except InvalidTenantError:
            return None
        entry = self.registry.get(tenant_id)
        if entry is not None:
            return entry.health
        if tenant_id in self._dead:
            return HEALTH_DEAD
        return None

    def get_entry(self, tenant: Any) -> Optional[TenantSession]:
        return self.registry.get(normalize_tenant(tenant))

    async def request_new_session(self, tenant: Any) -> PairingToken:
        tenant_id = normalize_tenant(tenant)
        await self._cancel_reconnect(tenant_id)
        async with self.registry.tenant_lock(tenant_id):
            current = self.registry.get(tenant_id)
            if current is not None and current.is_open:
                raise SessionExistsError(f"session_open tenant_id={tenant_id}")
            credentials = None
            try:
                credentials = await self._store.load(tenant_id)
            except TransientStoreError as exc:
                LOGGER.warning(
                    "event=pairing_load_failed tenant_id=%s error=%s", tenant_id, exc
                )
            if credentials is not None and not self._factory.validate_credentials(credentials):
                LOGGER.warning("event=pairing_stored_credentials_invalid tenant_id=%s", tenant_id)
                credentials = None
            self._reconnect_pending.discard(tenant_id)
            self._pending_deletes.discard(tenant_id)
            entry = TenantSession(tenant_id=tenant_id, created_at=self._clock())
            entry = await self._install_locked(
                tenant_id,
                credentials,
                source="pairing",
                entry=entry,
                allow_revive=True,
            )
            pairing_code = getattr(entry.handle, "pairing_code", None)
            return PairingToken(
                tenant_id=tenant_id,
                pairing_code=pairing_code,
                restored=credentials is not None,
            )

    async def request_removal(self, tenant: Any) -> bool:
        tenant_id = normalize_tenant(tenant)
        await self._cancel_reconnect(tenant_id)
        async with self.registry.tenant_lock(tenant_id):
            entry = self.registry.get(tenant_id)
            if entry is not None:
                await self._teardown_locked(entry, reason="removed")
                removed = True
            else:
                self._reconnect_pending.discard(tenant_id)
                self._drop_pending_save(tenant_id)
                await self._delete_record(tenant_id)
                removed = False
        return removed

    def stats_snapshot(self) -> Dict[str, Any]:
        snapshot: Dict[str, Any] = dict(self.registry.stats_snapshot())
        snapshot["pending_saves"] = len(self.pending)
        snapshot["reconnect_pending"] = len(self._reconnect_pending)
        snapshot["reconnecting"] = len(self._reconnecting)
        snapshot["pending_deletes"] = len(self._pending_deletes)
        snapshot["store_ready"] = self._store_ready
        return snapshot

    async def flush_events(self) -> None:
        """Wait until every queued lifecycle event has been applied."""

        queues = list(self._event_queues.values())
        if queues:
            await asyncio.gather(*(queue.join() for queue in queues))

    # -- handle creation and teardown ----------------------------------------

    async def _install_locked(
        self,
        tenant_id: str,
        credentials: Any,
        *,
        source: str,
        entry: Optional[TenantSession] = None,
        allow_revive: bool = False,
    ) -> TenantSession:
        current = self.registry.get(tenant_id)
        if current is not None and current.handle is not None:
            previous, current.handle = current.handle, None
            current.handle_token = None
            await close_handle(tenant_id, previous)
        token = object()
        emit = self._make_emitter(tenant_id, token)
        self._creating.add(tenant_id)
        try:
            handle = await self._factory.create_session(tenant_id, credentials, emit)
        finally:
            self._creating.discard(tenant_id)
        try:
            installed = await self.registry.put(
                tenant_id, handle, entry=entry, created_at=self._clock()
            )
        except BaseException:
            await close_handle(tenant_id, handle)
            raise
        installed.handle_token = token
        installed.connection_status = STATUS_CONNECTING
        installed.health = HEALTH_ACTIVE
        installed.credentials = credentials
        installed.paired = installed.paired or credentials is not None
        installed.allow_revive = allow_revive
        installed.disconnect_reason = None
        installed.last_error = None
        self._dead.pop(tenant_id, None)
        self.registry.update_metrics()
        LOGGER.info(
            "stage=session_created tenant_id=%s source=%s restored=%s",
            tenant_id,
            source,
            credentials is not None,
        )
        return installed

    async def _teardown_locked(self, entry: TenantSession, *, reason: str) -> None:
        tenant_id = entry.tenant_id
        entry.health = HEALTH_DEAD
        self._reconnect_pending.discard(tenant_id)
        task = self._reconnect_tasks.pop(tenant_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        self._drop_pending_save(tenant_id)
        self._dead[tenant_id] = self._clock()
        if self.registry.get(tenant_id) is entry:
            await self.registry.remove(tenant_id)
        self._stop_events(tenant_id)
        TEARDOWNS.labels(reason).inc()
        LOGGER.warning("stage=teardown tenant_id=%s reason=%s", tenant_id, reason)
        await self._delete_record(tenant_id)

    def _drop_pending_save(self, tenant_id: str) -> None:
        dropped = self.pending.pop(tenant_id)
        if dropped is not None:
            LOGGER.info(
                "event=pending_save_dropped tenant_id=%s reason=torn_down buffered_at=%s",
                tenant_id,
                dropped.timestamp,
            )

    async def _delete_record(self, tenant_id: str) -> bool:
        try:
            await self._store.delete(tenant_id)
        except TransientStoreError as exc:
            self._pending_deletes.add(tenant_id)
            LOGGER.warning(
                "event=store_delete_deferred tenant_id=%s error=%s", tenant_id, exc
            )
            return False
        self._pending_deletes.discard(tenant_id)
        return True

    async def _cancel_reconnect(self, tenant_id: str) -> None:
        task = self._reconnect_tasks.pop(tenant_id, None)
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        LOGGER.info("event=reconnect_cancelled tenant_id=%s", tenant_id)

    # -- lifecycle events ----------------------------------------------------

    def _make_emitter(self, tenant_id: str, token: object) -> EventSink:
        def emit(event: SessionEvent) -> None:
            entry = self.registry.get(tenant_id)
            if tenant_id not in self._creating and (
                entry is None or entry.handle_token is not token
            ):
                LOGGER.info(
                    "event=stale_event_dropped tenant_id=%s kind=%s",
                    tenant_id,
                    type(event).__name__,
                )
                return
            self._enqueue(tenant_id, token, event)

        return emit

    def _enqueue(self, tenant_id: str, token: object, event: SessionEvent) -> None:
        queue = self._event_queues.get(tenant_id)
        if queue is None:
            queue = asyncio.Queue()
            self._event_queues[tenant_id] = queue
            self._event_tasks[tenant_id] = asyncio.get_running_loop().create_task(
                self._consume_events(tenant_id, queue), name=f"wa-events-{tenant_id}"
            )
        queue.put_nowait((token, event))

    def _stop_events(self, tenant_id: str) -> None:
        queue = self._event_queues.pop(tenant_id, None)
        while queue is not None and not queue.empty():
            queue.get_nowait()
            queue.task_done()
        task = self._event_tasks.pop(tenant_id, None)
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()

    async def _consume_events(
        self, tenant_id: str, queue: asyncio.Queue[tuple[object, SessionEvent]]
    ) -> None:
        while True:
            token, event = await queue.get()
            try:
                async with self.registry.tenant_lock(tenant_id):
                    entry = self.registry.get(tenant_id)
                    if entry is None or entry.handle_token is not token:
                        LOGGER.info(
                            "event=stale_event_dropped tenant_id=%s kind=%s",
                            tenant_id,
                            type(event).__name__,
                        )
                    else:
                        await self._apply_event_locked(entry, event)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOOP_ERRORS.labels("events").inc()
                LOGGER.exception("event=lifecycle_event_failed tenant_id=%s", tenant_id)
            finally:
                queue.task_done()
            if self._event_tasks.get(tenant_id) is not asyncio.current_task():
                return

    async def _apply_event_locked(self, entry: TenantSession, event: SessionEvent) -> None:
        tenant_id = entry.tenant_id
        now = self._clock()
        if isinstance(event, Connected):
            entry.connection_status = STATUS_OPEN
            entry.health = HEALTH_ACTIVE
            if entry.reconnect_attempts:
                RECONNECT_ATTEMPTS.labels("success").inc()
            entry.reconnect_attempts = 0
            entry.last_attempt_at = None
            entry.disconnected_at = None
            entry.disconnect_reason = None
            entry.last_active_at = now
            entry.paired = True
            self._reconnect_pending.discard(tenant_id)
            LOGGER.info("stage=connected tenant_id=%s", tenant_id)
        elif isinstance(event, Disconnected):
            entry.connection_status = STATUS_CLOSED
            if entry.disconnected_at is None:
                entry.disconnected_at = now
            entry.disconnect_reason = event.reason
            if event.reason == REASON_RETRYABLE:
                entry.health = HEALTH_DEGRADED
                LOGGER.info(
                    "stage=disconnected tenant_id=%s reason=%s detail=%s",
                    tenant_id,
                    event.reason,
                    event.detail,
                )
            else:
                if event.reason == REASON_BANNED:
                    entry.connection_status = STATUS_BANNED
                entry.health = HEALTH_DEAD
                await self._teardown_locked(entry, reason=event.reason)
                return
        elif isinstance(event, CredentialsUpdated):
            entry.credentials = event.blob
            entry.dirty = True
            entry.last_active_at = now
        self.registry.update_metrics()

    # -- persistence loop ----------------------------------------------------

    async def persist_once(self) -> int:
        guard = self._tick_guards[LOOP_PERSIST]
        if guard.locked():
            LOGGER.info("event=tick_skipped loop=%s reason=running", LOOP_PERSIST)
            return 0
        async with guard:
            targets = [
                entry.tenant_id
                for entry in self.registry.snapshot()
                if entry.dirty and entry.health in PERSISTABLE_HEALTH
            ]
            return await self._fan_out(LOOP_PERSIST, targets, self._persist_tenant)

    async def _persist_tenant(self, tenant_id: str) -> None:
        async with self.registry.tenant_lock(tenant_id):
            entry = self.registry.get(tenant_id)
            if entry is None or not entry.dirty:
                return
            if entry.health not in PERSISTABLE_HEALTH or entry.connection_status != STATUS_OPEN:
                LOGGER.info(
                    "event=save_skipped tenant_id=%s reason=inactive status=%s",
                    tenant_id,
                    entry.connection_status,
                )
                return
            blob = entry.credentials
            if blob is None:
                entry.dirty = False
                return
            try:
                saved = await self._store.save(
                    tenant_id, blob, health=entry.health, allow_revive=entry.allow_revive
                )
            except InvalidCredentialData:
                entry.dirty = False
                entry.last_error = "invalid_session_data"
                return
            except TransientStoreError:
                self.pending.put(tenant_id, blob, allow_revive=entry.allow_revive)
                entry.dirty = False
                LOGGER.warning("event=save_buffered tenant_id=%s", tenant_id)
                return
            entry.dirty = False
            self.pending.discard(tenant_id)
            if saved:
                entry.last_backup_at = self._clock()
                entry.allow_revive = False
            else:
                LOGGER.warning("event=save_rejected tenant_id=%s reason=record_deleted", tenant_id)

    # -- cleanup loop --------------------------------------------------------

    async def cleanup_once(self) -> int:
        guard = self._tick_guards[LOOP_CLEANUP]
        if guard.locked():
            LOGGER.info("event=tick_skipped loop=%s reason=running", LOOP_CLEANUP)
            return 0
        async with guard:
            self._prune_dead()
            targets = self.registry.tenants()
            return await self._fan_out(LOOP_CLEANUP, targets, self._cleanup_tenant)

    def _prune_dead(self) -> None:
        cutoff = self._clock() - self._config.max_session_age
        for tenant_id, torn_down_at in list(self._dead.items()):
            if torn_down_at <= cutoff:
                del self._dead[tenant_id]

    async def _cleanup_tenant(self, tenant_id: str) -> None:
        async with self.registry.tenant_lock(tenant_id):
            entry = self.registry.get(tenant_id)
            if entry is None:
                return
            action = classify_entry(entry, self._clock(), self._config)
            if action in TEARDOWN_ACTIONS:
                await self._teardown_locked(entry, reason=action)
            elif action == ACTION_RECONNECT:
                entry.health = HEALTH_DISCONNECTED
                if tenant_id not in self._reconnect_pending:
                    self._reconnect_pending.add(tenant_id)
                    LOGGER.info(
                        "event=reconnect_scheduled tenant_id=%s attempts=%s",
                        tenant_id,
                        entry.reconnect_attempts,
                    )
                self.registry.update_metrics()

    # -- reconnect loop ------------------------------------------------------

    async def reconnect_once(self) -> int:
        guard = self._tick_guards[LOOP_RECONNECT]
        if guard.locked():
            LOGGER.info("event=tick_skipped loop=%s reason=running", LOOP_RECONNECT)
            return 0
        async with guard:
            targets = [
                tenant_id
                for tenant_id in sorted(self._reconnect_pending)
                if tenant_id not in self._reconnecting
            ]
            return await self._fan_out(LOOP_RECONNECT, targets, self._reconnect_tenant)

    async def _reconnect_tenant(self, tenant_id: str) -> None:
        if tenant_id in self._reconnecting:
            return
        self._reconnecting.add(tenant_id)
        current_task = asyncio.current_task()
        if current_task is not None:
            self._reconnect_tasks[tenant_id] = current_task
        try:
            async with self.registry.tenant_lock(tenant_id):
                entry = self.registry.get(tenant_id)
                if (
                    entry is None
                    or tenant_id not in self._reconnect_pending
                    or entry.health == HEALTH_DEAD
                    or entry.is_open
                ):
                    self._reconnect_pending.discard(tenant_id)
                    return
                if entry.reconnect_attempts >= self._config.max_failed_attempts:
                    await self._teardown_locked(entry, reason=ACTION_TEARDOWN_RETRY_CAP)
                    return
                credentials = entry.credentials
                if credentials is None:
                    try:
                        credentials = await self._store.load(tenant_id)
                    except TransientStoreError as exc:
                        LOGGER.warning(
                            "event=reconnect_load_failed tenant_id=%s error=%s", tenant_id, exc
                        )
                        return
                if credentials is None or not self._factory.validate_credentials(credentials):
                    await self._reconnect_failed_locked(entry, "no_valid_credentials")
                    return
                try:
                    await self._install_locked(
                        tenant_id,
                        credentials,
                        source="reconnect",
                        entry=entry,
                        allow_revive=entry.allow_revive,
                    )
                except PermanentBan:
                    entry.connection_status = STATUS_BANNED
                    await self._teardown_locked(entry, reason=REASON_BANNED)
                    return
                except ProtocolConnectFailure as exc:
                    await self._reconnect_failed_locked(entry, str(exc))
                    return
                # counts until the bridge reports the connection open
                entry.reconnect_attempts += 1
                entry.last_attempt_at = self._clock()
                self._reconnect_pending.discard(tenant_id)
                RECONNECT_ATTEMPTS.labels("started").inc()
                LOGGER.info(
                    "event=reconnect_started tenant_id=%s attempts=%s max=%s",
                    tenant_id,
                    entry.reconnect_attempts,
                    self._config.max_failed_attempts,
                )
                self.registry.update_metrics()
        finally:
            self._reconnecting.discard(tenant_id)
            if self._reconnect_tasks.get(tenant_id) is current_task:
                self._reconnect_tasks.pop(tenant_id, None)

    async def _reconnect_failed_locked(self, entry: TenantSession, detail: str) -> None:
        entry.reconnect_attempts += 1
        entry.last_error = detail
        RECONNECT_ATTEMPTS.labels("failure").inc()
        LOGGER.warning(
            "event=reconnect_failed tenant_id=%s attempts=%s max=%s error=%s",
            entry.tenant_id,
            entry.reconnect_attempts,
            self._config.max_failed_attempts,
            detail,
        )
        if entry.reconnect_attempts >= self._config.max_failed_attempts:
            await self._teardown_locked(entry, reason=ACTION_TEARDOWN_RETRY_CAP)
            return
        entry.health = HEALTH_DEGRADED
        self.registry.update_metrics()

    # -- restore loop --------------------------------------------------------

    async def restore_once(self) -> int:
        guard = self._tick_guards[LOOP_RESTORE]
        if guard.locked():
            LOGGER.info("event=tick_skipped loop=%s reason=running", LOOP_RESTORE)
            return 0
        async with guard:
            try:
                records = await self._store.list_active()
            except TransientStoreError as exc:
                LOGGER.warning("event=restore_skipped reason=store_unavailable error=%s", exc)
                return 0
            by_tenant: Dict[str, StoredSessionRecord] = {}
            for record in records:
                if not record.number:
                    continue
                if (
                    record.number in self.registry
                    or record.number in self._restoring
                    or record.number in self._pending_deletes
                ):
                    continue
                by_tenant[record.number] = record
            if not by_tenant:
                return 0

            async def _work(tenant_id: str) -> None:
                await self._restore_tenant(by_tenant[tenant_id])

            count = await self._fan_out(LOOP_RESTORE, sorted(by_tenant), _work)
            LOGGER.info("event=restore_tick candidates=%s", count)
            return count

    async def _restore_tenant(self, record: StoredSessionRecord) -> None:
        tenant_id = record.number
        self._restoring.add(tenant_id)
        try:
            async with self.registry.tenant_lock(tenant_id):
                if tenant_id in self.registry:
                    return
                credentials = record.session_data
                if not self._factory.validate_credentials(credentials):
                    LOGGER.warning(
                        "event=restore_invalid_credentials tenant_id=%s action=delete", tenant_id
                    )
                    await self._delete_record(tenant_id)
                    return
                try:
                    await self._install_locked(tenant_id, credentials, source="restore")
                except PermanentBan:
                    LOGGER.warning("event=restore_banned tenant_id=%s action=delete", tenant_id)
                    self._dead[tenant_id] = self._clock()
                    TEARDOWNS.labels(REASON_BANNED).inc()
                    await self._delete_record(tenant_id)
                    return
                except ProtocolConnectFailure as exc:
                    LOGGER.warning("event=restore_failed tenant_id=%s error=%s", tenant_id, exc)
                    return
        finally:
            self._restoring.discard(tenant_id)

    # -- store sync loop -----------------------------------------------------

    async def sync_once(self) -> int:
        guard = self._tick_guards[LOOP_SYNC]
        if guard.locked():
            LOGGER.info("event=tick_skipped loop=%s reason=running", LOOP_SYNC)
            return 0
        async with guard:
            saves = [tenant_id for tenant_id, _ in self.pending.items()]
            deletes = sorted(self._pending_deletes)
            count = await self._fan_out(LOOP_SYNC, saves, self._sync_tenant)
            count += await self._fan_out(LOOP_SYNC, deletes, self._retry_delete)
            if count:
                LOGGER.info(
                    "event=sync_tick saves=%s deletes=%s remaining=%s",
                    len(saves),
                    len(deletes),
                    len(self.pending),
                )
            return count

    async def _sync_tenant(self, tenant_id: str) -> None:
        async with self.registry.tenant_lock(tenant_id):
            pending = self.pending.get(tenant_id)
            if pending is None:
                return
            entry = self.registry.get(tenant_id)
            if entry is None or entry.health == HEALTH_DEAD:
                self.pending.discard(tenant_id, pending)
                LOGGER.info("event=pending_save_dropped tenant_id=%s reason=torn_down", tenant_id)
                return
            if entry.connection_status != STATUS_OPEN:
                LOGGER.info("event=pending_save_retained tenant_id=%s reason=inactive", tenant_id)
                return
            try:
                saved = await self._store.save(
                    tenant_id,
                    pending.data,
                    health=entry.health,
                    allow_revive=pending.allow_revive,
                )
            except InvalidCredentialData:
                self.pending.discard(tenant_id, pending)
                return
            except TransientStoreError:
                return
            self.pending.discard(tenant_id, pending)
            if saved:
                entry.last_backup_at = self._clock()
                entry.allow_revive = False

    async def _retry_delete(self, tenant_id: str) -> None:
        async with self.registry.tenant_lock(tenant_id):
            if tenant_id not in self._pending_deletes:
                return
            if tenant_id in self.registry:
                self._pending_deletes.discard(tenant_id)
                return
            await self._delete_record(tenant_id)


__all__ = ["SessionSupervisor", "classify_entry", "LOOP_NAMES"]
