from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Mapping, Optional

import redis.asyncio as redis
from redis import exceptions as redis_ex

from .errors import InvalidCredentialData, PartialDeleteError, TransientStoreError
from .metrics import STORE_ERRORS
from .models import (
    HEALTH_ACTIVE,
    HEALTH_DEAD,
    RECORD_ACTIVE,
    RECORD_DELETED,
    StoredSessionRecord,
    utcnow_iso,
    validate_credentials,
)


LOGGER = logging.getLogger("waworker.store")

_STORE_FAILURES = (redis_ex.RedisError, OSError, asyncio.TimeoutError)
_WATCH_RETRIES = 3
_MGET_CHUNK = 200


class RedisSessionStore:
    """Durable session records kept as JSON documents in redis.

    Each tenant owns ``{prefix}:session:{number}`` and
    ``{prefix}:config:{number}``; active numbers are indexed in
    ``{prefix}:sessions:active``. Deleting a tenant leaves a ``deleted``
    tombstone so that a save still in flight cannot bring the record back.
    """

    def __init__(
        self,
        client: redis.Redis,
        *,
        prefix: str = "waworker",
        validator: Callable[[Any], bool] = validate_credentials,
    ) -> None:
        self._redis = client
        self._prefix = prefix.rstrip(":")
        self._validator = validator

    @classmethod
    def from_url(
        cls,
        url: str,
        *,
        prefix: str = "waworker",
        validator: Callable[[Any], bool] = validate_credentials,
    ) -> "RedisSessionStore":
        client = redis.from_url(url, decode_responses=True)
        return cls(client, prefix=prefix, validator=validator)

    def session_key(self, tenant_id: str) -> str:
        return f"{self._prefix}:session:{tenant_id}"

    def config_key(self, tenant_id: str) -> str:
        return f"{self._prefix}:config:{tenant_id}"

    @property
    def index_key(self) -> str:
        return f"{self._prefix}:sessions:active"

    async def connect(self, *, retries: int = 5, backoff: float = 5.0) -> None:
        last_error: Optional[BaseException] = None
        for attempt in range(1, max(1, retries) + 1):
            try:
                await self._redis.ping()
                LOGGER.info("event=store_connected attempt=%s", attempt)
                return
            except _STORE_FAILURES as exc:
                last_error = exc
                STORE_ERRORS.labels("connect").inc()
                LOGGER.warning(
                    "event=store_connect_failed attempt=%s retries=%s error=%s",
                    attempt,
                    retries,
                    exc,
                )
                if attempt < retries:
                    await asyncio.sleep(backoff)
        raise TransientStoreError("connect", None, str(last_error or ""))

    async def close(self) -> None:
        try:
            await self._redis.aclose()
        except AttributeError:  # pragma: no cover - redis-py < 5
            await self._redis.close()

    async def save(
        self,
        tenant_id: str,
        blob: Mapping[str, Any],
        *,
        health: str = HEALTH_ACTIVE,
        allow_revive: bool = False,
    ) -> bool:
        """Upsert the tenant's credential blob.

        Returns ``False`` without writing when the record was deleted and
        ``allow_revive`` is not set.
        """

        if not self._validator(blob):
            LOGGER.warning("event=invalid_session_data action=drop tenant_id=%s", tenant_id)
            raise InvalidCredentialData(tenant_id)
        key = self.session_key(tenant_id)
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                for _ in range(_WATCH_RETRIES):
                    try:
                        await pipe.watch(key)
                        current = self._parse(tenant_id, await pipe.get(key))
                        if current is not None and current.is_deleted and not allow_revive:
                            LOGGER.info(
                                "event=store_save_skipped tenant_id=%s reason=deleted", tenant_id
                            )
                            return False
                        now = utcnow_iso()
                        created_at = now
                        if current is not None and not current.is_deleted and current.created_at:
                            created_at = current.created_at
                        record = StoredSessionRecord(
                            number=tenant_id,
                            session_data=dict(blob),
                            status=RECORD_ACTIVE,
                            created_at=created_at,
                            updated_at=now,
                            last_active=now,
                            health=health,
                        )
                        pipe.multi()
                        pipe.set(key, record.to_json())
                        pipe.sadd(self.index_key, tenant_id)
                        await pipe.execute()
                        LOGGER.info("event=store_saved tenant_id=%s", tenant_id)
                        return True
                    except redis_ex.WatchError:
                        LOGGER.info("event=store_save_retry tenant_id=%s reason=watch", tenant_id)
                        continue
        except _STORE_FAILURES as exc:
            STORE_ERRORS.labels("save").inc()
            LOGGER.warning("event=store_save_failed tenant_id=%s error=%s", tenant_id, exc)
            raise TransientStoreError("save", tenant_id, str(exc)) from exc
        STORE_ERRORS.labels("save").inc()
        raise TransientStoreError("save", tenant_id, "watch_conflict")

    async def get_record(self, tenant_id: str) -> Optional[StoredSessionRecord]:
        try:
            raw = await self._redis.get(self.session_key(tenant_id))
        except _STORE_FAILURES as exc:
            STORE_ERRORS.labels("load").inc()
            LOGGER.warning("event=store_load_failed tenant_id=%s error=%s", tenant_id, exc)
            raise TransientStoreError("load", tenant_id, str(exc)) from exc
        return self._parse(tenant_id, raw)

    async def load(self, tenant_id: str) -> Optional[Mapping[str, Any]]:
        record = await self.get_record(tenant_id)
        if record is None or record.is_deleted:
            return None
        return record.session_data

    async def delete(self, tenant_id: str) -> bool:
        """Tombstone the session record and drop the config record together."""

        now = utcnow_iso()
        tombstone = StoredSessionRecord(
            number=tenant_id,
            session_data=None,
            status=RECORD_DELETED,
            updated_at=now,
            last_active=now,
            health=HEALTH_DEAD,
        )
        keys = [self.session_key(tenant_id), self.config_key(tenant_id), self.index_key]
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                pipe.set(keys[0], tombstone.to_json())
                pipe.delete(keys[1])
                pipe.srem(keys[2], tenant_id)
                results = await pipe.execute(raise_on_error=False)
        except _STORE_FAILURES as exc:
            STORE_ERRORS.labels("delete").inc()
            LOGGER.warning("event=store_delete_failed tenant_id=%s error=%s", tenant_id, exc)
            raise TransientStoreError("delete", tenant_id, str(exc)) from exc
        failed = [key for key, result in zip(keys, results) if isinstance(result, Exception)]
        if failed:
            STORE_ERRORS.labels("delete").inc()
            LOGGER.error(
                "event=store_delete_partial tenant_id=%s failed_keys=%s", tenant_id, failed
            )
            raise PartialDeleteError(tenant_id, failed)
        LOGGER.info("event=store_deleted tenant_id=%s", tenant_id)
        return True

    async def list_active(self) -> list[StoredSessionRecord]:
        try:
            numbers = sorted(await self._redis.smembers(self.index_key))
            records: list[StoredSessionRecord] = []
            for start in range(0, len(numbers), _MGET_CHUNK):
                chunk = numbers[start : start + _MGET_CHUNK]
                raws = await self._redis.mget([self.session_key(n) for n in chunk])
                for number, raw in zip(chunk, raws):
                    record = self._parse(number, raw)
                    if record is not None and not record.is_deleted:
                        records.append(record)
        except _STORE_FAILURES as exc:
            STORE_ERRORS.labels("list").inc()
            LOGGER.warning("event=store_list_failed error=%s", exc)
            raise TransientStoreError("list", None, str(exc)) from exc
        return records

    async def save_config(self, tenant_id: str, config: Mapping[str, Any]) -> None:
        now = utcnow_iso()
        try:
            raw = await self._redis.get(self.config_key(tenant_id))
            created_at = now
            if raw:
                try:
                    created_at = json.loads(raw).get("createdAt") or now
                except (ValueError, AttributeError):
                    created_at = now
            document = {
                "number": tenant_id,
                "config": dict(config),
                "createdAt": created_at,
                "updatedAt": now,
            }
            await self._redis.set(self.config_key(tenant_id), json.dumps(document, ensure_ascii=False))
        except _STORE_FAILURES as exc:
            STORE_ERRORS.labels("save_config").inc()
            raise TransientStoreError("save_config", tenant_id, str(exc)) from exc

    async def load_config(self, tenant_id: str) -> Optional[dict[str, Any]]:
        try:
            raw = await self._redis.get(self.config_key(tenant_id))
        except _STORE_FAILURES as exc:
            STORE_ERRORS.labels("load_config").inc()
            raise TransientStoreError("load_config", tenant_id, str(exc)) from exc
        if not raw:
            return None
        try:
            document = json.loads(raw)
        except ValueError:
            LOGGER.warning("event=config_corrupt tenant_id=%s", tenant_id)
            return None
        config = document.get("config") if isinstance(document, dict) else None
        return dict(config) if isinstance(config, dict) else None

    def _parse(self, tenant_id: str, raw: Any) -> Optional[StoredSessionRecord]:
        if not raw:
            return None
        try:
            return StoredSessionRecord.from_json(raw)
        except ValueError as exc:
            LOGGER.warning("event=session_record_corrupt tenant_id=%s error=%s", tenant_id, exc)
            return None


__all__ = ["RedisSessionStore"]
