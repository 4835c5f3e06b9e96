from __future__ import annotations

import json

import pytest
from redis import exceptions as redis_ex

from waworker.errors import InvalidCredentialData, PartialDeleteError, TransientStoreError
from waworker.models import HEALTH_DEAD, RECORD_DELETED
from waworker.store import RedisSessionStore


@pytest.mark.anyio
async def test_save_then_load_round_trips_blob(redis_store, blob):
    saved = await redis_store.save("254700000001", blob)

    assert saved is True
    assert await redis_store.load("254700000001") == blob
    record = await redis_store.get_record("254700000001")
    assert record is not None
    assert record.status == "active"
    assert record.number == "254700000001"


@pytest.mark.anyio
async def test_save_preserves_created_at(redis_store, redis_client, blob):
    await redis_store.save("254700000001", blob)
    first = await redis_store.get_record("254700000001")
    raw = json.loads(await redis_client.get(redis_store.session_key("254700000001")))
    raw["createdAt"] = "2020-01-01T00:00:00+00:00"
    await redis_client.set(redis_store.session_key("254700000001"), json.dumps(raw))

    await redis_store.save("254700000001", {"creds": {"me": "other"}})

    record = await redis_store.get_record("254700000001")
    assert first is not None and record is not None
    assert record.created_at == "2020-01-01T00:00:00+00:00"
    assert record.session_data == {"creds": {"me": "other"}}


@pytest.mark.anyio
@pytest.mark.parametrize("bad", [None, {}, {"creds": {}}, {"keys": {}}, {"creds": "x"}])
async def test_invalid_blob_is_rejected_before_write(redis_store, redis_client, bad):
    with pytest.raises(InvalidCredentialData):
        await redis_store.save("254700000001", bad)

    assert await redis_client.get(redis_store.session_key("254700000001")) is None


@pytest.mark.anyio
async def test_delete_leaves_tombstone_and_blocks_late_save(redis_store, blob):
    await redis_store.save("254700000001", blob)
    await redis_store.save_config("254700000001", {"greeting": "hi"})

    assert await redis_store.delete("254700000001") is True

    record = await redis_store.get_record("254700000001")
    assert record is not None
    assert record.status == RECORD_DELETED
    assert record.health == HEALTH_DEAD
    assert record.session_data is None
    assert await redis_store.load("254700000001") is None
    assert await redis_store.load_config("254700000001") is None

    assert await redis_store.save("254700000001", blob) is False
    assert await redis_store.load("254700000001") is None


@pytest.mark.anyio
async def test_allow_revive_overwrites_tombstone(redis_store, blob):
    await redis_store.save("254700000001", blob)
    await redis_store.delete("254700000001")

    assert await redis_store.save("254700000001", blob, allow_revive=True) is True
    assert await redis_store.load("254700000001") == blob
    assert [r.number for r in await redis_store.list_active()] == ["254700000001"]


@pytest.mark.anyio
async def test_list_active_skips_deleted_and_corrupt(redis_store, redis_client, blob):
    await redis_store.save("254700000001", blob)
    await redis_store.save("254700000002", blob)
    await redis_store.save("254700000003", blob)
    await redis_store.delete("254700000002")
    await redis_client.set(redis_store.session_key("254700000003"), "{not json")

    records = await redis_store.list_active()

    assert [r.number for r in records] == ["254700000001"]


@pytest.mark.anyio
async def test_config_round_trip(redis_store):
    assert await redis_store.load_config("254700000001") is None

    await redis_store.save_config("254700000001", {"language": "sw"})

    assert await redis_store.load_config("254700000001") == {"language": "sw"}


class _BrokenPipeline:
    def __init__(self, results):
        self.results = results
        self.commands: list[str] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    def set(self, *args):
        self.commands.append("set")

    def delete(self, *args):
        self.commands.append("delete")

    def srem(self, *args):
        self.commands.append("srem")

    async def execute(self, raise_on_error=True):
        assert raise_on_error is False
        return self.results


class _StubClient:
    def __init__(self, results=None, ping_error=None):
        self.pipe = _BrokenPipeline(results or [])
        self.ping_error = ping_error
        self.pings = 0

    def pipeline(self, transaction=True):
        return self.pipe

    async def ping(self):
        self.pings += 1
        if self.ping_error is not None:
            raise self.ping_error
        return True


@pytest.mark.anyio
async def test_partial_delete_reports_failed_keys():
    client = _StubClient(results=[True, redis_ex.ResponseError("boom"), 1])
    store = RedisSessionStore(client, prefix="watest")

    with pytest.raises(PartialDeleteError) as excinfo:
        await store.delete("254700000001")

    assert excinfo.value.failed_keys == ["watest:config:254700000001"]
    assert isinstance(excinfo.value, TransientStoreError)
    assert client.pipe.commands == ["set", "delete", "srem"]


@pytest.mark.anyio
async def test_connect_gives_up_after_retries():
    client = _StubClient(ping_error=redis_ex.ConnectionError("refused"))
    store = RedisSessionStore(client)

    with pytest.raises(TransientStoreError):
        await store.connect(retries=3, backoff=0)

    assert client.pings == 3


@pytest.mark.anyio
async def test_connect_succeeds_against_live_server(redis_store):
    await redis_store.connect(retries=1, backoff=0)
