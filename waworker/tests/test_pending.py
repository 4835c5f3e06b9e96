from __future__ import annotations

from waworker.pending import PendingSaveBuffer


def test_put_keeps_latest_snapshot_per_tenant():
    now = [100.0]
    buffer = PendingSaveBuffer(clock=lambda: now[0])

    buffer.put("1", {"creds": {"v": 1}})
    now[0] = 200.0
    latest = buffer.put("1", {"creds": {"v": 2}}, allow_revive=True)

    assert len(buffer) == 1
    assert buffer.get("1") is latest
    assert latest.timestamp == 200.0
    assert latest.allow_revive is True


def test_discard_ignores_superseded_entry():
    buffer = PendingSaveBuffer()
    old = buffer.put("1", {"creds": {"v": 1}})
    new = buffer.put("1", {"creds": {"v": 2}})

    assert buffer.discard("1", old) is False
    assert buffer.get("1") is new
    assert buffer.discard("1", new) is True
    assert "1" not in buffer
    assert buffer.discard("1") is False


def test_pop_and_items():
    buffer = PendingSaveBuffer()
    buffer.put("1", {"creds": {"v": 1}})
    buffer.put("2", {"creds": {"v": 2}})

    assert sorted(tenant for tenant, _ in buffer.items()) == ["1", "2"]
    assert buffer.pop("1").data == {"creds": {"v": 1}}
    assert buffer.pop("1") is None
    assert len(buffer) == 1
