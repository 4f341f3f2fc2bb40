from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from conftest import make_record, tab

from tabtree_snapshot.codec import encode_data
from tabtree_snapshot.config import clear_settings_cache, get_settings
from tabtree_snapshot.errors import QuotaExceededError, SnapshotNotFoundError
from tabtree_snapshot.repository import SnapshotRepository

BASE = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def _record(n: int, *, tabs: int = 1, created_at: datetime | None = None, name: str | None = None):
    return make_record(
        [tab(i, f"https://example.com/{n}/{i}") for i in range(tabs)],
        snapshot_id=f"snapshot-{n:04d}",
        name=name or f"snap {n}",
        created_at=created_at or BASE + timedelta(minutes=n),
    )


@pytest.mark.asyncio
async def test_put_then_get_returns_equal_record(isolated_env):
    repo = SnapshotRepository()
    record = _record(1, tabs=3)
    assert await repo.put(record) == record.id
    assert await repo.get(record.id) == record
    assert await repo.count() == 1


@pytest.mark.asyncio
async def test_get_missing_raises_not_found(isolated_env):
    with pytest.raises(SnapshotNotFoundError) as excinfo:
        await SnapshotRepository().get("snapshot-missing")
    assert excinfo.value.to_payload()["error"]["type"] == "NOT_FOUND"


@pytest.mark.asyncio
async def test_put_existing_id_replaces_record(isolated_env):
    repo = SnapshotRepository()
    await repo.put(_record(1, tabs=1, name="first"))
    await repo.put(_record(1, tabs=4, name="second"))
    stored = await repo.get("snapshot-0001")
    assert stored.name == "second"
    assert stored.tab_count == 4
    assert await repo.count() == 1


@pytest.mark.asyncio
async def test_delete_is_idempotent(isolated_env):
    repo = SnapshotRepository()
    await repo.put(_record(1))
    await repo.delete("snapshot-0001")
    await repo.delete("snapshot-0001")
    await repo.delete("snapshot-never-existed")
    assert await repo.count() == 0
    with pytest.raises(SnapshotNotFoundError):
        await repo.get("snapshot-0001")


@pytest.mark.asyncio
async def test_sequential_puts_list_in_creation_order(isolated_env):
    repo = SnapshotRepository()
    for n in range(5):
        # identical timestamps: ties fall back to insertion order
        await repo.put(_record(n, created_at=BASE))
    listed = await repo.list()
    assert [s.id for s in listed] == [f"snapshot-{n:04d}" for n in range(5)]
    newest_first = await repo.list(descending=True)
    assert [s.id for s in newest_first] == [f"snapshot-{n:04d}" for n in reversed(range(5))]


@pytest.mark.asyncio
async def test_list_orders_by_created_at(isolated_env):
    repo = SnapshotRepository()
    await repo.put(_record(2))
    await repo.put(_record(1))
    await repo.put(_record(3))
    summaries = await repo.list()
    assert [s.id for s in summaries] == ["snapshot-0001", "snapshot-0002", "snapshot-0003"]
    assert summaries[0].tab_count == 1
    assert summaries[0].created_at == BASE + timedelta(minutes=1)


@pytest.mark.asyncio
async def test_concurrent_puts_are_all_stored(isolated_env):
    repo = SnapshotRepository()
    await repo.put(_record(999))
    before = await repo.count()
    await asyncio.gather(*(repo.put(_record(n, tabs=2)) for n in range(10)))
    assert await repo.count() == before + 10
    for n in range(10):
        assert (await repo.get(f"snapshot-{n:04d}")).tab_count == 2


@pytest.mark.asyncio
async def test_concurrent_puts_never_exceed_quota(isolated_env, monkeypatch):
    records = [_record(n, tabs=3) for n in range(10)]
    payload_size = len(encode_data(records[0].data).encode("utf-8"))
    assert {len(encode_data(r.data).encode("utf-8")) for r in records} == {payload_size}
    monkeypatch.setenv("SNAPSHOT_QUOTA_BYTES", str(int(payload_size * 2.5)))
    clear_settings_cache()
    repo = SnapshotRepository(get_settings())

    results = await asyncio.gather(*(repo.put(record) for record in records), return_exceptions=True)

    stored = [result for result in results if isinstance(result, str)]
    rejected = [result for result in results if isinstance(result, QuotaExceededError)]
    assert len(stored) == 2
    assert len(rejected) == 8
    assert await repo.count() == 2
    assert sorted(s.id for s in await repo.list()) == sorted(stored)


@pytest.mark.asyncio
async def test_quota_rejects_new_snapshot_without_partial_write(isolated_env, monkeypatch):
    monkeypatch.setenv("SNAPSHOT_QUOTA_BYTES", "1500")
    clear_settings_cache()
    repo = SnapshotRepository(get_settings())
    await repo.put(_record(1, tabs=1))
    with pytest.raises(QuotaExceededError) as excinfo:
        await repo.put(_record(2, tabs=40))
    assert "Delete older snapshots" in str(excinfo.value)
    assert await repo.count() == 1
    with pytest.raises(SnapshotNotFoundError):
        await repo.get("snapshot-0002")


@pytest.mark.asyncio
async def test_quota_failure_keeps_previous_value_on_overwrite(isolated_env, monkeypatch):
    monkeypatch.setenv("SNAPSHOT_QUOTA_BYTES", "1500")
    clear_settings_cache()
    repo = SnapshotRepository(get_settings())
    original = _record(1, tabs=1, name="original")
    await repo.put(original)
    with pytest.raises(QuotaExceededError):
        await repo.put(_record(1, tabs=40, name="too big"))
    assert await repo.get("snapshot-0001") == original


@pytest.mark.asyncio
async def test_prune_keeps_newest(isolated_env):
    repo = SnapshotRepository()
    for n in range(6):
        await repo.put(_record(n))
    deleted = await repo.prune(2)
    assert sorted(deleted) == [f"snapshot-{n:04d}" for n in range(4)]
    assert [s.id for s in await repo.list()] == ["snapshot-0004", "snapshot-0005"]
    assert await repo.prune(2) == []
    await repo.prune(0)
    assert await repo.count() == 0


@pytest.mark.asyncio
async def test_prune_auto_save_only_leaves_manual_snapshots(isolated_env):
    repo = SnapshotRepository()
    manual = make_record([tab(0, "https://manual.example")], snapshot_id="snapshot-manual", created_at=BASE)
    await repo.put(manual)
    for n in range(1, 5):
        auto = make_record(
            [tab(0, f"https://auto.example/{n}")],
            snapshot_id=f"snapshot-auto-{n}",
            created_at=BASE + timedelta(minutes=n),
            is_auto_save=True,
        )
        await repo.put(auto)

    deleted = await repo.prune(2, auto_save_only=True)

    assert sorted(deleted) == ["snapshot-auto-1", "snapshot-auto-2"]
    assert [s.id for s in await repo.list()] == ["snapshot-manual", "snapshot-auto-3", "snapshot-auto-4"]


@pytest.mark.asyncio
async def test_list_records_returns_full_documents(isolated_env):
    repo = SnapshotRepository()
    await repo.put(_record(1, tabs=2))
    await repo.put(_record(2, tabs=3))
    records = await repo.list_records(descending=True)
    assert [r.id for r in records] == ["snapshot-0002", "snapshot-0001"]
    assert [r.tab_count for r in records] == [3, 2]
