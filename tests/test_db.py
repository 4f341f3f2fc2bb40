from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import text
from sqlalchemy.exc import OperationalError

from tabtree_snapshot.config import clear_settings_cache, get_settings
from tabtree_snapshot.db import (
    delete_database,
    ensure_schema,
    get_database_path,
    get_schema_version,
    get_session,
    retry_on_db_lock,
    with_timeout,
)
from tabtree_snapshot.errors import TransactionTimeoutError
from tabtree_snapshot.models import SCHEMA_VERSION
from tabtree_snapshot.repository import SnapshotRepository


def _locked_error() -> OperationalError:
    return OperationalError("INSERT INTO snapshots", {}, Exception("database is locked"))


@pytest.mark.asyncio
async def test_ensure_schema_is_idempotent_and_records_version(isolated_env):
    await ensure_schema()
    await ensure_schema()
    assert await get_schema_version() == SCHEMA_VERSION
    async with get_session() as session:
        rows = await session.execute(text("SELECT name FROM sqlite_master WHERE type = 'index'"))
        names = {row[0] for row in rows}
    assert {"idx_snapshots_created_at", "idx_snapshots_is_auto_save"} <= names


@pytest.mark.asyncio
async def test_with_timeout_raises_transaction_timeout():
    with pytest.raises(TransactionTimeoutError) as excinfo:
        await with_timeout(asyncio.sleep(1), timeout=0.01, operation="put")
    assert excinfo.value.operation == "put"
    assert excinfo.value.to_payload()["error"]["type"] == "TRANSACTION_TIMEOUT"


@pytest.mark.asyncio
async def test_with_timeout_passes_results_through():
    async def _value():
        return 42

    assert await with_timeout(_value(), timeout=1.0, operation="get") == 42
    assert await with_timeout(_value(), timeout=None, operation="get") == 42


@pytest.mark.asyncio
async def test_repository_call_honours_caller_timeout(isolated_env, monkeypatch):
    repo = SnapshotRepository()

    async def _stalled_count():
        await asyncio.sleep(1)
        return 0

    monkeypatch.setattr(repo, "_count", _stalled_count)
    with pytest.raises(TransactionTimeoutError) as excinfo:
        await repo.count(timeout=0.01)
    assert excinfo.value.operation == "count"


@pytest.mark.asyncio
async def test_retry_on_db_lock_retries_lock_errors():
    attempts = {"count": 0}

    @retry_on_db_lock(max_retries=3, base_delay=0.001, max_delay=0.002)
    async def flaky():
        attempts["count"] += 1
        if attempts["count"] < 3:
            raise _locked_error()
        return "ok"

    assert await flaky() == "ok"
    assert attempts["count"] == 3


@pytest.mark.asyncio
async def test_retry_on_db_lock_gives_up_and_skips_other_errors():
    calls = {"locked": 0, "other": 0}

    @retry_on_db_lock(max_retries=2, base_delay=0.001, max_delay=0.002)
    async def always_locked():
        calls["locked"] += 1
        raise _locked_error()

    @retry_on_db_lock(max_retries=2, base_delay=0.001, max_delay=0.002)
    async def syntax_error():
        calls["other"] += 1
        raise OperationalError("SELEC", {}, Exception("near 'SELEC': syntax error"))

    with pytest.raises(OperationalError):
        await always_locked()
    with pytest.raises(OperationalError):
        await syntax_error()
    assert calls == {"locked": 3, "other": 1}


@pytest.mark.asyncio
async def test_delete_database_removes_file(isolated_env):
    await ensure_schema()
    db_path = get_database_path(get_settings())
    assert db_path is not None and db_path.exists()
    assert await delete_database() is True
    assert not db_path.exists()
    # the store reopens cleanly afterwards
    assert await SnapshotRepository().count() == 0


def test_database_path_is_none_for_memory(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
    clear_settings_cache()
    assert get_database_path() is None
