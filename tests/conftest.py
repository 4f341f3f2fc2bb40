import asyncio
import contextlib
from collections.abc import Iterable, Sequence
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import pytest

from tabtree_snapshot.codec import SnapshotData, SnapshotRecord, TabRecord, View
from tabtree_snapshot.config import clear_settings_cache
from tabtree_snapshot.db import reset_database_state
from tabtree_snapshot.tabs import TabInfo
from tabtree_snapshot.tree import TreeState

DEFAULT_VIEW = View(id="default", name="Default", color="#3B82F6")


class FakeTabs:
    """In-memory tab collaborator.

    ``failing_urls`` raise on create, ``slow_urls`` never finish within a
    short timeout, ``fail_remove`` makes every removal raise and
    ``fail_windows`` makes window creation raise. The current window is 1.
    """

    def __init__(
        self,
        existing: Iterable[TabInfo] = (),
        *,
        failing_urls: Iterable[str] = (),
        slow_urls: Iterable[str] = (),
        fail_remove: bool = False,
        fail_windows: bool = False,
        first_id: int = 100,
    ) -> None:
        self.tabs: dict[int, TabInfo] = {tab.id: tab for tab in existing}
        self.failing_urls = set(failing_urls)
        self.slow_urls = set(slow_urls)
        self.fail_remove = fail_remove
        self.fail_windows = fail_windows
        self._next_window_id = 2
        self._next_id = first_id
        self.created: list[tuple[int, str, bool]] = []
        self.removed: list[int] = []
        self.moves: list[tuple[int, Optional[int], int]] = []
        self.windows_created: list[int] = []
        # (tab id, requested window id) per create
        self.placements: list[tuple[int, Optional[int]]] = []

    async def create(
        self,
        url: str,
        *,
        pinned: bool = False,
        active: bool = False,
        window_id: Optional[int] = None,
    ) -> int:
        await asyncio.sleep(0)
        if url in self.failing_urls:
            raise RuntimeError(f"cannot open {url}")
        if url in self.slow_urls:
            await asyncio.sleep(5)
        tab_id = self._next_id
        self._next_id += 1
        self.tabs[tab_id] = TabInfo(id=tab_id, url=url, title=url, pinned=pinned, window_id=window_id or 1)
        self.created.append((tab_id, url, pinned))
        self.placements.append((tab_id, window_id))
        return tab_id

    async def remove(self, tab_ids: Sequence[int]) -> None:
        await asyncio.sleep(0)
        if self.fail_remove:
            raise RuntimeError("tabs.remove failed")
        for tab_id in tab_ids:
            self.tabs.pop(tab_id, None)
            self.removed.append(tab_id)

    async def move(self, tab_id: int, *, window_id: Optional[int] = None, index: int = -1) -> None:
        await asyncio.sleep(0)
        self.moves.append((tab_id, window_id, index))

    async def query(self, **filters: Any) -> list[TabInfo]:
        await asyncio.sleep(0)
        return list(self.tabs.values())

    async def create_window(self) -> int:
        await asyncio.sleep(0)
        if self.fail_windows:
            raise RuntimeError("windows.create failed")
        window_id = self._next_window_id
        self._next_window_id += 1
        self.windows_created.append(window_id)
        return window_id


def make_tree(*views: View, on_commit=None) -> TreeState:
    return TreeState(views, default_view=DEFAULT_VIEW, on_commit=on_commit)


def tab(index: int, url: str, parent: Optional[int] = None, view: str = "default", **kwargs: Any) -> TabRecord:
    return TabRecord(index=index, url=url, title=kwargs.pop("title", url), parent_index=parent, view_id=view, **kwargs)


def make_record(
    tabs: Iterable[TabRecord],
    *,
    views: Iterable[View] = (DEFAULT_VIEW,),
    snapshot_id: str = "snapshot-1700000000000-abc1234",
    name: str = "Test snapshot",
    created_at: Optional[datetime] = None,
    is_auto_save: bool = False,
) -> SnapshotRecord:
    return SnapshotRecord(
        id=snapshot_id,
        created_at=created_at or datetime(2024, 1, 2, 3, 4, 5, 678000, tzinfo=timezone.utc),
        name=name,
        is_auto_save=is_auto_save,
        data=SnapshotData(views=list(views), tabs=list(tabs), groups=[]),
    )


@pytest.fixture
def isolated_env(tmp_path, monkeypatch):
    """Provide isolated database and export settings for tests and reset caches."""
    db_path: Path = tmp_path / "test.sqlite3"
    monkeypatch.setenv("DATABASE_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("APP_ENVIRONMENT", "test")
    monkeypatch.setenv("SNAPSHOT_EXPORT_DIR", str(tmp_path / "exports"))
    monkeypatch.setenv("SNAPSHOT_QUOTA_BYTES", "0")
    clear_settings_cache()
    reset_database_state()
    try:
        yield tmp_path
    finally:
        clear_settings_cache()
        reset_database_state()
        for candidate in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
            if candidate.exists():
                candidate.unlink()


@pytest.fixture(autouse=True)
def _global_resource_cleanup():
    """Dispose engine/pool state across tests, even those without ``isolated_env``."""
    yield
    with contextlib.suppress(Exception):
        reset_database_state()
    with contextlib.suppress(Exception):
        clear_settings_cache()
