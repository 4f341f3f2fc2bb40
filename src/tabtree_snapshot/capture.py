"""Capture the live tab tree into a snapshot record."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from .codec import SnapshotData, SnapshotRecord, TabRecord, generate_snapshot_id
from .config import Settings, get_settings
from .db import with_timeout
from .export import SnapshotExporter
from .repository import SnapshotRepository
from .tabs import TabInfo, TabsApi
from .tree import TreeNode, TreeState

_logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CreatedSnapshot:
    record: SnapshotRecord
    export_path: Optional[Path] = None
    pruned_ids: list[str] = field(default_factory=list)


class SnapshotCaptureService:
    def __init__(
        self,
        tabs: TabsApi,
        tree: TreeState,
        repository: Optional[SnapshotRepository] = None,
        exporter: Optional[SnapshotExporter] = None,
        settings: Optional[Settings] = None,
    ):
        self._settings = settings or get_settings()
        self._tabs = tabs
        self._tree = tree
        self._repository = repository or SnapshotRepository(self._settings)
        self._exporter = exporter

    async def _live_tabs(self) -> dict[int, TabInfo]:
        tabs = await with_timeout(
            self._tabs.query(), timeout=self._settings.snapshots.tab_timeout_seconds, operation="tabs.query"
        )
        return {tab.id: tab for tab in tabs}

    async def capture(
        self,
        name: str,
        is_auto_save: bool = False,
        *,
        now: Optional[datetime] = None,
    ) -> SnapshotRecord:
        """Serialize the mirror: views in order, each depth-first, dense indices.

        A node whose tab is no longer open is skipped; its children attach to
        the nearest ancestor that was emitted. Open tabs the mirror does not
        track follow as roots of the default view, so every open tab appears
        exactly once. Windows are numbered by ascending window id.
        """
        moment = now or datetime.now(timezone.utc)
        live = await self._live_tabs()
        emitted: dict[str, int] = {}
        # node id -> index of the nearest emitted ancestor (or None)
        inherited: dict[str, Optional[int]] = {}
        # (tab fields, window id) per emitted tab, in index order
        entries: list[tuple[dict[str, Any], Optional[int]]] = []
        seen_tab_ids: set[int] = set()
        skipped = 0

        for node, parent in self._tree.walk():
            parent_index = self._resolve_parent(parent, emitted, inherited)
            info = live.get(node.tab_id)
            if info is None:
                inherited[node.id] = parent_index
                skipped += 1
                continue
            emitted[node.id] = len(entries)
            seen_tab_ids.add(info.id)
            entries.append(
                (
                    {
                        "url": info.url,
                        "title": info.title,
                        "parent_index": parent_index,
                        "view_id": node.view_id,
                        "is_expanded": node.is_expanded,
                        "pinned": info.pinned or node.pinned,
                        "group_info": node.group_info,
                    },
                    info.window_id if info.window_id is not None else node.window_id,
                )
            )

        untracked = [info for tab_id, info in live.items() if tab_id not in seen_tab_ids]
        for info in untracked:
            entries.append(
                (
                    {
                        "url": info.url,
                        "title": info.title,
                        "parent_index": None,
                        "view_id": self._tree.default_view_id,
                        "is_expanded": True,
                        "pinned": info.pinned,
                        "group_info": None,
                    },
                    info.window_id,
                )
            )

        known_windows = sorted({window_id for _fields, window_id in entries if window_id is not None})
        window_indexes = {window_id: position for position, window_id in enumerate(known_windows)}
        # Tabs without a known window share the first one
        tabs = [
            TabRecord(index=index, window_index=window_indexes.get(window_id, 0), **fields)
            for index, (fields, window_id) in enumerate(entries)
        ]

        record = SnapshotRecord(
            id=generate_snapshot_id(moment),
            created_at=moment,
            name=name,
            is_auto_save=is_auto_save,
            data=SnapshotData(views=self._tree.views, tabs=tabs, groups=[]),
        )
        _logger.info(
            "snapshot.captured",
            extra={
                "id": record.id,
                "tabs": len(tabs),
                "skipped": skipped,
                "untracked": len(untracked),
                "auto": is_auto_save,
            },
        )
        return record

    @staticmethod
    def _resolve_parent(
        parent: Optional[TreeNode],
        emitted: dict[str, int],
        inherited: dict[str, Optional[int]],
    ) -> Optional[int]:
        if parent is None:
            return None
        if parent.id in emitted:
            return emitted[parent.id]
        return inherited.get(parent.id)

    async def create_snapshot(
        self,
        name: Optional[str] = None,
        is_auto_save: bool = False,
        *,
        now: Optional[datetime] = None,
    ) -> CreatedSnapshot:
        """Capture, persist, export and (for auto-saves) apply retention."""
        moment = now or datetime.now(timezone.utc)
        if not name:
            label = "Auto Snapshot" if is_auto_save else "Manual Snapshot"
            name = f"{label} - {moment.astimezone():%Y-%m-%d %H:%M:%S}"
        record = await self.capture(name, is_auto_save, now=moment)
        await self._repository.put(record)
        result = CreatedSnapshot(record=record)

        if self._exporter is not None and self._settings.snapshots.export_enabled:
            try:
                result.export_path = await self._exporter.write(record)
            except OSError as exc:
                # Record is already stored
                _logger.warning("snapshot.export_failed", extra={"id": record.id, "error": str(exc)})

        max_snapshots = self._settings.snapshots.max_snapshots
        if is_auto_save and max_snapshots > 0:
            result.pruned_ids = await self._repository.prune(max_snapshots, auto_save_only=True)
        return result
