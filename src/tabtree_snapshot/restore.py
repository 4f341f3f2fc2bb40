"""Rebuild a live tab tree from a snapshot record.

Restoration runs in three phases:

1. Validate the whole record (``build_restore_plan``). Structural problems
   raise ``MalformedSnapshotError`` before a single tab is opened.
2. Open one window per distinct ``windowIndex`` (the lowest reuses the
   current window), then open tabs in ascending ``index`` order into their
   window and remember ``index -> tab id``. A tab that fails to open is
   skipped and reported, never fatal.
3. Attach the opened tabs to the mirror parents-first, resolving every
   ``parentIndex`` through the map from phase 2. Edges are deferred until all
   tabs exist, so a parent listed after its child still resolves.

Pre-existing tabs are closed only after the new ones exist, which keeps the
window from ever becoming empty.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Awaitable
from dataclasses import dataclass, field
from typing import Optional, TypeVar

from .codec import SnapshotRecord, TabRecord, View, loads
from .config import Settings, get_settings
from .db import with_timeout
from .errors import MalformedSnapshotError, PartialRestoreTabFailure
from .tabs import TabsApi
from .tree import TreeState

T = TypeVar("T")
_logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RestorePlan:
    tabs: list[TabRecord]
    views: list[View]
    # index -> depth in the parentIndex forest
    depths: dict[int, int]
    by_index: dict[int, TabRecord]
    known_view_ids: set[str]

    def creation_order(self) -> list[TabRecord]:
        return sorted(self.tabs, key=lambda tab: tab.index)

    def attach_order(self) -> list[TabRecord]:
        """Parents before children; siblings by ascending index."""
        return sorted(self.tabs, key=lambda tab: (self.depths[tab.index], tab.index))

    def window_indexes(self) -> list[int]:
        return sorted({tab.window_index for tab in self.tabs})


@dataclass(slots=True)
class RestoreReport:
    snapshot_id: str
    # snapshot index -> live tab id
    created: dict[int, int] = field(default_factory=dict)
    failures: list[PartialRestoreTabFailure] = field(default_factory=list)
    closed_tab_ids: list[int] = field(default_factory=list)
    unclosed_tab_ids: list[int] = field(default_factory=list)
    opened_window_ids: list[int] = field(default_factory=list)

    @property
    def complete(self) -> bool:
        return not self.failures and not self.unclosed_tab_ids

    def to_dict(self) -> dict[str, object]:
        return {
            "snapshotId": self.snapshot_id,
            "restoredTabCount": len(self.created),
            "failures": [failure.to_dict() for failure in self.failures],
            "closedTabIds": list(self.closed_tab_ids),
            "unclosedTabIds": list(self.unclosed_tab_ids),
            "openedWindowIds": list(self.opened_window_ids),
        }


def build_restore_plan(record: SnapshotRecord) -> RestorePlan:
    """Validate ``record`` and compute the depth of every tab.

    Rejects duplicate indices, parents that point at no tab, and parent chains
    longer than ``len(tabs)`` hops (self-references and cycles).
    """
    tabs = list(record.data.tabs)
    duplicates = sorted(index for index, seen in Counter(tab.index for tab in tabs).items() if seen > 1)
    if duplicates:
        raise MalformedSnapshotError("duplicate tab index", indices=duplicates)
    by_index = {tab.index: tab for tab in tabs}

    for tab in tabs:
        if tab.parent_index is not None and tab.parent_index not in by_index:
            raise MalformedSnapshotError(
                "parentIndex refers to a missing tab", index=tab.index, parent_index=tab.parent_index
            )

    limit = len(tabs)
    depths: dict[int, int] = {}
    for tab in tabs:
        chain: list[int] = []
        current: Optional[int] = tab.index
        hops = 0
        while current is not None and current not in depths:
            if hops > limit:
                raise MalformedSnapshotError("cyclic parentIndex chain", index=tab.index)
            chain.append(current)
            current = by_index[current].parent_index
            hops += 1
        base = -1 if current is None else depths[current]
        for offset, index in enumerate(reversed(chain), start=1):
            depths[index] = base + offset

    return RestorePlan(
        tabs=tabs,
        views=list(record.data.views),
        depths=depths,
        by_index=by_index,
        known_view_ids={view.id for view in record.data.views},
    )


class TreeRestorationEngine:
    """Replays a snapshot against the tab collaborator and the tree mirror."""

    def __init__(self, tabs: TabsApi, tree: TreeState, settings: Optional[Settings] = None):
        self._tabs = tabs
        self._tree = tree
        self._settings = settings or get_settings()

    async def _call(self, awaitable: Awaitable[T], operation: str) -> T:
        return await with_timeout(
            awaitable, timeout=self._settings.snapshots.tab_timeout_seconds, operation=operation
        )

    async def restore_from_json(self, json_data: str, *, close_current_tabs: bool = False) -> RestoreReport:
        record = loads(json_data, default_view_id=self._settings.snapshots.default_view_id)
        return await self.restore(record, close_current_tabs=close_current_tabs)

    async def restore(self, record: SnapshotRecord, *, close_current_tabs: bool = False) -> RestoreReport:
        plan = build_restore_plan(record)
        report = RestoreReport(snapshot_id=record.id)

        previous_tab_ids: list[int] = []
        if close_current_tabs:
            # Taken before any new tab exists
            previous_tab_ids = [tab.id for tab in await self._call(self._tabs.query(), "tabs.query")]

        windows = await self._open_windows(plan, report)

        for tab in plan.creation_order():
            window_id = windows[tab.window_index]
            try:
                tab_id = await self._call(
                    self._tabs.create(tab.url, pinned=tab.pinned, active=False, window_id=window_id),
                    "tabs.create",
                )
            except Exception as exc:
                failure = PartialRestoreTabFailure(index=tab.index, url=tab.url, reason=str(exc) or type(exc).__name__)
                report.failures.append(failure)
                _logger.warning("restore.tab_failed", extra=failure.to_dict())
                continue
            report.created[tab.index] = tab_id

        self._attach(plan, report, windows)

        if previous_tab_ids and report.created:
            await self._close_previous(previous_tab_ids, report)
        elif previous_tab_ids:
            _logger.warning(
                "restore.kept_existing_tabs",
                extra={"snapshot_id": record.id, "reason": "no snapshot tab could be opened"},
            )

        await self._tree.commit()
        _logger.info(
            "restore.completed",
            extra={
                "snapshot_id": record.id,
                "restored": len(report.created),
                "failed": len(report.failures),
                "closed": len(report.closed_tab_ids),
            },
        )
        return report

    async def _open_windows(self, plan: RestorePlan, report: RestoreReport) -> dict[int, Optional[int]]:
        """Map every ``windowIndex`` to a live window id.

        The lowest index reuses the current window (``None``); each further
        index gets a new window. A window that cannot be opened falls back to
        the current one.
        """
        indexes = plan.window_indexes()
        windows: dict[int, Optional[int]] = {index: None for index in indexes[:1]}
        for window_index in indexes[1:]:
            try:
                window_id = await self._call(self._tabs.create_window(), "windows.create")
            except Exception as exc:
                windows[window_index] = None
                _logger.warning(
                    "restore.window_failed",
                    extra={"snapshot_id": report.snapshot_id, "window_index": window_index, "error": str(exc)},
                )
                continue
            windows[window_index] = window_id
            report.opened_window_ids.append(window_id)
        return windows

    def _attach(self, plan: RestorePlan, report: RestoreReport, windows: dict[int, Optional[int]]) -> None:
        for view in plan.views:
            self._tree.add_view(view)
        default_view_id = self._tree.default_view_id

        for tab in plan.attach_order():
            tab_id = report.created.get(tab.index)
            if tab_id is None:
                continue
            parent_tab_id = self._nearest_created_ancestor(plan, tab, report.created)
            view_id = tab.view_id if tab.view_id in plan.known_view_ids else default_view_id
            self._tree.add_tab(
                tab_id,
                parent_tab_id=parent_tab_id,
                view_id=view_id,
                is_expanded=tab.is_expanded,
                pinned=tab.pinned,
                window_id=windows[tab.window_index],
                group_info=tab.group_info,
            )

    @staticmethod
    def _nearest_created_ancestor(plan: RestorePlan, tab: TabRecord, created: dict[int, int]) -> Optional[int]:
        # Chains are acyclic after validation; a parent that failed to open
        # hands its children to the next ancestor that did open.
        parent_index = tab.parent_index
        while parent_index is not None:
            parent_tab_id = created.get(parent_index)
            if parent_tab_id is not None:
                return parent_tab_id
            parent_index = plan.by_index[parent_index].parent_index
        return None

    async def _close_previous(self, previous_tab_ids: list[int], report: RestoreReport) -> None:
        restored = set(report.created.values())
        doomed = [tab_id for tab_id in previous_tab_ids if tab_id not in restored]
        if not doomed:
            return
        try:
            await self._call(self._tabs.remove(doomed), "tabs.remove")
        except Exception as exc:
            report.unclosed_tab_ids.extend(doomed)
            _logger.warning(
                "restore.close_failed",
                extra={"snapshot_id": report.snapshot_id, "tab_ids": doomed, "error": str(exc)},
            )
            return
        for tab_id in doomed:
            self._tree.remove_tab(tab_id)
        report.closed_tab_ids.extend(doomed)
