"""Snapshot facade consumed by message routing, schedulers and the CLI."""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any, Optional

import structlog

from .capture import CreatedSnapshot, SnapshotCaptureService
from .codec import SnapshotRecord, SnapshotSummary, dumps, loads
from .config import Settings, get_settings
from .errors import SnapshotError
from .export import SnapshotExporter, parse_document
from .repository import SnapshotRepository
from .restore import RestoreReport, TreeRestorationEngine
from .tabs import TabsApi
from .tree import TreeState

logger = structlog.get_logger(__name__)

CREATE_SNAPSHOT = "CREATE_SNAPSHOT"
RESTORE_SNAPSHOT = "RESTORE_SNAPSHOT"


def _error_response(error_type: str, message: str, *, recoverable: bool = True, data: Optional[dict] = None) -> dict:
    return {
        "success": False,
        "error": {"type": error_type, "message": message, "recoverable": recoverable, "data": data or {}},
    }


class SnapshotService:
    def __init__(
        self,
        tabs: TabsApi,
        tree: TreeState,
        settings: Optional[Settings] = None,
        *,
        repository: Optional[SnapshotRepository] = None,
        exporter: Optional[SnapshotExporter] = None,
    ):
        self.settings = settings or get_settings()
        self.repository = repository or SnapshotRepository(self.settings)
        self.exporter = exporter or SnapshotExporter(self.settings)
        self.capture = SnapshotCaptureService(tabs, tree, self.repository, self.exporter, self.settings)
        self.engine = TreeRestorationEngine(tabs, tree, self.settings)

    # -- snapshots ----------------------------------------------------------

    async def create_snapshot(self, name: Optional[str] = None, is_auto_save: bool = False) -> CreatedSnapshot:
        created = await self.capture.create_snapshot(name, is_auto_save)
        logger.info(
            "snapshot.created",
            snapshot_id=created.record.id,
            tabs=created.record.tab_count,
            auto=is_auto_save,
            export_path=str(created.export_path) if created.export_path else None,
            pruned=len(created.pruned_ids),
        )
        return created

    async def get_snapshot(self, snapshot_id: str) -> SnapshotRecord:
        return await self.repository.get(snapshot_id)

    async def list_snapshots(self, *, descending: bool = True) -> list[SnapshotSummary]:
        """Newest first by default, as shown to users."""
        return await self.repository.list(descending=descending)

    async def delete_snapshot(self, snapshot_id: str) -> None:
        await self.repository.delete(snapshot_id)
        logger.info("snapshot.deleted", snapshot_id=snapshot_id)

    async def prune(self, keep_count: int) -> list[str]:
        return await self.repository.prune(keep_count)

    async def count(self) -> int:
        return await self.repository.count()

    # -- restore ------------------------------------------------------------

    async def restore_snapshot(self, snapshot_id: str, *, close_current_tabs: bool = False) -> RestoreReport:
        record = await self.repository.get(snapshot_id)
        return await self._restore(record, close_current_tabs)

    async def restore_from_json(self, json_data: str, *, close_current_tabs: bool = False) -> RestoreReport:
        record = loads(json_data, default_view_id=self.settings.snapshots.default_view_id)
        return await self._restore(record, close_current_tabs)

    async def _restore(self, record: SnapshotRecord, close_current_tabs: bool) -> RestoreReport:
        report = await self.engine.restore(record, close_current_tabs=close_current_tabs)
        log = logger.warning if report.failures else logger.info
        log(
            "snapshot.restored",
            snapshot_id=record.id,
            restored=len(report.created),
            failed=len(report.failures),
            closed=len(report.closed_tab_ids),
        )
        return report

    # -- import / export ----------------------------------------------------

    async def export_snapshot(self, snapshot_id: str) -> str:
        """Return the stored snapshot as export-file JSON text."""
        return dumps(await self.repository.get(snapshot_id), indent=2)

    async def import_snapshot(self, json_text: str) -> SnapshotRecord:
        record = parse_document(json_text, default_view_id=self.settings.snapshots.default_view_id)
        await self.repository.put(record)
        logger.info("snapshot.imported", snapshot_id=record.id, tabs=record.tab_count)
        return record

    # -- messages -----------------------------------------------------------

    async def handle_message(self, message: Mapping[str, Any]) -> dict[str, Any]:
        """Dispatch a runtime message and always answer with a response dict."""
        message_type = message.get("type") if isinstance(message, Mapping) else None
        try:
            if message_type == CREATE_SNAPSHOT:
                created = await self.create_snapshot(None, False)
                return {
                    "success": True,
                    "snapshotId": created.record.id,
                    "name": created.record.name,
                    "exportPath": str(created.export_path) if created.export_path else None,
                }
            if message_type == RESTORE_SNAPSHOT:
                payload = message.get("payload") or {}
                json_data = payload.get("jsonData") if isinstance(payload, Mapping) else None
                if not isinstance(json_data, str):
                    return _error_response(
                        "INVALID_ARGUMENT", "RESTORE_SNAPSHOT requires a 'jsonData' string.", recoverable=False
                    )
                report = await self.restore_from_json(
                    json_data, close_current_tabs=bool(payload.get("closeCurrentTabs", False))
                )
                return {"success": True, **report.to_dict()}
        except SnapshotError as exc:
            logger.warning("message.failed", message_type=message_type, error_type=exc.error_type, error=str(exc))
            return {"success": False, **exc.to_payload()}
        except Exception as exc:
            logger.exception("message.unexpected_error", message_type=message_type)
            return _error_response("INTERNAL_ERROR", str(exc) or type(exc).__name__, recoverable=False)
        return _error_response(
            "UNSUPPORTED_MESSAGE", f"Unsupported message type: {message_type!r}", recoverable=False
        )
