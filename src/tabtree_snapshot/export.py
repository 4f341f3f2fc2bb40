"""Snapshot export files on the local filesystem.

An export is a UTF-8 JSON file whose top level is exactly one snapshot record,
so it can be fed straight back into ``restore_from_json`` or ``import``.
Writers coordinate through a ``SoftFileLock`` in the export folder; picking a
free filename and writing it happen under the same lock.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from filelock import SoftFileLock, Timeout

from .codec import SnapshotRecord, dumps, is_snapshot_document, record_from_dict
from .config import Settings, get_settings
from .errors import MalformedSnapshotError

_logger = logging.getLogger(__name__)

FILENAME_PREFIX = "tabtree-snapshot"
_LOCK_NAME = ".export.lock"
_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9\-_\s]")
_WHITESPACE = re.compile(r"\s+")


def safe_name(name: str) -> str:
    """Drop characters outside ``[A-Za-z0-9-_ ]`` and hyphenate whitespace."""
    return _WHITESPACE.sub("-", _UNSAFE_CHARS.sub("", name))


class SnapshotExporter:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        directory: Optional[Path] = None,
        lock_timeout_seconds: float = 10.0,
    ):
        self._settings = settings or get_settings()
        if directory is None:
            root = Path(self._settings.snapshots.export_dir).expanduser()
            subfolder = self._settings.snapshots.export_subfolder
            directory = root / subfolder if subfolder else root
        self.directory = Path(directory)
        self._lock_timeout = lock_timeout_seconds

    @staticmethod
    def generate_filename(name: str, is_auto_save: bool, now: Optional[datetime] = None) -> str:
        moment = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
        suffix = "-auto" if is_auto_save else ""
        return f"{FILENAME_PREFIX}-{moment:%Y%m%d_%H%M%S}{suffix}-{safe_name(name)}.json"

    def _unique_path(self, filename: str) -> Path:
        candidate = self.directory / filename
        stem, suffix = candidate.stem, candidate.suffix
        counter = 1
        while candidate.exists():
            candidate = self.directory / f"{stem} ({counter}){suffix}"
            counter += 1
        return candidate

    def _write_locked(self, record: SnapshotRecord, filename: str) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        lock = SoftFileLock(str(self.directory / _LOCK_NAME), timeout=self._lock_timeout)
        try:
            with lock:
                target = self._unique_path(filename)
                tmp = target.with_name(f".{target.name}.tmp")
                tmp.write_text(dumps(record, indent=2) + "\n", encoding="utf-8")
                os.replace(tmp, target)
        except Timeout:
            raise TimeoutError(f"Timed out acquiring export lock in {self.directory}") from None
        return target

    async def write(self, record: SnapshotRecord, *, filename: Optional[str] = None) -> Path:
        """Write ``record`` as pretty JSON and return the file path."""
        name = filename or self.generate_filename(record.name, record.is_auto_save, record.created_at)
        path = await asyncio.to_thread(self._write_locked, record, name)
        _logger.info("snapshot.exported", extra={"id": record.id, "path": str(path)})
        return path

    async def read(self, path: Path | str) -> SnapshotRecord:
        """Load an export file; non-conforming documents are rejected."""
        text = await asyncio.to_thread(Path(path).read_text, encoding="utf-8")
        return parse_document(text, default_view_id=self._settings.snapshots.default_view_id)


def parse_document(text: str, *, default_view_id: str = "default") -> SnapshotRecord:
    try:
        obj = json.loads(text)
    except ValueError as exc:
        raise MalformedSnapshotError("not valid JSON", detail=str(exc)[:200]) from exc
    if not is_snapshot_document(obj):
        raise MalformedSnapshotError("document is not a snapshot export")
    return record_from_dict(obj, default_view_id=default_view_id)
