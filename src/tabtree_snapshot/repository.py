"""Snapshot document store keyed by snapshot id."""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import LargeBinary, cast, delete as sa_delete, func, literal_column, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError

from .codec import (
    SnapshotRecord,
    SnapshotSummary,
    decode_data,
    encode_data,
    from_epoch_millis,
    to_epoch_millis,
)
from .config import Settings, get_settings
from .db import ensure_schema, get_session, is_disk_full_error, retry_on_db_lock, with_timeout
from .errors import QuotaExceededError, SnapshotNotFoundError
from .models import SnapshotRow

_logger = logging.getLogger(__name__)

_SNAPSHOTS = SnapshotRow.__table__  # type: ignore[attr-defined]
_ROWID = literal_column("rowid")


def _row_to_summary(row: tuple) -> SnapshotSummary:
    snapshot_id, created_at, name, is_auto_save, tab_count = row
    return SnapshotSummary(
        id=snapshot_id,
        created_at=from_epoch_millis(created_at),
        name=name,
        is_auto_save=bool(is_auto_save),
        tab_count=int(tab_count or 0),
    )


class SnapshotRepository:
    """Create/read/list/delete snapshots; every write is its own transaction.

    All public coroutines are guarded by a timeout (``timeout=`` per call, or
    ``SNAPSHOT_OPERATION_TIMEOUT_SECONDS``) and raise ``TransactionTimeoutError``
    on expiry.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings or get_settings()

    @property
    def _default_timeout(self) -> float:
        return self._settings.snapshots.operation_timeout_seconds

    @property
    def _default_view_id(self) -> str:
        return self._settings.snapshots.default_view_id

    def _timeout(self, timeout: Optional[float]) -> float:
        return self._default_timeout if timeout is None else timeout

    async def _ready(self) -> None:
        await ensure_schema(self._settings)

    # -- writes -------------------------------------------------------------

    async def put(self, record: SnapshotRecord, *, timeout: Optional[float] = None) -> str:
        """Insert or fully replace ``record``; returns its id."""
        payload = encode_data(record.data)
        return await with_timeout(self._put(record, payload), timeout=self._timeout(timeout), operation="put")

    @retry_on_db_lock()
    async def _put(self, record: SnapshotRecord, payload: str) -> str:
        await self._ready()
        quota = self._settings.snapshots.quota_bytes
        required = len(payload.encode("utf-8"))
        values = {
            "id": record.id,
            "created_at": to_epoch_millis(record.created_at),
            "name": record.name,
            "is_auto_save": record.is_auto_save,
            "tab_count": record.tab_count,
            "data": payload,
        }
        stmt = sqlite_insert(_SNAPSHOTS).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={key: stmt.excluded[key] for key in values if key != "id"},
        )
        async with get_session() as session:
            try:
                async with session.begin():
                    if quota > 0:
                        # length() of a BLOB cast counts bytes, not characters
                        stored_bytes = func.length(cast(_SNAPSHOTS.c.data, LargeBinary))
                        used = await session.scalar(
                            select(func.coalesce(func.sum(stored_bytes), 0)).where(_SNAPSHOTS.c.id != record.id)
                        )
                        if int(used or 0) + required > quota:
                            raise QuotaExceededError(record.id, required_bytes=required, quota_bytes=quota)
                    await session.execute(stmt)
            except OperationalError as exc:
                if is_disk_full_error(str(exc)):
                    raise QuotaExceededError(record.id, required_bytes=required) from exc
                raise
            except QuotaExceededError:
                _logger.warning(
                    "snapshot.quota_exceeded",
                    extra={"id": record.id, "required_bytes": required, "quota_bytes": quota},
                )
                raise
        _logger.debug("snapshot.saved", extra={"id": record.id, "bytes": required})
        return record.id

    async def delete(self, snapshot_id: str, *, timeout: Optional[float] = None) -> None:
        """Delete ``snapshot_id``; a missing id is not an error."""
        await with_timeout(self._delete(snapshot_id), timeout=self._timeout(timeout), operation="delete")

    @retry_on_db_lock()
    async def _delete(self, snapshot_id: str) -> None:
        await self._ready()
        async with get_session() as session:
            async with session.begin():
                await session.execute(sa_delete(_SNAPSHOTS).where(_SNAPSHOTS.c.id == snapshot_id))

    async def prune(
        self, keep_count: int, *, auto_save_only: bool = False, timeout: Optional[float] = None
    ) -> list[str]:
        """Keep the newest ``keep_count`` snapshots and delete the rest.

        With ``auto_save_only`` only auto-saves are counted and deleted; manual
        snapshots are left alone.
        """
        return await with_timeout(
            self._prune(max(0, keep_count), auto_save_only), timeout=self._timeout(timeout), operation="prune"
        )

    @retry_on_db_lock()
    async def _prune(self, keep_count: int, auto_save_only: bool) -> list[str]:
        await self._ready()
        table = _SNAPSHOTS
        stmt = select(table.c.id).order_by(table.c.created_at.desc(), _ROWID.desc()).offset(keep_count)
        if auto_save_only:
            stmt = stmt.where(table.c.is_auto_save.is_(True))
        async with get_session() as session:
            async with session.begin():
                result = await session.execute(stmt)
                doomed = [row[0] for row in result.all()]
                if doomed:
                    await session.execute(sa_delete(table).where(table.c.id.in_(doomed)))
        if doomed:
            _logger.info(
                "snapshot.pruned",
                extra={"deleted": len(doomed), "kept": keep_count, "auto_save_only": auto_save_only},
            )
        return doomed

    # -- reads --------------------------------------------------------------

    async def get(self, snapshot_id: str, *, timeout: Optional[float] = None) -> SnapshotRecord:
        """Return the stored record or raise ``SnapshotNotFoundError``."""
        return await with_timeout(self._get(snapshot_id), timeout=self._timeout(timeout), operation="get")

    @retry_on_db_lock()
    async def _get(self, snapshot_id: str) -> SnapshotRecord:
        await self._ready()
        table = _SNAPSHOTS
        async with get_session() as session:
            result = await session.execute(
                select(
                    table.c.id, table.c.created_at, table.c.name, table.c.is_auto_save, table.c.data
                ).where(table.c.id == snapshot_id)
            )
            row = result.first()
        if row is None:
            raise SnapshotNotFoundError(snapshot_id)
        return SnapshotRecord(
            id=row[0],
            created_at=from_epoch_millis(row[1]),
            name=row[2],
            is_auto_save=bool(row[3]),
            data=decode_data(row[4], default_view_id=self._default_view_id),
        )

    async def list(self, *, descending: bool = False, timeout: Optional[float] = None) -> list[SnapshotSummary]:
        """Snapshot metadata ordered by createdAt, ties in insertion order."""
        return await with_timeout(self._list(descending), timeout=self._timeout(timeout), operation="list")

    @retry_on_db_lock()
    async def _list(self, descending: bool) -> list[SnapshotSummary]:
        await self._ready()
        table = _SNAPSHOTS
        order = (
            (table.c.created_at.desc(), _ROWID.desc())
            if descending
            else (table.c.created_at.asc(), _ROWID.asc())
        )
        async with get_session() as session:
            result = await session.execute(
                select(
                    table.c.id, table.c.created_at, table.c.name, table.c.is_auto_save, table.c.tab_count
                ).order_by(*order)
            )
            rows = result.all()
        return [_row_to_summary(tuple(row)) for row in rows]

    async def list_records(self, *, descending: bool = False, timeout: Optional[float] = None) -> list[SnapshotRecord]:
        summaries = await self.list(descending=descending, timeout=timeout)
        records: list[SnapshotRecord] = []
        for summary in summaries:
            try:
                records.append(await self.get(summary.id, timeout=timeout))
            except SnapshotNotFoundError:
                # Deleted concurrently between list and get
                continue
        return records

    async def count(self, *, timeout: Optional[float] = None) -> int:
        return await with_timeout(self._count(), timeout=self._timeout(timeout), operation="count")

    @retry_on_db_lock()
    async def _count(self) -> int:
        await self._ready()
        async with get_session() as session:
            value = await session.scalar(select(func.count()).select_from(_SNAPSHOTS))
        return int(value or 0)
