"""Durable snapshots of hierarchical tab trees."""

from __future__ import annotations

from .capture import CreatedSnapshot, SnapshotCaptureService
from .codec import SnapshotData, SnapshotRecord, SnapshotSummary, TabRecord, View
from .errors import (
    MalformedSnapshotError,
    PartialRestoreTabFailure,
    QuotaExceededError,
    SnapshotError,
    SnapshotNotFoundError,
    TransactionTimeoutError,
)
from .repository import SnapshotRepository
from .restore import RestoreReport, TreeRestorationEngine
from .service import SnapshotService
from .tabs import TabInfo, TabsApi
from .tree import TreeState

__all__ = [
    "CreatedSnapshot",
    "MalformedSnapshotError",
    "PartialRestoreTabFailure",
    "QuotaExceededError",
    "RestoreReport",
    "SnapshotCaptureService",
    "SnapshotData",
    "SnapshotError",
    "SnapshotNotFoundError",
    "SnapshotRecord",
    "SnapshotRepository",
    "SnapshotService",
    "SnapshotSummary",
    "TabInfo",
    "TabRecord",
    "TabsApi",
    "TransactionTimeoutError",
    "TreeRestorationEngine",
    "TreeState",
    "View",
]
