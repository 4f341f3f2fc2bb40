"""Error taxonomy shared by the repository, codec and restoration engine."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional


class SnapshotError(Exception):
    """Base class for snapshot failures that are reported back to callers."""

    error_type = "SNAPSHOT_ERROR"

    def __init__(self, message: str, *, recoverable: bool = True, data: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.recoverable = recoverable
        self.data = data or {}

    def to_payload(self) -> dict[str, Any]:
        return {
            "error": {
                "type": self.error_type,
                "message": str(self),
                "recoverable": self.recoverable,
                "data": self.data,
            }
        }


class SnapshotNotFoundError(SnapshotError):
    error_type = "NOT_FOUND"

    def __init__(self, snapshot_id: str):
        super().__init__(f"Snapshot '{snapshot_id}' not found.", data={"id": snapshot_id})
        self.snapshot_id = snapshot_id


class QuotaExceededError(SnapshotError):
    """The store rejected a write because the storage budget is exhausted."""

    error_type = "QUOTA_EXCEEDED"

    def __init__(self, snapshot_id: str, *, required_bytes: int | None = None, quota_bytes: int | None = None):
        super().__init__(
            "Snapshot storage is full. Delete older snapshots and try saving again.",
            data={"id": snapshot_id, "required_bytes": required_bytes, "quota_bytes": quota_bytes},
        )
        self.snapshot_id = snapshot_id


class MalformedSnapshotError(SnapshotError):
    """Structurally invalid snapshot; raised before any side effect happens."""

    error_type = "MALFORMED_SNAPSHOT"

    def __init__(self, reason: str, **data: Any):
        super().__init__(f"Snapshot data is invalid and cannot be restored: {reason}", recoverable=False, data=data)
        self.reason = reason


class TransactionTimeoutError(SnapshotError):
    """A caller-side timeout expired; the underlying request may still complete."""

    error_type = "TRANSACTION_TIMEOUT"

    def __init__(self, operation: str, timeout: float):
        super().__init__(
            f"Operation '{operation}' did not finish within {timeout:g}s. "
            "It may still complete; verify before retrying.",
            data={"operation": operation, "timeout_seconds": timeout},
        )
        self.operation = operation
        self.timeout = timeout


@dataclass(slots=True, frozen=True)
class PartialRestoreTabFailure:
    """A single tab that could not be opened during a restore (non-fatal)."""

    index: int
    url: str
    reason: str

    def to_dict(self) -> dict[str, Any]:
        return {"index": self.index, "url": self.url, "reason": self.reason}
