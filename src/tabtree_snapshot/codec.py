"""Snapshot data model and its wire/store encodings.

Wire form (export files, ``RESTORE_SNAPSHOT`` payloads) is camelCase JSON whose
top level is exactly a snapshot record with ``createdAt`` as an ISO-8601 UTC
string. The store keeps ``createdAt`` as epoch milliseconds and the nested
``data`` object as JSON text.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from .errors import MalformedSnapshotError

SNAPSHOT_ID_PREFIX = "snapshot-"


@dataclass(slots=True, frozen=True)
class View:
    id: str
    name: str
    color: str
    icon: Optional[str] = None


@dataclass(slots=True, frozen=True)
class TabRecord:
    index: int
    url: str
    title: str = ""
    parent_index: Optional[int] = None
    view_id: str = "default"
    is_expanded: bool = True
    pinned: bool = False
    window_index: int = 0
    group_info: Optional[dict[str, Any]] = None


@dataclass(slots=True)
class SnapshotData:
    views: list[View] = field(default_factory=list)
    tabs: list[TabRecord] = field(default_factory=list)
    # Reserved; carried through untouched
    groups: list[Any] = field(default_factory=list)


@dataclass(slots=True)
class SnapshotRecord:
    id: str
    created_at: datetime
    name: str
    is_auto_save: bool
    data: SnapshotData

    @property
    def tab_count(self) -> int:
        return len(self.data.tabs)


@dataclass(slots=True, frozen=True)
class SnapshotSummary:
    """Listing metadata for a stored snapshot (no tab payload)."""

    id: str
    created_at: datetime
    name: str
    is_auto_save: bool
    tab_count: int


def generate_snapshot_id(now: Optional[datetime] = None) -> str:
    """Return ``snapshot-<epoch millis>-<random token>``."""
    moment = now or datetime.now(timezone.utc)
    return f"{SNAPSHOT_ID_PREFIX}{to_epoch_millis(moment)}-{uuid.uuid4().hex[:7]}"


def to_epoch_millis(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(round(value.timestamp() * 1000))


def from_epoch_millis(value: int | float) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def format_created_at(value: datetime) -> str:
    """Render like ``Date.toISOString()``: millisecond precision, ``Z`` suffix."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def parse_created_at(value: Any) -> datetime:
    """Accept ISO-8601 strings, epoch milliseconds or datetimes."""
    if isinstance(value, datetime):
        return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        raise MalformedSnapshotError("createdAt must be a timestamp", value=value)
    if isinstance(value, (int, float)):
        try:
            return from_epoch_millis(value)
        except (OverflowError, OSError, ValueError) as exc:
            raise MalformedSnapshotError("createdAt is out of range", value=value) from exc
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError as exc:
            raise MalformedSnapshotError("createdAt is not an ISO-8601 timestamp", value=value) from exc
        return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=timezone.utc)
    raise MalformedSnapshotError("createdAt is missing or has an unsupported type", value=repr(value))


# ---------------------------------------------------------------------------
# dict <-> dataclass
# ---------------------------------------------------------------------------


def _require_mapping(obj: Any, what: str) -> Mapping[str, Any]:
    if not isinstance(obj, Mapping):
        raise MalformedSnapshotError(f"{what} must be an object")
    return obj


def _optional_str(obj: Mapping[str, Any], key: str, default: str) -> str:
    value = obj.get(key, default)
    if value is None:
        return default
    if not isinstance(value, str):
        raise MalformedSnapshotError(f"'{key}' must be a string", value=repr(value))
    return value


def _optional_bool(obj: Mapping[str, Any], key: str, default: bool) -> bool:
    value = obj.get(key, default)
    if value is None:
        return default
    if not isinstance(value, bool):
        raise MalformedSnapshotError(f"'{key}' must be a boolean", value=repr(value))
    return value


def _ordinal(value: Any, key: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise MalformedSnapshotError(f"'{key}' must be a non-negative integer", value=repr(value))
    return value


def view_from_dict(obj: Any) -> View:
    raw = _require_mapping(obj, "view")
    view_id = raw.get("id")
    if not isinstance(view_id, str) or not view_id:
        raise MalformedSnapshotError("view 'id' must be a non-empty string", value=repr(view_id))
    icon = raw.get("icon")
    return View(
        id=view_id,
        name=_optional_str(raw, "name", view_id),
        color=_optional_str(raw, "color", ""),
        icon=icon if isinstance(icon, str) else None,
    )


def view_to_dict(view: View) -> dict[str, Any]:
    payload: dict[str, Any] = {"id": view.id, "name": view.name, "color": view.color}
    if view.icon is not None:
        payload["icon"] = view.icon
    return payload


def tab_from_dict(obj: Any, *, default_view_id: str = "default") -> TabRecord:
    raw = _require_mapping(obj, "tab")
    if "index" not in raw:
        raise MalformedSnapshotError("tab is missing 'index'")
    index = _ordinal(raw["index"], "index")
    url = raw.get("url")
    if not isinstance(url, str):
        raise MalformedSnapshotError("tab 'url' must be a string", index=index)
    parent = raw.get("parentIndex")
    parent_index = None if parent is None else _ordinal(parent, "parentIndex")
    window = raw.get("windowIndex")
    group_info = raw.get("groupInfo")
    if group_info is not None and not isinstance(group_info, Mapping):
        raise MalformedSnapshotError("'groupInfo' must be an object", index=index)
    return TabRecord(
        index=index,
        url=url,
        title=_optional_str(raw, "title", ""),
        parent_index=parent_index,
        view_id=_optional_str(raw, "viewId", default_view_id) or default_view_id,
        is_expanded=_optional_bool(raw, "isExpanded", True),
        pinned=_optional_bool(raw, "pinned", False),
        window_index=0 if window is None else _ordinal(window, "windowIndex"),
        group_info=dict(group_info) if group_info is not None else None,
    )


def tab_to_dict(tab: TabRecord) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "index": tab.index,
        "url": tab.url,
        "title": tab.title,
        "parentIndex": tab.parent_index,
        "viewId": tab.view_id,
        "isExpanded": tab.is_expanded,
        "pinned": tab.pinned,
        "windowIndex": tab.window_index,
    }
    if tab.group_info is not None:
        payload["groupInfo"] = dict(tab.group_info)
    return payload


def data_from_dict(obj: Any, *, default_view_id: str = "default") -> SnapshotData:
    raw = _require_mapping(obj, "data")
    views = raw.get("views", [])
    tabs = raw.get("tabs")
    groups = raw.get("groups", [])
    if tabs is None:
        raise MalformedSnapshotError("'data.tabs' is missing")
    if not isinstance(tabs, list):
        raise MalformedSnapshotError("'data.tabs' must be a list")
    if not isinstance(views, list):
        raise MalformedSnapshotError("'data.views' must be a list")
    return SnapshotData(
        views=[view_from_dict(v) for v in views],
        tabs=[tab_from_dict(t, default_view_id=default_view_id) for t in tabs],
        groups=list(groups) if isinstance(groups, list) else [],
    )


def data_to_dict(data: SnapshotData) -> dict[str, Any]:
    return {
        "views": [view_to_dict(v) for v in data.views],
        "tabs": [tab_to_dict(t) for t in data.tabs],
        "groups": list(data.groups),
    }


def record_from_dict(obj: Any, *, default_view_id: str = "default") -> SnapshotRecord:
    raw = _require_mapping(obj, "snapshot")
    snapshot_id = raw.get("id")
    if not isinstance(snapshot_id, str) or not snapshot_id.startswith(SNAPSHOT_ID_PREFIX):
        raise MalformedSnapshotError(f"'id' must be a string starting with '{SNAPSHOT_ID_PREFIX}'")
    if "data" not in raw:
        raise MalformedSnapshotError("'data' is missing", id=snapshot_id)
    return SnapshotRecord(
        id=snapshot_id,
        created_at=parse_created_at(raw.get("createdAt")),
        name=_optional_str(raw, "name", ""),
        is_auto_save=_optional_bool(raw, "isAutoSave", False),
        data=data_from_dict(raw["data"], default_view_id=default_view_id),
    )


def record_to_dict(record: SnapshotRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "createdAt": format_created_at(record.created_at),
        "name": record.name,
        "isAutoSave": record.is_auto_save,
        "data": data_to_dict(record.data),
    }


# ---------------------------------------------------------------------------
# JSON text
# ---------------------------------------------------------------------------


def dumps(record: SnapshotRecord, *, indent: Optional[int] = 2) -> str:
    return json.dumps(record_to_dict(record), indent=indent, ensure_ascii=False)


def loads(text: str | bytes, *, default_view_id: str = "default") -> SnapshotRecord:
    try:
        obj = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise MalformedSnapshotError("not valid JSON", detail=str(exc)[:200]) from exc
    return record_from_dict(obj, default_view_id=default_view_id)


def encode_data(data: SnapshotData) -> str:
    """Serialize the nested payload for the store's text column."""
    return json.dumps(data_to_dict(data), separators=(",", ":"), ensure_ascii=False)


def decode_data(text: str, *, default_view_id: str = "default") -> SnapshotData:
    try:
        obj = json.loads(text)
    except (TypeError, ValueError) as exc:
        raise MalformedSnapshotError("stored snapshot data is corrupt", detail=str(exc)[:200]) from exc
    return data_from_dict(obj, default_view_id=default_view_id)


def is_snapshot_document(obj: Any) -> bool:
    """Conformance check for exported snapshot files."""
    if not isinstance(obj, Mapping):
        return False
    snapshot_id = obj.get("id")
    if not isinstance(snapshot_id, str) or not snapshot_id.startswith(SNAPSHOT_ID_PREFIX):
        return False
    if "createdAt" not in obj or "name" not in obj:
        return False
    if not isinstance(obj.get("isAutoSave"), bool):
        return False
    data = obj.get("data")
    if not isinstance(data, Mapping):
        return False
    return isinstance(data.get("views"), list) and isinstance(data.get("tabs"), list)
