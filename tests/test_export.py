from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest
from conftest import make_record, tab

from tabtree_snapshot.codec import record_to_dict
from tabtree_snapshot.config import get_settings
from tabtree_snapshot.errors import MalformedSnapshotError
from tabtree_snapshot.export import SnapshotExporter, safe_name


def test_generate_filename_marks_auto_saves_and_sanitizes_name():
    now = datetime(2024, 12, 31, 23, 59, 58, tzinfo=timezone.utc)
    assert (
        SnapshotExporter.generate_filename("Manual Snapshot - 12/31", False, now)
        == "tabtree-snapshot-20241231_235958-Manual-Snapshot---1231.json"
    )
    assert SnapshotExporter.generate_filename("nightly", True, now) == "tabtree-snapshot-20241231_235958-auto-nightly.json"


def test_safe_name_keeps_word_characters_and_hyphens():
    assert safe_name("a  b\tc_d-e*f") == "a-b-c_d-ef"


@pytest.mark.asyncio
async def test_write_produces_pretty_json_and_never_overwrites(tmp_path):
    exporter = SnapshotExporter(get_settings(), directory=tmp_path / "out")
    record = make_record([tab(0, "https://a.example")], name="Weekly")

    first = await exporter.write(record)
    second = await exporter.write(record)

    assert first.name == "tabtree-snapshot-20240102_030405-Weekly.json"
    assert second.name == "tabtree-snapshot-20240102_030405-Weekly (1).json"
    text = first.read_text(encoding="utf-8")
    assert text.startswith('{\n  "id": ')
    assert json.loads(text) == record_to_dict(record)
    assert await exporter.read(second) == record


@pytest.mark.asyncio
async def test_read_rejects_non_snapshot_documents(tmp_path):
    exporter = SnapshotExporter(get_settings(), directory=tmp_path)
    path = tmp_path / "bogus.json"
    path.write_text(json.dumps({"id": "snapshot-1", "data": {"tabs": []}}), encoding="utf-8")
    with pytest.raises(MalformedSnapshotError):
        await exporter.read(path)
    path.write_text("{", encoding="utf-8")
    with pytest.raises(MalformedSnapshotError):
        await exporter.read(path)
