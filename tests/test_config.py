from __future__ import annotations

from tabtree_snapshot.config import clear_settings_cache, get_settings


def test_defaults(monkeypatch):
    for name in (
        "SNAPSHOT_QUOTA_BYTES",
        "SNAPSHOT_MAX_SNAPSHOTS",
        "SNAPSHOT_EXPORT_SUBFOLDER",
        "DEFAULT_VIEW_ID",
        "DEFAULT_VIEW_COLOR",
        "LOG_JSON_ENABLED",
    ):
        monkeypatch.delenv(name, raising=False)
    clear_settings_cache()
    settings = get_settings()
    assert settings.snapshots.quota_bytes == 0
    assert settings.snapshots.max_snapshots == 10
    assert settings.snapshots.export_subfolder == "TT-Snapshots"
    assert settings.snapshots.default_view_id == "default"
    assert settings.snapshots.default_view_color == "#3B82F6"
    assert settings.log_json_enabled is False


def test_environment_overrides_and_bad_values(monkeypatch):
    monkeypatch.setenv("SNAPSHOT_QUOTA_BYTES", "2048")
    monkeypatch.setenv("SNAPSHOT_MAX_SNAPSHOTS", "not-a-number")
    monkeypatch.setenv("SNAPSHOT_TAB_TIMEOUT_SECONDS", "2.5")
    monkeypatch.setenv("SNAPSHOT_EXPORT_ENABLED", "no")
    monkeypatch.setenv("DATABASE_POOL_SIZE", "")
    clear_settings_cache()
    settings = get_settings()
    assert settings.snapshots.quota_bytes == 2048
    assert settings.snapshots.max_snapshots == 10
    assert settings.snapshots.tab_timeout_seconds == 2.5
    assert settings.snapshots.export_enabled is False
    assert settings.database.pool_size is None


def test_settings_are_cached_until_cleared(monkeypatch):
    clear_settings_cache()
    first = get_settings()
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")
    assert get_settings() is first
    clear_settings_cache()
    assert get_settings().log_level == "DEBUG"
