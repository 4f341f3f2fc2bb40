"""Application configuration loaded via python-decouple with typed helpers."""

from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Final, Protocol, cast

from decouple import (
    Config as DecoupleConfig,
    RepositoryEmpty,
    RepositoryEnv,
)

_DOTENV_PATH: Final[Path] = Path(".env")


def _build_decouple_config() -> DecoupleConfig:
    # Gracefully handle missing .env (e.g., in CI/tests) by falling back to an empty repository.
    try:
        return DecoupleConfig(RepositoryEnv(str(_DOTENV_PATH)))
    except FileNotFoundError:
        return DecoupleConfig(RepositoryEmpty())


_decouple_config: Final[DecoupleConfig] = _build_decouple_config()


@dataclass(slots=True, frozen=True)
class DatabaseSettings:
    """Database connectivity settings."""

    url: str
    echo: bool
    pool_size: int | None
    max_overflow: int | None
    pool_timeout: int | None


@dataclass(slots=True, frozen=True)
class SnapshotSettings:
    """Snapshot storage, restore and export behaviour."""

    # Byte budget for stored snapshot payloads; 0 disables the check
    quota_bytes: int
    # Auto-save retention; 0 keeps every snapshot
    max_snapshots: int
    operation_timeout_seconds: float
    tab_timeout_seconds: float
    export_enabled: bool
    export_dir: str
    export_subfolder: str
    default_view_id: str
    default_view_name: str
    default_view_color: str


@dataclass(slots=True, frozen=True)
class Settings:
    """Top-level application settings."""

    environment: str
    database: DatabaseSettings
    snapshots: SnapshotSettings
    # Logging
    log_level: str
    log_json_enabled: bool


def _bool(value: str, *, default: bool) -> bool:
    normalized = value.strip().lower()
    if normalized in {"1", "true", "t", "yes", "y"}:
        return True
    if normalized in {"0", "false", "f", "no", "n"}:
        return False
    return default


def _int(value: str, *, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _int_optional(value: str) -> int | None:
    text = str(value or "").strip()
    if not text:
        return None
    try:
        return int(text)
    except (TypeError, ValueError):
        return None


def _float(value: str, *, default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return cached application settings."""
    environment = _decouple_config("APP_ENVIRONMENT", default="development")

    database_settings = DatabaseSettings(
        url=_decouple_config("DATABASE_URL", default="sqlite+aiosqlite:///./tabtree_snapshots.sqlite3"),
        echo=_bool(_decouple_config("DATABASE_ECHO", default="false"), default=False),
        pool_size=_int_optional(_decouple_config("DATABASE_POOL_SIZE", default="10")),
        max_overflow=_int_optional(_decouple_config("DATABASE_MAX_OVERFLOW", default="")),
        pool_timeout=_int_optional(_decouple_config("DATABASE_POOL_TIMEOUT", default="")),
    )

    snapshot_settings = SnapshotSettings(
        quota_bytes=max(0, _int(_decouple_config("SNAPSHOT_QUOTA_BYTES", default="0"), default=0)),
        max_snapshots=max(0, _int(_decouple_config("SNAPSHOT_MAX_SNAPSHOTS", default="10"), default=10)),
        operation_timeout_seconds=_float(
            _decouple_config("SNAPSHOT_OPERATION_TIMEOUT_SECONDS", default="10"), default=10.0
        ),
        tab_timeout_seconds=_float(_decouple_config("SNAPSHOT_TAB_TIMEOUT_SECONDS", default="10"), default=10.0),
        export_enabled=_bool(_decouple_config("SNAPSHOT_EXPORT_ENABLED", default="true"), default=True),
        export_dir=_decouple_config("SNAPSHOT_EXPORT_DIR", default="~/Downloads"),
        export_subfolder=_decouple_config("SNAPSHOT_EXPORT_SUBFOLDER", default="TT-Snapshots").strip(),
        default_view_id=_decouple_config("DEFAULT_VIEW_ID", default="default").strip() or "default",
        default_view_name=_decouple_config("DEFAULT_VIEW_NAME", default="Default"),
        default_view_color=_decouple_config("DEFAULT_VIEW_COLOR", default="#3B82F6"),
    )

    return Settings(
        environment=environment,
        database=database_settings,
        snapshots=snapshot_settings,
        log_level=_decouple_config("LOG_LEVEL", default="INFO"),
        log_json_enabled=_bool(_decouple_config("LOG_JSON_ENABLED", default="false"), default=False),
    )


class _CacheClearable(Protocol):
    def cache_clear(self) -> None: ...


def clear_settings_cache() -> None:
    """Clear the lru_cache for get_settings in a type-checker-friendly way."""
    cache_clear = getattr(cast(_CacheClearable, get_settings), "cache_clear", None)
    if callable(cache_clear):
        cache_clear()
