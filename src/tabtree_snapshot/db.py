"""Async database engine and session management utilities.

The snapshot store is a single SQLite collection accessed through one
process-wide cached engine:

- WAL mode lets readers proceed while one writer commits
- Each logical write runs in its own transaction on a pooled connection
- Lock contention is retried with exponential backoff and jitter
- Every destructive operation closes all pooled connections first, otherwise
  deleting the database file can block behind a lingering handle
"""

from __future__ import annotations

import asyncio
import logging
import random
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from functools import wraps
from pathlib import Path
from typing import Any, TypeVar

from sqlalchemy.exc import OperationalError, TimeoutError as SATimeoutError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from .config import DatabaseSettings, Settings, clear_settings_cache, get_settings
from .errors import TransactionTimeoutError
from .models import SCHEMA_VERSION

T = TypeVar("T")
_logger = logging.getLogger(__name__)

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None
_schema_ready = False
_schema_lock: asyncio.Lock | None = None


def _is_lock_error(error_msg: str) -> bool:
    """Check if error message indicates a database lock error."""
    lower_msg = error_msg.lower()
    return any(
        phrase in lower_msg
        for phrase in [
            "database is locked",
            "database is busy",
            "locked",
        ]
    )


def is_disk_full_error(error_msg: str) -> bool:
    lower_msg = error_msg.lower()
    return "database or disk is full" in lower_msg or "disk full" in lower_msg


def _is_pool_exhausted_error(exc: Exception) -> bool:
    """Check if exception indicates connection pool exhaustion."""
    if isinstance(exc, SATimeoutError):
        return True
    error_msg = str(exc).lower()
    return "pool" in error_msg and ("timeout" in error_msg or "exhausted" in error_msg)


def retry_on_db_lock(
    max_retries: int = 5,
    base_delay: float = 0.05,
    max_delay: float = 2.0,
) -> Callable[..., Any]:
    """Decorator to retry async functions on SQLite lock errors with exponential backoff + jitter.

    Args:
        max_retries: Maximum number of retry attempts
        base_delay: Initial delay in seconds
        max_delay: Maximum delay between retries in seconds

    Only ``OperationalError`` lock messages and pool timeouts are retried; every
    other error is re-raised immediately. The wrapped coroutine must be safe to
    run again, which holds for whole-transaction operations that roll back on
    failure.
    """

    def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
        @wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> Any:
            func_name = getattr(func, "__name__", getattr(func, "__qualname__", "<callable>"))
            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except (OperationalError, SATimeoutError) as e:
                    error_msg = str(e)
                    is_lock = _is_lock_error(error_msg)
                    is_pool = _is_pool_exhausted_error(e)
                    if not (is_lock or is_pool) or attempt >= max_retries:
                        raise

                    delay = min(base_delay * (2**attempt), max_delay)
                    # ±25% jitter
                    jitter = delay * 0.25 * (2 * random.random() - 1)
                    total_delay = max(0.01, delay + jitter)

                    error_type = "pool_exhausted" if is_pool else "db_locked"
                    _logger.warning(
                        f"db.{error_type}",
                        extra={
                            "function": func_name,
                            "attempt": attempt + 1,
                            "max_retries": max_retries,
                            "delay_seconds": round(total_delay, 3),
                            "error": error_msg[:200],
                        },
                    )
                    await asyncio.sleep(total_delay)
            raise RuntimeError("Unexpected retry loop exit")

        return wrapper

    return decorator


async def with_timeout(awaitable: Awaitable[T], *, timeout: float | None, operation: str) -> T:
    """Await ``awaitable`` but give up after ``timeout`` seconds.

    On expiry the caller sees ``TransactionTimeoutError``; the underlying
    request is not guaranteed to have been rolled back.
    """
    if timeout is None or timeout <= 0:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError:
        _logger.warning("db.timeout", extra={"operation": operation, "timeout_seconds": timeout})
        raise TransactionTimeoutError(operation, timeout) from None


def _build_engine(settings: DatabaseSettings) -> AsyncEngine:
    """Build async SQLAlchemy engine with SQLite-friendly settings.

    - WAL mode: concurrent readers + one writer
    - NORMAL sync: durable with WAL, much faster than FULL
    - busy_timeout=30s: writers wait for each other instead of failing at once
    """
    from sqlalchemy import event
    from sqlalchemy.engine import make_url

    connect_args: dict[str, Any] = {}
    is_sqlite = "sqlite" in settings.url.lower()

    if is_sqlite:
        # SQLite returns "unable to open database file" when the directory is missing.
        try:
            parsed = make_url(settings.url)
            if parsed.database and parsed.database != ":memory:":
                Path(parsed.database).expanduser().resolve().parent.mkdir(parents=True, exist_ok=True)
        except Exception:
            _logger.debug("db.parent_dir_unavailable", extra={"url": settings.url})
        connect_args = {
            "timeout": 30.0,
            "check_same_thread": False,
        }

    pool_kwargs: dict[str, Any] = {}
    if settings.pool_size is not None:
        pool_kwargs["pool_size"] = settings.pool_size
    pool_kwargs["max_overflow"] = settings.max_overflow if settings.max_overflow is not None else 10
    pool_kwargs["pool_timeout"] = settings.pool_timeout if settings.pool_timeout is not None else 30

    engine = create_async_engine(
        settings.url,
        echo=settings.echo,
        pool_pre_ping=True,
        pool_recycle=1800,
        pool_reset_on_return="rollback",  # uncommitted work never leaks into the next checkout
        connect_args=connect_args,
        **pool_kwargs,
    )

    if is_sqlite:

        @event.listens_for(engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_conn: Any, connection_record: Any) -> None:
            cursor = dbapi_conn.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL")
                cursor.execute("PRAGMA synchronous=NORMAL")
                cursor.execute("PRAGMA busy_timeout=30000")
                cursor.execute("PRAGMA temp_store=MEMORY")
            finally:
                cursor.close()
            # Hand transaction control to SQLAlchemy; the driver would otherwise
            # defer BEGIN until the first DML statement.
            dbapi_conn.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def begin_immediate(conn: Any) -> None:
            # Take the write lock up front so a read-then-write transaction
            # (the quota check in ``put``) cannot interleave with another writer.
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def init_engine(settings: Settings | None = None) -> None:
    """Initialise global engine and session factory once."""
    global _engine, _session_factory
    if _engine is not None and _session_factory is not None:
        return
    resolved_settings = settings or get_settings()
    engine = _build_engine(resolved_settings.database)
    _engine = engine
    _session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


def get_engine() -> AsyncEngine:
    if _engine is None:
        init_engine()
    assert _engine is not None
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    if _session_factory is None:
        init_engine()
    assert _session_factory is not None
    return _session_factory


@asynccontextmanager
async def get_session() -> AsyncIterator[AsyncSession]:
    """Provide an async database session with guaranteed cleanup.

    The close runs under ``asyncio.shield`` so a cancelled caller (for example
    one whose timeout fired) still returns its connection to the pool.
    """
    factory = get_session_factory()
    session = factory()
    try:
        yield session
    finally:
        close_task = asyncio.create_task(session.close())
        try:
            await asyncio.shield(close_task)
        except BaseException:
            with suppress(BaseException):
                await close_task
            raise


def _read_user_version(connection: Any) -> int:
    return int(connection.exec_driver_sql("PRAGMA user_version").scalar() or 0)


def _upgrade_schema(connection: Any) -> None:
    """Create the snapshot collection and its indexes; safe to run on every open."""
    stored = _read_user_version(connection)
    SQLModel.metadata.create_all(connection, checkfirst=True)
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_snapshots_created_at ON snapshots(created_at)"
    )
    connection.exec_driver_sql(
        "CREATE INDEX IF NOT EXISTS idx_snapshots_is_auto_save ON snapshots(is_auto_save)"
    )
    if stored < SCHEMA_VERSION:
        connection.exec_driver_sql(f"PRAGMA user_version = {int(SCHEMA_VERSION)}")
        _logger.info("db.schema_upgraded", extra={"from_version": stored, "to_version": SCHEMA_VERSION})
    elif stored > SCHEMA_VERSION:
        _logger.warning(
            "db.schema_newer_than_code",
            extra={"stored_version": stored, "code_version": SCHEMA_VERSION},
        )


@retry_on_db_lock(max_retries=7, base_delay=0.1, max_delay=4.0)
async def ensure_schema(settings: Settings | None = None) -> None:
    """Ensure the snapshot collection exists at the current schema version."""
    global _schema_ready, _schema_lock
    if _schema_ready:
        return
    if _schema_lock is None:
        _schema_lock = asyncio.Lock()
    async with _schema_lock:
        if _schema_ready:
            return
        init_engine(settings)
        engine = get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(_upgrade_schema)
        _schema_ready = True


async def get_schema_version() -> int:
    engine = get_engine()
    async with engine.connect() as conn:
        return await conn.run_sync(_read_user_version)


async def close_all_connections() -> None:
    """Dispose the cached engine so no pooled connection stays open."""
    global _engine, _session_factory, _schema_ready, _schema_lock
    engine = _engine
    _engine = None
    _session_factory = None
    _schema_ready = False
    _schema_lock = None
    if engine is not None:
        await engine.dispose()
        _logger.debug("db.connections_closed")


def reset_database_state() -> None:
    """Synchronous variant of ``close_all_connections`` for tests and CLI exit."""
    global _engine, _session_factory, _schema_ready, _schema_lock
    if _engine is not None:
        engine = _engine
        try:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None

            if running is not None and running.is_running():
                # Can't block; fall back to sync pool disposal (best effort).
                engine.sync_engine.dispose()
            else:
                asyncio.run(engine.dispose())
        except Exception:
            with suppress(Exception):
                engine.sync_engine.dispose()
    _engine = None
    _session_factory = None
    _schema_ready = False
    _schema_lock = None
    # Tests frequently mutate env vars; keep settings cache in sync with DB resets.
    clear_settings_cache()


def get_database_path(settings: Settings | None = None) -> Path | None:
    """Extract the filesystem path to the SQLite database file from settings.

    Returns None when the URL is not a file-backed SQLite database.
    """
    resolved = settings or get_settings()
    url_raw = resolved.database.url

    try:
        from sqlalchemy.engine import make_url

        parsed = make_url(url_raw)
    except Exception:
        return None

    if parsed.get_backend_name() != "sqlite":
        return None

    db_path = parsed.database
    if not db_path or db_path == ":memory:":
        return None

    return Path(db_path).expanduser()


async def delete_database(settings: Settings | None = None) -> bool:
    """Remove the SQLite database file (and its WAL/SHM side files).

    Returns True when a file was deleted.
    """
    await close_all_connections()
    db_path = get_database_path(settings)
    if db_path is None:
        return False
    removed = False
    for candidate in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
        if candidate.exists():
            await asyncio.to_thread(candidate.unlink)
            removed = True
    _logger.info("db.deleted", extra={"path": str(db_path), "removed": removed})
    return removed
