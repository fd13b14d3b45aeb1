"""Open SQLite databases with non-deadlocking settings and migrate them with atlas."""

import sqlite3

MIN_SQLITE_VERSION = (3, 7, 0)

if sqlite3.sqlite_version_info < MIN_SQLITE_VERSION:  # pragma: no cover - env guard
    raise RuntimeError("sqliteutil requires SQLite >= 3.7.0 for WAL journaling")

from .opener import (
    MEMORY_PATH,
    AsyncSqliteDB,
    SqliteDB,
    SqliteOpenError,
    open_sqlite,
    open_sqlite_async,
)
from .migrate import (
    AtlasNotFoundError,
    MigrationError,
    MigrationResult,
    MigrationStatus,
    open_and_migrate_sqlite,
    open_and_migrate_sqlite_async,
)

__all__ = [
    "MEMORY_PATH",
    "AsyncSqliteDB",
    "SqliteDB",
    "SqliteOpenError",
    "open_sqlite",
    "open_sqlite_async",
    "AtlasNotFoundError",
    "MigrationError",
    "MigrationResult",
    "MigrationStatus",
    "open_and_migrate_sqlite",
    "open_and_migrate_sqlite_async",
]
__version__ = "0.1.0"
