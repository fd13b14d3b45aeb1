"""Declarative schema migrations through the external `atlas <https://atlasgo.io>`_ CLI."""

import os
import enum
import shutil
import asyncio
import logging
import subprocess
import contextlib
from dataclasses import dataclass
from urllib.parse import quote
from typing import AsyncIterator, Iterator, List, Optional, Union

from .opener import (
    AsyncSqliteDB,
    PathType,
    SqliteDB,
    SqliteOpenError,
    open_sqlite,
    open_sqlite_async,
)

logger = logging.getLogger(__name__)

ATLAS_BIN = "atlas"
SCHEMA_FILE = "temp_migration_schema.sql"
DEV_URL = "sqlite://file?mode=memory"


class AtlasNotFoundError(SqliteOpenError):
    """The atlas executable is not on PATH; migrations were skipped."""


class MigrationError(SqliteOpenError):
    """atlas could not be started or exited with a non-zero status."""

    def __init__(self, message, returncode: Optional[int] = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class MigrationStatus(enum.Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"


@dataclass
class MigrationResult:
    """
    Outcome of :func:`open_and_migrate_sqlite`.

    ``status`` is APPLIED when atlas ran successfully, or SKIPPED when atlas
    was not installed. A SKIPPED result still carries an open, unmigrated
    ``db`` and the reason in ``error``. Hard failures are raised instead.
    """

    db: Union[SqliteDB, AsyncSqliteDB]
    status: MigrationStatus
    error: Optional[SqliteOpenError] = None

    @property
    def applied(self) -> bool:
        return self.status is MigrationStatus.APPLIED


def sqlite_url(path: str) -> str:
    """Return the ``sqlite://`` URL atlas uses to reach the database at ``path``."""
    return "sqlite://" + quote(path, safe="/:@&=+$,;")


def atlas_command(atlas: str, path: str, schema_file: str = SCHEMA_FILE) -> List[str]:
    return [
        atlas, "schema", "apply",
        "--url", sqlite_url(path),
        "--to", f"file://{schema_file}",
        "--dev-url", DEV_URL,
    ]


def _write_schema_file(schema: str) -> str:
    try:
        with open(SCHEMA_FILE, "w", encoding="utf-8") as fh:
            fh.write(schema)
    except OSError as exc:
        raise SqliteOpenError(exc) from exc
    return SCHEMA_FILE


def _remove_schema_file() -> None:
    try:
        os.remove(SCHEMA_FILE)
    except OSError as exc:
        logger.warning("could not delete %s: %s", SCHEMA_FILE, exc)


@contextlib.contextmanager
def _temp_schema_file(schema: str) -> Iterator[str]:
    """
    Write ``schema`` to :data:`SCHEMA_FILE` in the working directory and
    remove it on exit. The fixed name means concurrent migrations sharing a
    working directory overwrite each other's file.
    """
    schema_file = _write_schema_file(schema)
    try:
        yield schema_file
    finally:
        _remove_schema_file()


@contextlib.asynccontextmanager
async def _async_temp_schema_file(schema: str) -> AsyncIterator[str]:
    """Like :func:`_temp_schema_file`, with the file I/O run in the default executor."""
    loop = asyncio.get_running_loop()
    schema_file = await loop.run_in_executor(None, _write_schema_file, schema)
    try:
        yield schema_file
    finally:
        await loop.run_in_executor(None, _remove_schema_file)


def _missing_atlas(atlas_bin: str) -> AtlasNotFoundError:
    logger.warning("'%s' executable not found on PATH, skipping migrations", atlas_bin)
    return AtlasNotFoundError(
        f"could not find '{atlas_bin}' executable on path, is it installed? skipping migrations..."
    )


def open_and_migrate_sqlite(
    schema: str,
    path: PathType,
    *,
    atlas_bin: str = ATLAS_BIN,
) -> MigrationResult:
    """
    Open (creating if needed) the database at ``path`` and bring it to
    ``schema`` with ``atlas schema apply``.

    atlas inherits stdin, stdout and stderr, so its prompts and
    diagnostics reach the terminal. The call blocks until atlas exits.

    Example:
        result = open_and_migrate_sqlite("CREATE TABLE t(id INTEGER PRIMARY KEY);", "data/app.db")
        if result.error:
            print(result.error)
        db = result.db

    Raises:
        SqliteOpenError: if the database cannot be opened or the schema
            file cannot be written.
        MigrationError: if atlas fails to launch or exits non-zero.
    """
    path = os.fspath(path)

    # atlas opens the file itself, we only make sure it exists
    open_sqlite(path).close()

    atlas = shutil.which(atlas_bin)
    if atlas is None:
        return MigrationResult(open_sqlite(path), MigrationStatus.SKIPPED, _missing_atlas(atlas_bin))

    with _temp_schema_file(schema) as schema_file:
        cmd = atlas_command(atlas, path, schema_file)
        logger.info("Running migrations: %s", " ".join(cmd))
        try:
            subprocess.run(cmd, check=True)
        except subprocess.CalledProcessError as exc:
            raise MigrationError(exc, returncode=exc.returncode) from exc
        except OSError as exc:
            raise MigrationError(exc) from exc

    logger.info("Migrations applied to %s", path)
    return MigrationResult(open_sqlite(path), MigrationStatus.APPLIED)


async def open_and_migrate_sqlite_async(
    schema: str,
    path: PathType,
    *,
    atlas_bin: str = ATLAS_BIN,
) -> MigrationResult:
    """
    Async variant of :func:`open_and_migrate_sqlite`; ``result.db`` is an
    :class:`AsyncSqliteDB`.

    The temp schema file is written and removed in the loop's default
    executor. If the call is cancelled while atlas runs, atlas is killed and
    reaped before the schema file is removed.
    """
    path = os.fspath(path)

    db = await open_sqlite_async(path)
    await db.close()

    atlas = shutil.which(atlas_bin)
    if atlas is None:
        return MigrationResult(
            await open_sqlite_async(path), MigrationStatus.SKIPPED, _missing_atlas(atlas_bin)
        )

    async with _async_temp_schema_file(schema) as schema_file:
        cmd = atlas_command(atlas, path, schema_file)
        logger.info("Running migrations: %s", " ".join(cmd))
        try:
            proc = await asyncio.create_subprocess_exec(*cmd)
        except OSError as exc:
            raise MigrationError(exc) from exc
        try:
            returncode = await proc.wait()
        except BaseException:
            # cancelled: atlas must not outlive its schema file
            logger.warning("Migration interrupted, killing atlas (pid %s)", proc.pid)
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
            raise
        if returncode != 0:
            raise MigrationError(
                f"command {cmd!r} returned non-zero exit status {returncode}",
                returncode=returncode,
            )

    logger.info("Migrations applied to %s", path)
    return MigrationResult(await open_sqlite_async(path), MigrationStatus.APPLIED)
