import os
import sqlite3
import asyncio
import inspect
import logging
import threading
import contextlib
import aiosqlite
from typing import Any, Callable, List, Optional, Sequence, Iterable, Mapping, Union

logger = logging.getLogger(__name__)

MEMORY_PATH = ":memory:"

PathType = Union[str, "os.PathLike[str]"]
Params = Union[Sequence[Any], Mapping[str, Any], None]


class SqliteOpenError(Exception):
    """Raised when a database cannot be opened, configured or migrated."""

    prefix = "open sqlite: "

    def __init__(self, message: Any) -> None:
        super().__init__(f"{self.prefix}{message}")


def require_open(method: Callable) -> Callable:
    """
    Decorator to ensure the handle has not been closed before method execution.

    Raises:
        RuntimeError: if `close()` was already called.
    """
    if inspect.iscoroutinefunction(method):
        async def async_wrapper(self, *args, **kwargs):
            if self.conn is None:
                raise RuntimeError("database handle is closed")
            return await method(self, *args, **kwargs)
        return async_wrapper
    else:
        def sync_wrapper(self, *args, **kwargs):
            if self.conn is None:
                raise RuntimeError("database handle is closed")
            return method(self, *args, **kwargs)
        return sync_wrapper


def _ensure_parent_dir(path: str) -> None:
    if path == MEMORY_PATH:
        return
    parent = os.path.dirname(path)
    if not parent:
        return
    # best effort, a real problem surfaces when sqlite opens the file
    with contextlib.suppress(OSError):
        os.makedirs(parent, mode=0o777, exist_ok=True)


class SqliteDB:
    """
    Blocking handle around a single sqlite3 connection.

    The handle never hands out more than one connection: every call goes
    through ``self._lock``, so there is a single writer at any time. Obtain
    one with :func:`open_sqlite`.

    Usage:
        with open_sqlite("data/app.db") as db:
            db.execute("INSERT INTO t(x) VALUES(?)", (1,))
    """

    max_open_conns = 1

    def __init__(self, path: str, conn: sqlite3.Connection) -> None:
        self.path = path
        self.conn: Optional[sqlite3.Connection] = conn
        self._lock = threading.Lock()

    def __enter__(self) -> "SqliteDB":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self.conn is not None:
            self.close()

    def __repr__(self) -> str:
        state = "closed" if self.conn is None else "open"
        return f"<SqliteDB path={self.path!r} {state}>"

    @property
    def closed(self) -> bool:
        return self.conn is None

    @require_open
    def journal_mode(self) -> str:
        """Return the current journal mode, e.g. ``"wal"``."""
        return str(self.query_scalar("PRAGMA journal_mode")).lower()

    @require_open
    def execute(self, sql: str, params: Params = None) -> sqlite3.Cursor:
        """
        Execute a statement with positional or named parameters and commit.

        Example:
            cur = db.execute("INSERT INTO t(x) VALUES(?)", (1,))
            print(cur.lastrowid)
        """
        ps = params if params is not None else ()
        logger.debug("Executing SQL: %s; params: %s", sql, ps)
        with self._lock:
            conn = self._conn_or_raise()
            cur = conn.execute(sql, ps)
            conn.commit()
        return cur

    @require_open
    def execute_many(self, sql: str, seq_params: Iterable[Sequence[Any]]) -> sqlite3.Cursor:
        """Execute many positional statements and commit."""
        logger.debug("Executing many SQL: %s; params: %s", sql, seq_params)
        with self._lock:
            conn = self._conn_or_raise()
            cur = conn.executemany(sql, seq_params)
            conn.commit()
        return cur

    @require_open
    def executescript(self, script: str) -> None:
        logger.debug("Executing SQL script: %s", script)
        with self._lock:
            conn = self._conn_or_raise()
            conn.executescript(script)
            conn.commit()

    @require_open
    def query_many(self, sql: str, params: Params = None) -> List[sqlite3.Row]:
        """
        Fetch all rows with parameters. Returns List[sqlite3.Row].

        Example:
            for row in db.query_many("SELECT x FROM t WHERE x > ?", (0,)):
                print(row["x"])
        """
        ps = params if params is not None else ()
        logger.debug("Executing SQL: %s; params: %s", sql, ps)
        with self._lock:
            conn = self._conn_or_raise()
            cur = conn.execute(sql, ps)
            try:
                return cur.fetchall()
            finally:
                cur.close()

    @require_open
    def query_one(self, sql: str, params: Params = None) -> Optional[sqlite3.Row]:
        """Fetch a single row or None."""
        ps = params if params is not None else ()
        logger.debug("Executing SQL: %s; params: %s", sql, ps)
        with self._lock:
            conn = self._conn_or_raise()
            cur = conn.execute(sql, ps)
            try:
                return cur.fetchone()
            finally:
                cur.close()

    @require_open
    def query_scalar(self, sql: str, params: Params = None) -> Any:
        """Return the first column of the first row, or None when there are no rows."""
        row = self.query_one(sql, params)
        return None if row is None else row[0]

    @require_open
    def query_column(self, sql: str, params: Params = None) -> List[Any]:
        """Return the first column of every row."""
        return [row[0] for row in self.query_many(sql, params)]

    def _conn_or_raise(self) -> sqlite3.Connection:
        # re-checked under the lock, another thread may have closed the handle
        if self.conn is None:
            raise RuntimeError("database handle is closed")
        return self.conn

    def close(self) -> None:
        """
        Close the underlying connection. The handle is unusable afterwards;
        closing it again does nothing.
        """
        with self._lock:
            if self.conn is None:
                return
            self.conn.close()
            self.conn = None


class AsyncSqliteDB:
    """
    Async twin of :class:`SqliteDB` backed by aiosqlite.

    A single aiosqlite connection is shared behind an ``asyncio.Lock``, so
    coroutines queue up for it instead of opening competing writers.

    Usage:
        async with await open_sqlite_async("data/app.db") as db:
            await db.execute("INSERT INTO t(x) VALUES(?)", (1,))
    """

    max_open_conns = 1

    def __init__(self, path: str, conn: aiosqlite.Connection) -> None:
        self.path = path
        self.conn: Optional[aiosqlite.Connection] = conn
        self._lock = asyncio.Lock()

    async def __aenter__(self) -> "AsyncSqliteDB":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self.conn is not None:
            await self.close()

    def __repr__(self) -> str:
        state = "closed" if self.conn is None else "open"
        return f"<AsyncSqliteDB path={self.path!r} {state}>"

    @property
    def closed(self) -> bool:
        return self.conn is None

    @require_open
    async def journal_mode(self) -> str:
        return str(await self.query_scalar("PRAGMA journal_mode")).lower()

    @require_open
    async def execute(self, sql: str, params: Params = None) -> aiosqlite.Cursor:
        """
        Execute a statement with positional or named parameters and commit.

        Example:
            cur = await db.execute("INSERT INTO t(x) VALUES(?)", (1,))
            print(cur.lastrowid)
        """
        ps = params if params is not None else ()
        logger.debug("Executing SQL: %s; params: %s", sql, ps)
        async with self._lock:
            conn = self._conn_or_raise()
            cur = await conn.execute(sql, ps)
            await conn.commit()
        return cur

    @require_open
    async def execute_many(self, sql: str, seq_params: Iterable[Sequence[Any]]) -> aiosqlite.Cursor:
        logger.debug("Executing many SQL: %s; params: %s", sql, seq_params)
        async with self._lock:
            conn = self._conn_or_raise()
            cur = await conn.executemany(sql, seq_params)
            await conn.commit()
        return cur

    @require_open
    async def executescript(self, script: str) -> None:
        logger.debug("Executing SQL script: %s", script)
        async with self._lock:
            conn = self._conn_or_raise()
            await conn.executescript(script)
            await conn.commit()

    @require_open
    async def query_many(self, sql: str, params: Params = None) -> List[sqlite3.Row]:
        ps = params if params is not None else ()
        logger.debug("Executing SQL: %s; params: %s", sql, ps)
        async with self._lock:
            conn = self._conn_or_raise()
            cur = await conn.execute(sql, ps)
            rows = await cur.fetchall()
            await cur.close()
        return list(rows)

    @require_open
    async def query_one(self, sql: str, params: Params = None) -> Optional[sqlite3.Row]:
        ps = params if params is not None else ()
        logger.debug("Executing SQL: %s; params: %s", sql, ps)
        async with self._lock:
            conn = self._conn_or_raise()
            cur = await conn.execute(sql, ps)
            row = await cur.fetchone()
            await cur.close()
        return row

    @require_open
    async def query_scalar(self, sql: str, params: Params = None) -> Any:
        row = await self.query_one(sql, params)
        return None if row is None else row[0]

    @require_open
    async def query_column(self, sql: str, params: Params = None) -> List[Any]:
        return [row[0] for row in await self.query_many(sql, params)]

    def _conn_or_raise(self) -> aiosqlite.Connection:
        if self.conn is None:
            raise RuntimeError("database handle is closed")
        return self.conn

    async def close(self) -> None:
        async with self._lock:
            if self.conn is None:
                return
            await self.conn.close()
            self.conn = None


def open_sqlite(path: PathType) -> SqliteDB:
    """
    Open a SQLite database with settings that avoid writer deadlocks.

    Missing parent directories are created (unless ``path`` is
    ``":memory:"``), the handle is capped to one connection and the journal
    is switched to WAL so readers are not blocked by the single writer. No
    migrations are run.

    Raises:
        SqliteOpenError: if the file cannot be opened or configured.
    """
    path = os.fspath(path)
    _ensure_parent_dir(path)

    try:
        conn = sqlite3.connect(path, check_same_thread=False)
    except (sqlite3.Error, OSError) as exc:
        raise SqliteOpenError(exc) from exc
    conn.row_factory = sqlite3.Row

    db = SqliteDB(path, conn)
    try:
        db.execute("PRAGMA journal_mode=WAL")
    except sqlite3.Error as exc:
        db.close()
        raise SqliteOpenError(exc) from exc
    return db


async def open_sqlite_async(path: PathType) -> AsyncSqliteDB:
    """
    Async variant of :func:`open_sqlite` returning an :class:`AsyncSqliteDB`.

    Raises:
        SqliteOpenError: if the file cannot be opened or configured.
    """
    path = os.fspath(path)
    _ensure_parent_dir(path)

    try:
        conn = await aiosqlite.connect(path)
    except (sqlite3.Error, OSError) as exc:
        raise SqliteOpenError(exc) from exc
    conn.row_factory = sqlite3.Row

    db = AsyncSqliteDB(path, conn)
    try:
        await db.execute("PRAGMA journal_mode=WAL")
    except sqlite3.Error as exc:
        await db.close()
        raise SqliteOpenError(exc) from exc
    return db
