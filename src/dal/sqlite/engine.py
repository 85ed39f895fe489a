import logging
import sqlite3
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional, Sequence

import aiosqlite

from dal.engine import RunInfo

logger = logging.getLogger(__name__)


class SqlitePreparedStatement:
    """Statement handle over a shared aiosqlite connection.

    The sqlite driver compiles statements on first use and keeps them in its own
    per-connection cache keyed by SQL text, so holding the text and connection is
    enough to reuse the compiled form.
    """

    def __init__(self, conn: aiosqlite.Connection, sql: str) -> None:
        """Bind the handle to a connection."""
        self._conn = conn
        self.sql = sql
        self.executions = 0

    async def fetch_all(self, args: Sequence[Any]) -> List[Dict[str, Any]]:
        """Execute and return every row as a dict."""
        self.executions += 1
        cursor = await self._conn.execute(self.sql, list(args))
        try:
            rows = await cursor.fetchall()
        finally:
            await cursor.close()
        return [dict(row) for row in rows]

    async def run(self, args: Sequence[Any]) -> RunInfo:
        """Execute and report affected rows, last rowid, and RETURNING rows."""
        self.executions += 1
        cursor = await self._conn.execute(self.sql, list(args))
        try:
            rows = [dict(row) for row in await cursor.fetchall()]
            changes = cursor.rowcount if cursor.rowcount and cursor.rowcount > 0 else 0
            if rows and changes < len(rows):
                # rowcount is not reliable for RETURNING statements on older drivers.
                changes = len(rows)
            return RunInfo(changes=changes, last_insert_rowid=cursor.lastrowid, rows=rows)
        finally:
            await cursor.close()


class SqliteEngine:
    """aiosqlite engine holding a single autocommit connection."""

    provider = "sqlite"

    def __init__(self, conn: aiosqlite.Connection, db_path: str) -> None:
        """Wrap an open connection; use :meth:`connect` to create one."""
        self._conn = conn
        self.db_path = db_path
        self._closed = False

    @classmethod
    async def connect(cls, db_path: Optional[str] = None, timeout: float = 5.0) -> "SqliteEngine":
        """Open a connection to ``db_path`` (``:memory:`` when omitted)."""
        path = db_path or ":memory:"
        # Autocommit; transactions are opened explicitly by ``transaction()``.
        conn = await aiosqlite.connect(path, timeout=timeout, isolation_level=None)
        conn.row_factory = sqlite3.Row
        logger.debug("sqlite_engine_connected path=%s", path)
        return cls(conn, path)

    @property
    def closed(self) -> bool:
        """Return True after :meth:`close`."""
        return self._closed

    async def prepare(self, sql: str) -> SqlitePreparedStatement:
        """Return a reusable handle for ``sql``."""
        if self._closed:
            raise sqlite3.ProgrammingError("Cannot operate on a closed database.")
        return SqlitePreparedStatement(self._conn, sql)

    @asynccontextmanager
    async def transaction(self):
        """Run the block inside BEGIN/COMMIT, rolling back if it raises."""
        await self._conn.execute("BEGIN")
        try:
            yield
        except BaseException:
            try:
                await self._conn.execute("ROLLBACK")
            except sqlite3.Error as rollback_exc:
                # Re-raise the block's error, not the rollback's.
                logger.warning("sqlite_rollback_failed path=%s error=%s", self.db_path, rollback_exc)
            raise
        else:
            await self._conn.execute("COMMIT")

    async def close(self) -> None:
        """Close the underlying connection (idempotent)."""
        if self._closed:
            return
        self._closed = True
        await self._conn.close()
        logger.debug("sqlite_engine_closed path=%s", self.db_path)
