"""SQLite-backed engine."""

from .engine import SqliteEngine, SqlitePreparedStatement

__all__ = ["SqliteEngine", "SqlitePreparedStatement"]
