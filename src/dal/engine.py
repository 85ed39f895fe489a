from contextlib import AbstractAsyncContextManager
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence, runtime_checkable


@dataclass
class RunInfo:
    """Outcome of running a statement through the apply path."""

    changes: int = 0
    last_insert_rowid: Optional[int] = None
    rows: List[Dict[str, Any]] = field(default_factory=list)


@runtime_checkable
class PreparedStatement(Protocol):
    """A statement handle reusable across executions with different arguments."""

    sql: str

    async def fetch_all(self, args: Sequence[Any]) -> List[Dict[str, Any]]:
        """Execute and return every row as a dict."""
        ...

    async def run(self, args: Sequence[Any]) -> RunInfo:
        """Execute and report affected rows, last rowid, and any RETURNING rows."""
        ...


@runtime_checkable
class Engine(Protocol):
    """Minimal async relational engine used by the executor."""

    provider: str

    async def prepare(self, sql: str) -> PreparedStatement:
        """Parse ``sql`` into a reusable statement handle."""
        ...

    def transaction(self) -> AbstractAsyncContextManager:
        """Commit on normal exit, roll back when the block raises."""
        ...

    async def close(self) -> None:
        """Release engine resources."""
        ...
