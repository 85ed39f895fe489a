"""Statement execution with a prepared-statement cache and batch transactions."""

from __future__ import annotations

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

import sqlglot

from common.observability.metrics import dal_metrics
from common.sanitization.text import redact_bound_args, redact_sensitive_info
from dal.bounded_cache import BoundedCache
from dal.debug import DebugInput, DebugLogOptions, debug_log
from dal.engine import Engine, PreparedStatement
from dal.error_classification import emit_classified_error
from dal.query_builder import SqlStatement
from dal.tracing import trace_query_operation

logger = logging.getLogger(__name__)

# Statements whose first keyword is one of these go through the fetch path.
READ_KEYWORDS = frozenset({"SELECT", "PRAGMA", "WITH", "VALUES", "EXPLAIN"})

_SQL_COMMENT_RE = re.compile(r"(--[^\n]*|/\*.*?\*/)", flags=re.DOTALL)


def leading_keyword(sql: str) -> str:
    """Return the first keyword of ``sql`` in upper case, ignoring comments."""
    try:
        tokens = sqlglot.tokenize(sql, read="sqlite")
    except Exception:
        tokens = None
    if tokens:
        return tokens[0].text.upper()

    # Fallback lexical scan for tokenizer failures.
    stripped = _SQL_COMMENT_RE.sub(" ", sql).lstrip()
    if not stripped:
        return ""
    return stripped.split(maxsplit=1)[0].upper()


def is_read_statement(sql: str) -> bool:
    """Return True for statements that only produce rows."""
    return leading_keyword(sql) in READ_KEYWORDS


class BatchMode(str, Enum):
    """How a multi-statement batch treats individual failures."""

    BEST_EFFORT = "best_effort"
    ATOMIC = "atomic"


@dataclass
class ExecutionResult:
    """Rows and counters produced by one statement."""

    rows: List[Dict[str, Any]] = field(default_factory=list)
    rows_affected: int = 0
    last_insert_id: Optional[int] = None
    cached: bool = False
    batch_index: Optional[int] = None


@dataclass
class BatchItemResult:
    """Per-operation outcome inside a batch: exactly one of result/error is set."""

    index: int
    result: Optional[ExecutionResult] = None
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        """Return True when the operation succeeded."""
        return self.error is None


@dataclass(frozen=True)
class HealthStatus:
    """Liveness probe result."""

    healthy: bool
    error: Optional[str] = None


@dataclass
class ExecutorStats:
    """Running counters for statements issued through one executor."""

    total_queries: int = 0
    failed_queries: int = 0
    statement_cache_hits: int = 0
    statement_cache_misses: int = 0
    batch_operations: int = 0
    total_query_time_ms: float = 0.0


@dataclass
class _CachedStatement:
    handle: PreparedStatement
    is_read: bool


def coerce_batch_operation(operation: Any) -> SqlStatement:
    """Accept a SqlStatement, a ``{"sql", "args"}`` mapping, or an ``(sql, args)`` pair."""
    if isinstance(operation, SqlStatement):
        statement = operation
    elif isinstance(operation, Mapping):
        statement = SqlStatement(
            operation.get("sql"),
            list(operation.get("args") or []),
            list(operation.get("arg_fields") or []),
        )
    elif isinstance(operation, (tuple, list)) and len(operation) == 2:
        statement = SqlStatement(operation[0], list(operation[1] or []))
    else:
        raise ValueError(f"Invalid batch operation: {operation!r}")
    _validate_statement_input(statement.sql, statement.args)
    return statement


def _validate_statement_input(sql: Any, args: Any) -> None:
    if not isinstance(sql, str) or not sql.strip():
        raise ValueError("Invalid SQL query: must be a non-empty string")
    if not isinstance(args, (list, tuple)):
        raise TypeError("Invalid arguments: must be a list")


class StatementExecutor:
    """Runs SQL against an :class:`Engine`, reusing prepared statements.

    The engine connection is shared, so statements and batch transactions are
    serialized with an asyncio lock; a batch never interleaves with another task's
    statements.
    """

    def __init__(
        self,
        engine: Engine,
        max_prepared_statements: int = 100,
        debug: DebugInput = None,
    ) -> None:
        """Initialize with an engine and the statement-cache capacity."""
        self._engine = engine
        self._statements: BoundedCache[str, _CachedStatement] = BoundedCache(
            max_prepared_statements, name="statement_cache"
        )
        self._debug = DebugLogOptions.parse(debug)
        self._lock = asyncio.Lock()
        self._stats = ExecutorStats()

    @property
    def provider(self) -> str:
        """Return the engine's provider name."""
        return getattr(self._engine, "provider", "unknown")

    def _options(self, debug: DebugInput) -> DebugLogOptions:
        return self._debug if debug is None else DebugLogOptions.parse(debug)

    async def _get_statement(self, sql: str, options: DebugLogOptions) -> tuple:
        entry = self._statements.get(sql)
        if entry is not None:
            self._stats.statement_cache_hits += 1
            debug_log(logger, options, "execute", "statement_cache_hit", {"sql": sql[:50]})
            return entry, True

        self._stats.statement_cache_misses += 1
        debug_log(logger, options, "execute", "statement_cache_miss", {"sql": sql[:50]})
        handle = await self._engine.prepare(sql)
        entry = _CachedStatement(handle=handle, is_read=is_read_statement(sql))
        self._statements.set(sql, entry)
        return entry, False

    async def _run(self, sql: str, args: Sequence[Any], options: DebugLogOptions) -> ExecutionResult:
        entry, cached = await self._get_statement(sql, options)
        if entry.is_read:
            rows = await entry.handle.fetch_all(args)
            return ExecutionResult(rows=rows, rows_affected=0, cached=cached)
        info = await entry.handle.run(args)
        return ExecutionResult(
            rows=info.rows,
            rows_affected=int(info.changes or 0),
            last_insert_id=int(info.last_insert_rowid) if info.last_insert_rowid else None,
            cached=cached,
        )

    def _record(self, started: float, status: str) -> None:
        elapsed_ms = (time.perf_counter() - started) * 1000.0
        self._stats.total_query_time_ms += elapsed_ms
        dal_metrics.record_statement(self.provider, status, elapsed_ms)

    async def execute(
        self,
        sql: str,
        args: Optional[Sequence[Any]] = None,
        arg_fields: Optional[Sequence[Optional[str]]] = None,
        *,
        debug: DebugInput = None,
    ) -> ExecutionResult:
        """Execute one statement.

        Read statements return rows; everything else reports the affected row count
        and last insert id, plus any rows a RETURNING clause produced. Engine errors
        are re-raised unchanged.
        """
        if args is None:
            args = []
        _validate_statement_input(sql, args)
        options = self._options(debug)
        debug_log(
            logger,
            options,
            "execute",
            "dal_execute",
            {"sql": sql, "args": redact_bound_args(args, arg_fields)},
        )

        self._stats.total_queries += 1
        started = time.perf_counter()
        try:
            async with self._lock:
                result = await trace_query_operation(
                    "dal.query.execute",
                    provider=self.provider,
                    sql=sql,
                    operation=self._run(sql, args, options),
                )
        except Exception as exc:
            self._stats.failed_queries += 1
            self._record(started, "error")
            if options.enabled("execute"):
                emit_classified_error(self.provider, "execute", exc)
                debug_log(
                    logger,
                    options,
                    "execute",
                    "dal_execute_failed",
                    {"sql": sql, "args": redact_bound_args(args, arg_fields)},
                )
            raise

        self._record(started, "ok")
        debug_log(
            logger,
            options,
            "execute",
            "dal_execute_ok",
            {"rows_affected": result.rows_affected, "rows_returned": len(result.rows)},
        )
        return result

    async def execute_statement(
        self, statement: SqlStatement, *, debug: DebugInput = None
    ) -> ExecutionResult:
        """Execute a translator-built statement."""
        return await self.execute(
            statement.sql, statement.args, statement.arg_fields, debug=debug
        )

    async def execute_batch(
        self,
        operations: Iterable[Any],
        mode: BatchMode = BatchMode.BEST_EFFORT,
        *,
        debug: DebugInput = None,
    ) -> List[BatchItemResult]:
        """Execute several statements inside one transaction.

        A single operation degrades to :meth:`execute` and raises on failure. With
        ``BEST_EFFORT`` each failure is recorded on its item and the transaction
        still commits the statements that succeeded. With ``ATOMIC`` the first
        failure rolls the transaction back and is re-raised.
        """
        statements = [coerce_batch_operation(op) for op in operations]
        if not statements:
            return []
        options = self._options(debug)
        mode = BatchMode(mode)

        if len(statements) == 1:
            only = statements[0]
            result = await self.execute(only.sql, only.args, only.arg_fields, debug=options)
            result.batch_index = 0
            return [BatchItemResult(index=0, result=result)]

        debug_log(
            logger,
            options,
            "execute",
            "dal_batch_start",
            {"operations": len(statements), "mode": mode.value},
        )
        self._stats.batch_operations += 1
        started = time.perf_counter()
        try:
            async with self._lock:
                results = await trace_query_operation(
                    "dal.query.batch",
                    provider=self.provider,
                    sql=None,
                    operation=self._run_batch(statements, mode, options),
                    batch_size=len(statements),
                )
        except Exception as exc:
            self._record(started, "error")
            logger.error(
                "dal_batch_failed provider=%s operations=%s mode=%s error=%s",
                self.provider,
                len(statements),
                mode.value,
                redact_sensitive_info(str(exc)),
            )
            raise

        self._record(started, "ok")
        failures = sum(1 for item in results if not item.ok)
        debug_log(
            logger,
            options,
            "execute",
            "dal_batch_done",
            {"operations": len(results), "failed": failures},
        )
        return results

    async def _run_batch(
        self, statements: List[SqlStatement], mode: BatchMode, options: DebugLogOptions
    ) -> List[BatchItemResult]:
        results: List[BatchItemResult] = []
        async with self._engine.transaction():
            for index, statement in enumerate(statements):
                self._stats.total_queries += 1
                try:
                    result = await self._run(statement.sql, statement.args, options)
                except Exception as exc:
                    self._stats.failed_queries += 1
                    if mode is BatchMode.ATOMIC:
                        raise
                    debug_log(
                        logger,
                        options,
                        "execute",
                        "dal_batch_item_failed",
                        {"index": index, "error": redact_sensitive_info(str(exc))},
                    )
                    results.append(BatchItemResult(index=index, error=exc))
                    continue
                result.batch_index = index
                results.append(BatchItemResult(index=index, result=result))
        return results

    async def check_health(self) -> HealthStatus:
        """Issue a trivial round trip; never raises."""
        try:
            async with self._lock:
                statement = await self._engine.prepare("SELECT 1")
                await statement.fetch_all([])
        except Exception as exc:
            logger.warning("dal_health_check_failed provider=%s error=%s", self.provider, exc)
            return HealthStatus(healthy=False, error=redact_sensitive_info(str(exc)))
        return HealthStatus(healthy=True)

    def clear_statement_cache(self) -> None:
        """Drop every cached prepared statement."""
        self._statements.clear()

    def get_cache_stats(self) -> Dict[str, Any]:
        """Return statement-cache size, capacity and hit rate."""
        lookups = self._stats.statement_cache_hits + self._stats.statement_cache_misses
        return {
            "size": len(self._statements),
            "max_size": self._statements.max_entries,
            "hit_rate": (self._stats.statement_cache_hits / lookups) if lookups else None,
        }

    def get_stats(self) -> ExecutorStats:
        """Return a snapshot of the running counters."""
        return replace(self._stats)

    def cached_statements(self) -> List[str]:
        """Return cached SQL texts, oldest first."""
        return self._statements.keys()
