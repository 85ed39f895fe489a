"""Lazy table/column creation with bounded existence caches."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Set, Tuple

from dal.bounded_cache import BoundedCache
from dal.debug import DebugInput, DebugLogOptions, debug_log
from dal.executor import StatementExecutor
from dal.identifiers import ModelAllowList, quote_identifier, validate_field, validate_model

logger = logging.getLogger(__name__)

TABLE_EXISTS_SQL = "SELECT name FROM sqlite_master WHERE type='table' AND name=?"

DEFAULT_BASELINE_COLUMNS: Mapping[str, str] = {"id": "TEXT PRIMARY KEY"}
NUMERIC_ID_BASELINE_COLUMNS: Mapping[str, str] = {"id": "INTEGER PRIMARY KEY AUTOINCREMENT"}


class EnsureOutcome(str, Enum):
    """Result of an idempotent ensure call."""

    CREATED = "created"
    EXISTED = "existed"
    FAILED = "failed"


@dataclass(frozen=True)
class EnsureResult:
    """Outcome of ensure_table/ensure_column; ``cached`` means no round trip was made."""

    outcome: EnsureOutcome
    cached: bool = False
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        """Return True unless the ensure step failed."""
        return self.outcome is not EnsureOutcome.FAILED


def _is_duplicate_column_error(exc: BaseException) -> bool:
    return "duplicate column" in str(exc).lower()


class SchemaRegistry:
    """Tracks which tables and columns exist and creates missing ones.

    Each adapter owns its own registry. Table and column caches are bounded and
    evict oldest-first; evicting a table also drops that table's column entries.
    Failed ensure attempts are still cached so a broken environment is not retried
    on every call.
    """

    def __init__(
        self,
        executor: StatementExecutor,
        allow_list: Optional[ModelAllowList] = None,
        baseline_columns: Optional[Mapping[str, str]] = None,
        max_tables: int = 50,
        max_columns: int = 500,
        use_numeric_ids: bool = False,
        debug: DebugInput = None,
    ) -> None:
        """Initialize with the executor used for catalog queries and DDL."""
        self._executor = executor
        self._allow_list = allow_list
        if baseline_columns is None:
            baseline_columns = (
                NUMERIC_ID_BASELINE_COLUMNS if use_numeric_ids else DEFAULT_BASELINE_COLUMNS
            )
        for column in baseline_columns:
            validate_field(column)
        self._baseline: Dict[str, str] = dict(baseline_columns)
        self._columns: BoundedCache[Tuple[str, str], bool] = BoundedCache(
            max_columns, name="schema_column_cache"
        )
        self._tables: BoundedCache[str, bool] = BoundedCache(
            max_tables, name="schema_table_cache", on_evict=self._drop_table_columns
        )
        self._debug = DebugLogOptions.parse(debug)

    @property
    def baseline_columns(self) -> Dict[str, str]:
        """Return the columns every newly created table starts with."""
        return dict(self._baseline)

    def _options(self, debug: DebugInput) -> DebugLogOptions:
        return self._debug if debug is None else DebugLogOptions.parse(debug)

    def _drop_table_columns(self, model: str, _value: bool) -> None:
        dropped = self._columns.discard_where(lambda key: key[0] == model)
        if dropped:
            logger.debug("schema_columns_evicted model=%s count=%s", model, dropped)

    def create_table_sql(self, model: str) -> str:
        """Return the CREATE TABLE statement used for a new ``model`` table."""
        columns = ", ".join(
            f"{quote_identifier(name)} {declaration}".rstrip()
            for name, declaration in self._baseline.items()
        )
        return f"CREATE TABLE IF NOT EXISTS {quote_identifier(model)} ({columns})"

    async def table_columns(self, model: str) -> List[str]:
        """Return the column names the engine reports for ``model``."""
        result = await self._executor.execute(f"PRAGMA table_info({quote_identifier(model)})")
        return [row["name"] for row in result.rows if row.get("name")]

    async def ensure_table(
        self, model: str, *, strict: bool = False, debug: DebugInput = None
    ) -> EnsureResult:
        """Make sure the ``model`` table exists.

        An existing table seeds the column cache from its introspected columns; a new
        table is created with the baseline columns, which are seeded instead. On
        failure the table is still marked known and a warning is logged; ``strict``
        re-raises the failure.

        Raises:
            InvalidIdentifierError: ``model`` is not an allowed model name.
        """
        name = validate_model(model, self._allow_list)
        if name in self._tables:
            return EnsureResult(EnsureOutcome.EXISTED, cached=True)

        options = self._options(debug)
        try:
            existing = await self._executor.execute(TABLE_EXISTS_SQL, [name])
            if existing.rows:
                columns = await self.table_columns(name)
                outcome = EnsureOutcome.EXISTED
            else:
                await self._executor.execute(self.create_table_sql(name))
                columns = list(self._baseline)
                outcome = EnsureOutcome.CREATED
        except Exception as exc:
            self._tables.add(name)
            logger.warning("schema_table_ensure_failed model=%s error=%s", name, exc)
            if strict:
                raise
            return EnsureResult(EnsureOutcome.FAILED, error=exc)

        for column in columns:
            self._columns.add((name, column))
        self._tables.add(name)
        debug_log(
            logger,
            options,
            "schema",
            "schema_table_ensured",
            {"model": name, "outcome": outcome.value, "columns": columns},
        )
        return EnsureResult(outcome)

    async def ensure_column(
        self, model: str, field: str, *, debug: DebugInput = None
    ) -> EnsureResult:
        """Make sure ``field`` exists on the ``model`` table; never raises engine errors.

        New columns carry no declared type, so stored values keep their own type.
        A concurrent writer adding the same column first counts as EXISTED.

        Raises:
            InvalidIdentifierError: ``model`` or ``field`` is rejected.
        """
        name = validate_model(model, self._allow_list)
        column = validate_field(field)
        key = (name, column)
        if key in self._columns:
            return EnsureResult(EnsureOutcome.EXISTED, cached=True)

        options = self._options(debug)
        try:
            if column in await self.table_columns(name):
                result = EnsureResult(EnsureOutcome.EXISTED)
            else:
                await self._executor.execute(
                    f"ALTER TABLE {quote_identifier(name)} ADD COLUMN {quote_identifier(column)}"
                )
                result = EnsureResult(EnsureOutcome.CREATED)
        except Exception as exc:
            if _is_duplicate_column_error(exc):
                result = EnsureResult(EnsureOutcome.EXISTED)
            else:
                logger.warning(
                    "schema_column_ensure_failed model=%s field=%s error=%s", name, column, exc
                )
                result = EnsureResult(EnsureOutcome.FAILED, error=exc)

        self._columns.add(key)
        debug_log(
            logger,
            options,
            "schema",
            "schema_column_ensured",
            {"model": name, "field": column, "outcome": result.outcome.value},
        )
        return result

    async def ensure_columns(
        self, model: str, fields: Iterable[str], *, debug: DebugInput = None
    ) -> Dict[str, EnsureResult]:
        """Ensure several columns on one table, in order."""
        results: Dict[str, EnsureResult] = {}
        for field in fields:
            results[field] = await self.ensure_column(model, field, debug=debug)
        return results

    def is_table_known(self, model: str) -> bool:
        """Return True when ``model`` is in the table cache."""
        return model in self._tables

    def is_column_known(self, model: str, field: str) -> bool:
        """Return True when ``(model, field)`` is in the column cache."""
        return (model, field) in self._columns

    def known_tables(self) -> List[str]:
        """Return cached table names, oldest first."""
        return self._tables.keys()

    def known_columns(self, model: str) -> Set[str]:
        """Return cached column names for ``model``."""
        return {field for table, field in self._columns.keys() if table == model}

    def get_cache_stats(self) -> Dict[str, int]:
        """Return cache sizes and capacities."""
        return {
            "tables": len(self._tables),
            "columns": len(self._columns),
            "max_tables": self._tables.max_entries,
            "max_columns": self._columns.max_entries,
        }

    def clear(self) -> None:
        """Forget every cached table and column."""
        self._tables.clear()
        self._columns.clear()
