"""Entity CRUD adapter over a lazily evolving relational schema.

Every call follows the same path: validate identifiers, ensure the table and the
written columns exist, translate the request into parameterized SQL, marshal values,
execute, and decode the returned rows. Validation always happens before any I/O.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Mapping, Optional, Sequence

from common.sanitization.text import REDACTED, is_sensitive_key, redact_sensitive_info
from dal.capabilities import EngineCapabilities, capabilities_for_provider
from dal.config import AdapterConfig
from dal.debug import DebugInput, DebugLogOptions, debug_log
from dal.engine import Engine
from dal.errors import (
    AdapterNotInitializedError,
    CreateFailedError,
    RetrieveAfterCreateFailedError,
)
from dal.executor import HealthStatus, StatementExecutor
from dal.identifiers import ModelAllowList, ValidatedModel, validate_field, validate_model
from dal.marshalling import HeuristicTypeDecoder, TypeDecoder, ValueMarshaller
from dal.query_builder import (
    SortInput,
    SqlStatement,
    WhereInput,
    build_count,
    build_delete,
    build_insert,
    build_inserted_row_lookup,
    build_select,
    build_update,
    conditions_for_refetch,
    normalize_sort,
    normalize_where,
)
from dal.schema_ddl import GeneratedSchema, TablesInput, generate_schema
from dal.schema_registry import SchemaRegistry
from dal.sqlite import SqliteEngine

logger = logging.getLogger(__name__)

Record = Dict[str, Any]


class EntityStoreAdapter:
    """Uniform entity CRUD contract backed by a relational engine.

    The adapter owns its schema registry, statement cache and marshaller, so separate
    instances never share cached state. It connects on first use; use it as an async
    context manager (or call :meth:`close`) to release the engine.
    """

    def __init__(
        self,
        config: Optional[AdapterConfig] = None,
        *,
        engine: Optional[Engine] = None,
        capabilities: Optional[EngineCapabilities] = None,
        allow_list: Optional[ModelAllowList] = None,
        type_decoder: Optional[TypeDecoder] = None,
        baseline_columns: Optional[Mapping[str, str]] = None,
    ) -> None:
        """Configure the adapter; no connection is opened here.

        Args:
            config: Settings; defaults to an in-memory SQLite database.
            engine: An already-open engine. The adapter will not close it.
            capabilities: Overrides the flags derived from the provider name.
            allow_list: Models that may be used; defaults to the auth-domain set.
            type_decoder: Read-side decoder; defaults to the heuristic decoder.
            baseline_columns: Column declarations for newly created tables.
        """
        self.config = config or AdapterConfig()
        self._engine = engine
        self._owns_engine = engine is None
        provider = getattr(engine, "provider", None) or self.config.provider
        self.capabilities = capabilities or capabilities_for_provider(provider)
        self.allow_list = allow_list if allow_list is not None else ModelAllowList()
        self.marshaller = ValueMarshaller(
            decoder=type_decoder
            or HeuristicTypeDecoder(max_cache_entries=self.config.max_deserialize_cache)
        )
        self._baseline_columns = baseline_columns
        self._executor: Optional[StatementExecutor] = None
        self._registry: Optional[SchemaRegistry] = None
        self._connect_lock = asyncio.Lock()
        self._closed = False

    @classmethod
    @asynccontextmanager
    async def open(
        cls, config: Optional[AdapterConfig] = None, **kwargs: Any
    ) -> AsyncIterator["EntityStoreAdapter"]:
        """Yield a connected adapter and close it on exit."""
        adapter = cls(config, **kwargs)
        try:
            await adapter.connect()
            yield adapter
        finally:
            await adapter.close()

    async def __aenter__(self) -> "EntityStoreAdapter":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    @property
    def id(self) -> str:
        """Provider name identifying this adapter."""
        return self.capabilities.provider_name

    @property
    def options(self) -> Dict[str, Any]:
        """Settings reported to the host framework."""
        return {
            "provider": self.id,
            "use_plural": self.config.use_plural,
            "use_numeric_ids": self.config.use_numeric_ids,
        }

    @property
    def executor(self) -> StatementExecutor:
        """Return the statement executor; requires a connection."""
        if self._executor is None:
            raise AdapterNotInitializedError("Adapter is not connected; call connect() first")
        return self._executor

    @property
    def registry(self) -> SchemaRegistry:
        """Return the schema registry; requires a connection."""
        if self._registry is None:
            raise AdapterNotInitializedError("Adapter is not connected; call connect() first")
        return self._registry

    async def connect(self) -> None:
        """Open the engine and build the executor and registry (idempotent).

        Raises:
            AdapterNotInitializedError: the adapter was already closed.
            ValueError: no engine was given and the provider has no built-in engine.
        """
        if self._closed:
            raise AdapterNotInitializedError("Adapter has been closed")
        if self._executor is not None:
            return
        async with self._connect_lock:
            if self._executor is not None:
                return
            if self._engine is None:
                if self.config.provider not in ("sqlite", "sqlite3"):
                    raise ValueError(
                        f"No built-in engine for provider {self.config.provider!r}; "
                        "pass engine= explicitly"
                    )
                self._engine = await SqliteEngine.connect(self.config.database_path)
            executor = StatementExecutor(
                self._engine,
                max_prepared_statements=self.config.max_prepared_statements,
                debug=self.config.debug_logs,
            )
            self._registry = SchemaRegistry(
                executor,
                allow_list=self.allow_list,
                baseline_columns=self._baseline_columns,
                max_tables=self.config.max_table_cache,
                max_columns=self.config.max_column_cache,
                use_numeric_ids=self.config.use_numeric_ids,
                debug=self.config.debug_logs,
            )
            self._executor = executor
            logger.info("dal_adapter_connected provider=%s path=%s", self.id, self.config.database_path)

    async def close(self) -> None:
        """Release the engine if this adapter opened it (idempotent)."""
        if self._closed:
            return
        self._closed = True
        if self._engine is not None and self._owns_engine:
            await self._engine.close()
        self._executor = None
        self._registry = None

    def register_model(self, name: str, plural: Optional[str] = None) -> None:
        """Allow an additional model name (and its plural) on this adapter."""
        self.allow_list.register(name, plural)

    def _options(self, debug: DebugInput) -> DebugLogOptions:
        return self.config.debug_logs if debug is None else DebugLogOptions.parse(debug)

    def _resolve_model(self, model: str) -> ValidatedModel:
        if self.config.use_plural and isinstance(model, str):
            model = self.allow_list.plural_of(model)
        return validate_model(model, self.allow_list)

    def _marshal(self, value: Any) -> Any:
        return self.marshaller.to_storage(value)

    def _to_record(
        self, row: Mapping[str, Any], model: str, select: Optional[Sequence[str]] = None
    ) -> Record:
        record = self.marshaller.deserialize_row(row, model) or {}
        if select:
            return {name: record[name] for name in select if name in record}
        return record

    async def _prepare_write(
        self,
        model: str,
        fields: Sequence[str],
        options: DebugLogOptions,
        *,
        strict: bool = False,
    ) -> None:
        await self.connect()
        await self.registry.ensure_table(model, strict=strict, debug=options)
        for name in fields:
            await self.registry.ensure_column(model, name, debug=options)

    async def _prepare_read(
        self, model: str, options: DebugLogOptions, fields: Sequence[str] = ()
    ) -> None:
        # Filter and sort columns must exist so they compare as NULL instead of
        # being read by SQLite as string literals.
        await self._prepare_write(model, fields, options)

    @staticmethod
    def _query_fields(where: WhereInput, sort_by: SortInput = None) -> List[str]:
        names = [condition.field for condition in normalize_where(where)]
        names.extend(spec.field for spec in normalize_sort(sort_by))
        return list(dict.fromkeys(names))

    @staticmethod
    def _where_payload(where: WhereInput) -> List[Dict[str, Any]]:
        """Render conditions for debug output, redacting values by their field."""
        return [
            {
                "field": condition.field,
                "operator": condition.operator.value,
                "value": REDACTED if is_sensitive_key(condition.field) else condition.value,
            }
            for condition in normalize_where(where)
        ]

    async def _run(self, statement: SqlStatement, options: DebugLogOptions):
        return await self.executor.execute_statement(statement, debug=options)

    async def create(
        self,
        model: str,
        data: Mapping[str, Any],
        *,
        select: Optional[Sequence[str]] = None,
        debug: DebugInput = None,
    ) -> Record:
        """Insert ``data`` and return the stored record.

        Raises:
            InvalidIdentifierError: the model or a field name is rejected.
            CreateFailedError: the insert affected no rows.
            RetrieveAfterCreateFailedError: the inserted row could not be read back.
        """
        options = self._options(debug)
        table = self._resolve_model(model)
        record = {validate_field(name): value for name, value in data.items()}
        statement = build_insert(
            table, record, returning=self.capabilities.supports_returning, marshal=self._marshal
        )
        debug_log(logger, options, "create", "dal_create", {"model": table, "data": record})

        await self._prepare_write(table, list(record), options, strict=True)
        result = await self._run(statement, options)
        if result.rows_affected == 0 and not result.rows:
            raise CreateFailedError(f"Failed to create record in {table}: no rows affected")

        if result.rows:
            row = result.rows[0]
        else:
            lookup, strategy = build_inserted_row_lookup(
                table, record, result.last_insert_id, marshal=self._marshal
            )
            if strategy in ("field_match", "latest"):
                logger.warning(
                    "dal_create_heuristic_lookup model=%s strategy=%s", table, strategy
                )
            found = await self._run(lookup, options)
            if not found.rows:
                raise RetrieveAfterCreateFailedError(
                    f"Failed to retrieve created record from {table}"
                )
            row = found.rows[0]

        created = self._to_record(row, table, select)
        debug_log(logger, options, "create", "dal_create_ok", {"model": table, "record": created})
        return created

    async def update(
        self,
        model: str,
        where: WhereInput,
        update: Mapping[str, Any],
        *,
        select: Optional[Sequence[str]] = None,
        debug: DebugInput = None,
    ) -> Optional[Record]:
        """Apply ``update`` to the rows matching ``where`` and return the first one.

        Returns None when nothing matched.

        Raises:
            EmptyWhereClauseError: ``where`` has no conditions.
        """
        options = self._options(debug)
        table = self._resolve_model(model)
        returning = self.capabilities.supports_returning
        statement = build_update(
            table, where, update, returning=returning, marshal=self._marshal
        )
        debug_log(
            logger,
            options,
            "update",
            "dal_update",
            {"model": table, "where": self._where_payload(where), "update": update},
        )

        await self._prepare_write(table, self._query_fields(where) + list(update), options)
        result = await self._run(statement, options)
        if result.rows:
            return self._to_record(result.rows[0], table, select)
        if result.rows_affected == 0:
            return None

        # Without RETURNING, re-read using the post-update values of patched fields.
        refetch = build_select(
            table,
            conditions_for_refetch(where, update),
            limit=1,
            bound_limit=self.capabilities.supports_bound_limit,
            marshal=self._marshal,
        )
        found = await self._run(refetch, options)
        if not found.rows:
            return None
        return self._to_record(found.rows[0], table, select)

    async def update_many(
        self,
        model: str,
        where: WhereInput,
        update: Mapping[str, Any],
        *,
        debug: DebugInput = None,
    ) -> int:
        """Apply ``update`` to every matching row and return the affected count.

        Raises:
            EmptyWhereClauseError: ``where`` has no conditions.
        """
        options = self._options(debug)
        table = self._resolve_model(model)
        statement = build_update(
            table, where, update, marshal=self._marshal, operation="update_many"
        )
        await self._prepare_write(table, self._query_fields(where) + list(update), options)
        result = await self._run(statement, options)
        debug_log(
            logger,
            options,
            "update_many",
            "dal_update_many",
            {"model": table, "rows_affected": result.rows_affected},
        )
        return result.rows_affected

    async def delete(self, model: str, where: WhereInput, *, debug: DebugInput = None) -> None:
        """Delete the rows matching ``where``.

        Raises:
            EmptyWhereClauseError: ``where`` has no conditions.
        """
        options = self._options(debug)
        table = self._resolve_model(model)
        statement = build_delete(table, where, marshal=self._marshal)
        await self._prepare_read(table, options, self._query_fields(where))
        result = await self._run(statement, options)
        debug_log(
            logger, options, "delete", "dal_delete", {"model": table, "rows_affected": result.rows_affected}
        )

    async def delete_many(self, model: str, where: WhereInput, *, debug: DebugInput = None) -> int:
        """Delete the rows matching ``where`` and return how many were removed.

        Raises:
            EmptyWhereClauseError: ``where`` has no conditions.
        """
        options = self._options(debug)
        table = self._resolve_model(model)
        statement = build_delete(table, where, marshal=self._marshal, operation="delete_many")
        await self._prepare_read(table, options, self._query_fields(where))
        result = await self._run(statement, options)
        debug_log(
            logger,
            options,
            "delete_many",
            "dal_delete_many",
            {"model": table, "rows_affected": result.rows_affected},
        )
        return result.rows_affected

    async def find_one(
        self,
        model: str,
        where: WhereInput,
        *,
        select: Optional[Sequence[str]] = None,
        debug: DebugInput = None,
    ) -> Optional[Record]:
        """Return the first record matching ``where``, or None."""
        options = self._options(debug)
        table = self._resolve_model(model)
        statement = build_select(
            table,
            where,
            limit=1,
            bound_limit=self.capabilities.supports_bound_limit,
            marshal=self._marshal,
        )
        await self._prepare_read(table, options, self._query_fields(where))
        result = await self._run(statement, options)
        debug_log(
            logger, options, "find_one", "dal_find_one", {"model": table, "found": bool(result.rows)}
        )
        if not result.rows:
            return None
        return self._to_record(result.rows[0], table, select)

    async def find_many(
        self,
        model: str,
        where: WhereInput = None,
        *,
        sort_by: SortInput = None,
        limit: Optional[int] = None,
        offset: Optional[int] = None,
        select: Optional[Sequence[str]] = None,
        debug: DebugInput = None,
    ) -> List[Record]:
        """Return records matching ``where`` in ``sort_by`` order, paginated.

        Rows that tie on every sort term come back in insertion order.

        Raises:
            InvalidQueryError: bad operator, sort direction, limit or offset.
        """
        options = self._options(debug)
        table = self._resolve_model(model)
        statement = build_select(
            table,
            where,
            sort_by,
            limit,
            offset,
            bound_limit=self.capabilities.supports_bound_limit,
            rowid_tiebreak=self.capabilities.supports_rowid,
            marshal=self._marshal,
        )
        await self._prepare_read(table, options, self._query_fields(where, sort_by))
        result = await self._run(statement, options)
        debug_log(
            logger, options, "find_many", "dal_find_many", {"model": table, "rows": len(result.rows)}
        )
        return [self._to_record(row, table, select) for row in result.rows]

    async def count(self, model: str, where: WhereInput = None, *, debug: DebugInput = None) -> int:
        """Return the number of rows matching ``where``."""
        options = self._options(debug)
        table = self._resolve_model(model)
        statement = build_count(table, where, marshal=self._marshal)
        await self._prepare_read(table, options, self._query_fields(where))
        result = await self._run(statement, options)
        total = int(result.rows[0]["count"]) if result.rows else 0
        debug_log(logger, options, "count", "dal_count", {"model": table, "count": total})
        return total

    def generate_schema(
        self,
        tables: TablesInput,
        *,
        file_name: str = "schema.sql",
        use_numeric_ids: Optional[bool] = None,
    ) -> GeneratedSchema:
        """Render DDL for ``tables``; persisting it is up to the caller."""
        if use_numeric_ids is None:
            use_numeric_ids = self.config.use_numeric_ids
        return generate_schema(tables, use_numeric_ids=use_numeric_ids, file_name=file_name)

    async def check_health(self) -> HealthStatus:
        """Report whether the engine answers a trivial query; never raises."""
        try:
            await self.connect()
        except Exception as exc:
            error = redact_sensitive_info(str(exc))
            logger.warning("dal_health_connect_failed provider=%s error=%s", self.id, error)
            return HealthStatus(healthy=False, error=error)
        return await self.executor.check_health()

    def get_cache_stats(self) -> Dict[str, Any]:
        """Return schema and statement cache statistics."""
        return {
            "schema": self.registry.get_cache_stats(),
            "statements": self.executor.get_cache_stats(),
        }

    def clear_caches(self) -> None:
        """Drop every cache this adapter owns."""
        if self._registry is not None:
            self._registry.clear()
        if self._executor is not None:
            self._executor.clear_statement_cache()
        self.marshaller.clear_caches()
