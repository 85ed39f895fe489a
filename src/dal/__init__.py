"""Data access layer: an entity CRUD adapter over a lazily evolving SQLite schema."""

from dal.adapter import EntityStoreAdapter
from dal.capabilities import EngineCapabilities, capabilities_for_provider
from dal.config import AdapterConfig
from dal.debug import DebugLogOptions
from dal.errors import (
    AdapterError,
    AdapterNotInitializedError,
    CreateFailedError,
    EmptyWhereClauseError,
    InvalidIdentifierError,
    InvalidQueryError,
    RetrieveAfterCreateFailedError,
)
from dal.executor import BatchMode, StatementExecutor
from dal.identifiers import ModelAllowList, quote_identifier, validate_field, validate_model
from dal.marshalling import HeuristicTypeDecoder, SchemaTypeDecoder, ValueMarshaller
from dal.query_builder import Operator, SortSpec, WhereCondition
from dal.schema_ddl import FieldReference, FieldSpec, GeneratedSchema, generate_schema
from dal.schema_registry import EnsureOutcome, SchemaRegistry

__all__ = [
    "AdapterConfig",
    "AdapterError",
    "AdapterNotInitializedError",
    "BatchMode",
    "CreateFailedError",
    "DebugLogOptions",
    "EmptyWhereClauseError",
    "EngineCapabilities",
    "EnsureOutcome",
    "EntityStoreAdapter",
    "FieldReference",
    "FieldSpec",
    "GeneratedSchema",
    "HeuristicTypeDecoder",
    "InvalidIdentifierError",
    "InvalidQueryError",
    "ModelAllowList",
    "Operator",
    "RetrieveAfterCreateFailedError",
    "SchemaRegistry",
    "SchemaTypeDecoder",
    "SortSpec",
    "StatementExecutor",
    "ValueMarshaller",
    "WhereCondition",
    "capabilities_for_provider",
    "generate_schema",
    "quote_identifier",
    "validate_field",
    "validate_model",
]
