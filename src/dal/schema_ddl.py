"""DDL text generation from a table/field description."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple, Union

from dal.identifiers import (
    ModelAllowList,
    check_identifier_shape,
    quote_identifier,
    validate_field,
    validate_model,
)

DEFAULT_SCHEMA_FILE = "schema.sql"

# Declared field type -> (SQL column type, logical type used by SchemaTypeDecoder).
FIELD_TYPE_MAP: Dict[str, Tuple[str, str]] = {
    "string": ("TEXT", "string"),
    "text": ("TEXT", "string"),
    "number": ("INTEGER", "number"),
    "int": ("INTEGER", "number"),
    "integer": ("INTEGER", "number"),
    "boolean": ("BOOLEAN", "boolean"),
    "bool": ("BOOLEAN", "boolean"),
    "date": ("DATETIME", "date"),
    "datetime": ("DATETIME", "date"),
    "timestamp": ("DATETIME", "date"),
    "json": ("TEXT", "json"),
    "object": ("TEXT", "json"),
}

_ON_DELETE_ACTIONS = frozenset({"CASCADE", "SET NULL", "SET DEFAULT", "RESTRICT", "NO ACTION"})


@dataclass(frozen=True)
class FieldReference:
    """Explicit foreign-key target for a field."""

    model: str
    field: str = "id"
    on_delete: Optional[str] = None


@dataclass(frozen=True)
class FieldSpec:
    """Declared shape of one field."""

    type: str = "string"
    required: bool = False
    unique: bool = False
    default_value: Any = None
    references: Optional[FieldReference] = None

    @property
    def sql_type(self) -> str:
        """Return the column type; unknown declared types degrade to TEXT."""
        return FIELD_TYPE_MAP.get(str(self.type).lower(), ("TEXT", "string"))[0]

    @property
    def logical_type(self) -> str:
        """Return the decoder type: string, number, boolean, date or json."""
        return FIELD_TYPE_MAP.get(str(self.type).lower(), ("TEXT", "string"))[1]

    @classmethod
    def coerce(cls, value: Union["FieldSpec", Mapping[str, Any], str]) -> "FieldSpec":
        """Accept a FieldSpec, a bare type name, or a mapping in either key style."""
        if isinstance(value, FieldSpec):
            return value
        if isinstance(value, str):
            return cls(type=value)
        if not isinstance(value, Mapping):
            raise ValueError(f"Invalid field description: {value!r}")

        references = value.get("references")
        if references is not None and not isinstance(references, FieldReference):
            references = FieldReference(
                model=references["model"],
                field=references.get("field", "id"),
                on_delete=references.get("on_delete", references.get("onDelete")),
            )
        default = value.get("default_value", value.get("defaultValue"))
        return cls(
            type=value.get("type", "string"),
            required=bool(value.get("required", False)),
            unique=bool(value.get("unique", False)),
            default_value=default,
            references=references,
        )


@dataclass(frozen=True)
class GeneratedSchema:
    """DDL text and the suggested file name; writing it is the caller's job."""

    sql_text: str
    target_path: str


TablesInput = Mapping[str, Mapping[str, Any]]


def _table_fields(table: Mapping[str, Any]) -> Mapping[str, Any]:
    fields = table.get("fields") if isinstance(table.get("fields"), Mapping) else None
    return fields if fields is not None else table


def iter_table_fields(tables: TablesInput) -> Iterator[Tuple[str, str, FieldSpec]]:
    """Yield ``(model, field, spec)`` for every declared field.

    Tables may map fields directly or nest them under a ``fields`` key.
    """
    for model, table in tables.items():
        for field, raw in _table_fields(table or {}).items():
            yield model, field, FieldSpec.coerce(raw)


def format_default(value: Any) -> str:
    """Render a DEFAULT literal; strings are single-quoted with quotes doubled."""
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, float) and not math.isfinite(value):
        raise ValueError(f"Default value must be a finite number, got {value!r}")
    if isinstance(value, (int, float)):
        return repr(value)
    if isinstance(value, str):
        escaped = value.replace("'", "''")
        return f"'{escaped}'"
    raise ValueError(f"Unsupported default value: {value!r}")


def _column_definition(field: str, spec: FieldSpec) -> str:
    parts = [quote_identifier(field), spec.sql_type]
    if spec.required:
        parts.append("NOT NULL")
    if spec.unique:
        parts.append("UNIQUE")
    if spec.default_value is not None:
        parts.append(f"DEFAULT {format_default(spec.default_value)}")
    return " ".join(parts)


def _foreign_key(field: str, reference: FieldReference) -> str:
    target_model = check_identifier_shape(reference.model, "model")
    target_field = validate_field(reference.field)
    clause = (
        f"FOREIGN KEY ({quote_identifier(field)}) "
        f"REFERENCES {quote_identifier(target_model)}({quote_identifier(target_field)})"
    )
    if reference.on_delete:
        action = reference.on_delete.strip().upper()
        if action not in _ON_DELETE_ACTIONS:
            raise ValueError(f"Invalid ON DELETE action: {reference.on_delete!r}")
        clause += f" ON DELETE {action}"
    return clause


def generate_schema(
    tables: TablesInput,
    *,
    use_numeric_ids: bool = False,
    file_name: str = DEFAULT_SCHEMA_FILE,
    allow_list: Optional[ModelAllowList] = None,
    generated_at: Optional[datetime] = None,
) -> GeneratedSchema:
    """Render ``CREATE TABLE IF NOT EXISTS`` statements for ``tables``.

    Every table gets an ``id`` primary key (``TEXT``, or ``INTEGER AUTOINCREMENT``
    plus an ``internalId`` column with numeric ids); a declared ``id`` field is
    ignored. Table names are checked against ``allow_list`` when one is given,
    otherwise only their shape is checked. Foreign keys are emitted only for
    fields that declare ``references``.

    Raises:
        InvalidIdentifierError: a table or field name is rejected.
        ValueError: a default value or ON DELETE action cannot be rendered.
    """
    timestamp = (generated_at or datetime.now(timezone.utc)).isoformat()
    id_column = "INTEGER PRIMARY KEY AUTOINCREMENT" if use_numeric_ids else "TEXT PRIMARY KEY"

    lines: List[str] = [
        "-- Entity store schema (SQLite)",
        f"-- Generated on: {timestamp}",
        "",
    ]
    for model, table in tables.items():
        if allow_list is not None:
            table_name = validate_model(model, allow_list)
        else:
            table_name = check_identifier_shape(model, "model")

        definitions = [f"{quote_identifier('id')} {id_column}"]
        if use_numeric_ids:
            definitions.append(f"{quote_identifier('internalId')} INTEGER")
        foreign_keys: List[str] = []
        for field, raw in _table_fields(table or {}).items():
            if field == "id":
                continue
            validate_field(field)
            spec = FieldSpec.coerce(raw)
            definitions.append(_column_definition(field, spec))
            if spec.references is not None:
                foreign_keys.append(_foreign_key(field, spec.references))

        body = ",\n".join(f"  {item}" for item in definitions + foreign_keys)
        lines.append(f"-- Table: {table_name}")
        lines.append(f"CREATE TABLE IF NOT EXISTS {quote_identifier(table_name)} (\n{body}\n);")
        lines.append("")

    return GeneratedSchema(sql_text="\n".join(lines), target_path=file_name)
