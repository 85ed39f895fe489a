"""Translate structured CRUD requests into parameterized SQL.

Every function here is pure: it validates identifiers, quotes them, and returns SQL
text together with the positional arguments to bind. Values never appear in the SQL
text. ``arg_fields`` runs parallel to ``args`` and names the column each argument
belongs to so diagnostics can redact by field.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Iterator, List, Mapping, Optional, Sequence, Tuple

from dal.errors import EmptyWhereClauseError, InvalidQueryError
from dal.identifiers import (
    SortDirection,
    check_identifier_shape,
    quote_identifier,
    validate_field,
    validate_sort_direction,
)
from dal.marshalling import serialize_value

Marshal = Callable[[Any], Any]

LIKE_ESCAPE_CHAR = "\\"


def _default_marshal(value: Any) -> Any:
    return serialize_value(value).value


class Operator(str, Enum):
    """Where-condition operators with a fixed SQL mapping."""

    EQ = "eq"
    NE = "ne"
    LT = "lt"
    LTE = "lte"
    GT = "gt"
    GTE = "gte"
    IN = "in"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"


OPERATOR_ALIASES = {
    "=": Operator.EQ,
    "==": Operator.EQ,
    "!=": Operator.NE,
    "<>": Operator.NE,
    "<": Operator.LT,
    "<=": Operator.LTE,
    ">": Operator.GT,
    ">=": Operator.GTE,
    "startsWith": Operator.STARTS_WITH,
    "endsWith": Operator.ENDS_WITH,
}

COMPARISON_SQL = {
    Operator.EQ: "=",
    Operator.NE: "!=",
    Operator.LT: "<",
    Operator.LTE: "<=",
    Operator.GT: ">",
    Operator.GTE: ">=",
}


def parse_operator(raw: Any) -> Operator:
    """Resolve an operator name or alias; a missing operator means equality."""
    if raw is None or raw == "":
        return Operator.EQ
    if isinstance(raw, Operator):
        return raw
    if isinstance(raw, str):
        alias = OPERATOR_ALIASES.get(raw)
        if alias is not None:
            return alias
        try:
            return Operator(raw.lower())
        except ValueError:
            pass
    raise InvalidQueryError(f"Unsupported where operator: {raw!r}")


@dataclass(frozen=True)
class WhereCondition:
    """A single ``field operator value`` filter; conditions combine with AND."""

    field: str
    operator: Operator = Operator.EQ
    value: Any = None


@dataclass(frozen=True)
class SortSpec:
    """One ORDER BY term."""

    field: str
    direction: SortDirection = "ASC"


@dataclass
class SqlStatement:
    """SQL text plus the positional arguments bound to its placeholders."""

    sql: str
    args: List[Any] = field(default_factory=list)
    arg_fields: List[Optional[str]] = field(default_factory=list)

    def __iter__(self) -> Iterator[Any]:
        yield self.sql
        yield self.args


WhereInput = Optional[Any]
SortInput = Optional[Any]


def normalize_where(where: WhereInput) -> List[WhereCondition]:
    """Coerce the accepted where shapes into a list of conditions.

    Accepted:
    - ``None`` or empty: no conditions.
    - A mapping ``{field: value}``: equality on each item.
    - A sequence of :class:`WhereCondition`, ``(field, operator, value)`` tuples, or
      mappings with ``field``/``operator``/``value`` keys.
    """
    if not where:
        return []
    if isinstance(where, WhereCondition):
        return [where]
    if isinstance(where, Mapping):
        return [WhereCondition(key, Operator.EQ, value) for key, value in where.items()]

    conditions: List[WhereCondition] = []
    for item in where:
        if isinstance(item, WhereCondition):
            conditions.append(
                WhereCondition(item.field, parse_operator(item.operator), item.value)
            )
        elif isinstance(item, Mapping):
            if "field" not in item:
                raise InvalidQueryError(f"Where condition is missing 'field': {item!r}")
            conditions.append(
                WhereCondition(item["field"], parse_operator(item.get("operator")), item.get("value"))
            )
        elif isinstance(item, (tuple, list)) and len(item) == 3:
            conditions.append(WhereCondition(item[0], parse_operator(item[1]), item[2]))
        else:
            raise InvalidQueryError(f"Unsupported where condition: {item!r}")
    return conditions


def normalize_sort(sort: SortInput) -> List[SortSpec]:
    """Coerce sort input into validated :class:`SortSpec` terms, preserving order.

    Items may be :class:`SortSpec`, ``(field, direction)`` tuples, bare field names,
    or mappings with ``field`` and either ``direction`` or a boolean ``desc``.
    """
    if not sort:
        return []
    if isinstance(sort, (SortSpec, str, Mapping)):
        sort = [sort]

    specs: List[SortSpec] = []
    for item in sort:
        if isinstance(item, SortSpec):
            name, direction = item.field, item.direction
        elif isinstance(item, str):
            name, direction = item, None
        elif isinstance(item, Mapping):
            name = item.get("field")
            if "direction" in item:
                direction = item["direction"]
            else:
                direction = "DESC" if item.get("desc") else "ASC"
        elif isinstance(item, (tuple, list)) and len(item) == 2:
            name, direction = item
        else:
            raise InvalidQueryError(f"Unsupported sort specification: {item!r}")
        specs.append(SortSpec(validate_field(name), validate_sort_direction(direction)))
    return specs


def escape_like(text: str) -> str:
    """Escape LIKE wildcards so ``%`` and ``_`` in user input match literally."""
    return (
        text.replace(LIKE_ESCAPE_CHAR, LIKE_ESCAPE_CHAR * 2)
        .replace("%", LIKE_ESCAPE_CHAR + "%")
        .replace("_", LIKE_ESCAPE_CHAR + "_")
    )


def _like_pattern(operator: Operator, value: Any) -> str:
    text = escape_like("" if value is None else str(value))
    if operator is Operator.CONTAINS:
        return f"%{text}%"
    if operator is Operator.STARTS_WITH:
        return f"{text}%"
    return f"%{text}"


def build_where(
    where: WhereInput, marshal: Marshal = _default_marshal
) -> Tuple[str, List[Any], List[Optional[str]]]:
    """Build the body of a WHERE clause (without the keyword).

    Returns an empty clause when there are no conditions.
    """
    parts: List[str] = []
    args: List[Any] = []
    fields: List[Optional[str]] = []

    for condition in normalize_where(where):
        name = validate_field(condition.field)
        column = quote_identifier(name)
        operator = condition.operator
        value = condition.value

        if operator is Operator.IN:
            values = list(value) if isinstance(value, (list, tuple, set, frozenset)) else [value]
            if not values:
                # Empty membership matches nothing.
                parts.append("1 = 0")
                continue
            placeholders = ", ".join("?" for _ in values)
            parts.append(f"{column} IN ({placeholders})")
            args.extend(marshal(v) for v in values)
            fields.extend(name for _ in values)
            continue

        if operator in (Operator.CONTAINS, Operator.STARTS_WITH, Operator.ENDS_WITH):
            parts.append(f"{column} LIKE ? ESCAPE '{LIKE_ESCAPE_CHAR}'")
            args.append(_like_pattern(operator, value))
            fields.append(name)
            continue

        if value is None and operator in (Operator.EQ, Operator.NE):
            parts.append(f"{column} IS NULL" if operator is Operator.EQ else f"{column} IS NOT NULL")
            continue

        parts.append(f"{column} {COMPARISON_SQL[operator]} ?")
        args.append(marshal(value))
        fields.append(name)

    return " AND ".join(parts), args, fields


def _quote_model(model: str) -> str:
    return quote_identifier(check_identifier_shape(model, "model"))


def _check_non_negative_int(name: str, value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidQueryError(f"{name} must be an integer, got {value!r}")
    if value < 0:
        raise InvalidQueryError(f"{name} must be non-negative, got {value}")
    return value


def build_insert(
    model: str,
    record: Mapping[str, Any],
    *,
    returning: bool = False,
    marshal: Marshal = _default_marshal,
) -> SqlStatement:
    """Build an INSERT; an empty record inserts a row of column defaults."""
    table = _quote_model(model)
    names = [validate_field(key) for key in record]
    suffix = " RETURNING *" if returning else ""
    if not names:
        return SqlStatement(f"INSERT INTO {table} DEFAULT VALUES{suffix}")

    columns = ", ".join(quote_identifier(name) for name in names)
    placeholders = ", ".join("?" for _ in names)
    args = [marshal(record[name]) for name in names]
    return SqlStatement(
        f"INSERT INTO {table} ({columns}) VALUES ({placeholders}){suffix}",
        args,
        list(names),
    )


def build_update(
    model: str,
    where: WhereInput,
    patch: Mapping[str, Any],
    *,
    returning: bool = False,
    marshal: Marshal = _default_marshal,
    operation: str = "update",
) -> SqlStatement:
    """Build an UPDATE; patch arguments precede where arguments.

    Raises:
        EmptyWhereClauseError: ``where`` has no conditions.
        InvalidQueryError: ``patch`` is empty.
    """
    clause, where_args, where_fields = build_where(where, marshal)
    if not clause:
        raise EmptyWhereClauseError(operation)
    if not patch:
        raise InvalidQueryError(f"{operation} requires at least one field to set")

    table = _quote_model(model)
    names = [validate_field(key) for key in patch]
    assignments = ", ".join(f"{quote_identifier(name)} = ?" for name in names)
    args = [marshal(patch[name]) for name in names] + where_args
    suffix = " RETURNING *" if returning else ""
    return SqlStatement(
        f"UPDATE {table} SET {assignments} WHERE {clause}{suffix}",
        args,
        list(names) + where_fields,
    )


def build_delete(
    model: str,
    where: WhereInput,
    *,
    marshal: Marshal = _default_marshal,
    operation: str = "delete",
) -> SqlStatement:
    """Build a DELETE, refusing an empty filter."""
    clause, args, fields = build_where(where, marshal)
    if not clause:
        raise EmptyWhereClauseError(operation)
    return SqlStatement(f"DELETE FROM {_quote_model(model)} WHERE {clause}", args, fields)


def build_select(
    model: str,
    where: WhereInput = None,
    sort: SortInput = None,
    limit: Optional[int] = None,
    offset: Optional[int] = None,
    selected_fields: Optional[Sequence[str]] = None,
    *,
    bound_limit: bool = True,
    rowid_tiebreak: bool = False,
    marshal: Marshal = _default_marshal,
) -> SqlStatement:
    """Build a SELECT with optional filter, ordering and pagination.

    An empty ``where`` selects all rows. Sort terms are emitted in the order given;
    with ``rowid_tiebreak`` a final ``rowid ASC`` term makes ties deterministic.
    LIMIT/OFFSET are bound parameters unless ``bound_limit`` is False, in which case
    the already type-checked integers are interpolated.
    """
    table = _quote_model(model)
    if selected_fields:
        projection = ", ".join(quote_identifier(validate_field(name)) for name in selected_fields)
    else:
        projection = "*"

    clause, args, fields = build_where(where, marshal)
    sql = f"SELECT {projection} FROM {table}"
    if clause:
        sql += f" WHERE {clause}"

    specs = normalize_sort(sort)
    if specs:
        terms = [f"{quote_identifier(spec.field)} {spec.direction}" for spec in specs]
        if rowid_tiebreak:
            terms.append("rowid ASC")
        sql += " ORDER BY " + ", ".join(terms)

    if limit is not None:
        limit = _check_non_negative_int("limit", limit)
    if offset is not None:
        offset = _check_non_negative_int("offset", offset)

    if limit is None and offset:
        # OFFSET requires a LIMIT; -1 means unbounded.
        limit = -1
    if limit is not None:
        if bound_limit:
            sql += " LIMIT ?"
            args.append(limit)
            fields.append(None)
        else:
            sql += f" LIMIT {int(limit)}"
    if offset:
        if bound_limit:
            sql += " OFFSET ?"
            args.append(offset)
            fields.append(None)
        else:
            sql += f" OFFSET {int(offset)}"

    return SqlStatement(sql, args, fields)


def build_count(
    model: str, where: WhereInput = None, *, marshal: Marshal = _default_marshal
) -> SqlStatement:
    """Build ``SELECT COUNT(*)`` with the same where semantics as select."""
    clause, args, fields = build_where(where, marshal)
    sql = f"SELECT COUNT(*) AS count FROM {_quote_model(model)}"
    if clause:
        sql += f" WHERE {clause}"
    return SqlStatement(sql, args, fields)


def _is_scalar(value: Any) -> bool:
    return value is not None and not isinstance(value, (dict, list, tuple, set))


def build_inserted_row_lookup(
    model: str,
    record: Mapping[str, Any],
    last_insert_id: Optional[int],
    *,
    marshal: Marshal = _default_marshal,
) -> Tuple[SqlStatement, str]:
    """Build the follow-up SELECT used when the engine cannot return inserted rows.

    Strategies, in order: rowid when the engine reported one and the record has no
    explicit ``id``; the explicit ``id``; all non-null scalar fields, newest first;
    and finally the newest row. The last two are heuristics that can pick the wrong
    row under concurrent inserts of near-identical records.

    Returns the statement and the strategy name.
    """
    table = _quote_model(model)
    if last_insert_id and record.get("id") is None:
        return SqlStatement(f"SELECT * FROM {table} WHERE rowid = ?", [last_insert_id], [None]), "rowid"
    if record.get("id") is not None:
        return (
            SqlStatement(
                f"SELECT * FROM {table} WHERE {quote_identifier('id')} = ?",
                [marshal(record["id"])],
                ["id"],
            ),
            "id",
        )

    matches = [(validate_field(key), value) for key, value in record.items() if _is_scalar(value)]
    if matches:
        clause = " AND ".join(f"{quote_identifier(name)} = ?" for name, _ in matches)
        return (
            SqlStatement(
                f"SELECT * FROM {table} WHERE {clause} ORDER BY rowid DESC LIMIT 1",
                [marshal(value) for _, value in matches],
                [name for name, _ in matches],
            ),
            "field_match",
        )
    return SqlStatement(f"SELECT * FROM {table} ORDER BY rowid DESC LIMIT 1"), "latest"


def conditions_for_refetch(
    where: WhereInput, patch: Mapping[str, Any]
) -> List[WhereCondition]:
    """Rewrite a where filter so it still matches rows after ``patch`` is applied.

    Conditions on patched fields are replaced by equality on the new value; other
    conditions are kept as they are.
    """
    rewritten: List[WhereCondition] = []
    for condition in normalize_where(where):
        if condition.field in patch:
            rewritten.append(WhereCondition(condition.field, Operator.EQ, patch[condition.field]))
        else:
            rewritten.append(condition)
    return rewritten

