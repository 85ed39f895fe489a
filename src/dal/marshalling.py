"""Conversion between native Python values and storage-safe scalars.

SQLite keeps no richer types than text, integers, reals and blobs, so writes flatten
dates, booleans and nested structures, and reads recover them heuristically. The
heuristics live behind :class:`TypeDecoder` so an authoritative per-field schema can
replace them where one is available.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Dict, Mapping, Optional, Protocol, runtime_checkable

from dal.bounded_cache import MISSING, BoundedCache

logger = logging.getLogger(__name__)

# Lower-cased keys emitted by catalog introspection, mapped back to canonical form.
FIELD_NAME_MAP: Dict[str, str] = {
    "emailverified": "emailVerified",
    "createdat": "createdAt",
    "updatedat": "updatedAt",
    "userid": "userId",
    "accountid": "accountId",
    "providerid": "providerId",
    "accesstoken": "accessToken",
    "refreshtoken": "refreshToken",
    "idtoken": "idToken",
    "expiresat": "expiresAt",
    "lastinsertrowid": "lastInsertRowid",
}

DEFAULT_BOOLEAN_FIELDS = frozenset(
    {
        "emailVerified",
        "emailverified",
        "verified",
        "active",
        "enabled",
        "isActive",
        "isEnabled",
        "isVerified",
    }
)

ISO_DATETIME_PATTERN = re.compile(
    r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d{1,6})?(Z|[+-]\d{2}:\d{2})?$"
)
JSON_LIKE_PATTERN = re.compile(r"^[\[{].*[\]}]$", re.DOTALL)

# Strings longer than this are decoded without memoization.
MAX_CACHED_VALUE_LENGTH = 512

_KIND_PLAIN = "plain"
_KIND_DATETIME = "datetime"
_KIND_JSON = "json"


@dataclass(frozen=True)
class SerializationOutcome:
    """Result of converting a value for storage.

    ``lossy`` is True when JSON encoding failed and ``value`` holds ``str(original)``
    instead; ``error`` carries the encoder's message in that case.
    """

    value: Any
    lossy: bool = False
    error: Optional[str] = None


def format_datetime(value: datetime) -> str:
    """Render a datetime as ISO-8601, using a ``Z`` suffix for UTC."""
    if value.tzinfo is not None and value.utcoffset() == timezone.utc.utcoffset(None):
        return value.replace(tzinfo=None).isoformat() + "Z"
    return value.isoformat()


def parse_datetime(text: str) -> Optional[datetime]:
    """Parse an ISO-8601 datetime string, returning None when it is not one."""
    if not ISO_DATETIME_PATTERN.match(text):
        return None
    candidate = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return datetime.fromisoformat(candidate)
    except ValueError:
        return None


def serialize_value(value: Any) -> SerializationOutcome:
    """Convert a native value into something the engine can bind."""
    if value is None:
        return SerializationOutcome(None)
    if isinstance(value, datetime):
        return SerializationOutcome(format_datetime(value))
    if isinstance(value, date):
        return SerializationOutcome(value.isoformat())
    if isinstance(value, bool):
        return SerializationOutcome(1 if value else 0)
    if isinstance(value, (dict, list, tuple)):
        try:
            return SerializationOutcome(json.dumps(value, default=_json_default))
        except (TypeError, ValueError) as exc:
            return SerializationOutcome(str(value), lossy=True, error=str(exc))
    return SerializationOutcome(value)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return format_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


@runtime_checkable
class TypeDecoder(Protocol):
    """Strategy that restores a native value from a stored scalar."""

    def decode(self, value: Any, field: Optional[str] = None, model: Optional[str] = None) -> Any:
        """Return the native form of ``value`` read from ``model.field``."""
        ...


class HeuristicTypeDecoder:
    """Default decoder: booleans by known field name, dates by pattern, JSON by brackets.

    Numeric 0/1 only becomes a bool for fields in ``boolean_fields``; other fields
    stay numeric even if a bool was written. String decisions are memoized per exact
    value in a bounded cache.
    """

    def __init__(
        self,
        boolean_fields: Optional[frozenset] = None,
        max_cache_entries: int = 10000,
    ) -> None:
        """Initialize with the boolean field set and decision-cache capacity."""
        self.boolean_fields = (
            DEFAULT_BOOLEAN_FIELDS if boolean_fields is None else frozenset(boolean_fields)
        )
        self._decisions: BoundedCache[str, tuple] = BoundedCache(
            max_cache_entries, name="deserialize_cache"
        )

    def decode(self, value: Any, field: Optional[str] = None, model: Optional[str] = None) -> Any:
        """Restore a native value from a stored scalar."""
        if value is None:
            return None
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            if field in self.boolean_fields and value in (0, 1):
                return value == 1
            return value
        if not isinstance(value, str):
            return value
        return self.decode_text(value)

    def decode_text(self, value: str) -> Any:
        """Apply the date and JSON heuristics to a string."""
        if len(value) > MAX_CACHED_VALUE_LENGTH:
            return self._materialize(value, *self._decide(value))

        decision = self._decisions.lookup(value)
        if decision is MISSING:
            decision = self._decide(value)
            self._decisions.set(value, decision)
        return self._materialize(value, *decision)

    def clear_cache(self) -> None:
        """Drop memoized decisions."""
        self._decisions.clear()

    def cache_size(self) -> int:
        """Return the number of memoized decisions."""
        return len(self._decisions)

    @staticmethod
    def _decide(value: str) -> tuple:
        parsed = parse_datetime(value)
        if parsed is not None:
            return (_KIND_DATETIME, parsed)
        if len(value) > 1 and JSON_LIKE_PATTERN.match(value):
            try:
                json.loads(value)
            except ValueError:
                return (_KIND_PLAIN, None)
            return (_KIND_JSON, None)
        return (_KIND_PLAIN, None)

    @staticmethod
    def _materialize(value: str, kind: str, parsed: Any) -> Any:
        if kind == _KIND_DATETIME:
            return parsed
        if kind == _KIND_JSON:
            # Parsed per call so callers never share a mutable structure.
            return json.loads(value)
        return value


class SchemaTypeDecoder:
    """Decoder driven by declared field types, falling back to the heuristic.

    ``field_types`` maps ``"model.field"`` or bare ``"field"`` to one of
    ``string``, ``number``, ``boolean``, ``date`` or ``json``.
    """

    def __init__(
        self,
        field_types: Mapping[str, str],
        fallback: Optional[TypeDecoder] = None,
    ) -> None:
        """Initialize with declared types and the decoder for undeclared fields."""
        self.field_types = dict(field_types)
        self.fallback = fallback or HeuristicTypeDecoder()

    @classmethod
    def from_tables(
        cls, tables: Mapping[str, Mapping[str, Any]], fallback: Optional[TypeDecoder] = None
    ) -> "SchemaTypeDecoder":
        """Build from the same table/field description accepted by schema generation."""
        from dal.schema_ddl import iter_table_fields

        field_types: Dict[str, str] = {}
        for model, field, spec in iter_table_fields(tables):
            field_types[f"{model}.{field}"] = spec.logical_type
        return cls(field_types, fallback=fallback)

    def _declared(self, field: Optional[str], model: Optional[str]) -> Optional[str]:
        if field is None:
            return None
        if model is not None:
            declared = self.field_types.get(f"{model}.{field}")
            if declared is not None:
                return declared
        return self.field_types.get(field)

    def decode(self, value: Any, field: Optional[str] = None, model: Optional[str] = None) -> Any:
        """Restore ``value`` according to its declared type."""
        declared = self._declared(field, model)
        if value is None or declared is None:
            return self.fallback.decode(value, field, model)
        if declared == "boolean":
            if isinstance(value, str):
                return value.strip().lower() in ("1", "true")
            return bool(value)
        if declared == "date":
            if isinstance(value, str):
                parsed = parse_datetime(value)
                return parsed if parsed is not None else value
            return value
        if declared == "json":
            if isinstance(value, str):
                try:
                    return json.loads(value)
                except ValueError:
                    return value
            return value
        if declared == "number":
            return value
        # Declared strings are returned verbatim, even when they look like dates.
        return value


class ValueMarshaller:
    """Symmetric serialize/deserialize pair with field-name normalization."""

    def __init__(
        self,
        decoder: Optional[TypeDecoder] = None,
        max_field_name_cache: int = 1000,
    ) -> None:
        """Initialize with a decoder strategy (heuristic by default)."""
        self.decoder: TypeDecoder = decoder or HeuristicTypeDecoder()
        self._field_names: BoundedCache[str, str] = BoundedCache(
            max_field_name_cache, name="field_name_cache"
        )

    def serialize(self, value: Any) -> SerializationOutcome:
        """Convert a native value to a storage-safe scalar."""
        return serialize_value(value)

    def to_storage(self, value: Any, field: Optional[str] = None) -> Any:
        """Return the storage value, logging when the conversion lost information."""
        outcome = serialize_value(value)
        if outcome.lossy:
            logger.warning(
                "value_serialization_fallback field=%s error=%s", field, outcome.error
            )
        return outcome.value

    def deserialize(self, value: Any, field: Optional[str] = None, model: Optional[str] = None) -> Any:
        """Restore a native value read from ``field``."""
        return self.decoder.decode(value, field, model)

    def normalize_field_name(self, key: str) -> str:
        """Map lower-cased catalog keys back to their canonical mixed-case form."""
        cached = self._field_names.get(key)
        if cached is not None:
            return cached
        normalized = FIELD_NAME_MAP.get(key.lower(), key)
        self._field_names.set(key, normalized)
        return normalized

    def deserialize_row(
        self, row: Optional[Mapping[str, Any]], model: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        """Normalize every key of a row and decode every value."""
        if row is None:
            return None
        decoded: Dict[str, Any] = {}
        for key, value in row.items():
            name = self.normalize_field_name(key)
            decoded[name] = self.deserialize(value, name, model)
        return decoded

    def clear_caches(self) -> None:
        """Drop field-name and decoder caches."""
        self._field_names.clear()
        clear = getattr(self.decoder, "clear_cache", None)
        if callable(clear):
            clear()
