"""Adapter error taxonomy.

Engine failures (``sqlite3.Error`` and friends, timeouts) are deliberately absent:
they propagate to the caller exactly as the engine raised them.
"""

from typing import Any, Optional


class AdapterError(Exception):
    """Base class for errors raised by the adapter itself."""

    def __init__(self, message: str, payload: Optional[dict] = None) -> None:
        """Attach an optional structured payload for callers that render errors."""
        super().__init__(message)
        self.payload = payload or {}


class InvalidIdentifierError(AdapterError, ValueError):
    """A model or field name failed validation and never reached the engine."""

    def __init__(self, message: str, identifier: Any = None, kind: str = "identifier") -> None:
        """Record which identifier was rejected and whether it was a model or field."""
        super().__init__(message, {"identifier": identifier, "kind": kind})
        self.identifier = identifier
        self.kind = kind


class EmptyWhereClauseError(AdapterError, ValueError):
    """A mutating operation was attempted without any filter conditions."""

    def __init__(self, operation: str) -> None:
        """Name the operation that was refused."""
        super().__init__(f"{operation} requires WHERE conditions", {"operation": operation})
        self.operation = operation


class InvalidQueryError(AdapterError, ValueError):
    """A where operator, sort direction, limit or patch was malformed."""


class CreateFailedError(AdapterError):
    """The insert statement reported zero affected rows."""


class RetrieveAfterCreateFailedError(AdapterError):
    """The follow-up read after an insert found no row."""


class AdapterNotInitializedError(AdapterError, RuntimeError):
    """The adapter was used before it connected, or after it was closed."""
