from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass

from common.config.env import get_env_bool
from common.sanitization.text import redact_sensitive_info

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ErrorClassification:
    """Provider-aware classification of an engine error."""

    category: str
    provider: str
    is_retryable: bool


def classify_error(provider: str, exc: BaseException) -> str:
    """Classify an engine error into a provider-agnostic category."""
    return classify_error_info(provider, exc).category


def classify_error_info(provider: str, exc: BaseException) -> ErrorClassification:
    """Classify an engine error into a category with retryability.

    Classification is for telemetry only; the original exception is always what
    the caller receives.
    """
    message = str(exc).lower()
    class_name = exc.__class__.__name__.lower()
    provider = (provider or "unknown").lower()

    if isinstance(exc, TimeoutError) or _matches_any(message, ("timeout", "timed out")):
        return _classification("timeout", provider)
    if isinstance(exc, sqlite3.IntegrityError) or _matches_any(
        message, ("constraint failed", "unique constraint", "not null constraint")
    ):
        return _classification("constraint", provider)
    if _matches_any(message, ("database is locked", "database table is locked", "busy")):
        return _classification("locked", provider)
    if _matches_any(message, ("no such table", "no such column", "has no column named")):
        return _classification("missing_object", provider)
    if _matches_any(message, ("syntax error", "incomplete input", "unrecognized token")):
        return _classification("syntax", provider)
    if _matches_any(
        message,
        ("unable to open database", "closed database", "disk i/o error", "connection"),
    ):
        return _classification("connectivity", provider)
    if _matches_any(message, ("disk is full", "out of memory", "database or disk is full")):
        return _classification("resource_exhausted", provider)
    if class_name in {"timeout", "timeouterror"}:
        return _classification("timeout", provider)
    if class_name == "operationalerror":
        return _classification("connectivity", provider)
    return _classification("unknown", provider)


RECOVERY_HINTS: dict[str, str] = {
    "timeout": "Consider reducing statement cost or increasing the engine timeout",
    "constraint": "A uniqueness or NOT NULL constraint rejected the write",
    "locked": "Another writer holds the database lock; retry after it commits",
    "missing_object": "The statement references a table or column that does not exist",
    "syntax": "Review SQL syntax; the statement may reference invalid identifiers",
    "connectivity": "Check the database path and that the connection is open",
    "resource_exhausted": "The engine ran out of disk or memory",
    "unknown": "Inspect error details for root cause",
}


def emit_classified_error(provider: str, operation: str, exc: BaseException) -> ErrorClassification:
    """Log a structured record for an engine error and return its classification."""
    info = classify_error_info(provider, exc)
    if not get_env_bool("DAL_CLASSIFIED_ERROR_TELEMETRY", True):
        return info

    recovery_hint = RECOVERY_HINTS.get(info.category, RECOVERY_HINTS["unknown"])
    try:
        from opentelemetry import trace

        span = trace.get_current_span()
        if span and span.is_recording():
            span.set_attribute("error.classification.category", info.category)
            span.set_attribute("error.classification.provider", provider)
            span.set_attribute("error.classification.operation", operation)
            span.set_attribute("error.classification.is_retryable", info.is_retryable)
    except Exception as telemetry_exc:
        logger.debug("error classification span update failed: %s", telemetry_exc)

    logger.error(
        "dal_error_classified provider=%s operation=%s category=%s error=%s",
        provider,
        operation,
        info.category,
        redact_sensitive_info(str(exc)),
        extra={
            "event": "dal_error_classified",
            "provider": provider,
            "operation": operation,
            "error_category": info.category,
            "error_type": exc.__class__.__name__,
            "is_retryable": info.is_retryable,
            "recovery_hint": recovery_hint,
        },
    )
    return info


def _matches_any(text: str, fragments: tuple[str, ...]) -> bool:
    return any(fragment in text for fragment in fragments)


def _classification(category: str, provider: str) -> ErrorClassification:
    retryable = category in {"timeout", "locked", "connectivity"}
    return ErrorClassification(category=category, provider=provider, is_retryable=retryable)
