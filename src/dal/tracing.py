"""OpenTelemetry spans around engine calls."""

import hashlib
from typing import Any, Awaitable, Dict, Optional

from common.observability.context import current_run_id
from common.observability.metrics import is_metrics_enabled

TRACER_NAME = "dal"
TRACE_FLAG_ENV = "DAL_TRACE_QUERIES"


def trace_enabled() -> bool:
    """Return True when query tracing is on, explicitly or via OTLP exporter config."""
    return is_metrics_enabled(TRACE_FLAG_ENV)


def hash_sql(sql: str) -> str:
    """Return the SHA-256 of SQL text; spans carry the hash, never the text."""
    return hashlib.sha256(sql.encode("utf-8")).hexdigest()


def span_attributes(
    provider: str, sql: Optional[str] = None, batch_size: Optional[int] = None
) -> Dict[str, Any]:
    """Build the starting attributes for a query span."""
    attributes: Dict[str, Any] = {"db.provider": provider}
    if sql:
        attributes["db.statement_hash"] = hash_sql(sql)
    if batch_size is not None:
        attributes["db.batch_size"] = batch_size
    run_id = current_run_id()
    if run_id:
        attributes["run_id"] = run_id
    return attributes


async def trace_query_operation(
    name: str,
    provider: str,
    sql: Optional[str],
    operation: Awaitable,
    batch_size: Optional[int] = None,
):
    """Await ``operation`` inside a span named ``name`` when tracing is enabled."""
    if not trace_enabled():
        return await operation

    from opentelemetry import trace

    tracer = trace.get_tracer(TRACER_NAME)
    attributes = span_attributes(provider, sql, batch_size)
    with tracer.start_as_current_span(name, attributes=attributes) as span:
        try:
            result = await operation
        except Exception:
            span.set_attribute("db.status", "error")
            raise
        span.set_attribute("db.status", "ok")
        return result
