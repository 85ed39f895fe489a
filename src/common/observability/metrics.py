"""Optional OpenTelemetry statement metrics for the data access layer."""

import logging
import os

from opentelemetry import metrics

from common.config.env import get_env_bool

logger = logging.getLogger(__name__)

METRICS_FLAG_ENV = "DAL_OBSERVABILITY_METRICS_ENABLED"


def is_otel_exporter_configured() -> bool:
    """Return True when an OTLP endpoint is set and exporting is not turned off."""
    if get_env_bool("OTEL_DISABLE_EXPORTER", False):
        return False
    if (os.getenv("OTEL_METRICS_EXPORTER") or "").strip().lower() == "none":
        return False
    return any(
        (os.getenv(name) or "").strip()
        for name in ("OTEL_EXPORTER_OTLP_ENDPOINT", "OTEL_EXPORTER_OTLP_METRICS_ENDPOINT")
    )


def is_metrics_enabled(enabled_env_var: str) -> bool:
    """Resolve enablement: an explicit env flag wins, else exporter presence."""
    raw = os.getenv(enabled_env_var)
    if raw is None:
        return is_otel_exporter_configured()
    try:
        return get_env_bool(enabled_env_var, False) is True
    except ValueError:
        logger.warning("Invalid %s value '%s'; metrics disabled.", enabled_env_var, raw)
        return False


class StatementMetrics:
    """Statement counter and latency histogram, emitted only when enabled.

    Instruments are created on first emission. Emission failures are logged at
    DEBUG and never reach the caller.
    """

    def __init__(self, meter_name: str = "entity-dal", enabled_env_var: str = METRICS_FLAG_ENV):
        self.meter_name = meter_name
        self.enabled_env_var = enabled_env_var
        self._instruments = None

    def enabled(self) -> bool:
        """Return True when statements should be recorded."""
        return is_metrics_enabled(self.enabled_env_var)

    def _get_instruments(self):
        if self._instruments is None:
            meter = metrics.get_meter(self.meter_name)
            counter = meter.create_counter(
                name="dal.statements", description="Statements executed", unit="1"
            )
            histogram = meter.create_histogram(
                name="dal.statement.duration_ms", description="Statement latency", unit="ms"
            )
            self._instruments = (counter, histogram)
        return self._instruments

    def record_statement(self, provider: str, status: str, elapsed_ms: float) -> None:
        """Count one statement and record its latency."""
        if not self.enabled():
            return
        attributes = {"provider": provider, "status": status}
        try:
            counter, histogram = self._get_instruments()
            counter.add(1, attributes)
            histogram.record(float(elapsed_ms), attributes)
        except Exception as exc:
            logger.debug("dal_metrics_emit_failed error=%s", exc)


dal_metrics = StatementMetrics()
