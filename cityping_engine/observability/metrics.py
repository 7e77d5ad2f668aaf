"""Prometheus metrics for routing, deduplication and delivery queuing.

Counters are module-level singletons registered in the default registry. The
HTTP exporter is never started on import; CLI entry points call
``ensure_metrics_exporter()`` explicitly.
"""

from __future__ import annotations

import os
import threading
from typing import Final

from prometheus_client import Counter, Histogram, start_http_server

from cityping_engine.config.logging_config import get_logger

logger = get_logger(__name__)

ROUTING_DECISIONS_TOTAL: Final[Counter] = Counter(
    "cityping_routing_decisions_total",
    "Content routing decisions by action",
    labelnames=("action",),
)

DUPLICATES_DETECTED_TOTAL: Final[Counter] = Counter(
    "cityping_duplicates_detected_total",
    "Duplicate candidates by cascade stage",
    labelnames=("stage",),
)

DELIVERY_TASKS_QUEUED_TOTAL: Final[Counter] = Counter(
    "cityping_delivery_tasks_queued_total",
    "Delivery tasks written to the outbox by channel and kind",
    labelnames=("channel", "kind"),
)

VALIDATION_FAILURES_TOTAL: Final[Counter] = Counter(
    "cityping_validation_failures_total",
    "Adapter payloads rejected by schema validation",
    labelnames=("source",),
)

STAGE_DURATION_SECONDS: Final[Histogram] = Histogram(
    "cityping_stage_duration_seconds",
    "Duration of use case stages in seconds",
    labelnames=("stage",),
)

_EXPORTER_LOCK = threading.Lock()
_EXPORTER_STARTED = False
_DEFAULT_METRICS_PORT: Final[int] = 9000
_METRICS_PORT_ENV: Final[str] = "METRICS_PORT"


def _resolve_metrics_port() -> int:
    port_raw = os.getenv(_METRICS_PORT_ENV)
    try:
        return int(port_raw) if port_raw else _DEFAULT_METRICS_PORT
    except ValueError:
        logger.warning("invalid_metrics_port", port=port_raw)
        return _DEFAULT_METRICS_PORT


def ensure_metrics_exporter(port: int | None = None) -> None:
    """Start Prometheus HTTP exporter once per process."""

    global _EXPORTER_STARTED
    with _EXPORTER_LOCK:
        if _EXPORTER_STARTED:
            return

        resolved_port = port if port is not None else _resolve_metrics_port()

        try:
            start_http_server(resolved_port)
        except OSError as exc:
            logger.error(
                "metrics_exporter_start_failed",
                port=resolved_port,
                error=str(exc),
            )
            raise

        _EXPORTER_STARTED = True
        logger.info("metrics_exporter_started", port=resolved_port)


__all__ = [
    "DELIVERY_TASKS_QUEUED_TOTAL",
    "DUPLICATES_DETECTED_TOTAL",
    "ROUTING_DECISIONS_TOTAL",
    "STAGE_DURATION_SECONDS",
    "VALIDATION_FAILURES_TOTAL",
    "ensure_metrics_exporter",
]
