"""Dispatch events use case.

Validates raw event payloads and fans matching events out to users as
tier-dependent delivery tasks.
"""

from collections.abc import Iterable
from datetime import UTC, datetime
from time import perf_counter
from typing import Any

from cityping_engine.config.logging_config import get_logger
from cityping_engine.config.settings import Settings
from cityping_engine.domain.models import EventBatchResult, MatchableEvent
from cityping_engine.domain.protocols import AlertSinkProtocol, RepositoryProtocol
from cityping_engine.observability.metrics import STAGE_DURATION_SECONDS
from cityping_engine.observability.tracing import correlation_scope
from cityping_engine.services.delivery_scheduler import DeliveryScheduler
from cityping_engine.services.payload_validation import (
    UNKNOWN_SOURCE,
    LoggingAlertSink,
    build_failure_reports,
    validate_payloads,
)

logger = get_logger(__name__)


def dispatch_events_use_case(
    repository: RepositoryProtocol,
    settings: Settings,
    payloads: Iterable[Any],
    *,
    default_source: str = UNKNOWN_SOURCE,
    alert_sink: AlertSinkProtocol | None = None,
    now: datetime | None = None,
    correlation_id: str | None = None,
) -> EventBatchResult:
    """Validate event payloads and queue delivery tasks for matched users.

    Invalid payloads are reported through ``alert_sink`` and counted as
    skipped; the valid subset is processed as one batch.
    """
    with correlation_scope(correlation_id) as bound_correlation_id:
        stage_start = perf_counter()
        result: EventBatchResult | None = None
        try:
            now = now or datetime.now(tz=UTC)
            outcome = validate_payloads(MatchableEvent, payloads, default_source, now)

            sink = alert_sink or LoggingAlertSink()
            for report in build_failure_reports(outcome.failures, now):
                sink.send_validation_report(report)

            scheduler = DeliveryScheduler(
                repository,
                repository,
                free_tier_delay_hours=settings.free_tier_delay_hours,
            )
            result = scheduler.process_event_batch(outcome.valid, now)
            result.events_skipped += len(outcome.failures)
            return result
        finally:
            duration = perf_counter() - stage_start
            STAGE_DURATION_SECONDS.labels(stage="dispatch_events").observe(duration)
            if result is not None:
                logger.info(
                    "events_dispatched",
                    correlation_id=bound_correlation_id,
                    duration_seconds=duration,
                    events_processed=result.events_processed,
                    events_skipped=result.events_skipped,
                    users_matched=result.users_matched,
                    users_failed=result.users_failed,
                    tasks_queued=result.tasks_queued,
                )
