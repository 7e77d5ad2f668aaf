"""Ingest content use case.

Validates raw adapter payloads, runs the deduplication cascade and persists
the stories that survive it.
"""

from collections.abc import Iterable
from datetime import UTC, datetime
from time import perf_counter
from typing import Any

from cityping_engine.config.logging_config import get_logger
from cityping_engine.config.settings import Settings
from cityping_engine.domain.models import (
    AcceptedItem,
    DeduplicationCandidate,
    DuplicateMatch,
    IngestionResult,
)
from cityping_engine.domain.protocols import AlertSinkProtocol, RepositoryProtocol
from cityping_engine.observability.metrics import STAGE_DURATION_SECONDS
from cityping_engine.observability.tracing import correlation_scope
from cityping_engine.services.deduplicator import DeduplicationService
from cityping_engine.services.payload_validation import (
    UNKNOWN_SOURCE,
    LoggingAlertSink,
    build_failure_reports,
    validate_payloads,
)

logger = get_logger(__name__)


def ingest_content_use_case(
    repository: RepositoryProtocol,
    settings: Settings,
    payloads: Iterable[Any],
    *,
    default_source: str = UNKNOWN_SOURCE,
    alert_sink: AlertSinkProtocol | None = None,
    now: datetime | None = None,
    correlation_id: str | None = None,
) -> IngestionResult:
    """Ingest one batch of candidate stories.

    1. Validate every payload; invalid ones are reported, never fatal
    2. Run the cascade for each valid candidate, in input order, including
       stories accepted earlier in the same batch
    3. Persist unique candidates; a unique-key conflict on insert counts as
       a duplicate detected on insert

    Args:
        repository: Repository protocol implementation
        settings: Application settings
        payloads: Raw adapter payloads (dicts)
        default_source: Source used in reports when a payload names none
        alert_sink: Receives one validation report per failing source
        now: Reference time (defaults to current UTC time)

    Returns:
        IngestionResult with counts, accepted items and duplicate matches
    """
    with correlation_scope(correlation_id) as bound_correlation_id:
        stage_start = perf_counter()
        result: IngestionResult | None = None
        try:
            now = now or datetime.now(tz=UTC)
            raw_payloads = list(payloads)
            outcome = validate_payloads(
                DeduplicationCandidate, raw_payloads, default_source, now
            )

            reports = build_failure_reports(outcome.failures, now)
            sink = alert_sink or LoggingAlertSink()
            for report in reports:
                sink.send_validation_report(report)

            logger.info(
                "ingestion_started",
                correlation_id=bound_correlation_id,
                received=len(raw_payloads),
                valid=len(outcome.valid),
                invalid=len(outcome.failures),
            )

            service = DeduplicationService(repository, settings.dedup_policy())
            accepted: list[AcceptedItem] = []
            duplicates: list[DuplicateMatch] = []

            for candidate in outcome.valid:
                check = service.check_duplicate(candidate, now, batch_accepted=accepted)
                if not check.is_duplicate:
                    stored, check = service.accept(candidate, now)
                    if stored is not None:
                        accepted.append(stored)
                        continue
                duplicates.append(DuplicateMatch(candidate=candidate, result=check))

            result = IngestionResult(
                received=len(raw_payloads),
                invalid=len(outcome.failures),
                accepted=len(accepted),
                duplicates=len(duplicates),
                accepted_items=accepted,
                duplicate_matches=duplicates,
                reports=reports,
            )
            return result
        finally:
            duration = perf_counter() - stage_start
            STAGE_DURATION_SECONDS.labels(stage="ingest").observe(duration)
            if result is not None:
                logger.info(
                    "ingestion_finished",
                    correlation_id=bound_correlation_id,
                    duration_seconds=duration,
                    accepted=result.accepted,
                    duplicates=result.duplicates,
                    invalid=result.invalid,
                )
