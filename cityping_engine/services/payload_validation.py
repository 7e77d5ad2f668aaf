"""Partial-ingestion validation of raw adapter payloads.

Invalid payloads never abort a batch: they are collected, the valid subset
continues, and failures are aggregated into one report per source with a
handful of samples for administrators.
"""

import json
from collections import defaultdict
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Generic, TypeVar

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from cityping_engine.config.logging_config import get_logger
from cityping_engine.domain.exceptions import ValidationError
from cityping_engine.domain.models import ValidationFailure, ValidationFailureReport
from cityping_engine.domain.validation_constants import (
    MAX_REPORT_SAMPLES,
    MAX_SAMPLE_PAYLOAD_CHARS,
)
from cityping_engine.observability.metrics import VALIDATION_FAILURES_TOTAL

logger = get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

UNKNOWN_SOURCE = "unknown"


@dataclass(slots=True)
class ValidationOutcome(Generic[ModelT]):
    """Valid models and collected failures for one batch."""

    valid: list[ModelT] = field(default_factory=list)
    failures: list[ValidationFailure] = field(default_factory=list)


def _source_of(payload: Any, default_source: str) -> str:
    if isinstance(payload, dict):
        source = payload.get("source")
        if isinstance(source, str) and source.strip():
            return source
    return default_source


def parse_payload(model: type[ModelT], payload: Any, source: str) -> ModelT:
    """Validate one raw payload.

    Raises:
        ValidationError: If the payload is not a mapping or fails the schema
    """
    if not isinstance(payload, dict):
        raise ValidationError(source, f"expected an object, got {type(payload).__name__}")
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ValidationError(source, details) from exc


def validate_payloads(
    model: type[ModelT],
    payloads: Iterable[Any],
    default_source: str = UNKNOWN_SOURCE,
    now: datetime | None = None,
) -> ValidationOutcome[ModelT]:
    """Validate every payload, keeping the valid subset and the failures."""
    now = now or datetime.now(tz=UTC)
    outcome: ValidationOutcome[ModelT] = ValidationOutcome()

    for payload in payloads:
        source = _source_of(payload, default_source)
        try:
            outcome.valid.append(parse_payload(model, payload, source))
        except ValidationError as exc:
            VALIDATION_FAILURES_TOTAL.labels(source=source).inc()
            logger.warning("payload_validation_failed", source=source, error=str(exc))
            outcome.failures.append(
                ValidationFailure(
                    source=source, payload=payload, error=str(exc), occurred_at=now
                )
            )
    return outcome


def _truncate_payload(payload: Any) -> Any:
    serialized = json.dumps(payload, default=str, ensure_ascii=False)
    if len(serialized) <= MAX_SAMPLE_PAYLOAD_CHARS:
        return payload
    return serialized[:MAX_SAMPLE_PAYLOAD_CHARS] + "..."


def build_failure_reports(
    failures: Sequence[ValidationFailure], now: datetime | None = None
) -> list[ValidationFailureReport]:
    """One report per source: full count, first few samples, in source order."""
    now = now or datetime.now(tz=UTC)
    by_source: dict[str, list[ValidationFailure]] = defaultdict(list)
    for failure in failures:
        by_source[failure.source].append(failure)

    return [
        ValidationFailureReport(
            source=source,
            failure_count=len(source_failures),
            samples=[
                failure.model_copy(update={"payload": _truncate_payload(failure.payload)})
                for failure in source_failures[:MAX_REPORT_SAMPLES]
            ],
            generated_at=now,
        )
        for source, source_failures in by_source.items()
    ]


class LoggingAlertSink:
    """Alert sink that writes reports to the structured log."""

    def send_validation_report(self, report: ValidationFailureReport) -> None:
        logger.warning(
            "validation_failure_report",
            source=report.source,
            failure_count=report.failure_count,
            samples=[sample.model_dump(mode="json") for sample in report.samples],
            generated_at=report.generated_at.isoformat(),
        )
