"""Tests for partial-ingestion payload validation."""

from datetime import datetime

import pytest

from cityping_engine.domain.exceptions import ValidationError
from cityping_engine.domain.models import (
    ContentItem,
    DeduplicationCandidate,
    ValidationFailure,
)
from cityping_engine.services.payload_validation import (
    LoggingAlertSink,
    build_failure_reports,
    parse_payload,
    validate_payloads,
)


def _candidate_payload(**overrides) -> dict:
    payload = {
        "title": "Fire in Queens apartment building",
        "locator": "https://a.com/queens-fire",
        "source": "source-a",
        "external_id": "source-a:1",
    }
    payload.update(overrides)
    return payload


def test_valid_subset_survives_invalid_payloads(now: datetime) -> None:
    payloads = [
        _candidate_payload(),
        _candidate_payload(title=""),
        "not an object",
        _candidate_payload(external_id="source-a:2", locator="https://a.com/other"),
    ]

    outcome = validate_payloads(DeduplicationCandidate, payloads, now=now)

    assert [c.external_id for c in outcome.valid] == ["source-a:1", "source-a:2"]
    assert len(outcome.failures) == 2
    assert outcome.failures[0].source == "source-a"
    assert outcome.failures[1].source == "unknown"
    assert all(f.occurred_at == now for f in outcome.failures)


def test_source_falls_back_to_default() -> None:
    outcome = validate_payloads(
        ContentItem, [{"content_type": "tips"}], default_source="tips-feed"
    )

    assert outcome.valid == []
    assert outcome.failures[0].source == "tips-feed"


def test_parse_payload_reports_field_paths() -> None:
    with pytest.raises(ValidationError) as exc_info:
        parse_payload(
            ContentItem,
            {
                "content_id": "c1",
                "content_type": "tips",
                "priority": 150,
                "created_at": "2025-01-15T14:00:00Z",
            },
            "tips-feed",
        )

    assert exc_info.value.source == "tips-feed"
    assert "priority" in str(exc_info.value)


def test_parse_payload_rejects_unknown_content_type() -> None:
    with pytest.raises(ValidationError, match="content_type"):
        parse_payload(
            ContentItem,
            {
                "content_id": "c1",
                "content_type": "horoscope",
                "priority": 10,
                "created_at": "2025-01-15T14:00:00Z",
            },
            "feed",
        )


def test_reports_aggregate_per_source_with_capped_samples(now: datetime) -> None:
    failures = [
        ValidationFailure(source="a", payload={"n": i}, error="bad", occurred_at=now)
        for i in range(5)
    ] + [ValidationFailure(source="b", payload={}, error="bad", occurred_at=now)]

    reports = build_failure_reports(failures, now)

    assert [(r.source, r.failure_count, len(r.samples)) for r in reports] == [
        ("a", 5, 3),
        ("b", 1, 1),
    ]
    assert [s.payload for s in reports[0].samples] == [{"n": 0}, {"n": 1}, {"n": 2}]


def test_large_sample_payloads_are_truncated(now: datetime) -> None:
    failure = ValidationFailure(
        source="a", payload={"body": "x" * 5_000}, error="bad", occurred_at=now
    )

    [report] = build_failure_reports([failure], now)

    sample = report.samples[0].payload
    assert isinstance(sample, str)
    assert sample.endswith("...")
    assert len(sample) == 2_003


def test_no_failures_no_reports() -> None:
    assert build_failure_reports([]) == []


def test_logging_alert_sink_logs_report(mocker, now: datetime) -> None:
    mock_logger = mocker.patch("cityping_engine.services.payload_validation.logger")
    [report] = build_failure_reports(
        [ValidationFailure(source="a", payload={}, error="bad", occurred_at=now)], now
    )

    LoggingAlertSink().send_validation_report(report)

    mock_logger.warning.assert_called_once()
    args, kwargs = mock_logger.warning.call_args
    assert args == ("validation_failure_report",)
    assert kwargs["source"] == "a"
    assert kwargs["failure_count"] == 1
