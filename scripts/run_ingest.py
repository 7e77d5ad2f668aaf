"""Ingest a JSON file of raw candidate payloads through deduplication."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from cityping_engine.adapters.repository_factory import create_repository
from cityping_engine.config.logging_config import get_logger
from cityping_engine.config.settings import get_settings
from cityping_engine.domain.exceptions import DeliveryEngineError
from cityping_engine.use_cases.ingest_content import ingest_content_use_case
from scripts import cli_runtime

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Deduplicate and store candidate stories")
    parser.add_argument("input", type=Path, help="JSON array of candidate payloads")
    parser.add_argument(
        "--source",
        default="unknown",
        help="Source name used for payloads that do not carry one",
    )
    cli_runtime.add_common_arguments(parser)
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    cli_runtime.initialize_runtime(
        settings, json_logs=args.json_logs, metrics_port=args.metrics_port
    )

    try:
        payloads = cli_runtime.load_json_list(args.input)
    except ValueError as exc:
        logger.error("ingest_input_invalid", path=str(args.input), error=str(exc))
        return 2

    repository = create_repository(settings)
    try:
        result = ingest_content_use_case(
            repository, settings, payloads, default_source=args.source
        )
    except DeliveryEngineError as exc:
        logger.error("ingest_failed", error=str(exc))
        return 1
    finally:
        repository.close()

    logger.info(
        "ingest_summary",
        received=result.received,
        accepted=result.accepted,
        duplicates=result.duplicates,
        invalid=result.invalid,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
