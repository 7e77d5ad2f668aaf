"""Fan out a JSON file of accepted events to matching users."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from cityping_engine.adapters.repository_factory import create_repository
from cityping_engine.config.logging_config import get_logger
from cityping_engine.config.settings import get_settings
from cityping_engine.domain.exceptions import DeliveryEngineError
from cityping_engine.use_cases.dispatch_events import dispatch_events_use_case
from scripts import cli_runtime

logger = get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Queue delivery tasks for events")
    parser.add_argument("input", type=Path, help="JSON array of event payloads")
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
        logger.error("event_input_invalid", path=str(args.input), error=str(exc))
        return 2

    repository = create_repository(settings)
    try:
        result = dispatch_events_use_case(repository, settings, payloads)
    except DeliveryEngineError as exc:
        logger.error("event_batch_failed", error=str(exc))
        return 1
    finally:
        repository.close()

    logger.info(
        "event_batch_summary",
        events_processed=result.events_processed,
        events_skipped=result.events_skipped,
        tasks_queued=result.tasks_queued,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
