"""Run one delivery window's scheduling cycle for every user.

The optional input file is either a JSON array of content items offered to
every user, or an object mapping user ids to item arrays, where the key
``"*"`` holds items offered to every user.
"""

from __future__ import annotations

import argparse
import sys
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

sys.path.insert(0, str(Path(__file__).parent.parent))

from cityping_engine.adapters.repository_factory import create_repository
from cityping_engine.config.logging_config import get_logger
from cityping_engine.config.settings import get_settings
from cityping_engine.domain.exceptions import DeliveryEngineError
from cityping_engine.domain.models import ContentItem, DeliveryWindow
from cityping_engine.services.delivery_windows import current_window
from cityping_engine.services.payload_validation import validate_payloads
from cityping_engine.use_cases.schedule_window import schedule_window_for_users
from scripts import cli_runtime

logger = get_logger(__name__)

SHARED_ITEMS_KEY = "*"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Schedule a delivery window")
    parser.add_argument(
        "--window",
        choices=[window.value for window in DeliveryWindow],
        default=None,
        help="Window to schedule (defaults to the current window)",
    )
    parser.add_argument(
        "--items", type=Path, default=None, help="JSON file of content items"
    )
    parser.add_argument(
        "--max-workers", type=int, default=None, help="Users scheduled in parallel"
    )
    cli_runtime.add_common_arguments(parser)
    return parser.parse_args(argv)


def _parse_items(payloads: list[Any], source: str) -> list[ContentItem]:
    return validate_payloads(ContentItem, payloads, default_source=source).valid


def build_items_by_user(
    data: Any, user_ids: list[str]
) -> dict[str, list[ContentItem]]:
    """Expand the input document into per-user candidate lists."""
    if data is None:
        return {user_id: [] for user_id in user_ids}
    if isinstance(data, list):
        shared = _parse_items(data, "items")
        return {user_id: list(shared) for user_id in user_ids}
    if not isinstance(data, dict):
        raise ValueError("Expected a JSON array or object of content items")

    shared = _parse_items(list(data.get(SHARED_ITEMS_KEY) or []), "items")
    return {
        user_id: [*shared, *_parse_items(list(data.get(user_id) or []), user_id)]
        for user_id in user_ids
    }


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    settings = get_settings()
    cli_runtime.initialize_runtime(
        settings, json_logs=args.json_logs, metrics_port=args.metrics_port
    )

    now = datetime.now(tz=UTC)
    window = (
        DeliveryWindow(args.window)
        if args.window
        else current_window(now, settings.routing_policy())
    )

    try:
        data = cli_runtime.load_json_file(args.items) if args.items else None
    except ValueError as exc:
        logger.error("window_input_invalid", path=str(args.items), error=str(exc))
        return 2

    repository = create_repository(settings)
    try:
        items_by_user = build_items_by_user(data, repository.list_user_ids())
        results = schedule_window_for_users(
            repository,
            settings,
            window,
            items_by_user,
            now=now,
            max_workers=args.max_workers,
        )
    except ValueError as exc:
        logger.error("window_input_invalid", path=str(args.items), error=str(exc))
        return 2
    except DeliveryEngineError as exc:
        logger.error("window_schedule_failed", window=window.value, error=str(exc))
        return 1
    finally:
        repository.close()

    logger.info(
        "window_summary",
        window=window.value,
        users=len(results),
        sent=sum(1 for result in results if result.sent),
        tasks_queued=sum(result.tasks_queued for result in results),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
