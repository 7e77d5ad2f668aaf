"""Common runtime helpers for CLI scripts."""

from __future__ import annotations

import argparse
import json
from pathlib import Path
from typing import Any

from cityping_engine.config.logging_config import get_logger, setup_logging
from cityping_engine.config.settings import Settings
from cityping_engine.observability.metrics import ensure_metrics_exporter

logger = get_logger(__name__)


def add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "--json-logs",
        action="store_true",
        help="Emit logs in JSON format",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Expose Prometheus metrics on this port while the script runs",
    )


def initialize_runtime(
    settings: Settings, *, json_logs: bool = False, metrics_port: int | None = None
) -> None:
    """Initialize structlog-based logging and, optionally, the metrics exporter."""

    setup_logging(log_level=settings.log_level, json_logs=json_logs or settings.json_logs)
    logger.info("logging_initialized", level=settings.log_level, json_logs=json_logs)
    if metrics_port is not None:
        ensure_metrics_exporter(metrics_port)


def load_json_file(path: Path) -> Any:
    """Read a JSON document.

    Raises:
        ValueError: If the file is missing or is not valid JSON
    """
    try:
        with path.open(encoding="utf-8") as handle:
            return json.load(handle)
    except FileNotFoundError as exc:
        raise ValueError(f"Input file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ValueError(f"Invalid JSON in {path}: {exc}") from exc


def load_json_list(path: Path) -> list[Any]:
    """Read a JSON array, accepting a single object as a one-item list."""
    data = load_json_file(path)
    if isinstance(data, dict):
        return [data]
    if not isinstance(data, list):
        raise ValueError(f"Expected a JSON array in {path}")
    return data
