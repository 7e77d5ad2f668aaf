"""structlog setup for the engine.

Every module logs through ``get_logger(__name__)`` with snake_case event
names and keyword context. ``setup_logging`` is called once per process by
the CLI runtime; JSON output is meant for production, the console renderer
for local runs.
"""

import logging
import sys
from enum import Enum
from typing import Any

import structlog
from structlog.types import EventDict, Processor

APP_NAME = "cityping_engine"

# Driver loggers that are chatty at INFO.
NOISY_LOGGERS = ("psycopg2", "alembic", "sqlalchemy.engine")


def add_app_context(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    event_dict.setdefault("app", APP_NAME)
    return event_dict


def render_enum_values(
    logger: logging.Logger, method_name: str, event_dict: EventDict
) -> EventDict:
    """Log enum members (windows, channels, actions) by their value."""
    for key, value in event_dict.items():
        if isinstance(value, Enum):
            event_dict[key] = value.value
    return event_dict


def _shared_processors() -> list[Processor]:
    return [
        structlog.stdlib.filter_by_level,
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        add_app_context,
        render_enum_values,
    ]


def setup_logging(
    log_level: str = "INFO",
    json_logs: bool = False,
    verbose: bool = False,
) -> None:
    """Configure structlog on top of stdlib logging.

    Args:
        log_level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_logs: Render JSON lines instead of the colored console format
        verbose: Leave driver loggers at ``log_level`` instead of WARNING
    """
    level = logging.getLevelName(log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    logging.getLogger().setLevel(level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level if verbose else logging.WARNING)

    processors = _shared_processors()
    if json_logs:
        processors += [
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Structured logger for ``name`` (usually ``__name__``).

    Example:
        >>> logger = get_logger(__name__)
        >>> logger.info("content_routed", content_id="asp-2025-01-02", action="include")
    """
    return structlog.get_logger(name)  # type: ignore[no-any-return]


def bind_context(**kwargs: Any) -> None:
    """Attach context to every log entry emitted from the current context."""
    structlog.contextvars.bind_contextvars(**kwargs)


def unbind_context(*keys: str) -> None:
    structlog.contextvars.unbind_contextvars(*keys)
