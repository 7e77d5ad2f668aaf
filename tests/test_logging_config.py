"""Tests for logging setup and correlation scopes."""

import logging

import structlog

from cityping_engine.config.logging_config import (
    add_app_context,
    render_enum_values,
    setup_logging,
)
from cityping_engine.domain.models import DeliveryWindow, RoutingAction
from cityping_engine.observability.tracing import CORRELATION_ID_KEY, correlation_scope


def test_render_enum_values_uses_plain_values() -> None:
    event = {
        "event": "content_routed",
        "window": DeliveryWindow.MORNING,
        "action": RoutingAction.DEFER,
        "priority": 50,
    }

    rendered = render_enum_values(logging.getLogger(), "info", event)

    assert rendered["window"] == "morning"
    assert rendered["action"] == "defer"
    assert rendered["priority"] == 50


def test_add_app_context_keeps_explicit_app() -> None:
    assert add_app_context(logging.getLogger(), "info", {})["app"] == "cityping_engine"
    assert add_app_context(logging.getLogger(), "info", {"app": "cli"})["app"] == "cli"


def test_setup_logging_quiets_driver_loggers() -> None:
    setup_logging(log_level="DEBUG")
    assert logging.getLogger("psycopg2").level == logging.WARNING

    setup_logging(log_level="DEBUG", verbose=True)
    assert logging.getLogger("psycopg2").level == logging.DEBUG

    setup_logging(log_level="bogus")
    assert logging.getLogger().level == logging.INFO


def test_correlation_scope_binds_and_unbinds_context() -> None:
    with correlation_scope("corr-1", user_id="user-1") as correlation_id:
        bound = structlog.contextvars.get_contextvars()
        assert correlation_id == "corr-1"
        assert bound[CORRELATION_ID_KEY] == "corr-1"
        assert bound["user_id"] == "user-1"

    remaining = structlog.contextvars.get_contextvars()
    assert CORRELATION_ID_KEY not in remaining
    assert "user_id" not in remaining


def test_correlation_scope_generates_id() -> None:
    with correlation_scope() as first, correlation_scope() as second:
        assert first
        assert first != second
