"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import importlib.util
import os
from collections.abc import Generator
from datetime import datetime
from pathlib import Path
from types import ModuleType
from typing import Any

import pytest
import pytz
import sqlalchemy as sa
from alembic.migration import MigrationContext
from alembic.operations import Operations

from cityping_engine.adapters.repository_factory import create_repository
from cityping_engine.config.settings import Settings
from cityping_engine.domain.models import (
    AccountTier,
    ContentItem,
    ContentType,
    DeduplicationCandidate,
    MatchableEvent,
    MatchablePreference,
    MatchableUser,
    SmsOptInStatus,
)
from cityping_engine.domain.protocols import RepositoryProtocol
from cityping_engine.services.content_router import create_content_item

# 09:00 America/New_York (EST), i.e. the morning window send time.
FIXED_NOW = datetime(2025, 1, 15, 14, 0, tzinfo=pytz.UTC)


@pytest.fixture
def settings(
    tmp_path_factory: pytest.TempPathFactory, request: pytest.FixtureRequest
) -> Settings:
    """Create settings configured for the requested database backend."""

    base_settings = Settings()

    backend = "sqlite"
    if hasattr(request.node, "callspec"):
        backend = request.node.callspec.params.get("repo", backend)

    if request.node.get_closest_marker("postgres"):
        backend = "postgres"

    if backend == "postgres":
        if os.environ.get("TEST_POSTGRES", "0") != "1":
            pytest.skip("PostgreSQL tests disabled (TEST_POSTGRES!=1)")
        if not os.environ.get("POSTGRES_PASSWORD"):
            pytest.skip("POSTGRES_PASSWORD not set for PostgreSQL tests")
        return base_settings.model_copy(update={"database_type": "postgres"})

    temp_dir = tmp_path_factory.mktemp("db")
    db_path = temp_dir / "test.sqlite"
    return base_settings.model_copy(
        update={"database_type": "sqlite", "db_path": str(db_path)}
    )


@pytest.fixture
def repo(settings: Settings) -> Generator[RepositoryProtocol, None, None]:
    """Provide a repository instance for the configured backend."""

    repository = create_repository(settings)

    try:
        yield repository
    finally:
        repository.close()

        if settings.database_type == "sqlite":
            db_path = Path(settings.db_path)
            if db_path.exists():
                try:
                    db_path.unlink()
                except OSError:
                    pass


@pytest.fixture
def now() -> datetime:
    """Fixed reference time at the morning window."""
    return FIXED_NOW


def create_test_item(
    content_type: ContentType = ContentType.WEATHER_DAILY,
    content_id: str | None = None,
    priority: int | None = None,
    created_at: datetime | None = None,
    **kwargs: Any,
) -> ContentItem:
    """Helper to create a content item created at the fixed reference time."""
    return create_content_item(
        content_type,
        content_id or f"{content_type.value}-1",
        kwargs.pop("title", f"{content_type.value} update"),
        priority=priority,
        created_at=created_at or FIXED_NOW,
        **kwargs,
    )


def create_test_user(
    user_id: str = "user-1",
    tier: AccountTier = AccountTier.FREE,
    phone: str | None = None,
    sms_opt_in: SmsOptInStatus = SmsOptInStatus.NONE,
) -> MatchableUser:
    return MatchableUser(
        user_id=user_id,
        email=f"{user_id}@example.com",
        phone=phone,
        tier=tier,
        sms_opt_in=sms_opt_in,
    )


def create_test_candidate(
    title: str = "Fire in Queens apartment building",
    locator: str = "https://a.com/queens-fire",
    source: str = "source-a",
    excerpt: str | None = None,
    external_id: str | None = None,
) -> DeduplicationCandidate:
    return DeduplicationCandidate(
        title=title,
        locator=locator,
        source=source,
        excerpt=excerpt,
        external_id=external_id or f"{source}:{locator}",
    )


def create_test_event(
    event_id: str = "event-1",
    topic: str | None = "transit",
    metadata: dict[str, Any] | None = None,
    target_areas: list[str] | None = None,
) -> MatchableEvent:
    return MatchableEvent(
        event_id=event_id,
        topic=topic,
        title=f"{topic} alert",
        metadata=metadata or {},
        target_areas=target_areas or [],
    )


def create_test_preference(
    user_id: str = "user-1", topic: str = "transit", **settings: Any
) -> MatchablePreference:
    return MatchablePreference(
        user_id=user_id, topic=topic, settings={"topic": topic, **settings}
    )


POSTGRES_TABLES = (
    "user_preferences",
    "users",
    "delivery_tasks",
    "accepted_items",
    "pending_content",
    "send_history",
)

MIGRATION_PATH = (
    Path(__file__).resolve().parent.parent
    / "alembic"
    / "versions"
    / "001_initial_schema.py"
)


def load_initial_migration() -> ModuleType:
    """Import the initial Alembic revision as a module."""
    spec = importlib.util.spec_from_file_location("initial_schema", MIGRATION_PATH)
    assert spec is not None and spec.loader is not None
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def _drop_postgres_tables(engine: Any) -> None:
    with engine.begin() as conn:
        for table in POSTGRES_TABLES:
            conn.execute(sa.text(f"DROP TABLE IF EXISTS {table} CASCADE"))


@pytest.fixture
def postgres_test_db() -> Generator[RepositoryProtocol, None, None]:
    """Setup and teardown PostgreSQL test database.

    Requires:
        - POSTGRES_PASSWORD environment variable
        - TEST_POSTGRES=1 environment variable
        - PostgreSQL running on POSTGRES_HOST:POSTGRES_PORT

    Yields:
        PostgresRepository instance with a freshly migrated schema
    """
    if os.environ.get("TEST_POSTGRES", "0") != "1":
        pytest.skip("TEST_POSTGRES=1 not set - skipping PostgreSQL tests")
    if not os.environ.get("POSTGRES_PASSWORD"):
        pytest.skip("POSTGRES_PASSWORD not set - skipping PostgreSQL tests")

    settings = Settings().model_copy(update={"database_type": "postgres"})
    assert settings.postgres_password is not None
    url = sa.engine.URL.create(
        "postgresql+psycopg2",
        username=settings.postgres_user,
        password=settings.postgres_password.get_secret_value(),
        host=settings.postgres_host,
        port=settings.postgres_port,
        database=settings.postgres_database,
    )
    engine = sa.create_engine(url)
    _drop_postgres_tables(engine)

    migration = load_initial_migration()
    with engine.begin() as conn:
        with Operations.context(MigrationContext.configure(conn)):
            migration.upgrade()

    repository = create_repository(settings)
    try:
        yield repository
    finally:
        repository.close()
        _drop_postgres_tables(engine)
        engine.dispose()
