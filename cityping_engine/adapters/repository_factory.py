"""Builds the configured storage backend."""

from collections.abc import Callable
from typing import cast

from cityping_engine.adapters.postgres_repository import PostgresRepository
from cityping_engine.adapters.sqlite_repository import SQLiteRepository
from cityping_engine.config.logging_config import get_logger
from cityping_engine.config.settings import Settings
from cityping_engine.domain.exceptions import ConfigurationError
from cityping_engine.domain.protocols import RepositoryProtocol

logger = get_logger(__name__)


def _sqlite(settings: Settings) -> RepositoryProtocol:
    logger.info("repository_sqlite_selected", path=settings.db_path)
    return cast(RepositoryProtocol, SQLiteRepository(db_path=settings.db_path))


def _postgres(settings: Settings) -> RepositoryProtocol:
    if settings.postgres_password is None:
        raise ConfigurationError(
            "POSTGRES_PASSWORD environment variable must be set when using PostgreSQL"
        )
    logger.info(
        "repository_postgres_selected",
        host=settings.postgres_host,
        port=settings.postgres_port,
        database=settings.postgres_database,
    )
    repository = PostgresRepository(
        host=settings.postgres_host,
        port=settings.postgres_port,
        database=settings.postgres_database,
        user=settings.postgres_user,
        password=settings.postgres_password.get_secret_value(),
        settings=settings,
    )
    return cast(RepositoryProtocol, repository)


BACKENDS: dict[str, Callable[[Settings], RepositoryProtocol]] = {
    "sqlite": _sqlite,
    "postgres": _postgres,
}


def create_repository(settings: Settings) -> RepositoryProtocol:
    """Open the repository named by ``settings.database_type``.

    Raises:
        ConfigurationError: Unknown backend, or PostgreSQL without a password
        RepositoryError: If the backend cannot connect
    """
    build = BACKENDS.get(settings.database_type)
    if build is None:
        supported = ", ".join(sorted(BACKENDS))
        raise ConfigurationError(
            f"Unsupported database type: {settings.database_type}. "
            f"Expected one of: {supported}"
        )
    return build(settings)
