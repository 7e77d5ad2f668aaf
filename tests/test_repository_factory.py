"""Tests for repository backend selection."""

import pytest
from pydantic import SecretStr

from cityping_engine.adapters.repository_factory import create_repository
from cityping_engine.adapters.sqlite_repository import SQLiteRepository
from cityping_engine.config.settings import Settings
from cityping_engine.domain.exceptions import ConfigurationError


def test_sqlite_backend(settings: Settings) -> None:
    repository = create_repository(settings)
    try:
        assert isinstance(repository, SQLiteRepository)
    finally:
        repository.close()


def test_postgres_backend_requires_password(settings: Settings) -> None:
    settings = settings.model_copy(
        update={"database_type": "postgres", "postgres_password": None}
    )

    with pytest.raises(ConfigurationError, match="POSTGRES_PASSWORD"):
        create_repository(settings)


def test_postgres_backend_passes_connection_settings(
    settings: Settings, mocker
) -> None:
    postgres = mocker.patch(
        "cityping_engine.adapters.repository_factory.PostgresRepository"
    )
    settings = settings.model_copy(
        update={
            "database_type": "postgres",
            "postgres_host": "db.internal",
            "postgres_port": 6543,
            "postgres_password": SecretStr("s3cret"),
        }
    )

    repository = create_repository(settings)

    assert repository is postgres.return_value
    kwargs = postgres.call_args.kwargs
    assert kwargs["host"] == "db.internal"
    assert kwargs["port"] == 6543
    assert kwargs["password"] == "s3cret"
    assert kwargs["settings"] is settings


def test_unsupported_backend(settings: Settings) -> None:
    settings = settings.model_copy(update={"database_type": "mysql"})

    with pytest.raises(ConfigurationError, match="Unsupported database type"):
        create_repository(settings)
