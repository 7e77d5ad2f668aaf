"""Tests for YAML-backed settings loading."""

import shutil
from pathlib import Path

import pytest
import yaml

from cityping_engine.config import settings as settings_module
from cityping_engine.config.settings import Settings, deep_merge, load_all_configs
from cityping_engine.domain.models import DeliveryWindow, UrgencyClass

REPO_SCHEMA = Path(__file__).resolve().parents[1] / "config" / "schemas" / "main.schema.json"


def _write_config(root: Path, name: str, data: object) -> Path:
    config_dir = root / "config"
    config_dir.mkdir(exist_ok=True)
    path = config_dir / name
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


def _install_schema(root: Path) -> None:
    schema_dir = root / "config" / "schemas"
    schema_dir.mkdir(parents=True, exist_ok=True)
    shutil.copy(REPO_SCHEMA, schema_dir / "main.schema.json")


@pytest.fixture
def isolated_cwd(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.chdir(tmp_path)
    for name in ("DATABASE_TYPE", "DB_PATH", "SCHEDULER_MAX_WORKERS"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


def test_deep_merge_nested() -> None:
    base = {"routing": {"timezone": "America/New_York", "window_hours": {"morning": 9}}}
    override = {"routing": {"window_hours": {"morning": 8}}}

    assert deep_merge(base, override) == {
        "routing": {"timezone": "America/New_York", "window_hours": {"morning": 8}}
    }


def test_defaults_without_config_dir(isolated_cwd: Path) -> None:
    settings = Settings()

    assert load_all_configs() == {}
    assert settings.database_type == "sqlite"
    assert settings.window_capacity[DeliveryWindow.MORNING] == 8
    assert settings.routing_policy().minimum(DeliveryWindow.MIDDAY) == 3
    assert settings.dedup_policy().title_similarity == 0.75


def test_yaml_overrides_defaults(isolated_cwd: Path) -> None:
    _install_schema(isolated_cwd)
    _write_config(
        isolated_cwd,
        "main.yaml",
        {
            "routing": {
                "timezone": "America/Chicago",
                "window_capacity": {"morning": 5},
                "freshness_hours": {"urgent": 2},
            },
            "deduplication": {"lookback_hours": 12},
            "delivery": {"free_tier_delay_hours": 12},
            "logging": {"level": "debug"},
        },
    )

    settings = Settings()
    policy = settings.routing_policy()

    assert policy.timezone == "America/Chicago"
    assert policy.capacity(DeliveryWindow.MORNING) == 5
    assert policy.capacity(DeliveryWindow.EVENING) == 10
    assert policy.max_age_hours(UrgencyClass.URGENT) == 2
    assert policy.max_age_hours(UrgencyClass.BATCHABLE) == 72
    assert settings.dedup_policy().lookback_hours == 12
    assert settings.free_tier_delay_hours == 12
    assert settings.log_level == "DEBUG"


def test_later_files_override_main(isolated_cwd: Path) -> None:
    _write_config(isolated_cwd, "main.yaml", {"delivery": {"max_workers": 4}})
    _write_config(isolated_cwd, "local.yaml", {"delivery": {"max_workers": 8}})

    assert Settings().scheduler_max_workers == 8


def test_explicit_values_win_over_yaml(isolated_cwd: Path) -> None:
    _write_config(isolated_cwd, "main.yaml", {"delivery": {"max_workers": 8}})

    assert Settings(scheduler_max_workers=2).scheduler_max_workers == 2


def test_environment_wins_over_yaml(
    isolated_cwd: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    _write_config(isolated_cwd, "main.yaml", {"database": {"path": "yaml.db"}})
    monkeypatch.setenv("DB_PATH", "env.db")

    assert Settings().db_path == "env.db"


def test_schema_violation_raises(isolated_cwd: Path) -> None:
    _install_schema(isolated_cwd)
    _write_config(
        isolated_cwd, "main.yaml", {"routing": {"window_hours": {"morning": 30}}}
    )

    with pytest.raises(ValueError, match="Config validation failed for main"):
        Settings()


def test_unreadable_yaml_is_skipped(
    isolated_cwd: Path, monkeypatch: pytest.MonkeyPatch, mocker
) -> None:
    mock_logger = mocker.Mock()
    monkeypatch.setattr(settings_module, "logger", mock_logger)
    config_dir = isolated_cwd / "config"
    config_dir.mkdir()
    (config_dir / "main.yaml").write_text("routing: [unclosed", encoding="utf-8")

    settings = Settings()

    assert settings.window_capacity[DeliveryWindow.MORNING] == 8
    assert mock_logger.warning.call_args.args[0] == "config_file_load_failed"


def test_non_mapping_yaml_raises(isolated_cwd: Path) -> None:
    _write_config(isolated_cwd, "main.yaml", ["not", "a", "mapping"])

    with pytest.raises(ValueError, match="must contain a mapping"):
        load_all_configs()


def test_get_settings_is_cached(
    isolated_cwd: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(settings_module, "_settings", None)

    first = settings_module.get_settings()

    assert settings_module.get_settings() is first


def test_repository_config_file_passes_its_schema(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.chdir(REPO_SCHEMA.parents[2])

    config = load_all_configs()

    assert config["database"]["type"] == "sqlite"


def test_schema_violations_reported_together(isolated_cwd: Path) -> None:
    _install_schema(isolated_cwd)
    _write_config(
        isolated_cwd,
        "main.yaml",
        {
            "routing": {"window_hours": {"morning": 30}},
            "delivery": {"max_workers": 0},
        },
    )

    with pytest.raises(ValueError) as excinfo:
        Settings()

    message = str(excinfo.value)
    assert "delivery.max_workers" in message
    assert "routing.window_hours.morning" in message


def test_unknown_timezone_rejected(isolated_cwd: Path) -> None:
    _write_config(isolated_cwd, "main.yaml", {"routing": {"timezone": "Mars/Olympus"}})

    with pytest.raises(ValueError, match="Unknown delivery timezone"):
        Settings()


def test_every_yaml_field_is_a_setting() -> None:
    assert set(settings_module.YAML_FIELDS) <= set(Settings.model_fields)
