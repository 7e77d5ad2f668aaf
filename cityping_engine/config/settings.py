"""Engine settings.

Values resolve in this order, first match wins:

1. Keyword arguments and environment variables (``DB_PATH``, ``POSTGRES_PASSWORD``)
2. ``config/*.yaml``, with ``main.yaml`` first and other files layered on top
3. The defaults below, which mirror the routing and dedup constants

Each YAML file is checked against ``config/schemas/<stem>.schema.json`` when
that schema exists. The PostgreSQL password is only read from the
environment or ``.env``.
"""

import json
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any, Final, Literal, cast

import pytz
import yaml
from jsonschema import Draft7Validator
from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cityping_engine.config.logging_config import get_logger
from cityping_engine.domain import deduplication_constants as dedup
from cityping_engine.domain import routing_constants as routing
from cityping_engine.domain.matching_constants import FREE_TIER_DELAY_HOURS
from cityping_engine.domain.models import DeliveryWindow, UrgencyClass
from cityping_engine.domain.policies import DedupPolicy, RoutingPolicy

POSTGRES_MIN_CONNECTIONS_DEFAULT: Final[int] = 1
POSTGRES_MAX_CONNECTIONS_DEFAULT: Final[int] = 10
POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT: Final[int] = 10_000
POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT: Final[int] = 10

SCHEDULER_MAX_WORKERS_DEFAULT: Final[int] = 4
USER_LOCK_TIMEOUT_SECONDS_DEFAULT: Final[float] = 30.0

CONFIG_DIR: Final[Path] = Path("config")
MAIN_CONFIG: Final[str] = "main.yaml"

logger = cast(Any, get_logger(__name__))


def deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge ``override`` into a copy of ``base``; override wins."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = value
    return merged


def load_schema(schema_name: str) -> dict[str, Any] | None:
    """JSON Schema for a config file stem, or None when there is none."""
    schema_path = CONFIG_DIR / "schemas" / f"{schema_name}.schema.json"
    if not schema_path.is_file():
        return None
    try:
        return cast(dict[str, Any], json.loads(schema_path.read_text(encoding="utf-8")))
    except (json.JSONDecodeError, OSError) as exc:
        logger.warning("config_schema_load_failed", schema=schema_name, error=str(exc))
        return None


def validate_config_section(
    config: dict[str, Any], schema_name: str, file_path: str = ""
) -> None:
    """Check ``config`` against its schema, reporting every violation at once.

    Raises:
        ValueError: If any part of the config violates the schema
    """
    schema = load_schema(schema_name)
    if not schema:
        return

    errors = sorted(
        Draft7Validator(schema).iter_errors(config),
        key=lambda error: [str(part) for part in error.absolute_path],
    )
    if not errors:
        logger.debug("config_validation_succeeded", schema=schema_name)
        return

    details = "; ".join(
        f"{'.'.join(str(part) for part in error.absolute_path) or '<root>'}: {error.message}"
        for error in errors
    )
    location = f" (file: {file_path})" if file_path else ""
    raise ValueError(f"Config validation failed for {schema_name}{location}: {details}")


def _read_yaml(path: Path) -> dict[str, Any]:
    loaded = yaml.safe_load(path.read_text(encoding="utf-8"))
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ValueError(f"Config file {path} must contain a mapping")
    return loaded


def _config_files() -> list[Path]:
    main_path = CONFIG_DIR / MAIN_CONFIG
    others = sorted(path for path in CONFIG_DIR.glob("*.yaml") if path != main_path)
    return [main_path, *others] if main_path.is_file() else others


def load_all_configs() -> dict[str, Any]:
    """Merge every YAML file under ``config/`` into one mapping.

    Unreadable files are logged and skipped; schema violations raise.
    """
    merged: dict[str, Any] = {}
    if not CONFIG_DIR.is_dir():
        logger.debug("config_dir_missing", path=str(CONFIG_DIR))
        return merged

    files = _config_files()
    for path in files:
        try:
            section = _read_yaml(path)
        except (yaml.YAMLError, OSError) as exc:
            logger.warning("config_file_load_failed", path=str(path), error=str(exc))
            continue

        try:
            validate_config_section(section, path.stem, str(path))
        except ValueError as exc:
            logger.error(
                "config_validation_failed", path=str(path), schema=path.stem, error=str(exc)
            )
            raise

        merged = deep_merge(merged, section)
        logger.debug("config_file_loaded", path=str(path))

    logger.info("config_load_complete", file_count=len(files))
    return merged


def _check_timezone(name: str) -> str:
    try:
        pytz.timezone(name)
    except pytz.UnknownTimeZoneError as exc:
        raise ValueError(f"Unknown delivery timezone: {name}") from exc
    return name


YamlParser = Callable[[Any, Any], Any]


def _as_is(raw: Any, current: Any) -> Any:
    return raw


def _upper(raw: Any, current: Any) -> Any:
    return raw.upper() if isinstance(raw, str) else None


def _timezone(raw: Any, current: Any) -> str:
    return _check_timezone(str(raw))


def _per_window(raw: Mapping[str, Any], current: Mapping[DeliveryWindow, int]) -> Any:
    merged = dict(current)
    merged.update({DeliveryWindow(key): int(value) for key, value in raw.items()})
    return merged


def _per_urgency(raw: Mapping[str, Any], current: Mapping[UrgencyClass, int]) -> Any:
    merged = dict(current)
    merged.update({UrgencyClass(key): int(value) for key, value in raw.items()})
    return merged


# Settings field -> (path inside the merged YAML, parser of (raw, current)).
YAML_FIELDS: Final[dict[str, tuple[tuple[str, ...], YamlParser]]] = {
    "database_type": (("database", "type"), _as_is),
    "db_path": (("database", "path"), _as_is),
    "postgres_host": (("database", "postgres", "host"), _as_is),
    "postgres_port": (("database", "postgres", "port"), _as_is),
    "postgres_database": (("database", "postgres", "database"), _as_is),
    "postgres_user": (("database", "postgres", "user"), _as_is),
    "delivery_timezone": (("routing", "timezone"), _timezone),
    "window_hours": (("routing", "window_hours"), _per_window),
    "window_capacity": (("routing", "window_capacity"), _per_window),
    "window_minimum": (("routing", "window_minimum"), _per_window),
    "freshness_hours": (("routing", "freshness_hours"), _per_urgency),
    "history_lookback_hours": (("routing", "history_lookback_hours"), _as_is),
    "dedup_lookback_hours": (("deduplication", "lookback_hours"), _as_is),
    "dedup_title_similarity": (("deduplication", "title_similarity"), _as_is),
    "dedup_candidate_limit": (("deduplication", "candidate_limit"), _as_is),
    "dedup_min_fingerprint_length": (
        ("deduplication", "min_fingerprint_length"),
        _as_is,
    ),
    "free_tier_delay_hours": (("delivery", "free_tier_delay_hours"), _as_is),
    "scheduler_max_workers": (("delivery", "max_workers"), _as_is),
    "user_lock_timeout_seconds": (("delivery", "user_lock_timeout_seconds"), _as_is),
    "log_level": (("logging", "level"), _upper),
    "json_logs": (("logging", "json"), _as_is),
}


def _lookup(config: Mapping[str, Any], path: tuple[str, ...]) -> Any:
    node: Any = config
    for key in path:
        if not isinstance(node, Mapping):
            return None
        node = node.get(key)
    return node


class Settings(BaseSettings):
    """Engine settings; see the module docstring for precedence."""

    model_config = SettingsConfigDict(
        env_file=".env" if Path(".env").exists() else None,
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # === Secrets ===

    postgres_password: SecretStr | None = Field(
        default=None, description="Required when database_type is postgres"
    )

    # === Storage ===

    database_type: Literal["sqlite", "postgres"] = Field(default="sqlite")
    db_path: str = Field(default="data/cityping.db", description="SQLite file")

    postgres_host: str = "localhost"
    postgres_port: int = 5432
    postgres_database: str = "cityping"
    postgres_user: str = "postgres"
    postgres_min_connections: int = Field(default=POSTGRES_MIN_CONNECTIONS_DEFAULT, ge=1)
    postgres_max_connections: int = Field(default=POSTGRES_MAX_CONNECTIONS_DEFAULT, ge=1)
    postgres_statement_timeout_ms: int = Field(
        default=POSTGRES_STATEMENT_TIMEOUT_MS_DEFAULT, ge=0
    )
    postgres_connect_timeout_seconds: int = Field(
        default=POSTGRES_CONNECT_TIMEOUT_SECONDS_DEFAULT, ge=1
    )
    postgres_application_name: str = "cityping_engine"
    postgres_ssl_mode: str | None = Field(default=None, description="e.g. require")

    # === Routing ===
    delivery_timezone: str = Field(
        default=routing.DELIVERY_TIMEZONE,
        description="Timezone of the window clock times",
    )
    window_hours: dict[DeliveryWindow, int] = Field(
        default_factory=lambda: dict(routing.WINDOW_HOURS),
        description="Local send hour per window",
    )
    window_capacity: dict[DeliveryWindow, int] = Field(
        default_factory=lambda: dict(routing.WINDOW_CAPACITY),
        description="Maximum items per window",
    )
    window_minimum: dict[DeliveryWindow, int] = Field(
        default_factory=lambda: dict(routing.WINDOW_MINIMUM),
        description="Minimum items for a window to be sent",
    )
    freshness_hours: dict[UrgencyClass, int] = Field(
        default_factory=lambda: dict(routing.FRESHNESS_HOURS),
        description="Maximum content age per urgency class",
    )
    history_lookback_hours: int = Field(
        default=routing.DEFAULT_HISTORY_LOOKBACK_HOURS,
        ge=1,
        description="Send history lookback for resend suppression",
    )

    # === Deduplication ===
    dedup_lookback_hours: int = Field(
        default=dedup.DEFAULT_LOOKBACK_HOURS,
        ge=1,
        description="Accepted items older than this are not compared",
    )
    dedup_title_similarity: float = Field(
        default=dedup.DEFAULT_TITLE_SIMILARITY,
        ge=0.0,
        le=1.0,
        description="Jaccard threshold for title matches",
    )
    dedup_candidate_limit: int = Field(
        default=dedup.DEFAULT_CANDIDATE_LIMIT,
        ge=1,
        description="Recent items fetched for fuzzy stages",
    )
    dedup_min_fingerprint_length: int = Field(
        default=dedup.MIN_FINGERPRINT_LENGTH,
        ge=1,
        description="Shortest fingerprint that can prove a duplicate",
    )

    # === Delivery ===
    free_tier_delay_hours: int = Field(
        default=FREE_TIER_DELAY_HOURS,
        ge=0,
        description="Free-tier email latency in hours",
    )
    scheduler_max_workers: int = Field(
        default=SCHEDULER_MAX_WORKERS_DEFAULT,
        ge=1,
        description="Thread pool size for per-user scheduling",
    )
    user_lock_timeout_seconds: float = Field(
        default=USER_LOCK_TIMEOUT_SECONDS_DEFAULT,
        gt=0,
        description="Per-user scheduling lock timeout",
    )

    # === Logging ===
    log_level: str = Field(default="INFO", description="Logging level")
    json_logs: bool = Field(default=False, description="Render logs as JSON")

    @field_validator("log_level")
    @classmethod
    def _normalize_log_level(cls, value: str) -> str:
        return value.upper()

    @field_validator("delivery_timezone")
    @classmethod
    def _known_timezone(cls, value: str) -> str:
        return _check_timezone(value)

    def __init__(self, **data: Any):
        """Build settings, then fill fields not set explicitly from YAML."""
        config = load_all_configs()

        super().__init__(**data)
        self._apply_yaml_defaults(config)

    def _apply_yaml_defaults(self, config: Mapping[str, Any]) -> None:
        explicit = set(self.model_fields_set)

        for field_name, (path, parse) in YAML_FIELDS.items():
            if field_name in explicit:
                continue
            raw = _lookup(config, path)
            if raw is None or raw == {}:
                continue
            value = parse(raw, getattr(self, field_name))
            if value is None:
                continue
            object.__setattr__(self, field_name, value)
            self.model_fields_set.add(field_name)

    def routing_policy(self) -> RoutingPolicy:
        """Build the immutable routing policy from current settings."""
        return RoutingPolicy(
            timezone=self.delivery_timezone,
            window_hours=self.window_hours,
            window_capacity=self.window_capacity,
            window_minimum=self.window_minimum,
            freshness_hours=self.freshness_hours,
            history_lookback_hours=self.history_lookback_hours,
        )

    def dedup_policy(self) -> DedupPolicy:
        return DedupPolicy(
            lookback_hours=self.dedup_lookback_hours,
            title_similarity=self.dedup_title_similarity,
            candidate_limit=self.dedup_candidate_limit,
            min_fingerprint_length=self.dedup_min_fingerprint_length,
        )


_settings: Settings | None = None


def get_settings() -> Settings:
    """Process-wide settings, created on first use."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
