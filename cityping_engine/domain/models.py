"""Domain models for the CityPing delivery engine.

All models use Pydantic v2 for validation and serialization.
"""

from datetime import UTC, datetime
from enum import Enum, StrEnum
from typing import Any, Literal
from uuid import UUID, uuid4

from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator
from pydantic import ValidationError as PydanticValidationError

from cityping_engine.domain.validation_constants import (
    MAX_PRIORITY,
    MAX_REPORT_SAMPLES,
    MIN_PRIORITY,
)


def _ensure_utc(value: datetime | None) -> datetime | None:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


class DeliveryWindow(StrEnum):
    """Fixed daily delivery slots, in delivery order."""

    MORNING = "morning"
    MIDDAY = "midday"
    EVENING = "evening"


class UrgencyClass(StrEnum):
    """Urgency class governing freshness and routing aggressiveness."""

    URGENT = "urgent"
    TIME_SENSITIVE = "time_sensitive"
    EVERGREEN = "evergreen"
    BATCHABLE = "batchable"


class ContentType(StrEnum):
    """Catalog of schedulable digest content."""

    # Parking
    ASP_STATUS = "asp_status"
    ASP_SUSPENSION = "asp_suspension"
    ASP_IN_EFFECT = "asp_in_effect"
    ASP_TOMORROW = "asp_tomorrow"
    METER_STATUS = "meter_status"
    PARKING_EMERGENCY = "parking_emergency"
    # Transit
    TRANSIT_DELAY = "transit_delay"
    TRANSIT_OUTAGE = "transit_outage"
    TRANSIT_ADVISORY = "transit_advisory"
    TRANSIT_RESTORATION = "transit_restoration"
    # Weather
    WEATHER_SEVERE = "weather_severe"
    WEATHER_ADVISORY = "weather_advisory"
    WEATHER_DAILY = "weather_daily"
    # News & events
    BREAKING_NEWS = "breaking_news"
    LOCAL_NEWS = "local_news"
    EVENT_REMINDER = "event_reminder"
    STREET_CLOSURE = "street_closure"
    # System
    WELCOME = "welcome"
    WEEKLY_RECAP = "weekly_recap"
    TIPS = "tips"
    NEIGHBORHOOD_UPDATE = "neighborhood_update"


class RoutingAction(str, Enum):
    """Outcome of routing one content item."""

    INCLUDE = "include"
    DEFER = "defer"
    SKIP = "skip"
    SEND_IMMEDIATE = "send_immediate"


IMMEDIATE: Literal["immediate"] = "immediate"
"""Routing target for content that bypasses the daily windows."""


class ContentItem(BaseModel):
    """A schedulable piece of digest content produced by a source adapter."""

    model_config = ConfigDict(frozen=True)

    content_id: str = Field(..., min_length=1, description="Stable adapter identifier")
    content_type: ContentType = Field(..., description="Catalog content type")
    title: str = Field(default="", description="Headline")
    body: str | None = Field(default=None, description="Optional body text")
    priority: int = Field(
        ..., ge=MIN_PRIORITY, le=MAX_PRIORITY, description="0-100, higher is more important"
    )
    created_at: datetime = Field(..., description="Creation timestamp (UTC)")
    expires_at: datetime | None = Field(
        default=None, description="After this instant the item is never sent"
    )
    valid_windows: tuple[DeliveryWindow, ...] | None = Field(
        default=None, description="Overrides the content type's preferred windows"
    )
    source_id: str | None = Field(
        default=None, description="Upstream identifier used for cross-run dedup"
    )
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("created_at", "expires_at")
    @classmethod
    def _ensure_tz(cls, value: datetime | None) -> datetime | None:
        return _ensure_utc(value)


class RoutingDecision(BaseModel):
    """Result of evaluating one item against the current window and time."""

    item: ContentItem
    action: RoutingAction
    target: DeliveryWindow | Literal["immediate"]
    reason: str
    defer_until: datetime | None = None


class RoutedContent(BaseModel):
    """Routing decisions partitioned by action."""

    include: list[RoutingDecision] = Field(default_factory=list)
    defer: list[RoutingDecision] = Field(default_factory=list)
    skip: list[RoutingDecision] = Field(default_factory=list)
    immediate: list[RoutingDecision] = Field(default_factory=list)


class SendHistoryEntry(BaseModel):
    """Durable record that content was delivered to a user in a window."""

    user_id: str
    content_id: str
    content_type: ContentType
    source_id: str | None = None
    sent_at: datetime
    window: DeliveryWindow
    version: int = Field(default=1, ge=1)

    @field_validator("sent_at")
    @classmethod
    def _ensure_tz(cls, value: datetime) -> datetime:
        return _ensure_utc(value)  # type: ignore[return-value]


class SlotBucket(BaseModel):
    """Items chosen for one (user, window) after capacity and minimum rules."""

    window: DeliveryWindow
    items: list[ContentItem] = Field(default_factory=list)
    dropped: list[ContentItem] = Field(default_factory=list)
    should_send: bool = False
    skip_reason: str | None = None

    @property
    def total_priority(self) -> int:
        return sum(item.priority for item in self.items)


class ScarcityAction(str, Enum):
    """What to do with a window that is below its minimum."""

    SEND = "send"
    SKIP = "skip"
    COMBINE_NEXT = "combine_next"


class ScarcityOutcome(BaseModel):
    action: ScarcityAction
    reason: str


class AbundanceOutcome(BaseModel):
    """Partition of an over-capacity window."""

    keep: list[ContentItem] = Field(default_factory=list)
    defer: list[ContentItem] = Field(default_factory=list)
    drop: list[ContentItem] = Field(default_factory=list)
    immediate: list[ContentItem] = Field(default_factory=list)
    reason: str


class PendingContent(BaseModel):
    """A deferred item waiting for its target window."""

    user_id: str
    window: DeliveryWindow
    item: ContentItem
    eligible_at: datetime

    @field_validator("eligible_at")
    @classmethod
    def _ensure_tz(cls, value: datetime) -> datetime:
        return _ensure_utc(value)  # type: ignore[return-value]


# === Deduplication ===


class MatchStage(str, Enum):
    """Cascade stage that detected a duplicate."""

    NONE = "none"
    LOCATOR = "locator"
    LOCATOR_SIGNATURE = "locator_signature"
    TITLE_SIMILARITY = "title_similarity"
    FINGERPRINT = "fingerprint"


class DeduplicationCandidate(BaseModel):
    """Incoming story from a source adapter."""

    title: str = Field(..., min_length=1)
    locator: str = Field(..., min_length=1, description="URL-like reference")
    source: str = Field(..., min_length=1, description="Source name")
    excerpt: str | None = Field(default=None, description="Short snippet")
    external_id: str = Field(..., min_length=1, description="Upstream identifier")


class AcceptedItem(BaseModel):
    """A candidate that passed deduplication and was persisted."""

    item_id: UUID = Field(default_factory=uuid4)
    source: str
    title: str
    locator: str
    excerpt: str | None = None
    external_id: str
    locator_signature: str | None = None
    fingerprint: str | None = None
    accepted_at: datetime

    @field_validator("accepted_at")
    @classmethod
    def _ensure_tz(cls, value: datetime) -> datetime:
        return _ensure_utc(value)  # type: ignore[return-value]


class DedupCheckResult(BaseModel):
    """Outcome of running the cascade for one candidate."""

    is_duplicate: bool
    existing_item_id: str | None = None
    existing_source: str | None = None
    match_stage: MatchStage = MatchStage.NONE
    similarity: float | None = None
    detected_on_insert: bool = Field(
        default=False,
        description="True when the duplicate surfaced as a unique-key conflict",
    )


class DuplicateMatch(BaseModel):
    candidate: DeduplicationCandidate
    result: DedupCheckResult


class BatchDedupResult(BaseModel):
    unique: list[DeduplicationCandidate] = Field(default_factory=list)
    duplicates: list[DuplicateMatch] = Field(default_factory=list)


# === Matching & delivery ===


class AccountTier(str, Enum):
    FREE = "free"
    PREMIUM = "premium"


class SmsOptInStatus(str, Enum):
    NONE = "none"
    PENDING = "pending"
    CONFIRMED = "confirmed"
    REVOKED = "revoked"


class TransitSettings(BaseModel):
    """Monitored subway/bus routes."""

    topic: Literal["transit"] = "transit"
    routes: list[str] = Field(default_factory=list)


class HousingSettings(BaseModel):
    """Income bracket for lottery eligibility."""

    topic: Literal["housing"] = "housing"
    income_bracket: str | None = None


class ParkingSettings(BaseModel):
    """Opt-out switches for citywide parking sub-alerts."""

    topic: Literal["parking"] = "parking"
    asp_alerts: bool | None = None


class WeatherSettings(BaseModel):
    topic: Literal["weather"] = "weather"


class EventsSettings(BaseModel):
    topic: Literal["events"] = "events"
    area: str | None = None


class DealsSettings(BaseModel):
    topic: Literal["deals"] = "deals"
    area: str | None = None


class UnrecognizedTopicSettings(BaseModel):
    """Settings for a topic without dedicated matching rules."""

    topic: str
    values: dict[str, Any] = Field(default_factory=dict)


TopicSettings = (
    TransitSettings
    | HousingSettings
    | ParkingSettings
    | WeatherSettings
    | EventsSettings
    | DealsSettings
    | UnrecognizedTopicSettings
)

_SETTINGS_BY_TOPIC: dict[str, type[TopicSettings]] = {
    "transit": TransitSettings,
    "housing": HousingSettings,
    "parking": ParkingSettings,
    "weather": WeatherSettings,
    "events": EventsSettings,
    "deals": DealsSettings,
}


def parse_topic_settings(topic: str, raw: dict[str, Any] | None) -> TopicSettings:
    """Build the typed settings variant for ``topic`` from a stored blob.

    Unknown topics, and blobs that do not fit their topic's shape, become
    ``UnrecognizedTopicSettings`` so matching still follows the topic's rule.
    """
    values = dict(raw or {})
    values.pop("topic", None)
    settings_cls = _SETTINGS_BY_TOPIC.get(topic)
    if settings_cls is None:
        return UnrecognizedTopicSettings(topic=topic, values=values)
    try:
        return settings_cls(**values)
    except PydanticValidationError:
        return UnrecognizedTopicSettings(topic=topic, values=values)


def topic_settings_blob(settings: TopicSettings) -> dict[str, Any]:
    """Flat JSON blob for storage; inverse of ``parse_topic_settings``."""
    if isinstance(settings, UnrecognizedTopicSettings):
        return {"topic": settings.topic, **settings.values}
    return settings.model_dump(mode="json")


class MatchableEvent(BaseModel):
    """An accepted event ready for per-user fan-out."""

    event_id: str = Field(..., min_length=1)
    topic: str | None = Field(default=None, description="Topic identifier")
    title: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    target_areas: list[str] = Field(
        default_factory=list, description="Empty means citywide"
    )


class MatchablePreference(BaseModel):
    """A user's enablement and typed settings for one topic."""

    user_id: str
    topic: str
    enabled: bool = True
    settings: TopicSettings

    @field_validator("settings", mode="before")
    @classmethod
    def _parse_settings(cls, value: Any, info: ValidationInfo) -> Any:
        if isinstance(value, dict):
            return parse_topic_settings(str(info.data.get("topic", "")), value)
        return value


class MatchableUser(BaseModel):
    user_id: str
    email: str
    phone: str | None = None
    tier: AccountTier = AccountTier.FREE
    sms_opt_in: SmsOptInStatus = SmsOptInStatus.NONE


class DeliveryChannel(str, Enum):
    SMS = "sms"
    EMAIL = "email"


class DeliveryKind(str, Enum):
    """What a delivery task points at."""

    EVENT = "event"
    IMMEDIATE_CONTENT = "immediate_content"
    WINDOW_DIGEST = "window_digest"


class DeliveryStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class DeliveryTask(BaseModel):
    """Outbox row consumed by the transport layer."""

    task_id: UUID = Field(default_factory=uuid4)
    user_id: str
    reference_id: str = Field(..., description="Event id, content id or digest key")
    kind: DeliveryKind
    channel: DeliveryChannel
    scheduled_for: datetime
    status: DeliveryStatus = DeliveryStatus.PENDING
    payload: dict[str, Any] = Field(default_factory=dict)

    @field_validator("scheduled_for")
    @classmethod
    def _ensure_tz(cls, value: datetime) -> datetime:
        return _ensure_utc(value)  # type: ignore[return-value]

    @property
    def idempotency_key(self) -> tuple[str, str, str]:
        return (self.user_id, self.reference_id, self.channel.value)


# === Validation reporting ===


class ValidationFailure(BaseModel):
    """A raw adapter payload that failed schema validation."""

    source: str
    payload: Any
    error: str
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))


class ValidationFailureReport(BaseModel):
    """Aggregated failures for one source in one ingestion run."""

    source: str
    failure_count: int = Field(..., ge=0)
    samples: list[ValidationFailure] = Field(
        default_factory=list, max_length=MAX_REPORT_SAMPLES
    )
    generated_at: datetime = Field(default_factory=lambda: datetime.now(tz=UTC))


# === Use case results ===


class IngestionResult(BaseModel):
    """Counts for one ingestion run."""

    received: int = 0
    invalid: int = 0
    accepted: int = 0
    duplicates: int = 0
    accepted_items: list[AcceptedItem] = Field(default_factory=list)
    duplicate_matches: list[DuplicateMatch] = Field(default_factory=list)
    reports: list[ValidationFailureReport] = Field(default_factory=list)


class WindowScheduleResult(BaseModel):
    """Outcome of one (user, window) scheduling cycle."""

    user_id: str
    window: DeliveryWindow
    sent: bool = False
    reason: str = ""
    included: list[str] = Field(default_factory=list)
    deferred: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    dropped: list[str] = Field(default_factory=list)
    immediate: list[str] = Field(default_factory=list)
    tasks_queued: int = 0


class EventBatchResult(BaseModel):
    events_processed: int = 0
    events_skipped: int = 0
    users_matched: int = 0
    users_failed: int = 0
    tasks_queued: int = 0
