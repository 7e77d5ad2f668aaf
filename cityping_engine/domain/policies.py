"""Immutable policy value objects consumed by the router and deduplicator.

Settings build these once; services never read configuration directly.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType

from cityping_engine.domain import deduplication_constants as dedup
from cityping_engine.domain import routing_constants as routing
from cityping_engine.domain.models import DeliveryWindow, UrgencyClass


def _frozen(values: Mapping) -> Mapping:  # type: ignore[type-arg]
    return MappingProxyType(dict(values))


@dataclass(frozen=True)
class RoutingPolicy:
    """Per-window numbers and freshness limits for content routing."""

    timezone: str = routing.DELIVERY_TIMEZONE
    window_hours: Mapping[DeliveryWindow, int] = field(
        default_factory=lambda: routing.WINDOW_HOURS
    )
    window_capacity: Mapping[DeliveryWindow, int] = field(
        default_factory=lambda: routing.WINDOW_CAPACITY
    )
    window_minimum: Mapping[DeliveryWindow, int] = field(
        default_factory=lambda: routing.WINDOW_MINIMUM
    )
    freshness_hours: Mapping[UrgencyClass, int] = field(
        default_factory=lambda: routing.FRESHNESS_HOURS
    )
    history_lookback_hours: int = routing.DEFAULT_HISTORY_LOOKBACK_HOURS

    def __post_init__(self) -> None:
        for name in ("window_hours", "window_capacity", "window_minimum"):
            values = getattr(self, name)
            missing = [w for w in DeliveryWindow if w not in values]
            if missing:
                raise ValueError(f"{name} is missing windows: {missing}")
            object.__setattr__(self, name, _frozen(values))
        missing_urgency = [u for u in UrgencyClass if u not in self.freshness_hours]
        if missing_urgency:
            raise ValueError(f"freshness_hours is missing classes: {missing_urgency}")
        object.__setattr__(self, "freshness_hours", _frozen(self.freshness_hours))

    def capacity(self, window: DeliveryWindow) -> int:
        return self.window_capacity[window]

    def minimum(self, window: DeliveryWindow) -> int:
        return self.window_minimum[window]

    def hour(self, window: DeliveryWindow) -> int:
        return self.window_hours[window]

    def max_age_hours(self, urgency: UrgencyClass) -> int:
        return self.freshness_hours[urgency]


@dataclass(frozen=True)
class DedupPolicy:
    """Thresholds for the deduplication cascade."""

    lookback_hours: int = dedup.DEFAULT_LOOKBACK_HOURS
    title_similarity: float = dedup.DEFAULT_TITLE_SIMILARITY
    candidate_limit: int = dedup.DEFAULT_CANDIDATE_LIMIT
    min_fingerprint_length: int = dedup.MIN_FINGERPRINT_LENGTH

    def __post_init__(self) -> None:
        if not 0.0 <= self.title_similarity <= 1.0:
            raise ValueError("title_similarity must be within [0, 1]")
        if self.lookback_hours <= 0:
            raise ValueError("lookback_hours must be positive")
