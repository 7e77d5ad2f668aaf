"""Content-type catalog.

One auditable table maps every content type to its urgency class, ordered
preferred windows and default priority, plus the inverse-of relation used to
detect status flips. Every component reads defaults from here.
"""

from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Final

from cityping_engine.domain.models import ContentType, DeliveryWindow, UrgencyClass

MORNING = DeliveryWindow.MORNING
MIDDAY = DeliveryWindow.MIDDAY
EVENING = DeliveryWindow.EVENING

FALLBACK_WINDOWS: Final[tuple[DeliveryWindow, ...]] = (MIDDAY,)
FALLBACK_PRIORITY: Final[int] = 50
FALLBACK_URGENCY: Final[UrgencyClass] = UrgencyClass.EVERGREEN


@dataclass(frozen=True)
class ContentTypeSpec:
    """Routing configuration for one content type."""

    urgency: UrgencyClass
    preferred_windows: tuple[DeliveryWindow, ...]
    default_priority: int


_U = UrgencyClass

CONTENT_CATALOG: Final[Mapping[ContentType, ContentTypeSpec]] = MappingProxyType(
    {
        # Urgent
        ContentType.PARKING_EMERGENCY: ContentTypeSpec(
            _U.URGENT, (MORNING, MIDDAY, EVENING), 95
        ),
        ContentType.TRANSIT_OUTAGE: ContentTypeSpec(
            _U.URGENT, (MORNING, MIDDAY, EVENING), 90
        ),
        ContentType.WEATHER_SEVERE: ContentTypeSpec(
            _U.URGENT, (MORNING, MIDDAY, EVENING), 95
        ),
        ContentType.BREAKING_NEWS: ContentTypeSpec(
            _U.URGENT, (MORNING, MIDDAY, EVENING), 85
        ),
        # Time-sensitive
        ContentType.ASP_STATUS: ContentTypeSpec(_U.TIME_SENSITIVE, (MORNING,), 80),
        ContentType.ASP_SUSPENSION: ContentTypeSpec(
            _U.TIME_SENSITIVE, (MORNING, EVENING), 80
        ),
        ContentType.ASP_IN_EFFECT: ContentTypeSpec(_U.TIME_SENSITIVE, (MORNING,), 80),
        ContentType.ASP_TOMORROW: ContentTypeSpec(_U.TIME_SENSITIVE, (EVENING,), 65),
        ContentType.TRANSIT_DELAY: ContentTypeSpec(
            _U.TIME_SENSITIVE, (MORNING, MIDDAY), 75
        ),
        ContentType.TRANSIT_ADVISORY: ContentTypeSpec(
            _U.TIME_SENSITIVE, (EVENING, MORNING), 60
        ),
        ContentType.WEATHER_ADVISORY: ContentTypeSpec(
            _U.TIME_SENSITIVE, (MORNING, EVENING), 70
        ),
        ContentType.EVENT_REMINDER: ContentTypeSpec(
            _U.TIME_SENSITIVE, (MORNING, EVENING), 55
        ),
        ContentType.STREET_CLOSURE: ContentTypeSpec(
            _U.TIME_SENSITIVE, (MORNING, EVENING), 60
        ),
        # Evergreen
        ContentType.WEATHER_DAILY: ContentTypeSpec(_U.EVERGREEN, (MORNING,), 50),
        ContentType.LOCAL_NEWS: ContentTypeSpec(
            _U.EVERGREEN, (MIDDAY, EVENING, MORNING), 45
        ),
        ContentType.METER_STATUS: ContentTypeSpec(_U.EVERGREEN, (MORNING,), 40),
        ContentType.TRANSIT_RESTORATION: ContentTypeSpec(
            _U.EVERGREEN, (MIDDAY, EVENING), 40
        ),
        ContentType.WELCOME: ContentTypeSpec(
            _U.EVERGREEN, (MORNING, MIDDAY, EVENING), 50
        ),
        # Batchable
        ContentType.TIPS: ContentTypeSpec(_U.BATCHABLE, (MIDDAY, EVENING), 25),
        ContentType.NEIGHBORHOOD_UPDATE: ContentTypeSpec(_U.BATCHABLE, (EVENING,), 35),
        ContentType.WEEKLY_RECAP: ContentTypeSpec(_U.BATCHABLE, (MORNING,), 20),
    }
)

_INVERSE_PAIRS: Final[tuple[tuple[ContentType, ContentType], ...]] = (
    (ContentType.ASP_SUSPENSION, ContentType.ASP_IN_EFFECT),
    (ContentType.TRANSIT_OUTAGE, ContentType.TRANSIT_RESTORATION),
)

INVERSE_OF: Final[Mapping[ContentType, frozenset[ContentType]]] = MappingProxyType(
    {
        content_type: frozenset(
            other
            for pair in _INVERSE_PAIRS
            if content_type in pair
            for other in pair
            if other != content_type
        )
        for content_type in {t for pair in _INVERSE_PAIRS for t in pair}
    }
)
"""Status-flip adjacency: sending one type after its inverse is news."""

PARKING_STATUS_TYPES: Final[frozenset[ContentType]] = frozenset(
    {
        ContentType.ASP_STATUS,
        ContentType.ASP_SUSPENSION,
        ContentType.ASP_IN_EFFECT,
        ContentType.ASP_TOMORROW,
        ContentType.PARKING_EMERGENCY,
    }
)
"""Types that keep a sparse morning window worth sending."""

NEXT_DAY_PREVIEW_TYPES: Final[frozenset[ContentType]] = frozenset(
    {ContentType.ASP_TOMORROW}
)
"""Types that keep a sparse evening window worth sending."""


def urgency_of(content_type: ContentType) -> UrgencyClass:
    spec = CONTENT_CATALOG.get(content_type)
    return spec.urgency if spec else FALLBACK_URGENCY


def preferred_windows(content_type: ContentType) -> tuple[DeliveryWindow, ...]:
    spec = CONTENT_CATALOG.get(content_type)
    return spec.preferred_windows if spec else FALLBACK_WINDOWS


def default_priority(content_type: ContentType) -> int:
    spec = CONTENT_CATALOG.get(content_type)
    return spec.default_priority if spec else FALLBACK_PRIORITY


def is_status_flip(new_type: ContentType, previous_type: ContentType) -> bool:
    """Return True when ``new_type`` reverses the previously sent status."""
    return previous_type in INVERSE_OF.get(new_type, frozenset())
