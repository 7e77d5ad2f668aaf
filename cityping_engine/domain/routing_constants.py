"""Business rules and constants for content routing.

Window clock times, per-window capacity and minimum thresholds, freshness
windows and the resend/escalation thresholds are centralized here. Settings
may override the per-window numbers; the rule thresholds are fixed.
"""

from collections.abc import Mapping
from types import MappingProxyType
from typing import Final

from cityping_engine.domain.models import DeliveryWindow, UrgencyClass

DELIVERY_TIMEZONE: Final[str] = "America/New_York"
"""All window clock times are wall-clock times in this timezone."""

WINDOW_ORDER: Final[tuple[DeliveryWindow, ...]] = (
    DeliveryWindow.MORNING,
    DeliveryWindow.MIDDAY,
    DeliveryWindow.EVENING,
)
"""Daily delivery order. Evening wraps to the next day's morning."""

WINDOW_HOURS: Final[Mapping[DeliveryWindow, int]] = MappingProxyType(
    {
        DeliveryWindow.MORNING: 9,
        DeliveryWindow.MIDDAY: 12,
        DeliveryWindow.EVENING: 18,
    }
)
"""Local hour at which each window is sent."""

WINDOW_CAPACITY: Final[Mapping[DeliveryWindow, int]] = MappingProxyType(
    {
        DeliveryWindow.MORNING: 8,
        DeliveryWindow.MIDDAY: 6,
        DeliveryWindow.EVENING: 10,
    }
)
"""Maximum items per window.

Morning is a quick scan before the commute, midday a brief check, evening
has the most reading time.
"""

WINDOW_MINIMUM: Final[Mapping[DeliveryWindow, int]] = MappingProxyType(
    {
        DeliveryWindow.MORNING: 2,
        DeliveryWindow.MIDDAY: 3,
        DeliveryWindow.EVENING: 2,
    }
)
"""Minimum items for a window to be sent at all (before scarcity overrides)."""

FRESHNESS_HOURS: Final[Mapping[UrgencyClass, int]] = MappingProxyType(
    {
        UrgencyClass.URGENT: 1,
        UrgencyClass.TIME_SENSITIVE: 6,
        UrgencyClass.EVERGREEN: 24,
        UrgencyClass.BATCHABLE: 72,
    }
)
"""Maximum content age per urgency class."""

MIDDAY_BOUNDARY_HOUR: Final[int] = 11
"""Local hours before this belong to the morning window."""

EVENING_BOUNDARY_HOUR: Final[int] = 16
"""Local hours from this onward belong to the evening window."""

URGENT_IMMEDIATE_PRIORITY: Final[int] = 80
"""Urgent items at or above this priority bypass windows and history."""

URGENT_RESEND_PRIORITY: Final[int] = 90
"""Urgent items at or above this priority may be re-sent as updates."""

ESCALATION_BASELINE_PRIORITY: Final[int] = 50
"""Baseline for the priority-escalation resend rule.

The rule compares against this fixed baseline rather than the priority of
the previous send: an item re-sends when ``priority - 50 > 30``.
"""

ESCALATION_DELTA: Final[int] = 30
"""Points above the baseline that count as a significant escalation."""

MIDDAY_HIGH_PRIORITY: Final[int] = 70
"""A sparse midday window is only sent when an item reaches this priority."""

OVERFLOW_DEFER_PRIORITY: Final[int] = 60
"""Overflowing time-sensitive items at or above this priority are deferred."""

DEFAULT_HISTORY_LOOKBACK_HOURS: Final[int] = 24
"""Send history older than this is ignored for resend suppression."""
