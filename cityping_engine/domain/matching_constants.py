"""Topic matching rules and delivery latency constants.

Each known topic maps to exactly one matching rule. Topics missing from the
table fail open and match every enabled preference.
"""

from collections.abc import Mapping
from enum import Enum
from types import MappingProxyType
from typing import Final


class MatchRule(str, Enum):
    """How an event's attributes are compared with a user's settings."""

    ROUTE_INTERSECTION = "route_intersection"
    BRACKET = "bracket"
    OPT_OUT = "opt_out"
    ALWAYS = "always"
    AREA = "area"
    MATCH_ALL = "match_all"


TOPIC_MATCH_RULES: Final[Mapping[str, MatchRule]] = MappingProxyType(
    {
        "transit": MatchRule.ROUTE_INTERSECTION,
        "housing": MatchRule.BRACKET,
        "parking": MatchRule.OPT_OUT,
        "weather": MatchRule.ALWAYS,
        "events": MatchRule.AREA,
        "deals": MatchRule.AREA,
    }
)

UNKNOWN_TOPIC_RULE: Final[MatchRule] = MatchRule.MATCH_ALL
"""New topics reach every subscriber until a dedicated rule is added."""

AFFECTED_ROUTES_KEY: Final[str] = "affected_routes"
"""Event metadata key listing impacted subway/bus routes."""

INCOME_BRACKETS_KEY: Final[str] = "income_brackets"
"""Event metadata key listing eligible income brackets."""

OPT_OUT_ALERT_KEY: Final[str] = "alert_key"
"""Event metadata key naming the parking sub-alert (defaults to ``asp_alerts``)."""

DEFAULT_OPT_OUT_ALERT: Final[str] = "asp_alerts"

FREE_TIER_DELAY_HOURS: Final[int] = 24
"""Free-tier email is scheduled this many hours after matching (digest batching)."""


def rule_for_topic(topic: str) -> MatchRule:
    return TOPIC_MATCH_RULES.get(topic, UNKNOWN_TOPIC_RULE)
