"""Per-topic event-to-preference matching.

Rules:
- transit: event affected routes must intersect the user's routes; either
  list empty means no match
- housing: no event brackets or no user bracket matches all, otherwise the
  user's bracket must be eligible
- parking: matches unless the user explicitly disabled the sub-alert
- weather: always matches
- events/deals: citywide events match all; targeted events need the user's
  area in the target list
- anything else: matches (fail-open)
"""

from typing import Any

from cityping_engine.domain.matching_constants import (
    AFFECTED_ROUTES_KEY,
    DEFAULT_OPT_OUT_ALERT,
    INCOME_BRACKETS_KEY,
    OPT_OUT_ALERT_KEY,
    MatchRule,
    rule_for_topic,
)
from cityping_engine.domain.models import (
    DealsSettings,
    EventsSettings,
    HousingSettings,
    MatchableEvent,
    MatchablePreference,
    TopicSettings,
    TransitSettings,
)


def _string_list(value: Any) -> list[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list | tuple | set):
        return [str(v) for v in value]
    return []


def _match_routes(event: MatchableEvent, settings: TopicSettings) -> bool:
    affected = _string_list(event.metadata.get(AFFECTED_ROUTES_KEY))
    routes = settings.routes if isinstance(settings, TransitSettings) else []
    if not affected or not routes:
        return False
    return bool(set(affected) & set(routes))


def _match_bracket(event: MatchableEvent, settings: TopicSettings) -> bool:
    eligible = _string_list(event.metadata.get(INCOME_BRACKETS_KEY))
    if not eligible:
        return True
    bracket = settings.income_bracket if isinstance(settings, HousingSettings) else None
    if not bracket:
        return True
    return bracket in eligible


def _match_opt_out(event: MatchableEvent, settings: TopicSettings) -> bool:
    alert_key = str(event.metadata.get(OPT_OUT_ALERT_KEY) or DEFAULT_OPT_OUT_ALERT)
    return getattr(settings, alert_key, None) is not False


def _match_area(event: MatchableEvent, settings: TopicSettings) -> bool:
    if not event.target_areas:
        return True
    area = settings.area if isinstance(settings, EventsSettings | DealsSettings) else None
    if not area:
        return False
    return area in event.target_areas


def matches_preference(event: MatchableEvent, preference: MatchablePreference) -> bool:
    """Return True if ``event`` should be delivered under ``preference``.

    Example:
        >>> event = MatchableEvent(
        ...     event_id="e1", topic="transit", metadata={"affected_routes": ["G", "L"]}
        ... )
        >>> pref = MatchablePreference(
        ...     user_id="u1", topic="transit", settings=TransitSettings(routes=["G", "7"])
        ... )
        >>> matches_preference(event, pref)
        True
    """
    rule = rule_for_topic(event.topic or "")
    settings = preference.settings

    if rule is MatchRule.ROUTE_INTERSECTION:
        return _match_routes(event, settings)
    if rule is MatchRule.BRACKET:
        return _match_bracket(event, settings)
    if rule is MatchRule.OPT_OUT:
        return _match_opt_out(event, settings)
    if rule is MatchRule.AREA:
        return _match_area(event, settings)
    # ALWAYS and MATCH_ALL
    return True
