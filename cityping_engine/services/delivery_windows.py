"""Delivery window clock.

Window send times are wall-clock hours in the delivery timezone. All
functions accept and return timezone-aware datetimes; results are in UTC.
"""

from datetime import UTC, date, datetime, time, timedelta

import pytz

from cityping_engine.domain.models import DeliveryWindow
from cityping_engine.domain.policies import RoutingPolicy
from cityping_engine.domain.routing_constants import (
    EVENING_BOUNDARY_HOUR,
    MIDDAY_BOUNDARY_HOUR,
    WINDOW_ORDER,
)

_DEFAULT_POLICY = RoutingPolicy()


def _tz(policy: RoutingPolicy) -> pytz.BaseTzInfo:
    return pytz.timezone(policy.timezone)


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo is not None else value.replace(tzinfo=UTC)


def local_date(now: datetime, policy: RoutingPolicy | None = None) -> date:
    """Calendar date of ``now`` in the delivery timezone."""
    policy = policy or _DEFAULT_POLICY
    return _aware(now).astimezone(_tz(policy)).date()


def window_for_hour(hour: int) -> DeliveryWindow:
    if hour < MIDDAY_BOUNDARY_HOUR:
        return DeliveryWindow.MORNING
    if hour < EVENING_BOUNDARY_HOUR:
        return DeliveryWindow.MIDDAY
    return DeliveryWindow.EVENING


def current_window(
    now: datetime, policy: RoutingPolicy | None = None
) -> DeliveryWindow:
    """Return the window that ``now`` falls into in the delivery timezone.

    Local hours before 11 are morning, before 16 midday, otherwise evening.
    """
    policy = policy or _DEFAULT_POLICY
    return window_for_hour(_aware(now).astimezone(_tz(policy)).hour)


def infer_window_from_time(
    sent_at: datetime, policy: RoutingPolicy | None = None
) -> DeliveryWindow:
    """Best-effort window for a historical send that did not record one."""
    return current_window(sent_at, policy)


def window_start(
    window: DeliveryWindow, day: date, policy: RoutingPolicy | None = None
) -> datetime:
    """Send instant of ``window`` on local calendar ``day``, in UTC."""
    policy = policy or _DEFAULT_POLICY
    naive = datetime.combine(day, time(hour=policy.hour(window)))
    return _tz(policy).localize(naive).astimezone(UTC)


def next_window(
    window: DeliveryWindow, now: datetime, policy: RoutingPolicy | None = None
) -> tuple[DeliveryWindow, datetime]:
    """Window following ``window`` in sequence and its send time.

    Evening wraps to tomorrow's morning.
    """
    index = WINDOW_ORDER.index(window)
    following = WINDOW_ORDER[(index + 1) % len(WINDOW_ORDER)]
    day = local_date(now, policy)
    if index + 1 >= len(WINDOW_ORDER):
        day += timedelta(days=1)
    return following, window_start(following, day, policy)


def next_preferred_window(
    preferred: tuple[DeliveryWindow, ...],
    current: DeliveryWindow,
    now: datetime,
    policy: RoutingPolicy | None = None,
) -> tuple[DeliveryWindow, datetime] | None:
    """Earliest preferred window after ``current``, today or tomorrow.

    Returns None when ``preferred`` is empty.
    """
    if not preferred:
        return None

    current_index = WINDOW_ORDER.index(current)
    ordered = sorted(set(preferred), key=WINDOW_ORDER.index)
    day = local_date(now, policy)

    for window in ordered:
        if WINDOW_ORDER.index(window) > current_index:
            return window, window_start(window, day, policy)

    first = ordered[0]
    return first, window_start(first, day + timedelta(days=1), policy)


def time_until_next_window(
    now: datetime, policy: RoutingPolicy | None = None
) -> tuple[DeliveryWindow, timedelta]:
    """Next window after the one ``now`` is in, and how long until it starts."""
    now = _aware(now)
    window, starts_at = next_window(current_window(now, policy), now, policy)
    return window, starts_at - now
