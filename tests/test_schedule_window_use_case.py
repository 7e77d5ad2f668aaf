"""Tests for the per-user window scheduling cycle."""

from datetime import datetime, timedelta

import pytest

from cityping_engine.config.settings import Settings
from cityping_engine.domain.exceptions import RepositoryError, UserLockTimeoutError
from cityping_engine.domain.models import (
    ContentType,
    DeliveryKind,
    DeliveryWindow,
)
from cityping_engine.domain.protocols import RepositoryProtocol
from cityping_engine.use_cases.schedule_window import (
    digest_reference,
    schedule_window_for_users,
    schedule_window_use_case,
)
from tests.conftest import create_test_item, create_test_user

MORNING_ITEMS = [
    create_test_item(ContentType.TRANSIT_DELAY),
    create_test_item(ContentType.WEATHER_DAILY),
    create_test_item(ContentType.TIPS),
    create_test_item(ContentType.WEATHER_SEVERE),
]


@pytest.fixture
def user_repo(repo: RepositoryProtocol) -> RepositoryProtocol:
    repo.save_user(create_test_user("user-1"))
    return repo


def _midday(now: datetime) -> datetime:
    return now + timedelta(hours=3)


def _evening(now: datetime) -> datetime:
    return now + timedelta(hours=9)


def test_morning_cycle_routes_and_queues(
    user_repo: RepositoryProtocol, settings: Settings, now: datetime
) -> None:
    result = schedule_window_use_case(
        user_repo, settings, "user-1", DeliveryWindow.MORNING, MORNING_ITEMS, now=now
    )

    assert result.sent is True
    assert result.included == ["transit_delay-1", "weather_daily-1"]
    assert result.immediate == ["weather_severe-1"]
    assert result.deferred == ["tips-1"]
    assert result.tasks_queued == 2

    [digest] = user_repo.get_delivery_tasks(
        user_id="user-1", reference_id="digest:2025-01-15:morning"
    )
    assert digest.kind is DeliveryKind.WINDOW_DIGEST
    assert digest.payload["content_ids"] == ["transit_delay-1", "weather_daily-1"]
    assert len(user_repo.get_delivery_tasks(reference_id="content:weather_severe-1")) == 1

    history = user_repo.get_send_history("user-1", now - timedelta(hours=1))
    assert {entry.content_id for entry in history} == {
        "transit_delay-1",
        "weather_daily-1",
        "weather_severe-1",
    }


def test_rerunning_cycle_sends_nothing_twice(
    user_repo: RepositoryProtocol, settings: Settings, now: datetime
) -> None:
    schedule_window_use_case(
        user_repo, settings, "user-1", DeliveryWindow.MORNING, MORNING_ITEMS, now=now
    )

    replay = schedule_window_use_case(
        user_repo, settings, "user-1", DeliveryWindow.MORNING, MORNING_ITEMS, now=now
    )

    assert replay.sent is False
    assert replay.tasks_queued == 0
    assert replay.skipped == ["transit_delay-1", "weather_daily-1"]
    assert len(user_repo.get_delivery_tasks(user_id="user-1")) == 2


def test_deferred_item_delivered_in_target_window(
    user_repo: RepositoryProtocol, settings: Settings, now: datetime
) -> None:
    schedule_window_use_case(
        user_repo, settings, "user-1", DeliveryWindow.MORNING, MORNING_ITEMS, now=now
    )
    midday_items = [
        create_test_item(ContentType.LOCAL_NEWS, content_id="news-1", priority=45),
        create_test_item(ContentType.LOCAL_NEWS, content_id="news-2", priority=40),
    ]

    result = schedule_window_use_case(
        user_repo,
        settings,
        "user-1",
        DeliveryWindow.MIDDAY,
        midday_items,
        now=_midday(now),
    )

    assert result.sent is True
    assert result.included == ["news-1", "news-2", "tips-1"]
    assert result.deferred == []


def test_parking_emergency_keeps_sparse_morning_digest(
    user_repo: RepositoryProtocol, settings: Settings, now: datetime
) -> None:
    items = [
        create_test_item(ContentType.PARKING_EMERGENCY),
        create_test_item(ContentType.WEATHER_DAILY),
    ]

    result = schedule_window_use_case(
        user_repo, settings, "user-1", DeliveryWindow.MORNING, items, now=now
    )

    assert result.immediate == ["parking_emergency-1"]
    assert result.included == ["weather_daily-1"]
    assert result.sent is True


def test_immediate_send_does_not_fill_sparse_morning(
    user_repo: RepositoryProtocol, settings: Settings, now: datetime
) -> None:
    items = [
        create_test_item(ContentType.LOCAL_NEWS),
        create_test_item(ContentType.BREAKING_NEWS, priority=85),
    ]

    result = schedule_window_use_case(
        user_repo, settings, "user-1", DeliveryWindow.MORNING, items, now=now
    )

    assert result.immediate == ["breaking_news-1"]
    assert result.sent is False
    assert result.included == []
    assert result.reason == "Insufficient content (1 < 2)"
    assert user_repo.get_delivery_tasks(reference_id="digest:2025-01-15:morning") == []


def test_sparse_morning_without_override_is_skipped(
    user_repo: RepositoryProtocol, settings: Settings, now: datetime
) -> None:
    result = schedule_window_use_case(
        user_repo,
        settings,
        "user-1",
        DeliveryWindow.MORNING,
        [create_test_item(ContentType.WEATHER_DAILY)],
        now=now,
    )

    assert result.sent is False
    assert result.reason == "Insufficient content (1 < 2)"
    assert result.dropped == ["weather_daily-1"]
    assert user_repo.get_delivery_tasks(user_id="user-1") == []


def test_low_priority_midday_combines_into_evening(
    user_repo: RepositoryProtocol, settings: Settings, now: datetime
) -> None:
    items = [
        create_test_item(ContentType.LOCAL_NEWS, content_id="news-1", priority=45),
        create_test_item(ContentType.LOCAL_NEWS, content_id="news-2", priority=40),
    ]

    midday = schedule_window_use_case(
        user_repo, settings, "user-1", DeliveryWindow.MIDDAY, items, now=_midday(now)
    )
    evening = schedule_window_use_case(
        user_repo, settings, "user-1", DeliveryWindow.EVENING, now=_evening(now)
    )

    assert midday.sent is False
    assert midday.deferred == ["news-1", "news-2"]
    assert evening.sent is True
    assert evening.included == ["news-1", "news-2"]


def test_second_digest_for_window_is_deferred(
    user_repo: RepositoryProtocol, settings: Settings, now: datetime
) -> None:
    schedule_window_use_case(
        user_repo, settings, "user-1", DeliveryWindow.MORNING, MORNING_ITEMS, now=now
    )
    late_items = [
        create_test_item(ContentType.WEATHER_ADVISORY),
        create_test_item(ContentType.METER_STATUS),
    ]

    result = schedule_window_use_case(
        user_repo,
        settings,
        "user-1",
        DeliveryWindow.MORNING,
        late_items,
        now=now + timedelta(minutes=30),
    )

    assert result.sent is False
    assert result.reason == "Digest already queued for window"
    assert set(result.deferred) >= {"weather_advisory-1", "meter_status-1"}
    assert user_repo.get_send_history("user-1", now) != []
    assert "meter_status-1" not in {
        entry.content_id for entry in user_repo.get_send_history("user-1", now)
    }


def test_unknown_user(repo: RepositoryProtocol, settings: Settings, now: datetime) -> None:
    result = schedule_window_use_case(
        repo, settings, "ghost", DeliveryWindow.MORNING, MORNING_ITEMS, now=now
    )

    assert result.sent is False
    assert result.reason == "Unknown user"
    assert repo.get_delivery_tasks() == []


def test_cycle_waits_for_user_lock(
    user_repo: RepositoryProtocol, settings: Settings, now: datetime
) -> None:
    settings = settings.model_copy(update={"user_lock_timeout_seconds": 0.01})

    with user_repo.user_lock("user-1", 1.0):
        with pytest.raises(UserLockTimeoutError):
            schedule_window_use_case(
                user_repo, settings, "user-1", DeliveryWindow.MORNING, now=now
            )


def test_digest_reference_uses_local_date(settings: Settings) -> None:
    late_evening_utc = datetime(2025, 1, 16, 2, 0)  # 21:00 EST on Jan 15

    reference = digest_reference(
        DeliveryWindow.EVENING, late_evening_utc, settings.routing_policy()
    )

    assert reference == "digest:2025-01-15:evening"


def test_schedule_for_users_isolates_failures(
    repo: RepositoryProtocol, settings: Settings, now: datetime, mocker
) -> None:
    for user_id in ("user-1", "user-2", "user-3"):
        repo.save_user(create_test_user(user_id))
    original_get_user = repo.get_user

    def get_user(user_id: str):
        if user_id == "user-2":
            raise RepositoryError("connection reset")
        return original_get_user(user_id)

    mocker.patch.object(repo, "get_user", side_effect=get_user)
    shared = [
        create_test_item(ContentType.TRANSIT_DELAY),
        create_test_item(ContentType.WEATHER_DAILY),
    ]

    results = schedule_window_for_users(
        repo,
        settings,
        DeliveryWindow.MORNING,
        {user_id: shared for user_id in ("user-1", "user-2", "user-3")},
        now=now,
        max_workers=2,
    )

    assert [r.user_id for r in results] == ["user-1", "user-2", "user-3"]
    assert [r.sent for r in results] == [True, False, True]
    assert results[1].reason == "Failed: connection reset"
    assert len(repo.get_delivery_tasks(reference_id="digest:2025-01-15:morning")) == 2
