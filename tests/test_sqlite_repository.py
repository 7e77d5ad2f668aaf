"""Tests for the SQLite repository adapter."""

import sqlite3
import threading
from datetime import datetime, timedelta
from pathlib import Path

import pytest

from cityping_engine.adapters.sqlite_repository import SQLiteRepository
from cityping_engine.domain.exceptions import RepositoryError, UserLockTimeoutError
from cityping_engine.domain.models import (
    AcceptedItem,
    ContentType,
    DeliveryChannel,
    DeliveryKind,
    DeliveryTask,
    DeliveryWindow,
    ParkingSettings,
    PendingContent,
    SendHistoryEntry,
    TransitSettings,
    UnrecognizedTopicSettings,
)
from tests.conftest import create_test_item, create_test_preference, create_test_user


@pytest.fixture
def sqlite_repo(tmp_path: Path) -> SQLiteRepository:
    return SQLiteRepository(str(tmp_path / "nested" / "engine.db"))


def _history(now: datetime, content_id: str = "c1", **kwargs) -> SendHistoryEntry:
    return SendHistoryEntry(
        user_id=kwargs.pop("user_id", "user-1"),
        content_id=content_id,
        content_type=kwargs.pop("content_type", ContentType.LOCAL_NEWS),
        sent_at=now,
        window=kwargs.pop("window", DeliveryWindow.MORNING),
        **kwargs,
    )


def _accepted(now: datetime, **kwargs) -> AcceptedItem:
    values = dict(
        source="source-a",
        title="Water main break",
        locator="https://a.com/water-main",
        external_id="source-a:1",
        locator_signature="a.com/water-main",
        fingerprint="",
        accepted_at=now,
    )
    values.update(kwargs)
    return AcceptedItem(**values)


def _task(user_id: str = "user-1", reference_id: str = "event-1", **kwargs) -> DeliveryTask:
    return DeliveryTask(
        user_id=user_id,
        reference_id=reference_id,
        kind=kwargs.pop("kind", DeliveryKind.EVENT),
        channel=kwargs.pop("channel", DeliveryChannel.EMAIL),
        scheduled_for=kwargs.pop("scheduled_for", datetime(2025, 1, 15, 14, 0)),
        **kwargs,
    )


def test_creates_parent_directory(tmp_path: Path) -> None:
    SQLiteRepository(str(tmp_path / "a" / "b" / "engine.db"))

    assert (tmp_path / "a" / "b" / "engine.db").exists()


def test_send_history_round_trip(sqlite_repo: SQLiteRepository, now: datetime) -> None:
    stored = sqlite_repo.record_send(_history(now, source_id="story-9"))

    loaded = sqlite_repo.get_send_history("user-1", now - timedelta(hours=1))

    assert loaded == [stored]
    assert loaded[0].sent_at == now
    assert loaded[0].source_id == "story-9"


def test_record_send_upsert_increments_version(
    sqlite_repo: SQLiteRepository, now: datetime
) -> None:
    sqlite_repo.record_send(_history(now))
    second = sqlite_repo.record_send(
        _history(now + timedelta(hours=9), window=DeliveryWindow.EVENING)
    )

    assert second.version == 2
    assert second.window is DeliveryWindow.EVENING
    assert len(sqlite_repo.get_send_history("user-1", now)) == 1


def test_send_history_since_filter(sqlite_repo: SQLiteRepository, now: datetime) -> None:
    sqlite_repo.record_send(_history(now - timedelta(hours=30), content_id="old"))
    sqlite_repo.record_send(_history(now, content_id="new"))

    loaded = sqlite_repo.get_send_history("user-1", now - timedelta(hours=24))

    assert [entry.content_id for entry in loaded] == ["new"]


def test_pop_due_pending_removes_only_due_rows(
    sqlite_repo: SQLiteRepository, now: datetime
) -> None:
    due = PendingContent(
        user_id="user-1",
        window=DeliveryWindow.MIDDAY,
        item=create_test_item(ContentType.TIPS, content_id="due"),
        eligible_at=now,
    )
    later = PendingContent(
        user_id="user-1",
        window=DeliveryWindow.MIDDAY,
        item=create_test_item(ContentType.TIPS, content_id="later"),
        eligible_at=now + timedelta(days=1),
    )
    assert sqlite_repo.save_pending([due, later]) == 2

    popped = sqlite_repo.pop_due_pending("user-1", DeliveryWindow.MIDDAY, now)
    popped_again = sqlite_repo.pop_due_pending("user-1", DeliveryWindow.MIDDAY, now)

    assert [entry.item for entry in popped] == [due.item]
    assert popped_again == []
    assert sqlite_repo.pop_due_pending(
        "user-1", DeliveryWindow.MIDDAY, now + timedelta(days=2)
    ) == [later]


def test_save_pending_replaces_same_item(
    sqlite_repo: SQLiteRepository, now: datetime
) -> None:
    item = create_test_item(ContentType.TIPS)
    first = PendingContent(
        user_id="user-1", window=DeliveryWindow.EVENING, item=item, eligible_at=now
    )
    sqlite_repo.save_pending([first])
    sqlite_repo.save_pending([first.model_copy(update={"eligible_at": now + timedelta(hours=1)})])

    assert sqlite_repo.pop_due_pending("user-1", DeliveryWindow.EVENING, now) == []
    assert len(
        sqlite_repo.pop_due_pending(
            "user-1", DeliveryWindow.EVENING, now + timedelta(hours=1)
        )
    ) == 1


def test_save_pending_empty_is_noop(sqlite_repo: SQLiteRepository) -> None:
    assert sqlite_repo.save_pending([]) == 0


def test_accepted_item_lookups(sqlite_repo: SQLiteRepository, now: datetime) -> None:
    item = _accepted(now, locator="https://A.com/Water-Main")
    assert sqlite_repo.insert_accepted_item(item, now - timedelta(hours=48)) is None

    by_locator = sqlite_repo.find_accepted_by_locator(
        "https://a.com/water-main", now - timedelta(hours=1)
    )
    by_signature = sqlite_repo.find_accepted_by_signature(
        "a.com/water-main", "source-b", now - timedelta(hours=1)
    )
    same_source = sqlite_repo.find_accepted_by_signature(
        "a.com/water-main", "source-a", now - timedelta(hours=1)
    )

    assert by_locator == item
    assert by_signature == item
    assert same_source is None
    assert sqlite_repo.list_recent_accepted("source-b", now - timedelta(hours=1), 10) == [
        item
    ]
    assert sqlite_repo.list_recent_accepted("source-a", now - timedelta(hours=1), 10) == []


def test_insert_accepted_conflict_returns_existing(
    sqlite_repo: SQLiteRepository, now: datetime
) -> None:
    first = _accepted(now)
    sqlite_repo.insert_accepted_item(first, now - timedelta(hours=48))

    conflict = sqlite_repo.insert_accepted_item(
        _accepted(now, source="source-b", external_id="source-b:1"),
        now - timedelta(hours=48),
    )

    assert conflict == first


def test_insert_accepted_ignores_stale_row(
    sqlite_repo: SQLiteRepository, now: datetime
) -> None:
    sqlite_repo.insert_accepted_item(
        _accepted(now - timedelta(hours=72)), now - timedelta(hours=120)
    )
    fresh = _accepted(now, source="source-b", external_id="source-b:1")

    assert sqlite_repo.insert_accepted_item(fresh, now - timedelta(hours=48)) is None
    assert (
        sqlite_repo.find_accepted_by_signature(
            "a.com/water-main", "source-c", now - timedelta(hours=1)
        )
        == fresh
    )


def test_insert_accepted_same_source_rows_share_signature(
    sqlite_repo: SQLiteRepository, now: datetime
) -> None:
    stale_before = now - timedelta(hours=48)
    first = _accepted(now, locator="https://a.com/water-main/1234")
    second = _accepted(
        now, locator="https://a.com/water-main/5678", external_id="source-a:2"
    )

    assert sqlite_repo.insert_accepted_item(first, stale_before) is None
    assert sqlite_repo.insert_accepted_item(second, stale_before) is None
    assert sqlite_repo.find_accepted_by_locator(first.locator, stale_before) == first
    assert sqlite_repo.find_accepted_by_locator(second.locator, stale_before) == second
    assert (
        sqlite_repo.insert_accepted_item(
            _accepted(now, source="source-b", external_id="source-b:1"), stale_before
        )
        == first
    )


def test_insert_accepted_without_signature_never_conflicts(
    sqlite_repo: SQLiteRepository, now: datetime
) -> None:
    stale_before = now - timedelta(hours=48)

    assert sqlite_repo.insert_accepted_item(
        _accepted(now, locator_signature=None), stale_before
    ) is None
    assert sqlite_repo.insert_accepted_item(
        _accepted(now, locator_signature=None), stale_before
    ) is None


def test_insert_delivery_tasks_returns_only_new_rows(
    sqlite_repo: SQLiteRepository,
) -> None:
    first = [_task(), _task(channel=DeliveryChannel.SMS)]
    assert sqlite_repo.insert_delivery_tasks(first) == first

    again = sqlite_repo.insert_delivery_tasks([_task(), _task(reference_id="event-2")])

    assert [task.reference_id for task in again] == ["event-2"]
    assert len(sqlite_repo.get_delivery_tasks()) == 3


def test_delivery_task_round_trip(sqlite_repo: SQLiteRepository) -> None:
    task = _task(
        kind=DeliveryKind.WINDOW_DIGEST,
        reference_id="digest:2025-01-15:morning",
        payload={"content_ids": ["a", "b"]},
    )
    sqlite_repo.insert_delivery_tasks([task])

    loaded = sqlite_repo.get_delivery_tasks(
        user_id="user-1", reference_id="digest:2025-01-15:morning"
    )

    assert loaded == [task]


def test_users_and_preferences(sqlite_repo: SQLiteRepository) -> None:
    sqlite_repo.save_user(create_test_user("user-b"))
    sqlite_repo.save_user(create_test_user("user-a", phone="+15550100"))
    sqlite_repo.save_preference(create_test_preference("user-a", "transit", routes=["L"]))
    sqlite_repo.save_preference(create_test_preference("user-b", "parking", asp_alerts=False))
    sqlite_repo.save_preference(
        create_test_preference("user-b", "transit").model_copy(update={"enabled": False})
    )

    assert sqlite_repo.list_user_ids() == ["user-a", "user-b"]
    assert sqlite_repo.get_user("user-a").phone == "+15550100"
    assert sqlite_repo.get_user("missing") is None
    assert [u.user_id for u in sqlite_repo.get_users(["user-b", "user-x"])] == ["user-b"]
    assert sqlite_repo.get_users([]) == []

    transit = sqlite_repo.get_enabled_preferences("transit")
    parking = sqlite_repo.get_enabled_preferences("parking")

    assert [p.user_id for p in transit] == ["user-a"]
    assert transit[0].settings == TransitSettings(routes=["L"])
    assert parking[0].settings == ParkingSettings(asp_alerts=False)


def test_unrecognized_topic_settings_round_trip(sqlite_repo: SQLiteRepository) -> None:
    sqlite_repo.save_preference(create_test_preference("user-a", "nightlife", vibe="quiet"))

    [preference] = sqlite_repo.get_enabled_preferences("nightlife")

    assert preference.settings == UnrecognizedTopicSettings(
        topic="nightlife", values={"vibe": "quiet"}
    )


def test_user_lock_times_out_while_held(sqlite_repo: SQLiteRepository) -> None:
    with sqlite_repo.user_lock("user-1", 1.0):
        with pytest.raises(UserLockTimeoutError):
            with sqlite_repo.user_lock("user-1", 0.01):
                pass
        with sqlite_repo.user_lock("user-2", 0.01):
            pass

    with sqlite_repo.user_lock("user-1", 0.01):
        pass


def test_user_lock_serializes_threads(sqlite_repo: SQLiteRepository) -> None:
    entered = threading.Event()
    release = threading.Event()
    outcome: list[str] = []

    def holder() -> None:
        with sqlite_repo.user_lock("user-1", 1.0):
            entered.set()
            release.wait(2.0)

    thread = threading.Thread(target=holder)
    thread.start()
    entered.wait(2.0)
    try:
        with pytest.raises(UserLockTimeoutError):
            with sqlite_repo.user_lock("user-1", 0.05):
                outcome.append("acquired")
    finally:
        release.set()
        thread.join()

    assert outcome == []


def test_sqlite_errors_wrapped_in_repository_error(
    sqlite_repo: SQLiteRepository, mocker
) -> None:
    broken = mocker.MagicMock()
    broken.execute.side_effect = sqlite3.OperationalError("database is locked")
    mocker.patch.object(sqlite_repo, "_get_connection", return_value=broken)

    with pytest.raises(RepositoryError, match="database is locked"):
        sqlite_repo.list_user_ids()

    broken.rollback.assert_called_once()
