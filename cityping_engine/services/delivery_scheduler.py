"""Tiered delivery task creation and event fan-out.

Premium users get an immediate email, plus an immediate SMS when they have a
phone and a confirmed opt-in. Free users get one email delayed for digest
batching. The outbox unique key (user, reference, channel) makes every
queueing call safe to repeat.
"""

from collections.abc import Callable, Iterable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from cityping_engine.config.logging_config import get_logger
from cityping_engine.domain.exceptions import RepositoryError
from cityping_engine.domain.matching_constants import FREE_TIER_DELAY_HOURS
from cityping_engine.domain.models import (
    AccountTier,
    DeliveryChannel,
    DeliveryKind,
    DeliveryTask,
    EventBatchResult,
    MatchableEvent,
    MatchableUser,
    SmsOptInStatus,
)
from cityping_engine.domain.protocols import (
    DeliveryTaskStoreProtocol,
    PreferenceStoreProtocol,
)
from cityping_engine.observability.metrics import DELIVERY_TASKS_QUEUED_TOTAL
from cityping_engine.services.preference_matcher import matches_preference

logger = get_logger(__name__)


def sms_eligible(user: MatchableUser) -> bool:
    return bool(user.phone) and user.sms_opt_in is SmsOptInStatus.CONFIRMED


def immediate_channels(user: MatchableUser) -> list[DeliveryChannel]:
    """Channels used for immediate sends, SMS first."""
    channels = [DeliveryChannel.SMS] if sms_eligible(user) else []
    channels.append(DeliveryChannel.EMAIL)
    return channels


class DeliveryScheduler:
    """Writes idempotent delivery tasks to the outbox."""

    def __init__(
        self,
        task_store: DeliveryTaskStoreProtocol,
        preference_store: PreferenceStoreProtocol | None = None,
        free_tier_delay_hours: int = FREE_TIER_DELAY_HOURS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self._tasks = task_store
        self._preferences = preference_store
        self._free_tier_delay = timedelta(hours=free_tier_delay_hours)
        self._clock = clock or (lambda: datetime.now(tz=UTC))

    def build_event_tasks(
        self, user: MatchableUser, event: MatchableEvent, now: datetime
    ) -> list[DeliveryTask]:
        """Tier-dependent tasks for one (user, event) pair, without persisting."""
        payload: dict[str, Any] = {"topic": event.topic, "title": event.title}
        if user.tier is AccountTier.PREMIUM:
            channels = immediate_channels(user)
            scheduled_for = now
        else:
            channels = [DeliveryChannel.EMAIL]
            scheduled_for = now + self._free_tier_delay

        return [
            DeliveryTask(
                user_id=user.user_id,
                reference_id=event.event_id,
                kind=DeliveryKind.EVENT,
                channel=channel,
                scheduled_for=scheduled_for,
                payload=payload,
            )
            for channel in channels
        ]

    def enqueue(self, tasks: Sequence[DeliveryTask]) -> list[DeliveryTask]:
        """Insert tasks; tasks already in the outbox are absorbed silently."""
        if not tasks:
            return []
        inserted = self._tasks.insert_delivery_tasks(tasks)
        for task in inserted:
            DELIVERY_TASKS_QUEUED_TOTAL.labels(
                channel=task.channel.value, kind=task.kind.value
            ).inc()
        skipped = len(tasks) - len(inserted)
        logger.info(
            "delivery_tasks_queued",
            user_id=tasks[0].user_id,
            reference_id=tasks[0].reference_id,
            queued=len(inserted),
            already_queued=skipped,
        )
        return inserted

    def queue_delivery(
        self,
        user: MatchableUser,
        event: MatchableEvent,
        now: datetime | None = None,
    ) -> list[DeliveryTask]:
        """Queue the tier-dependent tasks for one matched user.

        Returns:
            Newly inserted tasks (empty when everything was already queued)
        """
        now = now or self._clock()
        return self.enqueue(self.build_event_tasks(user, event, now))

    def match_event_to_users(
        self, event: MatchableEvent, now: datetime | None = None
    ) -> list[DeliveryTask]:
        """Find users whose enabled preferences match ``event`` and queue tasks.

        Events without a topic are logged and skipped. A storage failure for
        one user is logged and does not stop the fan-out for the others.
        """
        return self._fan_out(event, now or self._clock(), EventBatchResult())

    def _fan_out(
        self, event: MatchableEvent, now: datetime, result: EventBatchResult
    ) -> list[DeliveryTask]:
        if not event.topic:
            logger.warning("event_missing_topic", event_id=event.event_id)
            result.events_skipped += 1
            return []
        if self._preferences is None:
            raise RuntimeError("DeliveryScheduler needs a preference store for fan-out")

        preferences = self._preferences.get_enabled_preferences(event.topic)
        matched_ids = [
            pref.user_id
            for pref in preferences
            if pref.enabled and matches_preference(event, pref)
        ]
        users = self._preferences.get_users(matched_ids)

        queued: list[DeliveryTask] = []
        for user in users:
            try:
                queued.extend(self.queue_delivery(user, event, now))
            except RepositoryError as exc:
                result.users_failed += 1
                logger.error(
                    "delivery_queue_failed",
                    event_id=event.event_id,
                    user_id=user.user_id,
                    error=str(exc),
                )

        result.events_processed += 1
        result.users_matched += len(users)
        logger.info(
            "event_matched",
            event_id=event.event_id,
            topic=event.topic,
            candidates=len(preferences),
            matched=len(users),
            queued=len(queued),
        )
        return queued

    def process_event_batch(
        self, events: Iterable[MatchableEvent], now: datetime | None = None
    ) -> EventBatchResult:
        """Match and queue every event; ``tasks_queued`` is the total inserted."""
        now = now or self._clock()
        result = EventBatchResult()
        for event in events:
            result.tasks_queued += len(self._fan_out(event, now, result))

        logger.info(
            "event_batch_processed",
            events=result.events_processed,
            skipped=result.events_skipped,
            tasks_queued=result.tasks_queued,
        )
        return result
