"""Schedule window use case.

Runs one (user, window) scheduling cycle under the user's lock and writes
the resulting sends to the delivery outbox.
"""

from collections.abc import Iterable, Mapping, Sequence
from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from time import perf_counter

from cityping_engine.config.logging_config import get_logger
from cityping_engine.config.settings import Settings
from cityping_engine.domain.exceptions import RetryableError
from cityping_engine.domain.models import (
    ContentItem,
    DeliveryChannel,
    DeliveryKind,
    DeliveryTask,
    DeliveryWindow,
    MatchableUser,
    PendingContent,
    RoutedContent,
    RoutingAction,
    ScarcityAction,
    WindowScheduleResult,
)
from cityping_engine.domain.policies import RoutingPolicy
from cityping_engine.domain.protocols import RepositoryProtocol
from cityping_engine.observability.metrics import STAGE_DURATION_SECONDS
from cityping_engine.observability.tracing import correlation_scope
from cityping_engine.services.content_router import (
    ContentRouter,
    handle_abundance,
    handle_scarcity,
)
from cityping_engine.services.delivery_scheduler import (
    DeliveryScheduler,
    immediate_channels,
)
from cityping_engine.services.delivery_windows import (
    local_date,
    next_window,
    window_start,
)

logger = get_logger(__name__)


def digest_reference(window: DeliveryWindow, now: datetime, policy: RoutingPolicy) -> str:
    """Outbox reference for a user's digest in ``window`` on the local day of ``now``."""
    return f"digest:{local_date(now, policy).isoformat()}:{window.value}"


def _immediate_tasks(
    user: MatchableUser, items: Sequence[ContentItem], now: datetime
) -> list[DeliveryTask]:
    return [
        DeliveryTask(
            user_id=user.user_id,
            reference_id=f"content:{item.content_id}",
            kind=DeliveryKind.IMMEDIATE_CONTENT,
            channel=channel,
            scheduled_for=now,
            payload={
                "content_id": item.content_id,
                "content_type": item.content_type.value,
                "title": item.title,
            },
        )
        for item in items
        for channel in immediate_channels(user)
    ]


def _merge_candidates(
    pending: Iterable[PendingContent], items: Iterable[ContentItem]
) -> list[ContentItem]:
    """Due pending items first; a fresh copy of the same content id wins."""
    merged: dict[str, ContentItem] = {}
    for entry in pending:
        merged[entry.item.content_id] = entry.item
    for item in items:
        merged[item.content_id] = item
    return list(merged.values())


def _admit_arrived(
    routed: RoutedContent, due_ids: set[str], window: DeliveryWindow
) -> None:
    """Include pending items that reached their window instead of deferring again.

    Batchable content always routes to the following window; once popped
    from the pending bucket of ``window`` it is delivered here.
    """
    arrived = [d for d in routed.defer if d.item.content_id in due_ids]
    if not arrived:
        return
    routed.defer = [d for d in routed.defer if d.item.content_id not in due_ids]
    routed.include.extend(
        decision.model_copy(
            update={
                "action": RoutingAction.INCLUDE,
                "target": window,
                "defer_until": None,
                "reason": "Deferred content reached its window",
            }
        )
        for decision in arrived
    )


def _run_cycle(
    repository: RepositoryProtocol,
    settings: Settings,
    user: MatchableUser,
    window: DeliveryWindow,
    items: Sequence[ContentItem],
    now: datetime,
) -> WindowScheduleResult:
    policy = settings.routing_policy()
    router = ContentRouter(user.user_id, repository, policy)
    scheduler = DeliveryScheduler(
        repository, free_tier_delay_hours=settings.free_tier_delay_hours
    )
    result = WindowScheduleResult(user_id=user.user_id, window=window)

    router.load_history(now)
    due = repository.pop_due_pending(user.user_id, window, now)
    candidates = _merge_candidates(due, items)
    routed = router.route_multiple(candidates, window, now)
    _admit_arrived(routed, {entry.item.content_id for entry in due}, window)

    pending: list[PendingContent] = [
        PendingContent(
            user_id=user.user_id,
            window=decision.target,  # type: ignore[arg-type]
            item=decision.item,
            eligible_at=decision.defer_until or now,
        )
        for decision in routed.defer
    ]
    result.skipped = [d.item.content_id for d in routed.skip]
    immediate = [d.item for d in routed.immediate]

    abundance = handle_abundance(window, [d.item for d in routed.include], policy)
    overflow_window, overflow_at = next_window(window, now, policy)
    pending.extend(
        PendingContent(
            user_id=user.user_id, window=overflow_window, item=item, eligible_at=overflow_at
        )
        for item in abundance.defer
    )
    immediate.extend(abundance.immediate)
    result.dropped = [item.content_id for item in abundance.drop]

    kept_ids = {item.content_id for item in abundance.keep}
    bucket = router.build_slot_content(
        [d for d in routed.include if d.item.content_id in kept_ids], window
    )
    to_send = list(bucket.items)
    result.reason = "Sufficient content"

    if not bucket.should_send:
        scarcity = handle_scarcity(
            window, bucket.dropped, policy, sent_immediately=immediate
        )
        result.reason = scarcity.reason
        if scarcity.action is ScarcityAction.SEND:
            to_send = list(bucket.dropped)
        elif scarcity.action is ScarcityAction.COMBINE_NEXT:
            evening_at = window_start(
                DeliveryWindow.EVENING, local_date(now, policy), policy
            )
            pending.extend(
                PendingContent(
                    user_id=user.user_id,
                    window=DeliveryWindow.EVENING,
                    item=item,
                    eligible_at=evening_at,
                )
                for item in bucket.dropped
            )
        else:
            result.dropped.extend(item.content_id for item in bucket.dropped)
    else:
        result.dropped.extend(item.content_id for item in bucket.dropped)

    queued = scheduler.enqueue(_immediate_tasks(user, immediate, now))
    newly_sent = {task.reference_id for task in queued}
    for item in immediate:
        if f"content:{item.content_id}" in newly_sent:
            router.record_send(item, window, now)
    result.immediate = [item.content_id for item in immediate]
    result.tasks_queued += len(queued)

    if to_send:
        digest = DeliveryTask(
            user_id=user.user_id,
            reference_id=digest_reference(window, now, policy),
            kind=DeliveryKind.WINDOW_DIGEST,
            channel=DeliveryChannel.EMAIL,
            scheduled_for=now,
            payload={
                "window": window.value,
                "content_ids": [item.content_id for item in to_send],
                "titles": [item.title for item in to_send],
            },
        )
        if scheduler.enqueue([digest]):
            for item in to_send:
                router.record_send(item, window, now)
            result.tasks_queued += 1
            result.included = [item.content_id for item in to_send]
            result.sent = True
        else:
            # Digest for this window already queued; offer the items again later.
            result.reason = "Digest already queued for window"
            pending.extend(
                PendingContent(
                    user_id=user.user_id,
                    window=overflow_window,
                    item=item,
                    eligible_at=overflow_at,
                )
                for item in to_send
            )

    repository.save_pending(pending)
    result.deferred = [entry.item.content_id for entry in pending]
    return result


def schedule_window_use_case(
    repository: RepositoryProtocol,
    settings: Settings,
    user_id: str,
    window: DeliveryWindow,
    items: Sequence[ContentItem] = (),
    *,
    now: datetime | None = None,
    correlation_id: str | None = None,
) -> WindowScheduleResult:
    """Run one scheduling cycle for ``user_id`` in ``window``.

    1. Take the user's lock (no two cycles for one user overlap)
    2. Load send history and merge due pending items with ``items``
    3. Route every candidate and persist deferrals as pending items
    4. Queue immediate sends (urgent items and urgent overflow)
    5. Apply the abundance policy, build the slot, apply the scarcity policy
    6. Record sends and queue one digest email for the window

    Re-running a cycle is safe: sent items are suppressed by history and
    outbox inserts are idempotent.

    Raises:
        UserLockTimeoutError: If the user's lock is held past the timeout
        RepositoryError: On storage failures
    """
    with correlation_scope(
        correlation_id, user_id=user_id, window=window.value
    ) as bound_correlation_id:
        stage_start = perf_counter()
        result: WindowScheduleResult | None = None
        try:
            now = now or datetime.now(tz=UTC)
            with repository.user_lock(user_id, settings.user_lock_timeout_seconds):
                user = repository.get_user(user_id)
                if user is None:
                    logger.warning(
                        "schedule_unknown_user",
                        correlation_id=bound_correlation_id,
                        user_id=user_id,
                    )
                    result = WindowScheduleResult(
                        user_id=user_id, window=window, reason="Unknown user"
                    )
                    return result
                result = _run_cycle(repository, settings, user, window, items, now)
            return result
        finally:
            duration = perf_counter() - stage_start
            STAGE_DURATION_SECONDS.labels(stage="schedule_window").observe(duration)
            if result is not None:
                logger.info(
                    "window_scheduled",
                    correlation_id=bound_correlation_id,
                    user_id=user_id,
                    window=window.value,
                    duration_seconds=duration,
                    sent=result.sent,
                    included=len(result.included),
                    deferred=len(result.deferred),
                    skipped=len(result.skipped),
                    dropped=len(result.dropped),
                    immediate=len(result.immediate),
                    reason=result.reason,
                )


def schedule_window_for_users(
    repository: RepositoryProtocol,
    settings: Settings,
    window: DeliveryWindow,
    items_by_user: Mapping[str, Sequence[ContentItem]],
    *,
    now: datetime | None = None,
    max_workers: int | None = None,
) -> list[WindowScheduleResult]:
    """Run cycles for many users in parallel, one task per user.

    A retryable failure for one user is logged and reported in that user's
    result; the remaining users are unaffected.
    """
    now = now or datetime.now(tz=UTC)
    workers = max_workers or settings.scheduler_max_workers

    def _schedule(user_id: str) -> WindowScheduleResult:
        try:
            return schedule_window_use_case(
                repository, settings, user_id, window, items_by_user[user_id], now=now
            )
        except RetryableError as exc:
            logger.error(
                "schedule_window_failed",
                user_id=user_id,
                window=window.value,
                error=str(exc),
            )
            return WindowScheduleResult(
                user_id=user_id, window=window, reason=f"Failed: {exc}"
            )

    with ThreadPoolExecutor(
        max_workers=workers, thread_name_prefix="schedule_window"
    ) as executor:
        return list(executor.map(_schedule, items_by_user))
