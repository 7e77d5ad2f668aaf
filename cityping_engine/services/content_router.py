"""Per-user content routing across the daily delivery windows.

``ContentRouter`` decides, for each content item, whether it goes into the
current window, waits for a later one, is skipped, or bypasses the windows
entirely. Decisions are a pure function of (item, window, now) and the
router's history snapshot; ``load_history`` refreshes the snapshot from the
store and ``record_send`` is the only write path into send history.
"""

from collections.abc import Iterable, Sequence
from datetime import UTC, datetime, timedelta
from typing import Any

from cityping_engine.config.logging_config import get_logger
from cityping_engine.domain.content_catalog import (
    NEXT_DAY_PREVIEW_TYPES,
    PARKING_STATUS_TYPES,
    default_priority,
    is_status_flip,
    preferred_windows,
    urgency_of,
)
from cityping_engine.domain.models import (
    IMMEDIATE,
    AbundanceOutcome,
    ContentItem,
    ContentType,
    DeliveryWindow,
    RoutedContent,
    RoutingAction,
    RoutingDecision,
    ScarcityAction,
    ScarcityOutcome,
    SendHistoryEntry,
    SlotBucket,
    UrgencyClass,
)
from cityping_engine.domain.policies import RoutingPolicy
from cityping_engine.domain.protocols import SendHistoryStoreProtocol
from cityping_engine.domain.routing_constants import (
    ESCALATION_BASELINE_PRIORITY,
    ESCALATION_DELTA,
    MIDDAY_HIGH_PRIORITY,
    OVERFLOW_DEFER_PRIORITY,
    URGENT_IMMEDIATE_PRIORITY,
    URGENT_RESEND_PRIORITY,
)
from cityping_engine.observability.metrics import ROUTING_DECISIONS_TOTAL
from cityping_engine.services.delivery_windows import (
    next_preferred_window,
    next_window,
)

logger = get_logger(__name__)

_DEFAULT_POLICY = RoutingPolicy()


def _age_hours(item: ContentItem, now: datetime) -> float:
    return (now - item.created_at).total_seconds() / 3600


def is_content_fresh(
    item: ContentItem, now: datetime, policy: RoutingPolicy | None = None
) -> bool:
    """True while the item's age is within its urgency class freshness window."""
    policy = policy or _DEFAULT_POLICY
    return _age_hours(item, now) <= policy.max_age_hours(urgency_of(item.content_type))


def create_content_item(
    content_type: ContentType,
    content_id: str,
    title: str,
    *,
    body: str | None = None,
    priority: int | None = None,
    source_id: str | None = None,
    expires_at: datetime | None = None,
    valid_windows: Sequence[DeliveryWindow] | None = None,
    metadata: dict[str, Any] | None = None,
    created_at: datetime | None = None,
) -> ContentItem:
    """Build a ContentItem, filling the catalog default priority and creation time."""
    return ContentItem(
        content_id=content_id,
        content_type=content_type,
        title=title,
        body=body,
        priority=default_priority(content_type) if priority is None else priority,
        created_at=created_at or datetime.now(tz=UTC),
        expires_at=expires_at,
        valid_windows=tuple(valid_windows) if valid_windows is not None else None,
        source_id=source_id,
        metadata=metadata or {},
    )


class ContentRouter:
    """Routing state and decisions for one user."""

    def __init__(
        self,
        user_id: str,
        history_store: SendHistoryStoreProtocol | None = None,
        policy: RoutingPolicy | None = None,
    ) -> None:
        self.user_id = user_id
        self._history_store = history_store
        self._policy = policy or _DEFAULT_POLICY
        self._by_content_id: dict[str, SendHistoryEntry] = {}
        self._by_source_id: dict[str, SendHistoryEntry] = {}

    @property
    def policy(self) -> RoutingPolicy:
        return self._policy

    @property
    def history(self) -> list[SendHistoryEntry]:
        return list(self._by_content_id.values())

    def _remember(self, entry: SendHistoryEntry) -> None:
        previous = self._by_content_id.get(entry.content_id)
        if previous is not None and previous.sent_at > entry.sent_at:
            return
        self._by_content_id[entry.content_id] = entry
        if entry.source_id:
            self._by_source_id[entry.source_id] = entry

    def load_history(self, now: datetime) -> int:
        """Replace the snapshot with persisted sends inside the lookback window.

        Returns:
            Number of history entries loaded
        """
        self._by_content_id.clear()
        self._by_source_id.clear()
        if self._history_store is None:
            return 0

        since = now - timedelta(hours=self._policy.history_lookback_hours)
        entries = self._history_store.get_send_history(self.user_id, since)
        for entry in sorted(entries, key=lambda e: e.sent_at):
            self._remember(entry)

        logger.debug("send_history_loaded", user_id=self.user_id, entries=len(entries))
        return len(entries)

    def _previous_send(self, item: ContentItem) -> SendHistoryEntry | None:
        entry = self._by_content_id.get(item.content_id)
        if entry is None and item.source_id:
            entry = self._by_source_id.get(item.source_id)
        return entry

    @staticmethod
    def _resend_reason(
        item: ContentItem, urgency: UrgencyClass, previous: SendHistoryEntry
    ) -> str | None:
        if urgency is UrgencyClass.URGENT and item.priority >= URGENT_RESEND_PRIORITY:
            return "Urgent update to previously sent content"
        if is_status_flip(item.content_type, previous.content_type):
            return (
                f"Status change detected ({previous.content_type.value} -> "
                f"{item.content_type.value})"
            )
        if item.priority - ESCALATION_BASELINE_PRIORITY > ESCALATION_DELTA:
            return "Significant priority escalation"
        return None

    def route_content(
        self, item: ContentItem, window: DeliveryWindow, now: datetime
    ) -> RoutingDecision:
        """Decide what to do with ``item`` during ``window`` at ``now``."""
        decision = self._route(item, window, now)
        ROUTING_DECISIONS_TOTAL.labels(action=decision.action.value).inc()
        logger.debug(
            "content_routed",
            user_id=self.user_id,
            content_id=item.content_id,
            content_type=item.content_type.value,
            window=window.value,
            action=decision.action.value,
            target=str(decision.target),
            reason=decision.reason,
        )
        return decision

    def _route(
        self, item: ContentItem, window: DeliveryWindow, now: datetime
    ) -> RoutingDecision:
        urgency = urgency_of(item.content_type)
        windows = item.valid_windows or preferred_windows(item.content_type)

        max_age = self._policy.max_age_hours(urgency)
        age = _age_hours(item, now)
        if age > max_age:
            return RoutingDecision(
                item=item,
                action=RoutingAction.SKIP,
                target=window,
                reason=f"Content too old ({age:.1f}h > {max_age}h freshness window)",
            )

        if item.expires_at is not None and item.expires_at < now:
            return RoutingDecision(
                item=item, action=RoutingAction.SKIP, target=window, reason="Content expired"
            )

        if urgency is UrgencyClass.URGENT and item.priority >= URGENT_IMMEDIATE_PRIORITY:
            return RoutingDecision(
                item=item,
                action=RoutingAction.SEND_IMMEDIATE,
                target=IMMEDIATE,
                reason="Urgent content with high priority",
            )

        previous = self._previous_send(item)
        if previous is not None:
            resend_reason = self._resend_reason(item, urgency, previous)
            if resend_reason is None:
                hours_since = (now - previous.sent_at).total_seconds() / 3600
                return RoutingDecision(
                    item=item,
                    action=RoutingAction.SKIP,
                    target=window,
                    reason=(
                        f"Already sent in {previous.window.value}: "
                        f"sent {hours_since:.1f} hours ago"
                    ),
                )

        if urgency is UrgencyClass.TIME_SENSITIVE:
            if window in windows:
                return RoutingDecision(
                    item=item,
                    action=RoutingAction.INCLUDE,
                    target=window,
                    reason=f"Time-sensitive content for {window.value} window",
                )
            upcoming = next_preferred_window(tuple(windows), window, now, self._policy)
            if upcoming is not None:
                target, defer_until = upcoming
                return RoutingDecision(
                    item=item,
                    action=RoutingAction.DEFER,
                    target=target,
                    defer_until=defer_until,
                    reason=f"Deferring to preferred {target.value} window",
                )

        if urgency is UrgencyClass.EVERGREEN:
            return RoutingDecision(
                item=item,
                action=RoutingAction.INCLUDE,
                target=window,
                reason="Evergreen content",
            )

        if urgency is UrgencyClass.BATCHABLE:
            target, defer_until = next_window(window, now, self._policy)
            return RoutingDecision(
                item=item,
                action=RoutingAction.DEFER,
                target=target,
                defer_until=defer_until,
                reason="Batchable content deferred",
            )

        return RoutingDecision(
            item=item, action=RoutingAction.INCLUDE, target=window, reason="Default routing"
        )

    def route_multiple(
        self, items: Iterable[ContentItem], window: DeliveryWindow, now: datetime
    ) -> RoutedContent:
        """Route every item and partition the decisions by action."""
        routed = RoutedContent()
        buckets = {
            RoutingAction.INCLUDE: routed.include,
            RoutingAction.DEFER: routed.defer,
            RoutingAction.SKIP: routed.skip,
            RoutingAction.SEND_IMMEDIATE: routed.immediate,
        }
        for item in items:
            decision = self.route_content(item, window, now)
            buckets[decision.action].append(decision)
        return routed

    def build_slot_content(
        self, decisions: Iterable[RoutingDecision], window: DeliveryWindow
    ) -> SlotBucket:
        """Priority-sort included items and apply capacity and minimum.

        Below the minimum the window is not sent and every candidate is
        returned as dropped; callers may still apply ``handle_scarcity``.
        """
        capacity = self._policy.capacity(window)
        minimum = self._policy.minimum(window)

        included = sorted(
            (d.item for d in decisions if d.action is RoutingAction.INCLUDE),
            key=lambda item: item.priority,
            reverse=True,
        )
        kept = included[:capacity]
        overflow = included[capacity:]

        if len(kept) < minimum:
            bucket = SlotBucket(
                window=window,
                items=[],
                dropped=included,
                should_send=False,
                skip_reason=f"Insufficient content ({len(kept)} < {minimum} items)",
            )
        else:
            bucket = SlotBucket(
                window=window, items=kept, dropped=overflow, should_send=True
            )

        logger.debug(
            "slot_built",
            user_id=self.user_id,
            window=window.value,
            kept=len(bucket.items),
            dropped=len(bucket.dropped),
            should_send=bucket.should_send,
        )
        return bucket

    def record_send(
        self, item: ContentItem, window: DeliveryWindow, now: datetime
    ) -> SendHistoryEntry:
        """Record that ``item`` was delivered in ``window``.

        Updates the in-memory snapshot and, when a store is configured,
        upserts the persisted entry (incrementing its version).
        """
        entry = SendHistoryEntry(
            user_id=self.user_id,
            content_id=item.content_id,
            content_type=item.content_type,
            source_id=item.source_id,
            sent_at=now,
            window=window,
        )
        if self._history_store is not None:
            entry = self._history_store.record_send(entry)
        self._remember(entry)
        return entry


def handle_scarcity(
    window: DeliveryWindow,
    items: Sequence[ContentItem],
    policy: RoutingPolicy | None = None,
    *,
    sent_immediately: Sequence[ContentItem] = (),
) -> ScarcityOutcome:
    """Decide whether a window below its minimum is still worth sending.

    Only ``items`` count toward the minimum. ``sent_immediately`` holds the
    urgent items already sent in the same cycle; they can trigger the
    parking-status or tomorrow-preview override but never fill the window.
    """
    policy = policy or _DEFAULT_POLICY
    minimum = policy.minimum(window)
    count = len(items)
    present = [*items, *sent_immediately]

    if count >= minimum:
        return ScarcityOutcome(action=ScarcityAction.SEND, reason="Sufficient content")

    if window is DeliveryWindow.MORNING and any(
        item.content_type in PARKING_STATUS_TYPES for item in present
    ):
        return ScarcityOutcome(
            action=ScarcityAction.SEND, reason="Morning window with parking status"
        )

    if window is DeliveryWindow.EVENING and any(
        item.content_type in NEXT_DAY_PREVIEW_TYPES for item in present
    ):
        return ScarcityOutcome(
            action=ScarcityAction.SEND, reason="Evening window with tomorrow preview"
        )

    if window is DeliveryWindow.MIDDAY:
        if count == 0:
            return ScarcityOutcome(
                action=ScarcityAction.SKIP, reason="No content for midday window"
            )
        if not any(item.priority >= MIDDAY_HIGH_PRIORITY for item in items):
            return ScarcityOutcome(
                action=ScarcityAction.COMBINE_NEXT,
                reason="Low-priority content only, combining with evening",
            )

    return ScarcityOutcome(
        action=ScarcityAction.SKIP, reason=f"Insufficient content ({count} < {minimum})"
    )


def handle_abundance(
    window: DeliveryWindow,
    items: Sequence[ContentItem],
    policy: RoutingPolicy | None = None,
) -> AbundanceOutcome:
    """Trim an over-capacity window.

    Urgent items are kept first, remaining room goes to the highest
    priorities. Overflow batchable and evergreen items are deferred,
    time-sensitive ones deferred at priority 60+ and dropped otherwise, and
    urgent overflow goes to a separate immediate send.
    """
    policy = policy or _DEFAULT_POLICY
    capacity = policy.capacity(window)

    if len(items) <= capacity:
        return AbundanceOutcome(keep=list(items), reason="Within limits")

    ranked = sorted(items, key=lambda item: item.priority, reverse=True)
    urgent = [i for i in ranked if urgency_of(i.content_type) is UrgencyClass.URGENT]
    others = [i for i in ranked if urgency_of(i.content_type) is not UrgencyClass.URGENT]

    keep = urgent[:capacity]
    room = capacity - len(keep)
    keep.extend(others[:room])

    outcome = AbundanceOutcome(
        keep=keep,
        immediate=urgent[capacity:],
        reason=f"Trimmed from {len(items)} to {len(keep)} items",
    )
    for item in others[room:]:
        urgency = urgency_of(item.content_type)
        if urgency is UrgencyClass.TIME_SENSITIVE and item.priority < OVERFLOW_DEFER_PRIORITY:
            outcome.drop.append(item)
        else:
            outcome.defer.append(item)
    return outcome
