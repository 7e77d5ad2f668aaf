"""Protocol definitions for dependency inversion.

These abstract interfaces define contracts that adapters must implement.
Services depend on the narrow store protocols; the repository adapters
implement all of them at once (``RepositoryProtocol``).
"""

from collections.abc import Sequence
from contextlib import AbstractContextManager
from datetime import datetime
from typing import Protocol

from cityping_engine.domain.models import (
    AcceptedItem,
    DeliveryTask,
    DeliveryWindow,
    MatchablePreference,
    MatchableUser,
    PendingContent,
    SendHistoryEntry,
    ValidationFailureReport,
)


class SendHistoryStoreProtocol(Protocol):
    """Durable per-user record of delivered content."""

    def get_send_history(self, user_id: str, since: datetime) -> list[SendHistoryEntry]:
        """Return history entries for ``user_id`` sent at or after ``since``."""
        ...

    def record_send(self, entry: SendHistoryEntry) -> SendHistoryEntry:
        """Upsert the entry keyed by (user_id, content_id).

        An existing row is overwritten with the new timestamp, window and
        type, and its version is incremented.

        Returns:
            The stored entry including its current version

        Raises:
            RepositoryError: On storage failures
        """
        ...


class PendingContentStoreProtocol(Protocol):
    """Deferred routing decisions waiting for their target window."""

    def save_pending(self, entries: Sequence[PendingContent]) -> int:
        """Upsert pending entries keyed by (user_id, window, content_id)."""
        ...

    def pop_due_pending(
        self, user_id: str, window: DeliveryWindow, now: datetime
    ) -> list[PendingContent]:
        """Remove and return entries for the window whose eligible_at <= now."""
        ...


class AcceptedItemStoreProtocol(Protocol):
    """Previously accepted stories used by the deduplication cascade."""

    def find_accepted_by_locator(
        self, locator: str, since: datetime
    ) -> AcceptedItem | None:
        """Case-insensitive exact locator lookup across all sources."""
        ...

    def find_accepted_by_signature(
        self, signature: str, exclude_source: str, since: datetime
    ) -> AcceptedItem | None:
        """Locator-signature lookup restricted to other sources."""
        ...

    def list_recent_accepted(
        self, exclude_source: str, since: datetime, limit: int
    ) -> list[AcceptedItem]:
        """Most recent accepted items from other sources, newest first."""
        ...

    def insert_accepted_item(
        self, item: AcceptedItem, stale_before: datetime
    ) -> AcceptedItem | None:
        """Insert ``item`` unless another source already holds its signature.

        The cross-source check and the insert are atomic. Rows accepted
        before ``stale_before`` never conflict, and rows from the same source
        share a signature freely.

        Returns:
            None when the item was stored, otherwise the conflicting
            existing item (a duplicate detected on insert)
        """
        ...


class DeliveryTaskStoreProtocol(Protocol):
    """Durable outbox consumed by the transport layer."""

    def insert_delivery_tasks(
        self, tasks: Sequence[DeliveryTask]
    ) -> list[DeliveryTask]:
        """Insert tasks, silently skipping existing (user, reference, channel) keys.

        Returns:
            The tasks actually inserted
        """
        ...

    def get_delivery_tasks(
        self, user_id: str | None = None, reference_id: str | None = None
    ) -> list[DeliveryTask]:
        ...


class PreferenceStoreProtocol(Protocol):
    """Users and their per-topic preferences."""

    def save_user(self, user: MatchableUser) -> None: ...

    def save_preference(self, preference: MatchablePreference) -> None: ...

    def get_user(self, user_id: str) -> MatchableUser | None: ...

    def get_users(self, user_ids: Sequence[str]) -> list[MatchableUser]: ...

    def list_user_ids(self) -> list[str]: ...

    def get_enabled_preferences(self, topic: str) -> list[MatchablePreference]:
        """Return enabled preferences for ``topic`` across all users."""
        ...


class RepositoryProtocol(
    SendHistoryStoreProtocol,
    PendingContentStoreProtocol,
    AcceptedItemStoreProtocol,
    DeliveryTaskStoreProtocol,
    PreferenceStoreProtocol,
    Protocol,
):
    """Full persistence surface implemented by the SQLite/Postgres adapters."""

    def user_lock(
        self, user_id: str, timeout_seconds: float
    ) -> AbstractContextManager[None]:
        """Hold the per-user scheduling lock for the duration of the context.

        Raises:
            UserLockTimeoutError: If the lock is not acquired in time
        """
        ...

    def close(self) -> None: ...


class AlertSinkProtocol(Protocol):
    """Administrative alerting for upstream schema drift."""

    def send_validation_report(self, report: ValidationFailureReport) -> None: ...
