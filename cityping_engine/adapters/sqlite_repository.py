"""SQLite repository adapter for local storage.

Implements RepositoryProtocol with SQLite backend. Timestamps are stored as
UTC ISO-8601 text with microsecond precision so they compare lexically.
"""

import json
import sqlite3
from collections.abc import Iterator, Sequence
from contextlib import AbstractContextManager, contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Final
from uuid import UUID

from cityping_engine.adapters.user_locks import UserLockRegistry
from cityping_engine.config.logging_config import get_logger
from cityping_engine.domain.exceptions import RepositoryError
from cityping_engine.domain.models import (
    AcceptedItem,
    AccountTier,
    ContentItem,
    ContentType,
    DeliveryChannel,
    DeliveryKind,
    DeliveryStatus,
    DeliveryTask,
    DeliveryWindow,
    MatchablePreference,
    MatchableUser,
    PendingContent,
    SendHistoryEntry,
    SmsOptInStatus,
    parse_topic_settings,
    topic_settings_blob,
)

logger = get_logger(__name__)

SQLITE_BUSY_TIMEOUT_SECONDS: Final[float] = 30.0

_SCHEMA: Final[tuple[str, ...]] = (
    """
    CREATE TABLE IF NOT EXISTS send_history (
        user_id TEXT NOT NULL,
        content_id TEXT NOT NULL,
        content_type TEXT NOT NULL,
        source_id TEXT,
        sent_at TEXT NOT NULL,
        delivery_window TEXT NOT NULL,
        version INTEGER NOT NULL DEFAULT 1,
        PRIMARY KEY (user_id, content_id)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_send_history_user_sent "
    "ON send_history(user_id, sent_at)",
    """
    CREATE TABLE IF NOT EXISTS pending_content (
        user_id TEXT NOT NULL,
        delivery_window TEXT NOT NULL,
        content_id TEXT NOT NULL,
        item_json TEXT NOT NULL,
        eligible_at TEXT NOT NULL,
        PRIMARY KEY (user_id, delivery_window, content_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS accepted_items (
        item_id TEXT PRIMARY KEY,
        source TEXT NOT NULL,
        title TEXT NOT NULL,
        locator TEXT NOT NULL,
        locator_lower TEXT NOT NULL,
        excerpt TEXT,
        external_id TEXT NOT NULL,
        locator_signature TEXT,
        fingerprint TEXT,
        accepted_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_accepted_items_locator "
    "ON accepted_items(locator_lower)",
    "CREATE INDEX IF NOT EXISTS idx_accepted_items_signature "
    "ON accepted_items(locator_signature)",
    "CREATE INDEX IF NOT EXISTS idx_accepted_items_accepted_at "
    "ON accepted_items(accepted_at)",
    """
    CREATE TABLE IF NOT EXISTS delivery_tasks (
        task_id TEXT PRIMARY KEY,
        user_id TEXT NOT NULL,
        reference_id TEXT NOT NULL,
        kind TEXT NOT NULL,
        channel TEXT NOT NULL,
        scheduled_for TEXT NOT NULL,
        status TEXT NOT NULL,
        payload TEXT NOT NULL,
        created_at TEXT NOT NULL,
        UNIQUE (user_id, reference_id, channel)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
        user_id TEXT PRIMARY KEY,
        email TEXT NOT NULL,
        phone TEXT,
        tier TEXT NOT NULL,
        sms_opt_in TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS user_preferences (
        user_id TEXT NOT NULL,
        topic TEXT NOT NULL,
        enabled INTEGER NOT NULL DEFAULT 1,
        settings TEXT NOT NULL,
        PRIMARY KEY (user_id, topic)
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_user_preferences_topic "
    "ON user_preferences(topic, enabled)",
)

_ACCEPTED_COLUMNS: Final[str] = (
    "item_id, source, title, locator, excerpt, external_id, "
    "locator_signature, fingerprint, accepted_at"
)


def _ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="microseconds")


def _parse_ts(value: str) -> datetime:
    parsed = datetime.fromisoformat(value)
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)


class SQLiteRepository:
    """SQLite-based repository for local runs and tests."""

    def __init__(self, db_path: str) -> None:
        """Initialize repository and ensure schema.

        Args:
            db_path: Path to SQLite database file
        """
        self.db_path = db_path
        self._locks = UserLockRegistry()

        Path(db_path).parent.mkdir(parents=True, exist_ok=True)
        self._create_schema()

    def _get_connection(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=SQLITE_BUSY_TIMEOUT_SECONDS)
        conn.row_factory = sqlite3.Row
        return conn

    @contextmanager
    def _transaction(self, operation: str) -> Iterator[sqlite3.Connection]:
        """Yield a connection; commit on success, roll back and wrap on error."""
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as e:
            conn.rollback()
            raise RepositoryError(f"Failed to {operation}: {e}") from e
        finally:
            conn.close()

    def _create_schema(self) -> None:
        logger.info("sqlite_schema_creation_started", db_path=str(self.db_path))
        with self._transaction("create schema") as conn:
            for statement in _SCHEMA:
                conn.execute(statement)
        logger.info("sqlite_schema_ready", db_path=str(self.db_path))

    # === Send history ===

    def get_send_history(self, user_id: str, since: datetime) -> list[SendHistoryEntry]:
        with self._transaction("get send history") as conn:
            rows = conn.execute(
                """
                SELECT * FROM send_history
                WHERE user_id = ? AND sent_at >= ?
                ORDER BY sent_at
                """,
                (user_id, _ts(since)),
            ).fetchall()
        return [self._row_to_history(row) for row in rows]

    def record_send(self, entry: SendHistoryEntry) -> SendHistoryEntry:
        with self._transaction("record send") as conn:
            conn.execute(
                """
                INSERT INTO send_history (
                    user_id, content_id, content_type, source_id,
                    sent_at, delivery_window, version
                ) VALUES (?, ?, ?, ?, ?, ?, 1)
                ON CONFLICT(user_id, content_id) DO UPDATE SET
                    content_type = excluded.content_type,
                    source_id = excluded.source_id,
                    sent_at = excluded.sent_at,
                    delivery_window = excluded.delivery_window,
                    version = send_history.version + 1
                """,
                (
                    entry.user_id,
                    entry.content_id,
                    entry.content_type.value,
                    entry.source_id,
                    _ts(entry.sent_at),
                    entry.window.value,
                ),
            )
            row = conn.execute(
                "SELECT * FROM send_history WHERE user_id = ? AND content_id = ?",
                (entry.user_id, entry.content_id),
            ).fetchone()
        return self._row_to_history(row)

    @staticmethod
    def _row_to_history(row: sqlite3.Row) -> SendHistoryEntry:
        return SendHistoryEntry(
            user_id=row["user_id"],
            content_id=row["content_id"],
            content_type=ContentType(row["content_type"]),
            source_id=row["source_id"],
            sent_at=_parse_ts(row["sent_at"]),
            window=DeliveryWindow(row["delivery_window"]),
            version=row["version"],
        )

    # === Pending buckets ===

    def save_pending(self, entries: Sequence[PendingContent]) -> int:
        if not entries:
            return 0
        with self._transaction("save pending content") as conn:
            conn.executemany(
                """
                INSERT INTO pending_content (
                    user_id, delivery_window, content_id, item_json, eligible_at
                ) VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id, delivery_window, content_id) DO UPDATE SET
                    item_json = excluded.item_json,
                    eligible_at = excluded.eligible_at
                """,
                [
                    (
                        entry.user_id,
                        entry.window.value,
                        entry.item.content_id,
                        entry.item.model_dump_json(),
                        _ts(entry.eligible_at),
                    )
                    for entry in entries
                ],
            )
        return len(entries)

    def pop_due_pending(
        self, user_id: str, window: DeliveryWindow, now: datetime
    ) -> list[PendingContent]:
        with self._transaction("pop pending content") as conn:
            rows = conn.execute(
                """
                SELECT * FROM pending_content
                WHERE user_id = ? AND delivery_window = ? AND eligible_at <= ?
                ORDER BY eligible_at
                """,
                (user_id, window.value, _ts(now)),
            ).fetchall()
            conn.executemany(
                """
                DELETE FROM pending_content
                WHERE user_id = ? AND delivery_window = ? AND content_id = ?
                """,
                [(user_id, window.value, row["content_id"]) for row in rows],
            )
        return [
            PendingContent(
                user_id=row["user_id"],
                window=DeliveryWindow(row["delivery_window"]),
                item=ContentItem.model_validate_json(row["item_json"]),
                eligible_at=_parse_ts(row["eligible_at"]),
            )
            for row in rows
        ]

    # === Accepted items ===

    def find_accepted_by_locator(
        self, locator: str, since: datetime
    ) -> AcceptedItem | None:
        with self._transaction("find accepted item by locator") as conn:
            row = conn.execute(
                f"""
                SELECT {_ACCEPTED_COLUMNS} FROM accepted_items
                WHERE locator_lower = ? AND accepted_at >= ?
                ORDER BY accepted_at DESC LIMIT 1
                """,
                (locator.strip().lower(), _ts(since)),
            ).fetchone()
        return self._row_to_accepted(row) if row else None

    def find_accepted_by_signature(
        self, signature: str, exclude_source: str, since: datetime
    ) -> AcceptedItem | None:
        with self._transaction("find accepted item by signature") as conn:
            row = conn.execute(
                f"""
                SELECT {_ACCEPTED_COLUMNS} FROM accepted_items
                WHERE locator_signature = ? AND source != ? AND accepted_at >= ?
                """,
                (signature, exclude_source, _ts(since)),
            ).fetchone()
        return self._row_to_accepted(row) if row else None

    def list_recent_accepted(
        self, exclude_source: str, since: datetime, limit: int
    ) -> list[AcceptedItem]:
        with self._transaction("list recent accepted items") as conn:
            rows = conn.execute(
                f"""
                SELECT {_ACCEPTED_COLUMNS} FROM accepted_items
                WHERE source != ? AND accepted_at >= ?
                ORDER BY accepted_at DESC LIMIT ?
                """,
                (exclude_source, _ts(since), limit),
            ).fetchall()
        return [self._row_to_accepted(row) for row in rows]

    def insert_accepted_item(
        self, item: AcceptedItem, stale_before: datetime
    ) -> AcceptedItem | None:
        with self._transaction("insert accepted item") as conn:
            # Write lock held across the cross-source check and the insert.
            conn.execute("BEGIN IMMEDIATE")
            conflict = None
            if item.locator_signature:
                conflict = conn.execute(
                    f"""
                    SELECT {_ACCEPTED_COLUMNS} FROM accepted_items
                    WHERE locator_signature = ? AND source != ? AND accepted_at >= ?
                    ORDER BY accepted_at LIMIT 1
                    """,
                    (item.locator_signature, item.source, _ts(stale_before)),
                ).fetchone()
            if conflict is None:
                conn.execute(
                    """
                    INSERT INTO accepted_items (
                        item_id, source, title, locator, locator_lower, excerpt,
                        external_id, locator_signature, fingerprint, accepted_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        str(item.item_id),
                        item.source,
                        item.title,
                        item.locator,
                        item.locator.strip().lower(),
                        item.excerpt,
                        item.external_id,
                        item.locator_signature,
                        item.fingerprint,
                        _ts(item.accepted_at),
                    ),
                )
        return self._row_to_accepted(conflict) if conflict else None

    @staticmethod
    def _row_to_accepted(row: sqlite3.Row) -> AcceptedItem:
        return AcceptedItem(
            item_id=UUID(row["item_id"]),
            source=row["source"],
            title=row["title"],
            locator=row["locator"],
            excerpt=row["excerpt"],
            external_id=row["external_id"],
            locator_signature=row["locator_signature"],
            fingerprint=row["fingerprint"],
            accepted_at=_parse_ts(row["accepted_at"]),
        )

    # === Delivery tasks ===

    def insert_delivery_tasks(
        self, tasks: Sequence[DeliveryTask]
    ) -> list[DeliveryTask]:
        inserted: list[DeliveryTask] = []
        if not tasks:
            return inserted
        created_at = _ts(datetime.now(tz=UTC))
        with self._transaction("insert delivery tasks") as conn:
            for task in tasks:
                cursor = conn.execute(
                    """
                    INSERT INTO delivery_tasks (
                        task_id, user_id, reference_id, kind, channel,
                        scheduled_for, status, payload, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, reference_id, channel) DO NOTHING
                    """,
                    (
                        str(task.task_id),
                        task.user_id,
                        task.reference_id,
                        task.kind.value,
                        task.channel.value,
                        _ts(task.scheduled_for),
                        task.status.value,
                        json.dumps(task.payload, default=str),
                        created_at,
                    ),
                )
                if cursor.rowcount:
                    inserted.append(task)
        return inserted

    def get_delivery_tasks(
        self, user_id: str | None = None, reference_id: str | None = None
    ) -> list[DeliveryTask]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = ?")
            params.append(user_id)
        if reference_id is not None:
            clauses.append("reference_id = ?")
            params.append(reference_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._transaction("get delivery tasks") as conn:
            rows = conn.execute(
                f"SELECT * FROM delivery_tasks {where} "
                "ORDER BY scheduled_for, user_id, channel",
                params,
            ).fetchall()
        return [
            DeliveryTask(
                task_id=UUID(row["task_id"]),
                user_id=row["user_id"],
                reference_id=row["reference_id"],
                kind=DeliveryKind(row["kind"]),
                channel=DeliveryChannel(row["channel"]),
                scheduled_for=_parse_ts(row["scheduled_for"]),
                status=DeliveryStatus(row["status"]),
                payload=json.loads(row["payload"]),
            )
            for row in rows
        ]

    # === Users & preferences ===

    def save_user(self, user: MatchableUser) -> None:
        with self._transaction("save user") as conn:
            conn.execute(
                """
                INSERT INTO users (user_id, email, phone, tier, sms_opt_in)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    email = excluded.email,
                    phone = excluded.phone,
                    tier = excluded.tier,
                    sms_opt_in = excluded.sms_opt_in
                """,
                (
                    user.user_id,
                    user.email,
                    user.phone,
                    user.tier.value,
                    user.sms_opt_in.value,
                ),
            )

    def save_preference(self, preference: MatchablePreference) -> None:
        with self._transaction("save preference") as conn:
            conn.execute(
                """
                INSERT INTO user_preferences (user_id, topic, enabled, settings)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(user_id, topic) DO UPDATE SET
                    enabled = excluded.enabled,
                    settings = excluded.settings
                """,
                (
                    preference.user_id,
                    preference.topic,
                    1 if preference.enabled else 0,
                    json.dumps(topic_settings_blob(preference.settings)),
                ),
            )

    @staticmethod
    def _row_to_user(row: sqlite3.Row) -> MatchableUser:
        return MatchableUser(
            user_id=row["user_id"],
            email=row["email"],
            phone=row["phone"],
            tier=AccountTier(row["tier"]),
            sms_opt_in=SmsOptInStatus(row["sms_opt_in"]),
        )

    def get_user(self, user_id: str) -> MatchableUser | None:
        with self._transaction("get user") as conn:
            row = conn.execute(
                "SELECT * FROM users WHERE user_id = ?", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_users(self, user_ids: Sequence[str]) -> list[MatchableUser]:
        if not user_ids:
            return []
        placeholders = ", ".join("?" for _ in user_ids)
        with self._transaction("get users") as conn:
            rows = conn.execute(
                f"SELECT * FROM users WHERE user_id IN ({placeholders}) "
                "ORDER BY user_id",
                list(user_ids),
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def list_user_ids(self) -> list[str]:
        with self._transaction("list users") as conn:
            rows = conn.execute("SELECT user_id FROM users ORDER BY user_id").fetchall()
        return [row["user_id"] for row in rows]

    def get_enabled_preferences(self, topic: str) -> list[MatchablePreference]:
        with self._transaction("get enabled preferences") as conn:
            rows = conn.execute(
                """
                SELECT user_id, topic, enabled, settings FROM user_preferences
                WHERE topic = ? AND enabled = 1
                ORDER BY user_id
                """,
                (topic,),
            ).fetchall()
        return [
            MatchablePreference(
                user_id=row["user_id"],
                topic=row["topic"],
                enabled=bool(row["enabled"]),
                settings=parse_topic_settings(row["topic"], json.loads(row["settings"])),
            )
            for row in rows
        ]

    # === Locking ===

    def user_lock(
        self, user_id: str, timeout_seconds: float
    ) -> AbstractContextManager[None]:
        """In-process lock; SQLite deployments run scheduling in one process."""
        return self._locks.hold(user_id, timeout_seconds)

    def close(self) -> None:
        """Connections are per call; nothing to release."""
