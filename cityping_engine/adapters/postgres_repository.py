"""PostgreSQL repository implementation using psycopg2 with connection pooling."""

from collections.abc import Iterator, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from threading import Lock
from time import monotonic, sleep
from typing import TYPE_CHECKING, Any, Final

from psycopg2 import Error as PsycopgError
from psycopg2 import extensions
from psycopg2 import pool as psycopg2_pool
from psycopg2.extras import Json, RealDictCursor, register_uuid

from cityping_engine.config.logging_config import get_logger
from cityping_engine.domain.exceptions import RepositoryError, UserLockTimeoutError
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

if TYPE_CHECKING:
    from cityping_engine.config.settings import Settings


DEFAULT_POOL_MIN_CONNECTIONS: Final[int] = 2
DEFAULT_POOL_MAX_CONNECTIONS: Final[int] = 20
POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT: Final[int] = 5
POOL_ACQUIRE_BASE_DELAY_SECONDS: Final[float] = 0.1
POOL_ACQUIRE_MAX_DELAY_SECONDS: Final[float] = 2.0
USER_LOCK_POLL_SECONDS: Final[float] = 0.05
SIGNATURE_LOCK_NAMESPACE: Final[int] = 7301

_ACCEPTED_COLUMNS: Final[str] = (
    "item_id, source, title, locator, excerpt, external_id, "
    "locator_signature, fingerprint, accepted_at"
)

logger = get_logger(__name__)

_UUID_ADAPTER_REGISTERED: bool = False
_UUID_ADAPTER_LOCK: Lock = Lock()


def _ensure_uuid_adapter_registered() -> None:
    """Register psycopg2 adapters required by the repository."""

    global _UUID_ADAPTER_REGISTERED
    if _UUID_ADAPTER_REGISTERED:
        return

    with _UUID_ADAPTER_LOCK:
        if _UUID_ADAPTER_REGISTERED:
            return
        register_uuid()
        _UUID_ADAPTER_REGISTERED = True


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


class PostgresRepository:
    """PostgreSQL repository backed by a connection pool.

    Tables are created by the Alembic migrations under ``alembic/versions``.
    Per-user scheduling locks are session advisory locks keyed by
    ``hashtext(user_id)``, so they hold across processes.
    Accepted-item inserts take a transaction advisory lock per locator
    signature, so the cross-source check and the insert are atomic.
    """

    def __init__(
        self,
        host: str,
        port: int,
        database: str,
        user: str,
        password: str,
        settings: "Settings | None" = None,
    ):
        """Initialize PostgreSQL repository with pooled connections."""
        self._host = host
        self._port = port
        self._database = database
        self._user = user
        self._password = password

        self._statement_timeout_ms = (
            settings.postgres_statement_timeout_ms if settings else 10_000
        )
        self._connect_timeout_seconds = (
            settings.postgres_connect_timeout_seconds if settings else 10
        )
        self._application_name = (
            settings.postgres_application_name if settings else "cityping_engine"
        )
        self._pool_min_connections = (
            settings.postgres_min_connections
            if settings
            else DEFAULT_POOL_MIN_CONNECTIONS
        )
        self._pool_max_connections = (
            settings.postgres_max_connections
            if settings
            else DEFAULT_POOL_MAX_CONNECTIONS
        )
        self._ssl_mode = settings.postgres_ssl_mode if settings else None

        if self._pool_min_connections <= 0:
            raise RepositoryError("postgres_min_connections must be positive")
        if self._pool_max_connections < self._pool_min_connections:
            raise RepositoryError(
                "postgres_max_connections must be greater than or equal to postgres_min_connections"
            )

        _ensure_uuid_adapter_registered()
        self._pool = self._create_pool()

    def _create_pool(self) -> psycopg2_pool.ThreadedConnectionPool:
        """Create a PostgreSQL connection pool with validation."""
        options = " ".join(
            [
                f"-c statement_timeout={self._statement_timeout_ms}",
                f"-c application_name={self._application_name}",
                "-c timezone=UTC",
            ]
        )
        conn_kwargs: dict[str, Any] = {
            "host": self._host,
            "port": self._port,
            "database": self._database,
            "user": self._user,
            "password": self._password,
            "connect_timeout": self._connect_timeout_seconds,
            "options": options,
        }
        if self._ssl_mode:
            conn_kwargs["sslmode"] = self._ssl_mode

        try:
            pool = psycopg2_pool.ThreadedConnectionPool(
                self._pool_min_connections,
                self._pool_max_connections,
                **conn_kwargs,
            )
        except PsycopgError as exc:
            raise RepositoryError(
                f"Failed to initialize PostgreSQL pool: {exc}"
            ) from exc

        try:
            conn = pool.getconn()
            try:
                with conn.cursor() as cur:
                    cur.execute("SELECT 1")
            finally:
                pool.putconn(conn)
        except PsycopgError as exc:
            pool.closeall()
            raise RepositoryError(f"PostgreSQL validation query failed: {exc}") from exc

        logger.info(
            "postgres_pool_initialized",
            host=self._host,
            port=self._port,
            database=self._database,
            min_connections=self._pool_min_connections,
            max_connections=self._pool_max_connections,
            statement_timeout_ms=self._statement_timeout_ms,
        )
        return pool

    def _acquire_connection_with_retry(self) -> extensions.connection:
        """Acquire a connection from the pool with exponential backoff."""
        attempt = 0
        delay = POOL_ACQUIRE_BASE_DELAY_SECONDS
        while True:
            attempt += 1
            try:
                return self._pool.getconn()
            except psycopg2_pool.PoolError as exc:
                if attempt >= POOL_ACQUIRE_MAX_ATTEMPTS_DEFAULT:
                    logger.error(
                        "postgres_pool_acquire_failed",
                        attempts=attempt,
                        max_connections=self._pool_max_connections,
                    )
                    raise RepositoryError(
                        "Failed to acquire PostgreSQL connection from pool"
                    ) from exc
                logger.warning(
                    "postgres_pool_exhausted_retry", attempt=attempt, wait_seconds=delay
                )
                sleep(delay)
                delay = min(delay * 2, POOL_ACQUIRE_MAX_DELAY_SECONDS)

    def _release_connection(self, conn: extensions.connection, *, close: bool) -> None:
        try:
            self._pool.putconn(conn, close=close)
        except PsycopgError:
            logger.warning(
                "postgres_putconn_failed", database=self._database, exc_info=True
            )

    @contextmanager
    def _get_connection(self) -> Iterator[extensions.connection]:
        """Borrow a connection, commit on success, roll back and wrap on error."""
        conn = self._acquire_connection_with_retry()
        conn.autocommit = False
        try:
            yield conn
            conn.commit()
        except PsycopgError as exc:
            try:
                conn.rollback()
            except PsycopgError:
                logger.warning(
                    "postgres_connection_rollback_failed",
                    database=self._database,
                    exc_info=True,
                )
            self._release_connection(conn, close=True)
            raise RepositoryError(f"PostgreSQL error: {exc}") from exc
        except BaseException:
            conn.rollback()
            self._release_connection(conn, close=False)
            raise
        else:
            self._release_connection(conn, close=False)

    def close(self) -> None:
        """Close all connections in the pool."""
        self._pool.closeall()
        logger.info("postgres_pool_closed", database=self._database)

    # === Send history ===

    def get_send_history(self, user_id: str, since: datetime) -> list[SendHistoryEntry]:
        with self._get_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                SELECT * FROM send_history
                WHERE user_id = %s AND sent_at >= %s
                ORDER BY sent_at
                """,
                (user_id, _aware(since)),
            )
            rows = cur.fetchall()
        return [self._row_to_history(row) for row in rows]

    def record_send(self, entry: SendHistoryEntry) -> SendHistoryEntry:
        with self._get_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                INSERT INTO send_history (
                    user_id, content_id, content_type, source_id,
                    sent_at, delivery_window, version
                ) VALUES (%s, %s, %s, %s, %s, %s, 1)
                ON CONFLICT (user_id, content_id) DO UPDATE SET
                    content_type = EXCLUDED.content_type,
                    source_id = EXCLUDED.source_id,
                    sent_at = EXCLUDED.sent_at,
                    delivery_window = EXCLUDED.delivery_window,
                    version = send_history.version + 1
                RETURNING *
                """,
                (
                    entry.user_id,
                    entry.content_id,
                    entry.content_type.value,
                    entry.source_id,
                    entry.sent_at,
                    entry.window.value,
                ),
            )
            row = cur.fetchone()
        return self._row_to_history(row)

    @staticmethod
    def _row_to_history(row: dict[str, Any]) -> SendHistoryEntry:
        return SendHistoryEntry(
            user_id=row["user_id"],
            content_id=row["content_id"],
            content_type=ContentType(row["content_type"]),
            source_id=row["source_id"],
            sent_at=row["sent_at"],
            window=DeliveryWindow(row["delivery_window"]),
            version=row["version"],
        )

    # === Pending buckets ===

    def save_pending(self, entries: Sequence[PendingContent]) -> int:
        if not entries:
            return 0
        with self._get_connection() as conn, conn.cursor() as cur:
            cur.executemany(
                """
                INSERT INTO pending_content (
                    user_id, delivery_window, content_id, item, eligible_at
                ) VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (user_id, delivery_window, content_id) DO UPDATE SET
                    item = EXCLUDED.item,
                    eligible_at = EXCLUDED.eligible_at
                """,
                [
                    (
                        entry.user_id,
                        entry.window.value,
                        entry.item.content_id,
                        Json(entry.item.model_dump(mode="json")),
                        entry.eligible_at,
                    )
                    for entry in entries
                ],
            )
        return len(entries)

    def pop_due_pending(
        self, user_id: str, window: DeliveryWindow, now: datetime
    ) -> list[PendingContent]:
        with self._get_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                DELETE FROM pending_content
                WHERE user_id = %s AND delivery_window = %s AND eligible_at <= %s
                RETURNING *
                """,
                (user_id, window.value, _aware(now)),
            )
            rows = cur.fetchall()
        rows.sort(key=lambda row: row["eligible_at"])
        return [
            PendingContent(
                user_id=row["user_id"],
                window=DeliveryWindow(row["delivery_window"]),
                item=ContentItem.model_validate(row["item"]),
                eligible_at=row["eligible_at"],
            )
            for row in rows
        ]

    # === Accepted items ===

    def find_accepted_by_locator(
        self, locator: str, since: datetime
    ) -> AcceptedItem | None:
        with self._get_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                f"""
                SELECT {_ACCEPTED_COLUMNS} FROM accepted_items
                WHERE locator_lower = %s AND accepted_at >= %s
                ORDER BY accepted_at DESC LIMIT 1
                """,
                (locator.strip().lower(), _aware(since)),
            )
            row = cur.fetchone()
        return self._row_to_accepted(row) if row else None

    def find_accepted_by_signature(
        self, signature: str, exclude_source: str, since: datetime
    ) -> AcceptedItem | None:
        with self._get_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                f"""
                SELECT {_ACCEPTED_COLUMNS} FROM accepted_items
                WHERE locator_signature = %s AND source <> %s AND accepted_at >= %s
                """,
                (signature, exclude_source, _aware(since)),
            )
            row = cur.fetchone()
        return self._row_to_accepted(row) if row else None

    def list_recent_accepted(
        self, exclude_source: str, since: datetime, limit: int
    ) -> list[AcceptedItem]:
        with self._get_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                f"""
                SELECT {_ACCEPTED_COLUMNS} FROM accepted_items
                WHERE source <> %s AND accepted_at >= %s
                ORDER BY accepted_at DESC LIMIT %s
                """,
                (exclude_source, _aware(since), limit),
            )
            rows = cur.fetchall()
        return [self._row_to_accepted(row) for row in rows]

    def insert_accepted_item(
        self, item: AcceptedItem, stale_before: datetime
    ) -> AcceptedItem | None:
        with self._get_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            conflict = None
            if item.locator_signature:
                # Released at commit; serializes writers of one signature.
                cur.execute(
                    "SELECT pg_advisory_xact_lock(%s, hashtext(%s))",
                    (SIGNATURE_LOCK_NAMESPACE, item.locator_signature),
                )
                cur.execute(
                    f"""
                    SELECT {_ACCEPTED_COLUMNS} FROM accepted_items
                    WHERE locator_signature = %s AND source <> %s AND accepted_at >= %s
                    ORDER BY accepted_at LIMIT 1
                    """,
                    (item.locator_signature, item.source, _aware(stale_before)),
                )
                conflict = cur.fetchone()
            if conflict is None:
                cur.execute(
                    """
                    INSERT INTO accepted_items (
                        item_id, source, title, locator, locator_lower, excerpt,
                        external_id, locator_signature, fingerprint, accepted_at
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        item.item_id,
                        item.source,
                        item.title,
                        item.locator,
                        item.locator.strip().lower(),
                        item.excerpt,
                        item.external_id,
                        item.locator_signature,
                        item.fingerprint,
                        item.accepted_at,
                    ),
                )
        return self._row_to_accepted(conflict) if conflict else None

    @staticmethod
    def _row_to_accepted(row: dict[str, Any]) -> AcceptedItem:
        return AcceptedItem(
            item_id=row["item_id"],
            source=row["source"],
            title=row["title"],
            locator=row["locator"],
            excerpt=row["excerpt"],
            external_id=row["external_id"],
            locator_signature=row["locator_signature"],
            fingerprint=row["fingerprint"],
            accepted_at=row["accepted_at"],
        )

    # === Delivery tasks ===

    def insert_delivery_tasks(
        self, tasks: Sequence[DeliveryTask]
    ) -> list[DeliveryTask]:
        inserted: list[DeliveryTask] = []
        if not tasks:
            return inserted
        with self._get_connection() as conn, conn.cursor() as cur:
            for task in tasks:
                cur.execute(
                    """
                    INSERT INTO delivery_tasks (
                        task_id, user_id, reference_id, kind, channel,
                        scheduled_for, status, payload
                    ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (user_id, reference_id, channel) DO NOTHING
                    """,
                    (
                        task.task_id,
                        task.user_id,
                        task.reference_id,
                        task.kind.value,
                        task.channel.value,
                        task.scheduled_for,
                        task.status.value,
                        Json(task.payload),
                    ),
                )
                if cur.rowcount:
                    inserted.append(task)
        return inserted

    def get_delivery_tasks(
        self, user_id: str | None = None, reference_id: str | None = None
    ) -> list[DeliveryTask]:
        clauses: list[str] = []
        params: list[Any] = []
        if user_id is not None:
            clauses.append("user_id = %s")
            params.append(user_id)
        if reference_id is not None:
            clauses.append("reference_id = %s")
            params.append(reference_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""

        with self._get_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                f"SELECT * FROM delivery_tasks {where} "
                "ORDER BY scheduled_for, user_id, channel",
                params,
            )
            rows = cur.fetchall()
        return [
            DeliveryTask(
                task_id=row["task_id"],
                user_id=row["user_id"],
                reference_id=row["reference_id"],
                kind=DeliveryKind(row["kind"]),
                channel=DeliveryChannel(row["channel"]),
                scheduled_for=row["scheduled_for"],
                status=DeliveryStatus(row["status"]),
                payload=row["payload"] or {},
            )
            for row in rows
        ]

    # === Users & preferences ===

    def save_user(self, user: MatchableUser) -> None:
        with self._get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO users (user_id, email, phone, tier, sms_opt_in)
                VALUES (%s, %s, %s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE SET
                    email = EXCLUDED.email,
                    phone = EXCLUDED.phone,
                    tier = EXCLUDED.tier,
                    sms_opt_in = EXCLUDED.sms_opt_in
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
        with self._get_connection() as conn, conn.cursor() as cur:
            cur.execute(
                """
                INSERT INTO user_preferences (user_id, topic, enabled, settings)
                VALUES (%s, %s, %s, %s)
                ON CONFLICT (user_id, topic) DO UPDATE SET
                    enabled = EXCLUDED.enabled,
                    settings = EXCLUDED.settings
                """,
                (
                    preference.user_id,
                    preference.topic,
                    preference.enabled,
                    Json(topic_settings_blob(preference.settings)),
                ),
            )

    @staticmethod
    def _row_to_user(row: dict[str, Any]) -> MatchableUser:
        return MatchableUser(
            user_id=row["user_id"],
            email=row["email"],
            phone=row["phone"],
            tier=AccountTier(row["tier"]),
            sms_opt_in=SmsOptInStatus(row["sms_opt_in"]),
        )

    def get_user(self, user_id: str) -> MatchableUser | None:
        with self._get_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute("SELECT * FROM users WHERE user_id = %s", (user_id,))
            row = cur.fetchone()
        return self._row_to_user(row) if row else None

    def get_users(self, user_ids: Sequence[str]) -> list[MatchableUser]:
        if not user_ids:
            return []
        with self._get_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                "SELECT * FROM users WHERE user_id = ANY(%s) ORDER BY user_id",
                (list(user_ids),),
            )
            rows = cur.fetchall()
        return [self._row_to_user(row) for row in rows]

    def list_user_ids(self) -> list[str]:
        with self._get_connection() as conn, conn.cursor() as cur:
            cur.execute("SELECT user_id FROM users ORDER BY user_id")
            rows = cur.fetchall()
        return [row[0] for row in rows]

    def get_enabled_preferences(self, topic: str) -> list[MatchablePreference]:
        with self._get_connection() as conn, conn.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(
                """
                SELECT user_id, topic, enabled, settings FROM user_preferences
                WHERE topic = %s AND enabled
                ORDER BY user_id
                """,
                (topic,),
            )
            rows = cur.fetchall()
        return [
            MatchablePreference(
                user_id=row["user_id"],
                topic=row["topic"],
                enabled=row["enabled"],
                settings=parse_topic_settings(row["topic"], row["settings"]),
            )
            for row in rows
        ]

    # === Locking ===

    @contextmanager
    def user_lock(self, user_id: str, timeout_seconds: float) -> Iterator[None]:
        """Hold a session advisory lock for ``user_id``.

        Raises:
            UserLockTimeoutError: If the lock is not acquired in time
        """
        conn = self._acquire_connection_with_retry()
        conn.autocommit = True
        acquired = False
        try:
            deadline = monotonic() + timeout_seconds
            with conn.cursor() as cur:
                while True:
                    cur.execute(
                        "SELECT pg_try_advisory_lock(hashtext(%s))", (user_id,)
                    )
                    row = cur.fetchone()
                    acquired = bool(row and row[0])
                    if acquired or monotonic() >= deadline:
                        break
                    sleep(USER_LOCK_POLL_SECONDS)
            if not acquired:
                logger.warning(
                    "user_lock_timeout", user_id=user_id, timeout_seconds=timeout_seconds
                )
                raise UserLockTimeoutError(user_id, timeout_seconds)
            yield
        except PsycopgError as exc:
            raise RepositoryError(f"Advisory lock failed for {user_id}: {exc}") from exc
        finally:
            if acquired:
                try:
                    with conn.cursor() as cur:
                        cur.execute(
                            "SELECT pg_advisory_unlock(hashtext(%s))", (user_id,)
                        )
                except PsycopgError:
                    logger.warning(
                        "postgres_advisory_unlock_failed", user_id=user_id, exc_info=True
                    )
            conn.autocommit = False
            self._release_connection(conn, close=False)
