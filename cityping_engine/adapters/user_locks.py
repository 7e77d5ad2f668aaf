"""In-process per-user scheduling locks.

Used by the SQLite backend, where all scheduling runs in one process. The
PostgreSQL backend uses session advisory locks instead.
"""

import threading
from collections.abc import Iterator
from contextlib import contextmanager

from cityping_engine.config.logging_config import get_logger
from cityping_engine.domain.exceptions import UserLockTimeoutError

logger = get_logger(__name__)


class _UserLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.users = 0  # holders plus waiters


class UserLockRegistry:
    """One ``threading.Lock`` per user id with a holder or waiter.

    An entry is dropped as soon as its last holder or waiter leaves, so the
    registry only tracks users with a cycle in flight.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, _UserLock] = {}

    def __len__(self) -> int:
        with self._guard:
            return len(self._locks)

    def _checkout(self, user_id: str) -> _UserLock:
        with self._guard:
            entry = self._locks.get(user_id)
            if entry is None:
                entry = self._locks[user_id] = _UserLock()
            entry.users += 1
            return entry

    def _checkin(self, user_id: str, entry: _UserLock) -> None:
        with self._guard:
            entry.users -= 1
            if entry.users == 0:
                del self._locks[user_id]

    @contextmanager
    def hold(self, user_id: str, timeout_seconds: float) -> Iterator[None]:
        """Hold the user's lock for the duration of the context.

        Raises:
            UserLockTimeoutError: If the lock is not acquired in time
        """
        entry = self._checkout(user_id)
        try:
            if not entry.lock.acquire(timeout=timeout_seconds):
                logger.warning(
                    "user_lock_timeout", user_id=user_id, timeout_seconds=timeout_seconds
                )
                raise UserLockTimeoutError(user_id, timeout_seconds)
            try:
                yield
            finally:
                entry.lock.release()
        finally:
            self._checkin(user_id, entry)
