"""Custom exception hierarchy for the delivery engine.

Following error taxonomy: retryable, non-retryable, validation, conflict.
Stale, expired and duplicate content are routing outcomes, not errors.
"""


class DeliveryEngineError(Exception):
    """Base exception for all application errors."""

    pass


class RetryableError(DeliveryEngineError):
    """Errors that can be retried (storage hiccups, lock contention)."""

    pass


class NonRetryableError(DeliveryEngineError):
    """Errors that should not be retried (validation, configuration)."""

    pass


class ValidationError(NonRetryableError):
    """Malformed adapter payload."""

    def __init__(self, source: str, message: str) -> None:
        """Initialize with the source that produced the payload."""
        self.source = source
        super().__init__(f"{source}: {message}")


class ConfigurationError(NonRetryableError):
    """Invalid routing or matching configuration."""

    pass


class RepositoryError(RetryableError):
    """Database/storage errors."""

    pass


class UserLockTimeoutError(RetryableError):
    """Per-user scheduling lock could not be acquired in time."""

    def __init__(self, user_id: str, timeout_seconds: float) -> None:
        """Initialize with the contended user and the wait budget."""
        self.user_id = user_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Scheduling lock for user {user_id} not acquired within {timeout_seconds}s"
        )
