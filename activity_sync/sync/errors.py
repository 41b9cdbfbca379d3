"""
Sync Errors Module
Exception types raised by the sync engine and translated by the API layer.
"""


class SyncError(Exception):
    """Base class for sync engine errors."""


class SyncCancelled(SyncError):
    """Raised inside a sync run when cancellation has been requested."""


class RepositoryNotFound(SyncError):
    """Raised when a repository id does not exist."""

    def __init__(self, repository_id: int):
        super().__init__(f"Repository {repository_id} not found")
        self.repository_id = repository_id


class ConfigValidationError(SyncError):
    """Raised when a scheduler configuration update is invalid."""

    def __init__(self, errors):
        self.errors = list(errors)
        super().__init__("Invalid configuration: " + "; ".join(self.errors))


class RateLimitTimeout(SyncError):
    """Raised when the rate limiter cannot grant tokens within the max wait."""

    def __init__(self, wait_seconds: float, max_wait_seconds: float):
        super().__init__(
            f"Rate limit wait of {wait_seconds:.1f}s exceeds max wait of {max_wait_seconds:.1f}s"
        )
        self.wait_seconds = wait_seconds
        self.max_wait_seconds = max_wait_seconds


class NotificationNotFound(SyncError):
    """Raised when a notification or its target entity does not exist."""


class NotificationConflict(SyncError):
    """Raised when a single-resolution action has already been taken."""
