"""
Custom exception hierarchy for Queuearr Watcher.
Provides specific exception types for backend, notification and store failures.
"""


class QueuearrError(Exception):
    """Base exception for all Queuearr Watcher errors."""

    def __init__(self, message: str, details: str | None = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


# Configuration errors
class ConfigurationError(QueuearrError):
    """Raised when there's a configuration problem."""

    pass


class BackendNotConfiguredError(ConfigurationError):
    """Raised when an operation needs a backend that has no URL/API key."""

    def __init__(self, backend: str, message: str | None = None):
        super().__init__(message or f"{backend} not configured")
        self.backend = backend


# Backend errors
class BackendError(QueuearrError):
    """Base exception for Radarr/Sonarr/Transmission API errors."""

    def __init__(self, message: str, backend: str | None = None, details: str | None = None):
        super().__init__(message, details)
        self.backend = backend


class BackendConnectionError(BackendError):
    """Raised when a backend cannot be reached or times out."""

    pass


class BackendTimeoutError(BackendConnectionError):
    """Raised when a request timed out; the backend may still have acted on it."""

    pass


class BackendAuthenticationError(BackendError):
    """Raised when a backend rejects our credentials."""

    pass


class BackendResponseError(BackendError):
    """Raised when a backend answers with an unexpected status or payload."""

    def __init__(
        self,
        message: str,
        backend: str | None = None,
        status: int | None = None,
        details: str | None = None,
    ):
        super().__init__(message, backend=backend, details=details)
        self.status = status


# Notification errors
class NotificationError(QueuearrError):
    """Raised when a notification cannot be handed to the delivery endpoint."""

    def __init__(self, message: str, user_id: str | None = None, details: str | None = None):
        super().__init__(message, details)
        self.user_id = user_id


# Validation errors
class ValidationError(QueuearrError):
    """Raised when input validation fails."""

    pass


class InvalidSourceError(ValidationError):
    """Raised when a download source is not radarr or sonarr."""

    def __init__(self, source: str, message: str | None = None):
        super().__init__(message or f"source must be radarr or sonarr, got: {source}")
        self.source = source


# Persistence errors
class PersistenceError(QueuearrError):
    """Base exception for persistence/database errors."""

    pass


class DatabaseConnectionError(PersistenceError):
    """Raised when database connection fails."""

    pass
