"""Exceptions raised by board operations."""


class PlaybookError(Exception):
    """Base class for board errors."""


class ValidationError(PlaybookError, ValueError):
    """Raised when a request is rejected before anything is written."""


class StoreError(PlaybookError):
    """Raised when a durable write to the backing store fails."""


class NotFoundError(ValidationError):
    """Raised when a task, subtask or log entry does not exist."""
