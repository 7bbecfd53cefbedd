"""Exception types shared by the notifier."""
from typing import Optional

class ConfigurationError(RuntimeError):
    """Raised at startup when required configuration is missing or invalid."""

class MessagingError(Exception):
    """Base class for failures reported by the messaging platform client."""

class PermissionDeniedError(MessagingError):
    """The bot lacks permission for the requested operation."""

class NotFoundError(MessagingError):
    """The target message, channel or thread no longer exists."""

class RateLimitedError(MessagingError):
    """The platform asked us to slow down."""

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after

class InvalidRequestError(MessagingError):
    """The platform rejected the payload (too long, empty, malformed)."""

class ThreadAlreadyExistsError(MessagingError):
    """The message already has a thread attached."""
