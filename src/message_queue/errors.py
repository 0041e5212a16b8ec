"""
Queue Error Taxonomy

Connection-level errors are recovered by the connection manager and only
logged. Decode and validation errors are permanent: the message is acked and
dropped. Publish errors surface to the caller, which decides whether the
message is retried.
"""

from typing import Optional


class QueueError(Exception):
    """Base class for every error raised by the queue layer."""
    pass


class BrokerConnectionError(QueueError, ConnectionError):
    """Raised when the broker cannot be reached after the configured attempts."""

    def __init__(self, message: str, attempts: int = 0, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.attempts = attempts
        self.cause = cause


class DeclarationConflictError(QueueError):
    """Raised when a queue already exists with incompatible settings."""

    def __init__(self, queue_name: str, detail: str = ""):
        message = f"Queue '{queue_name}' already declared with incompatible settings"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.queue_name = queue_name


class PublishError(QueueError):
    """Raised when the broker does not confirm a published message."""

    def __init__(self, queue_name: str, detail: str = ""):
        message = f"Publish to '{queue_name}' was not confirmed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.queue_name = queue_name


class PermanentMessageError(QueueError):
    """A message that can never be processed, no matter how often it is retried."""
    pass


class EnvelopeDecodeError(PermanentMessageError):
    """Raised when a delivery body is not a JSON object."""
    pass


class PayloadValidationError(PermanentMessageError):
    """Raised when a payload misses required fields or has malformed values."""
    pass
