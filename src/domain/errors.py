"""
Error taxonomy for message processing.

- ConfigurationError: pipeline built wrongly (fatal at startup, never retried)
- BuilderStateError: builder used after it was finalized
- StageRejection: raised by a stage for an expected non-match (not an error)
- PersistenceError: durable storage failed (caller decides whether to retry)
- MeteringError: internal metering problem (never leaves the Meter)
"""

from typing import Optional


class MessageProcessingError(Exception):
    """Base class for all message processing errors."""
    pass


class ConfigurationError(MessageProcessingError):
    """Raised when a pipeline or the service configuration is invalid."""
    pass


class BuilderStateError(MessageProcessingError):
    """Raised when a finalized MessageProcessingBuilder is used again."""
    pass


class StageRejection(MessageProcessingError):
    """
    Raised by a stage transform to reject a message.

    A rejection halts the pipeline and is reported as a Rejected outcome.
    It is a business result, not a failure.
    """

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class PersistenceError(MessageProcessingError):
    """Raised when a record cannot be written to or read from storage."""

    def __init__(self, message: str, message_id: Optional[str] = None):
        super().__init__(message)
        self.message_id = message_id


class MeteringError(MessageProcessingError):
    """Raised internally by Stats for invalid samples."""
    pass
