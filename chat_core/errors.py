"""Typed failures raised by the messaging core."""

from typing import Optional


class MessagingError(Exception):
    """Base class for every error the messaging core surfaces."""

    retryable = False


class InvalidContent(MessagingError):
    """Message content is empty, oversized or malformed."""


class NotFound(MessagingError):
    """A message or participant does not exist (or is already deleted)."""


class ConversationNotFound(NotFound):
    """The referenced conversation does not exist."""


class Forbidden(MessagingError):
    """The caller may not perform this operation."""


class RateLimited(MessagingError):
    """The sender exceeded the per-minute message cap."""

    retryable = True

    def __init__(self, message: str, retry_after: float):
        super().__init__(message)
        self.retry_after = retry_after


class TransientStoreError(MessagingError):
    """Network or timeout failure talking to the persistent store."""

    retryable = True

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class SubscriptionDropped(MessagingError):
    """The live subscription was cut; reconnect and reconcile from the store."""

    retryable = True


class InvalidRequest(MessagingError):
    """Arguments that can never succeed (bad cursor, malformed participant set)."""


class InvalidCursor(InvalidRequest):
    """A pagination cursor that was not produced by this store."""
