"""
Error taxonomy for the synchronization engine.

Only user-actionable errors (a failed send, an expired login) are meant to
reach the UI layer. Everything else is recovered or dropped locally and
logged where it happens.
"""
from typing import Optional


class TicketSyncError(Exception):
    """Base exception for the synchronization engine."""

    user_actionable: bool = False


class TransientNetworkError(TicketSyncError):
    """Feed, poll or persistence hiccup. Retried transparently."""
    pass


class SendValidationError(TicketSyncError):
    """Message rejected locally (empty or oversized). Never sent."""

    user_actionable = True


class AuthExpiredError(TicketSyncError):
    """Credentials expired. Sending is blocked until re-authentication."""

    user_actionable = True

    def __init__(self, message: str = "Authentication expired", draft: Optional[str] = None):
        super().__init__(message)
        self.draft = draft


class SendFailedError(TicketSyncError):
    """
    Persistence write for an optimistic message failed.

    Carries the original draft so the caller can restore the compose box.
    """

    user_actionable = True

    def __init__(self, message: str, draft: str, retryable: bool = True):
        super().__init__(message)
        self.draft = draft
        self.retryable = retryable


class ReconciliationConflict(TicketSyncError):
    """Duplicate id or correlation id observed. Dropped silently."""
    pass


class AssignmentFailure(TicketSyncError):
    """No agent available. The ticket stays in connecting mode."""
    pass


class TicketClosedError(TicketSyncError):
    """Operation refused because the ticket is closed."""

    user_actionable = True


class CollaboratorUnavailableError(TransientNetworkError):
    """Collaborator circuit breaker is open or the call timed out."""
    pass


__all__ = [
    'TicketSyncError',
    'TransientNetworkError',
    'SendValidationError',
    'AuthExpiredError',
    'SendFailedError',
    'ReconciliationConflict',
    'AssignmentFailure',
    'TicketClosedError',
    'CollaboratorUnavailableError',
]
