"""
ticketsync - realtime support-conversation synchronization engine.

Keeps a customer widget, an agent console and the automated reply
dispatcher converged on one view of a support ticket.
"""
from .config import SyncSettings, get_settings
from .errors import (
    TicketSyncError,
    TransientNetworkError,
    SendValidationError,
    AuthExpiredError,
    SendFailedError,
    ReconciliationConflict,
    AssignmentFailure,
    TicketClosedError,
    CollaboratorUnavailableError,
)
from .persistence import PersistenceBackend, InMemoryPersistence, create_persistence
from .store import TicketStore
from .sync import TicketSession, SessionRegistry, list_past_tickets

__version__ = "1.0.0"

__all__ = [
    'SyncSettings',
    'get_settings',
    'TicketSyncError',
    'TransientNetworkError',
    'SendValidationError',
    'AuthExpiredError',
    'SendFailedError',
    'ReconciliationConflict',
    'AssignmentFailure',
    'TicketClosedError',
    'CollaboratorUnavailableError',
    'PersistenceBackend',
    'InMemoryPersistence',
    'create_persistence',
    'TicketStore',
    'TicketSession',
    'SessionRegistry',
    'list_past_tickets',
    '__version__',
]
