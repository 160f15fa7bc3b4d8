"""
Synchronization components: reconciliation, presence, connection health,
escalation and the session that owns them.
"""
from .debounce import DebouncedFlag
from .reconciliation import ReconciliationEngine
from .presence import PresenceTracker
from .connection import ConnectionMonitor, ConnectionState
from .escalation import EscalationDispatcher
from .session import TicketSession, SessionRegistry, list_past_tickets

__all__ = [
    'DebouncedFlag',
    'ReconciliationEngine',
    'PresenceTracker',
    'ConnectionMonitor',
    'ConnectionState',
    'EscalationDispatcher',
    'TicketSession',
    'SessionRegistry',
    'list_past_tickets',
]
