"""
Local ticket projection package.
"""
from .ticket_store import TicketStore, StoreChange, ChangeKind, WELCOME_MESSAGE_ID
from .feed_adapter import FeedAdapter

__all__ = [
    'TicketStore',
    'StoreChange',
    'ChangeKind',
    'WELCOME_MESSAGE_ID',
    'FeedAdapter',
]
