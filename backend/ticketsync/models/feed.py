"""
Change-feed vocabulary shared by persistence backends and the connection
monitor.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, Field

from .message import utc_now

MESSAGES_TABLE = "support_messages"
TICKETS_TABLE = "support_tickets"
RATINGS_TABLE = "support_ratings"


class FeedStatus(str, Enum):
    """Transport status reported by a feed subscription."""
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"
    HEARTBEAT = "HEARTBEAT"


class FeedEventType(str, Enum):
    """Row-level change kind."""
    INSERT = "insert"
    UPDATE = "update"


class FeedBinding(BaseModel):
    """One (table, filter) pair a subscription listens to."""

    table: str = Field(..., min_length=1)
    filter: Dict[str, str] = Field(default_factory=dict)

    def matches(self, table: str, record: Dict[str, Any]) -> bool:
        if table != self.table:
            return False
        return all(str(record.get(column)) == value for column, value in self.filter.items())


class FeedEvent(BaseModel):
    """A row change delivered by the feed."""

    table: str
    event_type: FeedEventType
    record: Dict[str, Any]
    received_at: datetime = Field(default_factory=utc_now)


__all__ = [
    'MESSAGES_TABLE',
    'TICKETS_TABLE',
    'RATINGS_TABLE',
    'FeedStatus',
    'FeedEventType',
    'FeedBinding',
    'FeedEvent',
]
