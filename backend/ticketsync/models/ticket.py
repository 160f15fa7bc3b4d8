"""
Support ticket model and flag vocabulary.
"""
import json
import logging
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .message import ensure_utc, utc_now

logger = logging.getLogger(__name__)


class TicketStatus(str, Enum):
    """Ticket lifecycle status. A closed ticket is never reopened."""
    OPEN = "open"
    CLOSED = "closed"


class ChatMode(str, Enum):
    """Who is answering the customer."""
    BOT = "bot"
    CONNECTING = "connecting"
    AGENT = "agent"


class Actor(str, Enum):
    """A human participant whose presence is tracked."""
    CUSTOMER = "customer"
    AGENT = "agent"


PRESENCE_FLAGS = frozenset({
    "user_online",
    "agent_online",
    "user_typing",
    "agent_typing",
})

# Fields frozen once the ticket is closed
FROZEN_ON_CLOSE = PRESENCE_FLAGS | {"chat_mode", "assigned_agent_id", "assigned_agent_name"}

MUTABLE_FIELDS = FROZEN_ON_CLOSE | {"status", "updated_at"}

TYPING_FLAG = {
    Actor.CUSTOMER: "user_typing",
    Actor.AGENT: "agent_typing",
}

ONLINE_FLAG = {
    Actor.CUSTOMER: "user_online",
    Actor.AGENT: "agent_online",
}


class Ticket(BaseModel):
    """
    One customer-support conversation thread.

    ``assigned_agent_id`` is a weak reference: the engine never resolves it
    beyond the display name handed back by the assignment collaborator.
    """

    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(..., min_length=1, max_length=255)
    user_id: Optional[str] = Field(None, max_length=255)
    status: TicketStatus = TicketStatus.OPEN
    chat_mode: ChatMode = ChatMode.BOT
    assigned_agent_id: Optional[str] = Field(None, max_length=255)
    assigned_agent_name: Optional[str] = Field(None, max_length=255)

    user_online: bool = False
    agent_online: bool = False
    user_typing: bool = False
    agent_typing: bool = False

    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @field_validator('created_at', 'updated_at')
    @classmethod
    def normalise_timestamps(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def is_closed(self) -> bool:
        return self.status == TicketStatus.CLOSED

    @property
    def has_agent(self) -> bool:
        return self.assigned_agent_id is not None

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to the wire shape."""
        data = self.model_dump(mode='json')
        if data.get("assigned_agent_id") is None:
            data.pop("assigned_agent_id", None)
        if data.get("assigned_agent_name") is None:
            data.pop("assigned_agent_name", None)
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Ticket':
        """
        Parse a wire record.

        Null booleans (common in freshly inserted rows) are read as False.
        """
        record = dict(data)
        for flag in PRESENCE_FLAGS:
            if record.get(flag) is None:
                record.pop(flag, None)
        return cls.model_validate(record)

    @classmethod
    def from_json(cls, payload: str) -> 'Ticket':
        return cls.from_dict(json.loads(payload))


__all__ = [
    'TicketStatus',
    'ChatMode',
    'Actor',
    'Ticket',
    'PRESENCE_FLAGS',
    'FROZEN_ON_CLOSE',
    'MUTABLE_FIELDS',
    'TYPING_FLAG',
    'ONLINE_FLAG',
]
