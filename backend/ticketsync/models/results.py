"""
Collaborator results, user-facing notices and ratings.
"""
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from .message import utc_now


class InferenceResult(BaseModel):
    """Response of the bot-inference collaborator."""

    model_config = ConfigDict(populate_by_name=True)

    reply: str = ""
    suggests_live_agent: bool = Field(False, alias="suggestsLiveAgent")


class AssignmentResult(BaseModel):
    """Response of the agent-assignment collaborator."""

    model_config = ConfigDict(populate_by_name=True)

    assigned: bool = False
    agent_name: Optional[str] = Field(None, alias="agentName")
    agent_id: Optional[str] = Field(None, alias="agentId")


class NoticeKind(str, Enum):
    """Informational, non-blocking notices surfaced to the UI."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    AGENTS_BUSY = "agents_busy"
    ASSIGNMENT_ERROR = "assignment_error"
    SEND_FAILED = "send_failed"
    AUTH_EXPIRED = "auth_expired"


class Notice(BaseModel):
    """A toast-style message for the UI layer."""

    kind: NoticeKind
    text: str
    ticket_id: str
    created_at: datetime = Field(default_factory=utc_now)


class Rating(BaseModel):
    """Satisfaction rating submitted after a ticket is closed."""

    ticket_id: str = Field(..., min_length=1)
    user_id: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
    feedback: Optional[str] = Field(None, max_length=2000)
    created_at: datetime = Field(default_factory=utc_now)


__all__ = [
    'InferenceResult',
    'AssignmentResult',
    'NoticeKind',
    'Notice',
    'Rating',
]
