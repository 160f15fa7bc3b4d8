"""
Support message models.

A message is a tagged variant over ``sender_type``: user, staff or bot.
Wire records are parsed through :data:`MESSAGE_ADAPTER`, which picks the
variant from the discriminator.
"""
import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, Literal, Optional, Tuple, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    field_validator,
    model_validator,
)

logger = logging.getLogger(__name__)


def utc_now() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Treat naive datetimes as UTC so ordering never mixes naive/aware."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SenderType(str, Enum):
    """Who wrote a message."""
    USER = "user"
    STAFF = "staff"
    BOT = "bot"


class DeliveryState(str, Enum):
    """Local delivery state of a message."""
    PENDING = "pending"      # optimistic, not yet acknowledged
    CONFIRMED = "confirmed"  # acknowledged or observed via feed/poll


class Attachment(BaseModel):
    """Reference to an uploaded file. Upload itself happens elsewhere."""

    file_url: str = Field(..., min_length=1)
    file_name: Optional[str] = Field(None, max_length=255)
    size_bytes: Optional[int] = Field(None, ge=0)


class BaseMessage(BaseModel):
    """
    Fields shared by every message variant.

    A record carries an authoritative ``id`` once the store has accepted
    it. Until then it is identified by its client-assigned
    ``correlation_id`` only. Canonical records may still carry the
    correlation id they were created with.
    """

    model_config = ConfigDict(
        populate_by_name=True,
        validate_assignment=True
    )

    id: Optional[str] = Field(None, min_length=1, max_length=255)
    correlation_id: Optional[str] = Field(None, min_length=1, max_length=255)
    ticket_id: str = Field(..., min_length=1, max_length=255)
    body: str = Field(..., alias="message")
    attachment: Optional[Attachment] = None
    created_at: datetime = Field(default_factory=utc_now)
    is_read: bool = False

    # Local-only bookkeeping, never sent on the wire
    delivery: DeliveryState = DeliveryState.CONFIRMED
    overdue: bool = False
    local_only: bool = False

    @field_validator('created_at')
    @classmethod
    def normalise_created_at(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @model_validator(mode='after')
    def validate_identity(self) -> 'BaseMessage':
        """An optimistic record has no id; every record has some identity."""
        if self.id is None and self.correlation_id is None:
            raise ValueError("Message needs an id or a correlation_id")

        if self.delivery == DeliveryState.PENDING and self.id is not None:
            raise ValueError("Pending messages cannot carry an authoritative id")

        return self

    @property
    def sender(self) -> SenderType:
        return SenderType(self.sender_type)

    @property
    def key(self) -> str:
        """Identity used for membership: id, else correlation id."""
        return self.id if self.id is not None else self.correlation_id

    @property
    def sort_key(self) -> Tuple[datetime, str]:
        """Canonical ordering: (created_at, id)."""
        return (self.created_at, self.key)

    @property
    def is_pending(self) -> bool:
        return self.delivery == DeliveryState.PENDING

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to the wire shape."""
        data: Dict[str, Any] = {
            "id": self.id,
            "ticket_id": self.ticket_id,
            "sender_type": self.sender_type,
            "message": self.body,
            "created_at": self.created_at.isoformat(),
            "is_read": self.is_read,
        }
        if self.correlation_id is not None:
            data["correlation_id"] = self.correlation_id
        if self.attachment is not None:
            data["file_url"] = self.attachment.file_url
            if self.attachment.file_name is not None:
                data["file_name"] = self.attachment.file_name
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


class UserMessage(BaseMessage):
    """Message written by the customer."""
    sender_type: Literal["user"] = "user"


class StaffMessage(BaseMessage):
    """Message written by a live agent (or the synthetic welcome)."""
    sender_type: Literal["staff"] = "staff"


class BotMessage(BaseMessage):
    """Message produced by the bot-inference collaborator."""
    sender_type: Literal["bot"] = "bot"


Message = Annotated[
    Union[UserMessage, StaffMessage, BotMessage],
    Field(discriminator="sender_type")
]

MESSAGE_ADAPTER: TypeAdapter = TypeAdapter(Message)

_VARIANTS = {
    SenderType.USER: UserMessage,
    SenderType.STAFF: StaffMessage,
    SenderType.BOT: BotMessage,
}


def message_class(sender: SenderType) -> type:
    """Return the variant class for a sender type."""
    try:
        return _VARIANTS[SenderType(sender)]
    except (KeyError, ValueError):
        raise ValueError(f"Unknown sender type: {sender}")


def parse_message(record: Dict[str, Any]) -> BaseMessage:
    """
    Parse a wire record into a message variant.

    Accepts the flat ``file_url`` / ``file_name`` columns and legacy rows
    that only carry ``is_staff`` instead of ``sender_type``.

    Raises:
        pydantic.ValidationError: If the record is malformed
    """
    data = dict(record)

    if "sender_type" not in data or data["sender_type"] is None:
        data["sender_type"] = SenderType.STAFF.value if data.pop("is_staff", False) else SenderType.USER.value
    else:
        data.pop("is_staff", None)

    file_url = data.pop("file_url", None)
    file_name = data.pop("file_name", None)
    if file_url and "attachment" not in data:
        data["attachment"] = {"file_url": file_url, "file_name": file_name}

    # Wire records are always authoritative
    data.pop("delivery", None)
    data.pop("overdue", None)
    data.pop("local_only", None)

    return MESSAGE_ADAPTER.validate_python(data)


def parse_message_json(payload: str) -> BaseMessage:
    """Parse a JSON-encoded wire record."""
    return parse_message(json.loads(payload))


__all__ = [
    'SenderType',
    'DeliveryState',
    'Attachment',
    'BaseMessage',
    'UserMessage',
    'StaffMessage',
    'BotMessage',
    'Message',
    'MESSAGE_ADAPTER',
    'message_class',
    'parse_message',
    'parse_message_json',
    'utc_now',
    'ensure_utc',
]
