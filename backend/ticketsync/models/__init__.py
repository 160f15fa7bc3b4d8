"""
Data models package.
Exports ticket, message, feed and collaborator models.
"""
from .message import (
    SenderType,
    DeliveryState,
    Attachment,
    BaseMessage,
    UserMessage,
    StaffMessage,
    BotMessage,
    Message,
    MESSAGE_ADAPTER,
    message_class,
    parse_message,
    parse_message_json,
    utc_now,
)
from .ticket import (
    TicketStatus,
    ChatMode,
    Actor,
    Ticket,
    PRESENCE_FLAGS,
    FROZEN_ON_CLOSE,
    MUTABLE_FIELDS,
    TYPING_FLAG,
    ONLINE_FLAG,
)
from .feed import (
    MESSAGES_TABLE,
    TICKETS_TABLE,
    RATINGS_TABLE,
    FeedStatus,
    FeedEventType,
    FeedBinding,
    FeedEvent,
)
from .results import InferenceResult, AssignmentResult, NoticeKind, Notice, Rating

__all__ = [
    # Messages
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

    # Tickets
    'TicketStatus',
    'ChatMode',
    'Actor',
    'Ticket',
    'PRESENCE_FLAGS',
    'FROZEN_ON_CLOSE',
    'MUTABLE_FIELDS',
    'TYPING_FLAG',
    'ONLINE_FLAG',

    # Feed
    'MESSAGES_TABLE',
    'TICKETS_TABLE',
    'RATINGS_TABLE',
    'FeedStatus',
    'FeedEventType',
    'FeedBinding',
    'FeedEvent',

    # Collaborators
    'InferenceResult',
    'AssignmentResult',
    'NoticeKind',
    'Notice',
    'Rating',
]
