"""
Change-feed adapter.
Turns raw feed rows into typed records and routes them to the merge paths.
"""
import logging
from typing import Callable

from pydantic import ValidationError

from ..models import (
    MESSAGES_TABLE,
    TICKETS_TABLE,
    BaseMessage,
    FeedEvent,
    FeedEventType,
    Ticket,
    parse_message,
)

logger = logging.getLogger(__name__)

MessageHandler = Callable[[BaseMessage, str], bool]
TicketHandler = Callable[[Ticket, str], bool]


class FeedAdapter:
    """
    Routes feed events for one ticket.

    Malformed rows and rows for other tickets are logged and dropped; they
    never reach the projection.
    """

    def __init__(
        self,
        ticket_id: str,
        on_message: MessageHandler,
        on_message_update: MessageHandler,
        on_ticket: TicketHandler
    ):
        self.ticket_id = ticket_id
        self.on_message = on_message
        self.on_message_update = on_message_update
        self.on_ticket = on_ticket

    def handle(self, event: FeedEvent, source: str = "feed") -> bool:
        """
        Dispatch one feed event.

        Returns:
            True if the projection changed
        """
        if event.table == MESSAGES_TABLE:
            return self._handle_message(event, source)
        if event.table == TICKETS_TABLE:
            return self._handle_ticket(event, source)

        logger.debug(f"Ignoring feed event for table {event.table}")
        return False

    def _handle_message(self, event: FeedEvent, source: str) -> bool:
        try:
            message = parse_message(event.record)
        except ValidationError as e:
            logger.warning(f"Dropping malformed message row: {e.error_count()} errors")
            return False

        if message.ticket_id != self.ticket_id:
            logger.debug(f"Dropping message row for ticket {message.ticket_id}")
            return False

        if event.event_type == FeedEventType.INSERT:
            return self.on_message(message, source)
        return self.on_message_update(message, source)

    def _handle_ticket(self, event: FeedEvent, source: str) -> bool:
        try:
            ticket = Ticket.from_dict(event.record)
        except ValidationError as e:
            logger.warning(f"Dropping malformed ticket row: {e.error_count()} errors")
            return False

        if ticket.id != self.ticket_id:
            logger.debug(f"Dropping ticket row for {ticket.id}")
            return False

        return self.on_ticket(ticket, source)


__all__ = ['FeedAdapter']
