"""
Abstract persistence collaborator.
Defines the contract the engine expects from the relational store and its
row-level change feed.

The store is the single source of truth. The engine never assumes a local
write is final until the store acknowledged it or the feed/poll path
observed it.
"""
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from ..models import (
    Attachment,
    BaseMessage,
    FeedBinding,
    FeedEvent,
    FeedStatus,
    Rating,
    SenderType,
    Ticket,
    TicketStatus,
)

EventCallback = Callable[[FeedEvent], Union[None, Awaitable[None]]]
StatusCallback = Callable[[FeedStatus], Union[None, Awaitable[None]]]


class Subscription(ABC):
    """
    Handle for one change-feed subscription.

    The handle is owned by exactly one session; releasing it is the
    owner's job.
    """

    channel: str

    @property
    @abstractmethod
    def active(self) -> bool:
        """Whether the handle still delivers events."""
        pass

    @abstractmethod
    async def unsubscribe(self) -> None:
        """Stop delivery and release transport resources. Idempotent."""
        pass


class PersistenceBackend(ABC):
    """
    Abstract base class for the persistence collaborator.

    Implementations must provide async-safe operations for:
    - Ticket lookup, creation and field-level updates
    - Append-only message inserts, deduplicated by correlation id
    - Read receipts
    - Ordered message selection (used by the polling fallback)
    - Change-feed subscriptions keyed by (table, filter)
    """

    # ===========================
    # Tickets
    # ===========================

    @abstractmethod
    async def find_open_ticket(self, user_id: str) -> Optional[Ticket]:
        """
        Get the latest open ticket for a user.

        Args:
            user_id: Customer identifier

        Returns:
            Ticket or None if the user has no open ticket
        """
        pass

    @abstractmethod
    async def create_ticket(self, user_id: str) -> Ticket:
        """
        Create an open ticket in bot mode.

        At most one open ticket may exist per user; if one exists it is
        returned instead.

        Args:
            user_id: Customer identifier

        Returns:
            The open ticket
        """
        pass

    @abstractmethod
    async def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        """Get a ticket by ID."""
        pass

    @abstractmethod
    async def list_tickets(
        self,
        user_id: str,
        status: Optional[TicketStatus] = None,
        limit: int = 10
    ) -> List[Ticket]:
        """
        List a user's tickets, newest first.

        Args:
            user_id: Customer identifier
            status: Optional status filter
            limit: Maximum number of tickets

        Returns:
            List of tickets
        """
        pass

    @abstractmethod
    async def update_ticket(self, ticket_id: str, fields: Dict[str, Any]) -> Optional[Ticket]:
        """
        Merge fields into a ticket row (never a whole-record replace).

        Args:
            ticket_id: Ticket identifier
            fields: Columns to update

        Returns:
            Updated ticket or None if not found
        """
        pass

    # ===========================
    # Messages
    # ===========================

    @abstractmethod
    async def insert_message(
        self,
        ticket_id: str,
        sender_type: SenderType,
        body: str,
        correlation_id: Optional[str] = None,
        attachment: Optional[Attachment] = None
    ) -> BaseMessage:
        """
        Append a message.

        A repeated insert with the same (ticket_id, correlation_id) returns
        the already stored record instead of creating a second one.

        Returns:
            Canonical message with its authoritative id
        """
        pass

    @abstractmethod
    async def update_message(self, message_id: str, fields: Dict[str, Any]) -> Optional[BaseMessage]:
        """
        Update mutable message columns (``is_read`` only).

        Returns:
            Updated message or None if not found
        """
        pass

    @abstractmethod
    async def mark_read(self, ticket_id: str, sender_types: Iterable[SenderType]) -> int:
        """
        Mark unread messages from the given senders as read.

        Returns:
            Number of messages updated
        """
        pass

    @abstractmethod
    async def select_messages(self, ticket_id: str) -> List[BaseMessage]:
        """
        Get all messages of a ticket ordered by (created_at, id).
        """
        pass

    # ===========================
    # Ratings
    # ===========================

    @abstractmethod
    async def insert_rating(self, rating: Rating) -> Rating:
        """Store a satisfaction rating."""
        pass

    # ===========================
    # Change Feed
    # ===========================

    @abstractmethod
    async def subscribe(
        self,
        channel: str,
        bindings: List[FeedBinding],
        on_event: EventCallback,
        on_status: StatusCallback
    ) -> Subscription:
        """
        Open a change-feed subscription.

        Args:
            channel: Channel name (unique per ticket session)
            bindings: (table, filter) pairs to listen to
            on_event: Called for every matching insert/update
            on_status: Called on transport status changes and heartbeats

        Returns:
            Subscription handle

        Raises:
            TransientNetworkError: If the transport cannot be reached
        """
        pass

    async def health_check(self) -> Dict[str, Any]:
        """
        Perform a cheap health check.

        Returns:
            Dictionary with health status
        """
        try:
            await self.get_ticket("health_check")
            return {"healthy": True}
        except Exception as e:
            return {"healthy": False, "error": str(e)}


__all__ = ['PersistenceBackend', 'Subscription', 'EventCallback', 'StatusCallback']
