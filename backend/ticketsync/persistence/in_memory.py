"""
In-memory persistence backend with an in-process change feed.
Suitable for development, demos and tests.

Feed delivery is asynchronous and ordered per subscription, like a real
push transport: a write returns before subscribers see the event.
"""
import asyncio
import inspect
import logging
import uuid
from collections import defaultdict
from copy import deepcopy
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..models import (
    MESSAGES_TABLE,
    TICKETS_TABLE,
    Attachment,
    BaseMessage,
    FeedBinding,
    FeedEvent,
    FeedEventType,
    FeedStatus,
    Rating,
    SenderType,
    Ticket,
    TicketStatus,
    message_class,
    utc_now,
)
from ..models.ticket import FROZEN_ON_CLOSE, MUTABLE_FIELDS
from .base import EventCallback, PersistenceBackend, StatusCallback, Subscription

logger = logging.getLogger(__name__)

_BROKEN_STATUSES = frozenset({FeedStatus.CHANNEL_ERROR, FeedStatus.TIMED_OUT, FeedStatus.CLOSED})


class InMemorySubscription(Subscription):
    """
    Subscription handle backed by a queue and a delivery task.

    ``paused`` drops events on the floor (a lossy transport) and
    :meth:`simulate_status` injects transport statuses.
    """

    def __init__(
        self,
        backend: 'InMemoryPersistence',
        channel: str,
        bindings: List[FeedBinding],
        on_event: EventCallback,
        on_status: StatusCallback,
        heartbeat_interval: Optional[float] = None
    ):
        self.backend = backend
        self.channel = channel
        self.bindings = bindings
        self.on_event = on_event
        self.on_status = on_status
        self.heartbeat_interval = heartbeat_interval

        self.paused = False
        self.broken = False
        self.delivered = 0

        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False
        self._delivery_task: Optional[asyncio.Task] = None
        self._heartbeat_task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return not self._closed

    def start(self) -> None:
        self._delivery_task = asyncio.create_task(
            self._deliver(), name=f"feed-delivery:{self.channel}"
        )
        if self.heartbeat_interval:
            self._heartbeat_task = asyncio.create_task(
                self._heartbeat(), name=f"feed-heartbeat:{self.channel}"
            )
        self._queue.put_nowait(("status", FeedStatus.SUBSCRIBED))

    def matches(self, table: str, record: Dict[str, Any]) -> bool:
        return any(binding.matches(table, record) for binding in self.bindings)

    def publish(self, event: FeedEvent) -> None:
        if self._closed or self.paused or self.broken:
            return
        self._queue.put_nowait(("event", event))

    def simulate_status(self, status: FeedStatus) -> None:
        """Inject a transport status (error, timeout, close)."""
        if self._closed:
            return
        if status in _BROKEN_STATUSES:
            self.broken = True
        self._queue.put_nowait(("status", status))

    async def unsubscribe(self) -> None:
        if self._closed:
            return
        self._closed = True

        for task in (self._heartbeat_task, self._delivery_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass

        self.backend._detach(self)
        logger.debug(f"Unsubscribed channel {self.channel}")

    async def _heartbeat(self) -> None:
        while True:
            await asyncio.sleep(self.heartbeat_interval)
            if not self.broken and not self.paused:
                self._queue.put_nowait(("status", FeedStatus.HEARTBEAT))

    async def _deliver(self) -> None:
        while True:
            kind, payload = await self._queue.get()
            try:
                if kind == "event":
                    result = self.on_event(payload)
                    self.delivered += 1
                else:
                    result = self.on_status(payload)
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    f"Feed callback failed on channel {self.channel}: {e}",
                    exc_info=True
                )


class InMemoryPersistence(PersistenceBackend):
    """
    In-memory implementation of PersistenceBackend.

    Features:
    - asyncio lock around every mutation
    - Copies in and out so callers never share mutable rows
    - Strictly increasing created_at per backend (stable canonical order)
    - One open ticket per user
    - Insert deduplication by (ticket_id, correlation_id)

    Limitations:
    - Data lost on restart
    - Not shared across processes
    """

    def __init__(self, heartbeat_interval: Optional[float] = None):
        """
        Initialize in-memory persistence.

        Args:
            heartbeat_interval: Seconds between feed heartbeats (None disables)
        """
        self.tickets: Dict[str, Ticket] = {}
        self.messages: Dict[str, List[BaseMessage]] = defaultdict(list)
        self.ratings: List[Rating] = []
        self.heartbeat_interval = heartbeat_interval

        self._message_index: Dict[str, BaseMessage] = {}
        self._correlations: Dict[Tuple[str, str], str] = {}
        self._subscriptions: List[InMemorySubscription] = []
        self._last_timestamp = None
        self.lock = asyncio.Lock()

        logger.info(
            f"InMemoryPersistence initialized (heartbeat_interval={heartbeat_interval})"
        )

    # ===========================
    # Internal helpers
    # ===========================

    def _next_timestamp(self):
        now = utc_now()
        if self._last_timestamp is not None and now <= self._last_timestamp:
            now = self._last_timestamp + timedelta(microseconds=1)
        self._last_timestamp = now
        return now

    def _publish(self, table: str, event_type: FeedEventType, record: Dict[str, Any]) -> None:
        for subscription in list(self._subscriptions):
            if subscription.matches(table, record):
                subscription.publish(
                    FeedEvent(table=table, event_type=event_type, record=deepcopy(record))
                )

    def _detach(self, subscription: InMemorySubscription) -> None:
        if subscription in self._subscriptions:
            self._subscriptions.remove(subscription)

    @property
    def subscriptions(self) -> List[InMemorySubscription]:
        """Active subscriptions (read-only view)."""
        return list(self._subscriptions)

    # ===========================
    # Tickets
    # ===========================

    async def find_open_ticket(self, user_id: str) -> Optional[Ticket]:
        async with self.lock:
            open_tickets = [
                t for t in self.tickets.values()
                if t.user_id == user_id and t.status == TicketStatus.OPEN
            ]
            if not open_tickets:
                return None
            latest = max(open_tickets, key=lambda t: t.created_at)
            return latest.model_copy(deep=True)

    async def create_ticket(self, user_id: str) -> Ticket:
        async with self.lock:
            for ticket in self.tickets.values():
                if ticket.user_id == user_id and ticket.status == TicketStatus.OPEN:
                    logger.debug(f"User {user_id} already has open ticket {ticket.id}")
                    return ticket.model_copy(deep=True)

            now = self._next_timestamp()
            ticket = Ticket(
                id=str(uuid.uuid4()),
                user_id=user_id,
                user_online=True,
                created_at=now,
                updated_at=now
            )
            self.tickets[ticket.id] = ticket
            logger.info(f"Created ticket {ticket.id} for user {user_id}")

        self._publish(TICKETS_TABLE, FeedEventType.INSERT, ticket.to_dict())
        return ticket.model_copy(deep=True)

    async def get_ticket(self, ticket_id: str) -> Optional[Ticket]:
        async with self.lock:
            ticket = self.tickets.get(ticket_id)
            return ticket.model_copy(deep=True) if ticket else None

    async def list_tickets(
        self,
        user_id: str,
        status: Optional[TicketStatus] = None,
        limit: int = 10
    ) -> List[Ticket]:
        async with self.lock:
            tickets = [
                t for t in self.tickets.values()
                if t.user_id == user_id and (status is None or t.status == status)
            ]
            tickets.sort(key=lambda t: t.created_at, reverse=True)
            return [t.model_copy(deep=True) for t in tickets[:limit]]

    async def update_ticket(self, ticket_id: str, fields: Dict[str, Any]) -> Optional[Ticket]:
        unknown = set(fields) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update ticket fields: {sorted(unknown)}")

        async with self.lock:
            ticket = self.tickets.get(ticket_id)
            if ticket is None:
                logger.warning(f"Cannot update non-existent ticket {ticket_id}")
                return None

            if ticket.status == TicketStatus.CLOSED:
                refused = sorted(
                    key for key in set(fields) & (FROZEN_ON_CLOSE | {"status"})
                    if getattr(ticket, key) != fields[key]
                )
                if refused:
                    logger.warning(f"Ticket {ticket_id} is closed; refusing changes to {refused}")
                    fields = {key: value for key, value in fields.items() if key not in refused}
                if not fields:
                    return ticket.model_copy(deep=True)

            merged = ticket.model_copy(deep=True)
            for key, value in fields.items():
                setattr(merged, key, value)
            merged.updated_at = self._next_timestamp()
            self.tickets[ticket_id] = merged

            logger.debug(f"Updated ticket {ticket_id} (fields: {list(fields.keys())})")
            snapshot = merged.model_copy(deep=True)

        self._publish(TICKETS_TABLE, FeedEventType.UPDATE, snapshot.to_dict())
        return snapshot

    # ===========================
    # Messages
    # ===========================

    async def insert_message(
        self,
        ticket_id: str,
        sender_type: SenderType,
        body: str,
        correlation_id: Optional[str] = None,
        attachment: Optional[Attachment] = None
    ) -> BaseMessage:
        async with self.lock:
            if ticket_id not in self.tickets:
                raise ValueError(f"Unknown ticket {ticket_id}")

            if correlation_id is not None:
                existing_id = self._correlations.get((ticket_id, correlation_id))
                if existing_id is not None:
                    logger.debug(
                        f"Duplicate insert for correlation {correlation_id}, "
                        f"returning {existing_id}"
                    )
                    return self._message_index[existing_id].model_copy(deep=True)

            cls = message_class(sender_type)
            message = cls(
                id=str(uuid.uuid4()),
                correlation_id=correlation_id,
                ticket_id=ticket_id,
                body=body,
                attachment=attachment,
                created_at=self._next_timestamp()
            )
            self.messages[ticket_id].append(message)
            self._message_index[message.id] = message
            if correlation_id is not None:
                self._correlations[(ticket_id, correlation_id)] = message.id

            logger.debug(f"Inserted message {message.id} into ticket {ticket_id}")
            snapshot = message.model_copy(deep=True)

        self._publish(MESSAGES_TABLE, FeedEventType.INSERT, snapshot.to_dict())
        return snapshot

    async def update_message(self, message_id: str, fields: Dict[str, Any]) -> Optional[BaseMessage]:
        unknown = set(fields) - {"is_read"}
        if unknown:
            raise ValueError(f"Messages are append-only; cannot update {sorted(unknown)}")

        async with self.lock:
            message = self._message_index.get(message_id)
            if message is None:
                return None
            message.is_read = bool(fields.get("is_read", message.is_read))
            snapshot = message.model_copy(deep=True)

        self._publish(MESSAGES_TABLE, FeedEventType.UPDATE, snapshot.to_dict())
        return snapshot

    async def mark_read(self, ticket_id: str, sender_types: Iterable[SenderType]) -> int:
        senders = {SenderType(s).value for s in sender_types}

        async with self.lock:
            changed = []
            for message in self.messages.get(ticket_id, []):
                if message.sender_type in senders and not message.is_read:
                    message.is_read = True
                    changed.append(message.model_copy(deep=True))

        for snapshot in changed:
            self._publish(MESSAGES_TABLE, FeedEventType.UPDATE, snapshot.to_dict())

        if changed:
            logger.debug(f"Marked {len(changed)} messages read in ticket {ticket_id}")
        return len(changed)

    async def select_messages(self, ticket_id: str) -> List[BaseMessage]:
        async with self.lock:
            rows = sorted(self.messages.get(ticket_id, []), key=lambda m: m.sort_key)
            return [m.model_copy(deep=True) for m in rows]

    # ===========================
    # Ratings
    # ===========================

    async def insert_rating(self, rating: Rating) -> Rating:
        async with self.lock:
            ticket = self.tickets.get(rating.ticket_id)
            if ticket is None:
                raise ValueError(f"Unknown ticket {rating.ticket_id}")
            if ticket.status != TicketStatus.CLOSED:
                raise ValueError("Ratings can only be submitted for closed tickets")

            stored = rating.model_copy(deep=True)
            self.ratings.append(stored)
            logger.info(f"Stored rating {rating.rating} for ticket {rating.ticket_id}")
            return stored.model_copy(deep=True)

    # ===========================
    # Change Feed
    # ===========================

    async def subscribe(
        self,
        channel: str,
        bindings: List[FeedBinding],
        on_event: EventCallback,
        on_status: StatusCallback
    ) -> InMemorySubscription:
        subscription = InMemorySubscription(
            backend=self,
            channel=channel,
            bindings=list(bindings),
            on_event=on_event,
            on_status=on_status,
            heartbeat_interval=self.heartbeat_interval
        )
        self._subscriptions.append(subscription)
        subscription.start()

        logger.debug(
            f"Subscribed channel {channel} "
            f"({', '.join(b.table for b in bindings)})"
        )
        return subscription

    async def get_stats(self) -> Dict[str, Any]:
        """Get backend statistics."""
        async with self.lock:
            return {
                "store_type": "in_memory",
                "tickets": len(self.tickets),
                "open_tickets": sum(
                    1 for t in self.tickets.values() if t.status == TicketStatus.OPEN
                ),
                "messages": len(self._message_index),
                "subscriptions": len(self._subscriptions),
                "ratings": len(self.ratings)
            }


__all__ = ['InMemoryPersistence', 'InMemorySubscription']
