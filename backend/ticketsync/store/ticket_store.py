"""
Authoritative local projection of one ticket.

The store is the single de-duplication boundary of the engine: feed
deliveries, poll snapshots and optimistic echoes all pass through
:meth:`TicketStore.append`, which silently ignores anything already held.
Apart from the :meth:`TicketStore.open_or_create` constructor, nothing here
touches the network.
"""
import asyncio
import bisect
import logging
import weakref
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..config import SyncSettings, get_settings
from ..errors import ReconciliationConflict
from ..models import (
    Actor,
    BaseMessage,
    DeliveryState,
    SenderType,
    StaffMessage,
    Ticket,
)
from ..models.ticket import FROZEN_ON_CLOSE, MUTABLE_FIELDS
from ..persistence import PersistenceBackend
from ..utils import track_append, track_duplicate

logger = logging.getLogger(__name__)

WELCOME_MESSAGE_ID = "welcome"


class ChangeKind(str, Enum):
    """What changed in the projection."""
    APPENDED = "appended"
    REPLACED = "replaced"
    REMOVED = "removed"
    UPDATED = "updated"
    TICKET = "ticket"


@dataclass
class StoreChange:
    """Change notification delivered to store listeners."""
    kind: ChangeKind
    source: str
    index: Optional[int] = None
    message: Optional[BaseMessage] = None
    ticket: Optional[Ticket] = None
    fields: Tuple[str, ...] = field(default_factory=tuple)


Listener = Callable[[StoreChange], None]


class TicketStore:
    """
    Local projection of a ticket's messages and flags.

    Confirmed entries stay sorted by (created_at, id) and never change
    their relative order. Pending optimistic entries form a tail after the
    last confirmed entry, in send order. Reconciliation moves a pending
    entry out of the tail and inserts its canonical record at its sorted
    position, so the visible list always matches the server order plus
    whatever is still in flight.
    """

    # backend -> user id -> in-flight open_or_create
    _inflight: 'weakref.WeakKeyDictionary[PersistenceBackend, Dict[str, asyncio.Future]]' = (
        weakref.WeakKeyDictionary()
    )

    def __init__(self, ticket: Ticket, messages: Optional[List[BaseMessage]] = None):
        self._ticket = ticket.model_copy(deep=True)
        self._messages: List[BaseMessage] = []
        self._by_id: Dict[str, BaseMessage] = {}
        self._by_correlation: Dict[str, BaseMessage] = {}
        self._listeners: List[Listener] = []
        self._server_updated_at = ticket.updated_at

        for message in messages or []:
            self.append(message, source="load")

    # ===========================
    # Construction
    # ===========================

    @classmethod
    async def open_or_create(
        cls,
        persistence: PersistenceBackend,
        user_id: str,
        settings: Optional[SyncSettings] = None
    ) -> 'TicketStore':
        """
        Return the projection of the user's latest open ticket, creating one
        in bot mode if none exists.

        Concurrent calls for the same user share one in-flight lookup and
        receive the same store.

        Args:
            persistence: Persistence collaborator
            user_id: Customer identifier
            settings: Engine settings (welcome text)

        Returns:
            TicketStore for the open ticket
        """
        inflight = cls._inflight.setdefault(persistence, {})
        future = inflight.get(user_id)

        if future is None:
            future = asyncio.ensure_future(
                cls._load_or_create(persistence, user_id, settings or get_settings())
            )
            inflight[user_id] = future
            future.add_done_callback(lambda _: inflight.pop(user_id, None))
        else:
            logger.debug(f"Joining in-flight open_or_create for user {user_id}")

        return await asyncio.shield(future)

    @classmethod
    async def _load_or_create(
        cls,
        persistence: PersistenceBackend,
        user_id: str,
        settings: SyncSettings
    ) -> 'TicketStore':
        ticket = await persistence.find_open_ticket(user_id)

        if ticket is not None:
            messages = await persistence.select_messages(ticket.id)
            logger.info(
                f"Resumed ticket {ticket.id} for user {user_id} "
                f"({len(messages)} messages)"
            )
            return cls(ticket, messages)

        ticket = await persistence.create_ticket(user_id)
        messages = await persistence.select_messages(ticket.id)

        store = cls(ticket, messages)
        if not messages:
            store.append(
                StaffMessage(
                    id=WELCOME_MESSAGE_ID,
                    ticket_id=ticket.id,
                    body=settings.welcome_message,
                    created_at=ticket.created_at,
                    is_read=True,
                    local_only=True
                ),
                source="welcome"
            )
        logger.info(f"Opened new ticket {ticket.id} for user {user_id}")
        return store

    # ===========================
    # Read access
    # ===========================

    @property
    def ticket(self) -> Ticket:
        return self._ticket.model_copy(deep=True)

    @property
    def ticket_id(self) -> str:
        return self._ticket.id

    @property
    def messages(self) -> List[BaseMessage]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def message_ids(self, include_local: bool = False) -> List[str]:
        """Keys of the visible messages in display order."""
        return [
            m.key for m in self._messages
            if include_local or not m.local_only
        ]

    def contains(self, key: str) -> bool:
        return key in self._by_id or key in self._by_correlation

    def get(self, key: str) -> Optional[BaseMessage]:
        return self._by_id.get(key) or self._by_correlation.get(key)

    def pending(self) -> List[BaseMessage]:
        return [m for m in self._messages if m.is_pending]

    def unread_count(self, viewer: Actor) -> int:
        """Unread messages written by the other side."""
        if viewer == Actor.CUSTOMER:
            senders = {SenderType.STAFF.value, SenderType.BOT.value}
        elif viewer == Actor.AGENT:
            senders = {SenderType.USER.value}
        else:
            raise ValueError(f"Unknown viewer: {viewer}")

        return sum(
            1 for m in self._messages
            if m.sender_type in senders and not m.is_read and not m.local_only
        )

    # ===========================
    # Listeners
    # ===========================

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a change listener.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, change: StoreChange) -> None:
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception as e:
                logger.error(f"Store listener failed: {e}", exc_info=True)

    # ===========================
    # Messages
    # ===========================

    def _confirmed_end(self) -> int:
        # Pending entries always sit at the tail
        end = len(self._messages)
        while end > 0 and self._messages[end - 1].is_pending:
            end -= 1
        return end

    def _sorted_position(self, entry: BaseMessage) -> int:
        return bisect.bisect_right(
            self._messages, entry.sort_key, hi=self._confirmed_end(), key=lambda m: m.sort_key
        )

    def _index_of(self, entry: BaseMessage) -> int:
        # Pending entries are recent, scan from the end
        for index in range(len(self._messages) - 1, -1, -1):
            if self._messages[index] is entry:
                return index
        raise LookupError("Entry not in projection")

    def append(self, message: BaseMessage, source: str = "local") -> bool:
        """
        Insert a message unless it is already present.

        Membership is checked against the id map, or (for records without
        an id) the correlation map. Confirmed records go to their sorted
        position ahead of the pending tail; pending entries go to the end.
        A canonical record whose correlation id matches a pending entry
        replaces that entry.

        Args:
            message: Message to insert
            source: Where the record came from (for logging/metrics)

        Returns:
            True if the projection changed

        Raises:
            ReconciliationConflict: If a known id arrives with the
                correlation id of a different, still pending entry
        """
        if message.ticket_id != self._ticket.id:
            raise ValueError(
                f"Message for ticket {message.ticket_id} appended to {self._ticket.id}"
            )

        if message.id is not None:
            if message.id in self._by_id:
                claimed = self._by_correlation.get(message.correlation_id) if message.correlation_id else None
                if claimed is not None and claimed.is_pending:
                    raise ReconciliationConflict(
                        f"Message {message.id} already present; "
                        f"correlation {message.correlation_id} cannot claim it"
                    )
                track_duplicate(source)
                logger.debug(f"Dropped duplicate message {message.id} from {source}")
                return False

            if message.correlation_id is not None:
                existing = self._by_correlation.get(message.correlation_id)
                if existing is not None:
                    if existing.is_pending:
                        return self.replace_optimistic(message.correlation_id, message, source=source)
                    track_duplicate(source)
                    return False

        elif message.correlation_id in self._by_correlation:
            track_duplicate(source)
            return False

        entry = message.model_copy(deep=True)
        if entry.is_pending:
            index = len(self._messages)
        else:
            index = self._sorted_position(entry)
        self._messages.insert(index, entry)

        if entry.id is not None:
            self._by_id[entry.id] = entry
        if entry.correlation_id is not None:
            self._by_correlation[entry.correlation_id] = entry

        track_append(entry.sender_type, source)
        self._notify(StoreChange(ChangeKind.APPENDED, source, index=index, message=entry))
        return True

    def replace_optimistic(
        self,
        correlation_id: str,
        canonical: BaseMessage,
        source: str = "ack"
    ) -> bool:
        """
        Swap a pending entry for its canonical record.

        The pending entry leaves the tail and the canonical record is
        inserted at its (created_at, id) position among confirmed entries.

        Returns:
            True if a pending entry was replaced, False if there was none

        Raises:
            ReconciliationConflict: If the canonical id is already held by
                another entry
        """
        entry = self._by_correlation.get(correlation_id)
        if entry is None or not entry.is_pending:
            return False

        if canonical.id is None:
            raise ValueError("Canonical record must carry an id")

        if canonical.id in self._by_id:
            raise ReconciliationConflict(
                f"Message {canonical.id} already present; "
                f"correlation {correlation_id} cannot claim it"
            )

        replacement = canonical.model_copy(
            update={
                "correlation_id": correlation_id,
                "delivery": DeliveryState.CONFIRMED,
                "overdue": False,
            },
            deep=True
        )
        del self._messages[self._index_of(entry)]
        index = self._sorted_position(replacement)
        self._messages.insert(index, replacement)
        self._by_id[replacement.id] = replacement
        self._by_correlation[correlation_id] = replacement

        logger.debug(f"Reconciled {correlation_id} -> {replacement.id} at index {index} ({source})")
        self._notify(StoreChange(ChangeKind.REPLACED, source, index=index, message=replacement))
        return True

    def remove_optimistic(self, correlation_id: str) -> Optional[BaseMessage]:
        """
        Remove a pending entry (failed write).

        Returns:
            The removed entry, or None if nothing pending matched
        """
        entry = self._by_correlation.get(correlation_id)
        if entry is None or not entry.is_pending:
            return None

        index = self._index_of(entry)
        del self._messages[index]
        del self._by_correlation[correlation_id]

        self._notify(StoreChange(ChangeKind.REMOVED, "local", index=index, message=entry))
        return entry

    def mark_overdue(self, correlation_id: str) -> bool:
        """Flag a pending entry whose confirmation is late. It stays pending."""
        entry = self._by_correlation.get(correlation_id)
        if entry is None or not entry.is_pending or entry.overdue:
            return False

        entry.overdue = True
        index = self._index_of(entry)
        self._notify(
            StoreChange(ChangeKind.UPDATED, "local", index=index, message=entry, fields=("overdue",))
        )
        return True

    def apply_message_update(self, message: BaseMessage, source: str = "feed") -> bool:
        """
        Apply a row update for a known message.

        Bodies are append-only, so only ``is_read`` is taken from the
        update.

        Returns:
            True if the entry changed
        """
        if message.id is None:
            return False

        entry = self._by_id.get(message.id)
        if entry is None:
            return False

        if entry.body != message.body:
            logger.warning(f"Ignoring body change on message {message.id}")

        if entry.is_read == message.is_read:
            return False

        entry.is_read = message.is_read
        index = self._index_of(entry)
        self._notify(
            StoreChange(ChangeKind.UPDATED, source, index=index, message=entry, fields=("is_read",))
        )
        return True

    # ===========================
    # Ticket flags
    # ===========================

    def update_flags(self, ticket_id: str, flags: Dict[str, Any], source: str = "local") -> bool:
        """
        Merge individual ticket fields into the projection.

        Each field is written on its own, so a customer typing update never
        clobbers an agent typing update. Once the ticket is closed,
        chat_mode, assignment and presence changes are refused.

        Args:
            ticket_id: Ticket the flags belong to
            flags: Field name -> new value
            source: Where the update came from

        Returns:
            True if any field changed
        """
        if ticket_id != self._ticket.id:
            raise ValueError(f"Flags for ticket {ticket_id} applied to {self._ticket.id}")

        unknown = set(flags) - MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown ticket fields: {sorted(unknown)}")

        changed = {
            name: value for name, value in flags.items()
            if getattr(self._ticket, name) != value
        }
        if not changed:
            return False

        if self._ticket.is_closed:
            refused = sorted(set(changed) & (FROZEN_ON_CLOSE | {"status"}))
            if refused:
                logger.warning(
                    f"Ticket {ticket_id} is closed; refusing changes to {refused}"
                )
                for name in refused:
                    changed.pop(name)
            if not changed:
                return False

        for name, value in changed.items():
            setattr(self._ticket, name, value)

        self._notify(
            StoreChange(
                ChangeKind.TICKET,
                source,
                ticket=self.ticket,
                fields=tuple(sorted(changed))
            )
        )
        return True

    def apply_ticket_record(self, ticket: Ticket, source: str = "feed") -> bool:
        """
        Merge a server ticket row delivered by the feed or a poll.

        Rows older than the newest row already applied are ignored so a
        late poll never rolls flags back.
        """
        if ticket.updated_at < self._server_updated_at:
            logger.debug(f"Ignoring stale ticket row for {ticket.id} from {source}")
            return False

        self._server_updated_at = ticket.updated_at
        flags = {name: getattr(ticket, name) for name in MUTABLE_FIELDS if name != "updated_at"}
        flags["updated_at"] = ticket.updated_at
        return self.update_flags(ticket.id, flags, source=source)


__all__ = ['TicketStore', 'StoreChange', 'ChangeKind', 'WELCOME_MESSAGE_ID']
