"""
Ticket sessions.

A :class:`TicketSession` owns everything one observer (customer widget or
agent console) holds for one ticket: the projection, the feed subscription,
presence and typing timers and, on the customer side, the escalation
dispatcher. All of it is released through one idempotent :meth:`release`,
which the async context manager runs on every exit path.

Example:
    session = await TicketSession.for_customer(persistence, "user-1", bot=bot)
    async with session:
        await session.type("Hel")
        await session.send("Hello")
"""
import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple

from ..config import SyncSettings, get_settings
from ..errors import AuthExpiredError, SendFailedError, TicketSyncError
from ..models import (
    Actor,
    Attachment,
    BaseMessage,
    Notice,
    NoticeKind,
    Rating,
    SenderType,
    Ticket,
    TicketStatus,
)
from ..models.ticket import ONLINE_FLAG, TYPING_FLAG
from ..persistence import PersistenceBackend
from ..store import ChangeKind, FeedAdapter, StoreChange, TicketStore
from ..utils import active_sessions
from ..collaborators import AgentAssignmentService, BotInferenceService
from .connection import ConnectionMonitor
from .escalation import EscalationDispatcher, NoticeCallback
from .presence import PresenceTracker
from .reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)

IncomingCallback = Callable[[BaseMessage], None]

# Change sources that are not news to the viewer
_QUIET_SOURCES = frozenset({"optimistic", "load", "welcome"})


class TicketSession:
    """
    One observer's live view of one ticket.

    Only user-actionable errors (send failed, auth expired, validation,
    closed ticket) propagate out of session operations; transport failures
    degrade the session to polling instead.
    """

    def __init__(
        self,
        store: TicketStore,
        actor: Actor,
        persistence: PersistenceBackend,
        settings: Optional[SyncSettings] = None,
        bot: Optional[BotInferenceService] = None,
        assignment: Optional[AgentAssignmentService] = None,
        on_notice: Optional[NoticeCallback] = None,
        on_incoming: Optional[IncomingCallback] = None
    ):
        """
        Initialize session. Nothing is acquired until :meth:`start`.

        Args:
            store: Ticket projection
            actor: customer or agent
            persistence: Persistence collaborator
            settings: Engine settings
            bot: Bot-inference collaborator (customer side)
            assignment: Agent-assignment collaborator (customer side)
            on_notice: Receives informational notices
            on_incoming: Called for each new message from the other side
        """
        self.store = store
        self.actor = Actor(actor)
        self.persistence = persistence
        self.settings = settings or get_settings()
        self.on_notice = on_notice
        self.on_incoming = on_incoming
        self.notices: List[Notice] = []

        sender = SenderType.USER if self.actor == Actor.CUSTOMER else SenderType.STAFF
        self.engine = ReconciliationEngine(store, persistence, sender_type=sender, settings=self.settings)
        self.presence = PresenceTracker(store.ticket_id, self.actor, persistence, store, settings=self.settings)

        self.dispatcher: Optional[EscalationDispatcher] = None
        if self.actor == Actor.CUSTOMER:
            self.dispatcher = EscalationDispatcher(
                store,
                self.engine,
                persistence,
                bot=bot,
                assignment=assignment,
                settings=self.settings,
                on_notice=self._notify
            )

        self.adapter = FeedAdapter(
            store.ticket_id,
            on_message=self.engine.ingest,
            on_message_update=self.engine.ingest_update,
            on_ticket=store.apply_ticket_record
        )
        self.monitor = ConnectionMonitor(
            store.ticket_id,
            persistence,
            on_event=self.adapter.handle,
            on_snapshot=self._on_snapshot,
            settings=self.settings
        )

        self._unsubscribe_store: Optional[Callable[[], None]] = None
        self._background: Set[asyncio.Task] = set()
        self._release_hooks: List[Callable[['TicketSession'], None]] = []
        self._started = False
        self._released = False

    # ===========================
    # Constructors
    # ===========================

    @classmethod
    async def for_customer(
        cls,
        persistence: PersistenceBackend,
        user_id: str,
        settings: Optional[SyncSettings] = None,
        bot: Optional[BotInferenceService] = None,
        assignment: Optional[AgentAssignmentService] = None,
        on_notice: Optional[NoticeCallback] = None,
        on_incoming: Optional[IncomingCallback] = None
    ) -> 'TicketSession':
        """Open (or create) the customer's ticket and build an unstarted session."""
        store = await TicketStore.open_or_create(persistence, user_id, settings=settings)
        return cls(
            store,
            Actor.CUSTOMER,
            persistence,
            settings=settings,
            bot=bot,
            assignment=assignment,
            on_notice=on_notice,
            on_incoming=on_incoming
        )

    @classmethod
    async def for_agent(
        cls,
        persistence: PersistenceBackend,
        ticket_id: str,
        settings: Optional[SyncSettings] = None,
        on_notice: Optional[NoticeCallback] = None,
        on_incoming: Optional[IncomingCallback] = None
    ) -> 'TicketSession':
        """Attach an agent console to an existing ticket."""
        ticket = await persistence.get_ticket(ticket_id)
        if ticket is None:
            raise LookupError(f"Ticket {ticket_id} not found")

        messages = await persistence.select_messages(ticket_id)
        store = TicketStore(ticket, messages)
        return cls(
            store,
            Actor.AGENT,
            persistence,
            settings=settings,
            on_notice=on_notice,
            on_incoming=on_incoming
        )

    # ===========================
    # Lifecycle
    # ===========================

    @property
    def ticket_id(self) -> str:
        return self.store.ticket_id

    @property
    def ticket(self) -> Ticket:
        return self.store.ticket

    @property
    def messages(self) -> List[BaseMessage]:
        return self.store.messages

    @property
    def active(self) -> bool:
        return self._started and not self._released

    async def start(self) -> 'TicketSession':
        """Subscribe to the feed and publish presence. Idempotent."""
        if self._released:
            raise RuntimeError(f"Session for ticket {self.ticket_id} already released")
        if self._started:
            return self

        self._started = True
        active_sessions.inc()
        self._unsubscribe_store = self.store.subscribe(self._on_store_change)

        await self.monitor.start()
        if not self.store.ticket.is_closed:
            await self.presence.set_online(True)
        if self.actor == Actor.AGENT:
            await self._mark_read()

        logger.info(f"{self.actor.value.capitalize()} session started on ticket {self.ticket_id}")
        return self

    async def release(self) -> None:
        """
        Release every resource the session holds. Idempotent.

        Unsubscribes the feed, cancels timers and background work, and
        flushes typing and online presence to false.
        """
        if self._released:
            return
        self._released = True

        if not self._started:
            return

        steps: List[Tuple[str, Callable[[], Any]]] = [
            ("monitor", self.monitor.stop),
            ("reconciliation", self.engine.shutdown),
            ("background", self._cancel_background),
            ("presence", self.presence.shutdown),
        ]
        for name, step in steps:
            try:
                result = step()
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.error(f"Releasing {name} for ticket {self.ticket_id} failed: {e}", exc_info=True)

        if self._unsubscribe_store is not None:
            self._unsubscribe_store()
            self._unsubscribe_store = None

        active_sessions.dec()

        for hook in list(self._release_hooks):
            try:
                hook(self)
            except Exception as e:
                logger.error(f"Release hook failed: {e}", exc_info=True)

        logger.info(f"{self.actor.value.capitalize()} session released on ticket {self.ticket_id}")

    async def __aenter__(self) -> 'TicketSession':
        try:
            return await self.start()
        except BaseException:
            await self.release()
            raise

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> bool:
        await self.release()
        return False

    # ===========================
    # Operations
    # ===========================

    async def type(self, draft: str) -> None:
        """Register a compose-box edit."""
        await self.presence.keystroke(draft)

    async def send(self, body: str, attachment: Optional[Attachment] = None) -> BaseMessage:
        """
        Send a message.

        Raises:
            SendValidationError: Empty or oversized draft
            SendFailedError: Write failed; restore ``error.draft``
            AuthExpiredError: Sign-in required before sending
            TicketClosedError: Ticket is closed
        """
        await self.presence.on_send()

        try:
            message = await self.engine.send(body, attachment)
        except SendFailedError:
            self._notify(Notice(kind=NoticeKind.SEND_FAILED, text="Failed to send message", ticket_id=self.ticket_id))
            raise
        except AuthExpiredError:
            self._notify(Notice(kind=NoticeKind.AUTH_EXPIRED, text="Please sign in again", ticket_id=self.ticket_id))
            raise

        if self.actor == Actor.AGENT:
            await self.presence.set_online(True)
        return message

    async def retry(self, correlation_id: str) -> BaseMessage:
        """Manually retry a pending message."""
        return await self.engine.retry(correlation_id)

    def mark_reauthenticated(self) -> None:
        self.engine.mark_reauthenticated()

    async def request_live_agent(self) -> None:
        """Ask for a live agent (customer side)."""
        if self.dispatcher is None:
            raise RuntimeError("Only the customer can request a live agent")
        await self.dispatcher.request_live_agent()
        await self.drain()

    async def reconnect(self) -> bool:
        """Manually retry the change feed."""
        return await self.monitor.reconnect()

    async def close(self) -> Ticket:
        """
        Close the ticket. Chat mode and presence are frozen afterwards.

        Returns:
            The closed ticket
        """
        if self.store.ticket.is_closed:
            return self.store.ticket

        await self.presence.on_clear()
        fields: Dict[str, Any] = {
            "status": TicketStatus.CLOSED,
            ONLINE_FLAG[self.actor]: False,
            TYPING_FLAG[self.actor]: False,
        }
        ticket = await self.persistence.update_ticket(self.ticket_id, fields)
        if ticket is None:
            raise LookupError(f"Ticket {self.ticket_id} not found")

        self.store.apply_ticket_record(ticket, source="ack")
        logger.info(f"Ticket {self.ticket_id} closed by {self.actor.value}")
        return self.store.ticket

    async def submit_rating(self, rating: int, feedback: Optional[str] = None) -> Rating:
        """
        Rate a closed ticket.

        Raises:
            TicketSyncError: If the ticket is still open
        """
        ticket = self.store.ticket
        if not ticket.is_closed:
            raise TicketSyncError("Only closed tickets can be rated")

        stored = await self.persistence.insert_rating(
            Rating(
                ticket_id=ticket.id,
                user_id=ticket.user_id,
                rating=rating,
                feedback=(feedback or "").strip() or None
            )
        )
        logger.info(f"Rating {rating} submitted for ticket {ticket.id}")
        return stored

    async def drain(self) -> None:
        """Wait for background reactions (bot replies, read receipts) to finish."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # ===========================
    # Internal wiring
    # ===========================

    def _is_incoming(self, message: BaseMessage) -> bool:
        if self.actor == Actor.CUSTOMER:
            return message.sender in (SenderType.STAFF, SenderType.BOT)
        return message.sender == SenderType.USER

    def _on_store_change(self, change: StoreChange) -> None:
        if change.kind == ChangeKind.APPENDED and change.source not in _QUIET_SOURCES:
            if self._is_incoming(change.message):
                if self.on_incoming is not None:
                    try:
                        self.on_incoming(change.message)
                    except Exception as e:
                        logger.error(f"Incoming message callback failed: {e}", exc_info=True)
                if self.actor == Actor.AGENT:
                    self._spawn(self._mark_read())

        elif change.kind == ChangeKind.REPLACED and self.dispatcher is not None:
            # A confirmed send from this session
            if change.message.sender == SenderType.USER:
                self._spawn(self.dispatcher.on_user_message(change.message))

        elif change.kind == ChangeKind.TICKET and self.dispatcher is not None:
            self.dispatcher.on_ticket_update(change.ticket)

    def _on_snapshot(self, messages: List[BaseMessage], ticket: Optional[Ticket], source: str) -> None:
        self.engine.ingest_snapshot(messages, source=source)
        if ticket is not None:
            self.store.apply_ticket_record(ticket, source=source)

    async def _mark_read(self) -> None:
        try:
            count = await self.persistence.mark_read(self.ticket_id, [SenderType.USER])
        except Exception as e:
            logger.warning(f"Marking messages read on ticket {self.ticket_id} failed: {e}")
            return

        if count:
            for message in self.store.messages:
                if message.sender == SenderType.USER and not message.is_read and not message.is_pending:
                    self.store.apply_message_update(
                        message.model_copy(update={"is_read": True}), source="read"
                    )

    def _notify(self, notice: Notice) -> None:
        self.notices.append(notice)
        if self.on_notice is not None:
            try:
                self.on_notice(notice)
            except Exception as e:
                logger.error(f"Notice callback failed: {e}", exc_info=True)

    def _spawn(self, coro: Awaitable[Any]) -> None:
        if self._released:
            coro.close()
            return
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Background task on ticket {self.ticket_id} failed: {task.exception()}")

    async def _cancel_background(self) -> None:
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()


class SessionRegistry:
    """
    One active session per (ticket, actor).

    Activating a session fully releases the previous one for the same key
    before the new one subscribes, so feed handles never leak.
    """

    def __init__(self):
        self._sessions: Dict[Tuple[str, Actor], TicketSession] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def get(self, ticket_id: str, actor: Actor) -> Optional[TicketSession]:
        return self._sessions.get((ticket_id, Actor(actor)))

    async def activate(self, session: TicketSession) -> TicketSession:
        """Release any previous session for the same key, then start this one."""
        key = (session.ticket_id, session.actor)

        async with self._lock:
            previous = self._sessions.pop(key, None)
            if previous is not None and previous is not session:
                logger.info(f"Replacing {session.actor.value} session on ticket {session.ticket_id}")
                await previous.release()

            self._sessions[key] = session
            session._release_hooks.append(self._forget)
            try:
                await session.start()
            except Exception:
                await session.release()
                raise

        return session

    async def release(self, ticket_id: str, actor: Actor) -> bool:
        """
        Release the session for a key.

        Returns:
            True if a session was released
        """
        session = self._sessions.pop((ticket_id, Actor(actor)), None)
        if session is None:
            return False
        await session.release()
        return True

    async def release_all(self) -> None:
        sessions = list(self._sessions.values())
        self._sessions.clear()
        for session in sessions:
            await session.release()

    def _forget(self, session: TicketSession) -> None:
        key = (session.ticket_id, session.actor)
        if self._sessions.get(key) is session:
            del self._sessions[key]


async def list_past_tickets(
    persistence: PersistenceBackend,
    user_id: str,
    limit: int = 10
) -> List[Ticket]:
    """Closed tickets of a user, newest first."""
    return await persistence.list_tickets(user_id, status=TicketStatus.CLOSED, limit=limit)


__all__ = ['TicketSession', 'SessionRegistry', 'list_past_tickets', 'IncomingCallback']
