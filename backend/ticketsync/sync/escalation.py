"""
Escalation dispatcher: routes a ticket between bot, connecting and agent
modes.

Transitions:

- bot -> connecting: a customer message arrives with no agent online and
  the bot suggests a live agent, or the customer asks for one
- connecting -> agent: the assignment collaborator returns ``assigned``
- connecting -> connecting: every agent is busy; one attempt per trigger,
  the next customer message is the next trigger
- agent: no bot replies and no further assignment; an agent going offline
  leaves the ticket waiting for reassignment
"""
import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from ..config import SyncSettings, get_settings
from ..errors import AssignmentFailure, AuthExpiredError
from ..models import (
    AssignmentResult,
    BaseMessage,
    ChatMode,
    InferenceResult,
    Notice,
    NoticeKind,
    SenderType,
    Ticket,
)
from ..persistence import PersistenceBackend
from ..store import TicketStore
from ..utils import track_escalation
from ..collaborators import AgentAssignmentService, BotInferenceService
from .reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)

NoticeCallback = Callable[[Notice], None]

CONNECTING_TEXT = "Finding the best available agent for you..."
BUSY_TEXT = "All agents are busy. You'll be connected shortly."
ASSIGNMENT_ERROR_TEXT = "Failed to connect to a live agent"
AUTH_EXPIRED_TEXT = "Please sign in again"


class EscalationDispatcher:
    """
    Chat-mode state machine for one ticket.

    Racing triggers (a bot suggestion and an explicit request, say) are
    serialised by one lock, and an already assigned ticket is never sent to
    the assignment collaborator again.
    """

    def __init__(
        self,
        store: TicketStore,
        engine: ReconciliationEngine,
        persistence: PersistenceBackend,
        bot: Optional[BotInferenceService] = None,
        assignment: Optional[AgentAssignmentService] = None,
        settings: Optional[SyncSettings] = None,
        on_notice: Optional[NoticeCallback] = None
    ):
        """
        Initialize dispatcher.

        Args:
            store: Ticket projection
            engine: Reconciliation engine used to ingest bot replies
            persistence: Persistence collaborator
            bot: Bot-inference collaborator (None disables bot replies)
            assignment: Agent-assignment collaborator
            settings: Engine settings
            on_notice: Receives informational notices for the UI
        """
        self.store = store
        self.engine = engine
        self.persistence = persistence
        self.bot = bot
        self.assignment = assignment
        self.settings = settings or get_settings()
        self.on_notice = on_notice

        self.bot_typing = False
        self.notices: List[Notice] = []
        self.awaiting_reassignment = False
        self._lock = asyncio.Lock()

    @property
    def ticket_id(self) -> str:
        return self.store.ticket_id

    # ===========================
    # Triggers
    # ===========================

    async def on_user_message(self, message: BaseMessage) -> None:
        """React to a confirmed customer message."""
        if message.sender != SenderType.USER:
            return

        ticket = self.store.ticket
        if ticket.is_closed:
            return

        if ticket.chat_mode == ChatMode.AGENT:
            logger.debug(f"Ticket {self.ticket_id} has a live agent; no bot reply")
            return

        if ticket.chat_mode == ChatMode.CONNECTING:
            if self.settings.assignment_retry_on_message:
                await self._try_assignment()

            ticket = self.store.ticket
            if ticket.chat_mode != ChatMode.AGENT and not ticket.agent_online:
                # Still waiting: the bot keeps answering, its suggestion is moot
                await self._run_bot(message)
            return

        if ticket.agent_online:
            return

        result = await self._run_bot(message)
        if result is not None and result.suggests_live_agent:
            await self._escalate(trigger="bot")

    async def request_live_agent(self) -> None:
        """Explicit escalation request from the customer."""
        await self._escalate(trigger="user")

    def on_ticket_update(self, ticket: Ticket) -> None:
        """Observe ticket row changes (agent presence)."""
        waiting = (
            ticket.chat_mode == ChatMode.AGENT
            and not ticket.agent_online
            and not ticket.is_closed
        )
        if waiting and not self.awaiting_reassignment:
            logger.info(f"Agent offline on ticket {self.ticket_id}; awaiting reassignment")
        self.awaiting_reassignment = waiting

    # ===========================
    # Bot inference
    # ===========================

    async def _run_bot(self, message: BaseMessage) -> Optional[InferenceResult]:
        if self.bot is None:
            return None

        self.bot_typing = True
        try:
            result = await self.bot.infer(self.ticket_id, message.body)
        except AuthExpiredError as e:
            track_escalation("bot_error")
            logger.warning(f"Bot inference for ticket {self.ticket_id} needs re-authentication: {e}")
            self._notify(NoticeKind.AUTH_EXPIRED, AUTH_EXPIRED_TEXT)
            return None
        except Exception as e:
            # The customer's message is already stored; the reply is optional
            track_escalation("bot_error")
            logger.warning(f"Bot inference for ticket {self.ticket_id} failed: {e}")
            return None
        finally:
            self.bot_typing = False

        if result.reply and not self.store.ticket.is_closed:
            await self._store_bot_reply(message, result.reply)

        return result

    async def _store_bot_reply(self, message: BaseMessage, reply: str) -> None:
        try:
            canonical = await self.persistence.insert_message(
                ticket_id=self.ticket_id,
                sender_type=SenderType.BOT,
                body=reply,
                correlation_id=f"bot-{message.key}"
            )
        except Exception as e:
            logger.warning(f"Storing bot reply for ticket {self.ticket_id} failed: {e}")
            return

        self.engine.ingest(canonical, source="bot")

    # ===========================
    # Assignment
    # ===========================

    async def _escalate(self, trigger: str) -> None:
        async with self._lock:
            ticket = self.store.ticket

            if (
                ticket.is_closed
                or ticket.assigned_agent_id
                or ticket.chat_mode == ChatMode.AGENT
                or ticket.agent_online
            ):
                logger.debug(f"Escalation ({trigger}) on ticket {self.ticket_id} skipped")
                track_escalation("skipped")
                return

            if ticket.chat_mode == ChatMode.BOT:
                await self._write_fields({"chat_mode": ChatMode.CONNECTING})
                self._notify(NoticeKind.CONNECTING, CONNECTING_TEXT)

            logger.info(f"Escalating ticket {self.ticket_id} (trigger: {trigger})")
            await self._assign_once()

    async def _try_assignment(self) -> None:
        async with self._lock:
            ticket = self.store.ticket
            if ticket.is_closed or ticket.assigned_agent_id or ticket.chat_mode != ChatMode.CONNECTING:
                return
            await self._assign_once()

    async def _assign_once(self) -> None:
        try:
            result = await self._request_assignment()

        except AssignmentFailure as e:
            track_escalation("busy")
            logger.info(f"No agent for ticket {self.ticket_id}: {e}")
            self._notify(NoticeKind.AGENTS_BUSY, BUSY_TEXT)
            return

        except Exception as e:
            track_escalation("error")
            logger.warning(f"Assignment for ticket {self.ticket_id} failed: {e}")
            self._notify(NoticeKind.ASSIGNMENT_ERROR, ASSIGNMENT_ERROR_TEXT)
            return

        if self.store.ticket.is_closed:
            track_escalation("skipped")
            logger.info(f"Ticket {self.ticket_id} closed during assignment; result discarded")
            return

        fields: Dict[str, Any] = {"chat_mode": ChatMode.AGENT}
        if result.agent_id:
            fields["assigned_agent_id"] = result.agent_id
        if result.agent_name:
            fields["assigned_agent_name"] = result.agent_name

        ticket = await self._write_fields(fields)
        if ticket is None or ticket.is_closed or ticket.chat_mode != ChatMode.AGENT:
            track_escalation("skipped")
            logger.info(f"Assignment for ticket {self.ticket_id} not applied")
            return

        track_escalation("assigned")
        self._notify(NoticeKind.CONNECTED, f"Connected to {result.agent_name or 'a live agent'}!")

    async def _request_assignment(self) -> AssignmentResult:
        """
        One assignment attempt.

        Raises:
            AssignmentFailure: If every agent is busy
        """
        if self.assignment is None:
            raise AssignmentFailure("No assignment service configured")

        result = await self.assignment.assign(self.ticket_id)
        if not result.assigned:
            raise AssignmentFailure("All agents busy")
        return result

    async def _write_fields(self, fields: Dict[str, Any]) -> Optional[Ticket]:
        """
        Write ticket fields and merge the resulting row.

        Returns:
            The server row after the write, or None if the write failed
        """
        try:
            ticket = await self.persistence.update_ticket(self.ticket_id, fields)
        except Exception as e:
            logger.warning(f"Ticket update {list(fields)} for {self.ticket_id} failed: {e}")
            return None

        if ticket is not None:
            self.store.apply_ticket_record(ticket, source="ack")
        return ticket

    def _notify(self, kind: NoticeKind, text: str) -> None:
        notice = Notice(kind=kind, text=text, ticket_id=self.ticket_id)
        self.notices.append(notice)

        if self.on_notice is not None:
            try:
                self.on_notice(notice)
            except Exception as e:
                logger.error(f"Notice callback failed: {e}", exc_info=True)


__all__ = ['EscalationDispatcher', 'NoticeCallback']
