"""
Presence and typing tracker for one side of a ticket.
"""
import logging
from typing import Any, Dict, Optional

from ..config import SyncSettings, get_settings
from ..models import ONLINE_FLAG, TYPING_FLAG, Actor
from ..persistence import PersistenceBackend
from ..store import TicketStore
from ..utils import track_typing
from .debounce import DebouncedFlag

logger = logging.getLogger(__name__)


class PresenceTracker:
    """
    Publishes one actor's online and typing flags.

    Typing is debounced: a burst of keystrokes writes ``typing=true`` once
    and ``typing=false`` once, ``typing_window`` seconds after the last
    keystroke (or immediately on send/clear). Every flush is a field-level
    update of this actor's own flag, so the other side's flags are never
    touched.
    """

    def __init__(
        self,
        ticket_id: str,
        actor: Actor,
        persistence: PersistenceBackend,
        store: TicketStore,
        settings: Optional[SyncSettings] = None
    ):
        """
        Initialize tracker.

        Args:
            ticket_id: Ticket to publish flags on
            actor: customer or agent
            persistence: Persistence collaborator
            store: Local projection updated alongside persistence
            settings: Engine settings (typing window)
        """
        self.ticket_id = ticket_id
        self.actor = Actor(actor)
        self.persistence = persistence
        self.store = store
        self.settings = settings or get_settings()

        self.typing_field = TYPING_FLAG[self.actor]
        self.online_field = ONLINE_FLAG[self.actor]

        self._typing = DebouncedFlag(
            self.settings.typing_window,
            self._flush_typing,
            name=f"{ticket_id}:{self.typing_field}"
        )
        self._closed = False

    @property
    def typing(self) -> bool:
        return self._typing.value

    async def keystroke(self, draft: str) -> None:
        """Register an edit of the compose box. An empty draft clears typing."""
        if self._closed:
            return
        if not (draft or "").strip():
            await self.on_clear()
            return
        self._typing.arm()

    async def on_send(self) -> None:
        await self._typing.flush(False)

    async def on_clear(self) -> None:
        await self._typing.flush(False)

    async def set_online(self, online: bool) -> None:
        await self._write({self.online_field: bool(online)})

    async def shutdown(self) -> None:
        """Cancel the typing timer and publish typing=false, online=false."""
        if self._closed:
            return
        self._closed = True

        self._typing.cancel()
        await self._typing.flush(False)
        await self._typing.drain()
        await self._write({self.online_field: False})
        logger.debug(f"Presence tracker for {self.actor.value} on {self.ticket_id} shut down")

    async def _flush_typing(self, value: bool) -> None:
        track_typing(self.actor.value, value)
        await self._write({self.typing_field: value})

    async def _write(self, fields: Dict[str, Any]) -> None:
        if self.store.ticket.is_closed:
            logger.debug(f"Ticket {self.ticket_id} closed; presence {fields} not published")
            return

        self.store.update_flags(self.ticket_id, fields, source="presence")

        try:
            await self.persistence.update_ticket(self.ticket_id, fields)
        except Exception as e:
            logger.warning(f"Presence write {fields} for ticket {self.ticket_id} failed: {e}")


__all__ = ['PresenceTracker']
