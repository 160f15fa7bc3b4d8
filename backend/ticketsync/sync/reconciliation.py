"""
Optimistic write reconciliation.

Protocol per locally-originated message:

1. Append an optimistic entry keyed by a fresh correlation id, then write
   it to persistence carrying that id.
2. On write failure remove the entry and hand the draft back to the caller.
3. On confirmation (write response, feed or poll) swap the entry for the
   canonical record at its server position.
4. Deliveries of ids already held are dropped.

A write that neither fails nor confirms leaves the entry pending; after
``pending_window`` it is flagged overdue and waits for a manual retry.
"""
import asyncio
import logging
import uuid
from typing import Dict, Iterable, Optional

from ..config import SyncSettings, get_settings
from ..errors import (
    AuthExpiredError,
    ReconciliationConflict,
    SendFailedError,
    SendValidationError,
    TicketClosedError,
)
from ..models import Attachment, BaseMessage, DeliveryState, SenderType, message_class, utc_now
from ..persistence import PersistenceBackend
from ..store import TicketStore
from ..utils import track_duplicate, track_send

logger = logging.getLogger(__name__)


class ReconciliationEngine:
    """
    Merges optimistic local writes with confirmed and feed-delivered
    records for one ticket.

    All merging goes through :meth:`TicketStore.append`, so any
    interleaving of acknowledgments, feed deliveries and poll snapshots
    converges on one entry per canonical message.
    """

    def __init__(
        self,
        store: TicketStore,
        persistence: PersistenceBackend,
        sender_type: SenderType = SenderType.USER,
        settings: Optional[SyncSettings] = None
    ):
        """
        Initialize the engine.

        Args:
            store: Projection to reconcile into
            persistence: Persistence collaborator
            sender_type: Sender of locally-originated messages
            settings: Engine settings
        """
        self.store = store
        self.persistence = persistence
        self.sender_type = SenderType(sender_type)
        self.settings = settings or get_settings()

        self.auth_expired = False
        self._pending_timers: Dict[str, asyncio.TimerHandle] = {}

    # ===========================
    # Local sends
    # ===========================

    def validate(self, body: str, attachment: Optional[Attachment] = None) -> str:
        """
        Validate a draft locally.

        Returns:
            The trimmed body

        Raises:
            SendValidationError: If the draft is empty or too large
        """
        text = (body or "").strip()

        if not text and attachment is None:
            raise SendValidationError("Message is empty")

        if len(text) > self.settings.max_message_length:
            raise SendValidationError(
                f"Message exceeds {self.settings.max_message_length} characters"
            )

        if (
            attachment is not None
            and attachment.size_bytes is not None
            and attachment.size_bytes > self.settings.max_attachment_bytes
        ):
            raise SendValidationError(
                f"Attachment exceeds {self.settings.max_attachment_bytes} bytes"
            )

        if not text and attachment is not None:
            text = f"Sent file: {attachment.file_name or 'attachment'}"

        return text

    async def send(self, body: str, attachment: Optional[Attachment] = None) -> BaseMessage:
        """
        Send a message optimistically.

        Args:
            body: Draft text from the compose box
            attachment: Optional uploaded file reference

        Returns:
            The entry as it stands after the write (canonical, or still
            pending if the write timed out)

        Raises:
            SendValidationError: Draft rejected locally, nothing sent
            AuthExpiredError: Sending blocked until re-authentication
            TicketClosedError: Ticket no longer accepts messages
            SendFailedError: Write failed; ``draft`` holds the original text
        """
        text = self.validate(body, attachment)

        if self.auth_expired:
            track_send("blocked")
            raise AuthExpiredError("Sign in again to keep chatting", draft=body)

        if self.store.ticket.is_closed:
            raise TicketClosedError(f"Ticket {self.store.ticket_id} is closed")

        correlation_id = uuid.uuid4().hex
        optimistic = message_class(self.sender_type)(
            correlation_id=correlation_id,
            ticket_id=self.store.ticket_id,
            body=text,
            attachment=attachment,
            created_at=utc_now(),
            delivery=DeliveryState.PENDING
        )
        self.store.append(optimistic, source="optimistic")
        self._arm_pending_timer(correlation_id)

        return await self._write(correlation_id, text, attachment, draft=body)

    async def retry(self, correlation_id: str) -> BaseMessage:
        """
        Manually re-issue the write of a pending message.

        The same correlation id is reused, so a write that did land the
        first time is not duplicated.
        """
        entry = self.store.get(correlation_id)
        if entry is None or not entry.is_pending:
            raise ValueError(f"No pending message with correlation id {correlation_id}")

        if self.auth_expired:
            raise AuthExpiredError("Sign in again to keep chatting", draft=entry.body)

        logger.info(f"Retrying send for {correlation_id}")
        return await self._write(correlation_id, entry.body, entry.attachment, draft=entry.body)

    async def _write(
        self,
        correlation_id: str,
        text: str,
        attachment: Optional[Attachment],
        draft: str
    ) -> BaseMessage:
        try:
            canonical = await asyncio.wait_for(
                self.persistence.insert_message(
                    ticket_id=self.store.ticket_id,
                    sender_type=self.sender_type,
                    body=text,
                    correlation_id=correlation_id,
                    attachment=attachment
                ),
                timeout=self.settings.write_timeout
            )

        except asyncio.TimeoutError:
            # Outcome unknown: keep the entry pending until feed/poll decides
            logger.warning(
                f"Write for {correlation_id} timed out after "
                f"{self.settings.write_timeout}s; leaving it pending"
            )
            track_send("pending")
            return self.store.get(correlation_id)

        except AuthExpiredError as e:
            self._discard(correlation_id)
            self.auth_expired = True
            track_send("auth_expired")
            logger.warning(f"Send blocked, authentication expired: {e}")
            raise AuthExpiredError(str(e), draft=draft) from e

        except Exception as e:
            self._discard(correlation_id)
            track_send("failed")
            logger.error(f"Send failed for {correlation_id}: {e}")
            raise SendFailedError("Failed to send message", draft=draft) from e

        self.ingest(canonical, source="ack")
        track_send("confirmed")
        return self.store.get(canonical.id) or canonical

    def mark_reauthenticated(self) -> None:
        """Lift the send block after the user signed in again."""
        self.auth_expired = False

    # ===========================
    # Ground-truth ingestion
    # ===========================

    def ingest(self, message: BaseMessage, source: str = "feed") -> bool:
        """
        Merge one canonical record from the ack, feed or poll path.

        Returns:
            True if the visible list changed
        """
        try:
            changed = self.store.append(message, source=source)
        except ReconciliationConflict as e:
            logger.debug(f"Reconciliation conflict dropped: {e}")
            track_duplicate(source)
            if message.correlation_id is not None:
                self.store.remove_optimistic(message.correlation_id)
            changed = False

        if message.correlation_id is not None:
            entry = self.store.get(message.correlation_id)
            if entry is None or not entry.is_pending:
                self._cancel_pending_timer(message.correlation_id)

        return changed

    def ingest_update(self, message: BaseMessage, source: str = "feed") -> bool:
        """
        Merge a row update (read receipt). Unknown ids are treated as
        inserts the feed missed.
        """
        if message.id is not None and self.store.contains(message.id):
            return self.store.apply_message_update(message, source=source)
        return self.ingest(message, source=source)

    def ingest_snapshot(self, messages: Iterable[BaseMessage], source: str = "poll") -> int:
        """
        Merge a full message list from a poll.

        Returns:
            Number of entries added or reconciled
        """
        changed = 0
        for message in sorted(messages, key=lambda m: m.sort_key):
            if message.id is not None and self.store.contains(message.id):
                if self.store.apply_message_update(message, source=source):
                    changed += 1
                continue
            if self.ingest(message, source=source):
                changed += 1

        if changed:
            logger.info(f"Snapshot from {source} merged {changed} entries into {self.store.ticket_id}")
        return changed

    # ===========================
    # Pending bookkeeping
    # ===========================

    def _arm_pending_timer(self, correlation_id: str) -> None:
        loop = asyncio.get_running_loop()
        self._pending_timers[correlation_id] = loop.call_later(
            self.settings.pending_window,
            self._on_pending_timeout,
            correlation_id
        )

    def _cancel_pending_timer(self, correlation_id: str) -> None:
        handle = self._pending_timers.pop(correlation_id, None)
        if handle is not None:
            handle.cancel()

    def _on_pending_timeout(self, correlation_id: str) -> None:
        self._pending_timers.pop(correlation_id, None)
        if self.store.mark_overdue(correlation_id):
            logger.info(f"Message {correlation_id} still unconfirmed; marked overdue")

    def _discard(self, correlation_id: str) -> None:
        self._cancel_pending_timer(correlation_id)
        self.store.remove_optimistic(correlation_id)

    def shutdown(self) -> None:
        """Cancel outstanding pending-window timers."""
        for handle in self._pending_timers.values():
            handle.cancel()
        self._pending_timers.clear()


__all__ = ['ReconciliationEngine']
