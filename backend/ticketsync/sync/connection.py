"""
Change-feed health monitor with a polling fallback.

One :class:`ConnectionMonitor` owns the single feed subscription of a ticket
session. While the feed is healthy it is the only data source; when it goes
silent or errors, a fixed-interval poll takes over until a resubscription
is confirmed. Both paths merge through the same idempotent reconciliation,
so overlap is wasteful but never incorrect.
"""
import asyncio
import inspect
import logging
import uuid
from datetime import datetime
from enum import Enum
from functools import partial
from typing import Any, Awaitable, Callable, List, Optional, Union

from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..config import SyncSettings, get_settings
from ..errors import TransientNetworkError
from ..models import (
    MESSAGES_TABLE,
    TICKETS_TABLE,
    BaseMessage,
    FeedBinding,
    FeedEvent,
    FeedStatus,
    Ticket,
    utc_now,
)
from ..persistence import PersistenceBackend, Subscription
from ..utils import track_connection, track_poll

logger = logging.getLogger(__name__)

EventHandler = Callable[[FeedEvent], Union[Any, Awaitable[Any]]]
SnapshotHandler = Callable[[List[BaseMessage], Optional[Ticket], str], Union[Any, Awaitable[Any]]]
StateListener = Callable[['ConnectionState'], None]


class ConnectionState(str, Enum):
    """Feed connection state."""
    CONNECTING = "connecting"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    RECONNECTING = "reconnecting"


async def _maybe_await(result: Any) -> Any:
    if inspect.isawaitable(result):
        return await result
    return result


class ConnectionMonitor:
    """
    Tracks feed health for one ticket and drives the polling fallback.

    Transitions:
    - SUBSCRIBED -> connected: polling stops, one catch-up fetch runs
    - CHANNEL_ERROR / TIMED_OUT / silence -> disconnected: polling starts,
      automatic resubscription with exponential backoff
    - CLOSED -> disconnected: polling starts, no automatic resubscription
    """

    def __init__(
        self,
        ticket_id: str,
        persistence: PersistenceBackend,
        on_event: EventHandler,
        on_snapshot: SnapshotHandler,
        settings: Optional[SyncSettings] = None
    ):
        """
        Initialize the monitor.

        Args:
            ticket_id: Ticket whose rows the feed carries
            persistence: Persistence collaborator (feed + poll source)
            on_event: Called with every feed event
            on_snapshot: Called with (messages, ticket, source) after a poll
            settings: Engine settings
        """
        self.ticket_id = ticket_id
        self.persistence = persistence
        self.on_event = on_event
        self.on_snapshot = on_snapshot
        self.settings = settings or get_settings()

        self.channel = f"support-chat-{ticket_id}-{uuid.uuid4().hex[:8]}"
        self.bindings = [
            FeedBinding(table=MESSAGES_TABLE, filter={"ticket_id": ticket_id}),
            FeedBinding(table=TICKETS_TABLE, filter={"id": ticket_id}),
        ]

        self._state = ConnectionState.CONNECTING
        self._last_connected: Optional[datetime] = None
        self._listeners: List[StateListener] = []

        self._subscription: Optional[Subscription] = None
        self._generation = 0
        self._waiter: Optional[asyncio.Future] = None
        self._last_activity = 0.0

        self._watchdog_task: Optional[asyncio.Task] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._reconnect_task: Optional[asyncio.Task] = None
        self._catchup_task: Optional[asyncio.Task] = None
        self._reconnect_lock = asyncio.Lock()
        self._stopped = False

    # ===========================
    # Public state
    # ===========================

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def is_connected(self) -> bool:
        return self._state == ConnectionState.CONNECTED

    @property
    def polling(self) -> bool:
        return self._poll_task is not None and not self._poll_task.done()

    @property
    def last_connected(self) -> Optional[datetime]:
        """When the feed was last confirmed healthy."""
        return self._last_connected

    @property
    def subscription(self) -> Optional[Subscription]:
        return self._subscription

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """
        Register a state-change listener.

        Returns:
            Callable that removes the listener
        """
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _set_state(self, state: ConnectionState) -> None:
        if state == self._state:
            return

        previous, self._state = self._state, state
        track_connection(state.value)
        logger.info(f"Feed for ticket {self.ticket_id}: {previous.value} -> {state.value}")

        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception as e:
                logger.error(f"Connection listener failed: {e}", exc_info=True)

    # ===========================
    # Lifecycle
    # ===========================

    async def start(self) -> None:
        """Acquire the feed subscription. Falls back to polling on failure."""
        self._stopped = False
        self._set_state(ConnectionState.CONNECTING)
        try:
            await self._resubscribe()
        except TransientNetworkError as e:
            logger.warning(f"Initial subscribe for ticket {self.ticket_id} failed: {e}")
            self._on_lost(str(e), auto_reconnect=True)

    async def reconnect(self) -> bool:
        """
        Manually retry the feed.

        Returns:
            True if the feed is connected afterwards
        """
        if self._stopped:
            return False

        async with self._reconnect_lock:
            if self.is_connected:
                return True

            self._cancel(self._reconnect_task)
            self._reconnect_task = None

            self._set_state(ConnectionState.RECONNECTING)
            try:
                await self._resubscribe()
            except TransientNetworkError as e:
                logger.warning(f"Manual reconnect for ticket {self.ticket_id} failed: {e}")
                self._set_state(ConnectionState.DISCONNECTED)
                self._start_polling()
                return False

            return self.is_connected

    async def stop(self) -> None:
        """Release the subscription and cancel every background task. Idempotent."""
        if self._stopped:
            return
        self._stopped = True

        for task in (self._reconnect_task, self._watchdog_task, self._poll_task, self._catchup_task):
            self._cancel(task)
        for task in (self._reconnect_task, self._watchdog_task, self._poll_task, self._catchup_task):
            if task is not None and task is not asyncio.current_task():
                try:
                    await task
                except asyncio.CancelledError:
                    pass
                except Exception as e:
                    logger.debug(f"Background task ended with {e!r}")

        self._reconnect_task = self._watchdog_task = self._poll_task = self._catchup_task = None
        await self._release_subscription()
        self._set_state(ConnectionState.DISCONNECTED)
        logger.debug(f"Connection monitor for ticket {self.ticket_id} stopped")

    # ===========================
    # Subscription handling
    # ===========================

    async def _release_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is None:
            return
        try:
            await subscription.unsubscribe()
        except Exception as e:
            logger.warning(f"Unsubscribe of {subscription.channel} failed: {e}")

    async def _resubscribe(self) -> None:
        """
        Release the old handle, acquire a new one and wait for SUBSCRIBED.

        Raises:
            TransientNetworkError: If the subscription is not confirmed
        """
        await self._release_subscription()

        self._generation += 1
        generation = self._generation
        self._waiter = asyncio.get_running_loop().create_future()

        try:
            self._subscription = await self.persistence.subscribe(
                self.channel,
                self.bindings,
                partial(self._handle_event, generation),
                partial(self._handle_status, generation)
            )
        except Exception as e:
            self._waiter = None
            raise TransientNetworkError(f"Subscribe failed: {e}") from e

        try:
            await asyncio.wait_for(self._waiter, timeout=self.settings.write_timeout)
        except asyncio.TimeoutError:
            raise TransientNetworkError("Subscription not confirmed in time")
        finally:
            self._waiter = None

    async def _auto_reconnect(self) -> None:
        self._set_state(ConnectionState.RECONNECTING)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.settings.max_reconnect_attempts),
                wait=wait_exponential(
                    multiplier=self.settings.reconnect_backoff_base,
                    max=self.settings.reconnect_backoff_max
                ),
                retry=retry_if_exception_type(TransientNetworkError),
                before_sleep=before_sleep_log(logger, logging.WARNING),
                reraise=True
            ):
                with attempt:
                    async with self._reconnect_lock:
                        if self.is_connected:
                            return
                        await self._resubscribe()

        except TransientNetworkError as e:
            logger.warning(
                f"Giving up automatic reconnect for ticket {self.ticket_id} "
                f"after {self.settings.max_reconnect_attempts} attempts: {e}"
            )
            self._set_state(ConnectionState.DISCONNECTED)

        finally:
            if self._reconnect_task is asyncio.current_task():
                self._reconnect_task = None

    # ===========================
    # Feed callbacks
    # ===========================

    async def _handle_event(self, generation: int, event: FeedEvent) -> None:
        if self._stopped or generation != self._generation:
            return
        self._touch()
        await _maybe_await(self.on_event(event))

    def _handle_status(self, generation: int, status: FeedStatus) -> None:
        if self._stopped or generation != self._generation:
            logger.debug(f"Ignoring {status.value} from a released subscription")
            return

        if status == FeedStatus.SUBSCRIBED:
            if self._waiter is not None and not self._waiter.done():
                self._waiter.set_result(True)
            self._on_connected()

        elif status == FeedStatus.HEARTBEAT:
            self._touch()

        else:
            if self._waiter is not None and not self._waiter.done():
                self._waiter.set_exception(TransientNetworkError(f"Feed reported {status.value}"))
                return
            self._on_lost(status.value, auto_reconnect=status != FeedStatus.CLOSED)

    def _touch(self) -> None:
        self._last_activity = asyncio.get_running_loop().time()

    def _on_connected(self) -> None:
        self._last_connected = utc_now()
        self._touch()
        self._stop_polling()
        self._set_state(ConnectionState.CONNECTED)

        if self.settings.feed_silence_timeout:
            self._cancel(self._watchdog_task)
            self._watchdog_task = asyncio.create_task(
                self._watchdog(), name=f"feed-watchdog:{self.ticket_id}"
            )

        # Close the gap between the last delivery and the new subscription
        self._cancel(self._catchup_task)
        self._catchup_task = asyncio.create_task(
            self._poll_once("catchup"), name=f"feed-catchup:{self.ticket_id}"
        )

    def _on_lost(self, reason: str, auto_reconnect: bool) -> None:
        if self._stopped:
            return

        logger.warning(f"Feed for ticket {self.ticket_id} lost: {reason}")
        self._cancel(self._watchdog_task)
        self._watchdog_task = None

        self._set_state(ConnectionState.DISCONNECTED)
        self._start_polling()

        if auto_reconnect and (self._reconnect_task is None or self._reconnect_task.done()):
            self._reconnect_task = asyncio.create_task(
                self._auto_reconnect(), name=f"feed-reconnect:{self.ticket_id}"
            )

    async def _watchdog(self) -> None:
        timeout = self.settings.feed_silence_timeout
        loop = asyncio.get_running_loop()

        while True:
            remaining = self._last_activity + timeout - loop.time()
            if remaining <= 0:
                self._watchdog_task = None
                self._on_lost(f"no feed activity for {timeout}s", auto_reconnect=True)
                return
            await asyncio.sleep(remaining)

    # ===========================
    # Polling fallback
    # ===========================

    def _start_polling(self) -> None:
        if self._stopped or self.polling:
            return
        logger.info(f"Polling ticket {self.ticket_id} every {self.settings.poll_interval}s")
        self._poll_task = asyncio.create_task(
            self._poll_loop(), name=f"feed-poll:{self.ticket_id}"
        )

    def _stop_polling(self) -> None:
        if self.polling:
            logger.info(f"Feed healthy again; polling for ticket {self.ticket_id} stopped")
        self._cancel(self._poll_task)
        self._poll_task = None

    async def _poll_loop(self) -> None:
        while not self.is_connected:
            await self._poll_once("poll")
            await asyncio.sleep(self.settings.poll_interval)

    async def _poll_once(self, source: str) -> bool:
        """Fetch the message list and ticket row and merge them."""
        try:
            messages = await self.persistence.select_messages(self.ticket_id)
            ticket = await self.persistence.get_ticket(self.ticket_id)
            await _maybe_await(self.on_snapshot(messages, ticket, source))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            track_poll("error")
            logger.warning(f"{source.capitalize()} fetch for ticket {self.ticket_id} failed: {e}")
            return False

        track_poll("ok" if source == "poll" else source)
        return True

    @staticmethod
    def _cancel(task: Optional[asyncio.Task]) -> None:
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()


__all__ = ['ConnectionMonitor', 'ConnectionState']
