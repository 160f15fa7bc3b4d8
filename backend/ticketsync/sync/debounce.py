"""
Debounced boolean flag.

A burst of :meth:`DebouncedFlag.arm` calls produces exactly two flushes:
``True`` when the burst starts and ``False`` once ``window`` seconds pass
without another arm.
"""
import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Optional, Set, Union

logger = logging.getLogger(__name__)

FlushCallback = Callable[[bool], Union[None, Awaitable[None]]]


class DebouncedFlag:
    """
    A flag that goes true immediately and false after a quiet window.

    Flushes run in order through one lock, so a slow ``True`` write never
    lands after the ``False`` that followed it.
    """

    def __init__(self, window: float, on_flush: FlushCallback, name: str = "flag"):
        """
        Initialize the flag.

        Args:
            window: Quiet period in seconds before flushing False
            on_flush: Called with the new value (sync or async)
            name: Label used in logs
        """
        if window <= 0:
            raise ValueError("window must be positive")

        self.window = window
        self.on_flush = on_flush
        self.name = name
        self.value = False

        self._timer: Optional[asyncio.Task] = None
        self._inflight: Set[asyncio.Task] = set()
        self._lock = asyncio.Lock()

    @property
    def armed(self) -> bool:
        return self._timer is not None and not self._timer.done()

    def arm(self) -> None:
        """Record activity; restarts the quiet window."""
        if not self.value:
            self.value = True
            self._spawn(self._emit(True))

        self._cancel_timer()
        self._timer = asyncio.create_task(self._expire(), name=f"debounce:{self.name}")

    def cancel(self) -> None:
        """Drop the pending quiet-window timer without flushing."""
        self._cancel_timer()

    async def flush(self, value: bool) -> None:
        """Cancel the timer and flush ``value`` now if it differs."""
        self._cancel_timer()
        if self.value == value:
            return
        self.value = value
        await self.drain()
        await self._emit(value)

    async def drain(self) -> None:
        """Wait for flushes already started."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _expire(self) -> None:
        await asyncio.sleep(self.window)
        self._timer = None
        if self.value:
            self.value = False
            await self.drain()
            await self._emit(False)

    async def _emit(self, value: bool) -> None:
        async with self._lock:
            try:
                result = self.on_flush(value)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                logger.warning(f"Flush of {self.name}={value} failed: {e}")


__all__ = ['DebouncedFlag']
