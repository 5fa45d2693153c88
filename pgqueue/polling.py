"""
Poll loop base for the scheduler, worker and schedule runner.

Each loop runs one tick at a time. A tick returns True when its batch was
full, in which case the next tick starts immediately to drain the backlog;
otherwise the loop waits for the poll interval. ``stop()`` sets the abort
event: the running tick is never interrupted, but no new tick starts.
"""

import asyncio
import logging
from collections.abc import Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pgqueue.observability.metrics import get_metrics
from pgqueue.types.events import QueueEvent

logger = logging.getLogger(__name__)

Listener = Callable[[QueueEvent], None]


class PollingLoop:
    """
    Cooperative poll loop with an abort event and observer callbacks.

    Subclasses implement ``tick()``.
    """

    name = "loop"

    def __init__(
        self,
        poll_interval: float,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        """
        Args:
            poll_interval: Seconds to wait after a tick that did not fill its batch.
            session_factory: Session factory; the global one when omitted.
        """
        self.poll_interval = poll_interval
        self._session_factory = session_factory
        self._stop_event = asyncio.Event()
        self._listeners: list[Listener] = []
        self._running = False
        self._metrics = get_metrics()

    @property
    def running(self) -> bool:
        return self._running

    def add_listener(self, listener: Listener) -> None:
        """Register a callback invoked with every event this loop emits."""
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        self._listeners.remove(listener)

    def emit(self, event: QueueEvent) -> None:
        """Deliver an event to listeners in registration order."""
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Event listener failed",
                    extra={"loop": self.name, "event_type": event.event_type},
                )

    async def tick(self) -> bool:
        """
        Run one iteration.

        Returns:
            True to run the next tick immediately.
        """
        raise NotImplementedError

    async def run_once(self) -> bool:
        """Run a single tick (for testing or cron-style execution)."""
        return await self.tick()

    async def on_start(self) -> None:
        """Hook run once before the first tick."""

    async def start(self) -> None:
        """Run ticks until stop() is called."""
        self._stop_event.clear()
        await self.on_start()
        self._running = True
        logger.info(
            f"{self.name} starting",
            extra={"loop": self.name, "poll_interval": self.poll_interval},
        )

        try:
            while not self._stop_event.is_set():
                rerun = False
                try:
                    rerun = await self.tick()
                except Exception as e:
                    logger.exception(f"Error in {self.name} loop", extra={"loop": self.name})
                    self._metrics.record_loop_error(self.name)
                    self.emit(QueueEvent.loop_error(self.name, str(e)))

                if rerun:
                    continue
                await self._wait()
        finally:
            self._running = False
            logger.info(f"{self.name} stopped", extra={"loop": self.name})

    async def stop(self) -> None:
        """Stop after the tick in flight completes."""
        logger.info(f"{self.name} stopping", extra={"loop": self.name})
        self._stop_event.set()

    async def _wait(self) -> None:
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
        except TimeoutError:
            # Poll interval elapsed without a stop request
            return
