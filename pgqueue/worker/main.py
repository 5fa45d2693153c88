"""
Worker process for executing queue items.

Each tick leases available work queue entries, then for each lease, one
after another: loads the queue item, runs the handler for its type and
finalizes the outcome (history on success or exhausted retries, RETRY
otherwise). The lease is deleted last. If the worker dies before that,
the lease expires and any worker picks the item up again.
"""

import asyncio
import logging
import os
import signal
import socket
import time
from typing import Any
from uuid import uuid4

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pgqueue.config import get_settings
from pgqueue.constants import SPAN_EXECUTE_ITEM, HistoryState, QueueItemState
from pgqueue.db import close_db, get_session_context, init_db
from pgqueue.db.models import QueueHistory, QueueItem, WorkItem
from pgqueue.db.repository import QueueRepository, WorkQueueRepository
from pgqueue.errors import HandlerError, WorkerAlreadyStartedError
from pgqueue.observability.logging import bind_context, setup_logging
from pgqueue.observability.metrics import setup_metrics
from pgqueue.observability.tracing import get_tracer, setup_tracing
from pgqueue.polling import PollingLoop
from pgqueue.queues.manager import Queues
from pgqueue.types.events import QueueEvent
from pgqueue.types.queue import WorkResult, coerce_result
from pgqueue.worker.handlers import HandlerRegistry, handler_registry, load_handlers_module

logger = logging.getLogger(__name__)


def default_node_id() -> str:
    """A node id unique to this process start."""
    return f"{socket.gethostname()}-{os.getpid()}-{uuid4().hex[:8]}"


class WorkerRegistry:
    """
    Node ids of the workers started in this process.

    Passed to workers explicitly; starting two workers with the same node
    id through one registry is rejected.
    """

    def __init__(self) -> None:
        self._started: set[str] = set()

    def acquire(self, node_id: str) -> None:
        """
        Raises:
            WorkerAlreadyStartedError: If the node id is already started.
        """
        if node_id in self._started:
            raise WorkerAlreadyStartedError(node_id)
        self._started.add(node_id)

    def release(self, node_id: str) -> None:
        self._started.discard(node_id)

    def is_started(self, node_id: str) -> bool:
        return node_id in self._started


class Worker(PollingLoop):
    """
    Queue item worker.

    The node id identifies this worker's leases. On start the worker
    releases leases still held under its node id by a previous run that
    did not shut down cleanly. This assumes no other live process uses the
    same node id; the default id is unique per process start.
    """

    name = "worker"

    def __init__(
        self,
        node_id: str | None = None,
        handlers: HandlerRegistry | None = None,
        registry: WorkerRegistry | None = None,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        lock_timeout: float | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        """
        Initialize the worker.

        Args:
            node_id: Lease holder identifier. Defaults to hostname, PID and a random suffix.
            handlers: Handler registry. Defaults to the process-wide registry.
            registry: Optional guard against starting a node id twice.
            batch_size: Maximum number of leases per tick.
            poll_interval: Seconds between ticks when no work is available.
            lock_timeout: Lease duration in seconds.
            session_factory: Session factory; the global one when omitted.
        """
        settings = get_settings()
        super().__init__(
            poll_interval=(
                poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
            ),
            session_factory=session_factory,
        )
        self.node_id = node_id or settings.worker_id or default_node_id()
        self.handlers = handlers or handler_registry
        self.batch_size = batch_size if batch_size is not None else settings.worker_batch_size
        self.lock_timeout = lock_timeout if lock_timeout is not None else settings.worker_lock_timeout_seconds
        self._registry = registry
        self._queues = Queues(session_factory)

    async def on_start(self) -> None:
        async with get_session_context(self._session_factory) as session:
            released = await WorkQueueRepository(session).unlock_all(self.node_id)
        logger.info(
            "Worker starting",
            extra={
                "node_id": self.node_id,
                "batch_size": self.batch_size,
                "released_leases": released,
                "types": self.handlers.types(),
            },
        )

    async def start(self) -> None:
        """
        Run until stopped.

        Raises:
            WorkerAlreadyStartedError: If the registry already has this node id.
        """
        if self._registry is not None:
            self._registry.acquire(self.node_id)
        try:
            await super().start()
        finally:
            if self._registry is not None:
                self._registry.release(self.node_id)

    async def tick(self) -> bool:
        async with get_session_context(self._session_factory) as session:
            leases = await WorkQueueRepository(session).poll(
                self.node_id, self.batch_size, self.lock_timeout
            )

        if not leases:
            return False

        self._metrics.record_lease_acquired(self.node_id, len(leases))

        # Sequential on purpose: parallelism comes from more workers
        for lease in leases:
            await self.process(lease)

        return len(leases) >= self.batch_size

    async def process(self, lease: WorkItem) -> None:
        """Run and finalize the queue item behind one lease."""
        async with get_session_context(self._session_factory) as session:
            item = await QueueRepository(session).get_item(lease.id)

        if item is None:
            logger.warning(
                "Queue item for lease not found, already finalized",
                extra={"item_id": str(lease.id), "node_id": self.node_id},
            )
            await self._release(lease)
            return

        if item.state != QueueItemState.RUNNING:
            logger.warning(
                "Stale lease for queue item that is not running",
                extra={"item_id": str(item.id), "state": str(item.state)},
            )
            await self._release(lease)
            return

        start_time = time.monotonic()
        result, error = await self._execute(item)
        duration = time.monotonic() - start_time

        try:
            if error is None:
                outcome = await self._queues.completed(item, result)
            else:
                outcome = await self._queues.failed(item, result, error)
        except Exception:
            # The lease expires and the item is picked up again
            logger.exception(
                "Failed to finalize queue item, leaving lease to expire",
                extra={"item_id": str(item.id), "node_id": self.node_id},
            )
            return

        self._metrics.record_item_finalized(
            tenant_id=item.tenant_id,
            item_type=item.type,
            state=str(outcome.state),
            duration_seconds=duration,
        )
        await self._release(lease)
        self.emit(self._outcome_event(item, outcome, error))

    async def _execute(self, item: QueueItem) -> tuple[WorkResult | None, str | None]:
        """
        Run the handler.

        Returns:
            (result, error) where error is None on success.
        """
        logger.info(
            "Executing queue item",
            extra={
                "item_id": str(item.id),
                "tenant_id": item.tenant_id,
                "type": item.type,
                "tries": item.tries,
            },
        )
        with get_tracer().start_as_current_span(SPAN_EXECUTE_ITEM) as span:
            span.set_attribute("item_id", str(item.id))
            span.set_attribute("tenant_id", item.tenant_id)
            span.set_attribute("type", item.type)
            span.set_attribute("tries", item.tries)
            try:
                return coerce_result(await self.handlers.execute(item)), None
            except HandlerError as e:
                span.set_attribute("error", e.message)
                return coerce_result(e.result), e.message
            except Exception:
                error_id = str(uuid4())
                logger.exception(
                    "Handler raised an unexpected error",
                    extra={"item_id": str(item.id), "type": item.type, "error_id": error_id},
                )
                span.set_attribute("error_id", error_id)
                return None, f"unknown error: {error_id}"

    async def _release(self, lease: WorkItem) -> None:
        """Delete the lease. Finalizing to history already removed it by cascade."""
        try:
            async with get_session_context(self._session_factory) as session:
                deleted = await WorkQueueRepository(session).delete(lease.id, lease.version)
        except Exception:
            logger.exception(
                "Failed to delete lease, it will expire",
                extra={"item_id": str(lease.id), "node_id": self.node_id},
            )
            return
        if not deleted:
            logger.debug("Lease already removed", extra={"item_id": str(lease.id)})

    @staticmethod
    def _outcome_event(item: QueueItem, outcome: QueueItem | QueueHistory, error: str | None) -> QueueEvent:
        if outcome.state == HistoryState.COMPLETED:
            return QueueEvent.item_completed(item.id, item.tenant_id, outcome.tries)
        if outcome.state == HistoryState.FAILED:
            return QueueEvent.item_failed(item.id, item.tenant_id, error, outcome.tries)
        return QueueEvent.item_retry(item.id, item.tenant_id, error, outcome.tries, outcome.run_after)


async def run_async(**worker_kwargs: Any) -> None:
    """Run the worker asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_metrics(settings.metrics_port)
    setup_tracing()
    if settings.handlers_module:
        load_handlers_module(settings.handlers_module)
    await init_db()

    worker = Worker(registry=WorkerRegistry(), **worker_kwargs)
    bind_context(node_id=worker.node_id)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(worker.stop())
        )

    try:
        await worker.start()
    finally:
        await close_db()


def run() -> None:
    """Run the worker."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
