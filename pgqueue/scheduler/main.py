"""
Scheduler process.

Each tick claims due PENDING/RETRY queue items, interleaves them
round-robin by tenant, inserts one work queue lease per item with an
increasing batch order, and marks the items RUNNING. The whole tick is
one transaction, so a failure leaves no partial effect.
"""

import asyncio
import logging
import signal
from collections import Counter

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pgqueue.config import get_settings
from pgqueue.constants import SPAN_SCHEDULE_ITEMS, QueueItemState
from pgqueue.db import close_db, get_session_context, init_db
from pgqueue.db.repository import QueueRepository, WorkQueueRepository
from pgqueue.fairness import round_robin_by
from pgqueue.observability.logging import setup_logging
from pgqueue.observability.metrics import setup_metrics
from pgqueue.observability.tracing import get_tracer, setup_tracing
from pgqueue.polling import PollingLoop
from pgqueue.types.events import QueueEvent

logger = logging.getLogger(__name__)


class Scheduler(PollingLoop):
    """
    Converts due queue items into work queue leases.

    Any number of schedulers may run concurrently; SKIP LOCKED makes them
    claim disjoint sets of items.
    """

    name = "scheduler"

    def __init__(
        self,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        """
        Initialize the scheduler.

        Args:
            batch_size: Maximum number of items claimed per tick.
            poll_interval: Seconds between ticks when the backlog is drained.
            session_factory: Session factory; the global one when omitted.
        """
        settings = get_settings()
        super().__init__(
            poll_interval=(
                poll_interval if poll_interval is not None else settings.scheduler_poll_interval_seconds
            ),
            session_factory=session_factory,
        )
        self.batch_size = batch_size if batch_size is not None else settings.scheduler_batch_size

    async def tick(self) -> bool:
        with get_tracer().start_as_current_span(SPAN_SCHEDULE_ITEMS) as span:
            async with get_session_context(self._session_factory) as session:
                items = await QueueRepository(session).fetch_and_lock_due_items(self.batch_size)
                if not items:
                    return False

                ordered = round_robin_by(items, key=lambda item: item.tenant_id)
                leases = [
                    {"id": item.id, "tenant_id": item.tenant_id, "batch_order": index}
                    for index, item in enumerate(ordered)
                ]
                await WorkQueueRepository(session).insert_many(leases)
                await QueueRepository(session).mark_as(
                    QueueItemState.RUNNING, [item.id for item in ordered]
                )

            span.set_attribute("item_count", len(ordered))

        for tenant_id, count in Counter(item.tenant_id for item in ordered).items():
            self._metrics.record_items_scheduled(tenant_id, count)
        logger.info(
            f"Scheduled {len(ordered)} items",
            extra={"count": len(ordered), "batch_size": self.batch_size},
        )
        for lease in leases:
            self.emit(
                QueueEvent.item_scheduled(lease["id"], lease["tenant_id"], lease["batch_order"])
            )

        return len(items) >= self.batch_size


async def run_async() -> None:
    """Run the scheduler asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_metrics(settings.metrics_port)
    setup_tracing()
    await init_db()

    scheduler = Scheduler()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(scheduler.stop())
        )

    try:
        await scheduler.start()
    finally:
        await close_db()


def run() -> None:
    """Run the scheduler."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
