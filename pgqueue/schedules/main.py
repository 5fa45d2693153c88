"""
Schedule runner process.

Each tick claims due, unpaused schedules, interleaves them round-robin by
tenant and, for each one, pushes a queue item and advances next_run and
last_run. Each schedule is handled in its own savepoint so one failing
schedule does not abort the others.
"""

import asyncio
import logging
import signal
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pgqueue import cron
from pgqueue.config import get_settings
from pgqueue.constants import SPAN_TRIGGER_SCHEDULES
from pgqueue.db import close_db, get_session_context, init_db
from pgqueue.db.repository import QueueRepository, ScheduleRepository
from pgqueue.fairness import round_robin_by
from pgqueue.observability.logging import setup_logging
from pgqueue.observability.metrics import setup_metrics
from pgqueue.observability.tracing import get_tracer, setup_tracing
from pgqueue.polling import PollingLoop
from pgqueue.types.events import QueueEvent
from pgqueue.types.schedule import schedule_expression, schedule_triggered, triggered_item

logger = logging.getLogger(__name__)


class ScheduleRunner(PollingLoop):
    """
    Turns due schedules into queue items.

    Missed runs are not backfilled: after a trigger the next run is the
    first one after the current database time.
    """

    name = "schedule_runner"

    def __init__(
        self,
        batch_size: int | None = None,
        poll_interval: float | None = None,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        settings = get_settings()
        super().__init__(
            poll_interval=(
                poll_interval if poll_interval is not None else settings.schedule_runner_poll_interval_seconds
            ),
            session_factory=session_factory,
        )
        self.batch_size = batch_size if batch_size is not None else settings.schedule_runner_batch_size

    async def tick(self) -> bool:
        events: list[QueueEvent] = []
        with get_tracer().start_as_current_span(SPAN_TRIGGER_SCHEDULES) as span:
            async with get_session_context(self._session_factory) as session:
                schedules = ScheduleRepository(session)
                due = await schedules.fetch_and_lock_due(self.batch_size)
                if not due:
                    return False
                now = await schedules.current_time()

                for row in round_robin_by(due, key=lambda s: s.tenant_id):
                    # Read before the savepoint; a rollback expires the row
                    schedule_id, tenant_id, version, tries = row.id, row.tenant_id, row.version, row.tries
                    try:
                        async with session.begin_nested():
                            item = await QueueRepository(session).insert(tenant_id, triggered_item(row))
                            next_run = cron.next_run(schedule_expression(row), row.timezone, after=now)
                            await schedules.update(
                                schedule_id, version, **schedule_triggered(row, now, next_run)
                            )
                    except Exception:
                        logger.exception(
                            "Failed to trigger schedule",
                            extra={"schedule_id": str(schedule_id), "tenant_id": tenant_id},
                        )
                        await self._record_failure(schedules, session, schedule_id, version, tries)
                        continue

                    self._metrics.record_schedule_triggered(tenant_id)
                    events.append(
                        QueueEvent.schedule_triggered(schedule_id, tenant_id, item.id, next_run)
                    )

            span.set_attribute("schedule_count", len(due))
            span.set_attribute("triggered_count", len(events))

        logger.info(
            f"Triggered {len(events)} of {len(due)} due schedules",
            extra={"count": len(events), "due": len(due)},
        )
        for event in events:
            self.emit(event)

        # Only drain immediately while progress is made
        return len(due) >= self.batch_size and bool(events)

    @staticmethod
    async def _record_failure(
        schedules: ScheduleRepository,
        session: AsyncSession,
        schedule_id: UUID,
        version: int,
        tries: int,
    ) -> None:
        try:
            async with session.begin_nested():
                await schedules.update(schedule_id, version, tries=tries + 1)
        except Exception:
            logger.exception(
                "Failed to record schedule failure",
                extra={"schedule_id": str(schedule_id)},
            )


async def run_async() -> None:
    """Run the schedule runner asynchronously."""
    settings = get_settings()
    setup_logging()
    setup_metrics(settings.metrics_port)
    setup_tracing()
    await init_db()

    runner = ScheduleRunner()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: asyncio.create_task(runner.stop())
        )

    try:
        await runner.start()
    finally:
        await close_db()


def run() -> None:
    """Run the schedule runner."""
    asyncio.run(run_async())


if __name__ == "__main__":
    run()
