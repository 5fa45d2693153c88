"""
Queue manager.

Entry point for producers (push, configure, fetch, delete) and for the
worker's finalization of handler outcomes. Every method runs in its own
transaction.
"""

import logging
from datetime import timedelta
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pgqueue.constants import SPAN_FINALIZE_ITEM, SPAN_PUSH_ITEM
from pgqueue.db import get_session_context
from pgqueue.db.models import QueueConfig, QueueHistory, QueueItem
from pgqueue.db.repository import QueueHistoryRepository, QueueRepository
from pgqueue.observability.metrics import get_metrics
from pgqueue.observability.tracing import get_tracer
from pgqueue.retry import next_run_delay, resolve_retry_policy
from pgqueue.types.queue import (
    NewQueueItem,
    QueueConfigUpdate,
    QueueInfo,
    WorkResult,
    item_completed,
    item_failed,
    item_retry,
)

logger = logging.getLogger(__name__)


class Queues:
    """Queue items and queue configuration for all tenants."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        """
        Args:
            session_factory: Session factory; the global one when omitted.
        """
        self._session_factory = session_factory
        self._metrics = get_metrics()

    async def push(self, tenant_id: str, item: NewQueueItem) -> QueueItem:
        """
        Push an item onto a queue.

        Pushing with a key that exists in the tenant's queue overwrites the
        existing item and resets its tries.
        """
        with get_tracer().start_as_current_span(SPAN_PUSH_ITEM) as span:
            span.set_attribute("tenant_id", tenant_id)
            span.set_attribute("queue", item.queue)
            async with get_session_context(self._session_factory) as session:
                row = await QueueRepository(session).insert(tenant_id, item)
            span.set_attribute("item_id", str(row.id))

        self._metrics.record_item_pushed(tenant_id, item.queue)
        return row

    async def configure(self, tenant_id: str, queue: str, update: QueueConfigUpdate) -> QueueConfig:
        """Create or partially update a queue's configuration."""
        values = update.model_dump(exclude_unset=True)
        async with get_session_context(self._session_factory) as session:
            return await QueueRepository(session).save_config(tenant_id, queue, **values)

    async def get_config(self, tenant_id: str, queue: str) -> QueueConfig | None:
        async with get_session_context(self._session_factory) as session:
            return await QueueRepository(session).get_config(tenant_id, queue)

    async def fetch_queues(self, tenant_id: str | None = None) -> list[QueueInfo]:
        """List queues that have items, history or a configuration."""
        async with get_session_context(self._session_factory) as session:
            rows = await QueueRepository(session).fetch_queues(tenant_id)
        return [QueueInfo.model_validate(row._asdict()) for row in rows]

    async def fetch_item(self, item_id: UUID) -> QueueItem | QueueHistory | None:
        """Get an item by ID, from the active table or else from history."""
        async with get_session_context(self._session_factory) as session:
            item = await QueueRepository(session).get_item(item_id)
            if item is not None:
                return item
            return await QueueHistoryRepository(session).get(item_id)

    async def delete(self, item_id: UUID) -> None:
        """
        Delete an active item.

        Raises:
            ItemNotFoundError: If no such item exists.
        """
        async with get_session_context(self._session_factory) as session:
            await QueueRepository(session).delete_item(item_id)
        logger.info("Deleted queue item", extra={"item_id": str(item_id)})

    async def completed(self, item: QueueItem, result: WorkResult | None = None) -> QueueHistory:
        """
        Finalize an item as COMPLETED: insert history and delete the active row.

        Raises:
            VersionConflictError: If the item changed since it was read.
        """
        with get_tracer().start_as_current_span(SPAN_FINALIZE_ITEM) as span:
            span.set_attribute("item_id", str(item.id))
            async with get_session_context(self._session_factory) as session:
                history = QueueHistoryRepository(session)
                values = item_completed(item, await history.current_time(), result)
                span.set_attribute("state", str(values["state"]))
                await history.insert(values)
                await QueueRepository(session).delete_item(item.id, version=item.version)

        logger.info(
            "Queue item completed",
            extra={"item_id": str(item.id), "tenant_id": item.tenant_id, "tries": values["tries"]},
        )
        return QueueHistory(**values)

    async def failed(
        self,
        item: QueueItem,
        result: WorkResult | None,
        error: str | None,
    ) -> QueueItem | QueueHistory:
        """
        Record a failed try.

        The retry policy is the item's own, else the queue's configured one,
        else the default. While tries remain the item goes to RETRY, due
        after the policy's delay; otherwise it is finalized as FAILED.

        Returns:
            The updated active row (RETRY) or the history record (FAILED).

        Raises:
            VersionConflictError: If the item changed since it was read.
        """
        with get_tracer().start_as_current_span(SPAN_FINALIZE_ITEM) as span:
            span.set_attribute("item_id", str(item.id))
            async with get_session_context(self._session_factory) as session:
                repo = QueueRepository(session)
                config = await repo.get_config(item.tenant_id, item.queue)
                policy = resolve_retry_policy(
                    item.retry_policy,
                    config.retry_policy if config is not None else None,
                )
                delay = next_run_delay(policy, item.tries + 1)

                if delay is not None:
                    # Due time is based on the database clock
                    run_after = func.now() + timedelta(milliseconds=delay)
                    row = await repo.update_item(
                        item.id, item.version, **item_retry(item, run_after, result, error)
                    )
                    span.set_attribute("state", str(row.state))
                    logger.info(
                        "Queue item scheduled for retry",
                        extra={
                            "item_id": str(item.id),
                            "tries": row.tries,
                            "delay_ms": delay,
                            "error": error,
                        },
                    )
                    return row

                history = QueueHistoryRepository(session)
                values = item_failed(item, await history.current_time(), result, error)
                span.set_attribute("state", str(values["state"]))
                await history.insert(values)
                await repo.delete_item(item.id, version=item.version)

        logger.warning(
            f"Queue item failed after {values['tries']} tries",
            extra={"item_id": str(item.id), "tenant_id": item.tenant_id, "error": error},
        )
        return QueueHistory(**values)
