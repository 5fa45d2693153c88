"""
Repositories for database operations.
Implements the data access patterns for queue items, history, the work
queue and schedules.

All claim operations use FOR UPDATE SKIP LOCKED so concurrent schedulers,
workers and schedule runners never block each other and claim disjoint rows.
Time comparisons use the database clock (now()), never the caller's clock.
"""

import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy import and_, delete, func, or_, select, union, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession
from uuid6 import uuid7

from pgqueue.constants import CLAIMABLE_STATES, QueueItemState
from pgqueue.db.models import QueueConfig, QueueHistory, QueueItem, Schedule, WorkItem
from pgqueue.errors import ItemNotFoundError, VersionConflictError
from pgqueue.types.queue import NewQueueItem, new_item

logger = logging.getLogger(__name__)


async def database_now(session: AsyncSession) -> datetime:
    """Transaction timestamp of the database clock."""
    result = await session.execute(select(func.now()))
    return result.scalar_one()


# Columns a push with an existing key overwrites
_OVERWRITE_ON_PUSH = (
    "type",
    "schedule_id",
    "state",
    "run_after",
    "payload",
    "payload_type",
    "target",
    "retry_policy",
    "result",
    "result_type",
    "worker_data",
    "error",
)

# Columns a create with an existing key overwrites
_OVERWRITE_ON_SCHEDULE = (
    "name",
    "queue",
    "type",
    "schedule",
    "timezone",
    "paused",
    "retry_policy",
    "payload",
    "payload_type",
    "target",
    "next_run",
    "tries",
)


class QueueRepository:
    """
    Repository for active queue items and queue configuration.

    Implements atomic operations for:
    - Idempotent push per (tenant, queue, key)
    - Optimistic updates guarded by the version column
    - Claiming due items with FOR UPDATE SKIP LOCKED
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a database session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def insert(self, tenant_id: str, item: NewQueueItem) -> QueueItem:
        """
        Insert a queue item.

        An item with a key that already exists for the tenant and queue
        overwrites the stored item, resets it to PENDING and its tries to 0.

        Args:
            tenant_id: The tenant identifier.
            item: The item to push.

        Returns:
            The resulting row.
        """
        stmt = insert(QueueItem).values(**new_item(tenant_id, item))
        if item.key is not None:
            stmt = stmt.on_conflict_do_update(
                constraint="uq_queue_tenant_queue_key",
                set_={
                    **{column: stmt.excluded[column] for column in _OVERWRITE_ON_PUSH},
                    "tries": 0,
                    "started": None,
                    "version": QueueItem.version + 1,
                    "updated": func.now(),
                },
            )
        stmt = stmt.returning(QueueItem).execution_options(populate_existing=True)

        result = await self._session.execute(stmt)
        row = result.scalar_one()

        logger.info(
            "Pushed queue item",
            extra={
                "item_id": str(row.id),
                "tenant_id": tenant_id,
                "queue": row.queue,
                "overwritten": row.version > 0,
            },
        )
        return row

    async def get_item(self, item_id: UUID) -> QueueItem | None:
        """
        Get an active item by ID.

        Args:
            item_id: The item UUID.

        Returns:
            The QueueItem or None if not found.
        """
        stmt = select(QueueItem).where(QueueItem.id == item_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_item_by_key(self, tenant_id: str, queue: str, key: str) -> QueueItem | None:
        stmt = select(QueueItem).where(
            and_(
                QueueItem.tenant_id == tenant_id,
                QueueItem.queue == queue,
                QueueItem.key == key,
            )
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def update_item(self, item_id: UUID, version: int, **values: Any) -> QueueItem:
        """
        Update an item if its stored version still matches.

        Args:
            item_id: The item UUID.
            version: The version the caller read.
            **values: Columns to set.

        Returns:
            The updated row, with version incremented.

        Raises:
            VersionConflictError: If the item changed or no longer exists.
        """
        stmt = (
            update(QueueItem)
            .where(and_(QueueItem.id == item_id, QueueItem.version == version))
            .values(**values, version=QueueItem.version + 1, updated=func.now())
            .returning(QueueItem)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            raise VersionConflictError("QueueItem", item_id, version)
        return row

    async def delete_item(self, item_id: UUID, version: int | None = None) -> None:
        """
        Delete an active item. Its work queue lease is removed by cascade.

        Args:
            item_id: The item UUID.
            version: When given, only delete if the stored version matches.

        Raises:
            ItemNotFoundError: If no such item exists.
            VersionConflictError: If the item exists with another version.
        """
        stmt = delete(QueueItem).where(QueueItem.id == item_id)
        if version is not None:
            stmt = stmt.where(QueueItem.version == version)
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            if version is not None and await self.get_item(item_id) is not None:
                raise VersionConflictError("QueueItem", item_id, version)
            raise ItemNotFoundError(item_id)

    async def fetch_and_lock_due_items(self, limit: int) -> Sequence[QueueItem]:
        """
        Claim due PENDING/RETRY items.

        Rows locked by a concurrent transaction are skipped. Items of paused
        queues are not claimed.

        Args:
            limit: Maximum number of items to claim.

        Returns:
            Items ordered by creation time, then id.
        """
        queue_paused = (
            select(QueueConfig.queue)
            .where(
                and_(
                    QueueConfig.tenant_id == QueueItem.tenant_id,
                    QueueConfig.queue == QueueItem.queue,
                    QueueConfig.paused.is_(True),
                )
            )
            .exists()
        )
        stmt = (
            select(QueueItem)
            .where(
                and_(
                    QueueItem.state.in_(CLAIMABLE_STATES),
                    or_(QueueItem.run_after.is_(None), QueueItem.run_after <= func.now()),
                    ~queue_paused,
                )
            )
            .order_by(QueueItem.created, QueueItem.id)
            .limit(limit)
            .with_for_update(skip_locked=True, of=QueueItem)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def mark_as(self, state: QueueItemState, item_ids: Sequence[UUID]) -> int:
        """
        Bulk state change. Marking RUNNING also stamps the started time.

        Returns:
            Number of rows updated.
        """
        if not item_ids:
            return 0
        values: dict[str, Any] = {
            "state": state,
            "version": QueueItem.version + 1,
            "updated": func.now(),
        }
        if state == QueueItemState.RUNNING:
            values["started"] = func.now()

        stmt = (
            update(QueueItem)
            .where(QueueItem.id.in_(item_ids))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def get_config(self, tenant_id: str, queue: str) -> QueueConfig | None:
        stmt = select(QueueConfig).where(
            and_(QueueConfig.tenant_id == tenant_id, QueueConfig.queue == queue)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def save_config(self, tenant_id: str, queue: str, **values: Any) -> QueueConfig:
        """
        Create or update a queue's configuration.

        Args:
            tenant_id: The tenant identifier.
            queue: The queue name.
            **values: Columns to set (display_name, paused, retry_policy).

        Returns:
            The stored configuration.
        """
        stmt = insert(QueueConfig).values(tenant_id=tenant_id, queue=queue, **values)
        stmt = (
            stmt.on_conflict_do_update(
                index_elements=["tenant_id", "queue"],
                set_={
                    **values,
                    "version": QueueConfig.version + 1,
                    "updated": func.now(),
                },
            )
            .returning(QueueConfig)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        config = result.scalar_one()

        logger.info(
            "Saved queue config",
            extra={"tenant_id": tenant_id, "queue": queue, "paused": config.paused},
        )
        return config

    async def fetch_queues(self, tenant_id: str | None = None) -> Sequence[Any]:
        """
        List known queues with their configuration.

        A queue is known once it has active items, history or a configuration.

        Args:
            tenant_id: Optional tenant filter.

        Returns:
            Rows of (tenant_id, queue, display_name, paused, retry_policy).
        """
        selects = []
        for model in (QueueItem, QueueHistory, QueueConfig):
            names = select(model.tenant_id, model.queue)
            if tenant_id is not None:
                names = names.where(model.tenant_id == tenant_id)
            selects.append(names)
        known = union(*selects).subquery()

        stmt = (
            select(
                known.c.tenant_id,
                known.c.queue,
                QueueConfig.display_name,
                func.coalesce(QueueConfig.paused, False).label("paused"),
                QueueConfig.retry_policy,
            )
            .outerjoin(
                QueueConfig,
                and_(
                    QueueConfig.tenant_id == known.c.tenant_id,
                    QueueConfig.queue == known.c.queue,
                ),
            )
            .order_by(known.c.tenant_id, known.c.queue)
        )
        result = await self._session.execute(stmt)
        return result.all()


class QueueHistoryRepository:
    """Repository for terminal history records."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def insert(self, values: dict[str, Any]) -> bool:
        """
        Insert a history record.

        A record with the same id already present is left untouched, so
        replaying a finalization after a crash does not fail.

        Returns:
            True if a record was inserted.
        """
        stmt = (
            insert(QueueHistory)
            .values(**values)
            .on_conflict_do_nothing(index_elements=["id"])
        )
        result = await self._session.execute(stmt)
        inserted = result.rowcount > 0
        if not inserted:
            logger.warning(
                "History record already exists",
                extra={"item_id": str(values["id"])},
            )
        return inserted

    async def current_time(self) -> datetime:
        """The database clock, used as the time of terminal transitions."""
        return await database_now(self._session)

    async def get(self, item_id: UUID) -> QueueHistory | None:
        stmt = select(QueueHistory).where(QueueHistory.id == item_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


class WorkQueueRepository:
    """
    Repository for work queue leases.

    A lease is available when it has no holder or its lock_timeout passed,
    which makes leases of crashed workers reclaimable by any worker.
    """

    def __init__(self, session: AsyncSession):
        self._session = session

    async def insert_many(self, items: Sequence[dict[str, Any]]) -> int:
        """
        Insert leases for newly claimed items.

        A lease left behind for the same id (a holder that died before
        deleting it) is released and its version bumped, so the old holder's
        version-checked delete can no longer remove the new lease.

        Args:
            items: Dicts with id, tenant_id and batch_order.

        Returns:
            Number of rows inserted or released.
        """
        if not items:
            return 0
        stmt = insert(WorkItem).values(list(items))
        stmt = stmt.on_conflict_do_update(
            index_elements=["id"],
            set_={
                "batch_order": stmt.excluded.batch_order,
                "lock_key": None,
                "lock_timeout": None,
                "started": None,
                "version": WorkItem.version + 1,
                "updated": func.now(),
            },
        )
        result = await self._session.execute(stmt)
        return result.rowcount

    async def poll(self, node_id: str, limit: int, lock_timeout_seconds: float) -> list[WorkItem]:
        """
        Lease available work items for a node.

        Args:
            node_id: Lease holder identifier.
            limit: Maximum number of items to lease.
            lock_timeout_seconds: Lease duration.

        Returns:
            Leased items ordered by creation time, then batch order.
        """
        available = (
            select(WorkItem.id)
            .where(or_(WorkItem.lock_key.is_(None), WorkItem.lock_timeout < func.now()))
            .order_by(WorkItem.created, WorkItem.batch_order)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(WorkItem)
            .where(WorkItem.id.in_(available))
            .values(
                lock_key=node_id,
                lock_timeout=func.now() + timedelta(seconds=lock_timeout_seconds),
                started=func.now(),
                updated=func.now(),
                version=WorkItem.version + 1,
            )
            .returning(WorkItem)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        leased = sorted(result.scalars().all(), key=lambda w: (w.created, w.batch_order))

        if leased:
            logger.info(
                f"Leased {len(leased)} work items",
                extra={"node_id": node_id, "count": len(leased)},
            )
        return leased

    async def get(self, item_id: UUID) -> WorkItem | None:
        stmt = select(WorkItem).where(WorkItem.id == item_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def delete(self, item_id: UUID, version: int) -> bool:
        """
        Delete a lease if it still has the version the holder leased.

        Returns:
            True if the lease was deleted.
        """
        stmt = delete(WorkItem).where(and_(WorkItem.id == item_id, WorkItem.version == version))
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def unlock_all(self, node_id: str) -> int:
        """
        Release every lease held by a node.

        Returns:
            Number of leases released.
        """
        stmt = (
            update(WorkItem)
            .where(WorkItem.lock_key == node_id)
            .values(lock_key=None, lock_timeout=None, updated=func.now())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        count = result.rowcount
        if count > 0:
            logger.info(
                f"Released {count} leases held by node",
                extra={"node_id": node_id},
            )
        return count


class ScheduleRepository:
    """Repository for recurring schedule definitions."""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def upsert(self, values: dict[str, Any]) -> Schedule:
        """
        Insert a schedule, replacing the definition of an existing one with the same key.

        Args:
            values: Column values (see pgqueue.types.schedule.new_schedule).

        Returns:
            The stored schedule.
        """
        stmt = insert(Schedule).values(id=uuid7(), **values)
        if values.get("key") is not None:
            stmt = stmt.on_conflict_do_update(
                constraint="uq_schedules_tenant_key",
                set_={
                    **{column: stmt.excluded[column] for column in _OVERWRITE_ON_SCHEDULE},
                    "version": Schedule.version + 1,
                    "updated": func.now(),
                },
            )
        stmt = stmt.returning(Schedule).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one()

    async def get(self, tenant_id: str, schedule_id: UUID) -> Schedule | None:
        stmt = select(Schedule).where(
            and_(Schedule.tenant_id == tenant_id, Schedule.id == schedule_id)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_by_key(self, tenant_id: str, key: str) -> Schedule | None:
        stmt = select(Schedule).where(
            and_(Schedule.tenant_id == tenant_id, Schedule.key == key)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def fetch_all(self, tenant_id: str) -> Sequence[Schedule]:
        stmt = select(Schedule).where(Schedule.tenant_id == tenant_id).order_by(Schedule.created, Schedule.id)
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def update(self, schedule_id: UUID, version: int, **values: Any) -> Schedule:
        """
        Update a schedule if its stored version still matches.

        Raises:
            VersionConflictError: If the schedule changed or no longer exists.
        """
        stmt = (
            update(Schedule)
            .where(and_(Schedule.id == schedule_id, Schedule.version == version))
            .values(**values, version=Schedule.version + 1, updated=func.now())
            .returning(Schedule)
            .execution_options(populate_existing=True)
        )
        result = await self._session.execute(stmt)
        row = result.scalar_one_or_none()
        if row is None:
            raise VersionConflictError("Schedule", schedule_id, version)
        return row

    async def delete(self, tenant_id: str, schedule_id: UUID) -> bool:
        stmt = delete(Schedule).where(
            and_(Schedule.tenant_id == tenant_id, Schedule.id == schedule_id)
        )
        result = await self._session.execute(stmt)
        return result.rowcount > 0

    async def fetch_and_lock_due(self, limit: int) -> Sequence[Schedule]:
        """
        Claim unpaused schedules whose next run has passed.

        Args:
            limit: Maximum number of schedules to claim.

        Returns:
            Schedules ordered by next run, then id.
        """
        stmt = (
            select(Schedule)
            .where(
                and_(
                    Schedule.paused.is_(False),
                    Schedule.next_run.is_not(None),
                    Schedule.next_run <= func.now(),
                )
            )
            .order_by(Schedule.next_run, Schedule.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await self._session.execute(stmt)
        return result.scalars().all()

    async def current_time(self) -> datetime:
        """The database clock."""
        return await database_now(self._session)
