"""
Integration tests for the repositories.

These tests require a running PostgreSQL database.
"""

from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pgqueue.constants import HistoryState, QueueItemState
from pgqueue.db.repository import (
    QueueHistoryRepository,
    QueueRepository,
    WorkQueueRepository,
)
from pgqueue.errors import ItemNotFoundError, VersionConflictError
from pgqueue.types.queue import NewQueueItem, item_completed

pytestmark = pytest.mark.integration


def new(queue: str = "default", **kwargs) -> NewQueueItem:
    return NewQueueItem(queue=queue, type="echo", **kwargs)


class TestQueueRepository:
    """Tests for QueueRepository."""

    @pytest.mark.asyncio
    async def test_push(self, db_session: AsyncSession, test_tenant_id: str):
        repo = QueueRepository(db_session)

        item = await repo.insert(test_tenant_id, new(payload=b"hello"))
        await db_session.commit()

        assert item.state == QueueItemState.PENDING
        assert item.tries == 0
        assert item.version == 0
        assert item.id.version == 7
        assert item.payload == b"hello"
        assert item.created is not None

    @pytest.mark.asyncio
    async def test_push_with_existing_key_overwrites_and_resets_tries(
        self,
        db_session: AsyncSession,
        test_tenant_id: str,
    ):
        repo = QueueRepository(db_session)
        first = await repo.insert(test_tenant_id, new(key="k1", payload=b"v1"))
        await repo.update_item(first.id, first.version, tries=3, state=QueueItemState.RETRY, error="boom")
        await db_session.commit()

        second = await repo.insert(test_tenant_id, new(key="k1", payload=b"v2"))
        await db_session.commit()

        assert second.id == first.id
        assert second.payload == b"v2"
        assert second.tries == 0
        assert second.state == QueueItemState.PENDING
        assert second.error is None
        assert second.version == 2

    @pytest.mark.asyncio
    async def test_same_key_in_other_queue_is_separate(self, db_session: AsyncSession, test_tenant_id: str):
        repo = QueueRepository(db_session)

        first = await repo.insert(test_tenant_id, new(queue="a", key="k"))
        second = await repo.insert(test_tenant_id, new(queue="b", key="k"))
        await db_session.commit()

        assert first.id != second.id

    @pytest.mark.asyncio
    async def test_update_with_stale_version(self, db_session: AsyncSession, test_tenant_id: str):
        repo = QueueRepository(db_session)
        item = await repo.insert(test_tenant_id, new())
        await repo.update_item(item.id, 0, tries=1)

        with pytest.raises(VersionConflictError):
            await repo.update_item(item.id, 0, tries=2)

    @pytest.mark.asyncio
    async def test_delete(self, db_session: AsyncSession, test_tenant_id: str):
        repo = QueueRepository(db_session)
        item = await repo.insert(test_tenant_id, new())

        with pytest.raises(VersionConflictError):
            await repo.delete_item(item.id, version=5)

        await repo.delete_item(item.id, version=0)
        assert await repo.get_item(item.id) is None

        with pytest.raises(ItemNotFoundError):
            await repo.delete_item(item.id)

    @pytest.mark.asyncio
    async def test_fetch_due_skips_future_and_paused(self, db_session: AsyncSession, test_tenant_id: str):
        repo = QueueRepository(db_session)
        due = await repo.insert(test_tenant_id, new())
        await repo.insert(test_tenant_id, new(run_after=datetime.now(UTC) + timedelta(hours=1)))
        await repo.insert(test_tenant_id, new(queue="paused"))
        await repo.save_config(test_tenant_id, "paused", paused=True)
        await db_session.commit()

        items = await repo.fetch_and_lock_due_items(10)

        assert [item.id for item in items] == [due.id]

    @pytest.mark.asyncio
    async def test_fetch_due_skips_locked_rows(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_tenant_id: str,
    ):
        async with session_factory() as session:
            await QueueRepository(session).insert(test_tenant_id, new())
            await session.commit()

        async with session_factory() as first, session_factory() as second:
            claimed = await QueueRepository(first).fetch_and_lock_due_items(10)
            concurrent = await QueueRepository(second).fetch_and_lock_due_items(10)

            assert len(claimed) == 1
            assert concurrent == []
            await first.rollback()
            await second.rollback()

    @pytest.mark.asyncio
    async def test_mark_running_stamps_started(self, db_session: AsyncSession, test_tenant_id: str):
        repo = QueueRepository(db_session)
        item = await repo.insert(test_tenant_id, new())

        assert await repo.mark_as(QueueItemState.RUNNING, [item.id]) == 1
        stored = await repo.get_item(item.id)
        await db_session.refresh(stored)

        assert stored.state == QueueItemState.RUNNING
        assert stored.started is not None
        assert stored.version == 1

    @pytest.mark.asyncio
    async def test_config_and_fetch_queues(self, db_session: AsyncSession, test_tenant_id: str):
        repo = QueueRepository(db_session)
        await repo.insert(test_tenant_id, new(queue="emails"))
        config = await repo.save_config(test_tenant_id, "reports", display_name="Reports")
        updated = await repo.save_config(test_tenant_id, "reports", paused=True)
        await db_session.commit()

        queues = await repo.fetch_queues(test_tenant_id)

        assert config.version == 0
        assert updated.version == 1
        assert updated.display_name == "Reports"
        assert [(q.queue, q.paused, q.display_name) for q in queues] == [
            ("emails", False, None),
            ("reports", True, "Reports"),
        ]


class TestQueueHistoryRepository:
    """Tests for QueueHistoryRepository."""

    @pytest.mark.asyncio
    async def test_insert_is_idempotent(self, db_session: AsyncSession, test_tenant_id: str):
        item = await QueueRepository(db_session).insert(test_tenant_id, new())
        values = item_completed(item, datetime.now(UTC), None)
        history = QueueHistoryRepository(db_session)

        assert await history.insert(values) is True
        assert await history.insert(values) is False

        stored = await history.get(item.id)
        assert stored.state == HistoryState.COMPLETED
        assert stored.tries == 1
        assert stored.scheduled == item.created

    @pytest.mark.asyncio
    async def test_current_time_is_transaction_clock(self, db_session: AsyncSession, test_tenant_id: str):
        item = await QueueRepository(db_session).insert(test_tenant_id, new())

        assert await QueueHistoryRepository(db_session).current_time() == item.created


class TestWorkQueueRepository:
    """Tests for WorkQueueRepository leases."""

    async def _lease(self, session: AsyncSession, tenant_id: str, batch_order: int = 0):
        item = await QueueRepository(session).insert(tenant_id, new())
        await WorkQueueRepository(session).insert_many(
            [{"id": item.id, "tenant_id": tenant_id, "batch_order": batch_order}]
        )
        return item

    @pytest.mark.asyncio
    async def test_poll_leases_once(self, db_session: AsyncSession, test_tenant_id: str):
        item = await self._lease(db_session, test_tenant_id)
        repo = WorkQueueRepository(db_session)

        leased = await repo.poll("node-a", 10, 60)
        again = await repo.poll("node-b", 10, 60)

        assert [lease.id for lease in leased] == [item.id]
        assert leased[0].lock_key == "node-a"
        assert leased[0].version == 1
        assert again == []

    @pytest.mark.asyncio
    async def test_poll_orders_by_batch_order(self, db_session: AsyncSession, test_tenant_id: str):
        second = await self._lease(db_session, test_tenant_id, batch_order=1)
        first = await self._lease(db_session, test_tenant_id, batch_order=0)

        leased = await WorkQueueRepository(db_session).poll("node-a", 10, 60)

        # Same transaction, same created timestamp
        assert [lease.id for lease in leased] == [first.id, second.id]

    @pytest.mark.asyncio
    async def test_expired_lease_is_reclaimed(self, db_session: AsyncSession, test_tenant_id: str):
        item = await self._lease(db_session, test_tenant_id)
        repo = WorkQueueRepository(db_session)

        await repo.poll("node-a", 10, -1)
        reclaimed = await repo.poll("node-b", 10, 60)

        assert [lease.id for lease in reclaimed] == [item.id]
        assert reclaimed[0].lock_key == "node-b"

    @pytest.mark.asyncio
    async def test_unlock_all(self, db_session: AsyncSession, test_tenant_id: str):
        await self._lease(db_session, test_tenant_id)
        repo = WorkQueueRepository(db_session)
        await repo.poll("node-a", 10, 60)

        assert await repo.unlock_all("node-a") == 1
        assert len(await repo.poll("node-b", 10, 60)) == 1

    @pytest.mark.asyncio
    async def test_delete_checks_version(self, db_session: AsyncSession, test_tenant_id: str):
        item = await self._lease(db_session, test_tenant_id)
        repo = WorkQueueRepository(db_session)
        lease = (await repo.poll("node-a", 10, 60))[0]

        assert await repo.delete(item.id, lease.version + 1) is False
        assert await repo.delete(item.id, lease.version) is True
        assert await repo.get(item.id) is None

    @pytest.mark.asyncio
    async def test_deleting_item_cascades_to_lease(self, db_session: AsyncSession, test_tenant_id: str):
        item = await self._lease(db_session, test_tenant_id)

        await QueueRepository(db_session).delete_item(item.id)

        assert await WorkQueueRepository(db_session).get(item.id) is None

    @pytest.mark.asyncio
    async def test_unknown_item_cannot_be_leased(self, db_session: AsyncSession, test_tenant_id: str):
        with pytest.raises(IntegrityError):
            await WorkQueueRepository(db_session).insert_many(
                [{"id": uuid4(), "tenant_id": test_tenant_id, "batch_order": 0}]
            )

    @pytest.mark.asyncio
    async def test_reinserting_lease_releases_stale_holder(self, db_session: AsyncSession, test_tenant_id: str):
        item = await self._lease(db_session, test_tenant_id)
        repo = WorkQueueRepository(db_session)
        stale = (await repo.poll("dead-node", 10, 300))[0]
        stale_version = stale.version

        await repo.insert_many([{"id": item.id, "tenant_id": test_tenant_id, "batch_order": 3}])

        assert await repo.delete(item.id, stale_version) is False
        leased = await repo.poll("node-b", 10, 60)
        assert [lease.id for lease in leased] == [item.id]
        assert leased[0].batch_order == 3
        assert leased[0].version == stale_version + 2

    @pytest.mark.asyncio
    async def test_concurrent_polls_lease_disjoint_items(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_tenant_id: str,
    ):
        async with session_factory() as session:
            ids = {(await self._lease(session, test_tenant_id, batch_order=i)).id for i in range(3)}
            await session.commit()

        async with session_factory() as first, session_factory() as second:
            leased_first = await WorkQueueRepository(first).poll("node-a", 2, 60)
            leased_second = await WorkQueueRepository(second).poll("node-b", 10, 60)
            await first.commit()
            await second.commit()

        first_ids = {lease.id for lease in leased_first}
        second_ids = {lease.id for lease in leased_second}
        assert len(first_ids) == 2
        assert first_ids.isdisjoint(second_ids)
        assert first_ids | second_ids == ids
