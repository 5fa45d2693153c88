"""
Integration tests for schedules and the schedule runner.

These tests require a running PostgreSQL database.
"""

from datetime import UTC, datetime, timedelta

import pytest
import pytest_asyncio
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pgqueue.db.models import QueueItem
from pgqueue.db.repository import ScheduleRepository
from pgqueue.errors import InvalidScheduleError, ScheduleNotFoundError, VersionConflictError
from pgqueue.schedules import ScheduleRunner, Schedules
from pgqueue.types.schedule import NewSchedule, ScheduleUpdate

pytestmark = pytest.mark.integration


class TestSchedules:
    """Tests for the schedule manager."""

    @pytest_asyncio.fixture
    async def schedules(self, session_factory: async_sessionmaker[AsyncSession]) -> Schedules:
        return Schedules(session_factory)

    @pytest.mark.asyncio
    async def test_create_computes_next_run(self, schedules: Schedules, test_tenant_id: str):
        before = datetime.now(UTC)

        row = await schedules.create(
            test_tenant_id, NewSchedule(queue="q", type="report", schedule="B=1 h", key="hourly")
        )

        assert row.schedule == "B=1 h"
        assert row.next_run > before
        assert row.next_run <= datetime.now(UTC) + timedelta(hours=1)
        assert row.last_run is None
        assert row.id.version == 7

    @pytest.mark.asyncio
    async def test_create_with_existing_key_replaces(self, schedules: Schedules, test_tenant_id: str):
        first = await schedules.create(
            test_tenant_id, NewSchedule(queue="q", type="report", schedule="B=1 h", key="k")
        )
        second = await schedules.create(
            test_tenant_id, NewSchedule(queue="q2", type="report", schedule="0 0 * * *", key="k")
        )

        assert second.id == first.id
        assert second.queue == "q2"
        assert second.schedule == "C=0 0 * * *"
        assert second.version == 1
        assert len(await schedules.fetch_all(test_tenant_id)) == 1

    @pytest.mark.asyncio
    async def test_create_rejects_unknown_timezone(self, schedules: Schedules, test_tenant_id: str):
        with pytest.raises(InvalidScheduleError):
            await schedules.create(
                test_tenant_id,
                NewSchedule(queue="q", type="t", schedule="B=1 h", timezone="Nowhere/Special"),
            )

    @pytest.mark.asyncio
    async def test_fetch_by_id_or_key(self, schedules: Schedules, test_tenant_id: str):
        row = await schedules.create(
            test_tenant_id, NewSchedule(queue="q", type="t", schedule="B=1 h", key="by-key")
        )

        assert (await schedules.fetch(test_tenant_id, row.id)).id == row.id
        assert (await schedules.fetch(test_tenant_id, str(row.id))).id == row.id
        assert (await schedules.fetch(test_tenant_id, "by-key")).id == row.id

        with pytest.raises(ScheduleNotFoundError):
            await schedules.fetch("other-tenant", row.id)

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, schedules: Schedules, test_tenant_id: str):
        row = await schedules.create(
            test_tenant_id, NewSchedule(queue="q", type="t", schedule="B=1 d", key="daily")
        )

        paused = await schedules.pause(test_tenant_id, "daily")
        assert paused.paused is True
        assert paused.next_run is None

        resumed = await schedules.resume(test_tenant_id, row.id)
        assert resumed.paused is False
        assert resumed.next_run > datetime.now(UTC)

    @pytest.mark.asyncio
    async def test_update_expression_recomputes_next_run(self, schedules: Schedules, test_tenant_id: str):
        row = await schedules.create(
            test_tenant_id, NewSchedule(queue="q", type="t", schedule="B=1 d", key="k")
        )

        updated = await schedules.update(test_tenant_id, "k", ScheduleUpdate(schedule="B=1 m"))

        assert updated.schedule == "B=1 m"
        assert updated.next_run < row.next_run
        assert updated.version == row.version + 1

    @pytest.mark.asyncio
    async def test_rename(self, schedules: Schedules, test_tenant_id: str):
        row = await schedules.create(
            test_tenant_id,
            NewSchedule(queue="q", type="t", schedule="B=1 d", key="k", name="Daily"),
        )

        renamed = await schedules.update(test_tenant_id, "k", ScheduleUpdate(name="Nightly"))

        assert row.name == "Daily"
        assert renamed.name == "Nightly"
        assert renamed.next_run == row.next_run

    @pytest.mark.asyncio
    async def test_update_with_stale_version(self, schedules: Schedules, test_tenant_id: str):
        row = await schedules.create(
            test_tenant_id, NewSchedule(queue="q", type="t", schedule="B=1 d", key="k")
        )
        await schedules.update(test_tenant_id, row.id, ScheduleUpdate(queue="other"))

        with pytest.raises(VersionConflictError):
            await schedules.update(test_tenant_id, row.id, ScheduleUpdate(queue="again"), version=row.version)

    @pytest.mark.asyncio
    async def test_delete(self, schedules: Schedules, test_tenant_id: str):
        row = await schedules.create(test_tenant_id, NewSchedule(queue="q", type="t", schedule="B=1 h"))

        await schedules.delete(test_tenant_id, row.id)

        with pytest.raises(ScheduleNotFoundError):
            await schedules.delete(test_tenant_id, row.id)

    @pytest.mark.asyncio
    async def test_simulate(self, schedules: Schedules, test_tenant_id: str):
        await schedules.create(
            test_tenant_id,
            NewSchedule(queue="q", type="t", schedule="B=1 h 1704067200000", key="sim"),
        )

        simulation = await schedules.simulate(test_tenant_id, "sim", {"hours": 3})

        assert simulation.granularity == "hours"
        assert simulation.runs == [
            datetime(2024, 1, 1, hour, tzinfo=UTC) for hour in (1, 2, 3)
        ]


class TestScheduleRunner:
    """Tests for ScheduleRunner against the database."""

    @pytest.mark.asyncio
    async def test_triggers_due_schedule(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_tenant_id: str,
    ):
        schedules = Schedules(session_factory)
        row = await schedules.create(
            test_tenant_id,
            NewSchedule(queue="reports", type="report", schedule="B=1 h", payload=b"p"),
        )
        async with session_factory() as session:
            await ScheduleRepository(session).update(
                row.id, row.version, next_run=datetime.now(UTC) - timedelta(minutes=5)
            )
            await session.commit()

        runner = ScheduleRunner(batch_size=10, session_factory=session_factory)
        events = []
        runner.add_listener(events.append)
        await runner.run_once()

        triggered = await schedules.fetch(test_tenant_id, row.id)
        assert triggered.last_run is not None
        assert triggered.next_run > triggered.last_run
        assert triggered.tries == 0
        assert len(events) == 1

        async with session_factory() as session:
            result = await session.execute(select(QueueItem).where(QueueItem.schedule_id == row.id))
            items = result.scalars().all()
        assert len(items) == 1
        assert items[0].tenant_id == test_tenant_id
        assert items[0].queue == "reports"
        assert items[0].payload == b"p"

        # Not due again until next_run
        await runner.run_once()
        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_paused_schedule_is_not_triggered(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        test_tenant_id: str,
    ):
        schedules = Schedules(session_factory)
        row = await schedules.create(
            test_tenant_id, NewSchedule(queue="q", type="t", schedule="B=1 h", paused=True)
        )
        async with session_factory() as session:
            await ScheduleRepository(session).update(
                row.id, row.version, next_run=datetime.now(UTC) - timedelta(minutes=5)
            )
            await session.commit()

        runner = ScheduleRunner(batch_size=10, session_factory=session_factory)

        assert await runner.run_once() is False
        assert (await schedules.fetch(test_tenant_id, row.id)).last_run is None
