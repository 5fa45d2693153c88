"""
Schedule manager.

Create, update, pause, resume, delete and preview recurring schedules.
Schedules are addressed by id or by their per-tenant key.
"""

import logging
from collections.abc import Mapping
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from pgqueue import cron
from pgqueue.constants import DEFAULT_TIMEZONE
from pgqueue.db import get_session_context
from pgqueue.db.models import Schedule
from pgqueue.db.repository import ScheduleRepository
from pgqueue.errors import ScheduleNotFoundError
from pgqueue.types.schedule import NewSchedule, ScheduleUpdate, new_schedule

logger = logging.getLogger(__name__)


class Schedules:
    """Recurring schedule definitions for all tenants."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self._session_factory = session_factory

    async def create(self, tenant_id: str, schedule: NewSchedule) -> Schedule:
        """
        Create a schedule, or replace the one with the same key.

        The first run is computed from now unless the schedule is paused.

        Raises:
            InvalidScheduleError: If the timezone is unknown.
        """
        cron.validate_timezone(schedule.timezone)
        next_run = None
        if not schedule.paused:
            next_run = cron.next_run(schedule.schedule, schedule.timezone, after=datetime.now(UTC))

        async with get_session_context(self._session_factory) as session:
            row = await ScheduleRepository(session).upsert(new_schedule(tenant_id, schedule, next_run))

        logger.info(
            "Saved schedule",
            extra={
                "schedule_id": str(row.id),
                "tenant_id": tenant_id,
                "schedule": row.schedule,
                "next_run": row.next_run.isoformat() if row.next_run else None,
            },
        )
        return row

    async def fetch(self, tenant_id: str, id_or_key: UUID | str) -> Schedule:
        """
        Raises:
            ScheduleNotFoundError: If no schedule matches.
        """
        async with get_session_context(self._session_factory) as session:
            return await self._resolve(ScheduleRepository(session), tenant_id, id_or_key)

    async def fetch_all(self, tenant_id: str) -> list[Schedule]:
        async with get_session_context(self._session_factory) as session:
            return list(await ScheduleRepository(session).fetch_all(tenant_id))

    async def update(
        self,
        tenant_id: str,
        id_or_key: UUID | str,
        update: ScheduleUpdate,
        version: int | None = None,
    ) -> Schedule:
        """
        Apply a partial update.

        Changing the expression or timezone, or resuming a paused schedule,
        recomputes the next run from now. Pausing clears it.

        Args:
            tenant_id: The tenant identifier.
            id_or_key: Schedule id or key.
            update: Fields to change.
            version: Expected version; the stored one when omitted.

        Raises:
            ScheduleNotFoundError: If no schedule matches.
            VersionConflictError: If the schedule changed concurrently.
            InvalidScheduleError: If the timezone is unknown.
        """
        changes = update.model_dump(exclude_unset=True, exclude={"schedule"})
        if update.schedule is not None:
            changes["schedule"] = cron.serialize(update.schedule)
        if "timezone" in changes:
            changes["timezone"] = changes["timezone"] or DEFAULT_TIMEZONE
            cron.validate_timezone(changes["timezone"])
        if "paused" in changes and changes["paused"] is None:
            del changes["paused"]

        async with get_session_context(self._session_factory) as session:
            repo = ScheduleRepository(session)
            row = await self._resolve(repo, tenant_id, id_or_key)

            paused = changes.get("paused", row.paused)
            if paused:
                changes["next_run"] = None
            elif (
                row.paused
                or row.next_run is None
                or "schedule" in changes
                or "timezone" in changes
            ):
                changes["next_run"] = cron.next_run(
                    cron.deserialize(changes.get("schedule", row.schedule)),
                    changes.get("timezone", row.timezone),
                    after=datetime.now(UTC),
                )

            row = await repo.update(row.id, row.version if version is None else version, **changes)

        logger.info(
            "Updated schedule",
            extra={"schedule_id": str(row.id), "tenant_id": tenant_id, "paused": row.paused},
        )
        return row

    async def pause(self, tenant_id: str, id_or_key: UUID | str) -> Schedule:
        return await self.update(tenant_id, id_or_key, ScheduleUpdate(paused=True))

    async def resume(self, tenant_id: str, id_or_key: UUID | str) -> Schedule:
        return await self.update(tenant_id, id_or_key, ScheduleUpdate(paused=False))

    async def delete(self, tenant_id: str, id_or_key: UUID | str) -> None:
        """
        Raises:
            ScheduleNotFoundError: If no schedule matches.
        """
        async with get_session_context(self._session_factory) as session:
            repo = ScheduleRepository(session)
            row = await self._resolve(repo, tenant_id, id_or_key)
            await repo.delete(tenant_id, row.id)
        logger.info("Deleted schedule", extra={"schedule_id": str(row.id), "tenant_id": tenant_id})

    async def simulate(
        self,
        tenant_id: str,
        id_or_key: UUID | str,
        counts: Mapping[str, int] | None = None,
    ) -> cron.ScheduleSimulation:
        """Preview the upcoming runs of a stored schedule."""
        row = await self.fetch(tenant_id, id_or_key)
        return cron.simulate(cron.deserialize(row.schedule), counts, row.timezone)

    @staticmethod
    async def _resolve(repo: ScheduleRepository, tenant_id: str, id_or_key: UUID | str) -> Schedule:
        schedule_id = id_or_key if isinstance(id_or_key, UUID) else _as_uuid(id_or_key)
        row = None
        if schedule_id is not None:
            row = await repo.get(tenant_id, schedule_id)
        if row is None and isinstance(id_or_key, str):
            row = await repo.get_by_key(tenant_id, id_or_key)
        if row is None:
            raise ScheduleNotFoundError(tenant_id, id_or_key)
        return row


def _as_uuid(value: str) -> UUID | None:
    try:
        return UUID(value)
    except ValueError:
        return None
