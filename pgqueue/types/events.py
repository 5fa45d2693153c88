"""
Event type definitions for poll loop observers.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from pgqueue.constants import (
    EVENT_ITEM_COMPLETED,
    EVENT_ITEM_FAILED,
    EVENT_ITEM_RETRY,
    EVENT_ITEM_SCHEDULED,
    EVENT_LOOP_ERROR,
    EVENT_SCHEDULE_TRIGGERED,
)


def _now() -> datetime:
    return datetime.now(UTC)


class QueueEvent(BaseModel):
    """
    Event emitted by a poll loop after its transaction committed.
    Listeners receive events synchronously, in registration order.
    """

    event_type: str
    tenant_id: str | None = None
    item_id: UUID | None = None
    schedule_id: UUID | None = None
    timestamp: datetime = Field(default_factory=_now)
    data: dict[str, Any] | None = None

    @classmethod
    def item_scheduled(cls, item_id: UUID, tenant_id: str, batch_order: int) -> "QueueEvent":
        """Create an item leased into the work queue event."""
        return cls(
            event_type=EVENT_ITEM_SCHEDULED,
            item_id=item_id,
            tenant_id=tenant_id,
            data={"batch_order": batch_order},
        )

    @classmethod
    def item_completed(cls, item_id: UUID, tenant_id: str, tries: int) -> "QueueEvent":
        """Create an item completed event."""
        return cls(
            event_type=EVENT_ITEM_COMPLETED,
            item_id=item_id,
            tenant_id=tenant_id,
            data={"tries": tries},
        )

    @classmethod
    def item_retry(
        cls,
        item_id: UUID,
        tenant_id: str,
        error: str | None,
        tries: int,
        run_after: datetime,
    ) -> "QueueEvent":
        """Create an item failed and will be retried event."""
        return cls(
            event_type=EVENT_ITEM_RETRY,
            item_id=item_id,
            tenant_id=tenant_id,
            data={"error": error, "tries": tries, "run_after": run_after.isoformat()},
        )

    @classmethod
    def item_failed(cls, item_id: UUID, tenant_id: str, error: str | None, tries: int) -> "QueueEvent":
        """Create an item permanently failed event."""
        return cls(
            event_type=EVENT_ITEM_FAILED,
            item_id=item_id,
            tenant_id=tenant_id,
            data={"error": error, "tries": tries},
        )

    @classmethod
    def schedule_triggered(
        cls,
        schedule_id: UUID,
        tenant_id: str,
        item_id: UUID,
        next_run: datetime,
    ) -> "QueueEvent":
        """Create a schedule fired event."""
        return cls(
            event_type=EVENT_SCHEDULE_TRIGGERED,
            schedule_id=schedule_id,
            tenant_id=tenant_id,
            item_id=item_id,
            data={"next_run": next_run.isoformat()},
        )

    @classmethod
    def loop_error(cls, loop: str, error: str) -> "QueueEvent":
        """Create a poll loop tick failed event."""
        return cls(event_type=EVENT_LOOP_ERROR, data={"loop": loop, "error": error})
