"""
Schedule input types and transitions.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, field_validator

from pgqueue.constants import DEFAULT_TIMEZONE
from pgqueue.cron import (
    CronSchedule,
    IntervalSchedule,
    Schedule as ScheduleExpression,
    deserialize,
    parse_schedule,
    serialize,
)
from pgqueue.db.models import Schedule
from pgqueue.retry import RetryPolicy, parse_policy
from pgqueue.types.queue import NewQueueItem


def _parse_expression(value: Any) -> Any:
    # Bare cron expressions and storage strings are accepted as shorthand
    if isinstance(value, str):
        return parse_schedule(value)
    return value


class NewSchedule(BaseModel):
    """
    Recurring schedule to create.

    Creating a schedule with a key that already exists for the tenant
    replaces that schedule's definition.
    """

    queue: str = Field(min_length=1, max_length=255)
    type: str = Field(min_length=1, max_length=255)
    schedule: ScheduleExpression
    key: str | None = Field(default=None, max_length=255)
    name: str | None = Field(default=None, max_length=255)
    timezone: str = DEFAULT_TIMEZONE
    paused: bool = False
    retry_policy: RetryPolicy | None = None
    payload: bytes | None = None
    payload_type: str | None = None
    target: dict[str, Any] | None = None

    parse_expression = field_validator("schedule", mode="before")(_parse_expression)


class ScheduleUpdate(BaseModel):
    """Partial update of a schedule. Only fields that are explicitly set are applied."""

    name: str | None = Field(default=None, max_length=255)
    queue: str | None = Field(default=None, min_length=1, max_length=255)
    type: str | None = Field(default=None, min_length=1, max_length=255)
    schedule: ScheduleExpression | None = None
    timezone: str | None = None
    paused: bool | None = None
    retry_policy: RetryPolicy | None = None
    payload: bytes | None = None
    payload_type: str | None = None
    target: dict[str, Any] | None = None

    parse_expression = field_validator("schedule", mode="before")(_parse_expression)


def new_schedule(tenant_id: str, schedule: NewSchedule, next_run: datetime | None) -> dict[str, Any]:
    """Column values for a schedule row."""
    return {
        "tenant_id": tenant_id,
        "key": schedule.key,
        "name": schedule.name,
        "queue": schedule.queue,
        "type": schedule.type,
        "schedule": serialize(schedule.schedule),
        "timezone": schedule.timezone,
        "paused": schedule.paused,
        "retry_policy": schedule.retry_policy.model_dump() if schedule.retry_policy else None,
        "payload": schedule.payload,
        "payload_type": schedule.payload_type,
        "target": schedule.target,
        "next_run": None if schedule.paused else next_run,
        "tries": 0,
    }


def schedule_expression(row: Schedule) -> IntervalSchedule | CronSchedule:
    """Decode the stored expression of a schedule row."""
    return deserialize(row.schedule)


def triggered_item(row: Schedule) -> NewQueueItem:
    """The queue item pushed each time a schedule fires."""
    return NewQueueItem(
        queue=row.queue,
        type=row.type,
        payload=row.payload,
        payload_type=row.payload_type,
        target=row.target,
        retry_policy=parse_policy(row.retry_policy),
        schedule_id=row.id,
    )


def schedule_triggered(row: Schedule, now: datetime, next_run: datetime) -> dict[str, Any]:
    """Values after a successful trigger."""
    return {"last_run": now, "next_run": next_run, "tries": 0}
