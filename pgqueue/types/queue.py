"""
Queue item input types and lifecycle transitions.

Transitions are pure: they take the current row and return the column
values for the next state. Repositories apply them.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field
from sqlalchemy import ColumnElement
from uuid6 import uuid7

from pgqueue.constants import MAX_ERROR_LEN, HistoryState, QueueItemState
from pgqueue.db.models import QueueItem
from pgqueue.retry import RetryPolicy


class NewQueueItem(BaseModel):
    """
    Item to push onto a queue.

    Pushing an item whose key already exists in the same tenant and queue
    overwrites the existing item and resets its tries.
    """

    queue: str = Field(min_length=1, max_length=255)
    type: str = Field(min_length=1, max_length=255)
    key: str | None = Field(default=None, max_length=255)
    payload: bytes | None = None
    payload_type: str | None = None
    target: dict[str, Any] | None = None
    retry_policy: RetryPolicy | None = None
    run_after: datetime | None = None
    schedule_id: UUID | None = None


class WorkResult(BaseModel):
    """Value returned by a handler, or carried by a HandlerError as a partial result."""

    data: Any = None
    payload: bytes | None = None
    payload_type: str | None = None


class QueueConfigUpdate(BaseModel):
    """Partial update of a queue's configuration. Only fields that are explicitly set are applied."""

    display_name: str | None = None
    paused: bool | None = None
    retry_policy: RetryPolicy | None = None


def truncate_error(error: str | None, length: int = MAX_ERROR_LEN) -> str | None:
    """Truncate error text to fit the error column, marking the cut with '...'."""
    if error is None or len(error) <= length:
        return error
    return error[: length - 3] + "..."


def coerce_result(result: Any) -> WorkResult | None:
    """Accept a WorkResult, raw bytes, or any JSON-serializable value."""
    if result is None or isinstance(result, WorkResult):
        return result
    if isinstance(result, bytes):
        return WorkResult(payload=result)
    return WorkResult(data=result)


def _result_columns(result: WorkResult | None) -> dict[str, Any]:
    if result is None:
        return {"result": None, "result_type": None, "worker_data": None}
    return {
        "result": result.payload,
        "result_type": result.payload_type,
        "worker_data": result.data,
    }


def new_item(tenant_id: str, item: NewQueueItem) -> dict[str, Any]:
    """Column values for a freshly pushed item."""
    return {
        "id": uuid7(),
        "tenant_id": tenant_id,
        "key": item.key,
        "queue": item.queue,
        "type": item.type,
        "schedule_id": item.schedule_id,
        "state": QueueItemState.PENDING,
        "tries": 0,
        "version": 0,
        "run_after": item.run_after,
        "payload": item.payload,
        "payload_type": item.payload_type,
        "target": item.target,
        "retry_policy": item.retry_policy.model_dump() if item.retry_policy else None,
        "result": None,
        "result_type": None,
        "worker_data": None,
        "error": None,
    }


def item_retry(
    item: QueueItem,
    run_after: datetime | ColumnElement[datetime],
    result: WorkResult | None,
    error: str | None,
) -> dict[str, Any]:
    """Values for a failed try that will be retried at run_after."""
    return {
        "state": QueueItemState.RETRY,
        "run_after": run_after,
        "tries": item.tries + 1,
        "error": truncate_error(error),
        **_result_columns(result),
    }


def item_history(
    item: QueueItem,
    state: HistoryState,
    now: datetime,
    result: WorkResult | None = None,
    error: str | None = None,
) -> dict[str, Any]:
    """History record for an item reaching a terminal state."""
    return {
        "id": item.id,
        "tenant_id": item.tenant_id,
        "key": item.key,
        "queue": item.queue,
        "type": item.type,
        "schedule_id": item.schedule_id,
        "created": now,
        "scheduled": item.created,
        "started": item.started or now,
        "state": state,
        "tries": item.tries + 1,
        "payload": item.payload,
        "payload_type": item.payload_type,
        "target": item.target,
        "error": truncate_error(error),
        **_result_columns(result),
    }


def item_completed(item: QueueItem, now: datetime, result: WorkResult | None) -> dict[str, Any]:
    return item_history(item, HistoryState.COMPLETED, now, result=result)


def item_failed(
    item: QueueItem,
    now: datetime,
    result: WorkResult | None,
    error: str | None,
) -> dict[str, Any]:
    return item_history(item, HistoryState.FAILED, now, result=result, error=error)


class QueueInfo(BaseModel):
    """A known queue and its configuration."""

    tenant_id: str
    queue: str
    display_name: str | None = None
    paused: bool = False
    retry_policy: RetryPolicy | None = None
