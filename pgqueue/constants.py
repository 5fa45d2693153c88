"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class QueueItemState(StrEnum):
    """
    Queue item lifecycle states.

    State transitions:
    - PENDING -> RUNNING (claimed by the scheduler, leased into the work queue)
    - RUNNING -> COMPLETED (handler success, moved to history)
    - RUNNING -> RETRY (handler failure, due again after the retry delay)
    - RETRY -> RUNNING (claimed again once due)
    - RUNNING -> FAILED (retries exhausted, moved to history)
    """

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    RETRY = "RETRY"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class HistoryState(StrEnum):
    """Terminal states recorded in the history table."""

    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


# States the scheduler may claim
CLAIMABLE_STATES = (QueueItemState.PENDING, QueueItemState.RETRY)

# Default values
DEFAULT_TIMEZONE = "UTC"
DEFAULT_LOCK_TIMEOUT_SECONDS = 120
MAX_ERROR_LEN = 4095

# Metrics names
METRIC_ITEMS_PUSHED = "pgqueue_items_pushed_total"
METRIC_ITEMS_SCHEDULED = "pgqueue_items_scheduled_total"
METRIC_ITEMS_FINALIZED = "pgqueue_items_finalized_total"
METRIC_HANDLER_DURATION = "pgqueue_handler_duration_seconds"
METRIC_LEASE_ACQUIRED = "pgqueue_lease_acquired_total"
METRIC_SCHEDULES_TRIGGERED = "pgqueue_schedules_triggered_total"
METRIC_LOOP_ERRORS = "pgqueue_loop_errors_total"

# Trace span names
SPAN_PUSH_ITEM = "push_item"
SPAN_SCHEDULE_ITEMS = "schedule_items"
SPAN_EXECUTE_ITEM = "execute_item"
SPAN_FINALIZE_ITEM = "finalize_item"
SPAN_TRIGGER_SCHEDULES = "trigger_schedules"

# Event types emitted by the poll loops
EVENT_ITEM_SCHEDULED = "item.scheduled"
EVENT_ITEM_COMPLETED = "item.completed"
EVENT_ITEM_RETRY = "item.retry"
EVENT_ITEM_FAILED = "item.failed"
EVENT_SCHEDULE_TRIGGERED = "schedule.triggered"
EVENT_LOOP_ERROR = "loop.error"
