"""
Type definitions for the queue.
Contains input types and lifecycle transitions, grouped by module.
"""

from pgqueue.types.events import QueueEvent
from pgqueue.types.queue import (
    NewQueueItem,
    QueueConfigUpdate,
    QueueInfo,
    WorkResult,
    truncate_error,
)
from pgqueue.types.schedule import (
    NewSchedule,
    ScheduleUpdate,
)

__all__ = [
    # Queue types
    "NewQueueItem",
    "WorkResult",
    "QueueConfigUpdate",
    "QueueInfo",
    "truncate_error",
    # Schedule types
    "NewSchedule",
    "ScheduleUpdate",
    # Event types
    "QueueEvent",
]
