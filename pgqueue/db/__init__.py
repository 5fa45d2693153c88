"""
Database module.
Contains database connection, models, and repository implementations.
"""

from pgqueue.db.connection import (
    close_db,
    create_schema,
    create_session_factory,
    get_engine,
    get_session_context,
    init_db,
)
from pgqueue.db.models import Base, QueueConfig, QueueHistory, QueueItem, Schedule, WorkItem

__all__ = [
    "get_session_context",
    "get_engine",
    "create_schema",
    "create_session_factory",
    "init_db",
    "close_db",
    "Base",
    "QueueItem",
    "QueueHistory",
    "WorkItem",
    "QueueConfig",
    "Schedule",
]
