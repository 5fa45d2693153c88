"""Exception types for the queue."""

from typing import Any
from uuid import UUID


class PgQueueError(Exception):
    """Base exception for all queue errors."""

    pass


class VersionConflictError(PgQueueError):
    """Raised when an optimistic update finds a different stored version."""

    def __init__(self, entity: str, entity_id: Any, version: int, message: str | None = None):
        self.entity = entity
        self.entity_id = entity_id
        self.version = version
        if message is None:
            message = f"{entity} {entity_id} was modified concurrently (expected version {version})"
        super().__init__(message)


class ItemNotFoundError(PgQueueError):
    """Raised when a queue item is not found."""

    def __init__(self, item_id: UUID, message: str | None = None):
        self.item_id = item_id
        if message is None:
            message = f"Queue item {item_id} not found"
        super().__init__(message)


class ScheduleNotFoundError(PgQueueError):
    """Raised when a schedule is not found by id or key."""

    def __init__(self, tenant_id: str, id_or_key: Any, message: str | None = None):
        self.tenant_id = tenant_id
        self.id_or_key = id_or_key
        if message is None:
            message = f"Schedule {id_or_key} not found for tenant {tenant_id}"
        super().__init__(message)


class InvalidScheduleError(PgQueueError):
    """Raised for unparseable schedule expressions or unknown timezones."""

    pass


class WorkerAlreadyStartedError(PgQueueError):
    """Raised when a second worker is started with a node id already in use."""

    def __init__(self, node_id: str):
        self.node_id = node_id
        super().__init__(f"Worker with node id {node_id} is already started")


class HandlerError(PgQueueError):
    """
    Expected handler failure.

    Handlers raise this to fail an item with a readable message and an
    optional partial result, which is stored on the item for the next try.
    Any other exception is treated as an unknown error.
    """

    def __init__(self, message: str, result: Any = None):
        self.message = message
        self.result = result
        super().__init__(message)
