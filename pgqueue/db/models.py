"""
SQLAlchemy database models.
Defines the queue, history, work queue, queue config and schedule tables.

Tables are declared without a schema; the configured schema is applied at
runtime through the engine's ``schema_translate_map``.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import (
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from uuid6 import uuid7

from pgqueue.constants import DEFAULT_TIMEZONE, HistoryState, QueueItemState


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


def _state_enum(enum_class: type, name: str) -> Enum:
    return Enum(
        enum_class,
        name=name,
        native_enum=False,
        create_constraint=True,
        length=16,
        values_callable=lambda x: [e.value for e in x],
    )


class QueueItem(Base):
    """
    Active queue item.

    Exactly one row exists per active item. On completion or exhausted
    retries the row is deleted and an immutable copy goes to queue_history
    in the same transaction.

    Key constraints:
    - (tenant_id, queue, key) is unique so pushes with a key are idempotent
    - version is bumped on every update for optimistic concurrency
    """

    __tablename__ = "queue"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid7)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    queue: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(255), nullable=False)
    schedule_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    tries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    state: Mapped[QueueItemState] = mapped_column(
        _state_enum(QueueItemState, "queue_item_state"),
        nullable=False,
        default=QueueItemState.PENDING,
    )

    created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    started: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    run_after: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    payload: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    payload_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    target: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    retry_policy: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    # Last try outcome, kept across retries for diagnostics
    result: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    result_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    worker_data: Mapped[Any | None] = mapped_column(JSONB, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "queue", "key", name="uq_queue_tenant_queue_key"),
        Index("ix_queue_due", "state", "run_after", "created"),
        Index("ix_queue_tenant_queue", "tenant_id", "queue"),
    )

    def __repr__(self) -> str:
        return (
            f"QueueItem(id={self.id}, tenant={self.tenant_id}, queue={self.queue}, "
            f"state={self.state}, tries={self.tries}, version={self.version})"
        )


class QueueHistory(Base):
    """Immutable terminal record of a completed or failed queue item."""

    __tablename__ = "queue_history"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    queue: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(255), nullable=False)
    schedule_id: Mapped[UUID | None] = mapped_column(PG_UUID(as_uuid=True), nullable=True)

    # created is the time of the terminal transition, scheduled the time the item was pushed
    created: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    scheduled: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    state: Mapped[HistoryState] = mapped_column(
        _state_enum(HistoryState, "queue_history_state"), nullable=False
    )
    tries: Mapped[int] = mapped_column(Integer, nullable=False)

    payload: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    payload_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    result: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    result_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    worker_data: Mapped[Any | None] = mapped_column(JSONB, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    target: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    __table_args__ = (
        Index("ix_queue_history_tenant_queue", "tenant_id", "queue", "created"),
    )

    def __repr__(self) -> str:
        return f"QueueHistory(id={self.id}, tenant={self.tenant_id}, state={self.state}, tries={self.tries})"


class WorkItem(Base):
    """
    Lease on a RUNNING queue item.

    A row is available when lock_key is NULL or lock_timeout has passed.
    Deleting the queue item cascades to its lease.
    """

    __tablename__ = "work_queue"

    id: Mapped[UUID] = mapped_column(
        PG_UUID(as_uuid=True),
        ForeignKey("queue.id", ondelete="CASCADE"),
        primary_key=True,
    )
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    batch_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    lock_key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lock_timeout: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    started: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        Index("ix_work_queue_order", "created", "batch_order"),
        Index("ix_work_queue_lock_key", "lock_key"),
    )

    def __repr__(self) -> str:
        return f"WorkItem(id={self.id}, lock_key={self.lock_key}, lock_timeout={self.lock_timeout})"


class QueueConfig(Base):
    """Per (tenant, queue) configuration, created on first explicit configure."""

    __tablename__ = "queue_config"

    tenant_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    queue: Mapped[str] = mapped_column(String(255), primary_key=True)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    retry_policy: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )


class Schedule(Base):
    """
    Recurring schedule definition.

    ``schedule`` holds the serialized expression (see pgqueue.cron).
    next_run is NULL only while paused or before it was first computed.
    """

    __tablename__ = "schedules"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid7)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    key: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    queue: Mapped[str] = mapped_column(String(255), nullable=False)
    type: Mapped[str] = mapped_column(String(255), nullable=False)

    schedule: Mapped[str] = mapped_column(String(512), nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, default=DEFAULT_TIMEZONE)
    paused: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    retry_policy: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)
    payload: Mapped[bytes | None] = mapped_column(LargeBinary, nullable=True)
    payload_type: Mapped[str | None] = mapped_column(String(255), nullable=True)
    target: Mapped[dict[str, Any] | None] = mapped_column(JSONB, nullable=True)

    next_run: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_run: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    tries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    created: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )
    updated: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now()
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "key", name="uq_schedules_tenant_key"),
        Index("ix_schedules_due", "paused", "next_run"),
    )

    def __repr__(self) -> str:
        return f"Schedule(id={self.id}, tenant={self.tenant_id}, schedule={self.schedule}, next_run={self.next_run})"
