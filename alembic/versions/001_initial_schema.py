"""Initial schema with queue, history, work queue, queue config and schedules tables

Revision ID: 001
Revises:
Create Date: 2024-01-01 00:00:00.000000

"""
import os
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SCHEMA = os.getenv("DB_SCHEMA", "pgqueue")

ITEM_STATES = ("PENDING", "RUNNING", "RETRY", "COMPLETED", "FAILED")
HISTORY_STATES = ("COMPLETED", "FAILED")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade() -> None:
    op.execute(f'CREATE SCHEMA IF NOT EXISTS "{SCHEMA}"')

    op.create_table(
        "queue",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("key", sa.String(255), nullable=True),
        sa.Column("queue", sa.String(255), nullable=False),
        sa.Column("type", sa.String(255), nullable=False),
        sa.Column("schedule_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tries", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "state",
            sa.Enum(*ITEM_STATES, name="queue_item_state", native_enum=False, create_constraint=True, length=16),
            nullable=False,
            server_default="PENDING",
        ),
        *_timestamps(),
        sa.Column("started", sa.DateTime(timezone=True), nullable=True),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payload", sa.LargeBinary, nullable=True),
        sa.Column("payload_type", sa.String(255), nullable=True),
        sa.Column("target", postgresql.JSONB, nullable=True),
        sa.Column("retry_policy", postgresql.JSONB, nullable=True),
        sa.Column("result", sa.LargeBinary, nullable=True),
        sa.Column("result_type", sa.String(255), nullable=True),
        sa.Column("worker_data", postgresql.JSONB, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "queue", "key", name="uq_queue_tenant_queue_key"),
        schema=SCHEMA,
    )
    op.create_index("ix_queue_due", "queue", ["state", "run_after", "created"], schema=SCHEMA)
    op.create_index("ix_queue_tenant_queue", "queue", ["tenant_id", "queue"], schema=SCHEMA)

    op.create_table(
        "queue_history",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("key", sa.String(255), nullable=True),
        sa.Column("queue", sa.String(255), nullable=False),
        sa.Column("type", sa.String(255), nullable=False),
        sa.Column("schedule_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("created", sa.DateTime(timezone=True), nullable=False),
        sa.Column("scheduled", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started", sa.DateTime(timezone=True), nullable=False),
        sa.Column(
            "state",
            sa.Enum(*HISTORY_STATES, name="queue_history_state", native_enum=False, create_constraint=True, length=16),
            nullable=False,
        ),
        sa.Column("tries", sa.Integer, nullable=False),
        sa.Column("payload", sa.LargeBinary, nullable=True),
        sa.Column("payload_type", sa.String(255), nullable=True),
        sa.Column("result", sa.LargeBinary, nullable=True),
        sa.Column("result_type", sa.String(255), nullable=True),
        sa.Column("worker_data", postgresql.JSONB, nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.Column("target", postgresql.JSONB, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        schema=SCHEMA,
    )
    op.create_index(
        "ix_queue_history_tenant_queue", "queue_history", ["tenant_id", "queue", "created"], schema=SCHEMA
    )

    op.create_table(
        "work_queue",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("batch_order", sa.Integer, nullable=False, server_default="0"),
        sa.Column("lock_key", sa.String(255), nullable=True),
        sa.Column("lock_timeout", sa.DateTime(timezone=True), nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
        sa.Column("started", sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.ForeignKeyConstraint(["id"], [f"{SCHEMA}.queue.id"], ondelete="CASCADE"),
        schema=SCHEMA,
    )
    op.create_index("ix_work_queue_order", "work_queue", ["created", "batch_order"], schema=SCHEMA)
    op.create_index("ix_work_queue_lock_key", "work_queue", ["lock_key"], schema=SCHEMA)

    op.create_table(
        "queue_config",
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("queue", sa.String(255), nullable=False),
        sa.Column("display_name", sa.String(255), nullable=True),
        sa.Column("paused", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("retry_policy", postgresql.JSONB, nullable=True),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("tenant_id", "queue"),
        schema=SCHEMA,
    )

    op.create_table(
        "schedules",
        sa.Column("id", postgresql.UUID(as_uuid=True), nullable=False),
        sa.Column("tenant_id", sa.String(255), nullable=False),
        sa.Column("key", sa.String(255), nullable=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("queue", sa.String(255), nullable=False),
        sa.Column("type", sa.String(255), nullable=False),
        sa.Column("schedule", sa.String(512), nullable=False),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("paused", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("retry_policy", postgresql.JSONB, nullable=True),
        sa.Column("payload", sa.LargeBinary, nullable=True),
        sa.Column("payload_type", sa.String(255), nullable=True),
        sa.Column("target", postgresql.JSONB, nullable=True),
        sa.Column("next_run", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_run", sa.DateTime(timezone=True), nullable=True),
        sa.Column("tries", sa.Integer, nullable=False, server_default="0"),
        sa.Column("version", sa.Integer, nullable=False, server_default="0"),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tenant_id", "key", name="uq_schedules_tenant_key"),
        schema=SCHEMA,
    )
    op.create_index("ix_schedules_due", "schedules", ["paused", "next_run"], schema=SCHEMA)


def downgrade() -> None:
    op.drop_index("ix_schedules_due", table_name="schedules", schema=SCHEMA)
    op.drop_table("schedules", schema=SCHEMA)
    op.drop_table("queue_config", schema=SCHEMA)
    op.drop_index("ix_work_queue_lock_key", table_name="work_queue", schema=SCHEMA)
    op.drop_index("ix_work_queue_order", table_name="work_queue", schema=SCHEMA)
    op.drop_table("work_queue", schema=SCHEMA)
    op.drop_index("ix_queue_history_tenant_queue", table_name="queue_history", schema=SCHEMA)
    op.drop_table("queue_history", schema=SCHEMA)
    op.drop_index("ix_queue_tenant_queue", table_name="queue", schema=SCHEMA)
    op.drop_index("ix_queue_due", table_name="queue", schema=SCHEMA)
    op.drop_table("queue", schema=SCHEMA)
