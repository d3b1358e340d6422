"""Initial schema with queues and jobs tables

Revision ID: 001
Revises:
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JOB_STATES = ("waiting", "delayed", "active", "completed", "failed")


def upgrade() -> None:
    # Create queues table
    op.create_table(
        "queues",
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("concurrency", sa.Integer, nullable=False, server_default="5"),
        sa.Column("is_paused", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("rate_limit_max", sa.Integer, nullable=True),
        sa.Column("rate_limit_window_ms", sa.Integer, nullable=True),
        sa.PrimaryKeyConstraint("name"),
    )

    # Create jobs table
    op.create_table(
        "jobs",
        sa.Column("id", sa.String(32), nullable=False),
        sa.Column("queue_name", sa.String(255), nullable=False),
        sa.Column("payload", sa.JSON, nullable=True),
        sa.Column("state", sa.String(9), nullable=False, server_default="waiting"),
        sa.Column("priority", sa.Integer, nullable=False, server_default="0"),
        sa.Column("seq", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column("delay_until", sa.DateTime, nullable=True),
        sa.Column("lease_token", sa.String(32), nullable=True),
        sa.Column("worker_id", sa.String(255), nullable=True),
        sa.Column("heartbeat_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("started_at", sa.DateTime, nullable=True),
        sa.Column("finished_at", sa.DateTime, nullable=True),
        sa.Column("updated_at", sa.DateTime, nullable=True),
        sa.Column("last_error", sa.Text, nullable=True),
        sa.Column("result", sa.JSON, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint(
            "state IN (" + ", ".join(f"'{s}'" for s in JOB_STATES) + ")",
            name="job_state",
        ),
    )

    # Create indexes
    op.create_index("ix_jobs_claim", "jobs", ["queue_name", "state", "priority", "created_at"])
    op.create_index("ix_jobs_delay", "jobs", ["state", "delay_until"])
    op.create_index("ix_jobs_heartbeat", "jobs", ["state", "heartbeat_at"])
    op.create_index("ix_jobs_finished", "jobs", ["queue_name", "state", "finished_at"])


def downgrade() -> None:
    # Drop indexes
    op.drop_index("ix_jobs_finished")
    op.drop_index("ix_jobs_heartbeat")
    op.drop_index("ix_jobs_delay")
    op.drop_index("ix_jobs_claim")

    # Drop tables
    op.drop_table("jobs")
    op.drop_table("queues")
