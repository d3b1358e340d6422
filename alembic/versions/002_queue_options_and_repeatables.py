"""Queue job defaults, retention, claim window and repeatable jobs

Revision ID: 002
Revises: 001
Create Date: 2026-10-18 00:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

QUEUE_COLUMNS = (
    sa.Column("default_max_attempts", sa.Integer, nullable=True),
    sa.Column("default_priority", sa.Integer, nullable=True),
    sa.Column("backoff_type", sa.String(16), nullable=True),
    sa.Column("backoff_delay_ms", sa.BigInteger, nullable=True),
    sa.Column("keep_completed_ms", sa.BigInteger, nullable=True),
    sa.Column("keep_completed_count", sa.Integer, nullable=True),
    sa.Column("keep_failed_ms", sa.BigInteger, nullable=True),
    sa.Column("window_started_at", sa.DateTime, nullable=True),
    sa.Column("window_claims", sa.Integer, nullable=False, server_default="0"),
    sa.Column("consumer_seen_at", sa.DateTime, nullable=True),
)


def upgrade() -> None:
    # Extend queues table
    for column in QUEUE_COLUMNS:
        op.add_column("queues", column)

    # Create repeatable_jobs table
    op.create_table(
        "repeatable_jobs",
        sa.Column("queue_name", sa.String(255), nullable=False),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("payload", sa.JSON, nullable=True),
        sa.Column("cron", sa.String(255), nullable=True),
        sa.Column("every_ms", sa.BigInteger, nullable=True),
        sa.Column("priority", sa.Integer, nullable=True),
        sa.Column("max_attempts", sa.Integer, nullable=True),
        sa.Column("next_run_at", sa.DateTime, nullable=False),
        sa.Column("last_run_at", sa.DateTime, nullable=True),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.PrimaryKeyConstraint("queue_name", "name"),
    )
    op.create_index("ix_repeatable_jobs_next_run", "repeatable_jobs", ["next_run_at"])


def downgrade() -> None:
    op.drop_index("ix_repeatable_jobs_next_run")
    op.drop_table("repeatable_jobs")

    for column in reversed(QUEUE_COLUMNS):
        op.drop_column("queues", column.name)
