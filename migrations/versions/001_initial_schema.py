"""initial_schema

Revision ID: 001
Revises:
Create Date: 2026-10-17

Tracked transcoding jobs and their retry history.
For databases bootstrapped with create_tables(), use 'alembic stamp 001'.
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create the jobs and retry_attempts tables."""
    op.create_table(
        "jobs",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("external_id", sa.String(128), unique=True, nullable=True),
        sa.Column("title", sa.String(255), nullable=False, server_default=""),
        sa.Column("state", sa.String(20), nullable=False, server_default="queued"),
        sa.Column("progress_percent", sa.Integer, nullable=False, server_default="0"),
        sa.Column("error_code", sa.String(64), nullable=True),
        sa.Column("error_message", sa.Text, nullable=True),
        sa.Column("duration_seconds", sa.Float, nullable=True),
        sa.Column("playback_hls_url", sa.Text, nullable=True),
        sa.Column("playback_dash_url", sa.Text, nullable=True),
        sa.Column("thumbnail_url", sa.Text, nullable=True),
        sa.Column("reopen_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("version", sa.Integer, nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.CheckConstraint(
            "state IN ('queued', 'in_progress', 'ready', 'failed')",
            name="ck_jobs_state",
        ),
        sa.CheckConstraint(
            "progress_percent >= 0 AND progress_percent <= 100",
            name="ck_jobs_progress_percent",
        ),
    )
    op.create_index("ix_jobs_state", "jobs", ["state"])
    op.create_index("ix_jobs_state_updated_at", "jobs", ["state", "updated_at"])
    op.create_index("ix_jobs_created_at", "jobs", ["created_at"])

    op.create_table(
        "retry_attempts",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("job_id", sa.Integer, sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
        sa.Column("attempt_number", sa.Integer, nullable=False),
        sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("success", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("error", sa.Text, nullable=True),
        sa.CheckConstraint("attempt_number >= 1", name="ck_retry_attempts_attempt_number"),
        sa.UniqueConstraint("job_id", "attempt_number", name="uq_retry_attempts_job_attempt"),
    )
    op.create_index("ix_retry_attempts_job_id", "retry_attempts", ["job_id"])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_index("ix_retry_attempts_job_id", table_name="retry_attempts")
    op.drop_table("retry_attempts")
    op.drop_index("ix_jobs_created_at", table_name="jobs")
    op.drop_index("ix_jobs_state_updated_at", table_name="jobs")
    op.drop_index("ix_jobs_state", table_name="jobs")
    op.drop_table("jobs")
