from datetime import datetime, timezone

import sqlalchemy as sa
from databases import Database

from config import DATABASE_URL

# Create database instance - works with PostgreSQL or SQLite
# PostgreSQL is the default and recommended database
database = Database(DATABASE_URL)
metadata = sa.MetaData()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


async def configure_database(db: Database = None):
    """
    Configure database-specific settings after connection.

    SQLite needs foreign keys switched on per connection so retry history is
    removed together with its job. PostgreSQL always enforces them.
    """
    db = db or database
    if db.url.dialect == "sqlite":
        await db.execute("PRAGMA foreign_keys = ON")


# One tracked transcoding job. `version` is the optimistic-concurrency counter:
# every applied write bumps it and is conditional on the value the writer read.
jobs = sa.Table(
    "jobs",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("external_id", sa.String(128), unique=True, nullable=True),
    sa.Column("title", sa.String(255), nullable=False, default=""),
    sa.Column(
        "state",
        sa.String(20),
        sa.CheckConstraint(
            "state IN ('queued', 'in_progress', 'ready', 'failed')",
            name="ck_jobs_state",
        ),
        nullable=False,
        default="queued",
    ),
    sa.Column(
        "progress_percent",
        sa.Integer,
        sa.CheckConstraint(
            "progress_percent >= 0 AND progress_percent <= 100",
            name="ck_jobs_progress_percent",
        ),
        nullable=False,
        default=0,
    ),
    sa.Column("error_code", sa.String(64), nullable=True),
    sa.Column("error_message", sa.Text, nullable=True),
    # Populated on transition to ready
    sa.Column("duration_seconds", sa.Float, nullable=True),
    sa.Column("playback_hls_url", sa.Text, nullable=True),
    sa.Column("playback_dash_url", sa.Text, nullable=True),
    sa.Column("thumbnail_url", sa.Text, nullable=True),
    sa.Column("reopen_count", sa.Integer, nullable=False, default=0),
    sa.Column("version", sa.Integer, nullable=False, default=1),
    sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, default=_utcnow),
    sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, default=_utcnow),
    sa.Index("ix_jobs_state", "state"),
    sa.Index("ix_jobs_state_updated_at", "state", "updated_at"),
    sa.Index("ix_jobs_created_at", "created_at"),
)

# Append-only retry history. Rows are never updated; an operator reset deletes them.
retry_attempts = sa.Table(
    "retry_attempts",
    metadata,
    sa.Column("id", sa.Integer, primary_key=True),
    sa.Column("job_id", sa.Integer, sa.ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False),
    sa.Column(
        "attempt_number",
        sa.Integer,
        sa.CheckConstraint("attempt_number >= 1", name="ck_retry_attempts_attempt_number"),
        nullable=False,
    ),
    sa.Column("attempted_at", sa.DateTime(timezone=True), nullable=False, default=_utcnow),
    sa.Column("success", sa.Boolean, nullable=False, default=False),
    sa.Column("error", sa.Text, nullable=True),
    sa.UniqueConstraint("job_id", "attempt_number", name="uq_retry_attempts_job_attempt"),
    sa.Index("ix_retry_attempts_job_id", "job_id"),
)


def create_tables():
    """
    Create database tables directly using SQLAlchemy metadata.
    This creates all tables if they don't exist.
    """
    engine = sa.create_engine(DATABASE_URL)
    metadata.create_all(engine)
    engine.dispose()


if __name__ == "__main__":
    create_tables()
    print("Database tables created successfully!")
