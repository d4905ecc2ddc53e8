"""SyncJob model - a durable job queue entry."""

from sqlalchemy import JSON, Column, DateTime, Index, Integer, String, text

from database import Base
from models.utils import generate_uuid, utc_now

# States in which a job still occupies its unique key
ACTIVE_STATES = ("available", "scheduled", "executing", "retryable")
# States from which a job can be claimed once its scheduled_at has passed
CLAIMABLE_STATES = ("available", "scheduled", "retryable")

_ACTIVE_STATES_SQL = "state IN ('available', 'scheduled', 'executing', 'retryable')"


class SyncJob(Base):
    """A queued unit of work for the sync worker.

    ``kind`` is "sync" (one connection) or "dispatch" (fan out to every
    connection due for an incremental sync). At most one active job may
    hold a given ``unique_key``; the partial unique index enforces this
    even when two enqueues race.
    """

    __tablename__ = "sync_jobs"
    __table_args__ = (
        Index(
            "uix_sync_jobs_active_unique_key",
            "unique_key",
            unique=True,
            sqlite_where=text(_ACTIVE_STATES_SQL),
            postgresql_where=text(_ACTIVE_STATES_SQL),
        ),
        Index("ix_sync_jobs_state_scheduled_at", "state", "scheduled_at"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    kind = Column(String(32), nullable=False)
    args = Column(JSON, nullable=False, default=dict)
    state = Column(String(16), nullable=False, default="available")
    attempt = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=5)
    unique_key = Column(String(255), nullable=True)
    errors = Column(JSON, nullable=False, default=list)  # list[dict] per failed attempt
    scheduled_at = Column(DateTime, nullable=False, default=utc_now)
    attempted_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    discarded_at = Column(DateTime, nullable=True)
    inserted_at = Column(DateTime, nullable=False, default=utc_now)

    @property
    def is_active(self) -> bool:
        return self.state in ACTIVE_STATES
