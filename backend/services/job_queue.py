"""Durable job queue backed by the ``sync_jobs`` table.

Jobs move through these states::

    available/scheduled -> executing -> completed
                                     -> retryable -> executing ...
                                     -> scheduled   (snoozed)
                                     -> discarded
    any active state    -> cancelled

Handlers report an outcome (Complete, Retry, Snooze, Discard) and
``apply_outcome`` turns it into the next state. Retries wait
``backoff(attempt)`` seconds; a snooze waits the requested time and does
not use up an attempt.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional, Union

from sqlalchemy import or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from models import SyncJob, utc_now
from models.sync_job import ACTIVE_STATES, CLAIMABLE_STATES

logger = logging.getLogger(__name__)

FINISHED_STATES = ("completed", "discarded", "cancelled")


@dataclass(frozen=True)
class Complete:
    pass


@dataclass(frozen=True)
class Retry:
    error: Any


@dataclass(frozen=True)
class Snooze:
    seconds: int


@dataclass(frozen=True)
class Discard:
    reason: str


JobOutcome = Union[Complete, Retry, Snooze, Discard]


@dataclass
class EnqueueResult:
    """Result of an enqueue. ``duplicate`` is True when an existing job was returned."""

    job: SyncJob
    duplicate: bool = False


def backoff(attempt: int, base: Optional[int] = None, ceiling: Optional[int] = None) -> int:
    """Seconds to wait before retrying after ``attempt``.

    ``min(base * 2^(attempt-1), ceiling)``; with the defaults that is
    15, 30, 60, 120, 240, then 300 from the sixth attempt on.
    """
    base = settings.SYNC_BACKOFF_BASE_SECONDS if base is None else base
    ceiling = settings.SYNC_BACKOFF_MAX_SECONDS if ceiling is None else ceiling
    return int(min(base * 2 ** max(attempt - 1, 0), ceiling))


def _naive(value: datetime) -> datetime:
    """Naive UTC for column comparisons (SQLite drops tzinfo)."""
    return value.replace(tzinfo=None) if value.tzinfo else value


class JobQueue:
    """Enqueue, claim and settle jobs."""

    @staticmethod
    def find_duplicate(
        db: Session,
        unique_key: str,
        unique_period: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> SyncJob | None:
        """Return a job that blocks a new enqueue with ``unique_key``.

        An active job always blocks. A completed job blocks while it is
        younger than ``unique_period`` seconds.
        """
        conditions = [SyncJob.state.in_(ACTIVE_STATES)]
        if unique_period:
            cutoff = _naive((now or utc_now()) - timedelta(seconds=unique_period))
            conditions.append(
                (SyncJob.state == "completed") & (SyncJob.inserted_at >= cutoff)
            )
        return (
            db.query(SyncJob)
            .filter(SyncJob.unique_key == unique_key, or_(*conditions))
            .order_by(SyncJob.inserted_at.desc())
            .first()
        )

    @staticmethod
    def get_active(db: Session, unique_key: str) -> SyncJob | None:
        return (
            db.query(SyncJob)
            .filter(SyncJob.unique_key == unique_key, SyncJob.state.in_(ACTIVE_STATES))
            .first()
        )

    @staticmethod
    def enqueue(
        db: Session,
        kind: str,
        args: dict[str, Any],
        unique_key: Optional[str] = None,
        schedule_in: Optional[int] = None,
        unique_period: Optional[int] = None,
        max_attempts: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> EnqueueResult:
        """Insert a job unless a duplicate with the same unique key exists.

        A duplicate is not an error: the existing job is returned with
        ``duplicate=True``. Flushes but does not commit.

        Args:
            db: Database session.
            kind: Job kind ("sync" or "dispatch").
            args: JSON-serializable job arguments.
            unique_key: Optional deduplication key.
            schedule_in: Delay in seconds before the job becomes runnable.
            unique_period: Seconds a completed job keeps blocking its key.
            max_attempts: Defaults to ``SYNC_JOB_MAX_ATTEMPTS``.
            now: Override the current time (tests).
        """
        now = now or utc_now()
        if unique_period is None:
            unique_period = settings.SYNC_UNIQUE_PERIOD_SECONDS

        if unique_key:
            existing = JobQueue.find_duplicate(db, unique_key, unique_period, now)
            if existing is not None:
                logger.debug("Job %s already enqueued as %s", unique_key, existing.id)
                return EnqueueResult(job=existing, duplicate=True)

        delay = schedule_in or 0
        job = SyncJob(
            kind=kind,
            args=dict(args),
            unique_key=unique_key,
            state="scheduled" if delay > 0 else "available",
            scheduled_at=now + timedelta(seconds=delay),
            max_attempts=max_attempts or settings.SYNC_JOB_MAX_ATTEMPTS,
            attempt=0,
            errors=[],
            inserted_at=now,
        )
        try:
            # Savepoint so a lost race on the unique index leaves the
            # caller's transaction usable
            with db.begin_nested():
                db.add(job)
                db.flush()
        except IntegrityError:
            existing = JobQueue.get_active(db, unique_key) if unique_key else None
            if existing is None:
                raise
            logger.debug("Job %s enqueued concurrently as %s", unique_key, existing.id)
            return EnqueueResult(job=existing, duplicate=True)

        logger.info("Enqueued %s job %s (key=%s, delay=%ds)", kind, job.id, unique_key, delay)
        return EnqueueResult(job=job, duplicate=False)

    @staticmethod
    def claim_due(db: Session, limit: int, now: Optional[datetime] = None) -> list[SyncJob]:
        """Move up to ``limit`` due jobs to ``executing`` and commit.

        Uses ``FOR UPDATE SKIP LOCKED`` where the database supports it so
        concurrent runners never claim the same job.
        """
        now = now or utc_now()
        jobs = (
            db.query(SyncJob)
            .filter(
                SyncJob.state.in_(CLAIMABLE_STATES),
                SyncJob.scheduled_at <= _naive(now),
            )
            .order_by(SyncJob.scheduled_at, SyncJob.inserted_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
            .all()
        )
        for job in jobs:
            job.state = "executing"
            job.attempt = (job.attempt or 0) + 1
            job.attempted_at = now
        db.commit()
        return jobs

    @staticmethod
    def apply_outcome(
        db: Session,
        job: SyncJob,
        outcome: JobOutcome,
        now: Optional[datetime] = None,
    ) -> SyncJob:
        """Record a handler outcome on a claimed job. Flushes but does not commit."""
        now = now or utc_now()

        if isinstance(outcome, Complete):
            job.state = "completed"
            job.completed_at = now
        elif isinstance(outcome, Snooze):
            job.state = "scheduled"
            job.scheduled_at = now + timedelta(seconds=max(int(outcome.seconds), 0))
            job.max_attempts = job.max_attempts + 1
            logger.info("Job %s snoozed for %ds", job.id, outcome.seconds)
        elif isinstance(outcome, Discard):
            JobQueue._append_error(job, now, outcome.reason)
            job.state = "discarded"
            job.discarded_at = now
            logger.warning("Job %s discarded: %s", job.id, outcome.reason)
        elif isinstance(outcome, Retry):
            JobQueue._append_error(job, now, outcome.error)
            if job.attempt >= job.max_attempts:
                job.state = "discarded"
                job.discarded_at = now
                logger.warning(
                    "Job %s failed on final attempt %d/%d",
                    job.id, job.attempt, job.max_attempts,
                )
            else:
                delay = backoff(job.attempt)
                job.state = "retryable"
                job.scheduled_at = now + timedelta(seconds=delay)
                logger.info(
                    "Job %s failed (attempt %d/%d), retrying in %ds",
                    job.id, job.attempt, job.max_attempts, delay,
                )
        else:
            raise TypeError(f"Unknown job outcome: {outcome!r}")

        db.flush()
        return job

    @staticmethod
    def cancel(db: Session, job_id: str, now: Optional[datetime] = None) -> SyncJob | None:
        """Cancel an active job. Returns None if there is no such active job."""
        job = (
            db.query(SyncJob)
            .filter(SyncJob.id == job_id, SyncJob.state.in_(ACTIVE_STATES))
            .first()
        )
        if job is None:
            return None
        job.state = "cancelled"
        job.completed_at = now or utc_now()
        db.flush()
        return job

    @staticmethod
    def rescue_orphaned(
        db: Session, rescue_after_seconds: int, now: Optional[datetime] = None
    ) -> int:
        """Release jobs stuck in ``executing``, e.g. after a worker crash.

        Returns:
            Number of jobs rescued.
        """
        now = now or utc_now()
        cutoff = _naive(now - timedelta(seconds=rescue_after_seconds))
        stuck = (
            db.query(SyncJob)
            .filter(SyncJob.state == "executing", SyncJob.attempted_at <= cutoff)
            .all()
        )
        for job in stuck:
            if job.attempt >= job.max_attempts:
                job.state = "discarded"
                job.discarded_at = now
            else:
                job.state = "retryable"
                job.scheduled_at = now
        db.flush()
        if stuck:
            logger.warning("Rescued %d orphaned jobs", len(stuck))
        return len(stuck)

    @staticmethod
    def prune(db: Session, max_age_seconds: int, now: Optional[datetime] = None) -> int:
        """Delete finished jobs older than ``max_age_seconds``.

        Returns:
            Number of jobs deleted.
        """
        cutoff = _naive((now or utc_now()) - timedelta(seconds=max_age_seconds))
        deleted = (
            db.query(SyncJob)
            .filter(
                SyncJob.state.in_(FINISHED_STATES),
                or_(SyncJob.completed_at <= cutoff, SyncJob.discarded_at <= cutoff),
            )
            .delete(synchronize_session=False)
        )
        db.flush()
        if deleted:
            logger.info("Pruned %d finished jobs", deleted)
        return deleted

    @staticmethod
    def _append_error(job: SyncJob, now: datetime, error: Any) -> None:
        errors = list(job.errors or [])
        errors.append({"attempt": job.attempt, "at": now.isoformat(), "error": error})
        job.errors = errors
