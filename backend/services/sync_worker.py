"""Sync worker: runs queued jobs against the sync service."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Optional

from sqlalchemy.orm import Session

from config import settings
from models import Connection, SyncJob
from services.job_queue import (
    Complete,
    Discard,
    JobOutcome,
    JobQueue,
    Retry,
    Snooze,
    backoff,
)
from services.scheduling_service import (
    DISPATCH_JOB,
    SYNC_JOB,
    dispatch_incremental_syncs,
    schedule_dispatch,
)
from services.sync_errors import RateLimitedError, SyncError
from services.sync_service import VALID_MODES, SyncService

logger = logging.getLogger(__name__)


def snooze_duration(retry_after: Optional[int], attempt: int) -> int:
    """Seconds to snooze a rate-limited job.

    The provider's ``Retry-After`` is capped at the backoff ceiling, and
    never allowed to undercut the worker's own backoff for this attempt.
    """
    floor = backoff(attempt)
    if retry_after is None or retry_after <= 0:
        return floor
    return max(min(retry_after, settings.SYNC_BACKOFF_MAX_SECONDS), floor)


class SyncWorker:
    """Turns a claimed job into a JobOutcome."""

    def __init__(self, sync_service: Optional[SyncService] = None):
        self._sync_service = sync_service
        self._owns_service = False
        self._service_lock = threading.Lock()

    @property
    def sync_service(self) -> SyncService:
        with self._service_lock:
            if self._sync_service is None:
                self._sync_service = SyncService()
                self._owns_service = True
            return self._sync_service

    def close(self) -> None:
        """Release the sync service's HTTP client if this worker built it."""
        with self._service_lock:
            if self._owns_service and self._sync_service is not None:
                self._sync_service.close()

    def perform(self, db: Session, job: SyncJob) -> JobOutcome:
        args = job.args or {}

        if job.kind == DISPATCH_JOB or args.get("mode") == DISPATCH_JOB:
            dispatch_incremental_syncs(db, schedule_in=int(args.get("schedule_in") or 0))
            return Complete()

        connection_id = args.get("connection_id")
        if job.kind != SYNC_JOB or not connection_id:
            return Discard("unrecognized job")

        mode = args.get("mode") or "incremental"
        if mode not in VALID_MODES:
            return Discard(f"unknown mode {mode}")

        connection = db.query(Connection).filter(Connection.id == connection_id).first()
        if connection is None:
            return Discard("connection not found")

        telemetry_metadata = dict(args.get("telemetry_metadata") or {})
        telemetry_metadata.update({"job_id": job.id, "attempt": job.attempt})

        try:
            self.sync_service.sync(
                db, connection, mode=mode, telemetry_metadata=telemetry_metadata
            )
        except RateLimitedError as e:
            return Snooze(snooze_duration(e.retry_after, job.attempt))
        except SyncError as e:
            return Retry(e.to_dict())
        return Complete()


class JobRunner:
    """Claims due jobs and runs them on a thread pool.

    Each job gets its own session, so concurrent syncs for different
    connections never share ORM state.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        worker: Optional[SyncWorker] = None,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        dispatch_interval: Optional[float] = None,
    ):
        self._session_factory = session_factory
        self._owns_worker = worker is None
        self._worker = worker or SyncWorker()
        self._concurrency = concurrency or settings.SYNC_WORKER_CONCURRENCY
        self._poll_interval = (
            poll_interval if poll_interval is not None else settings.SYNC_WORKER_POLL_SECONDS
        )
        self._dispatch_interval = (
            dispatch_interval
            if dispatch_interval is not None
            else settings.SYNC_DISPATCH_INTERVAL_SECONDS
        )

    def run_job(self, job_id: str) -> str:
        """Perform one claimed job and record its outcome.

        Returns:
            The job's state afterwards.
        """
        db = self._session_factory()
        try:
            job = db.query(SyncJob).filter(SyncJob.id == job_id).one()
            try:
                outcome = self._worker.perform(db, job)
            except Exception as e:
                # The sync service commits its own work; anything escaping
                # here leaves the session in an unknown state
                logger.error("Job %s raised: %s", job_id, e, exc_info=True)
                db.rollback()
                job = db.query(SyncJob).filter(SyncJob.id == job_id).one()
                outcome = Retry({"type": "unexpected", "message": type(e).__name__})

            JobQueue.apply_outcome(db, job, outcome)
            db.commit()
            return job.state
        finally:
            db.close()

    def run_pending(self) -> int:
        """Claim and run every job that is due now, in batches.

        Returns:
            Number of jobs run.
        """
        total = 0
        with ThreadPoolExecutor(max_workers=self._concurrency) as executor:
            while True:
                db = self._session_factory()
                try:
                    job_ids = [job.id for job in JobQueue.claim_due(db, self._concurrency)]
                finally:
                    db.close()
                if not job_ids:
                    break

                futures = {executor.submit(self.run_job, job_id): job_id for job_id in job_ids}
                for future in as_completed(futures):
                    try:
                        state = future.result()
                        logger.debug("Job %s finished as %s", futures[future], state)
                    except Exception:
                        logger.error(
                            "Failed to record outcome for job %s",
                            futures[future], exc_info=True,
                        )
                total += len(job_ids)
        return total

    def enqueue_dispatch(self) -> None:
        """Enqueue a dispatch job and run queue housekeeping."""
        db = self._session_factory()
        try:
            schedule_dispatch(db)
            JobQueue.rescue_orphaned(db, settings.SYNC_JOB_RESCUE_AFTER_SECONDS)
            JobQueue.prune(db, settings.SYNC_JOB_PRUNE_AGE_SECONDS)
            db.commit()
        finally:
            db.close()

    def close(self) -> None:
        """Release resources held by a worker this runner created."""
        if self._owns_worker:
            self._worker.close()

    def run_forever(self, stop_event: threading.Event) -> None:
        """Poll the queue until ``stop_event`` is set, then close the runner.

        A dispatch job is enqueued on start and then every dispatch interval.
        """
        logger.info(
            "Sync worker started (concurrency=%d, poll=%.1fs, dispatch every %ds)",
            self._concurrency, self._poll_interval, self._dispatch_interval,
        )
        next_dispatch = time.monotonic()
        try:
            while not stop_event.is_set():
                try:
                    if time.monotonic() >= next_dispatch:
                        self.enqueue_dispatch()
                        next_dispatch = time.monotonic() + self._dispatch_interval
                    self.run_pending()
                except Exception:
                    logger.error("Sync worker iteration failed", exc_info=True)
                stop_event.wait(self._poll_interval)
        finally:
            self.close()
        logger.info("Sync worker stopped")
