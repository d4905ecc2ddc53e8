"""Tests for SyncWorker and JobRunner."""

import threading
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from integrations.exceptions import AggregatorAPIError
from models import Account, Connection, SyncJob
from services.job_queue import Complete, Discard, JobQueue, Retry, Snooze
from services.scheduling_service import (
    DISPATCH_JOB,
    SYNC_JOB,
    enqueue_connection_sync,
    schedule_dispatch,
)
from services.sync_errors import AggregatorTransportError, RateLimitedError
from services.sync_service import SyncService
from services.sync_worker import JobRunner, SyncWorker, snooze_duration
from tests.fixtures import create_connection, jobs_for
from tests.fixtures.mocks import (
    SAMPLE_ACCOUNT,
    SAMPLE_TRANSACTION,
    RecordingSyncService,
    StubAggregatorClient,
)


def _claimed_sync_job(db, connection, mode="incremental"):
    enqueue_connection_sync(db, connection, mode, telemetry_metadata={"source": "test"})
    db.commit()
    jobs = JobQueue.claim_due(db, 10)
    assert len(jobs) == 1
    return jobs[0]


# ---------------------------------------------------------------------------
# snooze_duration
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "retry_after, attempt, expected",
    [
        (30, 1, 30),      # provider hint above the backoff floor
        (5, 3, 60),       # never below backoff(3)
        (1000, 1, 300),   # capped at the ceiling
        (None, 2, 30),    # no hint: plain backoff
        (0, 1, 15),
        (-5, 1, 15),
    ],
)
def test_snooze_duration(retry_after, attempt, expected):
    assert snooze_duration(retry_after, attempt) == expected


# ---------------------------------------------------------------------------
# SyncWorker.perform
# ---------------------------------------------------------------------------


class TestSyncWorkerPerform:
    def test_success_completes(self, db, connection):
        sync_service = RecordingSyncService()
        job = _claimed_sync_job(db, connection)

        outcome = SyncWorker(sync_service).perform(db, job)

        assert outcome == Complete()
        call = sync_service.calls[0]
        assert call["connection_id"] == connection.id
        assert call["mode"] == "incremental"
        assert call["telemetry_metadata"]["source"] == "test"
        assert call["telemetry_metadata"]["job_id"] == job.id
        assert call["telemetry_metadata"]["attempt"] == 1

    def test_rate_limited_snoozes_for_at_least_retry_after(self, db, connection):
        job = _claimed_sync_job(db, connection)
        worker = SyncWorker(RecordingSyncService(RateLimitedError(retry_after=30)))

        outcome = worker.perform(db, job)

        assert isinstance(outcome, Snooze)
        assert outcome.seconds >= 30

    def test_other_sync_error_retries_with_error_map(self, db, connection):
        job = _claimed_sync_job(db, connection)
        worker = SyncWorker(RecordingSyncService(AggregatorTransportError("ReadTimeout")))

        outcome = worker.perform(db, job)

        assert outcome == Retry({"type": "transport", "reason": "ReadTimeout"})

    def test_missing_connection_discards(self, db):
        db.add(SyncJob(kind=SYNC_JOB, args={"connection_id": "gone", "mode": "incremental"}))
        db.commit()
        job = JobQueue.claim_due(db, 10)[0]

        outcome = SyncWorker(RecordingSyncService()).perform(db, job)

        assert outcome == Discard("connection not found")

    @pytest.mark.parametrize(
        "kind, args",
        [
            (SYNC_JOB, {}),
            (SYNC_JOB, {"mode": "incremental"}),
            ("reindex", {"connection_id": "c1"}),
        ],
    )
    def test_unrecognized_job_discards(self, db, kind, args):
        job = SyncJob(kind=kind, args=args, attempt=1)

        outcome = SyncWorker(RecordingSyncService()).perform(db, job)

        assert outcome == Discard("unrecognized job")

    def test_unknown_mode_discards(self, db, connection):
        job = SyncJob(kind=SYNC_JOB, args={"connection_id": connection.id, "mode": "sideways"}, attempt=1)

        outcome = SyncWorker(RecordingSyncService()).perform(db, job)

        assert isinstance(outcome, Discard)

    def test_dispatch_enqueues_due_connections(self, db):
        due = create_connection(db)
        create_connection(
            db,
            user_id="user-3",
            institution_id="inst-3",
            last_synced_at=datetime.now(timezone.utc),
        )
        create_connection(
            db,
            user_id="user-4",
            institution_id="inst-4",
            connection_metadata={"status": "revoked"},
        )
        dispatch = schedule_dispatch(db).job
        db.commit()

        outcome = SyncWorker(RecordingSyncService()).perform(db, dispatch)
        db.commit()

        assert outcome == Complete()
        sync_jobs = db.query(SyncJob).filter(SyncJob.kind == SYNC_JOB).all()
        assert [job.args["connection_id"] for job in sync_jobs] == [due.id]
        assert sync_jobs[0].args["telemetry_metadata"]["source"] == "dispatch"


# ---------------------------------------------------------------------------
# JobRunner
# ---------------------------------------------------------------------------


def _runner(session_factory, client=None, **kwargs):
    worker = SyncWorker(SyncService(client=client or StubAggregatorClient()))
    return JobRunner(session_factory, worker=worker, concurrency=1, poll_interval=0, **kwargs)


class TestJobRunner:
    def test_run_pending_syncs_and_completes(self, db, session_factory, connection):
        client = StubAggregatorClient(
            accounts={None: ([SAMPLE_ACCOUNT], None)},
            transactions={"acct-1": {None: ([SAMPLE_TRANSACTION], None)}},
        )
        enqueue_connection_sync(db, connection, "initial")
        db.commit()

        ran = _runner(session_factory, client).run_pending()

        db.expire_all()
        assert ran == 1
        job = jobs_for(db, connection.id)[0]
        assert job.state == "completed"
        assert db.query(Account).count() == 1
        assert db.query(Connection).one().last_synced_at is not None

    def test_rate_limited_job_is_snoozed(self, db, session_factory, connection):
        client = StubAggregatorClient(account_errors={
            None: AggregatorAPIError("slow", status_code=429, headers={"retry-after": "30"})
        })
        enqueue_connection_sync(db, connection, "incremental")
        db.commit()

        _runner(session_factory, client).run_pending()

        db.expire_all()
        job = jobs_for(db, connection.id)[0]
        assert job.state == "scheduled"
        assert job.max_attempts == 6
        delay = (job.scheduled_at - job.attempted_at).total_seconds()
        assert delay >= 30
        assert db.query(Connection).one().last_sync_error["type"] == "rate_limited"

    def test_failed_job_becomes_retryable(self, db, session_factory, connection):
        client = StubAggregatorClient(account_errors={
            None: AggregatorAPIError("boom", status_code=503)
        })
        enqueue_connection_sync(db, connection, "incremental")
        db.commit()

        _runner(session_factory, client).run_pending()

        db.expire_all()
        job = jobs_for(db, connection.id)[0]
        assert job.state == "retryable"
        assert job.errors[0]["error"] == {"type": "http", "status": 503}

    def test_worker_crash_is_recorded_as_retry(self, db, session_factory, connection):
        class ExplodingWorker:
            def perform(self, db, job):
                raise RuntimeError("boom")

        enqueue_connection_sync(db, connection, "incremental")
        db.commit()
        job_id = jobs_for(db, connection.id)[0].id
        JobQueue.claim_due(db, 10)

        runner = JobRunner(session_factory, worker=ExplodingWorker(), concurrency=1)
        state = runner.run_job(job_id)

        db.expire_all()
        assert state == "retryable"
        job = db.query(SyncJob).filter(SyncJob.id == job_id).one()
        assert job.errors[0]["error"] == {"type": "unexpected", "message": "RuntimeError"}

    def test_enqueue_dispatch_is_unique(self, db, session_factory):
        runner = _runner(session_factory)

        runner.enqueue_dispatch()
        runner.enqueue_dispatch()

        db.expire_all()
        assert db.query(SyncJob).filter(SyncJob.kind == DISPATCH_JOB).count() == 1

    def test_dispatch_then_sync_in_one_drain(self, db, session_factory, connection):
        client = StubAggregatorClient(accounts={None: ([SAMPLE_ACCOUNT], None)})
        runner = _runner(session_factory, client)

        runner.enqueue_dispatch()
        ran = runner.run_pending()

        db.expire_all()
        assert ran == 2
        assert jobs_for(db, connection.id)[0].state == "completed"

    def test_run_forever_stops_on_event(self, session_factory):
        runner = _runner(session_factory, dispatch_interval=3600)
        stop_event = threading.Event()
        stop_event.set()

        runner.run_forever(stop_event)  # returns immediately

        assert stop_event.is_set()

    def test_run_forever_closes_worker_it_built(self, session_factory):
        runner = JobRunner(session_factory, concurrency=1, poll_interval=0)
        stop_event = threading.Event()
        stop_event.set()

        with patch.object(SyncWorker, "close") as mock_close:
            runner.run_forever(stop_event)

        mock_close.assert_called_once_with()

    def test_injected_worker_is_left_open(self, session_factory):
        worker = SyncWorker(RecordingSyncService())
        runner = JobRunner(session_factory, worker=worker, concurrency=1, poll_interval=0)

        with patch.object(SyncWorker, "close") as mock_close:
            runner.close()

        mock_close.assert_not_called()


class TestSyncWorkerService:
    def test_default_service_built_once_across_threads(self):
        worker = SyncWorker()
        seen = []
        threads = [
            threading.Thread(target=lambda: seen.append(worker.sync_service))
            for _ in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len({id(service) for service in seen}) == 1

    def test_close_releases_built_service(self):
        worker = SyncWorker()
        service = worker.sync_service
        with patch.object(service, "close") as mock_close:
            worker.close()
        mock_close.assert_called_once_with()

    def test_close_leaves_injected_service(self):
        service = SyncService(client=StubAggregatorClient())
        worker = SyncWorker(service)
        with patch.object(service, "close") as mock_close:
            worker.close()
        mock_close.assert_not_called()
