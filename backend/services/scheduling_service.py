"""Entry points for scheduling sync jobs.

Callers (the webhook handler, the API, the dispatch job) go through these
helpers instead of building queue jobs themselves. Every sync job for a
connection shares the unique key ``sync:<connection_id>``, so at most one
sync per connection is queued or running at a time.
"""

import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from config import settings
from models import Connection
from services.connection_service import ConnectionService
from services.job_queue import EnqueueResult, JobQueue

logger = logging.getLogger(__name__)

SYNC_JOB = "sync"
DISPATCH_JOB = "dispatch"
DISPATCH_UNIQUE_KEY = "dispatch"
INITIAL_SYNC_UNIQUE_PERIOD = 300


def sync_unique_key(connection_id: str) -> str:
    return f"sync:{connection_id}"


def _telemetry_metadata(
    connection: Connection, mode: str, extra: Optional[dict[str, Any]]
) -> dict[str, Any]:
    metadata = {
        "mode": mode,
        "user_id": connection.user_id,
        "institution_id": connection.institution_id,
    }
    for key, value in (extra or {}).items():
        if value is not None:
            metadata[str(key)] = value
    return metadata


def enqueue_connection_sync(
    db: Session,
    connection: Connection,
    mode: str,
    schedule_in: Optional[int] = None,
    unique_period: Optional[int] = None,
    telemetry_metadata: Optional[dict[str, Any]] = None,
) -> EnqueueResult:
    """Enqueue a sync job for one connection. Flushes but does not commit."""
    args = {
        "connection_id": connection.id,
        "mode": mode,
        "telemetry_metadata": _telemetry_metadata(connection, mode, telemetry_metadata),
    }
    return JobQueue.enqueue(
        db,
        SYNC_JOB,
        args,
        unique_key=sync_unique_key(connection.id),
        schedule_in=schedule_in,
        unique_period=unique_period,
    )


def schedule_initial_sync(db: Session, connection: Connection) -> EnqueueResult:
    """Enqueue the first sync after a connection is created."""
    return enqueue_connection_sync(
        db, connection, "initial", unique_period=INITIAL_SYNC_UNIQUE_PERIOD
    )


def schedule_incremental_sync(
    db: Session,
    connection: Connection,
    schedule_in: Optional[int] = None,
    unique_period: Optional[int] = None,
    telemetry_metadata: Optional[dict[str, Any]] = None,
) -> EnqueueResult:
    return enqueue_connection_sync(
        db,
        connection,
        "incremental",
        schedule_in=schedule_in,
        unique_period=unique_period,
        telemetry_metadata=telemetry_metadata,
    )


def schedule_dispatch(db: Session, schedule_in: Optional[int] = None) -> EnqueueResult:
    """Enqueue a dispatch job that fans out to every due connection."""
    return JobQueue.enqueue(
        db,
        DISPATCH_JOB,
        {"mode": DISPATCH_JOB, "schedule_in": 0},
        unique_key=DISPATCH_UNIQUE_KEY,
        schedule_in=schedule_in,
    )


def dispatch_incremental_syncs(
    db: Session,
    schedule_in: int = 0,
    unique_period: Optional[int] = None,
) -> list[EnqueueResult]:
    """Enqueue an incremental sync for every connection due for one.

    Connections that already have a queued or running sync are skipped
    by the unique key. Flushes but does not commit.
    """
    connections = ConnectionService.list_connections_for_sync(
        db, settings.SYNC_INTERVAL_SECONDS
    )
    results = [
        schedule_incremental_sync(
            db,
            connection,
            schedule_in=schedule_in or None,
            unique_period=unique_period,
            telemetry_metadata={"source": "dispatch"},
        )
        for connection in connections
    ]
    enqueued = sum(1 for r in results if not r.duplicate)
    logger.info(
        "Dispatch: %d connections due, %d enqueued, %d already queued",
        len(connections), enqueued, len(results) - enqueued,
    )
    return results
