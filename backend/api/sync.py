"""Connection sync API endpoints."""

import logging
from typing import Literal

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from api.helpers import count_synced_rows, get_or_404, get_syncable_connection
from database import get_db
from models import Connection
from schemas import SyncJobResponse, SyncStatusResponse, SyncTriggerResponse
from services.job_queue import JobQueue
from services.scheduling_service import enqueue_connection_sync, sync_unique_key

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/connections", tags=["sync"])


@router.post(
    "/{connection_id}/sync",
    response_model=SyncTriggerResponse,
    status_code=202,
)
def trigger_sync(
    connection_id: str,
    mode: Literal["incremental", "full"] = "incremental",
    db: Session = Depends(get_db),
):
    """Queue a sync for one connection.

    Returns ``already_enqueued`` with the existing job when a sync for the
    connection is already queued or running.

    Raises:
        HTTPException:
            - 404 Not Found: Connection doesn't exist
            - 409 Conflict: Connection is revoked
    """
    connection = get_syncable_connection(db, connection_id)

    result = enqueue_connection_sync(
        db, connection, mode, telemetry_metadata={"source": "api"}
    )
    db.commit()

    status = "already_enqueued" if result.duplicate else "enqueued"
    logger.info("Manual %s sync for connection %s: %s", mode, connection_id, status)
    return SyncTriggerResponse(status=status, job_id=result.job.id)


@router.get("/{connection_id}/sync", response_model=SyncStatusResponse)
def get_sync_status(connection_id: str, db: Session = Depends(get_db)):
    """Get last-sync bookkeeping and any queued job for a connection.

    Raises:
        HTTPException: 404 if the connection doesn't exist.
    """
    connection = get_or_404(db, Connection, connection_id, "Connection not found")
    account_count, transaction_count = count_synced_rows(db, connection.id)
    active_job = JobQueue.get_active(db, sync_unique_key(connection.id))

    return SyncStatusResponse(
        connection_id=connection.id,
        last_synced_at=connection.last_synced_at,
        last_sync_error=connection.last_sync_error,
        last_sync_error_at=connection.last_sync_error_at,
        revoked=connection.is_revoked,
        has_accounts_cursor=connection.accounts_cursor is not None,
        has_transactions_cursor=connection.transactions_cursor is not None,
        account_count=account_count,
        transaction_count=transaction_count,
        active_job=SyncJobResponse.model_validate(active_job) if active_job else None,
    )
