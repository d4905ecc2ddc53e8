"""Pydantic schemas for sync and webhook endpoints."""

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel


class WebhookResponse(BaseModel):
    """Acknowledgement for an authenticated webhook delivery."""

    status: Literal["ok", "ignored"]
    reason: Optional[str] = None


class SyncJobResponse(BaseModel):
    """A queued sync job."""

    id: str
    kind: str
    state: str
    attempt: int
    max_attempts: int
    scheduled_at: datetime
    attempted_at: Optional[datetime] = None
    args: dict[str, Any] = {}

    model_config = {"from_attributes": True}


class SyncTriggerResponse(BaseModel):
    """Response for a manual sync request."""

    status: Literal["enqueued", "already_enqueued"]
    job_id: str


class SyncStatusResponse(BaseModel):
    """Sync bookkeeping for one connection."""

    connection_id: str
    last_synced_at: Optional[datetime] = None
    last_sync_error: Optional[dict[str, Any]] = None
    last_sync_error_at: Optional[datetime] = None
    revoked: bool
    has_accounts_cursor: bool
    has_transactions_cursor: bool
    account_count: int
    transaction_count: int
    active_job: Optional[SyncJobResponse] = None
