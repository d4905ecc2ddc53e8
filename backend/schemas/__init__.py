"""Pydantic request/response schemas."""

from schemas.sync import (
    SyncJobResponse,
    SyncStatusResponse,
    SyncTriggerResponse,
    WebhookResponse,
)

__all__ = [
    "SyncJobResponse",
    "SyncStatusResponse",
    "SyncTriggerResponse",
    "WebhookResponse",
]
