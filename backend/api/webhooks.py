"""Inbound aggregator webhook endpoint."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from api.rate_limiter import RateLimiter, get_webhook_rate_limiter
from config import settings
from database import get_db
from schemas import WebhookResponse
from services.audit_service import audit_log
from services.webhook_service import (
    InvalidSignature,
    StaleTimestamp,
    WebhookError,
    WebhookProcessingError,
    WebhookService,
    verify_webhook,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/webhooks", tags=["webhooks"])


def get_webhook_service() -> WebhookService:
    """Get WebhookService instance. Tests override this dependency."""
    return WebhookService()


async def read_raw_body(request: Request) -> bytes:
    """Capture the request body before anything parses it.

    The signature covers the exact bytes sent, so verification must see
    them unmodified.
    """
    return await request.body()


def _remote_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


@router.post("/aggregator", response_model=WebhookResponse)
def receive_webhook(
    request: Request,
    raw_body: bytes = Depends(read_raw_body),
    db: Session = Depends(get_db),
    rate_limiter: RateLimiter = Depends(get_webhook_rate_limiter),
    webhook_service: WebhookService = Depends(get_webhook_service),
):
    """Receive an aggregator webhook and enqueue a sync for its connection.

    Authenticated deliveries always get 200, including duplicates and
    deliveries for unknown or revoked connections, so the aggregator does
    not keep redelivering them.

    Raises:
        HTTPException:
            - 400 Bad Request: Bad signature, stale timestamp, or malformed body
            - 429 Too Many Requests: Per-IP rate limit exceeded
            - 500 Internal Server Error: Nonce could not be recorded or sync not enqueued
    """
    client_ip = _remote_ip(request)
    base_metadata = {"source": "webhook", "remote_ip": client_ip}

    if not rate_limiter.check(("webhook", client_ip)):
        audit_log("webhook_rate_limited", base_metadata)
        raise HTTPException(status_code=429, detail="rate limit exceeded")

    if not raw_body:
        audit_log("webhook_invalid_payload", base_metadata)
        raise HTTPException(status_code=400, detail="missing request body")

    try:
        webhook = verify_webhook(
            raw_body,
            request.headers.get(settings.WEBHOOK_SIGNATURE_HEADER),
            settings.WEBHOOK_SECRET,
        )
    except WebhookError as e:
        event = (
            "webhook_signature_invalid"
            if isinstance(e, (InvalidSignature, StaleTimestamp))
            else "webhook_invalid_payload"
        )
        audit_log(event, {**base_metadata, "reason": e.code})
        raise HTTPException(status_code=400, detail=e.message)

    try:
        outcome = webhook_service.handle(db, webhook, base_metadata)
    except WebhookProcessingError as e:
        raise HTTPException(status_code=500, detail=e.message)

    return WebhookResponse(status=outcome.status, reason=outcome.reason)
