"""Webhook verification and handling.

Deliveries carry a signature header of the form
``t=<unix-seconds>,v1=<hex>[,v1=<hex>...]``. The signature is an
HMAC-SHA256 over ``"<t>.<raw body>"``; more than one ``v1`` value may be
sent while a secret is being rotated, and any match is accepted.
"""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from config import settings
from services import nonce_ledger
from services.audit_service import audit_log
from services.connection_service import ConnectionService
from services.scheduling_service import schedule_incremental_sync

logger = logging.getLogger(__name__)


class WebhookError(Exception):
    """A delivery that cannot be accepted. Never retried; answered with 400."""

    code = "webhook_error"
    message = "unable to process webhook"

    def __init__(self, message: Optional[str] = None):
        if message:
            self.message = message
        super().__init__(self.message)


class InvalidSignature(WebhookError):
    code = "invalid_signature"
    message = "invalid signature"


class StaleTimestamp(WebhookError):
    code = "stale_timestamp"
    message = "stale signature"


class InvalidPayload(WebhookError):
    code = "invalid_payload"
    message = "invalid payload"


class NonceMissing(WebhookError):
    code = "nonce_missing"
    message = "missing nonce"


class EventMissing(WebhookError):
    code = "event_missing"
    message = "missing event"


class ConnectionMissing(WebhookError):
    code = "connection_missing"
    message = "missing connection"


class WebhookProcessingError(Exception):
    """Recording the nonce or enqueueing the sync failed. Answered with 500."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


@dataclass
class VerifiedWebhook:
    timestamp: int
    nonce: str
    event: str
    connection_id: str
    payload: dict[str, Any]


@dataclass
class WebhookOutcome:
    status: str  # "ok" or "ignored"
    reason: Optional[str] = None
    job_id: Optional[str] = None


def parse_signature_header(header: Optional[str]) -> tuple[int, list[str]]:
    """Split a signature header into its timestamp and v1 signatures.

    Unknown fields are ignored. Raises InvalidSignature when the
    timestamp is missing or not an integer, or no v1 value is present.
    """
    if not header:
        raise InvalidSignature()

    timestamp: Optional[int] = None
    signatures: list[str] = []
    for part in header.split(","):
        key, sep, value = part.strip().partition("=")
        if not sep:
            continue
        value = value.strip()
        if key == "t":
            try:
                timestamp = int(value)
            except ValueError:
                raise InvalidSignature() from None
        elif key == "v1" and value:
            signatures.append(value.lower())

    if timestamp is None or not signatures:
        raise InvalidSignature()
    return timestamp, signatures


def compute_signature(secret: str, timestamp: int, raw_body: bytes) -> str:
    """Hex HMAC-SHA256 of ``"<timestamp>.<raw_body>"``."""
    signed = str(timestamp).encode("ascii") + b"." + raw_body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()


def _required_string(payload: dict, key: str, error: type[WebhookError]) -> str:
    value = payload.get(key)
    if not isinstance(value, str) or not value:
        raise error()
    return value


def verify_webhook(
    raw_body: bytes,
    signature_header: Optional[str],
    secret: str,
    now: Optional[float] = None,
    tolerance: Optional[int] = None,
) -> VerifiedWebhook:
    """Authenticate and parse a webhook delivery.

    Checks run in order: header format, timestamp freshness, signature,
    then the body. A stale timestamp is rejected even when the signature
    matches.

    Args:
        raw_body: Request body exactly as received.
        signature_header: Value of the signature header.
        secret: Shared signing secret.
        now: Current unix time (defaults to ``time.time()``).
        tolerance: Allowed clock skew in seconds, in either direction.

    Raises:
        WebhookError: A subclass naming the first check that failed.
    """
    timestamp, signatures = parse_signature_header(signature_header)

    now = time.time() if now is None else now
    tolerance = settings.WEBHOOK_TIMESTAMP_TOLERANCE_SECONDS if tolerance is None else tolerance
    if abs(now - timestamp) > tolerance:
        raise StaleTimestamp()

    if not secret:
        logger.error("Webhook secret is not configured; rejecting delivery")
        raise InvalidSignature()

    expected = compute_signature(secret, timestamp, raw_body).encode("ascii")
    if not any(hmac.compare_digest(expected, sig.encode("ascii", "replace")) for sig in signatures):
        raise InvalidSignature()

    try:
        payload = json.loads(raw_body)
    except (ValueError, UnicodeDecodeError):
        raise InvalidPayload() from None
    if not isinstance(payload, dict):
        raise InvalidPayload()

    return VerifiedWebhook(
        timestamp=timestamp,
        nonce=_required_string(payload, "nonce", NonceMissing),
        event=_required_string(payload, "event", EventMissing),
        connection_id=_required_string(payload, "connection_id", ConnectionMissing),
        payload=payload,
    )


class WebhookService:
    """Applies a verified webhook: replay check, nonce record, sync enqueue."""

    def __init__(self, retention_seconds: Optional[int] = None):
        self._retention = (
            retention_seconds
            if retention_seconds is not None
            else settings.WEBHOOK_NONCE_RETENTION_SECONDS
        )

    def handle(
        self,
        db: Session,
        webhook: VerifiedWebhook,
        base_metadata: Optional[dict[str, Any]] = None,
    ) -> WebhookOutcome:
        """Process a verified delivery and commit.

        Unknown, revoked and replayed deliveries are ignored rather than
        rejected so the provider stops redelivering them.

        Raises:
            WebhookProcessingError: If the nonce could not be recorded or
                the sync could not be enqueued. Nothing is committed.
        """
        metadata = {
            **(base_metadata or {}),
            "connection_id": webhook.connection_id,
            "event": webhook.event,
            "nonce": webhook.nonce,
        }

        connection = ConnectionService.get_connection(db, webhook.connection_id)
        if connection is None:
            audit_log("webhook_unknown_connection", metadata)
            return WebhookOutcome(status="ignored", reason="unknown_connection")
        if connection.is_revoked:
            audit_log("webhook_revoked_connection", metadata)
            return WebhookOutcome(status="ignored", reason="revoked")

        audit_log("webhook_received", metadata)
        if nonce_ledger.nonce_processed(connection, webhook.nonce):
            audit_log("webhook_replayed", metadata)
            return WebhookOutcome(status="ignored", reason="duplicate")

        event_time = datetime.fromtimestamp(webhook.timestamp, tz=timezone.utc)
        try:
            connection = nonce_ledger.record_event(
                db,
                connection,
                webhook.nonce,
                event_time,
                {"event": webhook.event},
                retention_seconds=self._retention,
            )
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to record webhook nonce: %s", e, exc_info=True)
            audit_log("webhook_record_failed", {**metadata, "error": type(e).__name__})
            raise WebhookProcessingError("record_failed", "failed to record webhook") from e

        try:
            result = schedule_incremental_sync(
                db,
                connection,
                telemetry_metadata={"source": "webhook", "event": webhook.event},
            )
            db.commit()
        except SQLAlchemyError as e:
            db.rollback()
            logger.error("Failed to enqueue webhook sync: %s", e, exc_info=True)
            audit_log("webhook_sync_failed", {**metadata, "error": type(e).__name__})
            raise WebhookProcessingError("enqueue_failed", "failed to enqueue sync") from e

        if result.duplicate:
            audit_log("webhook_duplicate_job", metadata)
            return WebhookOutcome(status="ignored", reason="already_enqueued", job_id=result.job.id)

        audit_log("webhook_processed", metadata)
        return WebhookOutcome(status="ok", job_id=result.job.id)
