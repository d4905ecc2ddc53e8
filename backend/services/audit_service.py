"""Audit events for sync and webhook activity.

Events go to the ``audit`` logger as one line each. Metadata is reduced
to a fixed set of identifier and counter keys before it is written, so
credentials, account numbers and provider payloads never reach the log
even when a caller passes them in.
"""

import json
import logging
from typing import Any, Optional

audit_logger = logging.getLogger("audit")

ALLOWED_METADATA_KEYS = frozenset({
    "accounts_synced",
    "attempt",
    "connection_id",
    "duration_ms",
    "error",
    "event",
    "institution_id",
    "job_id",
    "mode",
    "nonce",
    "reason",
    "remote_ip",
    "retry_after",
    "source",
    "status",
    "transactions_synced",
    "user_id",
})


def filter_metadata(metadata: Optional[dict[str, Any]]) -> dict[str, Any]:
    """Drop keys outside the whitelist and values that are not scalars."""
    if not metadata:
        return {}
    return {
        key: value
        for key, value in metadata.items()
        if key in ALLOWED_METADATA_KEYS
        and value is not None
        and isinstance(value, (str, int, float, bool))
    }


def audit_log(event: str, metadata: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """Emit an audit event and return the metadata that was written."""
    safe = filter_metadata(metadata)
    audit_logger.info("%s %s", event, json.dumps(safe, sort_keys=True, default=str))
    return safe
