"""Replay protection for webhook deliveries.

Processed nonces are kept on the connection itself, under the reserved
``webhook`` key of its metadata map::

    {"nonces": {nonce: recorded_at_iso}, "last_event": str, "last_received_at": iso}

Entries older than the retention window, measured from the timestamp of
the event being recorded rather than the wall clock, are pruned each
time a new event is recorded. This keeps the map bounded without a
dedicated table.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy.orm import Session

from integrations.parsing_utils import parse_iso_datetime
from models import Connection

logger = logging.getLogger(__name__)

METADATA_KEY = "webhook"
DEFAULT_RETENTION_SECONDS = 86_400


@dataclass
class NonceLedger:
    """In-memory view of a connection's webhook ledger."""

    nonces: dict[str, str] = field(default_factory=dict)
    last_event: Optional[str] = None
    last_received_at: Optional[str] = None

    @classmethod
    def from_metadata(cls, metadata: Optional[dict]) -> "NonceLedger":
        section = (metadata or {}).get(METADATA_KEY)
        if not isinstance(section, dict):
            return cls()
        nonces = section.get("nonces")
        return cls(
            nonces=dict(nonces) if isinstance(nonces, dict) else {},
            last_event=section.get("last_event"),
            last_received_at=section.get("last_received_at"),
        )

    def to_metadata(self) -> dict[str, Any]:
        return {
            "nonces": dict(self.nonces),
            "last_event": self.last_event,
            "last_received_at": self.last_received_at,
        }

    def contains(self, nonce: str) -> bool:
        return nonce in self.nonces

    def prune(self, event_timestamp: datetime, retention_seconds: int) -> int:
        """Drop entries recorded more than ``retention_seconds`` before the event.

        Entries with an unparseable timestamp are dropped too. A retention
        of zero or less disables pruning.

        Returns:
            Number of entries removed.
        """
        if retention_seconds <= 0:
            return 0
        kept = {}
        for nonce, recorded_at in self.nonces.items():
            recorded = parse_iso_datetime(recorded_at)
            if recorded is None:
                continue
            if (event_timestamp - recorded).total_seconds() <= retention_seconds:
                kept[nonce] = recorded_at
        removed = len(self.nonces) - len(kept)
        self.nonces = kept
        return removed

    def record(self, nonce: str, event_timestamp: datetime, event: Optional[str]) -> None:
        recorded_at = event_timestamp.isoformat()
        self.nonces[nonce] = recorded_at
        self.last_event = event
        self.last_received_at = recorded_at


def nonce_processed(connection: Connection, nonce: str) -> bool:
    """True if ``nonce`` has already been recorded for the connection."""
    return NonceLedger.from_metadata(connection.connection_metadata).contains(nonce)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def record_event(
    db: Session,
    connection: Connection,
    nonce: str,
    event_timestamp: datetime,
    summary: dict[str, Any],
    retention_seconds: int = DEFAULT_RETENTION_SECONDS,
) -> Connection:
    """Record a processed webhook nonce on the connection.

    Re-reads the connection row with ``SELECT ... FOR UPDATE`` (a no-op on
    SQLite) so concurrent deliveries for the same connection serialize,
    prunes the ledger, inserts the nonce and updates the last-event
    summary. Flushes but does not commit.

    Args:
        db: Database session.
        connection: Connection the webhook targets.
        nonce: Delivery nonce.
        event_timestamp: Signed timestamp of the delivery.
        summary: Parsed webhook body; only ``event`` is stored.
        retention_seconds: Nonce retention window; ``<= 0`` disables pruning.

    Returns:
        The locked, updated connection.
    """
    locked = (
        db.query(Connection)
        .filter(Connection.id == connection.id)
        .populate_existing()
        .with_for_update()
        .one()
    )

    event_timestamp = _as_utc(event_timestamp)
    metadata = dict(locked.connection_metadata or {})
    ledger = NonceLedger.from_metadata(metadata)
    removed = ledger.prune(event_timestamp, retention_seconds)
    event = summary.get("event")
    ledger.record(nonce, event_timestamp, event if isinstance(event, str) else None)

    metadata[METADATA_KEY] = ledger.to_metadata()
    locked.connection_metadata = metadata
    db.flush()

    logger.debug(
        "Recorded webhook nonce for connection %s (%d pruned, %d retained)",
        locked.id, removed, len(ledger.nonces),
    )
    return locked
