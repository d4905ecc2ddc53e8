"""Connection lookup and lifecycle helpers."""

import logging
import secrets
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

from models import Connection, utc_now

logger = logging.getLogger(__name__)


class ConnectionService:
    """Service for reading and updating connection state outside a sync."""

    @staticmethod
    def get_connection(db: Session, connection_id: str) -> Connection | None:
        """Get a connection by ID."""
        return db.query(Connection).filter(Connection.id == connection_id).first()

    @staticmethod
    def list_connections_for_sync(
        db: Session,
        interval_seconds: int,
        now: Optional[datetime] = None,
    ) -> list[Connection]:
        """List connections due for an incremental sync.

        A connection is due when it is not revoked and has either never
        synced or last synced more than ``interval_seconds`` ago.
        """
        now = now or utc_now()
        # SQLite stores naive datetimes; compare in naive UTC
        cutoff = (now - timedelta(seconds=interval_seconds)).replace(tzinfo=None)
        candidates = (
            db.query(Connection)
            .filter(
                or_(
                    Connection.last_synced_at.is_(None),
                    Connection.last_synced_at <= cutoff,
                )
            )
            .order_by(Connection.created_at)
            .all()
        )
        return [c for c in candidates if not c.is_revoked]

    @staticmethod
    def mark_revoked(
        db: Session,
        connection: Connection,
        reason: str | None = None,
        revoked_at: datetime | None = None,
    ) -> Connection:
        """Mark a connection as revoked. Webhooks and syncs skip it afterwards."""
        metadata = dict(connection.connection_metadata or {})
        metadata["status"] = "revoked"
        metadata["revoked_at"] = (revoked_at or utc_now()).isoformat()
        if reason is not None:
            metadata["revocation_reason"] = reason
        connection.connection_metadata = metadata
        db.flush()
        logger.info("Connection %s marked revoked", connection.id)
        return connection

    @staticmethod
    def mark_active(db: Session, connection: Connection) -> Connection:
        """Clear the revoked status on a connection."""
        metadata = dict(connection.connection_metadata or {})
        metadata.pop("revoked_at", None)
        metadata.pop("revocation_reason", None)
        metadata["status"] = "active"
        connection.connection_metadata = metadata
        db.flush()
        logger.info("Connection %s marked active", connection.id)
        return connection

    @staticmethod
    def rotate_webhook_secret(db: Session, connection: Connection) -> str:
        """Generate and store a new per-connection webhook secret.

        Returns:
            The new secret. Only its hash is logged.
        """
        secret = secrets.token_urlsafe(32)
        connection.webhook_secret = secret
        db.flush()
        logger.info(
            "Rotated webhook secret for connection %s (hash %s...)",
            connection.id, connection.webhook_secret_hash[:8],
        )
        return secret
