"""Test fixtures and sample data."""
import json
import time

import pytest
from sqlalchemy.orm import Session

from models import Connection, SyncJob
from services.webhook_service import compute_signature

WEBHOOK_SECRET = "whsec_test_secret"


def create_connection(db: Session, **overrides) -> Connection:
    """Create and commit a connection.

    This is a helper function (not a fixture) for tests that need more
    than one connection or non-default fields.
    """
    values = {
        "user_id": "user-1",
        "institution_id": "inst-1",
        "enrollment_id": None,
        "external_user_id": "usr_teller_1",
        "connection_metadata": {},
    }
    values.update(overrides)
    connection = Connection(**values)
    db.add(connection)
    db.commit()
    db.refresh(connection)
    return connection


def signed_headers(
    body: bytes,
    secret: str = WEBHOOK_SECRET,
    timestamp: int | None = None,
    header: str = "teller-signature",
) -> dict[str, str]:
    """Build a signature header for ``body`` as the aggregator would."""
    ts = int(time.time()) if timestamp is None else timestamp
    return {header: f"t={ts},v1={compute_signature(secret, ts, body)}"}


def webhook_body(connection_id: str, nonce: str = "abc123", event: str = "transactions.processed") -> bytes:
    return json.dumps(
        {"connection_id": connection_id, "nonce": nonce, "event": event}
    ).encode("utf-8")


def jobs_for(db: Session, connection_id: str) -> list[SyncJob]:
    return [
        job for job in db.query(SyncJob).filter(SyncJob.kind == "sync").all()
        if (job.args or {}).get("connection_id") == connection_id
    ]


@pytest.fixture
def connection(db):
    """An active connection with no sync history."""
    return create_connection(db)


@pytest.fixture
def revoked_connection(db):
    """A connection revoked upstream."""
    return create_connection(
        db,
        user_id="user-2",
        institution_id="inst-2",
        connection_metadata={"status": "revoked", "revoked_at": "2024-01-01T00:00:00+00:00"},
    )


@pytest.fixture
def webhook_secret(monkeypatch):
    """Configure the global webhook signing secret."""
    monkeypatch.setattr("config.settings.WEBHOOK_SECRET", WEBHOOK_SECRET)
    return WEBHOOK_SECRET
