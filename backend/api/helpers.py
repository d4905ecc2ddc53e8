"""Shared API helpers for route handlers.

Lookups and aggregate queries used by the connection routes.
"""

from typing import TypeVar

from fastapi import HTTPException
from sqlalchemy import func
from sqlalchemy.orm import Session

from database import Base
from models import Account, Connection, Transaction

T = TypeVar("T", bound=Base)


def get_or_404(db: Session, model: type[T], entity_id: str, detail: str = "Not found") -> T:
    """Fetch a single entity by primary key or raise 404.

    Raises:
        HTTPException: 404 if the entity doesn't exist.
    """
    entity = db.get(model, entity_id)
    if entity is None:
        raise HTTPException(status_code=404, detail=detail)
    return entity


def get_syncable_connection(db: Session, connection_id: str) -> Connection:
    """Fetch a connection that may be synced.

    Raises:
        HTTPException:
            - 404 Not Found: Connection doesn't exist
            - 409 Conflict: Connection is revoked
    """
    connection = get_or_404(db, Connection, connection_id, "Connection not found")
    if connection.is_revoked:
        raise HTTPException(status_code=409, detail="Connection is revoked")
    return connection


def count_synced_rows(db: Session, connection_id: str) -> tuple[int, int]:
    """Return (accounts, transactions) stored for a connection."""
    account_count = (
        db.query(func.count(Account.id))
        .filter(Account.connection_id == connection_id)
        .scalar()
    )
    transaction_count = (
        db.query(func.count(Transaction.id))
        .join(Account, Transaction.account_id == Account.id)
        .filter(Account.connection_id == connection_id)
        .scalar()
    )
    return account_count or 0, transaction_count or 0
