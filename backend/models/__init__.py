"""SQLAlchemy ORM models."""

from .account import Account
from .connection import Connection
from .sync_job import SyncJob
from .transaction import Transaction
from .utils import ModelValidationError, generate_uuid, utc_now

__all__ = ["Account", "Connection", "ModelValidationError", "SyncJob", "Transaction", "generate_uuid", "utc_now"]
