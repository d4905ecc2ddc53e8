"""Connection model - a user's authorized link to one institution."""

import hashlib

from sqlalchemy import JSON, Column, DateTime, LargeBinary, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship, validates

from database import Base
from models.utils import ModelValidationError, generate_uuid, utc_now, validate_max_length


class Connection(Base):
    """An aggregator enrollment linking one user to one institution.

    Holds the sync cursors and last-sync bookkeeping for the synchronizer,
    and a free-form ``metadata`` map. The ``webhook`` key of that map is
    reserved for the nonce ledger (see ``services.nonce_ledger``).
    """

    __tablename__ = "institution_connections"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "institution_id", name="uix_connection_user_institution"
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    institution_id = Column(String(36), nullable=False)
    encrypted_credentials = Column(LargeBinary, nullable=True)
    enrollment_id = Column(String(120), nullable=True, unique=True)
    external_user_id = Column(String(120), nullable=True)

    # Sync state
    accounts_cursor = Column(String(1024), nullable=True)
    transactions_cursor = Column(Text, nullable=True)  # cursor_codec encoded
    last_synced_at = Column(DateTime, nullable=True)
    last_sync_error = Column(JSON, nullable=True)
    last_sync_error_at = Column(DateTime, nullable=True)

    webhook_secret = Column(String, nullable=True)
    webhook_secret_hash = Column(String(64), nullable=True)
    connection_metadata = Column("metadata", JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    accounts = relationship("Account", back_populates="connection")

    @validates("enrollment_id", "external_user_id")
    def _validate_identifier(self, key, value):
        return validate_max_length(key, value, 120)

    @validates("accounts_cursor")
    def _validate_accounts_cursor(self, key, value):
        if isinstance(value, str):
            value = value.strip() or None
        return validate_max_length(key, value, 1024)

    @validates("webhook_secret")
    def _validate_webhook_secret(self, key, value):
        if value is None:
            self.webhook_secret_hash = None
            return value
        if not isinstance(value, str) or not value:
            raise ModelValidationError(key, "must be a non-empty string")
        self.webhook_secret_hash = hashlib.sha256(value.encode("utf-8")).hexdigest()
        return value

    @validates("connection_metadata")
    def _validate_metadata(self, key, value):
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ModelValidationError("metadata", "must be a map")
        return value

    @property
    def is_revoked(self) -> bool:
        """True when the connection has been revoked upstream."""
        metadata = self.connection_metadata or {}
        return metadata.get("status") == "revoked" or "revoked_at" in metadata
