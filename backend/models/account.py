"""Account model - local projection of an aggregator account."""

from sqlalchemy import Column, DateTime, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship, validates

from database import Base
from models.utils import generate_uuid, utc_now, validate_max_length


class Account(Base):
    """A bank or card account fetched from the aggregator.

    The combination of user_id + external_id uniquely identifies an account,
    so repeated syncs update the same row instead of inserting duplicates.
    """

    __tablename__ = "accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "external_id", name="uix_account_user_external_id"),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    user_id = Column(String(36), nullable=False, index=True)
    institution_id = Column(String(36), nullable=True)
    connection_id = Column(
        String(36),
        ForeignKey("institution_connections.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    external_id = Column(String, nullable=False)  # Aggregator's account ID
    name = Column(String(255), nullable=False)
    currency = Column(String(3), nullable=False)
    type = Column(String(64), nullable=True)
    subtype = Column(String(64), nullable=True)
    current_balance = Column(Numeric(18, 4), nullable=True)
    available_balance = Column(Numeric(18, 4), nullable=True)
    credit_limit = Column(Numeric(18, 4), nullable=True)
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    # Relationships
    connection = relationship("Connection", back_populates="accounts")
    transactions = relationship(
        "Transaction", back_populates="account", cascade="all, delete-orphan"
    )

    @validates("name")
    def _validate_name(self, key, value):
        return validate_max_length(key, value, 255)

    @validates("type", "subtype")
    def _validate_kind(self, key, value):
        return validate_max_length(key, value, 64)
