"""Transaction model - local projection of an aggregator transaction."""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Numeric, String, UniqueConstraint
from sqlalchemy.orm import relationship, validates

from database import Base
from models.utils import generate_uuid, utc_now, validate_max_length


class Transaction(Base):
    """A posted or pending transaction on an account.

    Deduplicated via the (account_id, external_id) unique constraint.
    Amount and currency may be overwritten by later syncs when the
    provider corrects a record.
    """

    __tablename__ = "transactions"
    __table_args__ = (
        UniqueConstraint(
            "account_id", "external_id", name="uix_transaction_account_external_id"
        ),
    )

    id = Column(String(36), primary_key=True, default=generate_uuid)
    account_id = Column(
        String(36), ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    external_id = Column(String, nullable=False)
    amount = Column(Numeric(18, 4), nullable=False)
    currency = Column(String(3), nullable=False)
    type = Column(String(64), nullable=True)
    posted_at = Column(DateTime, nullable=False)
    settled_at = Column(DateTime, nullable=True)
    description = Column(String(512), nullable=True)
    category = Column(String(128), nullable=True)
    merchant_name = Column(String(255), nullable=True)
    status = Column(String(32), nullable=False, default="posted")  # "posted" | "pending"
    details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=utc_now)
    updated_at = Column(DateTime, default=utc_now, onupdate=utc_now)

    # Relationships
    account = relationship("Account", back_populates="transactions")

    @validates("description")
    def _validate_description(self, key, value):
        return validate_max_length(key, value, 512)

    @validates("category")
    def _validate_category(self, key, value):
        return validate_max_length(key, value, 128)

    @validates("merchant_name")
    def _validate_merchant_name(self, key, value):
        return validate_max_length(key, value, 255)
