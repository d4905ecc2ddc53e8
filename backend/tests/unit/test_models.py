"""Tests for model validators, properties and constraints."""

import hashlib
from decimal import Decimal

import pytest
from sqlalchemy.exc import IntegrityError

from models import Account, Connection, ModelValidationError, SyncJob, Transaction
from models.sync_job import ACTIVE_STATES, CLAIMABLE_STATES
from models.utils import validate_max_length
from tests.fixtures import create_connection


class TestValidateMaxLength:
    def test_within_limit(self):
        assert validate_max_length("name", "abc", 3) == "abc"

    def test_none_passes(self):
        assert validate_max_length("name", None, 3) is None

    def test_too_long(self):
        with pytest.raises(ModelValidationError) as exc_info:
            validate_max_length("name", "abcd", 3)
        assert exc_info.value.field == "name"
        assert exc_info.value.message == "should be at most 3 character(s)"


class TestConnection:
    def test_is_revoked_by_status(self):
        conn = Connection(user_id="u", institution_id="i", connection_metadata={"status": "revoked"})
        assert conn.is_revoked is True

    def test_is_revoked_by_timestamp(self):
        conn = Connection(
            user_id="u", institution_id="i", connection_metadata={"revoked_at": "2024-01-01"}
        )
        assert conn.is_revoked is True

    def test_not_revoked(self):
        conn = Connection(user_id="u", institution_id="i", connection_metadata={"status": "active"})
        assert conn.is_revoked is False

    def test_metadata_none_becomes_empty(self):
        conn = Connection(user_id="u", institution_id="i", connection_metadata=None)
        assert conn.connection_metadata == {}
        assert conn.is_revoked is False

    def test_metadata_must_be_map(self):
        with pytest.raises(ModelValidationError, match="metadata"):
            Connection(user_id="u", institution_id="i", connection_metadata=["x"])

    def test_webhook_secret_sets_hash(self):
        conn = Connection(user_id="u", institution_id="i", webhook_secret="s3cret")
        assert conn.webhook_secret_hash == hashlib.sha256(b"s3cret").hexdigest()

    def test_clearing_webhook_secret_clears_hash(self):
        conn = Connection(user_id="u", institution_id="i", webhook_secret="s3cret")
        conn.webhook_secret = None
        assert conn.webhook_secret_hash is None

    def test_empty_webhook_secret_rejected(self):
        with pytest.raises(ModelValidationError):
            Connection(user_id="u", institution_id="i", webhook_secret="")

    def test_blank_accounts_cursor_becomes_none(self):
        conn = Connection(user_id="u", institution_id="i", accounts_cursor="   ")
        assert conn.accounts_cursor is None

    def test_accounts_cursor_too_long(self):
        with pytest.raises(ModelValidationError, match="accounts_cursor"):
            Connection(user_id="u", institution_id="i", accounts_cursor="c" * 1025)

    def test_identifier_too_long(self):
        with pytest.raises(ModelValidationError, match="enrollment_id"):
            Connection(user_id="u", institution_id="i", enrollment_id="e" * 121)

    def test_user_institution_unique(self, db):
        create_connection(db, user_id="user-1", institution_id="inst-1")
        db.add(Connection(user_id="user-1", institution_id="inst-1", connection_metadata={}))
        with pytest.raises(IntegrityError):
            db.flush()
        db.rollback()


class TestAccountAndTransaction:
    def test_account_name_too_long(self):
        with pytest.raises(ModelValidationError, match="name"):
            Account(user_id="u", external_id="a", name="n" * 256, currency="USD")

    def test_account_user_external_id_unique(self, db):
        db.add(Account(user_id="u", external_id="acct-1", name="A", currency="USD"))
        db.flush()
        db.add(Account(user_id="u", external_id="acct-1", name="B", currency="USD"))
        with pytest.raises(IntegrityError):
            db.flush()
        db.rollback()

    def test_transaction_account_external_id_unique(self, db):
        from datetime import datetime

        account = Account(user_id="u", external_id="acct-1", name="A", currency="USD")
        db.add(account)
        db.flush()
        for _ in range(2):
            db.add(
                Transaction(
                    account_id=account.id,
                    external_id="txn-1",
                    amount=Decimal("-1.00"),
                    currency="USD",
                    posted_at=datetime(2024, 2, 1),
                )
            )
        with pytest.raises(IntegrityError):
            db.flush()
        db.rollback()

    def test_transaction_description_too_long(self):
        with pytest.raises(ModelValidationError, match="description"):
            Transaction(description="d" * 513)


class TestSyncJob:
    def test_claimable_states_are_active(self):
        assert set(CLAIMABLE_STATES) < set(ACTIVE_STATES)
        assert "executing" in ACTIVE_STATES
        assert "completed" not in ACTIVE_STATES

    def test_defaults(self, db):
        job = SyncJob(kind="sync", args={"connection_id": "c"})
        db.add(job)
        db.flush()
        assert job.state == "available"
        assert job.attempt == 0
        assert job.errors == []
        assert job.is_active is True

    def test_finished_job_is_not_active(self):
        assert SyncJob(kind="sync", state="completed").is_active is False
        assert SyncJob(kind="sync", state="discarded").is_active is False
