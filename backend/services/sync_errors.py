"""Typed errors returned by a failed sync.

One class per failure kind. ``to_dict()`` produces the structure stored
in ``Connection.last_sync_error``. Only identifiers and error tags are
carried; raw provider payloads never are.
"""

from typing import Any, Optional


class SyncError(Exception):
    """Base class for sync failures."""

    kind = "sync_error"

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)

    def fields(self) -> dict[str, Any]:
        return {}

    def to_dict(self) -> dict[str, Any]:
        data = {"type": self.kind}
        data.update({k: v for k, v in self.fields().items() if v is not None})
        return data


class RateLimitedError(SyncError):
    """The aggregator answered HTTP 429."""

    kind = "rate_limited"

    def __init__(self, retry_after: Optional[int] = None, details: Optional[dict] = None):
        self.retry_after = retry_after
        self.status = 429
        self.details = details or None
        super().__init__(f"rate limited (retry_after={retry_after})")

    def fields(self):
        return {"status": self.status, "retry_after": self.retry_after, "details": self.details}


class AggregatorHTTPError(SyncError):
    """Non-2xx, non-429 response from the aggregator."""

    kind = "http"

    def __init__(self, status: Optional[int], details: Optional[dict] = None):
        self.status = status
        self.details = details or None
        super().__init__(f"aggregator returned HTTP {status}")

    def fields(self):
        return {"status": self.status, "details": self.details}


class AggregatorTransportError(SyncError):
    """Network failure talking to the aggregator."""

    kind = "transport"

    def __init__(self, reason: str = ""):
        self.reason = reason or None
        super().__init__(f"transport error: {reason}")

    def fields(self):
        return {"reason": self.reason}


class UnexpectedSyncError(SyncError):
    kind = "unexpected"

    def __init__(self, message: str):
        self.detail = message
        super().__init__(message)

    def fields(self):
        return {"message": self.detail}


class PersistenceError(SyncError):
    """A local row failed validation. ``errors`` maps field -> messages."""

    kind = "persistence"

    def __init__(self, errors: dict[str, list[str]]):
        self.errors = errors
        super().__init__(f"persistence error: {', '.join(sorted(errors))}")

    def fields(self):
        return {"errors": self.errors}


class SyncValidationError(SyncError):
    """A provider record failed validation. Aborts the whole sync."""

    kind = "validation"


class MissingAccountIdentifier(SyncValidationError):
    kind = "missing_account_identifier"

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        super().__init__(f"account without id on connection {connection_id}")

    def fields(self):
        return {"connection_id": self.connection_id}


class InvalidAccountCurrency(SyncValidationError):
    kind = "invalid_account_currency"

    def __init__(self, connection_id: str, account_id: str, currency: Optional[str]):
        self.connection_id = connection_id
        self.account_id = account_id
        self.currency = currency
        super().__init__(f"account {account_id} has invalid currency {currency!r}")

    def fields(self):
        return {
            "connection_id": self.connection_id,
            "account_id": self.account_id,
            "currency": self.currency,
        }


class MissingTransactionIdentifier(SyncValidationError):
    kind = "missing_transaction_identifier"

    def __init__(self, account_id: str):
        self.account_id = account_id
        super().__init__(f"transaction without id on account {account_id}")

    def fields(self):
        return {"account_id": self.account_id}


class InvalidTransactionAmount(SyncValidationError):
    kind = "invalid_transaction_amount"

    def __init__(self, account_id: str, transaction_id: str):
        self.account_id = account_id
        self.transaction_id = transaction_id
        super().__init__(f"transaction {transaction_id} has an invalid amount")

    def fields(self):
        return {"account_id": self.account_id, "transaction_id": self.transaction_id}


class InvalidTransactionCurrency(SyncValidationError):
    kind = "invalid_transaction_currency"

    def __init__(self, account_id: str, transaction_id: str, currency: Optional[str]):
        self.account_id = account_id
        self.transaction_id = transaction_id
        self.currency = currency
        super().__init__(f"transaction {transaction_id} has invalid currency {currency!r}")

    def fields(self):
        return {
            "account_id": self.account_id,
            "transaction_id": self.transaction_id,
            "currency": self.currency,
        }
