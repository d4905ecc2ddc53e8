"""Mock implementations for external services."""

from typing import Any, Optional

from integrations.aggregator_protocol import Page

SAMPLE_ACCOUNT = {
    "id": "acct-1",
    "name": "Checking",
    "type": "depository",
    "subtype": "checking",
    "currency": "USD",
    "balances": {"current": "42.00", "available": "40.00"},
}

SAMPLE_TRANSACTION = {
    "id": "txn-1",
    "amount": "-1.00",
    "currency": "USD",
    "posted_at": "2024-02-01T00:00:00Z",
    "description": "Coffee",
    "status": "posted",
}


class StubAggregatorClient:
    """In-memory stand-in for the aggregator API.

    Pages are keyed by the cursor that requests them; ``None`` is the
    first page. A page is a ``(items, next_cursor)`` tuple. An entry in
    ``errors`` keyed the same way is raised instead of returning a page.

    Example::

        StubAggregatorClient(
            accounts={None: ([acct], None)},
            transactions={"acct-1": {None: ([t1], "c1"), "c1": ([t2], None)}},
        )
    """

    def __init__(
        self,
        accounts: Optional[dict[Optional[str], tuple[list[dict], Optional[str]]]] = None,
        transactions: Optional[dict[str, dict[Optional[str], tuple[list[dict], Optional[str]]]]] = None,
        account_errors: Optional[dict[Optional[str], Exception]] = None,
        transaction_errors: Optional[dict[tuple[str, Optional[str]], Exception]] = None,
    ):
        self.accounts = accounts if accounts is not None else {None: ([], None)}
        self.transactions = transactions or {}
        self.account_errors = account_errors or {}
        self.transaction_errors = transaction_errors or {}
        self.account_calls: list[dict[str, Any]] = []
        self.transaction_calls: list[tuple[str, dict[str, Any]]] = []

    def list_accounts(self, params: dict[str, Any]) -> Page:
        self.account_calls.append(dict(params))
        cursor = params.get("cursor")
        if cursor in self.account_errors:
            raise self.account_errors[cursor]
        items, next_cursor = self.accounts.get(cursor, ([], None))
        return Page(items=[dict(item) for item in items], next_cursor=next_cursor)

    def list_transactions(self, account_external_id: str, params: dict[str, Any]) -> Page:
        self.transaction_calls.append((account_external_id, dict(params)))
        cursor = params.get("cursor")
        if (account_external_id, cursor) in self.transaction_errors:
            raise self.transaction_errors[(account_external_id, cursor)]
        pages = self.transactions.get(account_external_id, {})
        items, next_cursor = pages.get(cursor, ([], None))
        return Page(items=[dict(item) for item in items], next_cursor=next_cursor)


class RecordingSyncService:
    """SyncService stand-in that records calls and raises a preset error."""

    def __init__(self, error: Optional[Exception] = None):
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def sync(self, db, connection, mode="incremental", telemetry_metadata=None):
        self.calls.append({
            "connection_id": connection.id,
            "mode": mode,
            "telemetry_metadata": telemetry_metadata,
        })
        if self.error is not None:
            raise self.error
        return None
