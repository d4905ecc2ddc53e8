"""Sync service - pulls accounts and transactions for one connection."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from integrations.aggregator_protocol import AggregatorClient, Page
from integrations.exceptions import (
    AggregatorAPIError,
    AggregatorConnectionError,
    AggregatorError,
)
from integrations.parsing_utils import parse_iso_datetime, parse_retry_after, to_decimal
from models import Account, Connection, ModelValidationError, Transaction, utc_now
from services.audit_service import audit_log
from services.cursor_codec import TransactionCursors, encode
from services.sync_errors import (
    AggregatorHTTPError,
    AggregatorTransportError,
    InvalidAccountCurrency,
    InvalidTransactionAmount,
    InvalidTransactionCurrency,
    MissingAccountIdentifier,
    MissingTransactionIdentifier,
    PersistenceError,
    RateLimitedError,
    SyncError,
    UnexpectedSyncError,
)
from utils.currency import normalize_code, valid_code

logger = logging.getLogger(__name__)

VALID_MODES = ("incremental", "initial", "full")


@dataclass
class SyncResult:
    """Outcome of a successful sync run."""

    connection: Connection
    accounts_synced: int
    transactions_synced: int
    accounts_cursor: Optional[str]
    transactions_cursor: Optional[str]


def _first(payload: Any, *paths: str) -> Any:
    """Return the first non-None value among dotted paths into a dict."""
    for path in paths:
        value = payload
        for key in path.split("."):
            if not isinstance(value, dict):
                value = None
                break
            value = value.get(key)
        if value is not None:
            return value
    return None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


class SyncService:
    """Synchronizes aggregator accounts and transactions into the local store.

    A run is all-or-nothing: every row it writes, and the advanced
    cursors, are committed in a single transaction. On failure the
    transaction is rolled back and only the error fields on the
    connection are updated, so the next run resumes from the previous
    cursors.
    """

    def __init__(self, client: Optional[AggregatorClient] = None):
        """Initialize with an optional client for dependency injection.

        Args:
            client: Aggregator client. If None, a TellerClient built from
                    settings is created on first use and closed by
                    ``close()``.
        """
        self._client = client
        self._owns_client = False
        self._client_lock = threading.Lock()

    @property
    def client(self) -> AggregatorClient:
        # Worker threads share one service
        with self._client_lock:
            if self._client is None:
                from integrations.teller_client import TellerClient

                self._client = TellerClient()
                self._owns_client = True
            return self._client

    def close(self) -> None:
        """Close the HTTP client if this service created it."""
        with self._client_lock:
            if self._owns_client and self._client is not None:
                self._client.close()
                self._client = None
                self._owns_client = False

    def sync(
        self,
        db: Session,
        connection: Connection,
        mode: str = "incremental",
        telemetry_metadata: Optional[dict[str, Any]] = None,
    ) -> SyncResult:
        """Run one sync cycle for a connection.

        Args:
            db: Database session. Committed (or rolled back) by this method.
            connection: Connection to sync, attached to ``db``.
            mode: "incremental" or "initial" resume from stored cursors;
                  "full" starts every resource from the beginning.
            telemetry_metadata: Extra identifiers for audit events
                                (e.g. ``source``, ``job_id``).

        Returns:
            SyncResult with counts and the cursors that were persisted.

        Raises:
            ValueError: If ``mode`` is not recognised.
            SyncError: On any failure. ``last_sync_error`` has already
                       been written and committed.
        """
        if mode not in VALID_MODES:
            raise ValueError(f"Unknown sync mode: {mode}")

        metadata = dict(telemetry_metadata or {})
        metadata.update({
            "connection_id": connection.id,
            "user_id": connection.user_id,
            "institution_id": connection.institution_id,
            "mode": mode,
        })
        connection_id = connection.id
        started = time.monotonic()

        audit_log("sync_started", metadata)
        logger.info("Sync started for connection %s (mode=%s)", connection_id, mode)

        try:
            result = self._run(db, connection, mode)
            db.commit()
        except SyncError as e:
            self._record_failure(db, connection, e, metadata, started)
            raise
        except ModelValidationError as e:
            error = PersistenceError({e.field: [e.message]})
            self._record_failure(db, connection, error, metadata, started)
            raise error from e
        except Exception as e:
            logger.error(
                "Unexpected error syncing connection %s: %s",
                connection_id, e, exc_info=True,
            )
            error = UnexpectedSyncError(type(e).__name__)
            self._record_failure(db, connection, error, metadata, started)
            raise error from e

        audit_log("sync_succeeded", {
            **metadata,
            "accounts_synced": result.accounts_synced,
            "transactions_synced": result.transactions_synced,
            "duration_ms": self._elapsed_ms(started),
        })
        logger.info(
            "Sync succeeded for connection %s: %d accounts, %d transactions",
            connection_id, result.accounts_synced, result.transactions_synced,
        )
        return result

    def _run(self, db: Session, connection: Connection, mode: str) -> SyncResult:
        full = mode == "full"

        accounts_payload, accounts_cursor = self._fetch_accounts(
            connection, None if full else connection.accounts_cursor
        )
        accounts = self._upsert_accounts(db, connection, accounts_payload)

        cursors = TransactionCursors() if full else TransactionCursors.decode(
            connection.transactions_cursor
        )
        updated = dict(cursors.per_account)
        transactions_synced = 0
        for account in accounts:
            latest, count = self._sync_account_transactions(
                db, account, cursors.get(account.external_id)
            )
            updated[account.external_id] = latest
            transactions_synced += count

        transactions_cursor = encode(updated)
        now = utc_now()
        connection.accounts_cursor = accounts_cursor
        connection.transactions_cursor = transactions_cursor
        connection.last_synced_at = now
        connection.last_sync_error = None
        connection.last_sync_error_at = None
        db.flush()

        return SyncResult(
            connection=connection,
            accounts_synced=len(accounts),
            transactions_synced=transactions_synced,
            accounts_cursor=connection.accounts_cursor,
            transactions_cursor=transactions_cursor,
        )

    def _paginate(
        self,
        fetch: Callable[[Optional[str]], Page],
        cursor: Optional[str],
        on_page: Callable[[list[dict]], None],
    ) -> Optional[str]:
        """Follow next_cursor links until the provider stops returning one.

        Returns the last non-null cursor seen, or the starting cursor if
        the first page had none. Stops early when the provider hands back
        a cursor already requested in this run, so a cursor cycle cannot
        page forever.
        """
        latest = cursor
        requested = {cursor}
        while True:
            page = self._call(fetch, cursor)
            on_page(page.items)
            if page.next_cursor is None:
                return latest
            if page.next_cursor in requested:
                logger.warning(
                    "Aggregator returned already-requested cursor, stopping pagination"
                )
                return latest
            latest = cursor = page.next_cursor
            requested.add(cursor)

    def _fetch_accounts(
        self, connection: Connection, cursor: Optional[str]
    ) -> tuple[list[dict], Optional[str]]:
        base_params = {
            "teller_user_id": connection.external_user_id,
            "enrollment_id": connection.enrollment_id,
        }
        collected: list[dict] = []

        def fetch(page_cursor):
            params = {k: v for k, v in {**base_params, "cursor": page_cursor}.items() if v is not None}
            return self.client.list_accounts(params)

        latest = self._paginate(fetch, cursor, collected.extend)
        return collected, latest

    def _upsert_accounts(
        self, db: Session, connection: Connection, payloads: list[dict]
    ) -> list[Account]:
        """Validate and upsert accounts in provider order.

        Returns one Account per distinct external id.
        """
        now = utc_now()
        by_external_id: dict[str, Account] = {}
        new_count = 0

        for payload in payloads:
            external_id = _first(payload, "id")
            if not isinstance(external_id, str) or not external_id:
                raise MissingAccountIdentifier(connection.id)

            currency = normalize_code(_first(payload, "currency", "balances.currency"))
            if not valid_code(currency):
                raise InvalidAccountCurrency(connection.id, external_id, currency)

            account = by_external_id.get(external_id) or (
                db.query(Account)
                .filter_by(user_id=connection.user_id, external_id=external_id)
                .first()
            )
            if account is None:
                account = Account(user_id=connection.user_id, external_id=external_id)
                db.add(account)
                new_count += 1

            account.institution_id = connection.institution_id
            account.connection_id = connection.id
            account.name = _text(_first(payload, "name", "display_name", "type")) or "Account"
            account.currency = currency
            account.type = _text(_first(payload, "type")) or "account"
            account.subtype = _text(_first(payload, "subtype"))
            account.current_balance = to_decimal(_first(payload, "balances.current"))
            account.available_balance = to_decimal(_first(payload, "balances.available"))
            account.credit_limit = to_decimal(_first(payload, "balances.limit"))
            account.last_synced_at = now
            by_external_id[external_id] = account

        db.flush()  # Ensure new accounts get IDs
        logger.info(
            "Connection %s: accounts upserted (%d new, %d existing)",
            connection.id, new_count, len(by_external_id) - new_count,
        )
        return list(by_external_id.values())

    def _sync_account_transactions(
        self, db: Session, account: Account, cursor: Optional[str]
    ) -> tuple[Optional[str], int]:
        """Page through one account's transactions, upserting each page."""
        counter = {"count": 0}
        seen: dict[str, Transaction] = {}

        def fetch(page_cursor):
            params = {"cursor": page_cursor} if page_cursor is not None else {}
            return self.client.list_transactions(account.external_id, params)

        def persist(items):
            for payload in items:
                self._upsert_transaction(db, account, payload, seen)
            db.flush()
            counter["count"] += len(items)

        latest = self._paginate(fetch, cursor, persist)
        return latest, counter["count"]

    def _upsert_transaction(
        self,
        db: Session,
        account: Account,
        payload: dict,
        seen: Optional[dict[str, Transaction]] = None,
    ) -> Transaction:
        external_id = _first(payload, "id")
        if not isinstance(external_id, str) or not external_id:
            raise MissingTransactionIdentifier(account.id)

        amount = to_decimal(_first(payload, "amount"))
        if amount is None:
            raise InvalidTransactionAmount(account.id, external_id)

        currency = normalize_code(_first(payload, "currency")) or account.currency
        if not valid_code(currency):
            raise InvalidTransactionCurrency(account.id, external_id, currency)

        seen = {} if seen is None else seen
        # Rows added earlier in this page are not flushed yet
        transaction = seen.get(external_id) or (
            db.query(Transaction)
            .filter_by(account_id=account.id, external_id=external_id)
            .first()
        )
        if transaction is None:
            transaction = Transaction(account_id=account.id, external_id=external_id)
            db.add(transaction)
        seen[external_id] = transaction

        settled_at = _first(payload, "settled_at")
        details = _first(payload, "details")

        transaction.amount = amount
        transaction.currency = currency
        transaction.type = _text(_first(payload, "type"))
        transaction.posted_at = (
            parse_iso_datetime(_first(payload, "posted_at", "date_posted", "date"))
            or utc_now()
        )
        transaction.settled_at = (
            parse_iso_datetime(settled_at)
            or parse_iso_datetime(_first(payload, "settled_at.date"))
            or parse_iso_datetime(_first(payload, "date_settled"))
        )
        transaction.description = _text(
            _first(payload, "description", "details.description", "name")
        ) or "Transaction"
        transaction.category = _text(_first(payload, "category", "details.category"))
        transaction.merchant_name = _text(_first(payload, "merchant_name", "details.merchant"))
        transaction.status = _text(_first(payload, "status")) or "posted"
        transaction.details = details if isinstance(details, dict) else {}
        return transaction

    @staticmethod
    def _call(fetch: Callable[[Optional[str]], Page], cursor: Optional[str]) -> Page:
        """Invoke the client, translating aggregator errors into sync errors."""
        try:
            return fetch(cursor)
        except AggregatorAPIError as e:
            if e.status_code == 429:
                raise RateLimitedError(parse_retry_after(e.headers), e.details) from e
            raise AggregatorHTTPError(e.status_code, e.details) from e
        except AggregatorConnectionError as e:
            raise AggregatorTransportError(e.reason or str(e)) from e
        except AggregatorError as e:
            raise UnexpectedSyncError(str(e)) from e

    def _record_failure(
        self,
        db: Session,
        connection: Connection,
        error: SyncError,
        metadata: dict[str, Any],
        started: float,
    ) -> None:
        """Roll back the run and persist only the error fields."""
        db.rollback()
        error_info = error.to_dict()
        try:
            connection.last_sync_error = error_info
            connection.last_sync_error_at = utc_now()
            db.commit()
        except SQLAlchemyError:
            logger.error(
                "Failed to record sync error for connection %s",
                metadata.get("connection_id"), exc_info=True,
            )
            db.rollback()

        audit_log("sync_failed", {
            **metadata,
            "error": error.kind,
            "retry_after": getattr(error, "retry_after", None),
            "duration_ms": self._elapsed_ms(started),
        })
        logger.warning(
            "Sync failed for connection %s: %s",
            metadata.get("connection_id"), error.kind,
        )

    @staticmethod
    def _elapsed_ms(started: float) -> int:
        return int((time.monotonic() - started) * 1000)
