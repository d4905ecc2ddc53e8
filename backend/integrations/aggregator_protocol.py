"""Aggregator client protocol consumed by the sync service.

The sync service depends only on this shape, so tests can substitute a
stub client that returns canned pages.
"""

from dataclasses import dataclass, field
from typing import Any, Protocol

from integrations.exceptions import AggregatorDataError


@dataclass
class Page:
    """One page of a paginated list response.

    ``next_cursor`` is ``None`` when the provider has no further pages.
    """

    items: list[dict[str, Any]] = field(default_factory=list)
    next_cursor: str | None = None

    @classmethod
    def from_response(cls, body: Any) -> "Page":
        """Normalize a decoded response body into a Page.

        The aggregator returns either a bare JSON array (single page, no
        cursor) or an object wrapping the items under ``data``,
        ``accounts`` or ``transactions`` with a ``next_cursor`` or
        ``next`` continuation token.
        """
        if isinstance(body, list):
            return cls(items=body, next_cursor=None)

        if not isinstance(body, dict):
            raise AggregatorDataError(
                f"Unexpected response body type: {type(body).__name__}"
            )

        items = body.get("data") or body.get("accounts") or body.get("transactions") or []
        if isinstance(items, dict):
            items = [items]

        cursor = body.get("next_cursor") or body.get("next")
        if not isinstance(cursor, str) or not cursor:
            cursor = None

        return cls(items=list(items), next_cursor=cursor)


class AggregatorClient(Protocol):
    """Protocol for the paginated aggregator API.

    Implementations raise :class:`~integrations.exceptions.AggregatorError`
    subclasses on failure.
    """

    def list_accounts(self, params: dict[str, Any]) -> Page:
        """Fetch one page of accounts.

        Args:
            params: Query parameters; includes an opaque ``cursor`` when
                    continuing from a previous page.
        """
        ...

    def list_transactions(self, account_external_id: str, params: dict[str, Any]) -> Page:
        """Fetch one page of transactions for a single account."""
        ...
