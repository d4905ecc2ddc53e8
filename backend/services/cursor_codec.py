"""Codec for the per-account transactions cursor stored on a connection.

The persisted value is a compact JSON object mapping an account's
external id to the aggregator's opaque continuation token. Connections
synced under the old single-cursor scheme hold a bare token instead;
that token decodes under the ``"legacy"`` key and is used for any
account without its own entry until the next successful sync rewrites
the column in per-account form.
"""

import json
from dataclasses import dataclass, field
from typing import Optional

LEGACY_KEY = "legacy"


@dataclass
class TransactionCursors:
    """Decoded transactions cursor state for one connection.

    Either ``per_account`` holds tokens keyed by account external id, or
    ``legacy`` holds a single token from the old scheme (or both, while a
    connection is mid-migration).
    """

    per_account: dict[str, str] = field(default_factory=dict)
    legacy: Optional[str] = None

    @classmethod
    def decode(cls, raw: Optional[str]) -> "TransactionCursors":
        if raw is None or not raw.strip():
            return cls()

        try:
            parsed = json.loads(raw)
        except ValueError:
            return cls(legacy=raw)

        if not isinstance(parsed, dict):
            return cls(legacy=raw)

        per_account = {}
        legacy = None
        for key, value in parsed.items():
            if not isinstance(value, str):
                continue
            if key == LEGACY_KEY:
                legacy = value
            else:
                per_account[key] = value
        return cls(per_account=per_account, legacy=legacy)

    def get(self, account_id: str) -> Optional[str]:
        """Cursor for an account, falling back to the legacy token."""
        if account_id in self.per_account:
            return self.per_account[account_id]
        return self.legacy

    def encode(self) -> Optional[str]:
        """Serialize the per-account entries. The legacy token is never written back."""
        return encode(self.per_account)


def decode(raw: Optional[str]) -> dict[str, str]:
    """Decode a persisted cursor string into a plain map.

    ``None`` and blank strings decode to ``{}``. Anything that is not a
    JSON object decodes to ``{"legacy": raw}``.
    """
    cursors = TransactionCursors.decode(raw)
    result = dict(cursors.per_account)
    if cursors.legacy is not None:
        result[LEGACY_KEY] = cursors.legacy
    return result


def get(cursors: dict[str, str], key: str) -> Optional[str]:
    """Exact-match lookup falling back to the ``"legacy"`` entry."""
    if key in cursors:
        return cursors[key]
    return cursors.get(LEGACY_KEY)


def encode(cursors: dict[str, Optional[str]]) -> Optional[str]:
    """Encode a cursor map for persistence.

    Drops the ``"legacy"`` key and null values. Returns ``None`` instead
    of an empty object so the column is cleared rather than holding ``{}``.
    Keys are sorted so equal maps always encode to the same string.
    """
    cleaned = {
        str(key): value
        for key, value in cursors.items()
        if key != LEGACY_KEY and value is not None
    }
    if not cleaned:
        return None
    return json.dumps(cleaned, sort_keys=True, separators=(",", ":"))
