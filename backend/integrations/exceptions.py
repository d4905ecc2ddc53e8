"""Typed exception hierarchy for aggregator errors.

Provides structured exceptions for differentiated error handling
(HTTP errors vs transient network errors vs unparseable data).
"""


class AggregatorError(Exception):
    """Base exception for all aggregator-related errors.

    ``kind`` mirrors the error taxonomy the synchronizer records:
    "http", "transport" or "unexpected".
    """

    kind = "unexpected"

    def __init__(self, message: str, details: dict | None = None):
        self.details = details or {}
        super().__init__(message)


class AggregatorAPIError(AggregatorError):
    """Non-2xx response from the aggregator API."""

    kind = "http"

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        headers: dict[str, str] | None = None,
        details: dict | None = None,
    ):
        self.status_code = status_code
        self.headers = headers or {}
        super().__init__(message, details)

    @property
    def retriable(self) -> bool:
        """429 (rate limit) and 5xx errors are generally retriable."""
        if self.status_code is None:
            return False
        return self.status_code == 429 or self.status_code >= 500


class AggregatorAuthError(AggregatorAPIError):
    """Credentials missing, expired, or invalid (HTTP 401/403)."""

    pass


class AggregatorConnectionError(AggregatorError):
    """Network failures such as timeouts or refused connections."""

    kind = "transport"

    def __init__(self, message: str, reason: str = ""):
        self.reason = reason
        super().__init__(message)


class AggregatorDataError(AggregatorError):
    """Malformed or unparseable response from the aggregator."""

    pass
