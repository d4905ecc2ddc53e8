"""Teller-style aggregator client for paginated accounts and transactions."""

import logging
import time as time_module
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, Optional

import httpx

from config import settings
from integrations.aggregator_protocol import Page
from integrations.exceptions import (
    AggregatorAPIError,
    AggregatorAuthError,
    AggregatorConnectionError,
    AggregatorDataError,
)

logger = logging.getLogger(__name__)

_ACCOUNT_QUERY_KEYS = ("teller_user_id", "enrollment_id", "cursor")
_TRANSACTION_QUERY_KEYS = ("cursor", "from", "to", "count")


@dataclass(frozen=True)
class RetryPolicy:
    """Transport-level retry settings.

    Delays are in seconds. ``max_attempts`` counts the first request, so
    the default makes at most two retries.
    """

    max_attempts: int = 3
    base_delay: float = 0.25
    max_delay: float = 2.0
    retry_for: tuple[int, ...] = (408, 425, 429, 500, 502, 503, 504)
    retry_transport_errors: bool = True

    def delay(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)


NO_RETRY = RetryPolicy(max_attempts=1)


def _filter_query(params: dict[str, Any] | None, allowed: tuple[str, ...]) -> dict[str, Any]:
    """Keep whitelisted, non-None query parameters."""
    if not params:
        return {}
    return {
        str(key): value
        for key, value in params.items()
        if str(key) in allowed and value is not None
    }


def _error_details(response: httpx.Response) -> dict:
    """Extract vendor error details from an error response body."""
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return {"message": text} if text else {}

    if not isinstance(body, dict):
        return {}

    # Teller nests code/message under "error" for most 4xx responses
    nested = body.get("error")
    source = nested if isinstance(nested, dict) else body
    details = {"code": source.get("code"), "message": source.get("message")}
    if isinstance(nested, str):
        details["error"] = nested
    return {k: v for k, v in details.items() if v is not None}


class TellerClient:
    """HTTP client for the aggregator REST API.

    Authenticates with HTTP Basic auth using the API key as the username
    and an empty password. Optionally presents a client certificate when
    the aggregator requires mutual TLS.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: Optional[float] = None,
        cert: Optional[tuple[str, str]] = None,
        retry: Optional[RetryPolicy] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time_module.sleep,
    ):
        """Initialize the client.

        Args:
            api_key: Aggregator API key. Falls back to settings.
            base_url: API root. Falls back to settings.
            timeout: Per-request timeout in seconds. Falls back to settings.
            cert: (cert_path, key_path) for mutual TLS. Falls back to
                  settings when both paths are configured.
            retry: Retry policy. ``NO_RETRY`` disables retries.
            transport: Optional httpx transport (tests use MockTransport).
            sleep: Sleep function used between retries.
        """
        api_key = api_key if api_key is not None else settings.AGGREGATOR_API_KEY
        if cert is None and settings.AGGREGATOR_CERT_PATH and settings.AGGREGATOR_KEY_PATH:
            cert = (settings.AGGREGATOR_CERT_PATH, settings.AGGREGATOR_KEY_PATH)

        client_kwargs: dict[str, Any] = {
            "base_url": base_url or settings.AGGREGATOR_API_URL,
            "auth": httpx.BasicAuth(api_key or "", ""),
            "headers": {"accept": "application/json"},
            "timeout": timeout if timeout is not None else settings.AGGREGATOR_TIMEOUT_SECONDS,
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        elif cert is not None:
            client_kwargs["cert"] = cert

        self._client = httpx.Client(**client_kwargs)
        self._retry = retry or RetryPolicy()
        self._sleep = sleep

    @property
    def provider_name(self) -> str:
        return "teller"

    def close(self) -> None:
        """Close the underlying HTTP client."""
        self._client.close()

    def __enter__(self) -> "TellerClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def list_accounts(self, params: dict[str, Any]) -> Page:
        """Fetch one page of accounts for the enrollment."""
        query = _filter_query(params, _ACCOUNT_QUERY_KEYS)
        return Page.from_response(self._get_json("/accounts", query))

    def list_transactions(self, account_external_id: str, params: dict[str, Any]) -> Page:
        """Fetch one page of transactions for an account."""
        query = _filter_query(params, _TRANSACTION_QUERY_KEYS)
        path = f"/accounts/{account_external_id}/transactions"
        return Page.from_response(self._get_json(path, query))

    def _get_json(self, path: str, query: dict[str, Any]) -> Any:
        response = self._request_with_retry("GET", path, params=query)
        try:
            return response.json()
        except ValueError as e:
            raise AggregatorDataError(f"Teller: invalid JSON from {path}") from e

    def _request_with_retry(self, method: str, path: str, **kwargs) -> httpx.Response:
        """Make an HTTP request, retrying retriable statuses and transport errors.

        Raises:
            AggregatorAuthError: on 401/403.
            AggregatorAPIError: on any other non-2xx after retries.
            AggregatorConnectionError: on transport failure after retries.
        """
        policy = self._retry
        attempt = 1
        while True:
            try:
                response = self._client.request(method, path, **kwargs)
            except httpx.TransportError as e:
                if policy.retry_transport_errors and attempt < policy.max_attempts:
                    delay = policy.delay(attempt)
                    logger.warning(
                        "Teller: transport error on %s %s, retrying in %.2fs (attempt %d/%d)",
                        method, path, delay, attempt, policy.max_attempts,
                    )
                    self._sleep(delay)
                    attempt += 1
                    continue
                raise AggregatorConnectionError(
                    f"Teller: request to {path} failed", reason=type(e).__name__
                ) from e

            if response.is_success:
                return response

            if response.status_code in policy.retry_for and attempt < policy.max_attempts:
                delay = policy.delay(attempt)
                logger.warning(
                    "Teller: HTTP %d on %s %s, retrying in %.2fs (attempt %d/%d)",
                    response.status_code, method, path, delay, attempt, policy.max_attempts,
                )
                self._sleep(delay)
                attempt += 1
                continue

            raise self._translate_error(response, path)

    @staticmethod
    def _translate_error(response: httpx.Response, path: str) -> AggregatorAPIError:
        status = response.status_code
        error_cls = AggregatorAuthError if status in (401, 403) else AggregatorAPIError
        return error_cls(
            f"Teller: HTTP {status} from {path}",
            status_code=status,
            headers=dict(response.headers),
            details=_error_details(response),
        )
