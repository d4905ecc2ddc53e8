"""External API integrations.

This package contains:
- Aggregator protocol: the paginated client interface the sync service uses
- Teller client: httpx-based implementation for a Teller-style API
- Exceptions: typed errors raised by aggregator clients
"""

from integrations.aggregator_protocol import AggregatorClient, Page
from integrations.teller_client import NO_RETRY, RetryPolicy, TellerClient

__all__ = [
    "AggregatorClient",
    "NO_RETRY",
    "Page",
    "RetryPolicy",
    "TellerClient",
]
