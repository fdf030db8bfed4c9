"""
Accrual Reconciliation

Provides:
- An HTTP client for the external accrual authority with response classification
- A background poller that folds terminal accrual decisions back into the ledger
- Rate-limit backoff shared across all lookups (Retry-After)
"""

from .client import (
    AccrualClient,
    AccrualError,
    AccrualResult,
    AccrualStatus,
    RateLimitedError,
)
from .poller import (
    PassReport,
    PollerConfig,
    PollerState,
    ReconciliationPoller,
)

__all__ = [
    "AccrualClient",
    "AccrualError",
    "AccrualResult",
    "AccrualStatus",
    "RateLimitedError",
    "PassReport",
    "PollerConfig",
    "PollerState",
    "ReconciliationPoller",
]
