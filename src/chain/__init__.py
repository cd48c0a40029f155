"""
Chain access: log subscription and identity lookups.

This module provides:
- LogSubscriptionClient: program log stream as LogBatch callbacks
- TransactionLookup: fee payer resolution with exponential backoff
- IdentityResolver: cached session -> master wallet mapping
"""

from .identity import (
    IdentityResolutionError,
    IdentityResolver,
    TransactionLookup,
    TransactionNotFoundError,
)
from .log_subscriber import LogSubscriptionClient

__all__ = [
    "LogSubscriptionClient",
    "TransactionLookup",
    "TransactionNotFoundError",
    "IdentityResolver",
    "IdentityResolutionError",
]
