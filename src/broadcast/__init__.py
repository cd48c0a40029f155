"""
Live fan-out of trades and chat.

This module provides:
- BroadcastHub: bounded-replay pub/sub over a websocket server
- SlidingWindowRateLimiter: per-identity chat rate limit
"""

from .hub import BroadcastHub, ChatValidationError, Subscriber, validate_chat
from .rate_limiter import SlidingWindowRateLimiter

__all__ = [
    "BroadcastHub",
    "Subscriber",
    "ChatValidationError",
    "validate_chat",
    "SlidingWindowRateLimiter",
]
