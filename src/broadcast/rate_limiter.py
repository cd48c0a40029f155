"""Sliding-window rate limiter for chat messages."""

import logging
import time
from typing import Optional

from ..config import CHAT_RATE_LIMIT_MAX, CHAT_RATE_LIMIT_WINDOW

logger = logging.getLogger(__name__)


class SlidingWindowRateLimiter:
    """
    Admits at most ``max_messages`` per identity within ``window_seconds``.

    Windows are pruned lazily when an identity sends; idle identities are
    kept until the process exits.

    Example:
        >>> limiter = SlidingWindowRateLimiter(max_messages=60, window_seconds=60)
        >>> limiter.allow("7xKXt")
        True
    """

    def __init__(
        self,
        max_messages: int = CHAT_RATE_LIMIT_MAX,
        window_seconds: float = CHAT_RATE_LIMIT_WINDOW,
    ):
        if max_messages <= 0:
            raise ValueError(f"max_messages must be positive, got {max_messages}")
        if window_seconds <= 0:
            raise ValueError(f"window_seconds must be positive, got {window_seconds}")
        self.max_messages = max_messages
        self.window_seconds = window_seconds
        self._timestamps: dict[str, list[float]] = {}

    def allow(self, identity: str, now: Optional[float] = None) -> bool:
        """
        Record a message attempt.

        Returns:
            True if admitted (the timestamp is recorded), False if the window
            is already full (nothing is recorded).
        """
        now = time.time() if now is None else now
        recent = [ts for ts in self._timestamps.get(identity, []) if now - ts < self.window_seconds]

        if len(recent) >= self.max_messages:
            self._timestamps[identity] = recent
            return False

        recent.append(now)
        self._timestamps[identity] = recent
        return True

    def remaining(self, identity: str, now: Optional[float] = None) -> int:
        """Messages still allowed in the current window."""
        now = time.time() if now is None else now
        recent = [ts for ts in self._timestamps.get(identity, []) if now - ts < self.window_seconds]
        return max(self.max_messages - len(recent), 0)

    @property
    def tracked_identities(self) -> int:
        return len(self._timestamps)
