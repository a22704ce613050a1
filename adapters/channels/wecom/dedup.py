"""
adapters/channels/wecom/dedup.py
Time-bounded idempotency filter for retried webhook deliveries.

WeCom retries a callback when it does not see a quick ``success``; the
agent dialect acknowledges every delivery but only the first one within
the TTL reaches the agent.
"""

from __future__ import annotations

import logging
import time
from typing import Callable

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_TTL = 300.0  # seconds


class DedupCache:
    """In-memory ``message_id -> last_seen`` map with lazy expiry."""

    def __init__(self, ttl: float = DEFAULT_DEDUP_TTL,
                 clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._seen: dict[str, float] = {}

    def remember(self, message_id: str) -> bool:
        """Record ``message_id``; False if it was already seen within the TTL."""
        if not message_id:
            return True
        now = self._clock()
        seen_at = self._seen.get(message_id)
        if seen_at is not None and now - seen_at < self.ttl:
            self._seen[message_id] = now
            logger.info("[wecom] duplicate delivery skipped: msgid=%s", message_id)
            return False
        self._seen[message_id] = now
        self.prune(now)
        return True

    def prune(self, now: float | None = None) -> int:
        now = self._clock() if now is None else now
        cutoff = now - self.ttl
        expired = [mid for mid, ts in self._seen.items() if ts < cutoff]
        for mid in expired:
            del self._seen[mid]
        return len(expired)

    def __contains__(self, message_id: str) -> bool:
        seen_at = self._seen.get(message_id)
        return seen_at is not None and self._clock() - seen_at < self.ttl

    def __len__(self) -> int:
        return len(self._seen)
