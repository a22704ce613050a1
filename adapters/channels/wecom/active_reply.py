"""
adapters/channels/wecom/active_reply.py
One-shot ``response_url`` channel for out-of-band pushes.

Bot callbacks carry a ``response_url`` that may be POSTed to exactly once
(within an hour). It is the only way to deliver an interactive card, so the
gate enforces single use and keeps the last failure for diagnosis.
"""

from __future__ import annotations

import logging
import time
from typing import Awaitable, Callable, Optional

from .errors import ActiveReplyError
from .models import ActiveReplyState

logger = logging.getLogger(__name__)

ACTIVE_REPLY_TTL = 60 * 60  # seconds


class ActiveReplyGate:
    """``stream_id -> response_url`` table with at-most-once use."""

    def __init__(self, ttl: float = ACTIVE_REPLY_TTL,
                 clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self._clock = clock
        self._replies: dict[str, ActiveReplyState] = {}

    def store(self, stream_id: str, response_url: Optional[str]) -> None:
        url = response_url.strip() if isinstance(response_url, str) else ""
        if not url:
            return
        self._replies[stream_id] = ActiveReplyState(
            response_url=url, created_at=self._clock())

    def get(self, stream_id: str) -> Optional[ActiveReplyState]:
        return self._replies.get(stream_id)

    def get_url(self, stream_id: str) -> Optional[str]:
        state = self._replies.get(stream_id)
        return state.response_url if state else None

    async def use_once(self, stream_id: str,
                       send: Callable[[str], Awaitable[None]]) -> None:
        """Call ``send(url)`` once; mark used only if it succeeds.

        The entry is held in flight while ``send`` runs, so an overlapping
        call for the same stream fails at once instead of POSTing twice.

        Raises:
            ActiveReplyError: no url stored, already used, or a send is in flight.
            Exception: whatever ``send`` raised (recorded as last_error).
        """
        state = self._replies.get(stream_id)
        if state is None or not state.response_url:
            raise ActiveReplyError(f"No response_url for stream {stream_id}")
        if state.used_at is not None:
            raise ActiveReplyError(
                f"response_url already used for stream {stream_id}")
        if state.in_flight:
            raise ActiveReplyError(
                f"response_url send already in flight for stream {stream_id}")
        state.in_flight = True
        try:
            await send(state.response_url)
        except Exception as e:
            state.last_error = str(e)
            logger.warning("[wecom] active reply failed for stream %s: %s",
                           stream_id, e)
            raise
        else:
            state.used_at = self._clock()
        finally:
            state.in_flight = False

    def prune(self) -> int:
        cutoff = self._clock() - self.ttl
        expired = [sid for sid, s in self._replies.items() if s.created_at < cutoff]
        for sid in expired:
            del self._replies[sid]
        return len(expired)

    def __len__(self) -> int:
        return len(self._replies)
