"""
adapters/channels/wecom/debounce.py
Debounce coalescer: one agent turn per burst of messages.

WeCom delivers every message of a quick burst as its own callback. The
first one opens a stream and arms a timer; the following ones (same
account / sender / chat) are appended and re-arm the timer. When the timer
fires the buffered bodies are flushed as a single turn, and every callback
of the burst has been answered with the same stream's placeholder.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Callable, Optional

from .models import PendingInbound, WebhookTarget
from .stream import StreamStore

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE = 0.5  # seconds

FlushCallback = Callable[[PendingInbound, Optional[str]], None]


def pending_key(account_id: str, sender: str, chat: str) -> str:
    return f"wecom:{account_id}:{sender}:{chat}"


class DebounceCoalescer:
    """Buffers inbound messages per key and flushes them after a quiet period.

    ``on_flush(pending, merged_text)`` runs on the event loop; ``merged_text``
    is only set when more than one body was buffered.
    """

    def __init__(self, streams: StreamStore, on_flush: FlushCallback,
                 interval: float = DEFAULT_DEBOUNCE,
                 table: Optional[dict[str, PendingInbound]] = None):
        self.streams = streams
        self.on_flush = on_flush
        self.interval = interval
        self._pending: dict[str, PendingInbound] = {} if table is None else table

    def submit(self, target: WebhookTarget, message: dict, sender: str,
               chat: str, body: str, message_id: str = "") -> tuple[str, bool]:
        """Buffer one message. Returns ``(stream_id, opened_new_stream)``."""
        loop = asyncio.get_running_loop()
        key = pending_key(target.account_id, sender, chat)

        pending = self._pending.get(key)
        if pending is not None:
            pending.bodies.append(body)
            if message_id:
                pending.message_ids.append(message_id)
                self.streams.link_msgid(message_id, pending.stream_id)
            if pending.timer is not None:
                pending.timer.cancel()
            pending.timer = loop.call_later(self.interval, self._flush, key)
            logger.debug("[wecom] debounce: merged message into stream %s (%d buffered)",
                         pending.stream_id, len(pending.bodies))
            return pending.stream_id, False

        state = self.streams.create(source_msgid=message_id)
        pending = PendingInbound(
            stream_id=state.stream_id,
            target=target,
            first_message=message,
            bodies=[body],
            message_ids=[message_id] if message_id else [],
        )
        pending.timer = loop.call_later(self.interval, self._flush, key)
        self._pending[key] = pending
        return state.stream_id, True

    def _flush(self, key: str) -> None:
        pending = self._pending.pop(key, None)
        if pending is None:
            return
        if pending.timer is not None:
            pending.timer.cancel()
            pending.timer = None

        merged = "\n".join(b for b in pending.bodies if b.strip()).strip()
        logger.info("[wecom] flush: stream=%s messages=%d",
                    pending.stream_id, len(pending.bodies))
        self.on_flush(pending, merged if len(pending.bodies) > 1 else None)

    def cancel_all(self) -> int:
        """Drop every pending burst without flushing (engine stop)."""
        count = len(self._pending)
        for pending in self._pending.values():
            if pending.timer is not None:
                pending.timer.cancel()
        self._pending.clear()
        return count

    def cancel_account(self, account_id: str) -> int:
        prefix = f"wecom:{account_id}:"
        keys = [k for k in self._pending if k.startswith(prefix)]
        for key in keys:
            pending = self._pending.pop(key)
            if pending.timer is not None:
                pending.timer.cancel()
        return len(keys)

    def __len__(self) -> int:
        return len(self._pending)
