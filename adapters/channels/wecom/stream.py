"""
adapters/channels/wecom/stream.py
Stream reply engine for the bot dialect.

The platform expects a synchronous answer to every callback, but the agent
may take minutes. Each inbound turn therefore opens a stream: the original
callback is answered with a placeholder (finish=false), and the platform
keeps sending ``msgtype=stream`` polls that read the current snapshot.

    pending ──flush──▶ running ──done──▶ finished
                              └─error─▶ failed (finished + error)
"""

from __future__ import annotations

import base64
import hashlib
import logging
import secrets
import time
from typing import Callable, Optional

from .models import StreamImage, StreamState
from .text import STREAM_MAX_BYTES, truncate_utf8_bytes

logger = logging.getLogger(__name__)

STREAM_TTL = 10 * 60          # seconds since last update
DEFAULT_PLACEHOLDER = "1"


def new_stream_id() -> str:
    return secrets.token_hex(16)


def build_placeholder_reply(stream_id: str, placeholder: str = "") -> dict:
    """Reply to the originating callback before the agent has started."""
    return {
        "msgtype": "stream",
        "stream": {
            "id": stream_id,
            "finish": False,
            "content": (placeholder or "").strip() or DEFAULT_PLACEHOLDER,
        },
    }


def build_stream_reply(state: StreamState,
                       max_bytes: int = STREAM_MAX_BYTES) -> dict:
    """Snapshot of a stream for a poll; images only once finished."""
    stream: dict = {
        "id": state.stream_id,
        "finish": state.finished,
        "content": truncate_utf8_bytes(state.content, max_bytes),
    }
    if state.finished and state.images:
        stream["msg_item"] = [
            {"msgtype": "image",
             "image": {"base64": img.base64, "md5": img.md5}}
            for img in state.images
        ]
    return {"msgtype": "stream", "stream": stream}


class StreamStore:
    """Owns every StreamState plus the msgid → stream_id index."""

    def __init__(self, ttl: float = STREAM_TTL,
                 max_bytes: int = STREAM_MAX_BYTES,
                 clock: Callable[[], float] = time.time):
        self.ttl = ttl
        self.max_bytes = max_bytes
        self._clock = clock
        self._streams: dict[str, StreamState] = {}
        self._by_msgid: dict[str, str] = {}

    # ── lifecycle ─────────────────────────────────────────────────────────

    def create(self, source_msgid: str = "", started: bool = False) -> StreamState:
        now = self._clock()
        state = StreamState(stream_id=new_stream_id(), source_msgid=source_msgid,
                            created_at=now, updated_at=now, started=started)
        self._streams[state.stream_id] = state
        if source_msgid:
            self._by_msgid[source_msgid] = state.stream_id
        return state

    def get(self, stream_id: str) -> Optional[StreamState]:
        return self._streams.get(stream_id)

    def stream_for_msgid(self, msgid: str) -> Optional[str]:
        return self._by_msgid.get(msgid) if msgid else None

    def link_msgid(self, msgid: str, stream_id: str) -> None:
        if msgid:
            self._by_msgid[msgid] = stream_id

    def mark_running(self, stream_id: str) -> None:
        state = self._streams.get(stream_id)
        if state and not state.finished:
            state.started = True
            state.updated_at = self._clock()

    def append(self, stream_id: str, text: str) -> bool:
        """Append agent output; False if the stream is gone or finished."""
        state = self._streams.get(stream_id)
        if state is None or state.finished:
            return False
        text = text.strip()
        merged = f"{state.content}\n\n{text}".strip() if state.content else text
        state.content = truncate_utf8_bytes(merged, self.max_bytes)
        state.updated_at = self._clock()
        return True

    def replace(self, stream_id: str, text: str) -> None:
        state = self._streams.get(stream_id)
        if state is None or state.finished:
            return
        state.content = truncate_utf8_bytes(text, self.max_bytes)
        state.updated_at = self._clock()

    def add_image(self, stream_id: str, data: bytes) -> None:
        state = self._streams.get(stream_id)
        if state is None or state.finished:
            return
        state.images.append(StreamImage(
            base64=base64.b64encode(data).decode("ascii"),
            md5=hashlib.md5(data).hexdigest(),
        ))
        state.updated_at = self._clock()

    def finish(self, stream_id: str) -> None:
        state = self._streams.get(stream_id)
        if state is None or state.finished:
            return
        state.finished = True
        state.updated_at = self._clock()

    def fail(self, stream_id: str, error: str) -> None:
        state = self._streams.get(stream_id)
        if state is None or state.finished:
            return
        state.error = error
        if not state.content:
            state.content = truncate_utf8_bytes(f"Error: {error}", self.max_bytes)
        state.finished = True
        state.updated_at = self._clock()

    # ── replies ───────────────────────────────────────────────────────────

    def placeholder(self, stream_id: str, content: str = "") -> dict:
        return build_placeholder_reply(stream_id, content)

    def snapshot(self, stream_id: str) -> dict:
        """Poll reply; an unknown id reads as an empty finished stream."""
        state = self._streams.get(stream_id)
        if state is None:
            now = self._clock()
            state = StreamState(stream_id=stream_id or "unknown", created_at=now,
                                updated_at=now, started=True, finished=True)
        return build_stream_reply(state, self.max_bytes)

    # ── GC ────────────────────────────────────────────────────────────────

    def prune(self) -> int:
        cutoff = self._clock() - self.ttl
        expired = [sid for sid, s in self._streams.items() if s.updated_at < cutoff]
        for sid in expired:
            del self._streams[sid]
        for msgid in [m for m, sid in self._by_msgid.items()
                      if sid not in self._streams]:
            del self._by_msgid[msgid]
        if expired:
            logger.debug("[wecom] pruned %d expired stream(s)", len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._streams)
