"""
adapters/channels/wecom/store.py
All mutable protocol state of one engine instance.

Owned by the engine and passed to the dialects at construction, so two
engines (tests, several hosts in one process) never share tables.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from .active_reply import ActiveReplyGate
from .dedup import DedupCache
from .models import PendingInbound
from .stream import StreamStore


@dataclass
class WecomStore:
    streams: StreamStore = field(default_factory=StreamStore)
    active_replies: ActiveReplyGate = field(default_factory=ActiveReplyGate)
    dedup: DedupCache = field(default_factory=DedupCache)
    pending: dict[str, PendingInbound] = field(default_factory=dict)

    def prune(self) -> None:
        """Expire streams, unused response_urls and dedup entries."""
        self.streams.prune()
        self.active_replies.prune()
        self.dedup.prune()
