"""
core/runtime/base.py — AgentRuntime abstract base class.

The WeCom engine hands every inbound turn to an AgentRuntime and never
looks inside it. Output flows back through a ReplySink owned by the
engine, so the runtime only decides WHAT to answer, never HOW it reaches
the user (stream, response_url, or server API).
"""

from __future__ import annotations

import abc
import logging
from typing import TYPE_CHECKING, Sequence

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    from adapters.channels.wecom.models import InboundTurn


class ReplySink(abc.ABC):
    """Write side of a turn. Each dialect supplies its own implementation."""

    @abc.abstractmethod
    async def deliver(self, text: str, media_urls: Sequence[str] = ()) -> None:
        """Deliver one block of agent output.

        Args:
            text:        reply text (may be empty when only media is sent)
            media_urls:  http(s) urls or local paths of media to attach
        """


class AgentRuntime(abc.ABC):
    """Contract between the protocol engine and the conversational agent."""

    name = "base"

    @abc.abstractmethod
    async def run(self, turn: "InboundTurn", sink: ReplySink) -> None:
        """Process one turn, pushing any number of replies into ``sink``.

        Raising marks the turn as failed; the error text becomes the
        stream content in the bot dialect and is logged in the agent one.
        """

    async def close(self) -> None:
        """Release resources held by the runtime. Default: no-op."""
