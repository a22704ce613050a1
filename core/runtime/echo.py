"""
core/runtime/echo.py — EchoRuntime: answers every turn with its own text.

Useful for wiring checks (``main.py serve`` without an agent backend):
the webhook handshake, stream polls and API replies can all be exercised
end to end without any model behind them.
"""

from __future__ import annotations

import logging

from core.runtime.base import AgentRuntime, ReplySink

logger = logging.getLogger(__name__)


class EchoRuntime(AgentRuntime):

    name = "echo"

    def __init__(self, prefix: str = ""):
        self.prefix = prefix

    async def run(self, turn, sink: ReplySink) -> None:
        text = turn.text.strip() or f"[{turn.msgtype}]"
        logger.debug("[echo] %s: %d chars", turn.session_key, len(text))
        await sink.deliver(f"{self.prefix}{text}")
