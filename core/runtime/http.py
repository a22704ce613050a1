"""
core/runtime/http.py — HttpAgentRuntime: delegate turns to an HTTP agent service.

Protocol:
    POST <url>   body = InboundTurn.to_dict()
    200          {"replies": [{"text": "...", "media_urls": ["..."]}, ...]}

Inbound media bytes are not forwarded; the turn only carries their
content type, filename and size.
"""

from __future__ import annotations

import json
import logging

import httpx

from core.runtime.base import AgentRuntime, ReplySink

logger = logging.getLogger(__name__)


class HttpAgentRuntime(AgentRuntime):

    name = "http"

    def __init__(self, url: str, timeout: float = 120.0,
                 headers: dict | None = None,
                 transport: httpx.AsyncBaseTransport | None = None):
        if not url:
            raise ValueError("HttpAgentRuntime requires a url")
        self.url = url
        self.timeout = timeout
        self.headers = headers or {}
        self._transport = transport

    async def run(self, turn, sink: ReplySink) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout,
                                         transport=self._transport) as client:
                resp = await client.post(self.url, json=turn.to_dict(),
                                         headers=self.headers)
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as e:
            raise RuntimeError(
                f"agent service error ({e.response.status_code})") from e
        except httpx.ConnectError as e:
            raise RuntimeError(f"Cannot connect to agent service: {self.url}") from e
        except httpx.TimeoutException as e:
            raise RuntimeError(f"agent service timeout ({self.timeout}s)") from e
        except json.JSONDecodeError as e:
            raise RuntimeError(f"agent service response parse error: {e}") from e

        replies = data.get("replies") if isinstance(data, dict) else None
        if replies is None:
            logger.warning("[http-runtime] response has no 'replies' field: %s",
                           list(data) if isinstance(data, dict) else type(data).__name__)
            return
        for reply in replies:
            if isinstance(reply, str):
                await sink.deliver(reply)
                continue
            await sink.deliver(str(reply.get("text") or ""),
                               list(reply.get("media_urls") or []))
