"""
adapters/channels/wecom/agent.py
Agent (self-built application) dialect: XML callbacks, replies via API.

The callback is acknowledged with a plain ``success`` right away; the turn
runs as a detached task and its output is pushed with the message-send
API. WeCom retries callbacks it considers slow, so deliveries are
de-duplicated by MsgId before they reach the agent.
"""

from __future__ import annotations

import logging
import time
from typing import Optional, Sequence

import httpx

from core.logging_config import set_correlation_id
from core.runtime.base import AgentRuntime, ReplySink

from .api_client import ApiClient
from .bot import Spawn
from .errors import WecomApiError, WecomError
from .media import load_outbound_media
from .models import AGENT_DIALECT, InboundTurn, WebhookTarget
from .router import WebhookResponse
from .store import WecomStore
from .text import API_TEXT_MAX_BYTES, split_text_by_bytes
from .xml import (build_encrypted_xml_response, build_text_reply_xml, chat_id,
                  event_type, extract_content, from_user, msg_type, parse_xml,
                  to_user)

logger = logging.getLogger(__name__)

SUCCESS = "success"
SYSTEM_SENDER = "sys"


def should_process_agent_message(kind: str, event: str,
                                 sender: str) -> tuple[bool, str]:
    """Return ``(process, reason)``; events never open an agent turn."""
    if kind == "event":
        return False, f"event:{event or 'unknown'}"
    sender = (sender or "").strip()
    if not sender:
        return False, "missing_sender"
    if sender.lower() == SYSTEM_SENDER:
        return False, "system_sender"
    return True, "user_message"


def dedup_key(msg: dict) -> str:
    msgid = str(msg.get("MsgId") or "").strip()
    if msgid:
        return msgid
    return f"{from_user(msg)}:{msg.get('CreateTime') or ''}"


class AgentApiSink(ReplySink):
    """Sends agent output to the user (or group) through the server API."""

    def __init__(self, client: ApiClient, to_user: str,
                 chat: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.client = client
        self.to_user = to_user
        self.chat = chat
        self.transport = transport

    async def deliver(self, text: str, media_urls: Sequence[str] = ()) -> None:
        for chunk in split_text_by_bytes((text or "").strip(), API_TEXT_MAX_BYTES):
            try:
                await self.client.send_text(chunk, to_user=self.to_user, chat_id=self.chat)
            except (httpx.HTTPError, WecomApiError) as e:
                logger.error("[wecom-agent] reply failed to %s: %s",
                             self.chat or self.to_user, e)
                return
        for ref in media_urls:
            await self._send_media(ref)

    async def _send_media(self, ref: str) -> None:
        try:
            data, content_type, filename = await load_outbound_media(
                ref, transport=self.transport)
            media_type = "image" if content_type.startswith("image/") else "file"
            media_id = await self.client.upload_media(data, filename, media_type)
            await self.client.send_media(media_id, media_type,
                                         to_user=self.to_user, chat_id=self.chat)
        except (httpx.HTTPError, OSError, WecomError) as e:
            logger.error("[wecom-agent] media reply failed: %s: %s", ref, e)


class AgentDialect:
    """Handles decrypted agent-dialect callbacks for every registered app."""

    def __init__(self, store: WecomStore, runtime: AgentRuntime, spawn: Spawn,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.store = store
        self.runtime = runtime
        self.spawn = spawn
        self.transport = transport
        self._clients: dict[tuple, ApiClient] = {}

    def client_for(self, target: WebhookTarget) -> ApiClient:
        agent = target.agent
        if agent is None:
            raise WecomError(f"account {target.account_id} has no agent credentials")
        # Keyed on credentials so a restarted account never reuses a stale token
        key = (target.account_id, agent.corp_id, agent.corp_secret, agent.agent_id)
        client = self._clients.get(key)
        if client is None:
            client = ApiClient(agent.corp_id, agent.corp_secret, agent.agent_id,
                               timeout=agent.timeout, transport=self.transport)
            self._clients[key] = client
        return client

    def drop_clients(self, account_id: str) -> None:
        for key in [k for k in self._clients if k[0] == account_id]:
            del self._clients[key]

    def _check_ids(self, target: WebhookTarget, msg: dict) -> None:
        agent = target.agent
        if agent is None:
            return
        to = to_user(msg)
        if to and agent.corp_id and to != agent.corp_id:
            logger.warning("[wecom-agent] ToUserName %s does not match corp %s",
                           to, agent.corp_id)
        inbound_agent = str(msg.get("AgentID") or "")
        if inbound_agent and agent.agent_id is not None and inbound_agent != str(agent.agent_id):
            logger.warning("[wecom-agent] AgentID %s does not match configured %s",
                           inbound_agent, agent.agent_id)

    async def handle(self, target: WebhookTarget, plaintext: str,
                     timestamp: str, nonce: str) -> WebhookResponse:
        msg = parse_xml(plaintext)
        self._check_ids(target, msg)

        kind = msg_type(msg)
        event = event_type(msg)
        sender = from_user(msg)
        chat = chat_id(msg)
        logger.info("[wecom-agent] %s from=%s chat=%s content=%s", kind, sender,
                    chat or "N/A", extract_content(msg)[:100])

        process, reason = should_process_agent_message(kind, event, sender)
        if not process:
            if event == "enter_agent":
                welcome = self._welcome(target, msg, timestamp, nonce)
                if welcome is not None:
                    return welcome
            logger.debug("[wecom-agent] skipped: %s", reason)
            return WebhookResponse.text(SUCCESS)

        key = dedup_key(msg)
        if not self.store.dedup.remember(key):
            return WebhookResponse.text(SUCCESS)

        self.spawn(self.run_turn(target, msg, key))
        return WebhookResponse.text(SUCCESS)

    def _welcome(self, target: WebhookTarget, msg: dict, timestamp: str,
                 nonce: str) -> Optional[WebhookResponse]:
        text = (target.agent.welcome_text if target.agent else "").strip()
        if not text:
            return None
        if not timestamp.isdigit():
            timestamp = str(int(time.time()))
        reply = build_text_reply_xml(from_user(msg), to_user(msg), text, int(timestamp))
        body = build_encrypted_xml_response(target.token, target.encoding_aes_key,
                                            target.receive_id, reply, timestamp, nonce)
        return WebhookResponse(status=200, body=body,
                               content_type="application/xml; charset=utf-8")

    async def run_turn(self, target: WebhookTarget, msg: dict, key: str) -> None:
        set_correlation_id(key)
        sender = from_user(msg)
        chat = chat_id(msg)
        turn = InboundTurn(
            account_id=target.account_id,
            dialect=AGENT_DIALECT,
            sender_id=sender,
            chat_id=chat or sender,
            chat_type="group" if chat else "direct",
            text=extract_content(msg),
            message_id=key,
            message_ids=[key],
            msgtype=msg_type(msg) or "text",
            raw=msg,
        )
        try:
            sink = AgentApiSink(self.client_for(target), sender, chat, self.transport)
            await self.runtime.run(turn, sink)
        except Exception as e:
            logger.error("[wecom-agent] process failed for %s (account=%s): %s",
                         key, target.account_id, e, exc_info=True)
            return
        logger.info("[wecom-agent] turn finished: %s", key)
