"""
adapters/channels/wecom/bot.py
Bot (smart robot) dialect: JSON callbacks answered through stream polls.

Per decrypted callback:
  - event        enter_chat → welcome text, template_card_event → agent turn,
                 anything else → empty ack
  - stream       poll → current snapshot of the stream
  - message      debounce → placeholder for the (possibly shared) stream

Every reply is the encrypted JSON envelope ``{encrypt, msgsignature,
timestamp, nonce}``. The agent's output reaches the stream through
BotStreamSink; interactive cards go out through the one-shot response_url.
"""

from __future__ import annotations

import json
import logging
import re
import time
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx

from core.logging_config import set_correlation_id
from core.runtime.base import AgentRuntime, ReplySink

from .crypto import compute_signature, encrypt
from .debounce import DEFAULT_DEBOUNCE, DebounceCoalescer
from .errors import ActiveReplyError, WecomApiError, WecomError, WecomRequestError
from .media import decrypt_media, load_outbound_media
from .models import BOT_DIALECT, InboundMedia, InboundTurn, PendingInbound, WebhookTarget
from .router import WebhookResponse
from .store import WecomStore

logger = logging.getLogger(__name__)

CARD_SENT_TEXT = "[interactive card sent]"
SYSTEM_SENDER = "sys"

_THINK_RE = re.compile(r"<think>[\s\S]*?</think>")

Spawn = Callable[[Awaitable[Any]], Any]


# ══════════════════════════════════════════════════════════════════════════════
#  Inbound classification + rendering
# ══════════════════════════════════════════════════════════════════════════════

def parse_bot_message(plaintext: str) -> dict:
    try:
        msg = json.loads(plaintext)
    except ValueError as e:
        raise WecomRequestError("decrypted bot payload is not JSON") from e
    return msg if isinstance(msg, dict) else {}


def _obj(parent: dict, key: str) -> dict:
    """Nested object field; anything that is not a JSON object reads as empty."""
    value = parent.get(key)
    return value if isinstance(value, dict) else {}


def _list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _obj_list(value: Any) -> list[dict]:
    return [item for item in _list(value) if isinstance(item, dict)]


def _mixed_items(msg: dict) -> list[dict]:
    return _obj_list(_obj(msg, "mixed").get("msg_item"))


def _sender(msg: dict) -> str:
    return str(_obj(msg, "from").get("userid") or "").strip()


def _chat_type(msg: dict) -> str:
    return "group" if msg.get("chattype") == "group" else "direct"


def should_process_bot_message(msg: dict) -> tuple[bool, str, str, str]:
    """Return ``(process, reason, sender, chat_id)`` for an inbound message."""
    sender = _sender(msg)
    if not sender:
        return False, "missing_sender", "", ""
    if sender.lower() == SYSTEM_SENDER:
        return False, "system_sender", sender, ""
    if _chat_type(msg) == "group":
        chat_id = str(msg.get("chatid") or "").strip()
        if not chat_id:
            return False, "missing_chatid", sender, ""
        return True, "user_message", sender, chat_id
    return True, "user_message", sender, sender


def _format_quote(quote: dict) -> str:
    kind = str(quote.get("msgtype") or "")
    if kind == "text":
        return str(_obj(quote, "text").get("content") or "")
    if kind == "image":
        return f"[quote: image] {_obj(quote, 'image').get('url') or ''}"
    if kind == "mixed":
        parts = []
        for item in _mixed_items(quote):
            t = item.get("msgtype")
            if t == "text":
                parts.append(str(_obj(item, "text").get("content") or ""))
            elif t == "image":
                parts.append(f"[image] {_obj(item, 'image').get('url') or ''}")
        return "\n".join(p for p in parts if p)
    if kind == "voice":
        return f"[quote: voice] {_obj(quote, 'voice').get('content') or ''}"
    if kind == "file":
        return f"[quote: file] {_obj(quote, 'file').get('url') or ''}"
    return ""


def render_inbound_body(msg: dict) -> str:
    """Agent-readable text for one bot-dialect message (no media download)."""
    kind = str(msg.get("msgtype") or "").lower()
    if kind == "text":
        body = str(_obj(msg, "text").get("content") or "")
    elif kind == "voice":
        body = str(_obj(msg, "voice").get("content") or "") or "[voice]"
    elif kind == "mixed":
        parts = []
        for item in _mixed_items(msg):
            t = str(item.get("msgtype") or "").lower()
            if t == "text":
                parts.append(str(_obj(item, "text").get("content") or ""))
            elif t == "image":
                parts.append(f"[image] {_obj(item, 'image').get('url') or ''}")
            else:
                parts.append(f"[{t}]")
        body = "\n".join(p for p in parts if p)
    elif kind == "image":
        body = f"[image] {_obj(msg, 'image').get('url') or ''}"
    elif kind == "file":
        body = f"[file] {_obj(msg, 'file').get('url') or ''}"
    elif kind == "event":
        body = f"[event] {_obj(msg, 'event').get('eventtype') or ''}"
    elif kind == "stream":
        body = f"[stream_refresh] {_obj(msg, 'stream').get('id') or ''}"
    else:
        body = f"[{kind}]" if kind else ""

    quote = msg.get("quote")
    if isinstance(quote, dict):
        quoted = _format_quote(quote).strip()
        if quoted:
            body += f"\n\n> {quoted}"
    return body


def describe_card_event(msg: dict) -> str:
    """Turn a template_card_event into text the agent can act on."""
    event = _obj(_obj(msg, "event"), "template_card_event")
    desc = f"[card interaction] button: {event.get('event_key') or 'unknown'}"
    selected = _obj_list(_obj(event, "selected_items").get("selected_item"))
    if selected:
        picks = [
            f"{item.get('question_key')}="
            f"{','.join(str(o) for o in _list(_obj(item, 'option_ids').get('option_id')))}"
            for item in selected
        ]
        desc += f" selected: {'; '.join(picks)}"
    if event.get("task_id"):
        desc += f" (task_id: {event['task_id']})"
    return desc


# ══════════════════════════════════════════════════════════════════════════════
#  Outbound helpers
# ══════════════════════════════════════════════════════════════════════════════

def build_encrypted_json_reply(target: WebhookTarget, payload: dict,
                               timestamp: str, nonce: str) -> dict:
    timestamp = timestamp or str(int(time.time()))
    plaintext = json.dumps(payload, ensure_ascii=False)
    encrypted = encrypt(target.encoding_aes_key, target.receive_id, plaintext)
    return {
        "encrypt": encrypted,
        "msgsignature": compute_signature(target.token, timestamp, nonce, encrypted),
        "timestamp": timestamp,
        "nonce": nonce,
    }


def extract_template_card(text: str) -> Optional[dict]:
    """Return the ``template_card`` of a JSON agent reply, ignoring <think> blocks."""
    visible = _THINK_RE.sub("", text).strip()
    if not visible.startswith("{") or '"template_card"' not in visible:
        return None
    try:
        parsed = json.loads(visible)
    except ValueError:
        return None
    card = parsed.get("template_card") if isinstance(parsed, dict) else None
    return card if isinstance(card, dict) else None


def summarize_card(card: dict) -> str:
    title = _obj(card, "main_title").get("title") or "Interactive card"
    desc = _obj(card, "main_title").get("desc") or ""
    buttons = " / ".join(str(b.get("text") or "") for b in _obj_list(card.get("button_list")))
    text = f"**{title}**"
    if desc:
        text += f"\n{desc}"
    if buttons:
        text += f"\n\nOptions: {buttons}"
    return text


async def post_response_url(url: str, payload: dict, timeout: float = 15.0,
                            transport: Optional[httpx.AsyncBaseTransport] = None) -> dict:
    async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
        resp = await client.post(url, json=payload)
        resp.raise_for_status()
        try:
            data = resp.json()
        except ValueError:
            return {}
    if isinstance(data, dict) and data.get("errcode"):
        raise WecomApiError(
            f"response_url push failed: {data.get('errcode')} {data.get('errmsg', '')}",
            errcode=data.get("errcode"))
    return data if isinstance(data, dict) else {}


# ══════════════════════════════════════════════════════════════════════════════
#  Reply sink
# ══════════════════════════════════════════════════════════════════════════════

class BotStreamSink(ReplySink):
    """Appends agent output to one stream; routes cards via the response_url."""

    def __init__(self, dialect: "BotDialect", target: WebhookTarget,
                 stream_id: str, chat_type: str):
        self.dialect = dialect
        self.target = target
        self.stream_id = stream_id
        self.chat_type = chat_type

    async def deliver(self, text: str, media_urls: Sequence[str] = ()) -> None:
        streams = self.dialect.store.streams
        state = streams.get(self.stream_id)
        if state is None or state.finished:
            logger.debug("[wecom] stream %s gone or finished, dropping reply",
                         self.stream_id)
            return

        text = text or ""
        card = extract_template_card(text)
        if card is not None:
            if await self._send_card(card):
                return
            text = summarize_card(card)

        for ref in media_urls:
            try:
                data, content_type, filename = await load_outbound_media(
                    ref, transport=self.dialect.transport)
            except (httpx.HTTPError, OSError, WecomError) as e:
                logger.error("[wecom] outbound media failed: %s: %s", ref, e)
                continue
            if content_type.startswith("image/"):
                streams.add_image(self.stream_id, data)
            else:
                text += f"\n\n[File: {filename}]"

        if text.strip():
            streams.append(self.stream_id, text)

    async def _send_card(self, card: dict) -> bool:
        gate = self.dialect.store.active_replies
        has_url = bool(gate.get_url(self.stream_id))
        if not has_url or self.chat_type == "group":
            logger.info("[wecom] template_card degraded to text (group=%s, has_url=%s)",
                        self.chat_type == "group", has_url)
            return False

        async def send(url: str) -> None:
            await post_response_url(
                url, {"msgtype": "template_card", "template_card": card},
                timeout=self.dialect.http_timeout, transport=self.dialect.transport)

        try:
            await gate.use_once(self.stream_id, send)
        except (ActiveReplyError, httpx.HTTPError, WecomApiError) as e:
            logger.warning("[wecom] template_card push failed, using text: %s", e)
            return False

        logger.info("[wecom] sent template_card task_id=%s", card.get("task_id"))
        streams = self.dialect.store.streams
        streams.replace(self.stream_id, CARD_SENT_TEXT)
        streams.finish(self.stream_id)
        return True


# ══════════════════════════════════════════════════════════════════════════════
#  Dialect
# ══════════════════════════════════════════════════════════════════════════════

class BotDialect:
    """Handles decrypted bot-dialect callbacks for every registered bot target."""

    def __init__(self, store: WecomStore, runtime: AgentRuntime, spawn: Spawn,
                 debounce: float = DEFAULT_DEBOUNCE,
                 http_timeout: float = 15.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.store = store
        self.runtime = runtime
        self.spawn = spawn
        self.http_timeout = http_timeout
        self.transport = transport
        self.coalescer = DebounceCoalescer(store.streams, self._on_flush,
                                           interval=debounce, table=store.pending)

    async def handle(self, target: WebhookTarget, plaintext: str,
                     timestamp: str, nonce: str) -> WebhookResponse:
        msg = parse_bot_message(plaintext)
        self._check_bot_id(target, msg)

        kind = str(msg.get("msgtype") or "").lower()
        if kind == "event":
            reply = self._handle_event(target, msg)
        elif kind == "stream":
            stream_id = str(_obj(msg, "stream").get("id") or "").strip()
            reply = self.store.streams.snapshot(stream_id)
        else:
            reply = self._handle_message(target, msg)

        return WebhookResponse.json(
            build_encrypted_json_reply(target, reply, timestamp, nonce))

    @staticmethod
    def _check_bot_id(target: WebhookTarget, msg: dict) -> None:
        bot_ids = target.bot.bot_ids if target.bot else []
        aibotid = str(msg.get("aibotid") or "")
        if bot_ids and aibotid and aibotid not in bot_ids:
            logger.warning("[wecom] aibotid %s not in configured bot_ids of %s",
                           aibotid, target.account_id)

    # ── events ────────────────────────────────────────────────────────────

    def _handle_event(self, target: WebhookTarget, msg: dict) -> dict:
        event_type = str(_obj(msg, "event").get("eventtype") or "").lower()

        if event_type == "template_card_event":
            return self._handle_card_event(target, msg)

        if event_type == "enter_chat":
            welcome = (target.bot.welcome_text if target.bot else "").strip()
            return {"msgtype": "text", "text": {"content": welcome}} if welcome else {}

        logger.debug("[wecom] event %s acknowledged", event_type or "?")
        return {}

    def _handle_card_event(self, target: WebhookTarget, msg: dict) -> dict:
        streams = self.store.streams
        msgid = str(msg.get("msgid") or "")
        if msgid and streams.stream_for_msgid(msgid):
            logger.info("[wecom] template_card_event already processed: msgid=%s", msgid)
            return {}

        state = streams.create(source_msgid=msgid, started=True)
        self.store.active_replies.store(state.stream_id, msg.get("response_url"))
        synthetic = dict(msg, msgtype="text", text={"content": describe_card_event(msg)})
        self.spawn(self.run_turn(target, synthetic, state.stream_id))
        return {}

    # ── messages ──────────────────────────────────────────────────────────

    def _handle_message(self, target: WebhookTarget, msg: dict) -> dict:
        process, reason, sender, chat_id = should_process_bot_message(msg)
        if not process:
            logger.info("[wecom] skipped inbound message: %s", reason)
            return {}

        placeholder = target.bot.stream_placeholder if target.bot else ""
        streams = self.store.streams
        msgid = str(msg.get("msgid") or "")

        known = streams.stream_for_msgid(msgid)
        if known:
            logger.info("[wecom] retried delivery msgid=%s → stream %s", msgid, known)
            return streams.placeholder(known, placeholder)

        stream_id, opened = self.coalescer.submit(
            target, msg, sender, chat_id, render_inbound_body(msg), msgid)
        if opened:
            self.store.active_replies.store(stream_id, msg.get("response_url"))
        return streams.placeholder(stream_id, placeholder)

    def _on_flush(self, pending: PendingInbound, merged: Optional[str]) -> None:
        self.store.streams.mark_running(pending.stream_id)
        self.spawn(self.run_turn(pending.target, pending.first_message,
                                 pending.stream_id, merged, pending.message_ids))

    # ── agent turn ────────────────────────────────────────────────────────

    async def process_inbound_media(self, target: WebhookTarget,
                                    msg: dict) -> tuple[str, Optional[InboundMedia]]:
        """Decrypt the first image/file of a message; text fallback on failure."""
        kind = str(msg.get("msgtype") or "").lower()
        key = target.encoding_aes_key
        max_bytes = target.bot.media_max_bytes if target.bot else None

        if kind in ("image", "file"):
            url = str(_obj(msg, kind).get("url") or "").strip()
            if url and key:
                try:
                    data = await decrypt_media(url, key, max_bytes, self.transport)
                except (httpx.HTTPError, WecomError) as e:
                    logger.error("[wecom] inbound %s decrypt failed: %s", kind, e)
                    return f"[{kind}] (decryption failed: {e})", None
                return f"[{kind}]", _inbound_media(kind, data)

        if kind == "mixed":
            found: Optional[InboundMedia] = None
            parts: list[str] = []
            for item in _mixed_items(msg):
                t = str(item.get("msgtype") or "").lower()
                if t == "text":
                    content = str(_obj(item, "text").get("content") or "").strip()
                    if content:
                        parts.append(content)
                    continue
                url = str(_obj(item, t).get("url") or "").strip()
                if t in ("image", "file") and found is None and key and url:
                    try:
                        data = await decrypt_media(url, key, max_bytes, self.transport)
                    except (httpx.HTTPError, WecomError) as e:
                        logger.error("[wecom] mixed %s decrypt failed: %s", t, e)
                        parts.append(f"[{t}] (decryption failed)")
                        continue
                    found = _inbound_media(t, data)
                parts.append(f"[{t}]")
            return "\n".join(parts), found

        return render_inbound_body(msg), None

    async def run_turn(self, target: WebhookTarget, msg: dict, stream_id: str,
                       merged: Optional[str] = None,
                       message_ids: Optional[list[str]] = None) -> None:
        """Run the agent for one stream and finish (or fail) it."""
        set_correlation_id(stream_id)
        streams = self.store.streams
        _, _, sender, chat_id = should_process_bot_message(msg)
        chat_type = _chat_type(msg)

        try:
            body, media = await self.process_inbound_media(target, msg)
            turn = InboundTurn(
                account_id=target.account_id,
                dialect=BOT_DIALECT,
                sender_id=sender or "unknown",
                chat_id=chat_id or sender or "unknown",
                chat_type=chat_type,
                text=merged or body,
                message_id=str(msg.get("msgid") or ""),
                message_ids=list(message_ids or []),
                msgtype=str(msg.get("msgtype") or "text").lower(),
                media=media,
                stream_id=stream_id,
                raw=msg,
            )
            logger.info("[wecom] agent turn start: stream=%s session=%s",
                        stream_id, turn.session_key)
            sink = BotStreamSink(self, target, stream_id, chat_type)
            await self.runtime.run(turn, sink)
        except Exception as e:
            logger.error("[wecom] agent failed for stream %s (account=%s): %s",
                         stream_id, target.account_id, e, exc_info=True)
            streams.fail(stream_id, str(e) or type(e).__name__)
            return

        streams.finish(stream_id)
        logger.info("[wecom] agent turn finished: stream=%s", stream_id)

    # ── out-of-band ───────────────────────────────────────────────────────

    async def send_active_message(self, stream_id: str, text: str) -> None:
        """Push a text message through the stream's one-shot response_url.

        Raises:
            ActiveReplyError: no url stored for the stream, or already used.
        """
        async def send(url: str) -> None:
            await post_response_url(
                url, {"msgtype": "text", "text": {"content": text}},
                timeout=self.http_timeout, transport=self.transport)

        await self.store.active_replies.use_once(stream_id, send)


def _inbound_media(kind: str, data: bytes) -> InboundMedia:
    if kind == "image":
        return InboundMedia(data=data, content_type="image/jpeg", filename="image.jpg")
    return InboundMedia(data=data, content_type="application/octet-stream",
                        filename="file.bin")
