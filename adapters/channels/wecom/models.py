"""
adapters/channels/wecom/models.py
Data structures shared by the WeCom protocol engine.

Accounts are resolved from config (see core/config.py); the rest is
runtime state owned by a single WecomStore per engine instance.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any, Optional

BOT_DIALECT = "bot"       # JSON callbacks, stream-poll replies
AGENT_DIALECT = "agent"   # XML callbacks, replies pushed via API


# ══════════════════════════════════════════════════════════════════════════════
#  Accounts / targets
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class BotAccount:
    """Resolved bot (smart robot) credentials for one account."""
    account_id: str
    token: str = ""
    encoding_aes_key: str = ""
    receive_id: str = ""
    stream_placeholder: str = ""
    welcome_text: str = ""
    bot_ids: list[str] = field(default_factory=list)
    media_max_bytes: int = 5 * 1024 * 1024

    @property
    def configured(self) -> bool:
        return bool(self.token and self.encoding_aes_key)


@dataclass
class AgentAccount:
    """Resolved self-built application credentials for one account."""
    account_id: str
    corp_id: str = ""
    corp_secret: str = ""
    agent_id: Optional[int] = None
    token: str = ""
    encoding_aes_key: str = ""
    welcome_text: str = ""
    timeout: float = 15.0

    @property
    def configured(self) -> bool:
        return bool(self.corp_id and self.corp_secret
                    and self.token and self.encoding_aes_key)

    @property
    def receive_id(self) -> str:
        return self.corp_id


@dataclass
class WecomAccount:
    """One configured account; it may run a bot, an agent app, or both."""
    account_id: str
    name: str = ""
    enabled: bool = True
    bot: Optional[BotAccount] = None
    agent: Optional[AgentAccount] = None

    @property
    def configured(self) -> bool:
        return bool((self.bot and self.bot.configured)
                    or (self.agent and self.agent.configured))


@dataclass(eq=False)
class WebhookTarget:
    """A registered listener: credentials + the path it is mounted on.

    Several targets may share a path; the router picks the one whose token
    verifies the request signature. Identity equality, so unregistering
    removes exactly the instance that was registered.
    """
    account_id: str
    path: str
    dialect: str
    token: str
    encoding_aes_key: str
    receive_id: str = ""
    bot: Optional[BotAccount] = None
    agent: Optional[AgentAccount] = None

    @property
    def configured(self) -> bool:
        return bool(self.token and self.encoding_aes_key)


# ══════════════════════════════════════════════════════════════════════════════
#  Runtime state
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class StreamImage:
    base64: str
    md5: str


@dataclass
class StreamState:
    """Reply being produced for one bot-dialect turn, read by stream polls."""
    stream_id: str
    source_msgid: str = ""
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    started: bool = False
    finished: bool = False
    error: str = ""
    content: str = ""
    images: list[StreamImage] = field(default_factory=list)

    @property
    def status(self) -> str:
        if self.finished:
            return "failed" if self.error else "finished"
        return "running" if self.started else "pending"


@dataclass
class ActiveReplyState:
    response_url: str
    created_at: float = field(default_factory=time.time)
    used_at: Optional[float] = None
    in_flight: bool = False
    last_error: str = ""


@dataclass
class PendingInbound:
    """Messages buffered for one (account, sender, chat) during debounce."""
    stream_id: str
    target: WebhookTarget
    first_message: dict
    bodies: list[str] = field(default_factory=list)
    message_ids: list[str] = field(default_factory=list)
    timer: Any = None           # asyncio.TimerHandle
    created_at: float = field(default_factory=time.time)


# ══════════════════════════════════════════════════════════════════════════════
#  Agent-facing turn
# ══════════════════════════════════════════════════════════════════════════════

@dataclass
class InboundMedia:
    data: bytes
    content_type: str
    filename: str


@dataclass
class InboundTurn:
    """One unit of work handed to the agent runtime."""
    account_id: str
    dialect: str
    sender_id: str
    chat_id: str
    chat_type: str              # "direct" | "group"
    text: str
    message_id: str = ""
    message_ids: list[str] = field(default_factory=list)
    msgtype: str = "text"
    media: Optional[InboundMedia] = None
    stream_id: str = ""
    raw: dict = field(default_factory=dict)

    @property
    def session_key(self) -> str:
        if self.chat_type == "group":
            return f"wecom:{self.account_id}:group:{self.chat_id}"
        return f"wecom:{self.account_id}:{self.sender_id}"

    def to_dict(self) -> dict:
        d: dict[str, Any] = {
            "channel": "wecom",
            "account_id": self.account_id,
            "dialect": self.dialect,
            "session_key": self.session_key,
            "sender_id": self.sender_id,
            "chat_id": self.chat_id,
            "chat_type": self.chat_type,
            "msgtype": self.msgtype,
            "text": self.text,
            "message_id": self.message_id,
            "message_ids": list(self.message_ids),
        }
        if self.media:
            d["media"] = {
                "content_type": self.media.content_type,
                "filename": self.media.filename,
                "size": len(self.media.data),
            }
        return d
