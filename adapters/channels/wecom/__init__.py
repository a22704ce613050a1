"""
adapters/channels/wecom/ — WeCom (enterprise WeChat) webhook channel.

Terminates the encrypted callback protocol for both dialects and relays
turns to an AgentRuntime:
    bot    — JSON callbacks, replies read back through stream polls
    agent  — XML callbacks, ``success`` ack, replies pushed via server API

Public API:
    WecomEngine      — engine.py, owns state + router + dialects
    WebhookRequest   — router.py, framework-neutral request
    WebhookResponse  — router.py, framework-neutral response
    encrypt/decrypt  — crypto.py, envelope codec
"""

from adapters.channels.wecom.errors import (  # noqa: F401
    ActiveReplyError, WecomApiError, WecomCryptoError, WecomError,
    WecomRequestError,
)
from adapters.channels.wecom.models import (  # noqa: F401
    AGENT_DIALECT, BOT_DIALECT, WebhookTarget, WecomAccount,
)

__all__ = [
    "ActiveReplyError", "WecomApiError", "WecomCryptoError", "WecomError",
    "WecomRequestError", "AGENT_DIALECT", "BOT_DIALECT", "WebhookTarget",
    "WecomAccount",
]
