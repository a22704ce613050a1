"""
adapters/channels/wecom/router.py
Webhook router: path registry, GET handshake, POST envelope verification.

Framework neutral. The HTTP front-end (core/gateway.py, or a test) builds a
WebhookRequest and gets back a WebhookResponse, or None when the path is
not a WeCom callback and should fall through to the next handler.

    GET  ?msg_signature&timestamp&nonce&echostr  → 200 decrypted echostr
    POST ?msg_signature&timestamp&nonce + body    → dialect handler

Failures at this boundary are terminal for the request:
    no target verifies the signature  → 401
    decrypt / body / padding failure  → 400
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Callable, Optional, Protocol, Union

from .crypto import decrypt, verify_signature
from .errors import WecomCryptoError, WecomRequestError
from .models import WebhookTarget
from .xml import extract_encrypt

logger = logging.getLogger(__name__)

MAX_BODY_BYTES = 1024 * 1024
TEXT_PLAIN = "text/plain; charset=utf-8"
APPLICATION_JSON = "application/json; charset=utf-8"


# ── Request / response ────────────────────────────────────────────────────

@dataclass
class WebhookRequest:
    method: str
    path: str
    query: dict[str, str] = field(default_factory=dict)
    body: bytes = b""


@dataclass
class WebhookResponse:
    status: int = 200
    body: Union[str, bytes] = ""
    content_type: str = TEXT_PLAIN

    @classmethod
    def text(cls, body: str, status: int = 200) -> "WebhookResponse":
        return cls(status=status, body=body, content_type=TEXT_PLAIN)

    @classmethod
    def json(cls, payload: dict, status: int = 200) -> "WebhookResponse":
        return cls(status=status, content_type=APPLICATION_JSON,
                   body=json.dumps(payload, ensure_ascii=False))

    @property
    def body_bytes(self) -> bytes:
        if isinstance(self.body, bytes):
            return self.body
        return self.body.encode("utf-8")


class DialectHandler(Protocol):
    async def handle(self, target: WebhookTarget, plaintext: str,
                     timestamp: str, nonce: str) -> WebhookResponse:
        ...


# ── Helpers ───────────────────────────────────────────────────────────────

def normalize_path(raw: str) -> str:
    path = (raw or "").strip().split("?", 1)[0]
    if not path.startswith("/"):
        path = "/" + path
    if len(path) > 1:
        path = path.rstrip("/") or "/"
    return path


def signature_param(query: dict[str, str]) -> str:
    return (query.get("msg_signature")
            or query.get("msgsignature")
            or query.get("signature")
            or "")


def _b64_param(value: str) -> str:
    # A raw "+" in the query string is decoded to a space by form decoding.
    return (value or "").replace(" ", "+")


def parse_envelope(body: bytes, max_bytes: int = MAX_BODY_BYTES) -> str:
    """Return the ciphertext carried by a JSON ``{encrypt}`` or XML ``<Encrypt>`` body."""
    if len(body) > max_bytes:
        raise WecomRequestError(f"request body exceeds {max_bytes} bytes")
    try:
        text = body.decode("utf-8").strip()
    except UnicodeDecodeError as e:
        raise WecomRequestError("request body is not valid UTF-8") from e
    if not text:
        raise WecomRequestError("empty request body")

    if text.startswith("<"):
        return extract_encrypt(text)

    try:
        record = json.loads(text)
    except ValueError as e:
        raise WecomRequestError("request body is not valid JSON") from e
    if not isinstance(record, dict):
        raise WecomRequestError("request body is not a JSON object")
    encrypted = record.get("encrypt") or record.get("Encrypt")
    if not isinstance(encrypted, str) or not encrypted:
        raise WecomRequestError("request body has no encrypt field")
    return encrypted


# ══════════════════════════════════════════════════════════════════════════════
#  Router
# ══════════════════════════════════════════════════════════════════════════════

class WebhookRouter:
    """Holds ``path -> [WebhookTarget]`` and dispatches verified payloads."""

    def __init__(self, max_body_bytes: int = MAX_BODY_BYTES):
        self.max_body_bytes = max_body_bytes
        self._targets: dict[str, list[WebhookTarget]] = {}
        self._handlers: dict[str, DialectHandler] = {}

    # ── registry ──────────────────────────────────────────────────────────

    def add_dialect(self, dialect: str, handler: DialectHandler) -> None:
        self._handlers[dialect] = handler

    def register(self, target: WebhookTarget) -> Callable[[], None]:
        """Mount ``target``; the returned callable unmounts exactly it."""
        key = normalize_path(target.path)
        target.path = key
        self._targets.setdefault(key, []).append(target)
        logger.info("[wecom] registered %s target %s on %s",
                    target.dialect, target.account_id, key)

        def unregister() -> None:
            remaining = [t for t in self._targets.get(key, []) if t is not target]
            if remaining:
                self._targets[key] = remaining
            else:
                self._targets.pop(key, None)

        return unregister

    def targets_for(self, path: str) -> list[WebhookTarget]:
        return list(self._targets.get(normalize_path(path), []))

    def paths(self) -> list[str]:
        return sorted(self._targets)

    # ── dispatch ──────────────────────────────────────────────────────────

    @staticmethod
    def _select(candidates: list[WebhookTarget], timestamp: str, nonce: str,
                encrypted: str, signature: str) -> Optional[WebhookTarget]:
        for target in candidates:
            if target.token and verify_signature(
                    target.token, timestamp, nonce, encrypted, signature):
                return target
        return None

    async def handle(self, request: WebhookRequest) -> Optional[WebhookResponse]:
        path = normalize_path(request.path)
        candidates = self._targets.get(path)
        if not candidates:
            return None

        method = request.method.upper()
        query = request.query
        timestamp = query.get("timestamp", "")
        nonce = query.get("nonce", "")
        signature = signature_param(query)

        if method == "GET":
            return self._handshake(path, candidates, timestamp, nonce, signature,
                                   _b64_param(query.get("echostr", "")))
        if method != "POST":
            return None

        try:
            encrypted = parse_envelope(request.body, self.max_body_bytes)
        except WecomRequestError as e:
            logger.warning("[wecom] rejected POST %s: %s", path, e)
            return WebhookResponse.text(f"invalid payload: {e}", status=e.status)

        target = self._select(candidates, timestamp, nonce, encrypted, signature)
        if target is None or not target.configured:
            logger.warning("[wecom] signature verification failed on POST %s", path)
            return WebhookResponse.text("unauthorized", status=401)

        try:
            plaintext = decrypt(target.encoding_aes_key, target.receive_id, encrypted)
        except WecomCryptoError as e:
            logger.warning("[wecom] decrypt failed on POST %s (account=%s): %s",
                           path, target.account_id, e)
            return WebhookResponse.text("decrypt failed", status=400)

        handler = self._handlers.get(target.dialect)
        if handler is None:
            logger.error("[wecom] no handler for dialect %r on %s", target.dialect, path)
            return WebhookResponse.text("dialect not available", status=500)

        try:
            return await handler.handle(target, plaintext, timestamp, nonce)
        except WecomRequestError as e:
            logger.warning("[wecom] malformed %s payload on %s: %s",
                           target.dialect, path, e)
            return WebhookResponse.text(f"invalid payload: {e}", status=e.status)

    def _handshake(self, path: str, candidates: list[WebhookTarget],
                   timestamp: str, nonce: str, signature: str,
                   echostr: str) -> WebhookResponse:
        target = self._select(candidates, timestamp, nonce, echostr, signature)
        if target is None or not target.encoding_aes_key:
            logger.warning("[wecom] handshake signature mismatch on %s", path)
            return WebhookResponse.text("unauthorized", status=401)
        try:
            plain = decrypt(target.encoding_aes_key, target.receive_id, echostr)
        except WecomCryptoError as e:
            logger.warning("[wecom] handshake decrypt failed on %s: %s", path, e)
            return WebhookResponse.text("decrypt failed", status=400)
        logger.info("[wecom] handshake ok on %s (account=%s)", path, target.account_id)
        return WebhookResponse.text(plain)
