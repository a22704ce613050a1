"""
adapters/channels/wecom/xml.py
XML helpers for the agent (self-built application) callback dialect.

Inbound body:   <xml><ToUserName/><Encrypt/><AgentID/></xml>
Decrypted msg:  <xml><FromUserName/><MsgType/><Content/>...</xml>
"""

from __future__ import annotations

import xml.etree.ElementTree as ET
from typing import Any, Optional
from xml.sax.saxutils import escape

from .crypto import compute_signature, encrypt
from .errors import WecomRequestError


def parse_xml(raw: str) -> dict[str, Any]:
    """Flatten a WeCom XML document into ``{tag: text}``.

    Nested elements (e.g. ``SendLocationInfo``) become nested dicts.
    """
    if not raw or not raw.strip():
        raise WecomRequestError("empty XML payload")
    try:
        root = ET.fromstring(raw.strip())
    except ET.ParseError as e:
        raise WecomRequestError(f"malformed XML payload: {e}") from e
    return _element_to_dict(root)


def _element_to_dict(elem: ET.Element) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for child in elem:
        if len(child):
            out[child.tag] = _element_to_dict(child)
        else:
            out[child.tag] = (child.text or "").strip()
    return out


def extract_encrypt(raw: str) -> str:
    """Return the <Encrypt> field of an inbound XML envelope."""
    msg = parse_xml(raw)
    value = msg.get("Encrypt")
    if not isinstance(value, str) or not value:
        raise WecomRequestError("XML payload has no Encrypt field")
    return value


# ── Field accessors ───────────────────────────────────────────────────────

def msg_type(msg: dict) -> str:
    return str(msg.get("MsgType") or "").lower()


def from_user(msg: dict) -> str:
    return str(msg.get("FromUserName") or "")


def to_user(msg: dict) -> str:
    return str(msg.get("ToUserName") or "")


def chat_id(msg: dict) -> Optional[str]:
    value = msg.get("ChatId")
    return str(value) if value else None


def event_type(msg: dict) -> str:
    return str(msg.get("Event") or "").lower()


def extract_content(msg: dict) -> str:
    """Render a decrypted agent-dialect message as agent-readable text."""
    kind = msg_type(msg)
    if kind == "text":
        return str(msg.get("Content") or "")
    if kind == "voice":
        return str(msg.get("Recognition") or "") or "[voice]"
    if kind == "image":
        return f"[image] {msg.get('PicUrl') or ''}".rstrip()
    if kind == "video":
        return "[video]"
    if kind == "file":
        return f"[file] {msg.get('Title') or msg.get('MediaId') or ''}".rstrip()
    if kind == "location":
        return (f"[location] {msg.get('Label') or ''} "
                f"({msg.get('Location_X')}, {msg.get('Location_Y')})")
    if kind == "link":
        return (f"[link] {msg.get('Title') or ''}\n"
                f"{msg.get('Description') or ''}\n{msg.get('Url') or ''}")
    if kind == "event":
        return f"[event] {msg.get('Event') or ''} - {msg.get('EventKey') or ''}"
    return f"[{kind or 'unknown'}]"


# ── Outbound ──────────────────────────────────────────────────────────────

def _cdata(value: str) -> str:
    return "<![CDATA[" + str(value).replace("]]>", "]]]]><![CDATA[>") + "]]>"


def build_text_reply_xml(to_user: str, from_user: str, content: str,
                         create_time: int) -> str:
    """Plaintext passive reply carrying a text message."""
    return (
        "<xml>"
        f"<ToUserName>{_cdata(to_user)}</ToUserName>"
        f"<FromUserName>{_cdata(from_user)}</FromUserName>"
        f"<CreateTime>{int(create_time)}</CreateTime>"
        "<MsgType><![CDATA[text]]></MsgType>"
        f"<Content>{_cdata(content)}</Content>"
        "</xml>"
    )


def build_encrypted_xml_response(token: str, encoding_aes_key: str,
                                 receive_id: str, plaintext: str,
                                 timestamp: str, nonce: str) -> str:
    """Wrap a plaintext XML reply into the signed, encrypted response body."""
    encrypted = encrypt(encoding_aes_key, receive_id, plaintext)
    signature = compute_signature(token, timestamp, nonce, encrypted)
    return (
        "<xml>"
        f"<Encrypt><![CDATA[{encrypted}]]></Encrypt>"
        f"<MsgSignature><![CDATA[{signature}]]></MsgSignature>"
        f"<TimeStamp>{escape(str(timestamp))}</TimeStamp>"
        f"<Nonce><![CDATA[{nonce}]]></Nonce>"
        "</xml>"
    )
