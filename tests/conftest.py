"""
tests/conftest.py
Shared fixtures for wecom-relay tests.
Provides test credentials, a recording agent runtime and helpers that build
signed + encrypted webhook requests the way WeCom sends them.
"""

import json

import pytest

from adapters.channels.wecom.crypto import compute_signature, decrypt, encrypt
from adapters.channels.wecom.engine import WecomEngine
from adapters.channels.wecom.models import AgentAccount, BotAccount, WecomAccount
from adapters.channels.wecom.router import WebhookRequest
from core.runtime.base import AgentRuntime

AES_KEY = "abcdefghijklmnopqrstuvwxyz0123456789ABCDEFG"
OTHER_AES_KEY = "ZYXWVUTSRQPONMLKJIHGFEDCBA9876543210zyxwvut"
TOKEN = "test-token"
CORP_ID = "ww-test-corp"
TIMESTAMP = "1700000000"
NONCE = "n0nce"


class RecordingRuntime(AgentRuntime):
    """Agent runtime that records every turn and answers with canned replies."""

    name = "recording"

    def __init__(self, replies=None, error=None):
        self.turns = []
        self.replies = replies if replies is not None else [("ok", [])]
        self.error = error

    async def run(self, turn, sink):
        self.turns.append(turn)
        if self.error is not None:
            raise self.error
        for text, media in self.replies:
            await sink.deliver(text, media)


# ── request builders ──────────────────────────────────────────────────────

def signed_query(encrypted, token=TOKEN, timestamp=TIMESTAMP, nonce=NONCE):
    return {
        "msg_signature": compute_signature(token, timestamp, nonce, encrypted),
        "timestamp": timestamp,
        "nonce": nonce,
    }


def bot_request(payload, path="/wecom", token=TOKEN, key=AES_KEY, receive_id=""):
    encrypted = encrypt(key, receive_id, json.dumps(payload))
    return WebhookRequest(
        method="POST", path=path,
        query=signed_query(encrypted, token),
        body=json.dumps({"encrypt": encrypted}).encode(),
    )


def agent_request(inner_xml, path="/wecom/agent", token=TOKEN, key=AES_KEY,
                  corp_id=CORP_ID):
    encrypted = encrypt(key, corp_id, inner_xml)
    body = (f"<xml><ToUserName><![CDATA[{corp_id}]]></ToUserName>"
            f"<Encrypt><![CDATA[{encrypted}]]></Encrypt>"
            f"<AgentID><![CDATA[1000002]]></AgentID></xml>")
    return WebhookRequest(method="POST", path=path,
                          query=signed_query(encrypted, token), body=body.encode())


def handshake_request(plaintext, path="/wecom", token=TOKEN, key=AES_KEY,
                      receive_id=""):
    echostr = encrypt(key, receive_id, plaintext)
    query = signed_query(echostr, token)
    query["echostr"] = echostr
    return WebhookRequest(method="GET", path=path, query=query)


def open_bot_reply(response, key=AES_KEY, receive_id=""):
    """Verify and decrypt a bot-dialect JSON response; return the inner payload."""
    envelope = json.loads(response.body_bytes)
    expected = compute_signature(TOKEN, envelope["timestamp"], envelope["nonce"],
                                 envelope["encrypt"])
    assert envelope["msgsignature"] == expected
    return json.loads(decrypt(key, receive_id, envelope["encrypt"]))


def text_message(content, msgid, userid="zhangsan", chattype="single", chatid=None,
                 response_url=None):
    msg = {
        "msgid": msgid,
        "aibotid": "bot-1",
        "chattype": chattype,
        "from": {"userid": userid},
        "msgtype": "text",
        "text": {"content": content},
    }
    if chatid:
        msg["chatid"] = chatid
    if response_url:
        msg["response_url"] = response_url
    return msg


def agent_text_xml(content, msgid="m-1", from_user="zhangsan", chat_id=None):
    chat = f"<ChatId><![CDATA[{chat_id}]]></ChatId>" if chat_id else ""
    return (f"<xml><ToUserName><![CDATA[{CORP_ID}]]></ToUserName>"
            f"<FromUserName><![CDATA[{from_user}]]></FromUserName>"
            f"<CreateTime>1700000000</CreateTime>"
            f"<MsgType><![CDATA[text]]></MsgType>"
            f"<Content><![CDATA[{content}]]></Content>"
            f"<MsgId>{msgid}</MsgId><AgentID>1000002</AgentID>{chat}</xml>")


# ── fixtures ──────────────────────────────────────────────────────────────

@pytest.fixture
def bot_account():
    return WecomAccount(
        account_id="default",
        bot=BotAccount(account_id="default", token=TOKEN, encoding_aes_key=AES_KEY,
                       stream_placeholder="thinking", welcome_text="hello there",
                       bot_ids=["bot-1"]),
    )


@pytest.fixture
def agent_account():
    return WecomAccount(
        account_id="default",
        agent=AgentAccount(account_id="default", corp_id=CORP_ID,
                           corp_secret="s3cret", agent_id=1000002,
                           token=TOKEN, encoding_aes_key=AES_KEY),
    )


@pytest.fixture
def runtime():
    return RecordingRuntime()


@pytest.fixture
def engine(runtime, bot_account):
    eng = WecomEngine(runtime, debounce=0.05)
    eng.start_account(bot_account)
    yield eng
    eng.stop()
