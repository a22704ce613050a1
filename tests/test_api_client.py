"""
tests/test_api_client.py
WeCom server API client: token cache, single-flight refresh, errcodes, media.
"""

import asyncio
import json

import httpx
import pytest

from adapters.channels.wecom.api_client import ApiClient
from adapters.channels.wecom.errors import WecomApiError


class Clock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def _client(handler, clock=None):
    return ApiClient("corp", "secret", agent_id=1000002,
                     transport=httpx.MockTransport(handler),
                     clock=clock or Clock())


class TestAccessToken:

    @pytest.mark.asyncio
    async def test_cached_until_buffer(self):
        calls = []

        def handler(request):
            calls.append(request.url.params["corpsecret"])
            return httpx.Response(200, json={"access_token": f"tok-{len(calls)}",
                                             "expires_in": 7200})

        clock = Clock()
        client = _client(handler, clock)
        assert await client.get_access_token() == "tok-1"
        clock.now += 7000
        assert await client.get_access_token() == "tok-1"
        clock.now += 150          # inside the 60 s refresh buffer
        assert await client.get_access_token() == "tok-2"
        assert calls == ["secret", "secret"]

    @pytest.mark.asyncio
    async def test_concurrent_refresh_is_single_flight(self):
        calls = 0

        async def handler(request):
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.02)
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 7200})

        client = _client(handler)
        tokens = await asyncio.gather(*[client.get_access_token() for _ in range(5)])
        assert tokens == ["tok"] * 5
        assert calls == 1

    @pytest.mark.asyncio
    async def test_gettoken_error(self):
        def handler(request):
            return httpx.Response(200, json={"errcode": 40013, "errmsg": "invalid corpid"})

        with pytest.raises(WecomApiError) as exc:
            await _client(handler).get_access_token()
        assert exc.value.errcode == 40013

    @pytest.mark.asyncio
    async def test_invalidate(self):
        calls = 0

        def handler(request):
            nonlocal calls
            calls += 1
            return httpx.Response(200, json={"access_token": "tok", "expires_in": 7200})

        client = _client(handler)
        await client.get_access_token()
        client.invalidate_token()
        await client.get_access_token()
        assert calls == 2


class TestMessages:

    @staticmethod
    def _handler(sent, send_result=None):
        def handler(request):
            if request.url.path.endswith("/gettoken"):
                return httpx.Response(200, json={"access_token": "tok", "expires_in": 7200})
            sent.append((request.url.path, dict(request.url.params),
                         request.content))
            return httpx.Response(200, json=send_result or {"errcode": 0, "errmsg": "ok"})
        return handler

    @pytest.mark.asyncio
    async def test_send_text_direct(self):
        sent = []
        client = _client(self._handler(sent))
        await client.send_text("hi", to_user="u1")
        path, params, content = sent[0]
        assert path == "/cgi-bin/message/send"
        assert params == {"access_token": "tok"}
        assert json.loads(content) == {"touser": "u1", "msgtype": "text",
                                       "agentid": 1000002, "text": {"content": "hi"}}

    @pytest.mark.asyncio
    async def test_send_media_to_group(self):
        sent = []
        client = _client(self._handler(sent))
        await client.send_media("mid-1", "image", chat_id="grp")
        path, _, content = sent[0]
        assert path == "/cgi-bin/appchat/send"
        assert json.loads(content) == {"chatid": "grp", "msgtype": "image",
                                       "image": {"media_id": "mid-1"}}

    @pytest.mark.asyncio
    async def test_errcode_raises(self):
        client = _client(self._handler([], {"errcode": 81013, "errmsg": "user invalid"}))
        with pytest.raises(WecomApiError, match="81013"):
            await client.send_text("hi", to_user="ghost")

    @pytest.mark.asyncio
    async def test_unsupported_media_type(self):
        client = _client(self._handler([]))
        with pytest.raises(ValueError):
            await client.send_media("mid", "sticker", to_user="u")


class TestMedia:

    @pytest.mark.asyncio
    async def test_upload_returns_media_id(self):
        uploads = []

        def handler(request):
            if request.url.path.endswith("/gettoken"):
                return httpx.Response(200, json={"access_token": "tok", "expires_in": 7200})
            uploads.append((request.url.params["type"], request.content))
            return httpx.Response(200, json={"errcode": 0, "media_id": "mid-42"})

        client = _client(handler)
        assert await client.upload_media(b"PNGDATA", "chart.png", "image") == "mid-42"
        media_type, body = uploads[0]
        assert media_type == "image"
        assert b'filename="chart.png"' in body and b"PNGDATA" in body

    @pytest.mark.asyncio
    async def test_download(self):
        def handler(request):
            if request.url.path.endswith("/gettoken"):
                return httpx.Response(200, json={"access_token": "tok", "expires_in": 7200})
            return httpx.Response(200, content=b"\xff\xd8jpeg",
                                  headers={"content-type": "image/jpeg"})

        data, content_type = await _client(handler).download_media("mid")
        assert data == b"\xff\xd8jpeg"
        assert content_type == "image/jpeg"

    @pytest.mark.asyncio
    async def test_download_json_body_is_error(self):
        def handler(request):
            if request.url.path.endswith("/gettoken"):
                return httpx.Response(200, json={"access_token": "tok", "expires_in": 7200})
            return httpx.Response(200, json={"errcode": 40007, "errmsg": "invalid media_id"})

        with pytest.raises(WecomApiError) as exc:
            await _client(handler).download_media("bad")
        assert exc.value.errcode == 40007
