"""
adapters/channels/wecom/api_client.py — WeCom server API client (agent dialect).

Wraps the endpoints the self-built application needs:
    GET  /cgi-bin/gettoken          access_token (cached, single-flight refresh)
    POST /cgi-bin/message/send      direct message to a user
    POST /cgi-bin/appchat/send      message to a group chat
    POST /cgi-bin/media/upload      temporary media upload
    GET  /cgi-bin/media/get         temporary media download

Uses ``httpx.AsyncClient`` for async HTTP.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import time
from typing import Callable, Optional

import httpx

from .errors import WecomApiError

logger = logging.getLogger(__name__)

API_BASE = "https://qyapi.weixin.qq.com/cgi-bin"
TOKEN_REFRESH_BUFFER = 60.0   # seconds before expiry to refresh
DEFAULT_TIMEOUT = 15.0

MEDIA_TYPES = ("image", "voice", "video", "file")


class ApiClient:
    """Per-(corp, agent) API client with an in-memory access_token cache."""

    def __init__(self, corp_id: str, corp_secret: str,
                 agent_id: Optional[int] = None,
                 timeout: float = DEFAULT_TIMEOUT,
                 base_url: str = API_BASE,
                 transport: Optional[httpx.AsyncBaseTransport] = None,
                 clock: Callable[[], float] = time.time):
        self.corp_id = corp_id
        self.corp_secret = corp_secret
        self.agent_id = agent_id
        self.timeout = timeout
        self.base_url = base_url.rstrip("/")
        self._transport = transport
        self._clock = clock
        self._token = ""
        self._expires_at = 0.0
        self._lock = asyncio.Lock()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self.timeout, transport=self._transport)

    @staticmethod
    def _check(data: dict, action: str) -> dict:
        errcode = data.get("errcode", 0)
        if errcode:
            raise WecomApiError(
                f"{action} failed: {errcode} {data.get('errmsg', '')}".strip(),
                errcode=errcode)
        return data

    # ── token ─────────────────────────────────────────────────────────────

    def _token_valid(self) -> bool:
        return bool(self._token) and self._clock() < self._expires_at - TOKEN_REFRESH_BUFFER

    async def get_access_token(self) -> str:
        """Return a cached token, refreshing it at most once concurrently."""
        if self._token_valid():
            return self._token
        async with self._lock:
            # Another waiter may have refreshed while we queued on the lock
            if self._token_valid():
                return self._token
            async with self._client() as client:
                resp = await client.get(
                    f"{self.base_url}/gettoken",
                    params={"corpid": self.corp_id, "corpsecret": self.corp_secret},
                )
                resp.raise_for_status()
                data = resp.json()
            token = data.get("access_token")
            if not token:
                raise WecomApiError(
                    f"gettoken failed: {data.get('errcode')} {data.get('errmsg', '')}",
                    errcode=data.get("errcode"))
            self._token = token
            self._expires_at = self._clock() + float(data.get("expires_in") or 7200)
            logger.debug("[wecom-agent] access_token refreshed for corp %s", self.corp_id)
            return self._token

    def invalidate_token(self) -> None:
        self._token = ""
        self._expires_at = 0.0

    # ── messages ──────────────────────────────────────────────────────────

    def _message_body(self, msgtype: str, payload: dict,
                      to_user: Optional[str], chat_id: Optional[str]) -> tuple[str, dict]:
        if chat_id:
            return "appchat/send", {"chatid": chat_id, "msgtype": msgtype, msgtype: payload}
        return "message/send", {
            "touser": to_user or "",
            "msgtype": msgtype,
            "agentid": self.agent_id,
            msgtype: payload,
        }

    async def _post_message(self, endpoint: str, body: dict, action: str) -> dict:
        token = await self.get_access_token()
        async with self._client() as client:
            resp = await client.post(
                f"{self.base_url}/{endpoint}",
                params={"access_token": token},
                json=body,
            )
            resp.raise_for_status()
            return self._check(resp.json(), action)

    async def send_text(self, text: str, to_user: Optional[str] = None,
                        chat_id: Optional[str] = None) -> dict:
        endpoint, body = self._message_body("text", {"content": text}, to_user, chat_id)
        return await self._post_message(endpoint, body, "send text")

    async def send_media(self, media_id: str, media_type: str = "image",
                         to_user: Optional[str] = None,
                         chat_id: Optional[str] = None,
                         title: str = "", description: str = "") -> dict:
        if media_type not in MEDIA_TYPES:
            raise ValueError(f"unsupported media type: {media_type}")
        payload: dict = {"media_id": media_id}
        if media_type == "video":
            payload["title"] = title or "Video"
            payload["description"] = description
        endpoint, body = self._message_body(media_type, payload, to_user, chat_id)
        return await self._post_message(endpoint, body, f"send {media_type}")

    # ── media ─────────────────────────────────────────────────────────────

    async def upload_media(self, data: bytes, filename: str,
                           media_type: str = "file") -> str:
        """Upload temporary media; returns the ``media_id``."""
        if media_type not in MEDIA_TYPES:
            raise ValueError(f"unsupported media type: {media_type}")
        token = await self.get_access_token()
        content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        logger.debug("[wecom-agent] uploading media type=%s name=%s size=%d",
                     media_type, filename, len(data))
        async with self._client() as client:
            resp = await client.post(
                f"{self.base_url}/media/upload",
                params={"access_token": token, "type": media_type},
                files={"media": (filename, data, content_type)},
            )
            resp.raise_for_status()
            result = self._check(resp.json(), "upload media")
        media_id = result.get("media_id")
        if not media_id:
            raise WecomApiError("upload media failed: no media_id in response")
        return media_id

    async def download_media(self, media_id: str) -> tuple[bytes, str]:
        """Download temporary media. Returns ``(data, content_type)``."""
        token = await self.get_access_token()
        async with self._client() as client:
            resp = await client.get(
                f"{self.base_url}/media/get",
                params={"access_token": token, "media_id": media_id},
            )
            resp.raise_for_status()
            content_type = resp.headers.get("content-type", "application/octet-stream")
            # Errors come back as JSON with a 200 status
            if "application/json" in content_type:
                self._check(resp.json(), "download media")
                raise WecomApiError("download media failed: unexpected JSON body")
            return resp.content, content_type
