"""
adapters/channels/wecom/media.py — inbound media download + decryption.

Bot-dialect image/file messages carry a url to a file encrypted with the
account's EncodingAESKey (AES-256-CBC, IV = key[:16], PKCS#7 / 32).
Outbound media referenced by the agent (url or local path) is loaded here
too, so the reply sink can turn images into stream attachments.
"""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import re
from pathlib import Path
from typing import Optional

import httpx

from .crypto import aes_decrypt_raw, decode_aes_key, pkcs7_unpad
from .errors import WecomError

logger = logging.getLogger(__name__)

MEDIA_TIMEOUT = 15.0
OUTBOUND_MEDIA_MAX_BYTES = 10 * 1024 * 1024

_URL_RE = re.compile(r"^https?://", re.IGNORECASE)


class MediaTooLargeError(WecomError):
    pass


async def _download(url: str, max_bytes: Optional[int],
                    transport: Optional[httpx.AsyncBaseTransport] = None,
                    ) -> tuple[bytes, str]:
    async with httpx.AsyncClient(timeout=MEDIA_TIMEOUT, transport=transport,
                                 follow_redirects=True) as client:
        async with client.stream("GET", url) as resp:
            resp.raise_for_status()
            chunks: list[bytes] = []
            size = 0
            async for chunk in resp.aiter_bytes():
                size += len(chunk)
                if max_bytes and size > max_bytes:
                    raise MediaTooLargeError(
                        f"media exceeds {max_bytes} bytes: {url}")
                chunks.append(chunk)
            return b"".join(chunks), resp.headers.get("content-type", "")


async def decrypt_media(url: str, encoding_aes_key: str,
                        max_bytes: Optional[int] = None,
                        transport: Optional[httpx.AsyncBaseTransport] = None,
                        ) -> bytes:
    """Download an encrypted inbound media file and return the plaintext."""
    encrypted, _ = await _download(url, max_bytes, transport)
    key = decode_aes_key(encoding_aes_key)
    return pkcs7_unpad(aes_decrypt_raw(key, encrypted))


async def load_outbound_media(ref: str,
                              max_bytes: int = OUTBOUND_MEDIA_MAX_BYTES,
                              transport: Optional[httpx.AsyncBaseTransport] = None,
                              ) -> tuple[bytes, str, str]:
    """Fetch media the agent referenced. Returns ``(data, content_type, filename)``."""
    if _URL_RE.match(ref):
        data, content_type = await _download(ref, max_bytes, transport)
        filename = ref.split("?", 1)[0].rstrip("/").rsplit("/", 1)[-1] or "attachment"
        if not content_type:
            content_type = mimetypes.guess_type(filename)[0] or "application/octet-stream"
        return data, content_type.split(";", 1)[0].strip(), filename

    path = Path(ref).expanduser()
    data = await asyncio.to_thread(path.read_bytes)
    if len(data) > max_bytes:
        raise MediaTooLargeError(f"media exceeds {max_bytes} bytes: {ref}")
    content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    return data, content_type, path.name
