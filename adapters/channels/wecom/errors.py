"""
adapters/channels/wecom/errors.py
Exception hierarchy for the WeCom channel.

Protocol-boundary errors (crypto, request) end the HTTP request with a
4xx status. Downstream errors (API, active reply) are raised at their
call site and handled locally by the caller.
"""

from __future__ import annotations


class WecomError(Exception):
    """Base class for all WeCom channel errors."""


class WecomCryptoError(WecomError):
    """Envelope could not be decrypted or encrypted (bad key, padding, length)."""


class WecomRequestError(WecomError):
    """Inbound HTTP body was oversized, empty or not parseable."""

    def __init__(self, message: str, status: int = 400):
        super().__init__(message)
        self.status = status


class ActiveReplyError(WecomError):
    """The one-shot response_url is missing or was already consumed."""


class WecomApiError(WecomError):
    """The WeCom HTTP API answered with a non-zero errcode."""

    def __init__(self, message: str, errcode: int | None = None):
        super().__init__(message)
        self.errcode = errcode
