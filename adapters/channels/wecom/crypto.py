"""
adapters/channels/wecom/crypto.py
WeCom callback envelope: signature + AES-256-CBC message encryption.

Envelope layout (before encryption):
    random(16) | msg_len(4, big-endian) | msg | receive_id

  - Key:     base64(EncodingAESKey + "=") → 32 bytes
  - IV:      first 16 bytes of the key
  - Padding: PKCS#7 with a 32-byte block (not the AES block size)
  - Signature: sha1 over sorted(token, timestamp, nonce, encrypt)
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import struct

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from .errors import WecomCryptoError

WECOM_PKCS7_BLOCK_SIZE = 32
_RANDOM_PREFIX_BYTES = 16


# ── Signature ─────────────────────────────────────────────────────────────

def compute_signature(token: str, timestamp: str, nonce: str,
                      encrypt: str) -> str:
    """Return the hex sha1 msg_signature for an envelope."""
    parts = sorted([str(token), str(timestamp), str(nonce), str(encrypt)])
    return hashlib.sha1("".join(parts).encode("utf-8")).hexdigest()


def verify_signature(token: str, timestamp: str, nonce: str,
                     encrypt: str, signature: str) -> bool:
    """Constant-time check of a provided msg_signature.

    A mismatch is a normal ``False``; this never raises.
    """
    if not token or not signature:
        return False
    expected = compute_signature(token, timestamp, nonce, encrypt)
    return hmac.compare_digest(expected.encode("ascii"),
                               str(signature).encode("utf-8"))


# ── Key + padding ─────────────────────────────────────────────────────────

def decode_aes_key(encoding_aes_key: str) -> bytes:
    """Decode the 43-char EncodingAESKey into the raw 32-byte AES key."""
    raw = (encoding_aes_key or "").strip()
    if not raw:
        raise WecomCryptoError("EncodingAESKey is empty")
    if not raw.endswith("="):
        raw += "="
    try:
        key = base64.b64decode(raw, validate=False)
    except (binascii.Error, ValueError) as e:
        raise WecomCryptoError(f"EncodingAESKey is not valid base64: {e}") from e
    if len(key) != 32:
        raise WecomCryptoError(
            f"EncodingAESKey must decode to 32 bytes, got {len(key)}")
    return key


def pkcs7_pad(data: bytes, block_size: int = WECOM_PKCS7_BLOCK_SIZE) -> bytes:
    pad = block_size - (len(data) % block_size)
    return data + bytes([pad]) * pad


def pkcs7_unpad(data: bytes, block_size: int = WECOM_PKCS7_BLOCK_SIZE) -> bytes:
    """Strip and validate PKCS#7 padding."""
    if not data:
        raise WecomCryptoError("cannot unpad empty data")
    pad = data[-1]
    if pad < 1 or pad > block_size or pad > len(data):
        raise WecomCryptoError(f"invalid PKCS#7 padding length: {pad}")
    if data[-pad:] != bytes([pad]) * pad:
        raise WecomCryptoError("invalid PKCS#7 padding bytes")
    return data[:-pad]


def _cipher(key: bytes) -> Cipher:
    return Cipher(algorithms.AES(key), modes.CBC(key[:16]))


def aes_decrypt_raw(key: bytes, ciphertext: bytes) -> bytes:
    """AES-256-CBC decrypt with the WeCom IV; padding is left in place."""
    if not ciphertext or len(ciphertext) % 16:
        raise WecomCryptoError(
            f"ciphertext length {len(ciphertext)} is not a multiple of 16")
    decryptor = _cipher(key).decryptor()
    return decryptor.update(ciphertext) + decryptor.finalize()


def aes_encrypt_raw(key: bytes, plaintext: bytes) -> bytes:
    encryptor = _cipher(key).encryptor()
    return encryptor.update(plaintext) + encryptor.finalize()


# ── Envelope ──────────────────────────────────────────────────────────────

def encrypt(encoding_aes_key: str, receive_id: str, plaintext: str) -> str:
    """Encrypt a plaintext message into a base64 envelope."""
    key = decode_aes_key(encoding_aes_key)
    msg = plaintext.encode("utf-8")
    body = (os.urandom(_RANDOM_PREFIX_BYTES)
            + struct.pack(">I", len(msg))
            + msg
            + (receive_id or "").encode("utf-8"))
    return base64.b64encode(aes_encrypt_raw(key, pkcs7_pad(body))).decode("ascii")


def decrypt(encoding_aes_key: str, receive_id: str, encrypted: str) -> str:
    """Decrypt a base64 envelope back to the plaintext message.

    When ``receive_id`` is non-empty the envelope trailer must match it.
    """
    key = decode_aes_key(encoding_aes_key)
    try:
        ciphertext = base64.b64decode(encrypted or "", validate=True)
    except (binascii.Error, ValueError) as e:
        raise WecomCryptoError(f"encrypt field is not valid base64: {e}") from e

    body = pkcs7_unpad(aes_decrypt_raw(key, ciphertext))
    if len(body) < _RANDOM_PREFIX_BYTES + 4:
        raise WecomCryptoError("decrypted envelope is too short")

    (msg_len,) = struct.unpack(
        ">I", body[_RANDOM_PREFIX_BYTES:_RANDOM_PREFIX_BYTES + 4])
    msg_start = _RANDOM_PREFIX_BYTES + 4
    msg_end = msg_start + msg_len
    if msg_end > len(body):
        raise WecomCryptoError(
            f"embedded length {msg_len} exceeds envelope size {len(body)}")

    trailer = body[msg_end:].decode("utf-8", errors="replace")
    if receive_id and trailer != receive_id:
        raise WecomCryptoError(
            f"receive_id mismatch (expected {receive_id!r}, got {trailer!r})")

    try:
        return body[msg_start:msg_end].decode("utf-8")
    except UnicodeDecodeError as e:
        raise WecomCryptoError(f"decrypted message is not UTF-8: {e}") from e
