"""
tests/test_wecom_crypto.py
Envelope codec and msg_signature tests.
"""

import base64
import struct

import pytest

from adapters.channels.wecom.crypto import (
    aes_decrypt_raw, aes_encrypt_raw, compute_signature, decode_aes_key, decrypt,
    encrypt, pkcs7_pad, pkcs7_unpad, verify_signature,
)
from adapters.channels.wecom.errors import WecomCryptoError
from tests.conftest import AES_KEY, OTHER_AES_KEY, TOKEN


class TestSignature:

    def test_deterministic_hex_digest(self):
        a = compute_signature("t", "2", "1", "enc")
        b = compute_signature("t", "2", "1", "enc")
        assert a == b and len(a) == 40

    def test_verify_accepts_own_signature(self):
        sig = compute_signature(TOKEN, "1700000000", "abc", "ENC")
        assert verify_signature(TOKEN, "1700000000", "abc", "ENC", sig)

    @pytest.mark.parametrize("field", ["token", "timestamp", "nonce", "encrypt"])
    def test_single_char_mutation_rejected(self, field):
        params = {"token": TOKEN, "timestamp": "1700000000",
                  "nonce": "abc", "encrypt": "ENCRYPTED"}
        sig = compute_signature(**params)
        params[field] = params[field][:-1] + ("x" if params[field][-1] != "x" else "y")
        assert not verify_signature(signature=sig, **params)

    def test_flipped_signature_char_rejected(self):
        sig = compute_signature(TOKEN, "1", "2", "3")
        bad = ("0" if sig[0] != "0" else "1") + sig[1:]
        assert not verify_signature(TOKEN, "1", "2", "3", bad)

    def test_empty_token_or_signature(self):
        sig = compute_signature("", "1", "2", "3")
        assert not verify_signature("", "1", "2", "3", sig)
        assert not verify_signature(TOKEN, "1", "2", "3", "")

    def test_uppercase_signature_rejected(self):
        sig = compute_signature(TOKEN, "1", "2", "3")
        assert not verify_signature(TOKEN, "1", "2", "3", sig.upper())


class TestKeyAndPadding:

    def test_decode_key(self):
        assert len(decode_aes_key(AES_KEY)) == 32

    def test_decode_key_rejects_wrong_length(self):
        with pytest.raises(WecomCryptoError):
            decode_aes_key("abc")
        with pytest.raises(WecomCryptoError):
            decode_aes_key("")

    def test_pad_uses_32_byte_block(self):
        padded = pkcs7_pad(b"x" * 10)
        assert len(padded) == 32 and padded[-1] == 22
        full = pkcs7_pad(b"x" * 32)
        assert len(full) == 64 and full[-32:] == bytes([32]) * 32
        assert pkcs7_unpad(padded) == b"x" * 10

    def test_unpad_rejects_bad_length(self):
        with pytest.raises(WecomCryptoError):
            pkcs7_unpad(b"x" * 31 + bytes([33]))
        with pytest.raises(WecomCryptoError):
            pkcs7_unpad(b"x" * 31 + bytes([0]))

    def test_unpad_rejects_inconsistent_bytes(self):
        with pytest.raises(WecomCryptoError):
            pkcs7_unpad(b"x" * 28 + bytes([1, 2, 4, 4]))

    def test_raw_decrypt_rejects_partial_block(self):
        with pytest.raises(WecomCryptoError):
            aes_decrypt_raw(decode_aes_key(AES_KEY), b"x" * 20)


class TestEnvelope:

    @pytest.mark.parametrize("plaintext", [
        "", "hello", "你好，世界 🎉", "x" * 5000, '{"msgtype": "text"}',
    ])
    def test_round_trip(self, plaintext):
        enc = encrypt(AES_KEY, "corp", plaintext)
        assert decrypt(AES_KEY, "corp", enc) == plaintext

    def test_random_prefix_makes_ciphertexts_differ(self):
        assert encrypt(AES_KEY, "", "same") != encrypt(AES_KEY, "", "same")

    def test_empty_receive_id_skips_trailer_check(self):
        enc = encrypt(AES_KEY, "anything", "hi")
        assert decrypt(AES_KEY, "", enc) == "hi"

    def test_receive_id_mismatch(self):
        enc = encrypt(AES_KEY, "corp-a", "hi")
        with pytest.raises(WecomCryptoError, match="receive_id"):
            decrypt(AES_KEY, "corp-b", enc)

    def test_wrong_key_fails(self):
        enc = encrypt(AES_KEY, "", "hello there, this is long enough")
        with pytest.raises(WecomCryptoError):
            decrypt(OTHER_AES_KEY, "", enc)

    def test_not_base64(self):
        with pytest.raises(WecomCryptoError):
            decrypt(AES_KEY, "", "!!!not base64!!!")

    def test_embedded_length_exceeds_body(self):
        key = decode_aes_key(AES_KEY)
        body = b"r" * 16 + struct.pack(">I", 1000) + b"short"
        enc = base64.b64encode(aes_encrypt_raw(key, pkcs7_pad(body))).decode()
        with pytest.raises(WecomCryptoError, match="exceeds"):
            decrypt(AES_KEY, "", enc)

    def test_envelope_layout(self):
        enc = encrypt(AES_KEY, "corp", "abc")
        key = decode_aes_key(AES_KEY)
        body = pkcs7_unpad(aes_decrypt_raw(key, base64.b64decode(enc)))
        assert struct.unpack(">I", body[16:20])[0] == 3
        assert body[20:23] == b"abc"
        assert body[23:] == b"corp"
