"""
tests/test_wecom_text.py
UTF-8 byte budgets: tail truncation and API chunking.
"""

from adapters.channels.wecom.text import (
    API_TEXT_MAX_BYTES, split_text_by_bytes, truncate_utf8_bytes, utf8_len,
)


class TestTruncate:

    def test_short_text_unchanged(self):
        assert truncate_utf8_bytes("hello", 100) == "hello"

    def test_keeps_the_tail(self):
        assert truncate_utf8_bytes("abcdef", 3) == "def"

    def test_never_splits_a_character(self):
        text = "你好世界"            # 3 bytes per char
        out = truncate_utf8_bytes(text, 7)
        assert out == "世界"
        assert utf8_len(out) <= 7

    def test_zero_budget(self):
        assert truncate_utf8_bytes("abc", 0) == ""


class TestSplit:

    def test_empty(self):
        assert split_text_by_bytes("") == []

    def test_fits_in_one_chunk(self):
        assert split_text_by_bytes("hi", 10) == ["hi"]

    def test_chunks_respect_budget(self):
        text = "中文内容" * 400
        chunks = split_text_by_bytes(text, API_TEXT_MAX_BYTES)
        assert len(chunks) > 1
        assert all(utf8_len(c) <= API_TEXT_MAX_BYTES for c in chunks)
        assert "".join(chunks) == text

    def test_prefers_paragraph_boundary(self):
        text = "a" * 30 + "\n\n" + "b" * 30
        chunks = split_text_by_bytes(text, 40)
        assert chunks == ["a" * 30 + "\n\n", "b" * 30]

    def test_markers(self):
        text = "word " * 100
        chunks = split_text_by_bytes(text, 120, add_markers=True)
        assert chunks[0].startswith("[1/")
        assert chunks[-1].startswith(f"[{len(chunks)}/{len(chunks)}]")
        assert all(utf8_len(c) <= 120 for c in chunks)
