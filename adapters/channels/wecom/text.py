"""
adapters/channels/wecom/text.py
UTF-8 byte budgets for WeCom text.

Stream replies are capped at 20480 bytes (keep the newest content), and
API text messages are cut off by the platform at 2048 bytes, so longer
replies are split on paragraph / line boundaries first.
"""

from __future__ import annotations

STREAM_MAX_BYTES = 20_480
API_TEXT_MAX_BYTES = 2048


def utf8_len(text: str) -> int:
    return len(text.encode("utf-8"))


def truncate_utf8_bytes(text: str, max_bytes: int) -> str:
    """Keep the last ``max_bytes`` bytes of ``text`` on a character boundary."""
    raw = text.encode("utf-8")
    if len(raw) <= max_bytes:
        return text
    if max_bytes <= 0:
        return ""
    tail = raw[len(raw) - max_bytes:]
    # Drop continuation bytes of a character cut in half.
    start = 0
    while start < len(tail) and (tail[start] & 0xC0) == 0x80:
        start += 1
    return tail[start:].decode("utf-8")


def _max_prefix_chars(text: str, max_bytes: int) -> int:
    """Largest n such that text[:n] fits in max_bytes (binary search)."""
    lo, hi = 0, len(text)
    while lo < hi:
        mid = (lo + hi + 1) // 2
        if utf8_len(text[:mid]) <= max_bytes:
            lo = mid
        else:
            hi = mid - 1
    return lo


def _find_split_point(text: str, max_bytes: int) -> int:
    limit = _max_prefix_chars(text, max_bytes)
    if limit <= 0:
        return 1

    # Paragraph boundary anywhere in range
    para = text.rfind("\n\n", 0, limit)
    if para > 0:
        return para + 2

    # Line boundary, but keep at least half of the allowed chunk
    floor = max(1, limit // 2)
    line = text.rfind("\n", floor, limit)
    if line >= floor:
        return line + 1

    return limit


def split_text_by_bytes(text: str, max_bytes: int = API_TEXT_MAX_BYTES,
                        add_markers: bool = False) -> list[str]:
    """Split ``text`` into chunks of at most ``max_bytes`` UTF-8 bytes.

    With ``add_markers`` each chunk of a multi-part result is prefixed
    with ``[i/n] `` and the budget accounts for the marker.
    """
    if not text:
        return []
    if utf8_len(text) <= max_bytes:
        return [text]

    marker_bytes = 0
    if add_markers:
        width = len(str(-(-utf8_len(text) // max_bytes)))
        marker_bytes = utf8_len(f"[{'9' * width}/{'9' * width}] ")
    budget = max_bytes - marker_bytes
    if budget <= 0:
        return split_text_by_bytes(text, max_bytes, add_markers=False)

    chunks: list[str] = []
    remaining = text
    while remaining:
        if utf8_len(remaining) <= budget:
            chunks.append(remaining)
            break
        cut = _find_split_point(remaining, budget)
        chunks.append(remaining[:cut])
        remaining = remaining[cut:].lstrip()

    if add_markers and len(chunks) > 1:
        width = len(str(len(chunks)))
        return [f"[{str(i + 1).zfill(width)}/{len(chunks)}] {c}"
                for i, c in enumerate(chunks)]
    return chunks
