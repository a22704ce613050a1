"""
tests/test_wecom_state.py
Stream store, dedup cache and one-shot response_url gate.
"""

import asyncio
import base64
import hashlib

import pytest

from adapters.channels.wecom.active_reply import ActiveReplyGate
from adapters.channels.wecom.dedup import DedupCache
from adapters.channels.wecom.errors import ActiveReplyError
from adapters.channels.wecom.stream import StreamStore, build_placeholder_reply


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


# ══════════════════════════════════════════════════════════════════════════════
#  Streams
# ══════════════════════════════════════════════════════════════════════════════

class TestStreamStore:

    def test_lifecycle_status(self):
        store = StreamStore()
        state = store.create("m1")
        assert state.status == "pending"
        store.mark_running(state.stream_id)
        assert state.status == "running"
        store.finish(state.stream_id)
        assert state.status == "finished"

    def test_poll_before_and_after_finish(self):
        store = StreamStore()
        sid = store.create().stream_id
        store.append(sid, "partial")
        snap = store.snapshot(sid)["stream"]
        assert snap == {"id": sid, "finish": False, "content": "partial"}
        store.append(sid, "rest")
        store.finish(sid)
        snap = store.snapshot(sid)["stream"]
        assert snap["finish"] is True
        assert snap["content"] == "partial\n\nrest"

    def test_images_only_on_finished_snapshot(self):
        store = StreamStore()
        sid = store.create().stream_id
        store.add_image(sid, b"\x89PNG")
        assert "msg_item" not in store.snapshot(sid)["stream"]
        store.finish(sid)
        items = store.snapshot(sid)["stream"]["msg_item"]
        assert items[0]["msgtype"] == "image"
        assert items[0]["image"]["md5"] == hashlib.md5(b"\x89PNG").hexdigest()
        assert items[0]["image"]["base64"] == base64.b64encode(b"\x89PNG").decode()

    def test_append_after_finish_is_ignored(self):
        store = StreamStore()
        sid = store.create().stream_id
        store.finish(sid)
        assert store.append(sid, "late") is False
        assert store.snapshot(sid)["stream"]["content"] == ""

    def test_content_truncated_to_tail(self):
        store = StreamStore(max_bytes=10)
        sid = store.create().stream_id
        store.append(sid, "0123456789ABCDEF")
        assert store.get(sid).content == "6789ABCDEF"

    def test_fail_sets_error_text(self):
        store = StreamStore()
        sid = store.create().stream_id
        store.fail(sid, "boom")
        state = store.get(sid)
        assert state.status == "failed"
        assert state.content == "Error: boom"

    def test_fail_keeps_partial_content(self):
        store = StreamStore()
        sid = store.create().stream_id
        store.append(sid, "half an answer")
        store.fail(sid, "boom")
        assert store.get(sid).content == "half an answer"

    def test_unknown_stream_reads_finished(self):
        snap = StreamStore().snapshot("nope")["stream"]
        assert snap["finish"] is True and snap["content"] == ""

    def test_placeholder_default(self):
        assert build_placeholder_reply("s")["stream"]["content"] == "1"
        assert build_placeholder_reply("s", "wait")["stream"]["content"] == "wait"

    def test_prune_drops_stream_and_msgid_index(self):
        clock = FakeClock()
        store = StreamStore(ttl=60, clock=clock)
        sid = store.create("m1").stream_id
        assert store.stream_for_msgid("m1") == sid
        clock.now += 61
        assert store.prune() == 1
        assert store.get(sid) is None
        assert store.stream_for_msgid("m1") is None


# ══════════════════════════════════════════════════════════════════════════════
#  Dedup
# ══════════════════════════════════════════════════════════════════════════════

class TestDedupCache:

    def test_second_delivery_rejected(self):
        cache = DedupCache()
        assert cache.remember("m1") is True
        assert cache.remember("m1") is False
        assert "m1" in cache

    def test_expires_after_ttl(self):
        clock = FakeClock()
        cache = DedupCache(ttl=300, clock=clock)
        cache.remember("m1")
        clock.now += 301
        assert "m1" not in cache
        assert cache.remember("m1") is True

    def test_prune(self):
        clock = FakeClock()
        cache = DedupCache(ttl=10, clock=clock)
        cache.remember("a")
        clock.now += 11
        cache.remember("b")
        assert len(cache) == 1


# ══════════════════════════════════════════════════════════════════════════════
#  Active reply gate
# ══════════════════════════════════════════════════════════════════════════════

class TestActiveReplyGate:

    @pytest.mark.asyncio
    async def test_single_use(self):
        gate = ActiveReplyGate()
        gate.store("s1", "https://example.invalid/reply")
        sent = []

        async def send(url):
            sent.append(url)

        await gate.use_once("s1", send)
        with pytest.raises(ActiveReplyError):
            await gate.use_once("s1", send)
        assert sent == ["https://example.invalid/reply"]
        assert gate.get("s1").used_at is not None

    @pytest.mark.asyncio
    async def test_failure_records_error_and_keeps_url_usable(self):
        gate = ActiveReplyGate()
        gate.store("s1", "https://example.invalid/reply")

        async def broken(url):
            raise RuntimeError("503 from upstream")

        with pytest.raises(RuntimeError):
            await gate.use_once("s1", broken)
        state = gate.get("s1")
        assert state.last_error == "503 from upstream"
        assert state.used_at is None

        async def ok(url):
            return None

        await gate.use_once("s1", ok)
        assert gate.get("s1").used_at is not None

    @pytest.mark.asyncio
    async def test_overlapping_calls_send_once(self):
        gate = ActiveReplyGate()
        gate.store("s1", "https://example.invalid/reply")
        sent = []

        async def slow(url):
            await asyncio.sleep(0.01)
            sent.append(url)

        results = await asyncio.gather(gate.use_once("s1", slow),
                                       gate.use_once("s1", slow),
                                       return_exceptions=True)
        assert sent == ["https://example.invalid/reply"]
        assert results[0] is None
        assert isinstance(results[1], ActiveReplyError)
        assert gate.get("s1").in_flight is False
        assert gate.get("s1").used_at is not None

    @pytest.mark.asyncio
    async def test_missing_url(self):
        gate = ActiveReplyGate()
        gate.store("s1", "  ")

        async def send(url):
            return None

        with pytest.raises(ActiveReplyError):
            await gate.use_once("s1", send)

    def test_prune(self):
        clock = FakeClock()
        gate = ActiveReplyGate(ttl=3600, clock=clock)
        gate.store("s1", "https://example.invalid/reply")
        clock.now += 3601
        assert gate.prune() == 1
        assert gate.get_url("s1") is None
