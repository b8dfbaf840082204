"""Unit tests for session_watcher.py."""

import asyncio

import pytest

from telemirror.constants import ASSISTANT_OUTPUT_PREFIX
from telemirror.core.message_sync import MessageSyncState
from telemirror.core.session_watcher import ConversationWatcher, SessionWatcher


def _state(store, sink, key="conv"):
    return MessageSyncState(conversation_key=key, session_id="sess-1", store=store, sink=sink)


def _turn(s, n, base):
    s.user(f"u{n}", base, f"question {n}")
    s.assistant(f"a{n}", base + 1, s.text(f"answer {n}"))
    return s.write()


async def _wait_for(predicate, timeout=0.8):
    async def poll():
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(poll(), timeout=timeout)


class TestConversationWatcher:
    @pytest.mark.asyncio
    async def test_new_conversation_starts_at_end_of_file(self, store, sink, session_log):
        path = _turn(session_log, 1, 0)
        watcher = ConversationWatcher(_state(store, sink), store, path, update_rate=10)

        await watcher.start()
        assert watcher.is_running
        await watcher.stop()

        assert watcher.offset == session_log.size()
        assert not watcher.is_running
        assert sink.calls == []

    @pytest.mark.asyncio
    async def test_resumes_from_persisted_offset(self, store, sink, session_log):
        _turn(session_log, 1, 0)
        await store.set_offset("conv", session_log.size())
        path = _turn(session_log, 2, 10)
        watcher = ConversationWatcher(_state(store, sink), store, path, update_rate=0.01)

        await watcher.start()
        try:
            await _wait_for(lambda: len(sink.posts) >= 2)
        finally:
            await watcher.stop()

        assert sink.posts[-1] == ASSISTANT_OUTPUT_PREFIX + "answer 2"
        assert not any("question 1" in p for p in sink.posts)

    @pytest.mark.asyncio
    async def test_poll_once_persists_offset_on_success(self, store, sink, session_log):
        path = _turn(session_log, 1, 0)
        watcher = ConversationWatcher(_state(store, sink), store, path)

        result = await watcher.poll_once()

        assert result.all_succeeded
        assert watcher.offset == session_log.size()
        assert await store.get_offset("conv") == session_log.size()

    @pytest.mark.asyncio
    async def test_failed_poll_keeps_offset(self, store, sink, session_log):
        path = _turn(session_log, 1, 0)
        sink.fail_posts_after = 1
        watcher = ConversationWatcher(_state(store, sink), store, path)

        result = await watcher.poll_once()

        assert not result.all_succeeded
        assert watcher.offset == 0
        assert await store.get_offset("conv") == 0

        sink.fail_posts_after = None
        await watcher.poll_once()
        assert watcher.offset == session_log.size()
        assert len(sink.posts) == 2

    @pytest.mark.asyncio
    async def test_overlapping_poll_is_skipped(self, store, sink, session_log):
        watcher = ConversationWatcher(_state(store, sink), store, _turn(session_log, 1, 0))
        watcher._polling = True

        assert await watcher.poll_once() is None
        assert sink.calls == []

    @pytest.mark.asyncio
    async def test_update_rate(self, store, sink, tmp_path):
        watcher = ConversationWatcher(_state(store, sink), store, tmp_path / "x.jsonl")
        watcher.update_rate(5.0)
        assert watcher._update_rate == 5.0


class TestSessionWatcher:
    @pytest.mark.asyncio
    async def test_registry_lifecycle(self, store, sink, session_log):
        path = _turn(session_log, 1, 0)
        registry = SessionWatcher(store)

        first = await registry.start_watching(_state(store, sink), path, update_rate=10)
        assert registry.is_watching("conv")
        assert registry.get_watcher("conv") is first

        second = await registry.start_watching(_state(store, sink), path, update_rate=10)
        assert registry.get_watcher("conv") is second
        assert not first.is_running

        await registry.start_watching(_state(store, sink, key="other"), path, update_rate=10)
        assert await registry.stop_watching("conv")
        assert not await registry.stop_watching("conv")

        await registry.stop_all()
        assert not registry.is_watching("other")
        assert registry.get_watcher("other") is None
