"""Unit tests for event_stream.py."""

import asyncio
import logging

import pytest

from telemirror.core.event_stream import (
    EventReconstructor,
    read_all_session_events,
    reconstruct_events,
    watch_session_events,
)
from telemirror.core.log_tailer import read_all


def _events(session_log, **kwargs):
    records, _ = read_all(session_log.write())
    return reconstruct_events(records, **kwargs)


def test_single_user_record_emits_only_init(session_log):
    session_log.user("u1", 0, "hello")

    events = _events(session_log)

    assert [e.type for e in events] == ["init"]
    assert events[0].session_id == "sess-1"
    assert events[0].timestamp == session_log.ms(0)


def test_empty_log_emits_nothing(session_log):
    assert _events(session_log) == []


def test_tool_sequence_with_duration(session_log):
    s = session_log
    s.user("u1", 0, "read it")
    s.assistant("a1", 1, s.tool_use("t1", "Read", file_path="/x"))
    s.results("r1", 3.5, s.tool_result("t1"))
    s.assistant("a2", 4, s.text("Done"))

    events = _events(s)

    assert [e.type for e in events] == ["init", "tool_start", "tool_complete", "text", "turn_end"]
    start, complete, text, turn_end = events[1:]
    assert start.tool_name == "Read"
    assert start.tool_input == {"file_path": "/x"}
    assert complete.tool_name == "Read"
    assert complete.duration_ms == 2500
    assert text.text_content == "Done"
    assert text.char_count == 4
    assert turn_end.timestamp == s.ms(4)
    assert turn_end.turn_duration_ms == 4000


def test_results_without_ids_match_fifo(session_log):
    s = session_log
    s.user("u1", 0, "go")
    s.assistant("a1", 1, s.tool_use("t1", "Read"), s.tool_use("t2", "Grep"))
    s.results("r1", 2, s.tool_result(), s.tool_result())

    events = _events(s)

    completes = [e for e in events if e.type == "tool_complete"]
    assert [e.tool_name for e in completes] == ["Read", "Grep"]
    assert all(e.duration_ms == 1000 for e in completes)


def test_result_with_id_matches_out_of_order_and_warns(session_log, caplog):
    s = session_log
    s.user("u1", 0, "go")
    s.assistant("a1", 1, s.tool_use("t1", "Read"), s.tool_use("t2", "Grep"))
    s.results("r1", 2, s.tool_result("t2"))
    s.results("r2", 3, s.tool_result("t1"))

    with caplog.at_level(logging.WARNING, logger="telemirror.core.event_stream"):
        events = _events(s)

    completes = [e for e in events if e.type == "tool_complete"]
    assert [(e.tool_name, e.duration_ms) for e in completes] == [("Grep", 1000), ("Read", 2000)]
    assert "out of invocation order" in caplog.text


def test_interrupted_invocations_are_dropped_at_next_input(session_log, caplog):
    s = session_log
    s.user("u1", 0, "go")
    s.assistant("a1", 1, s.tool_use("t1", "Read"))
    s.user("u2", 2, "never mind")
    s.assistant("a2", 3, s.tool_use("t2", "Grep"))
    s.results("r2", 4, s.tool_result())

    with caplog.at_level(logging.WARNING, logger="telemirror.core.event_stream"):
        events = _events(s)

    completes = [e for e in events if e.type == "tool_complete"]
    assert [(e.tool_name, e.tool_id, e.duration_ms) for e in completes] == [("Grep", "t2", 1000)]
    assert "Dropping 1 unfinished tool invocation(s) at new input: Read" in caplog.text


def test_result_without_pending_tool_emits_nothing(session_log):
    s = session_log
    s.user("u1", 0, "go")
    s.results("r1", 1, s.tool_result("ghost"))

    assert [e.type for e in _events(s)] == ["init"]


def test_thinking_emits_start_and_complete(session_log):
    s = session_log
    s.user("u1", 0, "go")
    s.assistant("a1", 1, s.thinking("pondering"), s.text("answer"))

    events = _events(s)

    assert [e.type for e in events] == ["init", "thinking_start", "thinking_complete", "text", "turn_end"]
    assert events[2].thinking_content == "pondering"


def test_next_user_input_closes_turn_at_its_timestamp(session_log):
    s = session_log
    s.user("u1", 0, "one")
    s.assistant("a1", 2, s.text("first"))
    s.user("u2", 10, "two")
    s.assistant("a2", 11, s.text("second"))

    events = _events(s)
    turn_ends = [e for e in events if e.type == "turn_end"]

    assert [(e.timestamp, e.turn_duration_ms) for e in turn_ends] == [(s.ms(10), 10000), (s.ms(11), 1000)]


def test_turn_without_assistant_output_has_no_turn_end(session_log):
    s = session_log
    s.user("u1", 0, "one")
    s.user("u2", 1, "two")

    assert [e.type for e in _events(s)] == ["init"]


def test_timestamps_never_decrease(session_log):
    s = session_log
    s.user("u1", 5, "go")
    s.assistant("a1", 3, s.text("earlier clock"))

    events = _events(s)

    timestamps = [e.timestamp for e in events]
    assert timestamps == sorted(timestamps)
    assert events[1].timestamp == s.ms(5)


def test_resume_suppresses_init(session_log):
    s = session_log
    s.assistant("a1", 1, s.text("mid-turn"))

    events = _events(s, resume=True)

    assert [e.type for e in events] == ["text", "turn_end"]
    assert events[-1].turn_duration_ms == 0


def test_user_text_block_list_counts_as_input(session_log):
    s = session_log
    s.results("u1", 0, s.text("typed via sdk"))
    s.assistant("a1", 1, s.text("ok"))
    s.user("u2", 2, "next")

    turn_ends = [e for e in _events(s) if e.type == "turn_end"]
    assert turn_ends[0].turn_duration_ms == 2000


def test_feed_and_pending_tools():
    reconstructor = EventReconstructor()
    assert reconstructor.pending_tools == []
    assert reconstructor.finish() == []


def test_read_all_session_events(session_log):
    session_log.user("u1", 0, "hello").assistant("a1", 1, session_log.text("hi")).write()
    assert [e.type for e in read_all_session_events(session_log.path)] == ["init", "text", "turn_end"]


@pytest.mark.asyncio
async def test_watch_session_events_emits_turn_end_on_cancel(session_log):
    s = session_log
    s.user("u1", 0, "go").assistant("a1", 1, s.text("partial")).write()
    cancel = asyncio.Event()
    seen = []

    async def consume():
        async for event in watch_session_events(s.path, poll_interval=0.01, cancel=cancel):
            seen.append(event.type)
            if event.type == "text":
                cancel.set()

    await asyncio.wait_for(consume(), timeout=0.8)

    assert seen == ["init", "text", "turn_end"]


@pytest.mark.asyncio
async def test_watch_session_events_from_offset_skips_init(session_log):
    s = session_log
    s.user("u1", 0, "go").write()
    offset = s.size()
    s.assistant("a1", 1, s.text("later")).write()
    cancel = asyncio.Event()
    seen = []

    async def consume():
        async for event in watch_session_events(s.path, from_offset=offset, poll_interval=0.01, cancel=cancel):
            seen.append(event.type)
            cancel.set()

    await asyncio.wait_for(consume(), timeout=0.8)

    assert seen[0] == "text"
    assert "init" not in seen
