"""Unit tests for activity_log.py."""

from telemirror.core.activity_log import (
    aborted_entry,
    build_activity_log,
    context_cleared_entry,
    entries_in_window,
    error_entry,
    is_marker,
    merge_activity_logs,
    mode_changed_entry,
    preview_text,
    read_activity_log,
    session_changed_entry,
    visible_entries,
)
from telemirror.core.models import ActivityEntry, SessionEvent


class TestPreviewText:
    def test_short_content_unchanged(self):
        assert preview_text("short", in_progress=True) == "short"
        assert preview_text("short", in_progress=False) == "short"

    def test_long_content_in_progress_shows_tail(self):
        content = "a" * 100 + "b" * 500
        preview = preview_text(content, in_progress=True)
        assert preview == "..." + "b" * 500
        assert len(preview) == 503

    def test_long_content_completed_shows_head(self):
        content = "a" * 500 + "b" * 100
        assert preview_text(content, in_progress=False) == "a" * 500 + "..."

    def test_preserve_tail_on_completed(self):
        content = "a" * 100 + "b" * 500
        assert preview_text(content, in_progress=False, preserve_tail=True) == "..." + "b" * 500


class TestBuildActivityLog:
    def test_structural_events_produce_nothing(self):
        events = [
            SessionEvent(type="init", timestamp=1, session_id="s"),
            SessionEvent(type="thinking_start", timestamp=2),
            SessionEvent(type="turn_end", timestamp=3, turn_duration_ms=2),
        ]
        assert build_activity_log(events) == []

    def test_projects_each_event_kind(self):
        events = [
            SessionEvent(type="thinking_complete", timestamp=1, thinking_content="idea"),
            SessionEvent(type="tool_start", timestamp=2, tool_name="Read", tool_id="t1", tool_input={"a": 1}),
            SessionEvent(type="tool_complete", timestamp=3, tool_name="Read", tool_id="t1", duration_ms=1),
            SessionEvent(type="text", timestamp=4, text_content="done", char_count=4),
        ]

        entries = build_activity_log(events)

        assert [e.type for e in entries] == ["thinking", "tool_start", "tool_complete", "generating"]
        assert entries[0].thinking_truncated == "idea"
        assert entries[1].tool_input == {"a": 1}
        assert entries[2].duration_ms == 1
        assert entries[3].generating_chars == 4
        assert entries[3].generating_chunks == 1
        assert entries[3].generating_in_progress is False

    def test_long_text_preview_depends_on_progress(self):
        content = "x" * 100 + "y" * 500
        events = [SessionEvent(type="text", timestamp=1, text_content=content, char_count=600)]

        live = build_activity_log(events, in_progress=True)[0]
        done = build_activity_log(events)[0]

        assert live.generating_truncated == "..." + "y" * 500
        assert done.generating_truncated == "x" * 100 + "y" * 400 + "..."
        assert done.generating_content == content

    def test_empty_thinking_is_dropped(self):
        events = [SessionEvent(type="thinking_complete", timestamp=1, thinking_content="")]
        assert build_activity_log(events) == []

    def test_markers_sort_before_entries_with_same_timestamp(self):
        events = [SessionEvent(type="tool_start", timestamp=5, tool_name="Bash")]
        markers = [mode_changed_entry(5, "plan"), session_changed_entry(5, "old"), context_cleared_entry(5)]

        entries = build_activity_log(events, markers=markers)

        assert [e.type for e in entries] == ["session_changed", "context_cleared", "mode_changed", "tool_start"]


def test_entry_factories():
    assert error_entry(1, "boom").message == "boom"
    assert aborted_entry(1).type == "aborted"
    assert is_marker(context_cleared_entry(1))
    assert not is_marker(error_entry(1, "x"))


def test_visible_entries_completed_wins_by_id_and_by_name():
    entries = [
        ActivityEntry(timestamp=1, type="tool_start", tool="Read", tool_use_id="t1"),
        ActivityEntry(timestamp=2, type="tool_start", tool="Grep"),
        ActivityEntry(timestamp=3, type="tool_start", tool="Bash", tool_use_id="t3"),
        ActivityEntry(timestamp=4, type="tool_complete", tool="Read", tool_use_id="t1"),
        ActivityEntry(timestamp=5, type="tool_complete", tool="Grep"),
    ]

    visible = visible_entries(entries)

    assert [(e.type, e.tool) for e in visible] == [
        ("tool_start", "Bash"),
        ("tool_complete", "Read"),
        ("tool_complete", "Grep"),
    ]


def test_entries_in_window_bounds():
    entries = [ActivityEntry(timestamp=t, type="tool_start", tool="x") for t in (10, 20, 30, 40)]

    assert [e.timestamp for e in entries_in_window(entries, 10, 30, include_start=True)] == [10, 20, 30]
    assert [e.timestamp for e in entries_in_window(entries, 10, 30, include_start=False)] == [20, 30]
    assert [e.timestamp for e in entries_in_window(entries, 20, None, include_start=False)] == [30, 40]


def test_merge_activity_logs_dedupes_and_orders():
    first = [ActivityEntry(timestamp=1, type="tool_start", tool="Read", tool_use_id="t1")]
    second = [
        ActivityEntry(timestamp=1, type="tool_start", tool="Read", tool_use_id="t1"),
        ActivityEntry(timestamp=2, type="tool_complete", tool="Read", tool_use_id="t1", duration_ms=1),
        context_cleared_entry(1),
    ]

    merged = merge_activity_logs(first, second)

    assert [(e.timestamp, e.type) for e in merged] == [(1, "context_cleared"), (1, "tool_start"), (2, "tool_complete")]


def test_entry_round_trips_through_dict():
    entry = ActivityEntry(timestamp=1, type="tool_complete", tool="Read", duration_ms=5)
    data = entry.to_dict()
    assert "message" not in data
    assert ActivityEntry.from_dict({**data, "unknown": True}) == entry


def test_read_activity_log(session_log):
    s = session_log
    s.user("u1", 0, "go")
    s.assistant("a1", 1, s.tool_use("t1", "Read"))
    s.results("r1", 2, s.tool_result("t1"))
    s.write()

    entries = read_activity_log(s.path)

    assert [(e.type, e.tool) for e in entries] == [("tool_start", "Read"), ("tool_complete", "Read")]


def test_merge_identity_includes_content():
    existing = [
        ActivityEntry(timestamp=5, type="thinking", thinking_content="first idea", thinking_truncated="first idea"),
        ActivityEntry(timestamp=5, type="generating", generating_content="draft", generating_in_progress=True),
    ]
    new = [
        ActivityEntry(timestamp=5, type="thinking", thinking_content="second idea", thinking_truncated="second idea"),
        ActivityEntry(timestamp=5, type="generating", generating_content="draft", generating_in_progress=False),
    ]

    merged = merge_activity_logs(existing, new)

    assert sorted(e.thinking_content for e in merged if e.type == "thinking") == ["first idea", "second idea"]
    generating = [e for e in merged if e.type == "generating"]
    assert len(generating) == 1
    assert generating[0].generating_in_progress is False
