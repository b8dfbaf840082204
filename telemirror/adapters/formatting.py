"""Plain-text rendering of activity logs.

Used as the default `ActivityFormatter` of the sync engine. Long logs are
rendered as a rolling window so a live message stays within platform limits.
"""

from __future__ import annotations

from typing import Optional, Sequence

from telemirror.constants import MAX_LIVE_ENTRIES, ROLLING_WINDOW_SIZE
from telemirror.core.activity_log import visible_entries
from telemirror.core.models import ActivityEntry
from telemirror.utils import format_duration

_TOOL_INPUT_KEYS = ("file_path", "command", "pattern", "path", "url", "query", "description")
_INPUT_SUMMARY_LENGTH = 60


def summarize_tool_input(tool_input: Optional[dict[str, object]]) -> str:  # guard: loose-dict - tool arguments
    """Short human-readable hint of what a tool was invoked on."""
    if not tool_input:
        return ""
    for key in _TOOL_INPUT_KEYS:
        value = tool_input.get(key)
        if isinstance(value, str) and value:
            first_line = value.splitlines()[0]
            if len(first_line) > _INPUT_SUMMARY_LENGTH:
                return first_line[: _INPUT_SUMMARY_LENGTH - 3] + "..."
            return first_line
    return ""


def _separator(label: str) -> str:
    return f"──── {label} ────"


def format_entry(entry: ActivityEntry) -> str:
    """Render one entry as one (or a few) lines."""
    if entry.type == "starting":
        return "⏳ Starting..."
    if entry.type == "thinking":
        preview = entry.thinking_truncated or entry.thinking_content or ""
        return f"💭 Thinking\n{preview}" if preview else "💭 Thinking"
    if entry.type == "tool_start":
        hint = summarize_tool_input(entry.tool_input)
        return f"🔧 {entry.tool}: {hint}" if hint else f"🔧 {entry.tool}..."
    if entry.type == "tool_complete":
        duration = format_duration(entry.duration_ms)
        return f"✅ {entry.tool} ({duration})" if duration else f"✅ {entry.tool}"
    if entry.type == "generating":
        return f"📝 Generating ({entry.generating_chars or 0} chars)"
    if entry.type == "error":
        return f"❌ Error: {entry.message or 'unknown error'}"
    if entry.type == "aborted":
        return f"⏹ Aborted: {entry.message}" if entry.message else "⏹ Aborted"
    if entry.type == "mode_changed":
        return _separator(f"mode: {entry.mode}")
    if entry.type == "context_cleared":
        return _separator("context cleared")
    if entry.type == "session_changed":
        if entry.previous_session_id:
            return _separator(f"new session (was {entry.previous_session_id[:8]})")
        return _separator("new session")
    return entry.type


def format_activity_text(
    entries: Sequence[ActivityEntry],
    *,
    in_progress: bool = False,
    max_entries: int = MAX_LIVE_ENTRIES,
) -> str:
    """Render an activity log.

    Completed tool calls hide their start entries. Once more than
    `max_entries` remain, only the last ROLLING_WINDOW_SIZE are shown.
    """
    shown = visible_entries(entries)
    header = "🧠 Working..." if in_progress else "🧠 Activity"
    lines = [header]

    if len(shown) > max_entries:
        hidden = len(shown) - ROLLING_WINDOW_SIZE
        shown = shown[-ROLLING_WINDOW_SIZE:]
        lines.append(f"... {hidden} earlier entries")

    lines.extend(format_entry(entry) for entry in shown)
    return "\n".join(lines)
