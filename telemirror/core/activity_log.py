"""Activity log construction.

Projects canonical events into `ActivityEntry` items for display and storage.
Structural events (init, thinking_start, turn_end) produce nothing.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

from telemirror.constants import ELLIPSIS, THINKING_TRUNCATE_LENGTH
from telemirror.core.event_stream import read_all_session_events
from telemirror.core.models import ActivityEntry, SessionEvent

logger = logging.getLogger(__name__)

MARKER_TYPES = ("session_changed", "context_cleared", "mode_changed")
_MARKER_RANK = {marker: rank for rank, marker in enumerate(MARKER_TYPES)}


def preview_text(
    content: str,
    limit: int = THINKING_TRUNCATE_LENGTH,
    *,
    in_progress: bool,
    preserve_tail: bool = False,
) -> str:
    """Bounded preview of long content.

    In-progress content shows a rolling tail ("..." + last `limit` chars).
    Completed content shows the opening ("first `limit` chars" + "...")
    unless `preserve_tail` asks for the conclusion instead.
    """
    if len(content) <= limit:
        return content
    if in_progress or preserve_tail:
        return ELLIPSIS + content[-limit:]
    return content[:limit] + ELLIPSIS


def event_to_activity_entry(
    event: SessionEvent,
    *,
    in_progress: bool = False,
    preserve_tail: bool = False,
) -> Optional[ActivityEntry]:
    """Convert one event; returns None for structural events."""
    if event.type == "thinking_complete":
        content = event.thinking_content or ""
        if not content:
            return None
        return ActivityEntry(
            timestamp=event.timestamp,
            type="thinking",
            thinking_content=content,
            thinking_truncated=preview_text(content, in_progress=in_progress, preserve_tail=preserve_tail),
            thinking_in_progress=in_progress,
        )

    if event.type == "tool_start":
        return ActivityEntry(
            timestamp=event.timestamp,
            type="tool_start",
            tool=event.tool_name,
            tool_use_id=event.tool_id,
            tool_input=event.tool_input,
        )

    if event.type == "tool_complete":
        return ActivityEntry(
            timestamp=event.timestamp,
            type="tool_complete",
            tool=event.tool_name,
            tool_use_id=event.tool_id,
            duration_ms=event.duration_ms,
        )

    if event.type == "text" and event.char_count:
        content = event.text_content or ""
        return ActivityEntry(
            timestamp=event.timestamp,
            type="generating",
            generating_chunks=1,  # complete blocks, not stream chunks
            generating_chars=event.char_count,
            generating_in_progress=in_progress,
            generating_content=content,
            generating_truncated=preview_text(content, in_progress=in_progress, preserve_tail=preserve_tail),
        )

    return None


def _sort_key(entry: ActivityEntry) -> tuple[int, int]:
    # Markers sort before regular entries sharing their timestamp
    return entry.timestamp, _MARKER_RANK.get(entry.type, len(MARKER_TYPES))


def build_activity_log(
    events: Iterable[SessionEvent],
    *,
    in_progress: bool = False,
    preserve_tail: bool = False,
    markers: Sequence[ActivityEntry] = (),
) -> list[ActivityEntry]:
    """Project events into activity entries, merging in structural markers."""
    entries: list[ActivityEntry] = []
    for event in events:
        entry = event_to_activity_entry(event, in_progress=in_progress, preserve_tail=preserve_tail)
        if entry is not None:
            entries.append(entry)
    if markers:
        entries = sorted([*markers, *entries], key=_sort_key)
    return entries


def error_entry(timestamp: int, message: str) -> ActivityEntry:
    return ActivityEntry(timestamp=timestamp, type="error", message=message)


def aborted_entry(timestamp: int, message: Optional[str] = None) -> ActivityEntry:
    return ActivityEntry(timestamp=timestamp, type="aborted", message=message)


def mode_changed_entry(timestamp: int, mode: str) -> ActivityEntry:
    return ActivityEntry(timestamp=timestamp, type="mode_changed", mode=mode)


def context_cleared_entry(timestamp: int) -> ActivityEntry:
    return ActivityEntry(timestamp=timestamp, type="context_cleared")


def session_changed_entry(timestamp: int, previous_session_id: Optional[str] = None) -> ActivityEntry:
    return ActivityEntry(timestamp=timestamp, type="session_changed", previous_session_id=previous_session_id)


def is_marker(entry: ActivityEntry) -> bool:
    return entry.type in _MARKER_RANK


def visible_entries(entries: Sequence[ActivityEntry]) -> list[ActivityEntry]:
    """Drop tool_start entries whose tool_complete is present (completed wins).

    Matching is by invocation id when both sides carry one, else by tool name
    (each complete suppresses one earlier start).
    """
    completed_ids = {e.tool_use_id for e in entries if e.type == "tool_complete" and e.tool_use_id}
    suppressed: set[int] = set()

    for index, entry in enumerate(entries):
        if entry.type != "tool_start" or not entry.tool_use_id:
            continue
        if entry.tool_use_id in completed_ids:
            suppressed.add(index)

    # Name-based fallback for entries without ids
    for index, entry in enumerate(entries):
        if entry.type != "tool_complete" or entry.tool_use_id:
            continue
        for start_index in range(index - 1, -1, -1):
            start = entries[start_index]
            if start_index in suppressed or start.type != "tool_start" or start.tool != entry.tool:
                continue
            suppressed.add(start_index)
            break

    return [entry for index, entry in enumerate(entries) if index not in suppressed]


def entries_in_window(
    entries: Sequence[ActivityEntry],
    start_ms: int,
    end_ms: Optional[int],
    *,
    include_start: bool,
) -> list[ActivityEntry]:
    """Entries with start < timestamp <= end (start inclusive when asked).

    `end_ms=None` leaves the window open-ended.
    """
    selected: list[ActivityEntry] = []
    for entry in entries:
        if entry.timestamp < start_ms or (entry.timestamp == start_ms and not include_start):
            continue
        if end_ms is not None and entry.timestamp > end_ms:
            continue
        selected.append(entry)
    return selected


_Identity = tuple[int, str, Optional[str], Optional[str], Optional[str]]


def _identity(entry: ActivityEntry) -> _Identity:
    content = entry.thinking_content or entry.generating_content or entry.message
    return entry.timestamp, entry.type, entry.tool, entry.tool_use_id, content


def merge_activity_logs(existing: Sequence[ActivityEntry], new: Sequence[ActivityEntry]) -> list[ActivityEntry]:
    """Union of two logs, newer entries replacing same-identity older ones."""
    merged: dict[_Identity, ActivityEntry] = {}
    for entry in existing:
        merged[_identity(entry)] = entry
    for entry in new:
        merged[_identity(entry)] = entry
    return sorted(merged.values(), key=_sort_key)


def read_activity_log(
    path: Union[str, Path],
    *,
    preserve_tail: bool = False,
) -> list[ActivityEntry]:
    """Read a whole session log and return its activity entries."""
    entries = build_activity_log(read_all_session_events(path), preserve_tail=preserve_tail)
    logger.debug("Built %d activity entries from %s", len(entries), Path(path).name)
    return entries
