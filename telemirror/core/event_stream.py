"""Canonical event reconstruction from raw session records.

A single stateful pass over ordered records yields `SessionEvent`s:

    init -> (thinking_start, thinking_complete | tool_start | tool_complete | text)* -> turn_end

Tool completions are matched to outstanding invocations by `tool_use_id` when
the result carries one, falling back to FIFO order otherwise.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Iterable, Optional, Union

from telemirror.constants import DEFAULT_POLL_INTERVAL_S
from telemirror.core.log_tailer import read_all, watch_records
from telemirror.core.models import ContentBlock, RawRecord, SessionEvent
from telemirror.core.turns import is_user_text_input

logger = logging.getLogger(__name__)


@dataclass
class _PendingTool:
    name: str
    tool_id: Optional[str]
    started_at: int


class EventReconstructor:
    """Stateful record -> event converter.

    Feed records in file order; call `finish()` once the input ends (or the
    watch is cancelled) to close the open turn.
    """

    def __init__(self, *, resume: bool = False) -> None:
        # Resuming mid-session: the init event was emitted by an earlier pass
        self._initialized = resume
        self.session_id: Optional[str] = None
        self._pending: list[_PendingTool] = []
        self._turn_start: Optional[int] = None
        self._last_assistant: Optional[int] = None
        self._last_timestamp = 0

    @property
    def pending_tools(self) -> list[str]:
        """Names of invocations still waiting for a result, oldest first."""
        return [tool.name for tool in self._pending]

    def _clamp(self, timestamp: int) -> int:
        # Events never go backwards even if record timestamps do
        if timestamp < self._last_timestamp:
            return self._last_timestamp
        self._last_timestamp = timestamp
        return timestamp

    def feed(self, record: RawRecord) -> list[SessionEvent]:
        """Process one record and return the events it produces, in order."""
        timestamp = self._clamp(record.timestamp_ms)
        events: list[SessionEvent] = []

        if not self._initialized:
            self._initialized = True
            self.session_id = record.session_id
            events.append(SessionEvent(type="init", timestamp=timestamp, session_id=record.session_id))

        if record.type == "user":
            if is_user_text_input(record):
                turn_end = self._close_turn(timestamp)
                if turn_end is not None:
                    events.append(turn_end)
                if self._pending:
                    # Interrupted turn: its invocations will never get a result
                    logger.warning(
                        "Dropping %d unfinished tool invocation(s) at new input: %s",
                        len(self._pending),
                        ", ".join(self.pending_tools),
                    )
                    self._pending.clear()
                self._turn_start = timestamp
                self._last_assistant = None
            else:
                events.extend(self._complete_tools(record.blocks, timestamp))
            return events

        if record.type == "assistant":
            self._last_assistant = timestamp
            if self._turn_start is None:
                # Record belongs to a turn that started before our read offset
                self._turn_start = timestamp
            if isinstance(record.content, str):
                if record.content:
                    events.append(
                        SessionEvent(
                            type="text",
                            timestamp=timestamp,
                            text_content=record.content,
                            char_count=len(record.content),
                        )
                    )
                return events
            for block in record.content:
                events.extend(self._assistant_block(block, timestamp))

        return events

    def finish(self) -> list[SessionEvent]:
        """Close the open turn at end of input."""
        turn_end = self._close_turn(self._last_assistant)
        return [turn_end] if turn_end is not None else []

    def _close_turn(self, boundary: Optional[int]) -> Optional[SessionEvent]:
        if self._turn_start is None or self._last_assistant is None or boundary is None:
            return None
        event = SessionEvent(
            type="turn_end",
            timestamp=self._clamp(boundary),
            turn_duration_ms=max(0, boundary - self._turn_start),
        )
        self._turn_start = None
        self._last_assistant = None
        return event

    def _assistant_block(self, block: ContentBlock, timestamp: int) -> list[SessionEvent]:
        if block.type == "thinking":
            # Completed block read in one piece: start and complete share a timestamp
            return [
                SessionEvent(type="thinking_start", timestamp=timestamp),
                SessionEvent(type="thinking_complete", timestamp=timestamp, thinking_content=block.thinking or ""),
            ]

        if block.type == "tool_use":
            name = block.name or "unknown"
            self._pending.append(_PendingTool(name=name, tool_id=block.id, started_at=timestamp))
            return [
                SessionEvent(
                    type="tool_start",
                    timestamp=timestamp,
                    tool_name=name,
                    tool_id=block.id,
                    tool_input=block.input,
                )
            ]

        if block.type == "text" and block.text:
            return [
                SessionEvent(
                    type="text",
                    timestamp=timestamp,
                    text_content=block.text,
                    char_count=len(block.text),
                )
            ]

        return []

    def _match_pending(self, tool_use_id: Optional[str]) -> Optional[_PendingTool]:
        if not self._pending:
            return None
        if tool_use_id:
            for index, tool in enumerate(self._pending):
                if tool.tool_id == tool_use_id:
                    if index != 0:
                        logger.warning(
                            "Tool result %s arrived out of invocation order (position %d, head %s)",
                            tool_use_id[:8],
                            index,
                            self._pending[0].name,
                        )
                    return self._pending.pop(index)
        return self._pending.pop(0)

    def _complete_tools(self, blocks: Iterable[ContentBlock], timestamp: int) -> list[SessionEvent]:
        events: list[SessionEvent] = []
        for block in blocks:
            if block.type != "tool_result":
                continue
            tool = self._match_pending(block.tool_use_id)
            if tool is None:
                logger.debug("Tool result with no outstanding invocation, ignoring")
                continue
            events.append(
                SessionEvent(
                    type="tool_complete",
                    timestamp=timestamp,
                    tool_name=tool.name,
                    tool_id=tool.tool_id,
                    duration_ms=max(0, timestamp - tool.started_at),
                )
            )
        return events


def reconstruct_events(records: Iterable[RawRecord], *, resume: bool = False) -> list[SessionEvent]:
    """Convert a finished record list into events, including the final turn_end."""
    reconstructor = EventReconstructor(resume=resume)
    events: list[SessionEvent] = []
    for record in records:
        events.extend(reconstructor.feed(record))
    events.extend(reconstructor.finish())
    return events


def read_all_session_events(path: Union[str, Path]) -> list[SessionEvent]:
    """Read a whole session log and return its events."""
    records, _ = read_all(path)
    return reconstruct_events(records)


async def watch_session_events(
    path: Union[str, Path],
    *,
    from_offset: int = 0,
    poll_interval: float = DEFAULT_POLL_INTERVAL_S,
    cancel: Optional[asyncio.Event] = None,
) -> AsyncIterator[SessionEvent]:
    """Yield events as the session log grows.

    When `cancel` is set, the open turn is closed with a final turn_end before
    the generator returns.
    """
    reconstructor = EventReconstructor(resume=from_offset > 0)
    async for record in watch_records(path, from_offset=from_offset, poll_interval=poll_interval, cancel=cancel):
        for event in reconstructor.feed(record):
            yield event
    for event in reconstructor.finish():
        yield event
