"""Turn grouping.

A turn is one human input plus everything the agent produced in response.
Within a turn, assistant records accumulate as activity until a record with
text output closes a segment; whatever follows the last text is trailing
activity (the turn is still in progress).
"""

from __future__ import annotations

from typing import Iterable, Optional, Sequence

from telemirror.core.models import RawRecord, Segment, Turn


def is_user_text_input(record: RawRecord) -> bool:
    """Check if a user record is direct human input (not tool results).

    Input is either a plain string or a block list that opens with text and
    carries no tool result, so prompts with attached images count too.
    """
    if record.type != "user":
        return False
    if isinstance(record.content, str):
        return True
    if not record.content or record.content[0].type != "text":
        return False
    return not any(block.type == "tool_result" for block in record.content)


def extract_text_content(record: RawRecord) -> str:
    """Rendered text of a record: plain string as-is, else text blocks joined by newlines."""
    if isinstance(record.content, str):
        return record.content
    return "\n".join(block.text for block in record.content if block.type == "text" and block.text)


def has_text_output(record: RawRecord) -> bool:
    """Check if an assistant record carries visible text."""
    return record.type == "assistant" and bool(extract_text_content(record).strip())


def find_message_index_by_uuid(records: Sequence[RawRecord], uuid: str) -> int:
    """Index of the record with the given uuid, or -1."""
    for index, record in enumerate(records):
        if record.uuid == uuid:
            return index
    return -1


def is_turn_complete(turn: Turn) -> bool:
    return turn.is_complete


def group_messages_by_turn(records: Iterable[RawRecord]) -> list[Turn]:
    """Partition ordered records into turns.

    Tool-result user records are structural and belong to no turn. Assistant
    records seen before any human input (a log read from mid-turn) form a
    leading turn with `user_input=None`.
    """
    turns: list[Turn] = []
    current: Optional[Turn] = None
    activity: list[RawRecord] = []

    for record in records:
        if record.type == "user":
            if not is_user_text_input(record):
                continue
            if current is not None:
                current.trailing_activity = activity
                turns.append(current)
            current = Turn(user_input=record, all_message_uuids=[record.uuid])
            activity = []
            continue

        if record.type != "assistant":
            continue

        if current is None:
            current = Turn(user_input=None)
        current.all_message_uuids.append(record.uuid)

        if has_text_output(record):
            current.segments.append(Segment(activity_messages=activity, text_output=record))
            activity = []
        else:
            activity.append(record)

    if current is not None:
        current.trailing_activity = activity
        turns.append(current)

    return turns
