"""Data models for session records, canonical events, turns and activity."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field, fields
from typing import Literal, Optional, Union

from telemirror.core.dates import to_epoch_ms

# JSON-serializable types for storage
JsonPrimitive = Union[str, int, float, bool, None]
JsonValue = Union[JsonPrimitive, list["JsonValue"], dict[str, "JsonValue"]]
JsonDict = dict[str, JsonValue]

BlockType = Literal["text", "thinking", "tool_use", "tool_result"]
EventType = Literal[
    "init",
    "thinking_start",
    "thinking_complete",
    "tool_start",
    "tool_complete",
    "text",
    "turn_end",
]
ActivityType = Literal[
    "starting",
    "thinking",
    "tool_start",
    "tool_complete",
    "generating",
    "error",
    "aborted",
    "mode_changed",
    "context_cleared",
    "session_changed",
]


def asdict_exclude_none(obj: object) -> dict[str, object]:
    """Convert dataclass to dict, recursively excluding None values."""
    if isinstance(obj, dict):
        return {k: v for k, v in obj.items() if v is not None}

    result: dict[str, object] = asdict(obj)  # type: ignore[call-overload]

    def _exclude_none(data: object) -> object:
        if isinstance(data, dict):
            return {k: _exclude_none(v) for k, v in data.items() if v is not None}  # type: ignore[misc]
        if isinstance(data, list):
            return [_exclude_none(item) for item in data]
        return data

    return _exclude_none(result)  # type: ignore[return-value]


@dataclass(frozen=True)
class ContentBlock:
    """One typed block of a message's content list."""

    type: str
    text: Optional[str] = None
    thinking: Optional[str] = None
    name: Optional[str] = None
    id: Optional[str] = None
    input: Optional[dict[str, object]] = None  # guard: loose-dict - tool arguments
    tool_use_id: Optional[str] = None
    content: object = None

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "ContentBlock":  # guard: loose-dict - External block
        raw_input = data.get("input")
        return cls(
            type=str(data.get("type", "")),
            text=data.get("text") if isinstance(data.get("text"), str) else None,  # type: ignore[arg-type]
            thinking=data.get("thinking") if isinstance(data.get("thinking"), str) else None,  # type: ignore[arg-type]
            name=data.get("name") if isinstance(data.get("name"), str) else None,  # type: ignore[arg-type]
            id=data.get("id") if isinstance(data.get("id"), str) else None,  # type: ignore[arg-type]
            input=raw_input if isinstance(raw_input, dict) else None,
            tool_use_id=data.get("tool_use_id") if isinstance(data.get("tool_use_id"), str) else None,  # type: ignore[arg-type]
            content=data.get("content"),
        )


@dataclass(frozen=True)
class RawRecord:
    """One parsed user/assistant line of the session log.

    `content` is either the plain string a human typed or the ordered list of
    typed blocks.
    """

    type: str
    uuid: str
    timestamp: str
    session_id: str
    content: Union[str, tuple[ContentBlock, ...]]
    role: Optional[str] = None

    @property
    def timestamp_ms(self) -> int:
        return to_epoch_ms(self.timestamp)

    @property
    def blocks(self) -> tuple[ContentBlock, ...]:
        if isinstance(self.content, str):
            return ()
        return self.content

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> Optional["RawRecord"]:  # guard: loose-dict - External JSONL
        """Build a record from a parsed log line.

        Returns None for record kinds we do not mirror (anything other than
        user/assistant, or without message content).
        """
        record_type = data.get("type")
        if record_type not in ("user", "assistant"):
            return None
        message = data.get("message")
        if not isinstance(message, dict):
            return None
        raw_content = message.get("content")
        if not raw_content:
            return None

        content: Union[str, tuple[ContentBlock, ...]]
        if isinstance(raw_content, str):
            content = raw_content
        elif isinstance(raw_content, list):
            content = tuple(ContentBlock.from_dict(b) for b in raw_content if isinstance(b, dict))
            if not content:
                return None
        else:
            return None

        role = message.get("role")
        return cls(
            type=str(record_type),
            uuid=str(data.get("uuid") or ""),
            timestamp=str(data.get("timestamp") or ""),
            session_id=str(data.get("sessionId") or ""),
            content=content,
            role=role if isinstance(role, str) else None,
        )


@dataclass(frozen=True)
class SessionEvent:
    """Canonical semantic event derived from raw records."""

    type: EventType
    timestamp: int  # epoch ms

    session_id: Optional[str] = None  # init
    thinking_content: Optional[str] = None  # thinking_complete
    tool_name: Optional[str] = None  # tool_start / tool_complete
    tool_id: Optional[str] = None
    tool_input: Optional[dict[str, object]] = None  # guard: loose-dict - tool arguments
    duration_ms: Optional[int] = None  # tool_complete
    text_content: Optional[str] = None  # text
    char_count: Optional[int] = None
    turn_duration_ms: Optional[int] = None  # turn_end

    def to_dict(self) -> dict[str, object]:
        return asdict_exclude_none(self)


@dataclass
class Segment:
    """One activity-then-text cycle within a turn."""

    activity_messages: list[RawRecord]
    text_output: RawRecord


@dataclass
class Turn:
    """One user input plus everything the agent produced in response."""

    user_input: Optional[RawRecord]
    segments: list[Segment] = field(default_factory=list)
    trailing_activity: list[RawRecord] = field(default_factory=list)
    all_message_uuids: list[str] = field(default_factory=list)

    @property
    def key(self) -> str:
        """Identifier the turn's activity delivery is keyed by."""
        if self.user_input is not None:
            return self.user_input.uuid
        return self.all_message_uuids[0] if self.all_message_uuids else ""

    @property
    def is_complete(self) -> bool:
        return not self.trailing_activity and bool(self.segments)


@dataclass
class ActivityEntry:  # pylint: disable=too-many-instance-attributes
    """One displayable unit of progress."""

    timestamp: int
    type: ActivityType
    tool: Optional[str] = None
    tool_use_id: Optional[str] = None
    tool_input: Optional[dict[str, object]] = None  # guard: loose-dict - tool arguments
    duration_ms: Optional[int] = None
    message: Optional[str] = None
    # thinking
    thinking_content: Optional[str] = None
    thinking_truncated: Optional[str] = None
    thinking_in_progress: Optional[bool] = None
    # generating
    generating_chunks: Optional[int] = None
    generating_chars: Optional[int] = None
    generating_in_progress: Optional[bool] = None
    generating_content: Optional[str] = None
    generating_truncated: Optional[str] = None
    # markers
    mode: Optional[str] = None
    previous_session_id: Optional[str] = None

    def to_dict(self) -> dict[str, object]:
        return asdict_exclude_none(self)

    @classmethod
    def from_dict(cls, data: dict[str, object]) -> "ActivityEntry":  # guard: loose-dict - stored entry
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})  # type: ignore[arg-type]


@dataclass(frozen=True)
class SyncCursor:
    """Persisted `(byte_offset, delivered identifiers)` pair."""

    byte_offset: int = 0
    delivered: frozenset[str] = frozenset()

    def advance(self, new_offset: int, delivered: Optional[set[str]] = None) -> "SyncCursor":
        """Return a cursor moved forward; offsets never move backwards."""
        return SyncCursor(
            byte_offset=max(self.byte_offset, new_offset),
            delivered=self.delivered | frozenset(delivered or ()),
        )
