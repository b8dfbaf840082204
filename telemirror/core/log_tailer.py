"""Append-only session log reader.

Reads newline-delimited JSON records from a byte offset, either once or
continuously (polling). Only newline-terminated lines are consumed while
tailing, so a line the agent is still writing is picked up on a later poll.
Malformed lines are skipped one at a time and never abort the read.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, Optional, Union

from telemirror.constants import DEFAULT_POLL_INTERVAL_S, DEFAULT_SESSIONS_ROOT
from telemirror.core.models import RawRecord

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


@dataclass
class TailResult:
    """Records parsed from one read plus the offset just past the last consumed line."""

    records: list[RawRecord] = field(default_factory=list)
    new_offset: int = 0
    skipped: int = 0


def get_session_file_path(session_id: str, working_dir: str, root: Optional[str] = None) -> Path:
    """Get the path to a session's JSONL file.

    Path format: <root>/<working_dir with "/" replaced by "-">/<session_id>.jsonl
    """
    project_dir = working_dir.replace("/", "-")
    return Path(root or DEFAULT_SESSIONS_ROOT).expanduser() / project_dir / f"{session_id}.jsonl"


def get_file_size(path: PathLike) -> int:
    """Current file size, 0 when the file does not exist."""
    try:
        return Path(path).expanduser().stat().st_size
    except OSError:
        return 0


def _parse_lines(
    data: bytes,
    *,
    partial_first_line: bool,
    include_unterminated: bool,
) -> tuple[list[RawRecord], int, int]:
    """Parse raw bytes into records.

    Returns (records, bytes_consumed, malformed_lines_skipped).
    """
    records: list[RawRecord] = []
    consumed = 0
    skipped = 0

    pieces = data.split(b"\n")
    terminated, tail = pieces[:-1], pieces[-1]
    candidates: list[tuple[bytes, int]] = [(raw, len(raw) + 1) for raw in terminated]
    if include_unterminated and tail.strip():
        candidates.append((tail, len(tail)))

    for index, (raw, size) in enumerate(candidates):
        consumed += size
        line = raw.decode("utf-8", errors="replace").strip()
        if not line:
            continue

        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            if index == 0 and partial_first_line:
                # Offset landed mid-line
                logger.debug("Skipping partial first line (%d bytes)", size)
                continue
            logger.warning("Skipping malformed log line (%d bytes): %s", size, line[:80])
            skipped += 1
            continue

        if not isinstance(parsed, dict):
            logger.warning("Skipping non-object log line: %s", line[:80])
            skipped += 1
            continue

        record = RawRecord.from_dict(parsed)
        if record is not None:
            records.append(record)

    return records, consumed, skipped


def _read_bytes(path: Path, from_offset: int, to_offset: Optional[int] = None) -> Optional[bytes]:
    if not path.exists():
        return None
    size = path.stat().st_size
    if to_offset is not None:
        size = min(size, to_offset)
    if size <= from_offset:
        return None
    with open(path, "rb") as f:
        f.seek(from_offset)
        return f.read(size - from_offset)


def read_new_records(path: PathLike, from_offset: int = 0, to_offset: Optional[int] = None) -> TailResult:
    """Read new records starting at byte offset.

    Only complete (newline-terminated) lines are consumed. A missing file or
    no new data returns an empty result at the same offset. `to_offset` caps
    the read (used to re-read a range already consumed).
    """
    file_path = Path(path).expanduser()
    data = _read_bytes(file_path, from_offset, to_offset)
    if data is None:
        return TailResult(records=[], new_offset=from_offset, skipped=0)

    records, consumed, skipped = _parse_lines(
        data,
        partial_first_line=from_offset > 0,
        include_unterminated=False,
    )
    return TailResult(records=records, new_offset=from_offset + consumed, skipped=skipped)


def read_all(path: PathLike) -> tuple[list[RawRecord], int]:
    """Read every record of a finished log.

    Returns (records, malformed_lines_skipped). A final line without a
    trailing newline is included when it parses.
    """
    file_path = Path(path).expanduser()
    data = _read_bytes(file_path, 0)
    if data is None:
        return [], 0
    records, _, skipped = _parse_lines(data, partial_first_line=False, include_unterminated=True)
    if skipped:
        logger.info("Read %d records from %s (%d malformed lines skipped)", len(records), file_path.name, skipped)
    return records, skipped


async def sleep_or_cancel(seconds: float, cancel: Optional[asyncio.Event]) -> None:
    """Sleep for `seconds`, returning early when `cancel` is set."""
    if cancel is None:
        await asyncio.sleep(seconds)
        return
    if cancel.is_set():
        return
    try:
        await asyncio.wait_for(cancel.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        pass


class LogTailer:
    """Tails one session log, owning its own byte offset."""

    def __init__(self, path: PathLike, offset: int = 0) -> None:
        self.path = Path(path).expanduser()
        self._offset = offset

    @property
    def offset(self) -> int:
        return self._offset

    def read_new(self) -> TailResult:
        """Read records appended since the last call and advance the offset."""
        result = read_new_records(self.path, self._offset)
        self._offset = result.new_offset
        return result

    async def watch(
        self,
        *,
        poll_interval: float = DEFAULT_POLL_INTERVAL_S,
        cancel: Optional[asyncio.Event] = None,
    ) -> AsyncIterator[RawRecord]:
        """Yield records as they become complete until `cancel` is set."""
        while cancel is None or not cancel.is_set():
            result = self.read_new()
            for record in result.records:
                yield record
            await sleep_or_cancel(poll_interval, cancel)
        logger.debug("Stopped watching %s at offset %d", self.path.name, self._offset)


async def watch_records(
    path: PathLike,
    *,
    from_offset: int = 0,
    poll_interval: float = DEFAULT_POLL_INTERVAL_S,
    cancel: Optional[asyncio.Event] = None,
) -> AsyncIterator[RawRecord]:
    """Watch a session log and yield records as they are appended.

    Infinite until `cancel` is set; restartable from any byte offset.
    """
    tailer = LogTailer(path, offset=from_offset)
    async for record in tailer.watch(poll_interval=poll_interval, cancel=cancel):
        yield record
