"""Incremental sync of session turns to a delivery sink.

Single source of truth for mirroring, used by one-shot `sync` and by the
conversation watcher. Per call:

1. Read new records from the persisted offset.
2. Group the whole log (up to the new offset) into turns.
3. For each turn with undelivered records, deliver in order: user input,
   then per segment its activity window and its text, then trailing
   activity.
4. Record each delivered record immediately so an interrupted call resumes
   from exactly where it stopped.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Optional, Sequence, TypeVar, Union

from telemirror.adapters.formatting import format_activity_text
from telemirror.constants import (
    ASSISTANT_OUTPUT_PREFIX,
    DEFAULT_CHAR_LIMIT,
    TRUNCATION_MARKER,
    USER_INPUT_PREFIX,
)
from telemirror.core.activity_log import build_activity_log, entries_in_window
from telemirror.core.delivery_ledger import DeliveryLedger
from telemirror.core.errors import DeliveryError, DeliveryNotFoundError, SyncAbortedError
from telemirror.core.event_stream import reconstruct_events
from telemirror.core.log_tailer import read_new_records
from telemirror.core.models import ActivityEntry, RawRecord, SessionEvent, Turn
from telemirror.core.protocols import ActivityFormatter, DeliverySink, LongContentUploader, MappingStore
from telemirror.core.turns import extract_text_content, group_messages_by_turn
from telemirror.utils import retry_forever
from telemirror.utils.markdown import truncate_with_marker

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProgressCallback = Callable[[int, int, str], Optional[Awaitable[None]]]
TextPoster = Callable[[str], Awaitable[str]]


@dataclass
class SyncOptions:  # pylint: disable=too-many-instance-attributes
    """Options for one sync call.

    Attributes:
        is_aborted: Checked before every delivery; True stops the sync
        on_progress: Called after each recorded record with (done, total, uuid)
        char_limit: Longest text delivered inline
        post_text: Replaces `sink.post` for user input and text output
        post_activity: Replaces `sink.post` for new activity items
        infinite_retry: Retry every delivery until it succeeds (or abort)
        pacing_delay_ms: Delay between deliveries
    """

    is_aborted: Optional[Callable[[], bool]] = None
    on_progress: Optional[ProgressCallback] = None
    char_limit: int = DEFAULT_CHAR_LIMIT
    post_text: Optional[TextPoster] = None
    post_activity: Optional[TextPoster] = None
    infinite_retry: bool = False
    pacing_delay_ms: int = 0
    retry_base_delay_s: float = 3.0
    retry_max_delay_s: float = 30.0


@dataclass
class MessageSyncState:
    """Everything needed to deliver one conversation.

    `activity_refs` maps a turn key to the sink reference of that turn's
    open activity item. It lives as long as the state (one watcher) so
    later polls update the item instead of posting a new one. A fresh state
    recovers missing refs from the store.
    """

    conversation_key: str
    session_id: str
    store: MappingStore
    sink: DeliverySink
    formatter: ActivityFormatter = format_activity_text
    uploader: Optional[LongContentUploader] = None
    activity_refs: dict[str, str] = field(default_factory=dict)


@dataclass
class SyncResult:
    """Result of a sync call."""

    new_offset: int
    synced_count: int = 0
    total_to_sync: int = 0
    was_aborted: bool = False
    all_succeeded: bool = True


def _turn_start_ms(turn: Turn) -> int:
    if turn.user_input is not None:
        return turn.user_input.timestamp_ms
    if turn.segments:
        first = turn.segments[0]
        return (first.activity_messages[0] if first.activity_messages else first.text_output).timestamp_ms
    if turn.trailing_activity:
        return turn.trailing_activity[0].timestamp_ms
    return 0


class _SyncRun:
    """Delivery of the pending records of one sync call."""

    def __init__(
        self,
        state: MessageSyncState,
        options: SyncOptions,
        ledger: DeliveryLedger,
        events: list[SessionEvent],
        total: int,
    ) -> None:
        self.state = state
        self.options = options
        self.ledger = ledger
        self.events = events
        self.total = total
        self.entries = build_activity_log(events)
        self._live_entries: Optional[list[ActivityEntry]] = None

    @property
    def live_entries(self) -> list[ActivityEntry]:
        if self._live_entries is None:
            self._live_entries = build_activity_log(self.events, in_progress=True)
        return self._live_entries

    def _check_abort(self) -> None:
        if self.options.is_aborted is not None and self.options.is_aborted():
            raise SyncAbortedError("Sync aborted")

    async def _call(self, fn: Callable[[], Awaitable[T]]) -> T:
        if self.options.infinite_retry:
            return await retry_forever(
                fn,
                base_delay=self.options.retry_base_delay_s,
                max_delay=self.options.retry_max_delay_s,
                is_aborted=self.options.is_aborted,
            )
        return await fn()

    async def _after_item(self, uuid: str) -> None:
        if self.options.on_progress is not None:
            result = self.options.on_progress(self.ledger.recorded_count, self.total, uuid)
            if inspect.isawaitable(result):
                await result
        if self.options.pacing_delay_ms > 0:
            await asyncio.sleep(self.options.pacing_delay_ms / 1000)

    async def _post_text(self, text: str) -> str:
        poster = self.options.post_text or self.state.sink.post
        return await self._call(lambda: poster(text))

    async def _restore_activity_ref(self, turn: Turn, records: Sequence[RawRecord]) -> None:
        """Recover the ref of an activity item posted by an earlier run.

        Only the in-memory map knows about items posted by this process; after
        a restart the ref is looked up from the records already delivered into
        that item.
        """
        if turn.key in self.state.activity_refs:
            return
        for record in reversed(records):
            if not self.ledger.is_delivered(record.uuid):
                continue
            ref = await self.state.store.get_delivered_ref(
                self.state.conversation_key, record.uuid, kind="activity"
            )
            if ref is not None:
                logger.debug("Resuming activity item %s for turn %s", ref, turn.key[:8])
                self.state.activity_refs[turn.key] = ref
                return

    async def sync_turn(self, turn: Turn, pending: set[str], next_turn_start: Optional[int] = None) -> None:
        """Deliver the pending records of one turn.

        `next_turn_start` is the start of the following turn, if any. A turn
        followed by another one is closed: its trailing activity is bounded by
        that start and rendered as completed.
        """
        if turn.user_input is not None and turn.user_input.uuid in pending:
            await self._deliver_user_input(turn.user_input)

        window_start = _turn_start_ms(turn)
        include_start = True
        for segment in turn.segments:
            text_ts = segment.text_output.timestamp_ms
            activity_pending = [r.uuid for r in segment.activity_messages if r.uuid in pending]
            text_pending = segment.text_output.uuid in pending

            if activity_pending or text_pending:
                await self._restore_activity_ref(turn, segment.activity_messages)
                # An item left open by an earlier poll is finalized even when
                # only the text is new
                if activity_pending or turn.key in self.state.activity_refs:
                    window = entries_in_window(self.entries, window_start, text_ts, include_start=include_start)
                    await self._deliver_activity(turn, window, activity_pending, in_progress=False)
                if text_pending:
                    await self._deliver_text(segment.text_output)
                # Next segment starts a fresh activity item below this text
                self.state.activity_refs.pop(turn.key, None)

            window_start = text_ts
            include_start = False

        if not turn.trailing_activity:
            return
        trailing_pending = [r.uuid for r in turn.trailing_activity if r.uuid in pending]
        closed = next_turn_start is not None
        if not trailing_pending and not closed:
            return

        await self._restore_activity_ref(turn, turn.trailing_activity)
        if not trailing_pending and turn.key not in self.state.activity_refs:
            return

        if closed:
            # Interrupted turn: stop before the next input, show final previews
            window = entries_in_window(self.entries, window_start, next_turn_start - 1, include_start=include_start)
            await self._deliver_activity(turn, window, trailing_pending, in_progress=False)
            self.state.activity_refs.pop(turn.key, None)
        else:
            window = entries_in_window(self.live_entries, window_start, None, include_start=include_start)
            await self._deliver_activity(turn, window, trailing_pending, in_progress=True)

    async def _deliver_user_input(self, record: RawRecord) -> None:
        self._check_abort()
        conversation_key = self.state.conversation_key

        if await self.state.store.is_sink_originated(conversation_key, record.uuid):
            logger.debug("User input %s came from the sink, not echoing", record.uuid[:8])
            await self.ledger.record(record.uuid, None, kind="user", origin="sink")
            await self._after_item(record.uuid)
            return

        text = extract_text_content(record)
        if not text.strip():
            await self.ledger.record(record.uuid, None, kind="empty")
            await self._after_item(record.uuid)
            return

        full_text = USER_INPUT_PREFIX + text
        uploader = self.state.uploader
        if len(full_text) > self.options.char_limit and uploader is not None:
            logger.info("User input %s is %d chars, uploading as file", record.uuid[:8], len(text))
            ref = await self._call(lambda: uploader.upload_full(text, USER_INPUT_PREFIX))
        else:
            ref = await self._post_text(truncate_with_marker(full_text, self.options.char_limit, TRUNCATION_MARKER))

        await self.ledger.record(record.uuid, ref, kind="user")
        await self._after_item(record.uuid)

    async def _deliver_text(self, record: RawRecord) -> None:
        self._check_abort()
        text = ASSISTANT_OUTPUT_PREFIX + extract_text_content(record)
        if len(text) > self.options.char_limit:
            logger.debug("Truncating text %s from %d chars", record.uuid[:8], len(text))
            text = truncate_with_marker(text, self.options.char_limit, TRUNCATION_MARKER)
        ref = await self._post_text(text)
        await self.ledger.record(record.uuid, ref, kind="text")
        await self._after_item(record.uuid)

    async def _send_activity(self, turn_key: str, text: str) -> str:
        existing = self.state.activity_refs.get(turn_key)
        if existing is not None:
            sink = self.state.sink
            try:
                ref = await self._call(lambda: sink.update(existing, text))
            except DeliveryNotFoundError:
                logger.warning("Activity item %s for turn %s vanished, posting a new one", existing, turn_key[:8])
                self.state.activity_refs.pop(turn_key, None)
            else:
                self.state.activity_refs[turn_key] = ref
                return ref

        poster = self.options.post_activity or self.state.sink.post
        ref = await self._call(lambda: poster(text))
        self.state.activity_refs[turn_key] = ref
        return ref

    async def _deliver_activity(
        self,
        turn: Turn,
        window: Sequence[ActivityEntry],
        pending_uuids: list[str],
        *,
        in_progress: bool,
    ) -> None:
        self._check_abort()

        if not window:
            # Records with nothing to show still count as delivered
            await self.ledger.record_many(pending_uuids, None, kind="empty")
            if pending_uuids:
                await self._after_item(pending_uuids[-1])
            return

        text = self.state.formatter(window, in_progress=in_progress)
        ref = await self._send_activity(turn.key, text)
        activity_key = f"{self.state.conversation_key}_turn_{turn.key}"
        await self.state.store.merge_activity_log(activity_key, window)
        await self.ledger.record_many(pending_uuids, ref, kind="activity")
        logger.debug(
            "Delivered %d activity entries for turn %s as %s (%d records)",
            len(window),
            turn.key[:8],
            ref,
            len(pending_uuids),
        )
        await self._after_item(pending_uuids[-1] if pending_uuids else turn.key)


async def sync_messages_from_offset(
    state: MessageSyncState,
    path: Union[str, Path],
    from_offset: int,
    options: Optional[SyncOptions] = None,
) -> SyncResult:
    """Deliver every undelivered record found after `from_offset`.

    Returns the new offset even when nothing was delivered. Delivery failures
    stop the call with `all_succeeded=False` (retry from the same offset is
    safe); an abort stops it with `was_aborted=True`. Exceptions other than
    `DeliveryError` propagate.
    """
    options = options or SyncOptions()

    tail = read_new_records(path, from_offset)
    logger.debug(
        "Read %d records from offset %d, new offset %d", len(tail.records), from_offset, tail.new_offset
    )
    if not tail.records:
        return SyncResult(new_offset=tail.new_offset)

    # Turns and activity windows may reach back before from_offset
    if from_offset > 0:
        records = read_new_records(path, 0, to_offset=tail.new_offset).records
    else:
        records = tail.records
    new_uuids = {record.uuid for record in tail.records}

    ledger = await DeliveryLedger.load(state.store, state.conversation_key)
    turns = group_messages_by_turn(records)
    pendings = [{uuid for uuid in ledger.pending(turn.all_message_uuids) if uuid in new_uuids} for turn in turns]
    plan: list[tuple[Turn, set[str], Optional[int]]] = []
    for index, turn in enumerate(turns):
        next_turn = turns[index + 1] if index + 1 < len(turns) else None
        next_start = _turn_start_ms(next_turn) if next_turn is not None else None
        pending = pendings[index]
        # A live activity item is finalized once the next input closes its turn
        closing = (
            next_turn is not None
            and bool(turn.trailing_activity)
            and (
                turn.key in state.activity_refs
                or (next_turn.user_input is not None and next_turn.user_input.uuid in pendings[index + 1])
            )
        )
        if pending or closing:
            plan.append((turn, pending, next_start))

    total = sum(len(pending) for _, pending, _ in plan)
    if total == 0:
        logger.debug("Nothing to sync for %s", state.conversation_key)
        return SyncResult(new_offset=tail.new_offset)

    run = _SyncRun(state, options, ledger, reconstruct_events(records), total)
    result = SyncResult(new_offset=tail.new_offset, total_to_sync=total)
    try:
        for turn, pending, next_start in plan:
            await run.sync_turn(turn, pending, next_start)
    except SyncAbortedError:
        logger.info("Sync of %s aborted after %d/%d records", state.conversation_key, ledger.recorded_count, total)
        result.was_aborted = True
    except DeliveryError as e:
        logger.error("Sync of %s stopped after %d/%d records: %s", state.conversation_key, ledger.recorded_count, total, e)
        result.all_succeeded = False

    result.synced_count = ledger.recorded_count
    if result.all_succeeded and not result.was_aborted:
        logger.info("Synced %d records for %s", result.synced_count, state.conversation_key)
    return result
