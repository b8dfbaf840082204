"""Continuous mirroring of watched conversations.

Each conversation gets one `ConversationWatcher`: an asyncio task polling its
session log at the update rate and running an incremental sync on every poll.
The watcher owns its offset; the offset is persisted only after a poll fully
succeeded, so a failed poll is retried from the same place.
"""

import asyncio
import logging
from dataclasses import replace
from pathlib import Path
from typing import Dict, Optional, Union

from telemirror.constants import DEFAULT_UPDATE_RATE_S
from telemirror.core.db import MappingDb
from telemirror.core.log_tailer import get_file_size, sleep_or_cancel
from telemirror.core.message_sync import MessageSyncState, SyncOptions, SyncResult, sync_messages_from_offset

logger = logging.getLogger(__name__)


class ConversationWatcher:
    """Polls one session log and mirrors it into one conversation."""

    def __init__(
        self,
        state: MessageSyncState,
        store: MappingDb,
        path: Union[str, Path],
        *,
        update_rate: float = DEFAULT_UPDATE_RATE_S,
        options: Optional[SyncOptions] = None,
    ) -> None:
        self.state = state
        self.store = store
        self.path = Path(path).expanduser()
        self._update_rate = update_rate
        self._options = options or SyncOptions()
        self.offset = 0
        self._cancel = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._polling = False

    @property
    def conversation_key(self) -> str:
        return self.state.conversation_key

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def update_rate(self, seconds: float) -> None:
        """Change the poll interval; takes effect after the current sleep."""
        self._update_rate = seconds
        logger.debug("Update rate for %s set to %.1fs", self.conversation_key, seconds)

    async def start(self, from_offset: Optional[int] = None) -> None:
        """Start polling.

        Args:
            from_offset: Explicit start offset. Defaults to the persisted
                offset, or the current file size for a new conversation so
                history is not replayed.
        """
        if self.is_running:
            return
        if from_offset is not None:
            self.offset = from_offset
        else:
            stored = await self.store.get_offset(self.conversation_key)
            self.offset = stored if stored > 0 else get_file_size(self.path)
        self._cancel.clear()
        self._task = asyncio.create_task(self._poll_loop())
        logger.info("Watching %s for %s from offset %d", self.path.name, self.conversation_key, self.offset)

    async def stop(self) -> None:
        """Stop polling and wait for the in-flight poll to finish."""
        self._cancel.set()
        if self._task is not None:
            await self._task
            self._task = None
        logger.info("Stopped watching %s", self.conversation_key)

    async def _poll_loop(self) -> None:
        """Main polling loop."""
        while not self._cancel.is_set():
            try:
                await self.poll_once()
            except Exception as e:  # pylint: disable=broad-exception-caught
                logger.error("Error polling %s: %s", self.conversation_key, e)
            await sleep_or_cancel(self._update_rate, self._cancel)

    async def poll_once(self) -> Optional[SyncResult]:
        """Run one incremental sync. Returns None when a poll is already running."""
        if self._polling:
            logger.debug("Poll for %s still running, skipping", self.conversation_key)
            return None

        self._polling = True
        try:
            options = replace(self._options, is_aborted=self._cancel.is_set)
            result = await sync_messages_from_offset(self.state, self.path, self.offset, options)
            if result.all_succeeded and not result.was_aborted:
                if result.new_offset > self.offset:
                    self.offset = await self.store.set_offset(self.conversation_key, result.new_offset)
            else:
                logger.warning(
                    "Poll for %s incomplete (%d/%d), retrying from offset %d",
                    self.conversation_key,
                    result.synced_count,
                    result.total_to_sync,
                    self.offset,
                )
            return result
        finally:
            self._polling = False


class SessionWatcher:
    """Registry of active conversation watchers, keyed by conversation key."""

    def __init__(self, store: MappingDb) -> None:
        self.store = store
        self._watchers: Dict[str, ConversationWatcher] = {}

    async def start_watching(
        self,
        state: MessageSyncState,
        path: Union[str, Path],
        *,
        from_offset: Optional[int] = None,
        update_rate: float = DEFAULT_UPDATE_RATE_S,
        options: Optional[SyncOptions] = None,
    ) -> ConversationWatcher:
        """Start (or restart) watching a conversation."""
        key = state.conversation_key
        if key in self._watchers:
            logger.info("Replacing existing watcher for %s", key)
            await self.stop_watching(key)

        watcher = ConversationWatcher(state, self.store, path, update_rate=update_rate, options=options)
        self._watchers[key] = watcher
        await watcher.start(from_offset)
        return watcher

    async def stop_watching(self, conversation_key: str) -> bool:
        """Stop a watcher. Returns False when the conversation was not watched."""
        watcher = self._watchers.pop(conversation_key, None)
        if watcher is None:
            return False
        await watcher.stop()
        return True

    def is_watching(self, conversation_key: str) -> bool:
        return conversation_key in self._watchers

    def get_watcher(self, conversation_key: str) -> Optional[ConversationWatcher]:
        return self._watchers.get(conversation_key)

    async def stop_all(self) -> None:
        for key in list(self._watchers):
            await self.stop_watching(key)
