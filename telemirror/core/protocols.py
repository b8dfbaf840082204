"""Protocol definitions for the collaborators of the sync engine."""

from typing import Optional, Protocol, Sequence, runtime_checkable

from telemirror.core.models import ActivityEntry


@runtime_checkable
class MappingStore(Protocol):
    """Persistence for delivered identifiers and accumulated activity.

    Delivered identifiers are raw record uuids. Each is stored under its own
    mapping key so several records folded into one sink item never overwrite
    each other.
    """

    async def get_delivered_identifiers(self, conversation_key: str) -> set[str]:
        """Return every identifier recorded for the conversation."""
        ...

    async def record_delivered(
        self,
        conversation_key: str,
        item_key: str,
        message_uuid: str,
        *,
        delivered_ref: Optional[str] = None,
        kind: str = "text",
        origin: str = "mirror",
    ) -> None:
        """Persist one delivered record. Must be idempotent.

        Args:
            conversation_key: Conversation the record belongs to
            item_key: Unique mapping key (`<sink_ref>:<uuid>`, `empty_<uuid>`, ...)
            message_uuid: Raw record identifier now counted as delivered
            delivered_ref: Sink reference of the item carrying the record
            kind: "user", "text", "activity" or "empty"
            origin: "mirror" for items we posted, "sink" for input typed in the sink
        """
        ...

    async def get_delivered_ref(
        self, conversation_key: str, message_uuid: str, *, kind: Optional[str] = None
    ) -> Optional[str]:
        """Return the sink reference of the item carrying a record, if any."""
        ...

    async def merge_activity_log(self, activity_key: str, entries: Sequence[ActivityEntry]) -> None:
        """Merge activity entries into the stored log under `activity_key`."""
        ...

    async def is_sink_originated(self, conversation_key: str, record_uuid: str) -> bool:
        """Check whether a user input was typed in the sink itself.

        Such inputs are already visible on the other side and must not be
        echoed back.
        """
        ...


@runtime_checkable
class DeliverySink(Protocol):
    """External message destination (chat, topic, channel)."""

    async def post(self, text: str) -> str:
        """Post a new item.

        Returns:
            Sink reference of the created item

        Raises:
            DeliveryError: If the item could not be posted
        """
        ...

    async def update(self, ref: str, text: str) -> str:
        """Replace the text of a previously posted item.

        Returns:
            Sink reference of the updated item

        Raises:
            DeliveryNotFoundError: If the item no longer exists
            DeliveryError: For any other failure
        """
        ...


@runtime_checkable
class LongContentUploader(Protocol):
    """Uploads content too long to deliver inline."""

    async def upload_full(self, content: str, preview_prefix: str) -> str:
        """Upload the full content with a short preview.

        Returns:
            Sink reference of the uploaded item
        """
        ...


@runtime_checkable
class ActivityFormatter(Protocol):
    """Renders activity entries into deliverable text."""

    def __call__(self, entries: Sequence[ActivityEntry], *, in_progress: bool) -> str: ...
