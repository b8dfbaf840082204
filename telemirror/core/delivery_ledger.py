"""Delivered-identifier bookkeeping for one sync call.

Every raw record that contributes to a delivered item is recorded on its own,
keyed `<sink_ref>:<uuid>`, so a turn is only considered synced once each of
its records has been confirmed. Records that produce nothing visible are
recorded as `empty_<uuid>`.
"""

from __future__ import annotations

import logging
from typing import Iterable, Optional

from telemirror.core.protocols import MappingStore

logger = logging.getLogger(__name__)


def delivery_key(ref: Optional[str], uuid: str, *, origin: str = "mirror") -> str:
    """Mapping key for one delivered record."""
    if origin == "sink":
        return f"sink:{uuid}"
    if ref is None:
        return f"empty_{uuid}"
    return f"{ref}:{uuid}"


class DeliveryLedger:
    """Delivered-identifier set for one conversation, backed by the mapping store.

    The set is loaded once per sync call; every `record*` call writes
    through to the store before returning.
    """

    def __init__(self, store: MappingStore, conversation_key: str, delivered: set[str]) -> None:
        self.store = store
        self.conversation_key = conversation_key
        self._delivered = delivered
        self.recorded_count = 0

    @classmethod
    async def load(cls, store: MappingStore, conversation_key: str) -> "DeliveryLedger":
        delivered = await store.get_delivered_identifiers(conversation_key)
        return cls(store, conversation_key, set(delivered))

    def is_delivered(self, uuid: str) -> bool:
        return uuid in self._delivered

    def pending(self, uuids: Iterable[str]) -> list[str]:
        """Identifiers not yet delivered, in the given order."""
        return [uuid for uuid in uuids if uuid not in self._delivered]

    async def record(
        self,
        uuid: str,
        ref: Optional[str],
        *,
        kind: str,
        origin: str = "mirror",
    ) -> None:
        """Record one identifier as delivered. No-op when already delivered."""
        if uuid in self._delivered:
            return
        key = delivery_key(ref, uuid, origin=origin)
        await self.store.record_delivered(
            self.conversation_key,
            key,
            uuid,
            delivered_ref=ref,
            kind=kind,
            origin=origin,
        )
        self._delivered.add(uuid)
        self.recorded_count += 1
        logger.debug("Recorded %s as %s (%s)", uuid[:8], key, kind)

    async def record_many(self, uuids: Iterable[str], ref: Optional[str], *, kind: str) -> None:
        for uuid in uuids:
            await self.record(uuid, ref, kind=kind if ref is not None else "empty")
