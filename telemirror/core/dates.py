"""Date/time normalization helpers."""

from __future__ import annotations

import logging
from datetime import datetime, timezone

logger = logging.getLogger(__name__)


def ensure_utc(value: datetime) -> datetime:
    """Return a timezone-aware UTC datetime."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_iso_datetime(value: object) -> datetime | None:
    """Parse ISO datetime string, normalizing to UTC.

    Handles string inputs, datetime objects (normalized to UTC),
    and returns None for other types.
    """
    if value is None:
        return None

    if isinstance(value, datetime):
        return ensure_utc(value)

    if not isinstance(value, str):
        logger.warning("Attempted to parse non-string datetime: %s (type: %s)", value, type(value))
        return None

    try:
        normalized = value.replace("Z", "+00:00")
        parsed = datetime.fromisoformat(normalized)
        return ensure_utc(parsed)
    except ValueError:
        logger.warning("Failed to parse ISO datetime string: %s", value)
        return None


def to_epoch_ms(value: object) -> int:
    """Convert an ISO timestamp to epoch milliseconds (0 when unparseable)."""
    parsed = parse_iso_datetime(value)
    if parsed is None:
        return 0
    return int(parsed.timestamp() * 1000)
