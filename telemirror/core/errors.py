"""Error taxonomy for delivery to the external sink.

Only `DeliveryNotFoundError` may trigger a compensating post; every other
`DeliveryError` marks the current sync as not fully successful so the caller
retries from the same offset.
"""

from typing import Optional


class TelemirrorError(Exception):
    """Base exception for telemirror errors."""


class DeliveryError(TelemirrorError):
    """A sink operation failed (after any retry policy gave up)."""


class DeliveryNotFoundError(DeliveryError):
    """An update targeted a delivered item that no longer exists."""

    def __init__(self, ref: str, message: Optional[str] = None) -> None:
        super().__init__(message or f"Delivered item {ref} not found")
        self.ref = ref


class RateLimitedError(DeliveryError):
    """The sink asked us to slow down."""

    def __init__(self, retry_after: float, message: Optional[str] = None) -> None:
        super().__init__(message or f"Rate limited, retry after {retry_after}s")
        self.retry_after = retry_after


class SyncAbortedError(TelemirrorError):
    """Raised inside retry loops when the caller requested an abort."""


_NETWORK_ERROR_NAMES = frozenset({"NetworkError", "TimedOut", "ConnectionError", "TimeoutError"})


def get_retry_after(error: BaseException) -> Optional[float]:
    """Return the server-suggested retry delay in seconds, if the error carries one."""
    retry_after = getattr(error, "retry_after", None)
    if retry_after is None:
        return None
    if hasattr(retry_after, "total_seconds"):
        return float(retry_after.total_seconds())
    try:
        return float(retry_after)
    except (TypeError, ValueError):
        return None


def is_network_error(error: BaseException) -> bool:
    """Check whether the error is a transport-level failure worth retrying."""
    if isinstance(error, (ConnectionError, TimeoutError)):
        return True
    return type(error).__name__ in _NETWORK_ERROR_NAMES


def is_recoverable(error: BaseException) -> bool:
    """Check if an error is transient (rate limit or network)."""
    if isinstance(error, DeliveryNotFoundError):
        return False
    return get_retry_after(error) is not None or is_network_error(error)
