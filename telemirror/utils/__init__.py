"""Utility functions for telemirror."""

import asyncio
import logging
import os
import random
import re
import time
from functools import wraps
from typing import Awaitable, Callable, Optional, ParamSpec, TypeVar

from telemirror.core.errors import DeliveryNotFoundError, SyncAbortedError, get_retry_after, is_network_error

T = TypeVar("T")
P = ParamSpec("P")
logger = logging.getLogger(__name__)


def delivery_retry(
    max_retries: int = 3, max_timeout: float = 15.0
) -> Callable[[Callable[P, Awaitable[T]]], Callable[P, Awaitable[T]]]:
    """Decorator for retrying sink calls with exponential backoff and max timeout.

    Handles:
    - Rate limits: Retry with suggested delay if exception provides retry_after
    - Network errors (connection issues, timeouts): Retry with exponential backoff (1s, 2s, 4s)
    - Missing target and other errors: Fail immediately
    - Max timeout: Stop retrying after total elapsed time exceeds max_timeout

    Args:
        max_retries: Maximum number of attempts (default: 3)
        max_timeout: Maximum total time in seconds for all retries (default: 15.0)

    Returns:
        Decorator function
    """

    def decorator(func: Callable[P, Awaitable[T]]) -> Callable[P, Awaitable[T]]:
        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:  # type: ignore[misc]
            start_time = time.time()
            excluded_wait_time = 0.0  # Rate-limit wait time doesn't count against timeout

            for attempt in range(max_retries):
                try:
                    return await func(*args, **kwargs)

                except DeliveryNotFoundError:
                    raise

                except Exception as e:
                    elapsed_time = time.time() - start_time - excluded_wait_time
                    if elapsed_time >= max_timeout:
                        logger.error(
                            "Max timeout (%.1fs) exceeded after %d attempts (elapsed: %.1fs)",
                            max_timeout,
                            attempt + 1,
                            elapsed_time,
                        )
                        raise

                    retry_after = get_retry_after(e)
                    if retry_after is not None:
                        if attempt >= max_retries - 1:
                            logger.error("%s: Rate limit exceeded after %d attempts", func.__name__, max_retries)
                            raise
                        logger.warning(
                            "%s: Rate limited, retrying in %ss (attempt %d/%d)",
                            func.__name__,
                            retry_after,
                            attempt + 1,
                            max_retries,
                        )
                        await asyncio.sleep(retry_after)
                        excluded_wait_time += retry_after

                    elif is_network_error(e):
                        if attempt >= max_retries - 1:
                            logger.error("Network error after %d attempts: %s", max_retries, e)
                            raise
                        delay = 2**attempt  # 1s, 2s, 4s
                        logger.warning(
                            "Network error (%s), retrying in %ds (attempt %d/%d)",
                            type(e).__name__,
                            delay,
                            attempt + 1,
                            max_retries,
                        )
                        await asyncio.sleep(delay)

                    else:
                        logger.debug("Non-retryable error in %s: %s", func.__name__, e)
                        raise

            raise RuntimeError(f"Retry logic failed unexpectedly in {func.__name__}")

        return wrapper  # type: ignore[misc]

    return decorator


async def retry_forever(
    fn: Callable[[], Awaitable[T]],
    *,
    base_delay: float = 3.0,
    max_delay: float = 30.0,
    is_aborted: Optional[Callable[[], bool]] = None,
) -> T:
    """Call `fn` until it succeeds.

    Backoff doubles from `base_delay` up to `max_delay` with jitter; a
    server-suggested retry_after takes precedence. `DeliveryNotFoundError` is
    raised immediately since retrying cannot bring the target back.

    Raises:
        SyncAbortedError: If `is_aborted` returns True before an attempt
    """
    attempt = 0
    while True:
        if is_aborted is not None and is_aborted():
            raise SyncAbortedError("Aborted while retrying")
        attempt += 1
        try:
            result = await fn()
        except DeliveryNotFoundError:
            raise
        except Exception as e:  # pylint: disable=broad-exception-caught
            retry_after = get_retry_after(e)
            if retry_after is not None:
                delay = retry_after
            else:
                delay = min(base_delay * 2 ** (attempt - 1), max_delay)
                delay += random.uniform(0, delay * 0.1)
            logger.warning("Attempt %d failed (%s), retrying in %.1fs", attempt, e, delay)
            await asyncio.sleep(delay)
            continue
        if attempt > 1:
            logger.info("Succeeded after %d attempts", attempt)
        return result


def expand_env_vars(config: object) -> object:
    """Recursively expand environment variables in config.

    Replaces ${VAR} patterns with environment variable values; unknown
    variables are left as-is.

    Args:
        config: Configuration object (dict, list, str, or primitive)

    Returns:
        Configuration with all ${VAR} patterns replaced
    """
    if isinstance(config, dict):
        return {k: expand_env_vars(v) for k, v in config.items()}  # type: ignore[misc]
    if isinstance(config, list):
        return [expand_env_vars(item) for item in config]
    if isinstance(config, str):

        def replace_env_var(match: re.Match[str]) -> str:
            return os.getenv(match.group(1), match.group(0))

        return re.sub(r"\$\{([^}]+)\}", replace_env_var, config)
    return config


def format_duration(duration_ms: Optional[int]) -> str:
    """Format milliseconds for display (e.g. "850ms", "2.4s", "3m05s")."""
    if duration_ms is None:
        return ""
    if duration_ms < 1000:
        return f"{duration_ms}ms"
    seconds = duration_ms / 1000
    if seconds < 60:
        return f"{seconds:.1f}s"
    minutes, secs = divmod(int(seconds), 60)
    return f"{minutes}m{secs:02d}s"
