"""telemirror logging configuration.

Logging goes through the standard library: every module holds
`logger = logging.getLogger(__name__)` and the process entrypoint calls
`setup_logging()` once.

Environment:
    TELEMIRROR_LOG_LEVEL: default level (INFO when unset).
    TELEMIRROR_LOG_FILE: optional file to append logs to.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
_configured = False


def setup_logging(level: Optional[str] = None) -> None:
    """Configure telemirror logging.

    Args:
        level: Optional override for `TELEMIRROR_LOG_LEVEL`.
    """
    global _configured  # pylint: disable=global-statement

    if level:
        os.environ["TELEMIRROR_LOG_LEVEL"] = level
    level_name = os.getenv("TELEMIRROR_LOG_LEVEL", "INFO").upper()

    root = logging.getLogger("telemirror")
    root.setLevel(getattr(logging, level_name, logging.INFO))
    if _configured:
        return

    formatter = logging.Formatter(LOG_FORMAT)
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    root.addHandler(stream_handler)

    log_file = os.getenv("TELEMIRROR_LOG_FILE")
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(path, encoding="utf-8")
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

    root.propagate = False
    _configured = True
