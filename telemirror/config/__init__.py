"""Global configuration management.

Config is loaded lazily on first use and cached for the process:
    from telemirror.config import get_config
"""

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from telemirror.config.loader import load_config
from telemirror.config.schema import TelemirrorConfig

_config: Optional[TelemirrorConfig] = None


def _load_env() -> None:
    # Load .env (allow override for tests)
    env_path = os.getenv("TELEMIRROR_ENV_PATH")
    load_dotenv(Path(env_path).expanduser() if env_path else Path.cwd() / ".env")


def get_config(path: Optional[Path] = None) -> TelemirrorConfig:
    """Return the process-wide config, loading it on first call."""
    global _config  # pylint: disable=global-statement
    if _config is None:
        _load_env()
        _config = load_config(path)
    return _config


def reset_config() -> None:
    """Drop the cached config (tests, reload)."""
    global _config  # pylint: disable=global-statement
    _config = None


__all__ = ["TelemirrorConfig", "get_config", "load_config", "reset_config"]
