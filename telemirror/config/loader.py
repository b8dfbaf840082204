import logging
import os
from pathlib import Path
from typing import Optional

import yaml
from pydantic import BaseModel

from telemirror.config.schema import TelemirrorConfig
from telemirror.utils import expand_env_vars

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "~/.telemirror/telemirror.yml"


def _warn_unknown_keys(model: BaseModel, path: str, config_path: Path) -> None:
    """Recursively warn about unknown keys in a model and its nested models."""
    if model.model_extra:
        logger.warning("Unknown keys in %s at %s: %s", path, config_path, list(model.model_extra.keys()))

    for field_name, field_value in model.__dict__.items():
        if isinstance(field_value, BaseModel):
            _warn_unknown_keys(field_value, f"{path}.{field_name}", config_path)


def resolve_config_path(path: Optional[Path] = None) -> Path:
    """Explicit path, else $TELEMIRROR_CONFIG, else the default location."""
    if path is not None:
        return Path(path).expanduser()
    return Path(os.getenv("TELEMIRROR_CONFIG", DEFAULT_CONFIG_PATH)).expanduser()


def load_config(path: Optional[Path] = None) -> TelemirrorConfig:
    """Load and validate configuration from a YAML file.

    A missing or unreadable file yields defaults; invalid values raise
    pydantic.ValidationError.

    Args:
        path: Path to the telemirror.yml file.

    Returns:
        The validated configuration model.
    """
    config_path = resolve_config_path(path)
    if not config_path.exists():
        return TelemirrorConfig()

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            raw = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        logger.warning("Failed to read config file %s: %s", config_path, e)
        return TelemirrorConfig()

    expanded = expand_env_vars(raw)
    model = TelemirrorConfig.model_validate(expanded)
    _warn_unknown_keys(model, "root", config_path)
    return model
