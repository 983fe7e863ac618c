"""Load optional project configuration from `.taskgraph/config.yaml`."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any

from .constants import (
    CONFIG_FILE,
    DEFAULT_LOG_LEVEL,
    DEFAULT_PRIORITY,
    STATE_DIR_ENV_VAR,
    STATE_DIR_NAME,
)
from .io_utils import _load_data_with_error

VALID_LOG_LEVELS = {"TRACE", "DEBUG", "INFO", "SUCCESS", "WARNING", "ERROR", "CRITICAL"}


def state_dir_for(project_dir: Path) -> Path:
    """Return the state directory of *project_dir*.

    The directory name can be overridden with the ``TASKGRAPH_STATE_DIR``
    environment variable.
    """
    name = os.environ.get(STATE_DIR_ENV_VAR) or STATE_DIR_NAME
    return project_dir / name


def load_config(project_dir: Path) -> tuple[dict[str, Any], str | None]:
    """Load the optional config file.

    Args:
        project_dir: Project root directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns `({}, None)`.
    """
    path = state_dir_for(project_dir.resolve()) / CONFIG_FILE
    if not path.exists():
        return {}, None
    data, err = _load_data_with_error(path, {})
    if err:
        return {}, err
    return data, None


def get_log_level(config: dict[str, Any]) -> str:
    """Extract the loguru level name, falling back to INFO when unset or unknown."""
    raw = config.get("log_level")
    if isinstance(raw, str) and raw.upper() in VALID_LOG_LEVELS:
        return raw.upper()
    return DEFAULT_LOG_LEVEL


def get_default_priority(config: dict[str, Any]) -> int:
    """Extract the priority given to tasks created without one."""
    raw = config.get("default_priority")
    if isinstance(raw, int) and not isinstance(raw, bool):
        return raw
    return DEFAULT_PRIORITY


def get_events_enabled(config: dict[str, Any]) -> bool:
    raw = config.get("events")
    return raw if isinstance(raw, bool) else True
