"""Configuration utilities for the consentsync CLI.

This module provides shared configuration functions used across CLI commands.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

ENV_HOME = "CONSENTSYNC_HOME"


def get_config_dir(override: Path | str | None = None) -> Path:
    """Get the configuration directory for consentsync.

    Args:
        override: Explicit directory (``--data-dir``).

    Returns:
        The override, ``$CONSENTSYNC_HOME``, or ~/.consentsync.
    """
    if override:
        return Path(override).expanduser()
    if os.environ.get(ENV_HOME):
        return Path(os.environ[ENV_HOME]).expanduser()
    return Path.home() / ".consentsync"


def get_config_file(config_dir: Path | None = None) -> Path:
    """Get the path to the config file."""
    return (config_dir or get_config_dir()) / "config.json"


def get_state_db(config_dir: Path | None = None) -> Path:
    """Get the path to the local state database (cache and flags)."""
    return (config_dir or get_config_dir()) / "state.db"


def load_config(config_dir: Path | None = None) -> dict[str, str]:
    """Load configuration from config file."""
    config_file = get_config_file(config_dir)
    if config_file.exists():
        return dict(json.loads(config_file.read_text()))
    return {}


def save_config(config: dict[str, str], config_dir: Path | None = None) -> None:
    """Save configuration to config file."""
    config_file = get_config_file(config_dir)
    config_file.parent.mkdir(parents=True, exist_ok=True)
    config_file.write_text(json.dumps(config, indent=2))
