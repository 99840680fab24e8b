"""Canonical filesystem paths for sqlblocks configuration and scratch files."""

from __future__ import annotations

import os
from pathlib import Path

SQLBLOCKS_CONFIG_DIR = Path.home() / ".config" / "sqlblocks"

_env_config = os.environ.get("SQLBLOCKS_CONFIG")
DEFAULT_CONFIG_PATH = (
    Path(_env_config).expanduser() if _env_config else SQLBLOCKS_CONFIG_DIR / "config.toml"
)
