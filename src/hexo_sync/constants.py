import os
from pathlib import Path

"""Global constants and path definitions for Hexo Sync.

This module defines the filesystem layout (adhering to XDG standards where applicable),
application identifiers, and the default file selection rules used across the
application.
"""

# --- Identity ---
APP_NAME = "hexo-sync"
"""str: The human-readable application name."""

LOCAL_CONFIG_NAME = "hexo-sync.toml"
"""str: The per-repository configuration file name."""

PYPROJECT_SECTION = "tool.hexo-sync"
"""str: The pyproject.toml section consulted when no local config file exists."""

# --- Paths ---
_XDG_STATE = os.environ.get("XDG_STATE_HOME")
_BASE_STATE = Path(_XDG_STATE) if _XDG_STATE else Path.home() / ".local/state"

STATE_DIR = _BASE_STATE / "hexo-sync"
"""Path: The directory for runtime state data (logs)."""

LOG_FILE = STATE_DIR / "daemon.log"
"""Path: The file path for the daemon process logs."""

# --- Configuration Paths ---
CONFIG_DIR: Path = Path.home() / ".config/hexo-sync"
"""Path: The directory for user configuration files."""

CONFIG_FILE: Path = CONFIG_DIR / "config.toml"
"""Path: The main configuration file path."""

# --- File Selection ---
DEFAULT_EXTENSIONS = [".md", ".markdown"]
"""list[str]: File suffixes treated as content files."""

DEFAULT_WATCH_PATHS = ["source/_posts"]
"""list[str]: Repository-relative directories watched for changes."""

IGNORED_DIRS = [".git", "node_modules", ".obsidian", "__pycache__"]
"""list[str]: Directory names never descended into while scanning."""

# --- Git / Logic Constants ---
GIT_LOCK_FILES = [
    "MERGE_HEAD",
    "REBASE_HEAD",
    "CHERRY_PICK_HEAD",
    "BISECT_LOG",
    "rebase-merge",
    "rebase-apply",
    "index.lock",
]
"""
list[str]: Git internal files indicating an
active state (merge/rebase/lock) that blocks commits.
"""

COMMIT_FILE_LIST_LIMIT = 5
"""int: Number of file names spelled out in a generated commit message."""
