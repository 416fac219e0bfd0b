"""Path helpers for locating Antler data directories and workspace files."""

import os
from pathlib import Path

from platformdirs import user_data_dir

ANTLER_APP_NAME = "antler"
CONFIG_FILENAME = "config.json"
CARD_STATUS_FILENAME = "card-status.json"
WORKTREES_DIRNAME = ".worktrees"
PORT_FILENAME = ".port"
CONFIG_ENV_VAR = "ANTLER_CONFIG"


def antler_data_dir() -> Path:
    """Return the base Antler data directory.

    Returns:
        Path to the user data directory for Antler.

    Example:
        >>> isinstance(antler_data_dir(), Path)
        True
    """
    return Path(user_data_dir(ANTLER_APP_NAME))


def config_path() -> Path:
    """Return the settings file path, honoring ``ANTLER_CONFIG``.

    Example:
        >>> config_path().name.endswith(".json")
        True
    """
    override = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if override:
        return Path(override).expanduser()
    return antler_data_dir() / CONFIG_FILENAME


def card_status_path() -> Path:
    """Return the path of the persisted card-status map."""
    return antler_data_dir() / CARD_STATUS_FILENAME


def worktrees_root(repo_root: Path) -> Path:
    """Return the directory that holds session worktrees for a repository.

    Example:
        >>> worktrees_root(Path("/repo")).as_posix()
        '/repo/.worktrees'
    """
    return repo_root / WORKTREES_DIRNAME


def worktree_path(repo_root: Path, branch_name: str) -> Path:
    """Return the worktree directory for a branch.

    Example:
        >>> worktree_path(Path("/repo"), "42-fix-login-bug").as_posix()
        '/repo/.worktrees/42-fix-login-bug'
    """
    return worktrees_root(repo_root) / branch_name


def port_file_path(worktree: Path) -> Path:
    """Return the port file path inside a worktree."""
    return worktree / PORT_FILENAME


def is_session_worktree(path: Path) -> bool:
    """Return True when a worktree path lives under a ``.worktrees`` directory.

    Example:
        >>> is_session_worktree(Path("/repo/.worktrees/7-issue"))
        True
        >>> is_session_worktree(Path("/repo"))
        False
    """
    return WORKTREES_DIRNAME in path.parts
