"""Error contracts for Antler components.

Each component reports expected failures as a frozen error value carrying a
stable code, a human-readable message and optional details. Callers inspect
the code instead of catching exceptions; programmer bugs still raise.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from .exec import CommandResult

CommandErrorType = Literal[
    "command_failed",
    "timeout",
    "cancelled",
    "not_installed",
    "network_error",
    "unknown",
]

WorktreeErrorCode = Literal[
    "git_not_installed",
    "branch_checked_out",
    "worktree_exists",
    "worktree_create_failed",
    "worktree_remove_failed",
    "cancelled",
]

DevcontainerErrorCode = Literal[
    "no_config",
    "no_available_ports",
    "start_failed",
    "stop_failed",
    "not_installed",
    "docker_not_running",
    "cancelled",
]

WorkSessionErrorCode = Literal[
    "prerequisite_failed",
    "worktree_failed",
    "environment_failed",
    "cancelled",
]


@dataclass(frozen=True)
class CommandError:
    """Failure of a single external command invocation."""

    type: CommandErrorType
    message: str
    details: str | None = None
    result: CommandResult | None = None


@dataclass(frozen=True)
class WorktreeError:
    """Failure of a git worktree operation."""

    code: WorktreeErrorCode
    message: str
    details: str | None = None


@dataclass(frozen=True)
class DevcontainerError:
    """Failure of a container environment operation."""

    code: DevcontainerErrorCode
    message: str
    details: str | None = None


@dataclass(frozen=True)
class WorkSessionError:
    """Failure of a work session start or stop, wrapping component errors."""

    code: WorkSessionErrorCode
    message: str
    details: str | None = None

    def describe(self) -> str:
        """Return the message with details appended when present.

        Example:
            >>> WorkSessionError("worktree_failed", "boom", "disk full").describe()
            'boom: disk full'
        """
        if self.details:
            return f"{self.message}: {self.details}"
        return self.message


class ConfigError(Exception):
    """Raised when the settings file cannot be parsed or validated."""

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(f"invalid config {path}: {detail}")
        self.path = path
        self.detail = detail
