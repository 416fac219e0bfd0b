"""Checks for the external tools a work session depends on."""

from __future__ import annotations

from . import git, log
from .errors import WorkSessionError
from .exec import CommandRunner, ToolPaths
from .result import Result, failure, success


async def check_prerequisites(
    *, tools: ToolPaths | None = None, runner: CommandRunner | None = None
) -> Result[str, WorkSessionError]:
    """Confirm git is installed; return its version line."""
    result = await git.git_version(tools=tools, runner=runner)
    if not result.ok:
        error = result.error
        if error.type == "not_installed":
            return failure(
                WorkSessionError(
                    "prerequisite_failed",
                    "Git is not installed",
                    "Install git from https://git-scm.com",
                )
            )
        return failure(
            WorkSessionError(
                "prerequisite_failed",
                "Git check failed",
                error.details or error.message,
            )
        )
    version = result.value.stdout.strip()
    log.debug("Prerequisites satisfied", category="session", git=version)
    return success(version)
