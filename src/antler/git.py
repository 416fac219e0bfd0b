"""Git helper functions used by the Antler workspace manager."""

from __future__ import annotations

from pathlib import Path

from . import exec as exec_util
from .cancellation import CancellationToken
from .errors import CommandError
from .exec import CommandResult, CommandRunner, ToolPaths
from .result import Result


async def git_version(
    *, tools: ToolPaths | None = None, runner: CommandRunner | None = None
) -> Result[CommandResult, CommandError]:
    """Return the ``git --version`` command outcome."""
    return await exec_util.run_git(["--version"], tools=tools, runner=runner)


async def git_branch_exists(
    repo_root: Path,
    branch: str,
    *,
    tools: ToolPaths | None = None,
    runner: CommandRunner | None = None,
    cancellation: CancellationToken | None = None,
) -> bool:
    """Return True when ``branch`` resolves to a local ref."""
    result = await exec_util.run_git(
        ["-C", str(repo_root), "rev-parse", "--verify", "--quiet", branch],
        tools=tools,
        runner=runner,
        cancellation=cancellation,
        expect_failure=True,
    )
    return result.ok


async def git_remote_branch_exists(
    repo_root: Path,
    branch: str,
    *,
    tools: ToolPaths | None = None,
    runner: CommandRunner | None = None,
    cancellation: CancellationToken | None = None,
) -> bool:
    """Return True when ``origin`` advertises ``branch``.

    Network failures are retried and then treated as "not on the remote".
    """
    result = await exec_util.run_git(
        ["-C", str(repo_root), "ls-remote", "--heads", "origin", branch],
        tools=tools,
        runner=runner,
        cancellation=cancellation,
        retry=exec_util.RetryPolicy(max_retries=2),
        expect_failure=True,
    )
    if not result.ok:
        return False
    return bool(result.value.stdout.strip())
