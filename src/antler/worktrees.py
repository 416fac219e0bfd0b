"""Git worktree management for work sessions.

Each session gets its own worktree under ``<repo>/.worktrees/<branch>``.
Creation is idempotent: a worktree git already knows about is reused, and a
stale directory git does not know about is deleted first.
"""

from __future__ import annotations

import asyncio
import shutil
from pathlib import Path

from . import exec as exec_util
from . import git, log, paths
from .cancellation import CancellationToken
from .errors import CommandError, WorktreeError, WorktreeErrorCode
from .exec import CommandRunner, ToolPaths
from .models import WorktreeInfo
from .result import Result, failure, success

LOG_CATEGORY = "worktree"

_BRANCH_PREFIX = "refs/heads/"


def parse_worktree_porcelain(raw: str) -> list[WorktreeInfo]:
    """Parse ``git worktree list --porcelain`` output.

    Records are separated by blank lines; records without a branch
    (detached HEAD, bare) are skipped.

    Example:
        >>> raw = "worktree /repo\\nHEAD abc\\nbranch refs/heads/main\\n\\n"
        >>> [(str(w.path), w.branch_name) for w in parse_worktree_porcelain(raw)]
        [('/repo', 'main')]
    """
    worktrees: list[WorktreeInfo] = []
    current_path: str | None = None
    current_branch: str | None = None

    def flush() -> None:
        if current_path and current_branch:
            worktrees.append(
                WorktreeInfo(path=Path(current_path), branch_name=current_branch)
            )

    for line in raw.splitlines():
        if not line.strip():
            flush()
            current_path = None
            current_branch = None
            continue
        if line.startswith("worktree "):
            current_path = line[len("worktree ") :]
        elif line.startswith("branch "):
            ref = line[len("branch ") :].strip()
            if ref.startswith(_BRANCH_PREFIX):
                current_branch = ref[len(_BRANCH_PREFIX) :]
    flush()
    return worktrees


def _same_path(left: Path, right: Path) -> bool:
    return left.resolve(strict=False) == right.resolve(strict=False)


def classify_git_error(
    error: CommandError, *, fallback: WorktreeErrorCode = "worktree_create_failed"
) -> WorktreeError:
    """Convert a git command failure into a worktree domain error."""
    details = error.details or error.message
    lowered = details.lower()
    if error.type == "not_installed":
        return WorktreeError(
            "git_not_installed",
            "Git is not installed",
            "Install git from https://git-scm.com",
        )
    if error.type == "cancelled":
        return WorktreeError("cancelled", "Operation cancelled")
    if "already checked out" in lowered or "is already used" in lowered:
        return WorktreeError(
            "branch_checked_out",
            "Branch is already checked out in another worktree",
            details,
        )
    if "already exists" in lowered:
        return WorktreeError(
            "worktree_exists", "Worktree already exists at this location", details
        )
    if error.type == "timeout":
        return WorktreeError(fallback, "Git command timed out", details)
    return WorktreeError(fallback, error.message, details)


class WorktreeManager:
    """Create, remove and list session worktrees for a repository."""

    def __init__(
        self,
        *,
        tools: ToolPaths | None = None,
        runner: CommandRunner | None = None,
        timeout_seconds: float = exec_util.DEFAULT_TIMEOUT_SECONDS,
    ) -> None:
        self.tools = tools or ToolPaths()
        self.runner = runner
        self.timeout_seconds = timeout_seconds

    async def _git(
        self,
        repo_root: Path,
        args: list[str],
        *,
        cancellation: CancellationToken | None = None,
    ) -> Result[exec_util.CommandResult, CommandError]:
        return await exec_util.run_git(
            ["-C", str(repo_root), *args],
            tools=self.tools,
            timeout_seconds=self.timeout_seconds,
            cancellation=cancellation,
            runner=self.runner,
        )

    async def list_worktrees(
        self, repo_root: Path
    ) -> Result[list[WorktreeInfo], WorktreeError]:
        """List every worktree git knows about for ``repo_root``."""
        result = await self._git(repo_root, ["worktree", "list", "--porcelain"])
        if not result.ok:
            return failure(classify_git_error(result.error))
        return success(parse_worktree_porcelain(result.value.stdout))

    async def list_session_worktrees(
        self, repo_root: Path
    ) -> Result[list[WorktreeInfo], WorktreeError]:
        """List only worktrees that live under ``.worktrees/``."""
        result = await self.list_worktrees(repo_root)
        if not result.ok:
            return result
        return success(
            [item for item in result.value if paths.is_session_worktree(item.path)]
        )

    async def exists(self, repo_root: Path, branch_name: str) -> bool:
        target = paths.worktree_path(repo_root, branch_name)
        result = await self.list_worktrees(repo_root)
        if not result.ok:
            return False
        return any(_same_path(item.path, target) for item in result.value)

    async def create(
        self,
        repo_root: Path,
        branch_name: str,
        cancellation: CancellationToken | None = None,
    ) -> Result[WorktreeInfo, WorktreeError]:
        """Create (or reuse) the worktree for ``branch_name``.

        Args:
            repo_root: Main checkout of the repository.
            branch_name: Session branch; created from HEAD when it exists
                neither locally nor on ``origin``.
            cancellation: Token checked before any git call and forwarded to
                each command.

        Returns:
            ``Success`` with the worktree info, or a ``WorktreeError``.
        """
        target = paths.worktree_path(repo_root, branch_name)
        log.info("Creating worktree", category=LOG_CATEGORY, branch=branch_name, path=target)

        if cancellation is not None and cancellation.cancelled:
            return failure(WorktreeError("cancelled", "Operation cancelled"))

        listed = await self.list_worktrees(repo_root)
        if not listed.ok:
            return failure(listed.error)
        if any(_same_path(item.path, target) for item in listed.value):
            log.info("Reusing existing worktree", category=LOG_CATEGORY, path=target)
            return success(WorktreeInfo(path=target, branch_name=branch_name))

        if target.exists():
            log.warning(
                "Removing orphaned worktree directory", category=LOG_CATEGORY, path=target
            )
            try:
                await asyncio.to_thread(shutil.rmtree, target)
            except OSError as exc:
                return failure(
                    WorktreeError(
                        "worktree_create_failed",
                        "Failed to remove orphaned worktree directory",
                        str(exc),
                    )
                )

        local = await git.git_branch_exists(
            repo_root,
            branch_name,
            tools=self.tools,
            runner=self.runner,
            cancellation=cancellation,
        )
        remote = False
        if not local:
            remote = await git.git_remote_branch_exists(
                repo_root,
                branch_name,
                tools=self.tools,
                runner=self.runner,
                cancellation=cancellation,
            )
        if cancellation is not None and cancellation.cancelled:
            return failure(WorktreeError("cancelled", "Operation cancelled"))

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            return failure(
                WorktreeError(
                    "worktree_create_failed",
                    "Failed to create worktrees directory",
                    str(exc),
                )
            )
        if local or remote:
            log.debug(
                "Using existing branch",
                category=LOG_CATEGORY,
                branch=branch_name,
                local=local,
                remote=remote,
            )
            args = ["worktree", "add", str(target), branch_name]
        else:
            log.debug("Creating new branch", category=LOG_CATEGORY, branch=branch_name)
            args = ["worktree", "add", "-b", branch_name, str(target)]

        result = await self._git(repo_root, args, cancellation=cancellation)
        if not result.ok:
            return failure(classify_git_error(result.error))

        log.info("Worktree created", category=LOG_CATEGORY, branch=branch_name, path=target)
        return success(WorktreeInfo(path=target, branch_name=branch_name))

    async def remove(
        self, repo_root: Path, branch_name: str
    ) -> Result[None, WorktreeError]:
        """Force-remove the worktree for ``branch_name`` and prune metadata."""
        target = paths.worktree_path(repo_root, branch_name)
        log.info("Removing worktree", category=LOG_CATEGORY, branch=branch_name, path=target)

        result = await self._git(repo_root, ["worktree", "remove", str(target), "--force"])
        if not result.ok:
            error = result.error
            log.error(
                "Failed to remove worktree",
                category=LOG_CATEGORY,
                branch=branch_name,
                error=error.message,
            )
            return failure(
                WorktreeError(
                    "worktree_remove_failed",
                    "Failed to remove worktree",
                    error.details or error.message,
                )
            )

        pruned = await self._git(repo_root, ["worktree", "prune"])
        if not pruned.ok:
            log.debug(
                "Worktree prune failed",
                category=LOG_CATEGORY,
                error=pruned.error.message,
            )

        log.info("Worktree removed", category=LOG_CATEGORY, branch=branch_name)
        return success(None)
