"""Work session orchestration.

``WorkSessionOrchestrator.start`` provisions a session in strict order:
prerequisites, branch resolution, environment config check, worktree,
port, environment. Every step from the worktree onward registers a
compensation; a failure or cancellation runs the registered compensations in
reverse before the error is returned, so a failed start leaves nothing behind.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from . import branching, config, devcontainer, log, paths, ports
from .cancellation import CancellationToken
from .devcontainer import DevcontainerManager
from .errors import DevcontainerError, WorkSessionError, WorktreeError
from .exec import CommandRunner, ToolPaths
from .models import AntlerConfig, Card, WorkSessionInfo
from .prerequisites import check_prerequisites
from .result import Failure, Result, failure, success
from .worktrees import WorktreeManager

LOG_CATEGORY = "session"


class SessionStage(str, Enum):
    IDLE = "idle"
    CHECKING_PREREQUISITES = "checking_prerequisites"
    RESOLVING_BRANCH = "resolving_branch"
    CHECKING_ENV_CONFIG = "checking_env_config"
    CREATING_WORKSPACE = "creating_workspace"
    ALLOCATING_PORT = "allocating_port"
    STARTING_ENVIRONMENT = "starting_environment"
    DONE = "done"
    CANCELLED = "cancelled"
    FAILED = "failed"


StageListener = Callable[[Card, SessionStage], None]
Compensation = Callable[[], Awaitable[Result[object, object]]]


def branch_name_for_card(card: Card) -> str | None:
    """Return the branch a card's session lives on.

    A linked pull request's branch wins; otherwise the name is derived from
    the issue number and title.

    Example:
        >>> from antler.models import GitHubInfo
        >>> branch_name_for_card(Card(github=GitHubInfo(title="Fix it", issue_number=3)))
        '3-fix-it'
        >>> branch_name_for_card(Card()) is None
        True
    """
    if card.pr_branch_name:
        return card.pr_branch_name
    if card.issue_number is not None:
        return branching.branch_name_for(card.issue_number, card.github.title)
    return None


@dataclass
class CompensationLog:
    """Ordered compensations for the steps completed so far."""

    steps: list[tuple[str, Compensation]] = field(default_factory=list)

    def add(self, label: str, compensation: Compensation) -> None:
        self.steps.append((label, compensation))

    async def rollback(self) -> None:
        """Run compensations newest first; failures are logged and skipped."""
        while self.steps:
            label, compensation = self.steps.pop()
            log.info("Rolling back", category=LOG_CATEGORY, step=label)
            outcome = await compensation()
            if not outcome.ok:
                log.error(
                    "Rollback step failed",
                    category=LOG_CATEGORY,
                    step=label,
                    error=getattr(outcome.error, "message", outcome.error),
                )


_CANCELLED = WorkSessionError("cancelled", "Operation cancelled")


def _from_worktree_error(error: WorktreeError) -> WorkSessionError:
    if error.code == "cancelled":
        return _CANCELLED
    if error.code == "git_not_installed":
        return WorkSessionError("prerequisite_failed", error.message, error.details)
    return WorkSessionError("worktree_failed", error.message, error.details)


def _from_devcontainer_error(error: DevcontainerError) -> WorkSessionError:
    if error.code == "cancelled":
        return _CANCELLED
    return WorkSessionError("environment_failed", error.message, error.details)


class WorkSessionOrchestrator:
    """Sequence worktree and environment operations behind start/stop."""

    def __init__(
        self,
        *,
        worktrees: WorktreeManager | None = None,
        devcontainers: DevcontainerManager | None = None,
        tools: ToolPaths | None = None,
        runner: CommandRunner | None = None,
        on_stage: StageListener | None = None,
    ) -> None:
        self.tools = tools or ToolPaths()
        self.runner = runner
        self.worktrees = worktrees or WorktreeManager(tools=self.tools, runner=runner)
        self.devcontainers = devcontainers or DevcontainerManager(
            tools=self.tools, runner=runner
        )
        self.on_stage = on_stage

    def _enter(self, card: Card, stage: SessionStage) -> None:
        log.debug(
            "Session stage", category=LOG_CATEGORY, card=card.session_uid, stage=stage.value
        )
        if self.on_stage is not None:
            self.on_stage(card, stage)

    async def _abort(
        self, card: Card, saga: CompensationLog, error: WorkSessionError
    ) -> Failure[WorkSessionError]:
        await saga.rollback()
        if error.code == "cancelled":
            self._enter(card, SessionStage.CANCELLED)
            log.info("Session start cancelled", category=LOG_CATEGORY, card=card.session_uid)
        else:
            self._enter(card, SessionStage.FAILED)
            log.error(
                "Session start failed",
                category=LOG_CATEGORY,
                card=card.session_uid,
                code=error.code,
                error=error.describe(),
            )
        return failure(error)

    async def start(
        self,
        repo_root: Path,
        card: Card,
        cancellation: CancellationToken | None = None,
    ) -> Result[WorkSessionInfo, WorkSessionError]:
        """Provision a worktree and environment for ``card``.

        Cancellation is checked between steps. Once a worktree exists, any
        failure or cancellation removes it again before returning.
        """
        token = cancellation or CancellationToken()
        saga = CompensationLog()
        log.info("Starting work session", category=LOG_CATEGORY, card=card.session_uid)

        self._enter(card, SessionStage.CHECKING_PREREQUISITES)
        prereq = await check_prerequisites(tools=self.tools, runner=self.runner)
        if not prereq.ok:
            return await self._abort(card, saga, prereq.error)
        if token.cancelled:
            return await self._abort(card, saga, _CANCELLED)

        self._enter(card, SessionStage.RESOLVING_BRANCH)
        branch_name = branch_name_for_card(card)
        if branch_name is None:
            return await self._abort(
                card,
                saga,
                WorkSessionError(
                    "worktree_failed",
                    "Cannot start a session without a linked issue or pull request",
                ),
            )

        self._enter(card, SessionStage.CHECKING_ENV_CONFIG)
        if not devcontainer.has_config(repo_root):
            return await self._abort(
                card,
                saga,
                WorkSessionError(
                    "environment_failed",
                    "No devcontainer config found",
                    f"Looked for {', '.join(devcontainer.CONFIG_CANDIDATES)}",
                ),
            )
        if token.cancelled:
            return await self._abort(card, saga, _CANCELLED)

        self._enter(card, SessionStage.CREATING_WORKSPACE)
        created = await self.worktrees.create(repo_root, branch_name, token)
        if not created.ok:
            target = paths.worktree_path(repo_root, branch_name)
            if created.error.code == "cancelled" and target.exists():
                saga.add(
                    "remove partial worktree",
                    lambda: self.worktrees.remove(repo_root, branch_name),
                )
            return await self._abort(card, saga, _from_worktree_error(created.error))
        worktree = created.value
        saga.add(
            "remove worktree",
            lambda: self.worktrees.remove(repo_root, branch_name),
        )
        if token.cancelled:
            return await self._abort(card, saga, _CANCELLED)

        self._enter(card, SessionStage.ALLOCATING_PORT)
        allocated = await self.devcontainers.allocate_port(token)
        if not allocated.ok:
            return await self._abort(
                card, saga, _from_devcontainer_error(allocated.error)
            )
        port = allocated.value
        if token.cancelled:
            return await self._abort(card, saga, _CANCELLED)
        ports.write_port_file(worktree.path, port)

        self._enter(card, SessionStage.STARTING_ENVIRONMENT)
        started = await self.devcontainers.start(worktree.path, port, token)
        if not started.ok:
            return await self._abort(card, saga, _from_devcontainer_error(started.error))
        saga.add(
            "stop environment",
            lambda: self.devcontainers.stop(worktree.path),
        )
        if token.cancelled:
            return await self._abort(card, saga, _CANCELLED)

        self._enter(card, SessionStage.DONE)
        log.success(
            "Work session started",
            category=LOG_CATEGORY,
            branch=branch_name,
            path=worktree.path,
            port=port,
        )
        return success(
            WorkSessionInfo(
                branch_name=branch_name, worktree_path=str(worktree.path), port=port
            )
        )

    async def stop(
        self, repo_root: Path, card: Card
    ) -> Result[None, WorkSessionError]:
        """Tear down the session for ``card``.

        Stopping the environment is best-effort; only a failed worktree
        removal is reported.
        """
        branch_name = branch_name_for_card(card)
        if branch_name is None:
            log.debug(
                "Nothing to stop; card has no branch",
                category=LOG_CATEGORY,
                card=card.session_uid,
            )
            return success(None)

        workspace = (
            Path(card.worktree_path)
            if card.worktree_path
            else paths.worktree_path(repo_root, branch_name)
        )
        log.info("Stopping work session", category=LOG_CATEGORY, branch=branch_name)

        stopped = await self.devcontainers.stop(workspace)
        if not stopped.ok:
            log.warning(
                "Environment stop failed; removing worktree anyway",
                category=LOG_CATEGORY,
                error=stopped.error.message,
            )

        removed = await self.worktrees.remove(repo_root, branch_name)
        if not removed.ok:
            return failure(
                WorkSessionError(
                    "worktree_failed", removed.error.message, removed.error.details
                )
            )

        log.success("Work session stopped", category=LOG_CATEGORY, branch=branch_name)
        return success(None)


def build_orchestrator(
    settings: AntlerConfig,
    *,
    runner: CommandRunner | None = None,
    on_stage: StageListener | None = None,
) -> WorkSessionOrchestrator:
    """Wire an orchestrator from user settings."""
    tools = config.tool_paths(settings)
    timeout = settings.commands.timeout_seconds
    section = settings.devcontainer
    return WorkSessionOrchestrator(
        worktrees=WorktreeManager(tools=tools, runner=runner, timeout_seconds=timeout),
        devcontainers=DevcontainerManager(
            tools=tools,
            runner=runner,
            port_range=ports.PortRange(section.port_range_start, section.port_range_end),
            timeout_seconds=timeout,
            start_timeout_seconds=section.start_timeout_seconds,
            retry=config.retry_policy(settings),
        ),
        tools=tools,
        runner=runner,
        on_stage=on_stage,
    )
