"""Container environment management for session worktrees.

The environment is declared by a devcontainer config in the repository and
started with the ``devcontainer`` CLI, bound to a port allocated from a fixed
range. Teardown stops every container labelled with the worktree path.
"""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass
from pathlib import Path

from . import exec as exec_util
from . import log
from .cancellation import CancellationToken
from .errors import CommandError, DevcontainerError, DevcontainerErrorCode
from .exec import CommandRunner, RetryPolicy, ToolPaths
from .ports import PortRange, first_available_port, parse_bound_ports
from .result import Result, failure, success

LOG_CATEGORY = "devcontainer"

CONFIG_CANDIDATES = ("devcontainer.json", ".devcontainer/devcontainer.json")
WORKSPACE_LABEL = "devcontainer.local_folder"
DEFAULT_START_TIMEOUT_SECONDS = 300.0


def find_config(root: Path) -> Path | None:
    """Return the first devcontainer config under ``root``, if any."""
    for candidate in CONFIG_CANDIDATES:
        path = root / candidate
        if path.is_file():
            return path
    return None


def has_config(root: Path) -> bool:
    return find_config(root) is not None


def parse_container_id(stdout: str) -> str | None:
    """Pull ``containerId`` out of ``devcontainer up`` JSON output.

    The CLI may print progress lines before the JSON object, so each line is
    tried from the end.

    Example:
        >>> parse_container_id('progress\\n{"outcome":"success","containerId":"abc"}')
        'abc'
        >>> parse_container_id("not json") is None
        True
    """
    for line in reversed(stdout.strip().splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            container_id = payload.get("containerId")
            if isinstance(container_id, str) and container_id:
                return container_id
    return None


@dataclass(frozen=True)
class StartedEnvironment:
    """Outcome of a successful environment start."""

    port: int
    container_id: str | None = None


def _command_error_to_devcontainer(
    error: CommandError,
    *,
    code: DevcontainerErrorCode,
    message: str,
    tool: str = "devcontainer CLI",
) -> DevcontainerError:
    if error.type == "cancelled":
        return DevcontainerError("cancelled", "Operation cancelled")
    if error.type == "not_installed":
        hint = None
        if tool == "devcontainer CLI":
            hint = "Install with: npm install -g @devcontainers/cli"
        return DevcontainerError("not_installed", f"{tool} is not installed", hint)
    details = error.details or error.message
    if error.type == "timeout":
        details = f"timed out: {details}"
    return DevcontainerError(code, message, details)


class DevcontainerManager:
    """Discover, start and stop container environments for worktrees."""

    def __init__(
        self,
        *,
        tools: ToolPaths | None = None,
        runner: CommandRunner | None = None,
        port_range: PortRange | None = None,
        timeout_seconds: float = exec_util.DEFAULT_TIMEOUT_SECONDS,
        start_timeout_seconds: float = DEFAULT_START_TIMEOUT_SECONDS,
        retry: RetryPolicy = exec_util.NO_RETRY,
    ) -> None:
        self.tools = tools or ToolPaths()
        self.runner = runner
        self.port_range = port_range or PortRange()
        self.timeout_seconds = timeout_seconds
        self.start_timeout_seconds = start_timeout_seconds
        self.retry = retry

    async def _docker(
        self,
        args: list[str],
        *,
        cancellation: CancellationToken | None = None,
    ) -> Result[exec_util.CommandResult, CommandError]:
        return await exec_util.run_docker(
            args,
            tools=self.tools,
            timeout_seconds=self.timeout_seconds,
            cancellation=cancellation,
            retry=self.retry,
            runner=self.runner,
        )

    async def used_ports(
        self, cancellation: CancellationToken | None = None
    ) -> set[int]:
        """Return host ports currently bound by running containers.

        A failing ``docker ps`` is treated as "nothing bound"; the start step
        reports a real daemon problem.
        """
        result = await self._docker(
            ["ps", "--format", "{{.Ports}}"], cancellation=cancellation
        )
        if not result.ok:
            log.warning(
                "Could not list container ports",
                category=LOG_CATEGORY,
                error=result.error.message,
            )
            return set()
        return parse_bound_ports(result.value.stdout)

    async def allocate_port(
        self, cancellation: CancellationToken | None = None
    ) -> Result[int, DevcontainerError]:
        used = await self.used_ports(cancellation)
        if cancellation is not None and cancellation.cancelled:
            return failure(DevcontainerError("cancelled", "Operation cancelled"))
        result = first_available_port(used, self.port_range)
        if result.ok:
            log.debug("Allocated port", category=LOG_CATEGORY, port=result.value)
        else:
            log.error(
                result.error.message,
                category=LOG_CATEGORY,
                range=self.port_range.describe(),
                used=len(used),
            )
        return result

    async def start(
        self,
        workspace: Path,
        port: int,
        cancellation: CancellationToken | None = None,
    ) -> Result[StartedEnvironment, DevcontainerError]:
        """Bring up the environment for ``workspace`` bound to ``port``.

        The caller must have confirmed that a config exists. No cleanup
        happens here on failure; the caller rolls back.
        """
        if cancellation is not None and cancellation.cancelled:
            return failure(DevcontainerError("cancelled", "Operation cancelled"))

        log.info(
            "Starting container environment",
            category=LOG_CATEGORY,
            workspace=workspace,
            port=port,
        )
        env = {**os.environ, "PORT": str(port)}
        result = await exec_util.run_devcontainer(
            [
                "up",
                "--workspace-folder",
                str(workspace),
                "--remote-env",
                f"PORT={port}",
            ],
            tools=self.tools,
            env=env,
            timeout_seconds=self.start_timeout_seconds,
            cancellation=cancellation,
            runner=self.runner,
        )
        if not result.ok:
            return failure(
                _command_error_to_devcontainer(
                    result.error,
                    code="start_failed",
                    message="Failed to start container environment",
                )
            )

        container_id = parse_container_id(result.value.stdout)
        log.success(
            "Container environment started",
            category=LOG_CATEGORY,
            port=port,
            container=container_id,
        )
        return success(StartedEnvironment(port=port, container_id=container_id))

    async def stop(self, workspace: Path) -> Result[int, DevcontainerError]:
        """Stop every container labelled with ``workspace``.

        Stops run in parallel. The result is an error only when every stop
        fails; partial failure is logged and reported as success. Returns the
        number of containers stopped.
        """
        listed = await self._docker(
            ["ps", "-q", "--filter", f"label={WORKSPACE_LABEL}={workspace}"]
        )
        if not listed.ok:
            return failure(
                _command_error_to_devcontainer(
                    listed.error,
                    code="stop_failed",
                    message="Failed to list containers",
                    tool="Docker",
                )
            )

        container_ids = [
            line.strip() for line in listed.value.stdout.splitlines() if line.strip()
        ]
        if not container_ids:
            log.debug("No containers to stop", category=LOG_CATEGORY, workspace=workspace)
            return success(0)

        outcomes = await asyncio.gather(
            *(self._docker(["stop", container_id]) for container_id in container_ids)
        )
        failed = [
            (container_id, outcome.error)
            for container_id, outcome in zip(container_ids, outcomes)
            if not outcome.ok
        ]
        stopped = len(container_ids) - len(failed)

        if stopped == 0:
            details = "; ".join(
                f"{container_id}: {error.details or error.message}"
                for container_id, error in failed
            )
            return failure(
                DevcontainerError("stop_failed", "Failed to stop containers", details)
            )
        if failed:
            log.warning(
                "Some containers failed to stop",
                category=LOG_CATEGORY,
                stopped=stopped,
                failed=len(failed),
            )
        log.info("Containers stopped", category=LOG_CATEGORY, count=stopped)
        return success(stopped)

    async def check_cli(self) -> Result[str, DevcontainerError]:
        """Return the devcontainer CLI version."""
        result = await exec_util.run_devcontainer(
            ["--version"], tools=self.tools, runner=self.runner
        )
        if not result.ok:
            return failure(
                _command_error_to_devcontainer(
                    result.error,
                    code="not_installed",
                    message="devcontainer CLI is not available",
                )
            )
        return success(result.value.stdout.strip())

    async def check_docker_running(self) -> Result[None, DevcontainerError]:
        """Confirm the container daemon answers ``docker info``."""
        result = await self._docker(["info", "--format", "{{.ServerVersion}}"])
        if result.ok:
            return success(None)
        if result.error.type == "not_installed":
            return failure(
                DevcontainerError(
                    "not_installed",
                    "Docker is not installed",
                    "Install Docker Desktop or Docker Engine",
                )
            )
        return failure(
            DevcontainerError(
                "docker_not_running",
                "Docker is not running",
                result.error.details or result.error.message,
            )
        )
