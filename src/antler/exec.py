"""Async subprocess helpers for running external commands.

Every invocation goes through a ``CommandRunner`` so tests can inject a fake.
``execute`` layers retry with jittered exponential backoff and cooperative
cancellation on top of a single-attempt runner, and always reports one typed
outcome per call.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from . import log
from .cancellation import CancellationToken
from .errors import CommandError, CommandErrorType
from .result import Result, failure, success

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_RETRY_BASE_DELAY_SECONDS = 1.0
DEFAULT_RETRY_MAX_DELAY_SECONDS = 10.0
JITTER_RATIO = 0.25

_NETWORK_PATTERNS = (
    "network",
    "connect",
    "timed out",
    "temporary failure",
    "could not resolve",
)
_NOT_INSTALLED_PATTERNS = ("enoent", "command not found", "executable file not found")


@dataclass(frozen=True)
class CommandRequest:
    """Typed command invocation request."""

    argv: tuple[str, ...]
    cwd: Path | None = None
    env: Mapping[str, str] | None = None
    timeout_seconds: float | None = DEFAULT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class CommandResult:
    """Typed command execution result.

    ``returncode`` is ``None`` when the process never produced an exit status
    (spawn failure).
    """

    argv: tuple[str, ...]
    returncode: int | None
    stdout: str
    stderr: str
    timed_out: bool = False
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled


class CommandRunner(Protocol):
    """Runtime command-execution interface.

    Returns ``None`` when the executable does not exist.
    """

    async def run(
        self,
        request: CommandRequest,
        *,
        cancellation: CancellationToken | None = None,
    ) -> CommandResult | None: ...


def _kill(process: asyncio.subprocess.Process) -> None:
    if process.returncode is not None:
        return
    try:
        process.kill()
    except ProcessLookupError:
        pass


def _decode(payload: bytes | None) -> str:
    if not payload:
        return ""
    return payload.decode("utf-8", errors="replace")


class AsyncSubprocessRunner:
    """Default command-runner adapter backed by ``asyncio`` subprocesses.

    Natural exit, timeout and cancellation race; exactly one of them decides
    the outcome and the process is reaped on every path.
    """

    async def run(
        self,
        request: CommandRequest,
        *,
        cancellation: CancellationToken | None = None,
    ) -> CommandResult | None:
        try:
            process = await asyncio.create_subprocess_exec(
                *request.argv,
                cwd=request.cwd,
                env=dict(request.env) if request.env is not None else None,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            return None
        except OSError as exc:
            return CommandResult(
                argv=request.argv, returncode=None, stdout="", stderr=str(exc)
            )

        output = asyncio.ensure_future(process.communicate())
        waiters: set[asyncio.Future] = {output}
        cancel_waiter: asyncio.Future | None = None
        if cancellation is not None:
            cancel_waiter = asyncio.ensure_future(cancellation.wait())
            waiters.add(cancel_waiter)

        timed_out = False
        cancelled = False
        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=request.timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if output not in done:
                if cancel_waiter is not None and cancel_waiter in done:
                    cancelled = True
                else:
                    timed_out = True
                _kill(process)
            stdout_bytes, stderr_bytes = await output
        finally:
            if cancel_waiter is not None and not cancel_waiter.done():
                cancel_waiter.cancel()
            if process.returncode is None:
                _kill(process)
            if not output.done():
                output.cancel()

        return CommandResult(
            argv=request.argv,
            returncode=process.returncode,
            stdout=_decode(stdout_bytes),
            stderr=_decode(stderr_bytes),
            timed_out=timed_out,
            cancelled=cancelled,
        )


_DEFAULT_COMMAND_RUNNER: CommandRunner = AsyncSubprocessRunner()


def default_runner() -> CommandRunner:
    return _DEFAULT_COMMAND_RUNNER


def default_is_retryable(result: CommandResult) -> bool:
    """Retry on timeouts and on network-looking failures.

    Example:
        >>> default_is_retryable(CommandResult(("gh",), 1, "", "Could not resolve host"))
        True
        >>> default_is_retryable(CommandResult(("git",), 128, "", "fatal: bad ref"))
        False
    """
    if result.timed_out:
        return True
    stderr = result.stderr.lower()
    return any(pattern in stderr for pattern in _NETWORK_PATTERNS)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry settings for ``execute``.

    Attempt ``k`` (zero-based, counted from the first retry) waits
    ``base_delay * 2**k`` seconds with +/-25% jitter, clamped to ``max_delay``.
    """

    max_retries: int = 0
    base_delay: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    max_delay: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    is_retryable: Callable[[CommandResult], bool] = field(
        default=default_is_retryable
    )


NO_RETRY = RetryPolicy()


def backoff_delay(
    attempt: int,
    base_delay: float,
    max_delay: float,
    *,
    rng: random.Random | None = None,
) -> float:
    """Return the jittered exponential backoff delay for a retry attempt.

    Example:
        >>> backoff_delay(0, 1.0, 10.0, rng=random.Random(7)) <= 1.25
        True
        >>> backoff_delay(10, 1.0, 10.0, rng=random.Random(7))
        10.0
    """
    source = rng or random
    exponential = base_delay * (2**attempt)
    jitter = exponential * JITTER_RATIO * (source.random() * 2 - 1)
    return min(exponential + jitter, max_delay)


def command_preview(argv: tuple[str, ...], max_args: int = 4) -> str:
    """Return a short preview of a command line for logging.

    Example:
        >>> command_preview(("git", "worktree", "add", "-b", "7-issue", "/tmp/x"))
        'git worktree add -b 7-issue...'
    """
    if not argv:
        return ""
    head, args = argv[0], argv[1:]
    preview = " ".join((Path(head).name, *args[:max_args]))
    if len(args) > max_args:
        return f"{preview}..."
    return preview


def classify_failure(result: CommandResult | None) -> tuple[CommandErrorType, str]:
    """Map a failed attempt to an error type and summary message.

    Example:
        >>> classify_failure(None)
        ('not_installed', 'Command not found')
        >>> classify_failure(CommandResult(("git",), 1, "", "fatal: boom"))
        ('command_failed', 'Command failed with exit code 1')
    """
    if result is None:
        return "not_installed", "Command not found"
    if result.cancelled:
        return "cancelled", "Operation cancelled"
    if result.timed_out:
        return "timeout", "Command timed out"
    stderr = result.stderr.lower()
    if any(pattern in stderr for pattern in _NOT_INSTALLED_PATTERNS):
        return "not_installed", "Command not found"
    if "network" in stderr or "connect" in stderr or "could not resolve" in stderr:
        return "network_error", "Network error"
    if result.returncode is None:
        return "unknown", "Command failed without an exit status"
    return "command_failed", f"Command failed with exit code {result.returncode}"


def _cancelled_error() -> CommandError:
    return CommandError(type="cancelled", message="Operation cancelled")


async def execute(
    request: CommandRequest,
    *,
    cancellation: CancellationToken | None = None,
    retry: RetryPolicy = NO_RETRY,
    runner: CommandRunner | None = None,
    category: str = log.DEFAULT_CATEGORY,
    rng: random.Random | None = None,
    expect_failure: bool = False,
) -> Result[CommandResult, CommandError]:
    """Run a command with timeout, retry/backoff and cooperative cancellation.

    Args:
        request: Command to run; ``timeout_seconds`` bounds each attempt.
        cancellation: Token checked before every attempt and after every
            backoff delay; cancelling it also kills a running attempt.
        retry: Retry policy. Only failures the policy classifies as retryable
            are retried.
        runner: Optional injected command runner.
        category: Log category for emitted events.
        rng: Random source for backoff jitter.
        expect_failure: Log the final failure at debug level; used for probes
            such as ref lookups where failure is an answer, not a fault.

    Returns:
        ``Success`` with the result on exit code 0, otherwise ``Failure`` with
        a ``CommandError``.
    """
    active_runner = runner or _DEFAULT_COMMAND_RUNNER
    preview = command_preview(request.argv)
    last_result: CommandResult | None = None
    attempt = 0

    while attempt <= retry.max_retries:
        if cancellation is not None and cancellation.cancelled:
            log.debug("Command cancelled", category=category, command=preview)
            return failure(_cancelled_error())

        if attempt > 0:
            delay = backoff_delay(
                attempt - 1, retry.base_delay, retry.max_delay, rng=rng
            )
            log.debug(
                f"Retry attempt {attempt}/{retry.max_retries}",
                category=category,
                command=preview,
                delay_seconds=round(delay, 3),
            )
            if cancellation is not None:
                if await cancellation.sleep(delay):
                    log.debug("Command cancelled", category=category, command=preview)
                    return failure(_cancelled_error())
            else:
                await asyncio.sleep(delay)

        log.debug("Running command", category=category, command=preview, attempt=attempt)
        try:
            result = await active_runner.run(request, cancellation=cancellation)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            log.error(
                "Command runner crashed", category=category, command=preview, error=exc
            )
            return failure(
                CommandError(
                    type="unknown",
                    message="Command runner failed",
                    details=str(exc),
                )
            )
        last_result = result

        if result is None:
            break
        if result.cancelled:
            log.debug("Command cancelled", category=category, command=preview)
            return failure(_cancelled_error())
        if result.ok:
            log.debug("Command succeeded", category=category, command=preview)
            return success(result)
        if attempt >= retry.max_retries or not retry.is_retryable(result):
            break
        attempt += 1

    error_type, message = classify_failure(last_result)
    details = None
    if last_result is not None:
        details = last_result.stderr.strip() or last_result.stdout.strip() or None
    report = log.debug if expect_failure else log.error
    report(
        message,
        category=category,
        command=preview,
        exit_code=last_result.returncode if last_result is not None else None,
    )
    return failure(
        CommandError(
            type=error_type,
            message=message,
            details=details,
            result=last_result,
        )
    )


@dataclass(frozen=True)
class ToolPaths:
    """Executable locations for the external tools Antler drives."""

    git: str = "git"
    docker: str = "docker"
    devcontainer: str = "devcontainer"


async def run_git(
    args: list[str],
    *,
    tools: ToolPaths | None = None,
    cwd: Path | None = None,
    timeout_seconds: float | None = DEFAULT_TIMEOUT_SECONDS,
    cancellation: CancellationToken | None = None,
    retry: RetryPolicy = NO_RETRY,
    runner: CommandRunner | None = None,
    expect_failure: bool = False,
) -> Result[CommandResult, CommandError]:
    """Execute a git command under the ``worktree`` log category."""
    executable = (tools or ToolPaths()).git
    return await execute(
        CommandRequest(
            argv=(executable, *args), cwd=cwd, timeout_seconds=timeout_seconds
        ),
        cancellation=cancellation,
        retry=retry,
        runner=runner,
        category="worktree",
        expect_failure=expect_failure,
    )


async def run_docker(
    args: list[str],
    *,
    tools: ToolPaths | None = None,
    timeout_seconds: float | None = DEFAULT_TIMEOUT_SECONDS,
    cancellation: CancellationToken | None = None,
    retry: RetryPolicy = NO_RETRY,
    runner: CommandRunner | None = None,
) -> Result[CommandResult, CommandError]:
    """Execute a container runtime command under the ``docker`` category."""
    executable = (tools or ToolPaths()).docker
    return await execute(
        CommandRequest(argv=(executable, *args), timeout_seconds=timeout_seconds),
        cancellation=cancellation,
        retry=retry,
        runner=runner,
        category="docker",
    )


async def run_devcontainer(
    args: list[str],
    *,
    tools: ToolPaths | None = None,
    env: Mapping[str, str] | None = None,
    timeout_seconds: float | None = DEFAULT_TIMEOUT_SECONDS,
    cancellation: CancellationToken | None = None,
    runner: CommandRunner | None = None,
) -> Result[CommandResult, CommandError]:
    """Execute a devcontainer CLI command under the ``devcontainer`` category."""
    executable = (tools or ToolPaths()).devcontainer
    return await execute(
        CommandRequest(
            argv=(executable, *args), env=env, timeout_seconds=timeout_seconds
        ),
        cancellation=cancellation,
        runner=runner,
        category="devcontainer",
    )
