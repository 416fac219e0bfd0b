"""Antler command line interface."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Annotated

import typer

from . import __version__, branching, config, devcontainer
from . import log as antler_log
from .card_status import CardStatusStore
from .errors import ConfigError
from .io import die, say, warn
from .models import AntlerConfig, Card, GitHubInfo, PullRequestInfo
from .ports import first_available_port
from .prerequisites import check_prerequisites
from .session import branch_name_for_card, build_orchestrator

app = typer.Typer(
    add_completion=False,
    no_args_is_help=True,
    help="Provision isolated worktrees and container environments for issues.",
)


def _validate_log_level(value: str | None) -> str | None:
    if value is None:
        return None
    normalized = value.strip().lower()
    if normalized not in antler_log.LEVEL_NAMES:
        raise typer.BadParameter(
            f"expected one of: {', '.join(antler_log.LEVEL_NAMES)}"
        )
    return normalized


def _version_callback(value: bool) -> None:
    if value:
        say(f"antler {__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    ctx: typer.Context,
    log_level: Annotated[
        str | None,
        typer.Option(
            "--log-level",
            help="Log level (trace, debug, info, success, warning, error).",
            callback=_validate_log_level,
        ),
    ] = None,
    no_color: Annotated[
        bool, typer.Option("--no-color", help="Disable colorized output.")
    ] = False,
    repo: Annotated[
        Path | None,
        typer.Option("--repo", help="Repository root (defaults to the current directory)."),
    ] = None,
    version: Annotated[
        bool,
        typer.Option(
            "--version", callback=_version_callback, is_eager=True, help="Show version."
        ),
    ] = False,
) -> None:
    if log_level is not None:
        antler_log.set_level(log_level)
    if no_color:
        antler_log.set_no_color(True)
    ctx.obj = {"repo": (repo or Path.cwd()).resolve()}


def _repo_root(ctx: typer.Context) -> Path:
    obj = ctx.obj or {}
    return obj.get("repo") or Path.cwd().resolve()


def _load_settings() -> AntlerConfig:
    try:
        return config.load_config()
    except ConfigError as exc:
        die(str(exc))


def _card_for(issue: int, title: str, pr_branch: str | None) -> Card:
    pr = PullRequestInfo(branch_name=pr_branch) if pr_branch else None
    return Card(
        name=title or f"Issue #{issue}",
        github=GitHubInfo(title=title, issue_number=issue, pr=pr),
    )


@app.command("branch-name")
def branch_name_cmd(
    issue: Annotated[int, typer.Argument(help="Issue number.")],
    title: Annotated[str, typer.Argument(help="Issue title.")] = "",
) -> None:
    """Print the session branch name for an issue."""
    say(branching.branch_name_for(issue, title))


@app.command("worktrees")
def worktrees_cmd(ctx: typer.Context) -> None:
    """List session worktrees in the repository."""
    repo_root = _repo_root(ctx)
    orchestrator = build_orchestrator(_load_settings())
    result = asyncio.run(orchestrator.worktrees.list_session_worktrees(repo_root))
    if not result.ok:
        error = result.error
        die(f"{error.message}: {error.details}" if error.details else error.message)
    if not result.value:
        say("No session worktrees.")
        return
    for worktree in result.value:
        issue = branching.issue_number_from_branch(worktree.branch_name)
        label = f"#{issue}" if issue is not None else "-"
        say(f"{worktree.branch_name}\t{label}\t{worktree.path}")


@app.command("start")
def start_cmd(
    ctx: typer.Context,
    issue: Annotated[int, typer.Argument(help="Issue number.")],
    title: Annotated[str, typer.Option("--title", help="Issue title.")] = "",
    pr_branch: Annotated[
        str | None, typer.Option("--pr-branch", help="Linked pull request branch.")
    ] = None,
) -> None:
    """Start a work session: worktree, port and container environment."""
    repo_root = _repo_root(ctx)
    orchestrator = build_orchestrator(_load_settings())
    card = _card_for(issue, title, pr_branch)
    result = asyncio.run(orchestrator.start(repo_root, card))
    if not result.ok:
        die(result.error.describe())
    info = result.value
    CardStatusStore().save(issue, "in_progress")
    say(f"branch: {info.branch_name}")
    say(f"worktree: {info.worktree_path}")
    say(f"port: {info.port}")


@app.command("stop")
def stop_cmd(
    ctx: typer.Context,
    issue: Annotated[int, typer.Argument(help="Issue number.")],
    title: Annotated[str, typer.Option("--title", help="Issue title.")] = "",
    pr_branch: Annotated[
        str | None, typer.Option("--pr-branch", help="Linked pull request branch.")
    ] = None,
) -> None:
    """Stop a work session and remove its worktree."""
    repo_root = _repo_root(ctx)
    orchestrator = build_orchestrator(_load_settings())
    card = _card_for(issue, title, pr_branch)
    result = asyncio.run(orchestrator.stop(repo_root, card))
    if not result.ok:
        die(result.error.describe())
    CardStatusStore().remove(issue)
    say(f"Stopped {branch_name_for_card(card)}")


@app.command("ports")
def ports_cmd() -> None:
    """Show bound container ports and the next free session port."""
    orchestrator = build_orchestrator(_load_settings())
    manager = orchestrator.devcontainers

    used = asyncio.run(manager.used_ports())
    allocated = first_available_port(used, manager.port_range)
    in_range = sorted(port for port in used if port in manager.port_range)
    say(f"range: {manager.port_range.describe()}")
    say(f"bound: {', '.join(str(port) for port in in_range) or 'none'}")
    if allocated.ok:
        say(f"next: {allocated.value}")
    else:
        die(allocated.error.message)


@app.command("doctor")
def doctor_cmd(ctx: typer.Context) -> None:
    """Check the tools a work session needs."""
    repo_root = _repo_root(ctx)
    settings = _load_settings()
    orchestrator = build_orchestrator(settings)
    manager = orchestrator.devcontainers

    async def run_checks() -> list[tuple[str, bool, str]]:
        checks: list[tuple[str, bool, str]] = []
        git_check = await check_prerequisites(
            tools=orchestrator.tools, runner=orchestrator.runner
        )
        checks.append(
            (
                "git",
                git_check.ok,
                git_check.value if git_check.ok else git_check.error.describe(),
            )
        )
        cli_check = await manager.check_cli()
        checks.append(
            (
                "devcontainer",
                cli_check.ok,
                cli_check.value if cli_check.ok else cli_check.error.message,
            )
        )
        docker_check = await manager.check_docker_running()
        checks.append(
            (
                "docker",
                docker_check.ok,
                "running" if docker_check.ok else docker_check.error.message,
            )
        )
        found = devcontainer.find_config(repo_root)
        checks.append(
            (
                "config",
                found is not None,
                str(found) if found is not None else "no devcontainer config",
            )
        )
        return checks

    checks = asyncio.run(run_checks())
    failed = False
    for name, ok, detail in checks:
        marker = "ok" if ok else "FAIL"
        say(f"{marker:<4} {name}: {detail}")
        failed = failed or not ok
    if failed:
        raise typer.Exit(code=1)


@app.command("statuses")
def statuses_cmd() -> None:
    """Show persisted card statuses."""
    statuses = CardStatusStore().load()
    if not statuses:
        warn("no persisted card statuses")
        return
    for issue, status in sorted(statuses.items()):
        say(f"#{issue}\t{status}")


def main() -> None:
    app()
