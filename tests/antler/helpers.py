# ruff: noqa: E402

from __future__ import annotations

import asyncio
import json
import shutil
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from antler.cancellation import CancellationToken
from antler.devcontainer import WORKSPACE_LABEL
from antler.exec import CommandRequest, CommandResult
from antler.models import Card, GitHubInfo, PullRequestInfo


def make_card(
    issue: int | None = 42,
    title: str = "Fix Login Bug",
    *,
    pr_branch: str | None = None,
    **fields: object,
) -> Card:
    pr = PullRequestInfo(branch_name=pr_branch) if pr_branch else None
    return Card(
        name=title,
        github=GitHubInfo(title=title, issue_number=issue, pr=pr),
        **fields,
    )


def make_repo(tmp_path: Path, *, with_config: bool = True) -> Path:
    repo = tmp_path / "repo"
    repo.mkdir()
    if with_config:
        (repo / ".devcontainer").mkdir()
        (repo / ".devcontainer" / "devcontainer.json").write_text(
            "{}\n", encoding="utf-8"
        )
    return repo.resolve()


def ok(argv: tuple[str, ...], stdout: str = "") -> CommandResult:
    return CommandResult(argv=argv, returncode=0, stdout=stdout, stderr="")


def fail(argv: tuple[str, ...], stderr: str, returncode: int = 1) -> CommandResult:
    return CommandResult(argv=argv, returncode=returncode, stdout="", stderr=stderr)


class FakeToolchain:
    """In-memory stand-in for git, docker and the devcontainer CLI.

    Worktrees are real directories under the repository so filesystem
    checks in the code under test behave as they would against git.
    """

    def __init__(self, repo_root: Path) -> None:
        self.repo_root = repo_root
        self.worktrees: dict[Path, str] = {repo_root: "main"}
        self.local_branches: set[str] = {"main"}
        self.remote_branches: set[str] = set()
        self.port_lines: list[str] = []
        self.containers: dict[str, list[str]] = {}
        self.failing_stops: set[str] = set()
        self.failures: dict[str, CommandResult] = {}
        self.missing: set[str] = set()
        self.gates: dict[str, asyncio.Event] = {}
        self.entered: dict[str, asyncio.Event] = {}
        self.up_env: dict[str, str] = {}
        self.calls: list[tuple[str, ...]] = []

    def key_for(self, argv: tuple[str, ...]) -> str:
        tool = Path(argv[0]).name
        args = list(argv[1:])
        if tool == "git" and args[:1] == ["-C"]:
            args = args[2:]
        if tool == "git" and args[:1] == ["worktree"]:
            return " ".join(args[:2])
        return args[0] if args else ""

    def hold(self, key: str) -> asyncio.Event:
        """Block commands matching ``key`` until the returned event is set."""
        gate = asyncio.Event()
        self.gates[key] = gate
        self.entered[key] = asyncio.Event()
        return gate

    def session_worktrees(self) -> list[Path]:
        return [path for path in self.worktrees if ".worktrees" in path.parts]

    async def run(
        self,
        request: CommandRequest,
        *,
        cancellation: CancellationToken | None = None,
    ) -> CommandResult | None:
        argv = request.argv
        self.calls.append(argv)
        tool = Path(argv[0]).name
        if tool in self.missing:
            return None
        key = self.key_for(argv)

        gate = self.gates.get(key)
        if gate is not None:
            self.entered[key].set()
            waiters = {asyncio.ensure_future(gate.wait())}
            cancel_waiter = None
            if cancellation is not None:
                cancel_waiter = asyncio.ensure_future(cancellation.wait())
                waiters.add(cancel_waiter)
            done, pending = await asyncio.wait(
                waiters, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            if cancel_waiter is not None and cancel_waiter in done:
                return CommandResult(
                    argv=argv, returncode=None, stdout="", stderr="", cancelled=True
                )

        if key in self.failures:
            return self.failures[key]
        if tool == "git":
            return self._git(argv)
        if tool == "docker":
            return self._docker(argv)
        if tool == "devcontainer":
            return self._devcontainer(argv, request)
        return fail(argv, f"{tool}: command not found", 127)

    def _git(self, argv: tuple[str, ...]) -> CommandResult:
        args = list(argv[1:])
        if args[:1] == ["-C"]:
            args = args[2:]
        if args == ["--version"]:
            return ok(argv, "git version 2.44.0\n")
        if args[:1] == ["rev-parse"]:
            branch = args[-1]
            return ok(argv, "abc123\n") if branch in self.local_branches else fail(argv, "")
        if args[:1] == ["ls-remote"]:
            branch = args[-1]
            if branch in self.remote_branches:
                return ok(argv, f"abc123\trefs/heads/{branch}\n")
            return ok(argv)
        if args[:2] == ["worktree", "list"]:
            records = "".join(
                f"worktree {path}\nHEAD abc123\nbranch refs/heads/{branch}\n\n"
                for path, branch in self.worktrees.items()
            )
            return ok(argv, records)
        if args[:2] == ["worktree", "add"]:
            return self._worktree_add(argv, args[2:])
        if args[:2] == ["worktree", "remove"]:
            path = Path(args[2]).resolve()
            if path not in self.worktrees:
                return fail(argv, f"fatal: '{path}' is not a working tree", 128)
            shutil.rmtree(path, ignore_errors=True)
            self.worktrees = {k: v for k, v in self.worktrees.items() if k != path}
            return ok(argv)
        if args[:2] == ["worktree", "prune"]:
            return ok(argv)
        return fail(argv, f"git: '{args[0]}' is not a git command", 1)

    def _worktree_add(self, argv: tuple[str, ...], args: list[str]) -> CommandResult:
        if args[0] == "-b":
            branch, raw_path = args[1], args[2]
            if branch in self.local_branches:
                return fail(argv, f"fatal: a branch named '{branch}' already exists", 255)
        else:
            raw_path, branch = args[0], args[1]
        path = Path(raw_path).resolve()
        if branch in self.worktrees.values():
            return fail(argv, f"fatal: '{branch}' is already checked out at '/x'", 128)
        if path.exists():
            return fail(argv, f"fatal: '{path}' already exists", 128)
        path.mkdir(parents=True)
        self.local_branches.add(branch)
        self.worktrees = {**self.worktrees, path: branch}
        return ok(argv, f"Preparing worktree (new branch '{branch}')\n")

    def _docker(self, argv: tuple[str, ...]) -> CommandResult:
        args = list(argv[1:])
        if args[:2] == ["ps", "--format"]:
            return ok(argv, "\n".join(self.port_lines))
        if args[:2] == ["ps", "-q"]:
            label = args[-1].removeprefix("label=")
            folder = label.removeprefix(f"{WORKSPACE_LABEL}=")
            ids = self.containers.get(folder, [])
            return ok(argv, "".join(f"{container}\n" for container in ids))
        if args[:1] == ["stop"]:
            container = args[1]
            if container in self.failing_stops:
                return fail(argv, f"Error response from daemon: cannot stop {container}")
            return ok(argv, f"{container}\n")
        if args[:1] == ["info"]:
            return ok(argv, "24.0.7\n")
        return fail(argv, "unknown docker command")

    def _devcontainer(
        self, argv: tuple[str, ...], request: CommandRequest
    ) -> CommandResult:
        args = list(argv[1:])
        if args == ["--version"]:
            return ok(argv, "0.62.0\n")
        if args[:1] == ["up"]:
            self.up_env = dict(request.env or {})
            folder = args[args.index("--workspace-folder") + 1]
            container = f"c-{len(self.containers) + 1}"
            self.containers = {**self.containers, folder: [container]}
            payload = {"outcome": "success", "containerId": container}
            return ok(argv, "[1 ms] Start: Run\n" + json.dumps(payload) + "\n")
        return fail(argv, "unknown devcontainer command")
