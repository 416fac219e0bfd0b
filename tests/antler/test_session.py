import asyncio
from pathlib import Path

import antler.ports as ports
from antler.cancellation import CancellationToken
from antler.config import default_config
from antler.devcontainer import DevcontainerManager
from antler.ports import PortRange
from antler.session import (
    SessionStage,
    WorkSessionOrchestrator,
    branch_name_for_card,
    build_orchestrator,
)
from tests.antler.helpers import FakeToolchain, fail, make_card, make_repo


def _orchestrator(
    tmp_path: Path, *, with_config: bool = True, port_range: PortRange | None = None
) -> tuple[Path, FakeToolchain, WorkSessionOrchestrator, list[SessionStage]]:
    repo = make_repo(tmp_path, with_config=with_config)
    toolchain = FakeToolchain(repo)
    stages: list[SessionStage] = []
    orchestrator = WorkSessionOrchestrator(
        runner=toolchain,
        devcontainers=DevcontainerManager(runner=toolchain, port_range=port_range),
        on_stage=lambda _card, stage: stages.append(stage),
    )
    return repo, toolchain, orchestrator, stages


def test_branch_name_prefers_linked_pull_request() -> None:
    card = make_card(42, "Fix Login Bug", pr_branch="feature/login")

    assert branch_name_for_card(card) == "feature/login"
    assert branch_name_for_card(make_card(42, "Fix Login Bug")) == "42-fix-login-bug"
    assert branch_name_for_card(make_card(None)) is None


def test_start_provisions_worktree_port_and_environment(tmp_path: Path) -> None:
    repo, toolchain, orchestrator, stages = _orchestrator(tmp_path)
    toolchain.port_lines = ["0.0.0.0:3000->3000/tcp"]

    result = asyncio.run(orchestrator.start(repo, make_card()))

    assert result.ok
    info = result.value
    assert info.branch_name == "42-fix-login-bug"
    assert info.port == 3001
    assert Path(info.worktree_path).is_dir()
    assert ports.read_port_file(Path(info.worktree_path)) == 3001
    assert stages == [
        SessionStage.CHECKING_PREREQUISITES,
        SessionStage.RESOLVING_BRANCH,
        SessionStage.CHECKING_ENV_CONFIG,
        SessionStage.CREATING_WORKSPACE,
        SessionStage.ALLOCATING_PORT,
        SessionStage.STARTING_ENVIRONMENT,
        SessionStage.DONE,
    ]


def test_start_fails_fast_when_git_missing(tmp_path: Path) -> None:
    repo, toolchain, orchestrator, stages = _orchestrator(tmp_path)
    toolchain.missing.add("git")

    result = asyncio.run(orchestrator.start(repo, make_card()))

    assert result.error.code == "prerequisite_failed"
    assert stages[-1] is SessionStage.FAILED


def test_start_requires_issue_or_pull_request(tmp_path: Path) -> None:
    repo, toolchain, orchestrator, _stages = _orchestrator(tmp_path)

    result = asyncio.run(orchestrator.start(repo, make_card(None)))

    assert result.error.code == "worktree_failed"
    assert toolchain.session_worktrees() == []


def test_start_without_environment_config_is_fatal(tmp_path: Path) -> None:
    repo, toolchain, orchestrator, _stages = _orchestrator(tmp_path, with_config=False)

    result = asyncio.run(orchestrator.start(repo, make_card()))

    assert result.error.code == "environment_failed"
    assert not any("add" in argv for argv in toolchain.calls)


def test_port_allocation_failure_leaves_zero_worktrees(tmp_path: Path) -> None:
    repo, toolchain, orchestrator, stages = _orchestrator(
        tmp_path, port_range=PortRange(3000, 3000)
    )
    toolchain.port_lines = ["0.0.0.0:3000->3000/tcp"]
    before = toolchain.session_worktrees()

    result = asyncio.run(orchestrator.start(repo, make_card()))

    assert result.error.code == "environment_failed"
    assert toolchain.session_worktrees() == before == []
    assert not (repo / ".worktrees" / "42-fix-login-bug").exists()
    assert stages[-1] is SessionStage.FAILED


def test_environment_start_failure_leaves_zero_worktrees(tmp_path: Path) -> None:
    repo, toolchain, orchestrator, _stages = _orchestrator(tmp_path)
    toolchain.failures["up"] = fail(("devcontainer",), "image build failed")

    result = asyncio.run(orchestrator.start(repo, make_card()))

    assert result.error.code == "environment_failed"
    assert result.error.details == "image build failed"
    assert toolchain.session_worktrees() == []


def test_cancel_during_workspace_creation_leaves_no_worktree(tmp_path: Path) -> None:
    repo, toolchain, orchestrator, stages = _orchestrator(tmp_path)

    async def scenario():
        toolchain.hold("worktree add")
        token = CancellationToken()
        task = asyncio.create_task(orchestrator.start(repo, make_card(), token))
        await toolchain.entered["worktree add"].wait()
        token.cancel()
        return await task

    result = asyncio.run(scenario())

    assert result.error.code == "cancelled"
    assert toolchain.session_worktrees() == []
    assert stages[-1] is SessionStage.CANCELLED
    assert not any(argv[1:2] == ("up",) for argv in toolchain.calls)


def test_cancel_after_workspace_creation_rolls_back(tmp_path: Path) -> None:
    repo, toolchain, orchestrator, _stages = _orchestrator(tmp_path)

    async def scenario():
        toolchain.hold("ps")
        token = CancellationToken()
        task = asyncio.create_task(orchestrator.start(repo, make_card(), token))
        await toolchain.entered["ps"].wait()
        assert toolchain.session_worktrees()
        token.cancel()
        return await task

    result = asyncio.run(scenario())

    assert result.error.code == "cancelled"
    assert toolchain.session_worktrees() == []


def test_cancel_during_environment_start_rolls_back(tmp_path: Path) -> None:
    repo, toolchain, orchestrator, _stages = _orchestrator(tmp_path)

    async def scenario():
        toolchain.hold("up")
        token = CancellationToken()
        task = asyncio.create_task(orchestrator.start(repo, make_card(), token))
        await toolchain.entered["up"].wait()
        token.cancel()
        return await task

    result = asyncio.run(scenario())

    assert result.error.code == "cancelled"
    assert toolchain.session_worktrees() == []


def test_stop_removes_worktree_and_containers(tmp_path: Path) -> None:
    repo, toolchain, orchestrator, _stages = _orchestrator(tmp_path)
    card = make_card()
    info = asyncio.run(orchestrator.start(repo, card)).value
    started = card.with_changes(worktree_created=True, worktree_path=info.worktree_path)

    result = asyncio.run(orchestrator.stop(repo, started))

    assert result.ok
    assert toolchain.session_worktrees() == []
    assert any(argv[1:] == ("stop", "c-1") for argv in toolchain.calls)


def test_stop_proceeds_when_every_container_stop_fails(tmp_path: Path) -> None:
    repo, toolchain, orchestrator, _stages = _orchestrator(tmp_path)
    info = asyncio.run(orchestrator.start(repo, make_card())).value
    toolchain.failing_stops = {"c-1"}

    result = asyncio.run(orchestrator.stop(repo, make_card()))

    assert result.ok
    assert toolchain.session_worktrees() == []
    assert not Path(info.worktree_path).exists()


def test_stop_surfaces_worktree_removal_failure(tmp_path: Path) -> None:
    repo, _toolchain, orchestrator, _stages = _orchestrator(tmp_path)

    result = asyncio.run(orchestrator.stop(repo, make_card()))

    assert result.error.code == "worktree_failed"


def test_stop_without_branch_is_a_no_op(tmp_path: Path) -> None:
    repo, toolchain, orchestrator, _stages = _orchestrator(tmp_path)

    result = asyncio.run(orchestrator.stop(repo, make_card(None)))

    assert result.ok
    assert toolchain.calls == []


def test_build_orchestrator_applies_settings() -> None:
    settings = default_config()
    settings.devcontainer.port_range_start = 4000
    settings.devcontainer.port_range_end = 4010
    settings.git.path = "/opt/git/bin/git"

    orchestrator = build_orchestrator(settings)

    assert orchestrator.devcontainers.port_range == PortRange(4000, 4010)
    assert orchestrator.tools.git == "/opt/git/bin/git"
    assert orchestrator.devcontainers.start_timeout_seconds == 300
