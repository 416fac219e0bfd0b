import asyncio
from pathlib import Path

import antler.ports as ports
from antler.card_status import CardStatusStore
from antler.reconciler import CardStatusReconciler
from antler.restore import restore_worktree_state
from antler.session import WorkSessionOrchestrator
from antler.worktrees import WorktreeManager
from tests.antler.helpers import FakeToolchain, make_card, make_repo


def _setup(tmp_path: Path) -> tuple[Path, FakeToolchain, WorktreeManager, CardStatusStore]:
    repo = make_repo(tmp_path)
    toolchain = FakeToolchain(repo)
    return (
        repo,
        toolchain,
        WorktreeManager(runner=toolchain),
        CardStatusStore(tmp_path / "card-status.json"),
    )


def test_restore_matches_by_pr_branch_then_issue_number(tmp_path: Path) -> None:
    repo, _toolchain, manager, store = _setup(tmp_path)
    by_pr = make_card(10, "Has PR", pr_branch="feature/ten")
    by_issue = make_card(11, "Plain issue")
    untouched = make_card(12, "No worktree")
    pr_tree = asyncio.run(manager.create(repo, "feature/ten")).value
    issue_tree = asyncio.run(manager.create(repo, "11-plain-issue")).value
    asyncio.run(manager.create(repo, "99-orphan"))
    ports.write_port_file(pr_tree.path, 3004)
    store.save(11, "waiting")

    result = asyncio.run(
        restore_worktree_state(
            [by_pr, by_issue, untouched], repo, worktrees=manager, store=store
        )
    )

    restored_pr, restored_issue, same = result.cards
    assert restored_pr.worktree_created
    assert restored_pr.worktree_path == str(pr_tree.path)
    assert restored_pr.port == 3004
    assert restored_pr.status == "in_progress"
    assert restored_issue.worktree_path == str(issue_tree.path)
    assert restored_issue.port is None
    assert restored_issue.status == "waiting"
    assert same == untouched
    assert [w.branch_name for w in result.orphaned_worktrees] == ["99-orphan"]
    assert result.stats.matched == 2
    assert result.stats.orphaned == 1
    assert result.stats.port_read_errors == 1


def test_restore_without_worktrees_returns_cards_unchanged(tmp_path: Path) -> None:
    repo, _toolchain, manager, store = _setup(tmp_path)
    card = make_card()

    result = asyncio.run(
        restore_worktree_state([card], repo, worktrees=manager, store=store)
    )

    assert result.cards == (card,)
    assert result.stats.matched == 0


def test_restore_survives_listing_failure(tmp_path: Path) -> None:
    repo, toolchain, manager, store = _setup(tmp_path)
    toolchain.missing.add("git")
    card = make_card()

    result = asyncio.run(
        restore_worktree_state([card], repo, worktrees=manager, store=store)
    )

    assert result.cards == (card,)
    assert result.orphaned_worktrees == ()


def test_reconciler_restore_replaces_card_list(tmp_path: Path) -> None:
    repo, toolchain, manager, store = _setup(tmp_path)
    card = make_card(42, "Fix Login Bug")
    asyncio.run(manager.create(repo, "42-fix-login-bug"))
    store.save(42, "done")
    reconciler = CardStatusReconciler(
        repo,
        [card],
        orchestrator=WorkSessionOrchestrator(runner=toolchain),
        store=store,
    )

    result = asyncio.run(reconciler.restore())

    assert result.stats.matched == 1
    assert reconciler.cards[0].status == "done"
    assert reconciler.cards[0].worktree_created
