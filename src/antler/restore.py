"""Rebuild card session state from worktrees left on disk by a previous run."""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from . import cards as card_ops
from . import log, ports
from .branching import issue_number_from_branch
from .card_status import CardStatusStore
from .models import Card, CardStatus, WorktreeInfo
from .worktrees import WorktreeManager

LOG_CATEGORY = "data-sync"

MatchKind = Literal["pr_branch", "issue_number"]


@dataclass(frozen=True)
class RestoreStats:
    matched: int = 0
    orphaned: int = 0
    port_read_errors: int = 0


@dataclass(frozen=True)
class RestoreResult:
    """Cards with session state restored, plus worktrees no card claimed."""

    cards: tuple[Card, ...]
    orphaned_worktrees: tuple[WorktreeInfo, ...] = ()
    stats: RestoreStats = field(default_factory=RestoreStats)


def match_worktree(
    cards: Sequence[Card], worktree: WorktreeInfo, claimed: set[str]
) -> tuple[Card, MatchKind] | None:
    """Find the card for ``worktree``: PR branch first, then issue number."""
    for card in cards:
        if card.session_uid in claimed:
            continue
        if card.pr_branch_name and card.pr_branch_name == worktree.branch_name:
            return card, "pr_branch"
    issue_number = issue_number_from_branch(worktree.branch_name)
    if issue_number is None:
        return None
    for card in cards:
        if card.session_uid in claimed:
            continue
        if card.issue_number == issue_number:
            return card, "issue_number"
    return None


async def restore_worktree_state(
    cards: Sequence[Card],
    repo_root: Path,
    *,
    worktrees: WorktreeManager | None = None,
    store: CardStatusStore | None = None,
) -> RestoreResult:
    """Match session worktrees to cards and restore path, port and status.

    Listing failures are logged and leave the cards untouched. Matched cards
    take their persisted status, defaulting to ``in_progress``.
    """
    manager = worktrees or WorktreeManager()
    status_store = store or CardStatusStore()
    original = tuple(cards)
    log.info("Restoring worktree state", category=LOG_CATEGORY, cards=len(original))

    listed = await manager.list_session_worktrees(repo_root)
    if not listed.ok:
        log.warning(
            "Failed to list worktrees; skipping restore",
            category=LOG_CATEGORY,
            error=listed.error.message,
        )
        return RestoreResult(cards=original)
    if not listed.value:
        log.debug("No session worktrees found", category=LOG_CATEGORY)
        return RestoreResult(cards=original)

    persisted = status_store.load()
    matches: dict[str, WorktreeInfo] = {}
    orphaned: list[WorktreeInfo] = []
    for worktree in listed.value:
        found = match_worktree(original, worktree, set(matches))
        if found is None:
            orphaned.append(worktree)
            continue
        card, kind = found
        matches[card.session_uid] = worktree
        log.debug(
            "Matched worktree to card",
            category=LOG_CATEGORY,
            branch=worktree.branch_name,
            issue=card.issue_number,
            matched_by=kind,
        )
    if orphaned:
        log.warning(
            "Found orphaned worktrees",
            category=LOG_CATEGORY,
            count=len(orphaned),
            branches=",".join(item.branch_name for item in orphaned),
        )

    port_read_errors = 0
    restored: list[Card] = []
    for card in original:
        worktree = matches.get(card.session_uid)
        if worktree is None:
            restored.append(card)
            continue
        port = ports.read_port_file(worktree.path)
        if port is None:
            port_read_errors += 1
            log.debug("Could not read port file", category=LOG_CATEGORY, path=worktree.path)
        status: CardStatus = "in_progress"
        if card.issue_number is not None:
            status = persisted.get(card.issue_number, "in_progress")
        updated = card_ops.complete_worktree_creation(card, str(worktree.path), port)
        restored.append(updated.with_changes(status=status))
        log.info(
            "Restored card worktree state",
            category=LOG_CATEGORY,
            issue=card.issue_number,
            status=status,
            port=port,
        )

    stats = RestoreStats(
        matched=len(matches), orphaned=len(orphaned), port_read_errors=port_read_errors
    )
    log.info(
        "Worktree restore complete",
        category=LOG_CATEGORY,
        matched=stats.matched,
        orphaned=stats.orphaned,
        port_read_errors=stats.port_read_errors,
    )
    return RestoreResult(
        cards=tuple(restored), orphaned_worktrees=tuple(orphaned), stats=stats
    )
