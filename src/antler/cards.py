"""Immutable card transitions and card-list helpers.

Every helper returns a new ``Card`` (or a new tuple of cards); nothing is
mutated in place.

Example:
    >>> card = start_worktree_creation(Card(status="idle"))
    >>> (card.status, card.worktree_operation)
    ('in_progress', 'creating')
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence

from .models import Card, CardStatus, GitHubInfo, IssueRecord, PullRequestInfo

Cards = tuple[Card, ...]


def find_card(cards: Sequence[Card], card_id: str) -> Card | None:
    for card in cards:
        if card.session_uid == card_id:
            return card
    return None


def replace_card(cards: Sequence[Card], updated: Card) -> Cards:
    """Return ``cards`` with the card sharing ``updated``'s id swapped in.

    Unknown ids leave the list unchanged.
    """
    return tuple(
        updated if card.session_uid == updated.session_uid else card for card in cards
    )


def set_status(card: Card, status: CardStatus) -> Card:
    """Plain status change; leaving ``waiting`` clears the error flag."""
    changes: dict[str, object] = {"status": status}
    if card.status == "waiting" and status != "waiting" and card.has_error:
        changes["has_error"] = False
    return card.with_changes(**changes)


def start_worktree_creation(card: Card) -> Card:
    return card.with_changes(
        status="in_progress", worktree_operation="creating", worktree_error=None
    )


def complete_worktree_creation(card: Card, path: str, port: int | None) -> Card:
    return card.with_changes(
        worktree_created=True,
        worktree_path=path,
        worktree_operation="none",
        worktree_error=None,
        port=port,
    )


def fail_worktree_creation(card: Card, message: str | None) -> Card:
    """Revert a failed or cancelled start to idle.

    ``message`` is ``None`` for cancellation, which is not shown as an error.
    """
    return card.with_changes(
        status="idle", worktree_operation="none", worktree_error=message
    )


def start_worktree_removal(card: Card) -> Card:
    return card.with_changes(
        status="idle", worktree_operation="removing", worktree_error=None
    )


def complete_worktree_removal(card: Card) -> Card:
    return card.with_changes(
        worktree_created=False,
        worktree_path=None,
        worktree_operation="none",
        worktree_error=None,
        port=None,
    )


def fail_worktree_removal(card: Card, message: str) -> Card:
    """Keep the workspace fields so the stop can be retried."""
    return card.with_changes(
        status="in_progress", worktree_operation="none", worktree_error=message
    )


def github_info_for(record: IssueRecord) -> GitHubInfo:
    pr = None
    if record.pr_number is not None or record.pr_branch_name:
        pr = PullRequestInfo(number=record.pr_number, branch_name=record.pr_branch_name)
    return GitHubInfo(
        title=record.title, issue_number=record.number, pr=pr, state=record.state
    )


def card_from_issue(record: IssueRecord) -> Card:
    return Card(name=record.title or f"Issue #{record.number}", github=github_info_for(record))


def apply_issue_sync(cards: Sequence[Card], records: Iterable[IssueRecord]) -> Cards:
    """Merge a fetched issue list into the card list.

    Cards matched by issue number get refreshed GitHub metadata and keep
    every session field; unseen issues are appended as new idle cards.
    Cards with no matching record are kept as they are.

    Example:
        >>> merged = apply_issue_sync((), [IssueRecord(number=1, title="One")])
        >>> [(c.issue_number, c.status) for c in merged]
        [(1, 'idle')]
    """
    by_number = {record.number: record for record in records}
    merged: list[Card] = []
    seen: set[int] = set()
    for card in cards:
        number = card.issue_number
        record = by_number.get(number) if number is not None else None
        if record is None:
            merged.append(card)
            continue
        seen.add(record.number)
        github = github_info_for(record)
        if github == card.github:
            merged.append(card)
        else:
            merged.append(card.with_changes(github=github.model_dump()))
    for number, record in by_number.items():
        if number not in seen:
            merged.append(card_from_issue(record))
    return tuple(merged)
