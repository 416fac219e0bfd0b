"""Card status reconciliation.

``CardStatusReconciler`` owns the card list and the per-card cancellation
tokens. A status change returns the optimistic card list at once and, for
session transitions, schedules the orchestrator on the running event loop.
Completions are applied to the list as it is when they finish, and a
completion whose token was superseded by a newer operation on the same card
is dropped.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine, Iterable, Sequence
from pathlib import Path

from . import cards as card_ops
from . import log
from .cancellation import CancellationToken, TokenRegistry
from .card_status import CardStatusStore
from .errors import WorkSessionError
from .models import Card, CardStatus, IssueRecord, WorkSessionInfo
from .restore import RestoreResult, restore_worktree_state
from .result import Failure, Result, failure
from .session import WorkSessionOrchestrator

LOG_CATEGORY = "reconciler"

ChangeListener = Callable[[tuple[Card, ...]], None]


def _crashed(operation: str, card_id: str, exc: Exception) -> Failure[WorkSessionError]:
    log.error(
        f"Session {operation} crashed", category=LOG_CATEGORY, card=card_id, error=exc
    )
    return failure(
        WorkSessionError("worktree_failed", f"Session {operation} crashed", str(exc))
    )


class CardStatusReconciler:
    """Map card status transitions onto work session starts and stops.

    ``change_status`` must be called from code running on the event loop
    that should execute the scheduled orchestration.
    """

    def __init__(
        self,
        repo_root: Path,
        cards: Iterable[Card] = (),
        *,
        orchestrator: WorkSessionOrchestrator | None = None,
        store: CardStatusStore | None = None,
        on_change: ChangeListener | None = None,
    ) -> None:
        self.repo_root = repo_root
        self.orchestrator = orchestrator or WorkSessionOrchestrator()
        self.store = store or CardStatusStore()
        self.on_change = on_change
        self.tokens: TokenRegistry[str] = TokenRegistry()
        self._cards: tuple[Card, ...] = tuple(cards)
        self._tasks: dict[str, asyncio.Task[None]] = {}

    @property
    def cards(self) -> tuple[Card, ...]:
        return self._cards

    def _commit(self, cards: tuple[Card, ...]) -> tuple[Card, ...]:
        self._cards = cards
        if self.on_change is not None:
            self.on_change(cards)
        return cards

    def _commit_card(self, card: Card) -> tuple[Card, ...]:
        return self._commit(card_ops.replace_card(self._cards, card))

    def change_status(self, card_id: str, new_status: CardStatus) -> tuple[Card, ...]:
        """Apply a user status change and return the updated card list."""
        card = card_ops.find_card(self._cards, card_id)
        if card is None:
            log.warning("Status change for unknown card", category=LOG_CATEGORY, card=card_id)
            return self._cards
        if card.status == new_status:
            return self._cards

        log.info(
            "Card status change",
            category=LOG_CATEGORY,
            card=card_id,
            issue=card.issue_number,
            from_status=card.status,
            to_status=new_status,
        )
        if card.status == "idle" and new_status == "in_progress":
            return self._begin_start(card)
        if card.status == "in_progress" and new_status == "idle":
            return self._begin_stop(card)
        return self._plain_transition(card, new_status)

    def _plain_transition(self, card: Card, new_status: CardStatus) -> tuple[Card, ...]:
        updated = card_ops.set_status(card, new_status)
        if updated.worktree_created and updated.issue_number is not None:
            self.store.save(updated.issue_number, new_status)
        return self._commit_card(updated)

    def _schedule(
        self,
        card_id: str,
        build: Callable[[asyncio.Task[None] | None], Coroutine[object, object, None]],
    ) -> None:
        previous = self._tasks.get(card_id)
        task = asyncio.get_running_loop().create_task(build(previous))
        self._tasks = {**self._tasks, card_id: task}
        task.add_done_callback(lambda done: self._task_done(card_id, done))

    def _task_done(self, card_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(card_id) is task:
            self._tasks = {k: v for k, v in self._tasks.items() if k != card_id}
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            log.error(
                "Session task crashed", category=LOG_CATEGORY, card=card_id, error=exc
            )

    def _begin_start(self, card: Card) -> tuple[Card, ...]:
        card_id = card.session_uid
        token = self.tokens.issue(card_id)
        optimistic = card_ops.start_worktree_creation(card)
        cards = self._commit_card(optimistic)
        self._schedule(
            card_id,
            lambda previous: self._run_start(card_id, optimistic, token, previous),
        )
        return cards

    def _begin_stop(self, card: Card) -> tuple[Card, ...]:
        card_id = card.session_uid
        if card.worktree_operation == "creating" and card_id in self.tokens:
            log.info(
                "Cancelling in-flight start", category=LOG_CATEGORY, card=card_id
            )
            self.tokens.cancel(card_id)
            return self._commit_card(card_ops.start_worktree_removal(card))
        if not card.worktree_created:
            return self._plain_transition(card, "idle")

        token = self.tokens.issue(card_id)
        optimistic = card_ops.start_worktree_removal(card)
        cards = self._commit_card(optimistic)
        self._schedule(
            card_id,
            lambda previous: self._run_stop(card_id, optimistic, token, previous),
        )
        return cards

    async def _run_start(
        self,
        card_id: str,
        card: Card,
        token: CancellationToken,
        previous: asyncio.Task[None] | None,
    ) -> None:
        try:
            if previous is not None and not previous.done():
                await asyncio.wait({previous})
            try:
                outcome = await self.orchestrator.start(self.repo_root, card, token)
            except Exception as exc:
                outcome = _crashed("start", card_id, exc)
            self._finish_start(card_id, token, outcome)
        finally:
            self.tokens.release(card_id, token)

    async def _run_stop(
        self,
        card_id: str,
        card: Card,
        token: CancellationToken,
        previous: asyncio.Task[None] | None,
    ) -> None:
        try:
            if previous is not None and not previous.done():
                await asyncio.wait({previous})
            try:
                outcome = await self.orchestrator.stop(self.repo_root, card)
            except Exception as exc:
                outcome = _crashed("stop", card_id, exc)
            self._finish_stop(card_id, token, outcome)
        finally:
            self.tokens.release(card_id, token)

    def _current_for(self, card_id: str, token: CancellationToken) -> Card | None:
        if self.tokens.is_superseded(card_id, token):
            log.debug(
                "Dropping superseded completion", category=LOG_CATEGORY, card=card_id
            )
            return None
        current = card_ops.find_card(self._cards, card_id)
        if current is None:
            log.debug("Card removed before completion", category=LOG_CATEGORY, card=card_id)
        return current

    def _finish_start(
        self,
        card_id: str,
        token: CancellationToken,
        outcome: Result[WorkSessionInfo, WorkSessionError],
    ) -> None:
        current = self._current_for(card_id, token)
        if current is None:
            return
        if outcome.ok:
            info = outcome.value
            updated = card_ops.complete_worktree_creation(
                current, info.worktree_path, info.port
            )
            if updated.issue_number is not None:
                self.store.save(updated.issue_number, updated.status)
        else:
            error = outcome.error
            message = None if error.code == "cancelled" else error.describe()
            updated = card_ops.fail_worktree_creation(current, message)
        self._commit_card(updated)

    def _finish_stop(
        self,
        card_id: str,
        token: CancellationToken,
        outcome: Result[None, WorkSessionError],
    ) -> None:
        current = self._current_for(card_id, token)
        if current is None:
            return
        if outcome.ok:
            updated = card_ops.complete_worktree_removal(current)
            if updated.issue_number is not None:
                self.store.remove(updated.issue_number)
        else:
            updated = card_ops.fail_worktree_removal(current, outcome.error.describe())
        self._commit_card(updated)

    def apply_sync(self, records: Sequence[IssueRecord]) -> tuple[Card, ...]:
        """Merge fetched issues into the card list."""
        return self._commit(card_ops.apply_issue_sync(self._cards, records))

    async def restore(self) -> RestoreResult:
        """Restore session state from worktrees found on disk."""
        result = await restore_worktree_state(
            self._cards,
            self.repo_root,
            worktrees=self.orchestrator.worktrees,
            store=self.store,
        )
        self._commit(result.cards)
        return result

    async def wait_idle(self) -> None:
        """Wait until no session operation is in flight."""
        while self._tasks:
            await asyncio.gather(*self._tasks.values())
