"""Durable issue-number to card-status map used to restore the board.

The file is read in full and rewritten in full on every change. Every
failure is logged and swallowed; losing this map only costs a default status
on the next launch.
"""

from __future__ import annotations

from pathlib import Path

from . import config, log, paths
from .models import CARD_STATUS_VALUES, PERSISTABLE_STATUSES, CardStatus

LOG_CATEGORY = "card-status"
ROOT_KEY = "byIssueNumber"


class CardStatusStore:
    """JSON-backed ``{"byIssueNumber": {"<n>": "<status>"}}`` store."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path or paths.card_status_path()

    def load(self) -> dict[int, CardStatus]:
        """Return the persisted map; missing or invalid files load as empty."""
        try:
            payload = config.load_json(self.path)
        except (OSError, ValueError) as exc:
            log.warning(
                "Failed to read card status file",
                category=LOG_CATEGORY,
                path=self.path,
                error=exc,
            )
            return {}
        if payload is None:
            return {}
        entries = payload.get(ROOT_KEY) if isinstance(payload, dict) else None
        if not isinstance(entries, dict):
            log.warning("Ignoring malformed card status file", category=LOG_CATEGORY)
            return {}
        statuses: dict[int, CardStatus] = {}
        for key, value in entries.items():
            if not str(key).isdecimal() or value not in CARD_STATUS_VALUES:
                continue
            statuses[int(key)] = value
        return statuses

    def _write(self, statuses: dict[int, CardStatus]) -> bool:
        payload = {ROOT_KEY: {str(key): value for key, value in sorted(statuses.items())}}
        try:
            config.write_json(self.path, payload)
        except OSError as exc:
            log.warning(
                "Failed to write card status file",
                category=LOG_CATEGORY,
                path=self.path,
                error=exc,
            )
            return False
        return True

    def get(self, issue_number: int) -> CardStatus | None:
        return self.load().get(issue_number)

    def save(self, issue_number: int, status: CardStatus) -> bool:
        """Persist ``status``; ``idle`` removes the entry instead."""
        if status not in PERSISTABLE_STATUSES:
            return self.remove(issue_number)
        statuses = self.load()
        statuses = {**statuses, issue_number: status}
        saved = self._write(statuses)
        if saved:
            log.debug(
                "Saved card status",
                category=LOG_CATEGORY,
                issue=issue_number,
                status=status,
            )
        return saved

    def remove(self, issue_number: int) -> bool:
        statuses = self.load()
        if issue_number not in statuses:
            return True
        remaining = {key: value for key, value in statuses.items() if key != issue_number}
        removed = self._write(remaining)
        if removed:
            log.debug("Removed card status", category=LOG_CATEGORY, issue=issue_number)
        return removed
