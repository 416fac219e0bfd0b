"""Pydantic models for Antler cards, session records and configuration."""

from __future__ import annotations

import datetime as dt
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

CARD_STATUS_VALUES = ("idle", "in_progress", "waiting", "done")
CardStatus = Literal["idle", "in_progress", "waiting", "done"]

WORKTREE_OPERATION_VALUES = ("none", "creating", "removing")
WorktreeOperation = Literal["none", "creating", "removing"]

PERSISTABLE_STATUSES: tuple[CardStatus, ...] = ("in_progress", "waiting", "done")


def utc_now() -> str:
    """Return the current UTC timestamp in ISO-8601 format.

    Example:
        >>> utc_now().endswith("Z")
        True
    """
    now = dt.datetime.now(tz=dt.timezone.utc).replace(microsecond=0)
    return now.isoformat().replace("+00:00", "Z")


def new_session_uid() -> str:
    return str(uuid.uuid4())


class PullRequestInfo(BaseModel):
    """Pull request linked to an issue card.

    Example:
        >>> PullRequestInfo(number=5, branch_name="feature/login").branch_name
        'feature/login'
    """

    model_config = ConfigDict(frozen=True)

    number: int | None = None
    branch_name: str | None = None

    @field_validator("branch_name", mode="before")
    @classmethod
    def normalize_branch_name(cls, value: object) -> object:
        if isinstance(value, str):
            normalized = value.strip()
            return normalized or None
        return value


class GitHubInfo(BaseModel):
    """Issue and pull request metadata read by the orchestrator."""

    model_config = ConfigDict(frozen=True)

    title: str = ""
    issue_number: int | None = None
    pr: PullRequestInfo | None = None
    state: str = "open"


class Card(BaseModel):
    """A unit of work on the board.

    Cards are immutable: every change produces a new record via
    ``model_copy``. ``worktree_created`` implies ``worktree_path`` is set.
    """

    model_config = ConfigDict(frozen=True)

    session_uid: str = Field(default_factory=new_session_uid)
    name: str = ""
    status: CardStatus = "idle"
    has_error: bool = False
    worktree_created: bool = False
    worktree_operation: WorktreeOperation = "none"
    worktree_error: str | None = None
    worktree_path: str | None = None
    port: int | None = None
    github: GitHubInfo = Field(default_factory=GitHubInfo)
    created_at: str = Field(default_factory=utc_now)
    updated_at: str = Field(default_factory=utc_now)

    @model_validator(mode="after")
    def check_worktree_path(self) -> Card:
        if self.worktree_created and not self.worktree_path:
            raise ValueError("worktree_created requires worktree_path")
        return self

    @property
    def issue_number(self) -> int | None:
        return self.github.issue_number

    @property
    def pr_branch_name(self) -> str | None:
        if self.github.pr is None:
            return None
        return self.github.pr.branch_name

    def with_changes(self, **changes: object) -> Card:
        """Return a validated copy with ``changes`` applied and a fresh timestamp."""
        payload = self.model_dump()
        payload.update(changes)
        payload["updated_at"] = utc_now()
        return Card.model_validate(payload)


class IssueRecord(BaseModel):
    """Issue as produced by the issue-tracker sync."""

    model_config = ConfigDict(frozen=True)

    number: int
    title: str = ""
    state: str = "open"
    pr_number: int | None = None
    pr_branch_name: str | None = None


class WorkSessionInfo(BaseModel):
    """Successful outcome of a work session start."""

    model_config = ConfigDict(frozen=True)

    branch_name: str
    worktree_path: str
    port: int


@dataclass(frozen=True)
class WorktreeInfo:
    """A worktree as reported by ``git worktree list --porcelain``."""

    path: Path
    branch_name: str


class TerminalSection(BaseModel):
    """Terminal integration settings.

    Attributes:
        app: Terminal application used to open session workspaces.
    """

    model_config = ConfigDict(extra="allow")

    app: str = "Terminal"

    @field_validator("app", mode="before")
    @classmethod
    def normalize_app(cls, value: object) -> object:
        if value is None:
            return "Terminal"
        if isinstance(value, str):
            return value.strip() or "Terminal"
        return value


class AgentSection(BaseModel):
    """Agent launch settings.

    Attributes:
        auto_prompt: Send the issue prompt automatically when a session opens.
    """

    model_config = ConfigDict(extra="allow")

    auto_prompt: bool = True


class GitSection(BaseModel):
    """Git configuration.

    Attributes:
        path: Git executable path (default ``git``).

    Example:
        >>> GitSection(path=" ").path
        'git'
    """

    model_config = ConfigDict(extra="allow")

    path: str = "git"

    @field_validator("path", mode="before")
    @classmethod
    def normalize_path(cls, value: object) -> object:
        if value is None:
            return "git"
        if isinstance(value, str):
            normalized = value.strip()
            return normalized or "git"
        return value


class DevcontainerSection(BaseModel):
    """Container environment settings."""

    model_config = ConfigDict(extra="allow")

    cli_path: str = "devcontainer"
    docker_path: str = "docker"
    port_range_start: int = Field(default=3000, ge=1, le=65535)
    port_range_end: int = Field(default=3100, ge=1, le=65535)
    start_timeout_seconds: float = Field(default=300.0, gt=0)

    @model_validator(mode="after")
    def check_port_range(self) -> DevcontainerSection:
        if self.port_range_end < self.port_range_start:
            raise ValueError("port_range_end must be >= port_range_start")
        return self


class CommandsSection(BaseModel):
    """Defaults for short external commands."""

    model_config = ConfigDict(extra="allow")

    timeout_seconds: float = Field(default=30.0, gt=0)
    max_retries: int = Field(default=0, ge=0)
    retry_base_delay_seconds: float = Field(default=1.0, ge=0)
    retry_max_delay_seconds: float = Field(default=10.0, ge=0)


class AntlerConfig(BaseModel):
    """User settings for Antler.

    Example:
        >>> AntlerConfig().devcontainer.port_range_start
        3000
    """

    model_config = ConfigDict(extra="allow")

    terminal: TerminalSection = Field(default_factory=TerminalSection)
    agent: AgentSection = Field(default_factory=AgentSection)
    git: GitSection = Field(default_factory=GitSection)
    devcontainer: DevcontainerSection = Field(default_factory=DevcontainerSection)
    commands: CommandsSection = Field(default_factory=CommandsSection)
