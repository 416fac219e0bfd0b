"""Port discovery, allocation and the per-worktree ``.port`` file."""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from pathlib import Path

from . import log, paths
from .errors import DevcontainerError
from .result import Result, failure, success

DEFAULT_PORT_RANGE_START = 3000
DEFAULT_PORT_RANGE_END = 3100

_BOUND_PORT_RE = re.compile(r"(?:[\d.]+:)?(\d+)(?:->|/)")


@dataclass(frozen=True)
class PortRange:
    """Inclusive range of host ports handed to session environments.

    Example:
        >>> 3100 in PortRange()
        True
        >>> 3101 in PortRange()
        False
    """

    start: int = DEFAULT_PORT_RANGE_START
    end: int = DEFAULT_PORT_RANGE_END

    def __post_init__(self) -> None:
        if self.end < self.start:
            raise ValueError(f"invalid port range {self.start}-{self.end}")

    def __contains__(self, port: object) -> bool:
        return isinstance(port, int) and self.start <= port <= self.end

    def __iter__(self):
        return iter(range(self.start, self.end + 1))

    def describe(self) -> str:
        return f"{self.start}-{self.end}"


def parse_bound_ports(text: str) -> set[int]:
    """Extract host ports from ``docker ps --format {{.Ports}}`` output.

    Example:
        >>> sorted(parse_bound_ports("0.0.0.0:3000->3000/tcp, :::3001->80/tcp"))
        [80, 3000, 3001]
    """
    ports: set[int] = set()
    for match in _BOUND_PORT_RE.finditer(text):
        try:
            ports.add(int(match.group(1)))
        except ValueError:
            continue
    return ports


def first_available_port(
    used: Iterable[int], port_range: PortRange = PortRange()
) -> Result[int, DevcontainerError]:
    """Return the lowest port in ``port_range`` that is not in ``used``.

    Example:
        >>> first_available_port({3000, 3001}).value
        3002
        >>> first_available_port(range(3000, 3101)).error.code
        'no_available_ports'
    """
    taken = set(used)
    for port in port_range:
        if port not in taken:
            return success(port)
    return failure(
        DevcontainerError(
            "no_available_ports",
            f"No available ports in range {port_range.describe()}",
        )
    )


def write_port_file(worktree: Path, port: int) -> Result[Path, DevcontainerError]:
    """Record the allocated port inside the worktree."""
    target = paths.port_file_path(worktree)
    try:
        target.write_text(f"{port}\n", encoding="utf-8")
    except OSError as exc:
        log.warning(
            "Failed to write port file", category="devcontainer", path=target, error=exc
        )
        return failure(
            DevcontainerError("start_failed", "Failed to write port file", str(exc))
        )
    return success(target)


def read_port_file(worktree: Path) -> int | None:
    """Return the recorded port, or ``None`` when missing or unreadable."""
    target = paths.port_file_path(worktree)
    try:
        raw = target.read_text(encoding="utf-8").strip()
    except OSError:
        return None
    if not raw.isdigit():
        return None
    return int(raw)
