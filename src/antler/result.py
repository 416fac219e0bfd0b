"""Typed success/failure results returned across component boundaries."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Success(Generic[T]):
    """Container for successful outcomes.

    Args:
        value: Typed payload returned by the operation.
    """

    value: T

    @property
    def ok(self) -> bool:
        return True


@dataclass(frozen=True)
class Failure(Generic[E]):
    """Container for expected failures.

    Args:
        error: Typed error value describing the failure.
    """

    error: E

    @property
    def ok(self) -> bool:
        return False


Result = Success[T] | Failure[E]


def success(value: T) -> Success[T]:
    """Create a successful result.

    Example:
        >>> success(3).value
        3
    """
    return Success(value=value)


def failure(error: E) -> Failure[E]:
    """Create a failed result.

    Example:
        >>> failure("boom").ok
        False
    """
    return Failure(error=error)
