"""Helpers for session branch naming."""

from __future__ import annotations

import re

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_ISSUE_BRANCH_RE = re.compile(r"^([0-9]+)-")

MAX_SLUG_LENGTH = 50
EMPTY_SLUG_FALLBACK = "issue"


def slugify_title(title: str, *, max_len: int = MAX_SLUG_LENGTH) -> str:
    """Return a lowercase, hyphenated slug for a title.

    Example:
        >>> slugify_title("  Fix Login Bug!! ")
        'fix-login-bug'
    """
    slug = _NON_ALNUM_RE.sub("-", title.lower()).strip("-")
    if max_len:
        slug = slug[:max_len]
    return slug


def branch_name_for(issue_number: int, title: str) -> str:
    """Return the session branch name for an issue.

    Example:
        >>> branch_name_for(42, "Fix Login Bug!!")
        '42-fix-login-bug'
        >>> branch_name_for(7, "!!!")
        '7-issue'
    """
    slug = slugify_title(title) or EMPTY_SLUG_FALLBACK
    return f"{issue_number}-{slug}"


def issue_number_from_branch(branch_name: str) -> int | None:
    """Parse the issue number prefix of a session branch name.

    Example:
        >>> issue_number_from_branch("42-fix-login-bug")
        42
        >>> issue_number_from_branch("feature/login") is None
        True
    """
    match = _ISSUE_BRANCH_RE.match(branch_name)
    if match is None:
        return None
    return int(match.group(1))
