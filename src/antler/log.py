"""Structured terminal logging for Antler services."""

from __future__ import annotations

import os
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import IntEnum

from rich.console import Console
from rich.text import Text


class LogLevel(IntEnum):
    TRACE = 10
    DEBUG = 20
    INFO = 30
    SUCCESS = 35
    WARNING = 40
    ERROR = 50


@dataclass(frozen=True)
class LogRecord:
    """One structured log event."""

    level: LogLevel
    category: str
    message: str
    context: dict[str, object] = field(default_factory=dict)


LogSink = Callable[[LogRecord], None]

_LEVEL_BY_NAME = {
    "trace": LogLevel.TRACE,
    "debug": LogLevel.DEBUG,
    "info": LogLevel.INFO,
    "success": LogLevel.SUCCESS,
    "warning": LogLevel.WARNING,
    "warn": LogLevel.WARNING,
    "error": LogLevel.ERROR,
}
LEVEL_NAMES = tuple(_LEVEL_BY_NAME)
DEFAULT_CATEGORY = "system"
_DEFAULT_LEVEL = LogLevel.INFO
_configured_level = None
_no_color: bool | None = None
_sinks: list[LogSink] = []


def _normalize_level(value: str | None) -> LogLevel:
    if value is None:
        return _DEFAULT_LEVEL
    normalized = value.strip().lower()
    if not normalized:
        return _DEFAULT_LEVEL
    return _LEVEL_BY_NAME.get(normalized, _DEFAULT_LEVEL)


def configured_level() -> LogLevel:
    global _configured_level
    if _configured_level is None:
        _configured_level = _normalize_level(os.environ.get("ANTLER_LOG_LEVEL"))
    return _configured_level


def set_level(value: str | None) -> None:
    """Set the active log level."""
    global _configured_level
    _configured_level = _normalize_level(value)


def set_no_color(value: bool) -> None:
    """Force-disable (or re-enable) colorized console output."""
    global _no_color
    _no_color = value


def is_enabled(level: LogLevel) -> bool:
    return level >= configured_level()


def add_sink(sink: LogSink) -> None:
    """Register a callable that receives every structured record."""
    _sinks.append(sink)


def remove_sink(sink: LogSink) -> None:
    if sink in _sinks:
        _sinks.remove(sink)


def _color_disabled() -> bool:
    if _no_color is not None:
        return _no_color
    return bool(os.environ.get("NO_COLOR") or os.environ.get("ANTLER_NO_COLOR"))


def _console(*, stderr: bool) -> Console:
    return Console(
        file=sys.stderr if stderr else sys.stdout,
        soft_wrap=True,
        highlight=False,
        no_color=_color_disabled(),
    )


def _default_style(level: LogLevel) -> str:
    if level is LogLevel.TRACE:
        return "dim"
    if level is LogLevel.DEBUG:
        return "cyan"
    if level is LogLevel.SUCCESS:
        return "green"
    if level is LogLevel.WARNING:
        return "yellow"
    if level is LogLevel.ERROR:
        return "bold red"
    return ""


def format_context(context: dict[str, object]) -> str:
    """Render context as ``key=value`` pairs.

    Example:
        >>> format_context({"port": 3000, "branch": "7-issue"})
        'port=3000 branch=7-issue'
    """
    return " ".join(f"{key}={value}" for key, value in context.items())


def emit(
    level: LogLevel,
    message: str,
    *,
    category: str = DEFAULT_CATEGORY,
    context: dict[str, object] | None = None,
    style: str | None = None,
    stderr: bool | None = None,
) -> None:
    record = LogRecord(
        level=level, category=category, message=message, context=dict(context or {})
    )
    for sink in list(_sinks):
        try:
            sink(record)
        except Exception as exc:
            # Sink failures never reach the caller.
            _console(stderr=True).print(
                Text(f"[log] sink {sink!r} failed: {exc}", style="dim")
            )
    if not is_enabled(level):
        return
    target_stderr = stderr if stderr is not None else level >= LogLevel.WARNING
    text = Text(f"[{category}] ", style="magenta")
    text.append(message, style=style or _default_style(level))
    if record.context:
        text.append(f" {format_context(record.context)}", style="dim")
    _console(stderr=target_stderr).print(text)


def trace(message: str, *, category: str = DEFAULT_CATEGORY, **context: object) -> None:
    emit(LogLevel.TRACE, message, category=category, context=context, stderr=False)


def debug(message: str, *, category: str = DEFAULT_CATEGORY, **context: object) -> None:
    emit(LogLevel.DEBUG, message, category=category, context=context, stderr=False)


def info(message: str, *, category: str = DEFAULT_CATEGORY, **context: object) -> None:
    emit(LogLevel.INFO, message, category=category, context=context, stderr=False)


def success(
    message: str, *, category: str = DEFAULT_CATEGORY, **context: object
) -> None:
    emit(LogLevel.SUCCESS, message, category=category, context=context, stderr=False)


def warning(
    message: str, *, category: str = DEFAULT_CATEGORY, **context: object
) -> None:
    emit(LogLevel.WARNING, message, category=category, context=context, stderr=True)


def error(message: str, *, category: str = DEFAULT_CATEGORY, **context: object) -> None:
    emit(LogLevel.ERROR, message, category=category, context=context, stderr=True)
