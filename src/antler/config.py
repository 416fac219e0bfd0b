"""Configuration helpers for Antler.

This module reads and writes the user ``config.json`` settings file and
validates it with Pydantic models.

Example:
    >>> from antler.config import default_config
    >>> default_config().terminal.app
    'Terminal'
"""

import json
from pathlib import Path

from pydantic import BaseModel, ValidationError

from . import paths
from .errors import ConfigError
from .exec import RetryPolicy, ToolPaths
from .models import AntlerConfig


def load_json(path: Path) -> dict | None:
    """Load a JSON file if it exists.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed payload as a dict, or ``None`` if the file does not exist.

    Example:
        >>> load_json(Path("missing.json")) is None
        True
    """
    if not path.exists():
        return None
    with path.open("r", encoding="utf-8") as fh:
        return json.load(fh)


def write_json(path: Path, payload: dict | BaseModel) -> None:
    """Write a JSON payload to disk, creating parent directories.

    Args:
        path: Path to the JSON file to write.
        payload: Dict or Pydantic model to serialize.
    """
    if isinstance(payload, BaseModel):
        payload = payload.model_dump()
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(payload, fh, indent=2)
        fh.write("\n")


def default_config() -> AntlerConfig:
    return AntlerConfig()


def parse_config(payload: object, *, source: str = "<memory>") -> AntlerConfig:
    """Validate a raw settings payload.

    Raises:
        ConfigError: When the payload does not match the settings schema.
    """
    if payload is None:
        return default_config()
    if not isinstance(payload, dict):
        raise ConfigError(source, "expected a JSON object")
    try:
        return AntlerConfig.model_validate(payload)
    except ValidationError as exc:
        raise ConfigError(source, str(exc)) from exc


def load_config(path: Path | None = None) -> AntlerConfig:
    """Load settings from disk; a missing file yields defaults.

    Raises:
        ConfigError: When the file is not valid JSON or fails validation.

    Example:
        >>> load_config(Path("missing.json")).git.path
        'git'
    """
    target = path or paths.config_path()
    try:
        payload = load_json(target)
    except json.JSONDecodeError as exc:
        raise ConfigError(str(target), f"malformed JSON: {exc}") from exc
    except OSError as exc:
        raise ConfigError(str(target), str(exc)) from exc
    return parse_config(payload, source=str(target))


def write_config(config: AntlerConfig, path: Path | None = None) -> Path:
    """Persist settings and return the written path."""
    target = path or paths.config_path()
    write_json(target, config)
    return target


def tool_paths(config: AntlerConfig) -> ToolPaths:
    """Return executable paths for the external tools."""
    return ToolPaths(
        git=config.git.path,
        docker=config.devcontainer.docker_path,
        devcontainer=config.devcontainer.cli_path,
    )


def retry_policy(config: AntlerConfig) -> RetryPolicy:
    """Return the retry policy for short network-touching commands."""
    return RetryPolicy(
        max_retries=config.commands.max_retries,
        base_delay=config.commands.retry_base_delay_seconds,
        max_delay=config.commands.retry_max_delay_seconds,
    )
