import json
from pathlib import Path

import pytest

import antler.config as config
import antler.paths as paths
from antler.errors import ConfigError


def test_missing_config_yields_defaults(tmp_path: Path) -> None:
    loaded = config.load_config(tmp_path / "config.json")

    assert loaded.terminal.app == "Terminal"
    assert loaded.agent.auto_prompt is True
    assert loaded.devcontainer.port_range_start == 3000
    assert loaded.devcontainer.port_range_end == 3100
    assert loaded.commands.timeout_seconds == 30


def test_write_then_load_config(tmp_path: Path) -> None:
    target = tmp_path / "nested" / "config.json"
    settings = config.default_config()
    settings.terminal.app = "iTerm"
    settings.devcontainer.port_range_start = 4000
    settings.devcontainer.port_range_end = 4050

    config.write_config(settings, target)
    loaded = config.load_config(target)

    assert loaded.terminal.app == "iTerm"
    assert loaded.devcontainer.port_range_end == 4050


def test_malformed_json_raises_config_error(tmp_path: Path) -> None:
    target = tmp_path / "config.json"
    target.write_text("{", encoding="utf-8")

    with pytest.raises(ConfigError) as excinfo:
        config.load_config(target)

    assert str(target) in str(excinfo.value)


def test_schema_violation_raises_config_error(tmp_path: Path) -> None:
    target = tmp_path / "config.json"
    target.write_text(
        json.dumps({"devcontainer": {"port_range_start": 3100, "port_range_end": 3000}}),
        encoding="utf-8",
    )

    with pytest.raises(ConfigError):
        config.load_config(target)


def test_non_object_payload_is_rejected() -> None:
    with pytest.raises(ConfigError):
        config.parse_config(["not", "an", "object"])


def test_env_var_overrides_config_path(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    target = tmp_path / "custom.json"
    target.write_text(json.dumps({"git": {"path": "/usr/local/bin/git"}}), encoding="utf-8")
    monkeypatch.setenv(paths.CONFIG_ENV_VAR, str(target))

    loaded = config.load_config()

    assert loaded.git.path == "/usr/local/bin/git"
    assert config.tool_paths(loaded).git == "/usr/local/bin/git"


def test_retry_policy_follows_commands_section() -> None:
    settings = config.parse_config(
        {"commands": {"max_retries": 3, "retry_base_delay_seconds": 0.5}}
    )

    policy = config.retry_policy(settings)

    assert policy.max_retries == 3
    assert policy.base_delay == 0.5
    assert policy.max_delay == 10
