# ruff: noqa: E402

import sys
from pathlib import Path

import pytest
from _pytest.doctest import DoctestModule

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

import antler.log as antler_log
import antler.paths as paths

DOCTEST_MODULES = {
    ROOT / "src" / "antler" / "__init__.py",
    ROOT / "src" / "antler" / "branching.py",
    ROOT / "src" / "antler" / "cards.py",
    ROOT / "src" / "antler" / "config.py",
    ROOT / "src" / "antler" / "devcontainer.py",
    ROOT / "src" / "antler" / "errors.py",
    ROOT / "src" / "antler" / "exec.py",
    ROOT / "src" / "antler" / "io.py",
    ROOT / "src" / "antler" / "log.py",
    ROOT / "src" / "antler" / "models.py",
    ROOT / "src" / "antler" / "paths.py",
    ROOT / "src" / "antler" / "ports.py",
    ROOT / "src" / "antler" / "result.py",
    ROOT / "src" / "antler" / "session.py",
    ROOT / "src" / "antler" / "worktrees.py",
}


@pytest.fixture(autouse=True)
def _isolated_antler_home(
    tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch
) -> None:
    data_dir = tmp_path_factory.mktemp("antler-data")
    monkeypatch.setattr(paths, "antler_data_dir", lambda: data_dir)
    monkeypatch.delenv(paths.CONFIG_ENV_VAR, raising=False)
    monkeypatch.setattr(antler_log, "_configured_level", antler_log.LogLevel.ERROR)
    monkeypatch.setattr(antler_log, "_no_color", None)


def pytest_collect_file(
    parent: pytest.Collector, file_path: Path
) -> DoctestModule | None:
    path = file_path if isinstance(file_path, Path) else Path(str(file_path))
    if path in DOCTEST_MODULES:
        return DoctestModule.from_parent(parent, path=path)
    return None
