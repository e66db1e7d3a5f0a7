from __future__ import annotations

import stat
import sys
from pathlib import Path

import pytest


# Ensure the project root is importable when running `pytest` via its entrypoint
# (e.g., `uv run --extra test pytest`), where `sys.path[0]` may not be the repo root.
_PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(_PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(_PROJECT_ROOT))

from mlxbox.config.settings import AppSettings, invalidate_settings_cache  # noqa: E402
from mlxbox.services.runtime_paths import RuntimePaths  # noqa: E402

posix_only = pytest.mark.skipif(
    sys.platform == "win32", reason="fake executables are POSIX shell scripts"
)


def write_executable(path: Path, body: str = "exit 0\n") -> Path:
    """Write a small /bin/sh script and mark it executable."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture(autouse=True)
def _isolated_runtime_root(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    monkeypatch.setenv("MLXBOX_HOME", str(tmp_path / "default-root"))
    invalidate_settings_cache()
    yield
    invalidate_settings_cache()


@pytest.fixture
def paths(tmp_path: Path) -> RuntimePaths:
    return RuntimePaths(tmp_path / "root")


@pytest.fixture
def settings() -> AppSettings:
    return AppSettings()


@pytest.fixture
def fake_venv(paths: RuntimePaths):
    """Populate the private prefix with fake entry points."""

    def _populate(*names: str) -> list[Path]:
        return [write_executable(paths.venv_binary(name)) for name in names]

    return _populate
