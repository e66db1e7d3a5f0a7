from __future__ import annotations

import os
from pathlib import Path

import pytest

from mlxbox.services.exceptions import RuntimeSupervisorError
from mlxbox.services.runtime_paths import RuntimePaths, get_runtime_paths, is_executable_file


def test_layout_is_rooted_and_created_lazily(tmp_path: Path) -> None:
    root = tmp_path / "root"
    paths = RuntimePaths(root)
    assert not root.exists()

    assert paths.runtime_dir == root / "runtime"
    assert paths.logs_dir == root / "logs"
    assert paths.models_root == root / "models"
    assert paths.training_datasets_root == root / "training-datasets"
    assert paths.user_settings_file == root / "config" / "user_settings.json"

    for directory in ("runtime", "logs", "models", "training-datasets", "config"):
        assert (root / directory).is_dir()


def test_training_runs_root_can_be_queried_without_creating(tmp_path: Path) -> None:
    paths = RuntimePaths(tmp_path / "root")

    runs = paths.training_runs_root(create=False)

    assert runs == tmp_path / "root" / "training-runs"
    assert not runs.exists()
    assert paths.training_runs_root().is_dir()


def test_state_files_live_under_runtime_dir(paths: RuntimePaths) -> None:
    assert paths.bootstrap_state_file.parent == paths.runtime_dir
    assert paths.server_state_file.parent == paths.runtime_dir
    assert paths.venv_root == paths.runtime_dir / "venv"


@pytest.mark.skipif(os.name == "nt", reason="POSIX venv layout")
def test_venv_binaries_on_posix(paths: RuntimePaths) -> None:
    assert paths.venv_bin_dir == paths.venv_root / "bin"
    assert paths.venv_binary("mlx_lm.server") == paths.venv_root / "bin" / "mlx_lm.server"
    assert paths.venv_python == paths.venv_root / "bin" / "python3"


def test_unwritable_root_raises_supervisor_error(tmp_path: Path) -> None:
    blocker = tmp_path / "file"
    blocker.write_text("not a directory", encoding="utf-8")
    paths = RuntimePaths(blocker / "root")

    with pytest.raises(RuntimeSupervisorError, match="Cannot create runtime directory"):
        _ = paths.runtime_dir


def test_default_instance_follows_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MLXBOX_HOME", str(tmp_path / "env-root"))

    assert get_runtime_paths().root == (tmp_path / "env-root").absolute()


def test_is_executable_file(tmp_path: Path) -> None:
    plain = tmp_path / "plain.txt"
    plain.write_text("x", encoding="utf-8")

    assert not is_executable_file(tmp_path / "missing")
    assert not is_executable_file(tmp_path)
    if os.name != "nt":
        assert not is_executable_file(plain)
        plain.chmod(0o755)
        assert is_executable_file(plain)
