# mlxbox/services/runtime_paths.py
"""
Filesystem layout of the private runtime root.

Everything MLXBox installs or produces lives under one directory:

    <root>/
      config/user_settings.json
      logs/
      runtime/venv/                 private interpreter environment (tool prefix)
      runtime/bootstrap-state.json  versioned bootstrap marker
      runtime/local_model_server.json
      models/                       downloaded model weights
      training-datasets/
      training-runs/                adapter artifacts

Directories are created lazily on first use and never deleted here.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

from mlxbox.config.settings import get_default_runtime_root
from mlxbox.services.exceptions import RuntimeSupervisorError

logger = logging.getLogger(__name__)


def _ensure_dir(path: Path) -> Path:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise RuntimeSupervisorError(
            f"Cannot create runtime directory {path}: {e}"
        ) from e
    return path


class RuntimePaths:
    def __init__(self, root: Optional[Path] = None) -> None:
        self._root = Path(root) if root is not None else None

    @property
    def root(self) -> Path:
        root = self._root if self._root is not None else get_default_runtime_root()
        return _ensure_dir(root.expanduser().absolute())

    @property
    def runtime_dir(self) -> Path:
        return _ensure_dir(self.root / "runtime")

    @property
    def venv_root(self) -> Path:
        return self.runtime_dir / "venv"

    @property
    def venv_bin_dir(self) -> Path:
        return self.venv_root / ("Scripts" if os.name == "nt" else "bin")

    def venv_binary(self, name: str) -> Path:
        if os.name == "nt" and not Path(name).suffix:
            name = f"{name}.exe"
        return self.venv_bin_dir / name

    @property
    def venv_python(self) -> Path:
        return self.venv_binary("python" if os.name == "nt" else "python3")

    @property
    def bootstrap_state_file(self) -> Path:
        return self.runtime_dir / "bootstrap-state.json"

    @property
    def server_state_file(self) -> Path:
        return self.runtime_dir / "local_model_server.json"

    @property
    def config_dir(self) -> Path:
        return _ensure_dir(self.root / "config")

    @property
    def user_settings_file(self) -> Path:
        return self.config_dir / "user_settings.json"

    @property
    def logs_dir(self) -> Path:
        return _ensure_dir(self.root / "logs")

    @property
    def models_root(self) -> Path:
        return _ensure_dir(self.root / "models")

    @property
    def training_datasets_root(self) -> Path:
        return _ensure_dir(self.root / "training-datasets")

    def training_runs_root(self, create: bool = True) -> Path:
        path = self.root / "training-runs"
        return _ensure_dir(path) if create else path


def is_executable_file(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


_DEFAULT_PATHS = RuntimePaths()


def get_runtime_paths() -> RuntimePaths:
    return _DEFAULT_PATHS
