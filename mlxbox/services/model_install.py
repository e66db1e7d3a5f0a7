# mlxbox/services/model_install.py
"""
Hugging Face model downloads into <root>/models.

A model id "org/name" is stored in <root>/models/org__name. Downloads go
through the huggingface_hub CLIs installed by the runtime bootstrap
(``huggingface-cli`` first, ``hf`` as fallback). A failed download leaves
nothing behind.
"""

from __future__ import annotations

import logging
import shutil
import threading
from pathlib import Path
from typing import Optional

from mlxbox.services import install_resolver
from mlxbox.services.exceptions import CommandFailedError, ModelInstallError
from mlxbox.services.runtime_bootstrap import _run_command
from mlxbox.services.runtime_paths import RuntimePaths, get_runtime_paths

logger = logging.getLogger(__name__)

_ID_SEPARATOR = "__"


def folder_name_for(model_id: str) -> str:
    return model_id.replace("/", _ID_SEPARATOR)


def model_id_for(folder_name: str) -> str:
    return folder_name.replace(_ID_SEPARATOR, "/")


def _huggingface_cli_args(executable: str, model_id: str, target: Path, token: Optional[str]) -> list[str]:
    args = [
        executable, "download", model_id,
        "--local-dir", str(target),
        "--local-dir-use-symlinks", "False",
    ]
    if token:
        args += ["--token", token]
    return args


def _hf_args(executable: str, model_id: str, target: Path, token: Optional[str]) -> list[str]:
    args = [
        executable, "download", model_id,
        "--repo-type", "model",
        "--local-dir", str(target),
    ]
    if token:
        args += ["--token", token]
    return args


_DOWNLOADERS = (
    ("huggingface-cli", _huggingface_cli_args),
    ("hf", _hf_args),
)


class ModelInstallManager:
    def __init__(self, paths: Optional[RuntimePaths] = None) -> None:
        self.paths = paths or get_runtime_paths()
        self._lock = threading.Lock()

    def local_path(self, model_id: str) -> Path:
        """Directory for ``model_id``; always a direct child of models_root.

        Raises:
            ModelInstallError: the id is empty, has "." or ".." parts, or
                would otherwise resolve outside models_root
        """
        root = self.paths.models_root
        parts = model_id.split("/")
        if "\\" in model_id or any(part in ("", ".", "..") for part in parts):
            raise ModelInstallError(f"Invalid model id: {model_id!r}")
        target = root / folder_name_for(model_id)
        if target.resolve().parent != root.resolve():
            raise ModelInstallError(f"Invalid model id: {model_id!r}")
        return target

    def is_installed(self, model_id: str) -> bool:
        path = self.local_path(model_id)
        return path.is_dir() and any(path.iterdir())

    def installed_model_ids(self) -> list[str]:
        root = self.paths.models_root
        ids = [
            model_id_for(entry.name)
            for entry in root.iterdir()
            if entry.is_dir() and not entry.name.startswith(".")
        ]
        return sorted(ids)

    def install(self, model_id: str, token: Optional[str] = None) -> Path:
        """Download ``model_id`` unless already present.

        Raises:
            ModelInstallError: no downloader available, or every downloader failed
        """
        model_id = model_id.strip()
        if not model_id:
            raise ModelInstallError("Model id is empty.")

        with self._lock:
            target = self.local_path(model_id)
            if self.is_installed(model_id):
                logger.info("Model already installed: %s", target)
                return target

            last_error: Optional[Exception] = None
            attempted = False
            for binary, build_args in _DOWNLOADERS:
                executable = install_resolver.resolve_executable(binary, self.paths)
                if executable is None:
                    continue
                attempted = True
                try:
                    target.mkdir(parents=True, exist_ok=True)
                    _run_command(build_args(executable, model_id, target, token))
                except (CommandFailedError, OSError) as e:
                    logger.warning("Download with %s failed: %s", binary, e)
                    last_error = e
                    self._remove_partial(target)
                    continue
                logger.info("Installed model %s at %s", model_id, target)
                return target

            if not attempted:
                raise ModelInstallError(
                    "Hugging Face CLI not found. Run runtime install/repair first."
                )
            raise ModelInstallError(f"Failed to download {model_id}: {last_error}") from last_error

    def delete(self, model_id: str) -> bool:
        """Remove a downloaded model; returns False when it was not present."""
        with self._lock:
            target = self.local_path(model_id)
            if not target.exists():
                return False
            try:
                shutil.rmtree(target)
            except OSError as e:
                raise ModelInstallError(f"Cannot delete {target}: {e}") from e
            logger.info("Deleted model %s", model_id)
            return True

    def _remove_partial(self, target: Path) -> None:
        try:
            shutil.rmtree(target, ignore_errors=False)
        except FileNotFoundError:
            pass
        except OSError:
            logger.warning("Failed to remove partial download: %s", target, exc_info=True)
