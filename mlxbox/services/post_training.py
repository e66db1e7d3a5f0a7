# mlxbox/services/post_training.py
"""
LoRA post-training runner (mlx_lm.lora) and dataset scaffolding.

- One training subprocess per manager. A second run while one is in
  flight fails immediately with AlreadyRunningError; nothing is queued.
- Each run gets a fresh adapters-<timestamp> directory whose metadata is
  written before the trainer starts.
- run_lora_training() blocks until the trainer exits and returns the exit
  code plus the combined stdout/stderr. A non-zero exit is a result, not
  an exception.
- cancel() only signals the trainer; the in-flight run observes the exit.
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import threading
from pathlib import Path
from typing import Optional, Sequence

from mlxbox.config.settings import AppSettings
from mlxbox.models.types import (
    DatasetScaffoldResult,
    TrainingDatasetFormat,
    TrainingRunResult,
    TrainingState,
)
from mlxbox.services import adapter_registry
from mlxbox.services.exceptions import (
    AlreadyRunningError,
    MissingDependencyError,
    RuntimeSupervisorError,
)
from mlxbox.services.runtime_paths import RuntimePaths, get_runtime_paths, is_executable_file
from mlxbox.services.state_files import utc_now

logger = logging.getLogger(__name__)

SUPPORTED_MODEL_FAMILIES = (
    "Llama",
    "Mistral",
    "Mixtral",
    "Phi",
    "Qwen",
    "Gemma",
    "OLMo",
    "MiniCPM",
    "InternLM",
)
_FAMILY_SIGNALS = tuple(family.lower() for family in SUPPORTED_MODEL_FAMILIES)

README_FILENAME = "README.txt"


def infer_trainable(model_id: str, tags: Sequence[str] = ()) -> bool:
    """Guess whether the trainer supports ``model_id`` from its family name."""
    lower_id = model_id.lower()
    if any(signal in lower_id for signal in _FAMILY_SIGNALS):
        return True
    return any(signal in tag.lower() for tag in tags for signal in _FAMILY_SIGNALS)


def sanitized_dataset_folder_name(name: str) -> str:
    mapped = "".join(ch if ch.isalnum() or ch in "-_" else "-" for ch in name)
    candidate = mapped.strip("-")
    return candidate or "dataset"


def _readme_text(fmt: TrainingDatasetFormat) -> str:
    return (
        "MLXBox post-training dataset scaffold\n"
        "\n"
        f"Format: {fmt.display_name}\n"
        f"File: {fmt.filename}\n"
        "\n"
        "Required for training:\n"
        "1. Keep each sample on a single line in JSONL.\n"
        f"2. Ensure all lines in {fmt.filename} share the same schema.\n"
        "3. Add validation samples to valid.jsonl (optional but recommended).\n"
        "4. Use UTF-8 and avoid trailing commas in JSON.\n"
    )


def _new_run_directory(runs_root: Path) -> Path:
    stamp = utc_now().strftime("%Y-%m-%dT%H-%M-%SZ")
    candidate = runs_root / f"adapters-{stamp}"
    suffix = 2
    while True:
        try:
            candidate.mkdir(parents=True, exist_ok=False)
            return candidate
        except FileExistsError:
            candidate = runs_root / f"adapters-{stamp}-{suffix}"
            suffix += 1


class PostTrainingManager:
    def __init__(
        self,
        paths: Optional[RuntimePaths] = None,
        settings: Optional[AppSettings] = None,
    ) -> None:
        self.paths = paths or get_runtime_paths()
        self.settings = settings or AppSettings()
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._state = TrainingState.IDLE

    @property
    def state(self) -> TrainingState:
        return self._state

    def is_running(self) -> bool:
        return self._state != TrainingState.IDLE

    # --- datasets -------------------------------------------------------

    def create_dataset_scaffold(
        self, name: str, fmt: TrainingDatasetFormat = TrainingDatasetFormat.CHAT
    ) -> DatasetScaffoldResult:
        """Create <root>/training-datasets/<name>/ without clobbering data.

        train.jsonl is only seeded when absent; README.txt is always rewritten.
        """
        folder = self.paths.training_datasets_root / sanitized_dataset_folder_name(name)
        try:
            folder.mkdir(parents=True, exist_ok=True)

            train = folder / fmt.filename
            if not train.exists():
                seed = "\n".join([fmt.sample_line, fmt.sample_line]) + "\n"
                train.write_text(seed, encoding="utf-8")
                logger.info("Seeded dataset file: %s", train)

            readme = folder / README_FILENAME
            readme.write_text(_readme_text(fmt), encoding="utf-8")
        except OSError as e:
            raise RuntimeSupervisorError(f"Cannot create dataset scaffold in {folder}: {e}") from e

        return DatasetScaffoldResult(dataset_directory=folder, train_file=train, readme_file=readme)

    # --- training -------------------------------------------------------

    def _resolve_trainer_exe(self) -> Path:
        binary = self.settings.trainer_binary
        executable = self.paths.venv_binary(binary)
        if not is_executable_file(executable):
            raise MissingDependencyError(
                f"{binary} not found. Run runtime install/repair first.",
                binary=binary,
            )
        return executable

    def _build_trainer_args(
        self,
        trainer_exe: Path,
        model_path: str,
        dataset_path: str,
        iterations: int,
        learning_rate: str,
        batch_size: int,
        adapter_dir: Path,
    ) -> list[str]:
        return [
            str(trainer_exe),
            "--model", model_path,
            "--train",
            "--data", dataset_path,
            "--iters", str(max(1, int(iterations))),
            "--batch-size", str(max(1, int(batch_size))),
            "--learning-rate", str(learning_rate),
            "--adapter-path", str(adapter_dir),
        ]

    def run_lora_training(
        self,
        model_id: str,
        model_path: str,
        dataset_path: str,
        iterations: Optional[int] = None,
        learning_rate: Optional[str] = None,
        batch_size: Optional[int] = None,
    ) -> TrainingRunResult:
        """Run the trainer to completion.

        Raises:
            AlreadyRunningError: another run is in flight
            MissingDependencyError: trainer binary not installed
        """
        iterations = self.settings.training_iterations if iterations is None else iterations
        batch_size = self.settings.training_batch_size if batch_size is None else batch_size
        learning_rate = learning_rate or self.settings.training_learning_rate

        with self._lock:
            if self._state != TrainingState.IDLE:
                raise AlreadyRunningError("A training process is already running.")
            self._state = TrainingState.RUNNING

        try:
            trainer_exe = self._resolve_trainer_exe()
            adapter_dir = self._prepare_run_directory(model_id)
            args = self._build_trainer_args(
                trainer_exe, str(model_path), str(dataset_path),
                iterations, learning_rate, batch_size, adapter_dir,
            )
            proc = self._launch(args)

            with self._lock:
                self._process = proc
                cancel_requested = self._state == TrainingState.CANCELLING
            if cancel_requested:
                proc.terminate()

            try:
                stdout, stderr = proc.communicate()
            except BaseException:
                # Interrupted caller; do not leave the trainer running
                proc.kill()
                proc.wait()
                raise
            exit_code = proc.returncode
        finally:
            with self._lock:
                self._process = None
                self._state = TrainingState.IDLE

        log = (stdout or "") + "\n" + (stderr or "")
        if exit_code == 0:
            logger.info("Training finished: %s", adapter_dir)
        else:
            logger.warning("Training exited with code %d: %s", exit_code, adapter_dir)
        return TrainingRunResult(exit_code=exit_code, log=log, adapter_path=adapter_dir)

    def _prepare_run_directory(self, model_id: str) -> Path:
        try:
            adapter_dir = _new_run_directory(self.paths.training_runs_root())
            adapter_registry.write_metadata(adapter_dir, model_id)
        except OSError as e:
            raise RuntimeSupervisorError(f"Cannot prepare training artifact directory: {e}") from e
        return adapter_dir

    def _launch(self, args: list[str]) -> subprocess.Popen:
        creationflags = 0
        if os.name == "nt":
            creationflags = getattr(subprocess, "CREATE_NO_WINDOW", 0)
        logger.info("Starting training: %s", " ".join(args))
        try:
            return subprocess.Popen(
                args,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True,
                encoding="utf-8",
                errors="replace",
                creationflags=creationflags,
            )
        except OSError as e:
            raise RuntimeSupervisorError(f"Failed to launch trainer {args[0]}: {e}") from e

    def cancel(self) -> bool:
        """Signal the running trainer; does not wait for it to exit."""
        with self._lock:
            if self._state == TrainingState.IDLE:
                return False
            self._state = TrainingState.CANCELLING
            proc = self._process
            if proc is not None and proc.poll() is None:
                logger.info("Cancelling training (pid=%d)", proc.pid)
                proc.terminate()
            return True

    async def run_async(
        self,
        model_id: str,
        model_path: str,
        dataset_path: str,
        iterations: Optional[int] = None,
        learning_rate: Optional[str] = None,
        batch_size: Optional[int] = None,
    ) -> TrainingRunResult:
        return await asyncio.to_thread(
            self.run_lora_training,
            model_id, model_path, dataset_path, iterations, learning_rate, batch_size,
        )


_MANAGER: Optional[PostTrainingManager] = None
_MANAGER_LOCK = threading.Lock()


def get_post_training_manager() -> PostTrainingManager:
    global _MANAGER
    with _MANAGER_LOCK:
        if _MANAGER is None:
            _MANAGER = PostTrainingManager()
        return _MANAGER
