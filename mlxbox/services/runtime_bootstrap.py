# mlxbox/services/runtime_bootstrap.py
"""
Runtime bootstrap: installs and repairs the external tools MLXBox drives.

Steps, in order, each fault-isolated:
1. llmfit (optional model recommendation CLI, via Homebrew)
2. whisper.cpp (optional speech-to-text CLI, via Homebrew)
3. private Python venv + runtime packages (required)

A versioned marker (runtime/bootstrap-state.json) is written only after the
required step succeeds. With repair=False and a healthy runtime the whole
pass short-circuits without launching any subprocess, so calling
bootstrap() on every start is cheap.

bootstrap() never raises; failures come back as FAILED steps.
"""

from __future__ import annotations

import logging
import subprocess
import sys
from typing import Optional, Sequence

from mlxbox.config.settings import AppSettings
from mlxbox.models.types import (
    BootstrapReport,
    BootstrapStateMarker,
    BootstrapStepResult,
    CommandResult,
    StepState,
)
from mlxbox.services import install_resolver
from mlxbox.services.exceptions import CommandFailedError
from mlxbox.services.runtime_paths import RuntimePaths, get_runtime_paths, is_executable_file
from mlxbox.services.state_files import atomic_write_json, safe_read_json, utc_now

logger = logging.getLogger(__name__)

STATE_VERSION = 1

BOOTSTRAP_STEP = "Bootstrap"
LLMFIT_STEP = "llmfit"
WHISPER_STEP = "whisper.cpp"
VENV_STEP = "Python venv"
PACKAGES_STEP = "MLX runtime"

_STDERR_TAIL_CHARS = 2000


def _run_command(args: Sequence[str]) -> CommandResult:
    """Run an install command to completion (no timeout).

    Raises:
        CommandFailedError: launch failure or non-zero exit status
    """
    argv = [str(a) for a in args]
    logger.info("Running: %s", " ".join(argv))
    try:
        completed = subprocess.run(
            argv,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            check=False,
            text=True,
            encoding="utf-8",
            errors="replace",
        )
    except OSError as e:
        raise CommandFailedError(f"Failed to launch {argv[0]}: {e}", returncode=-1) from e

    result = CommandResult(
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
        args=argv,
    )
    if result.returncode != 0:
        stderr_tail = result.stderr.strip()[-_STDERR_TAIL_CHARS:]
        message = stderr_tail or f"Process failed with status {result.returncode}."
        raise CommandFailedError(
            f"{argv[0]} exited with status {result.returncode}: {message}",
            returncode=result.returncode,
            stderr=result.stderr,
        )
    return result


class RuntimeBootstrapper:
    def __init__(
        self,
        paths: Optional[RuntimePaths] = None,
        settings: Optional[AppSettings] = None,
    ) -> None:
        self.paths = paths or get_runtime_paths()
        self.settings = settings or AppSettings()

    # --- health ---------------------------------------------------------

    def _required_entry_points(self) -> list[str]:
        return [
            "pip",
            "hf",
            self.settings.server_binary,
            self.settings.trainer_binary,
        ]

    def python_packages_healthy(self) -> bool:
        try:
            return all(
                is_executable_file(self.paths.venv_binary(name))
                for name in self._required_entry_points()
            )
        except Exception:
            logger.debug("Package health check failed", exc_info=True)
            return False

    def read_state(self) -> Optional[BootstrapStateMarker]:
        data = safe_read_json(self.paths.bootstrap_state_file)
        if data is None:
            return None
        return BootstrapStateMarker.from_dict(data)

    def runtime_looks_healthy(self) -> bool:
        """File checks only; never launches a subprocess.

        Optional tools (llmfit, whisper.cpp) are not consulted, so their
        absence cannot force a reinstall on every start.
        """
        if not is_executable_file(self.paths.venv_python):
            return False
        if not self.python_packages_healthy():
            return False
        marker = self.read_state()
        return marker is not None and marker.schema_version == STATE_VERSION

    def _write_state(self) -> None:
        marker = BootstrapStateMarker(schema_version=STATE_VERSION, updated_at=utc_now())
        atomic_write_json(self.paths.bootstrap_state_file, marker.to_dict())
        logger.info("Bootstrap marker written: %s", self.paths.bootstrap_state_file)

    # --- steps ----------------------------------------------------------

    def _ensure_llmfit(self, brew: Optional[str]) -> BootstrapStepResult:
        llmfit = install_resolver.resolve_executable("llmfit", self.paths)
        if llmfit and install_resolver.run_quick_check(llmfit, ["--version"]):
            return BootstrapStepResult(LLMFIT_STEP, StepState.OK, "Already installed.")

        if brew is None:
            return BootstrapStepResult(
                LLMFIT_STEP,
                StepState.FAILED,
                "Homebrew not found; cannot auto-install llmfit.",
            )

        _run_command([brew, "tap", "AlexsJones/llmfit"])
        _run_command([brew, "install", "llmfit"])
        return BootstrapStepResult(LLMFIT_STEP, StepState.INSTALLED, "Installed with Homebrew.")

    def _ensure_whisper(self, brew: Optional[str]) -> BootstrapStepResult:
        for binary in install_resolver.WHISPER_BINARIES:
            executable = install_resolver.resolve_executable(binary, self.paths)
            if executable and install_resolver.run_quick_check(executable, ["--help"]):
                return BootstrapStepResult(
                    WHISPER_STEP, StepState.OK, f"{binary} is already available."
                )

        if brew is None:
            return BootstrapStepResult(
                WHISPER_STEP,
                StepState.FAILED,
                "Homebrew not found; cannot auto-install whisper-cpp.",
            )

        _run_command([brew, "install", "whisper-cpp"])
        return BootstrapStepResult(WHISPER_STEP, StepState.INSTALLED, "Installed with Homebrew.")

    def _ensure_venv(self) -> BootstrapStepResult:
        venv_root = self.paths.venv_root
        if is_executable_file(self.paths.venv_python):
            return BootstrapStepResult(VENV_STEP, StepState.OK, "Virtual environment already exists.")

        args = [sys.executable, "-m", "venv"]
        if venv_root.exists():
            # Half-created environment from an interrupted run
            args.append("--clear")
        args.append(str(venv_root))
        _run_command(args)
        return BootstrapStepResult(VENV_STEP, StepState.INSTALLED, "Created runtime virtual environment.")

    def _ensure_packages(self, force_repair: bool) -> BootstrapStepResult:
        if not force_repair and self.python_packages_healthy():
            return BootstrapStepResult(PACKAGES_STEP, StepState.OK, "Python packages already available.")

        python = str(self.paths.venv_python)
        if not is_executable_file(self.paths.venv_binary("pip")):
            _run_command([python, "-m", "ensurepip", "--upgrade"])
        _run_command([python, "-m", "pip", "install", "--upgrade", "pip"])
        packages = list(self.settings.runtime_packages)
        _run_command([python, "-m", "pip", "install", "--upgrade", *packages])
        return BootstrapStepResult(
            PACKAGES_STEP,
            StepState.INSTALLED,
            f"Installed/updated {', '.join(packages)}.",
        )

    def _ensure_python_runtime(self, force_repair: bool) -> list[BootstrapStepResult]:
        venv_result = _isolated(VENV_STEP, self._ensure_venv)
        if venv_result.state == StepState.FAILED:
            return [
                venv_result,
                BootstrapStepResult(
                    PACKAGES_STEP,
                    StepState.SKIPPED,
                    "Skipped: virtual environment is unavailable.",
                ),
            ]
        packages_result = _isolated(PACKAGES_STEP, lambda: self._ensure_packages(force_repair))
        return [venv_result, packages_result]

    # --- orchestration --------------------------------------------------

    def bootstrap(self, repair: bool = False) -> BootstrapReport:
        started = utc_now()
        results: list[BootstrapStepResult] = []

        try:
            if not repair and self.runtime_looks_healthy():
                logger.info("Runtime already healthy; bootstrap skipped")
                results.append(
                    BootstrapStepResult(
                        BOOTSTRAP_STEP,
                        StepState.SKIPPED,
                        "Runtime already healthy; skipped reinstall.",
                    )
                )
                return BootstrapReport(started, utc_now(), tuple(results))

            logger.info("Bootstrapping runtime at %s (repair=%s)", self.paths.runtime_dir, repair)
            brew = install_resolver.resolve_executable("brew", self.paths)
            if brew is None:
                logger.warning("Homebrew not found; optional tools cannot be installed")

            results.append(_isolated(LLMFIT_STEP, lambda: self._ensure_llmfit(brew)))
            results.append(_isolated(WHISPER_STEP, lambda: self._ensure_whisper(brew)))
            python_results = self._ensure_python_runtime(force_repair=repair)
            results.extend(python_results)

            if all(r.state in (StepState.OK, StepState.INSTALLED) for r in python_results):
                self._write_state()
            else:
                logger.warning("Python runtime incomplete; bootstrap marker not written")
        except Exception as e:
            logger.exception("Bootstrap failed")
            results.append(BootstrapStepResult(BOOTSTRAP_STEP, StepState.FAILED, str(e)))

        for result in results:
            logger.info("Bootstrap step %s: %s (%s)", result.name, result.state.value, result.detail)
        return BootstrapReport(started, utc_now(), tuple(results))


def _isolated(name: str, step) -> BootstrapStepResult:
    """Run one step; any exception becomes a FAILED result for that step."""
    try:
        return step()
    except Exception as e:
        logger.warning("Bootstrap step %s failed: %s", name, e, exc_info=True)
        return BootstrapStepResult(name, StepState.FAILED, str(e))


def bootstrap(
    repair: bool = False,
    *,
    paths: Optional[RuntimePaths] = None,
    settings: Optional[AppSettings] = None,
) -> BootstrapReport:
    return RuntimeBootstrapper(paths=paths, settings=settings).bootstrap(repair=repair)
