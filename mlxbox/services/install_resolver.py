# mlxbox/services/install_resolver.py
"""
Executable lookup for external tools.

Lookup order:
1. the private runtime prefix (venv bin directory)
2. PATH (shutil.which)
3. a few well-known install locations, since GUI launches often start with
   a minimal PATH that lacks Homebrew and user-local bins

Returns None when nothing resolves; callers decide whether the tool is
required or optional.
"""

from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Optional, Sequence

from mlxbox.models.types import WHISPER_UNAVAILABLE, WhisperStatus
from mlxbox.services.exceptions import RuntimeSupervisorError
from mlxbox.services.runtime_paths import RuntimePaths, get_runtime_paths, is_executable_file

logger = logging.getLogger(__name__)

_WELL_KNOWN_DIRS = (
    "/opt/homebrew/bin",
    "/usr/local/bin",
    "/home/linuxbrew/.linuxbrew/bin",
    "~/.local/bin",
    "/usr/bin",
)

WHISPER_BINARIES = ("whisper-server", "whisper-cli")

_QUICK_CHECK_TIMEOUT_S = 15.0


def embedded_runtime_executable(
    binary: str, paths: Optional[RuntimePaths] = None
) -> Optional[str]:
    """Return ``binary`` from the private prefix, or None."""
    paths = paths or get_runtime_paths()
    try:
        candidate = paths.venv_binary(binary)
    except RuntimeSupervisorError:
        logger.debug("Runtime prefix unavailable while resolving %s", binary, exc_info=True)
        return None
    if is_executable_file(candidate):
        return str(candidate)
    return None


def _search_well_known_dirs(binary: str) -> Optional[str]:
    for raw in _WELL_KNOWN_DIRS:
        candidate = Path(raw).expanduser() / binary
        if is_executable_file(candidate):
            return str(candidate)
    return None


def resolve_executable(
    binary: str, paths: Optional[RuntimePaths] = None
) -> Optional[str]:
    embedded = embedded_runtime_executable(binary, paths)
    if embedded:
        return embedded
    found = shutil.which(binary)
    if found:
        return found
    return _search_well_known_dirs(binary)


def run_quick_check(
    executable: str,
    arguments: Sequence[str],
    timeout_s: float = _QUICK_CHECK_TIMEOUT_S,
) -> bool:
    """Run ``executable`` briefly and report whether it exited with status 0."""
    try:
        completed = subprocess.run(
            [executable, *arguments],
            stdout=subprocess.DEVNULL,
            stderr=subprocess.DEVNULL,
            stdin=subprocess.DEVNULL,
            timeout=timeout_s,
            check=False,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("Quick check failed for %s: %s", executable, e)
        return False
    return completed.returncode == 0


def detect_whisper(paths: Optional[RuntimePaths] = None) -> WhisperStatus:
    """Find a runnable whisper.cpp binary (server preferred over cli)."""
    for binary in WHISPER_BINARIES:
        executable = resolve_executable(binary, paths)
        if executable and run_quick_check(executable, ["--help"]):
            return WhisperStatus(
                available=True,
                executable=executable,
                hint=f"{binary} found; local speech-to-text is available.",
            )
    return WHISPER_UNAVAILABLE
