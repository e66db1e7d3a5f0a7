# mlxbox/services/local_model_server.py
"""
Local inference server (mlx_lm.server) process supervisor.

Design goals:
- At most one server process per controller; identical (model, host, port)
  requests reuse the live process instead of relaunching.
- The server executable must come from the private runtime venv; a missing
  binary fails the start immediately.
- start() blocks until GET <readiness_path> answers 2xx, polling every
  300 ms for up to 30 s. On timeout the process tree is torn down so no
  orphaned server keeps the port.
- Server state is persisted (runtime/local_model_server.json) so a server
  left behind by a crashed session can be identified and stopped safely.

State machine: IDLE -> STARTING -> READY -> STOPPING -> IDLE
"""

from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import threading
import time
import urllib.error
import urllib.request
from pathlib import Path
from typing import IO, Optional

import psutil

from mlxbox.config.settings import AppSettings
from mlxbox.models.types import ServerHandle, ServerState
from mlxbox.services.exceptions import (
    MissingDependencyError,
    RuntimeSupervisorError,
    ServerReadinessTimeoutError,
    ServerStartError,
)
from mlxbox.services.runtime_paths import RuntimePaths, get_runtime_paths, is_executable_file
from mlxbox.services.state_files import atomic_write_json, safe_read_json, utc_now_iso

logger = logging.getLogger(__name__)

_PROBE_TIMEOUT_S = 0.8
_PID_CREATE_TIME_TOLERANCE_S = 1.0

# Readiness probes never go through a proxy; corporate proxies intercept
# localhost otherwise.
_NO_PROXY_OPENER = urllib.request.build_opener(urllib.request.ProxyHandler({}))


def _probe_ready(host: str, port: int, path: str, timeout_s: float = _PROBE_TIMEOUT_S) -> tuple[bool, Optional[str]]:
    """GET http://host:port/path; ready means any 2xx status."""
    url = f"http://{host}:{port}{path}"
    req = urllib.request.Request(url, method="GET")
    try:
        with _NO_PROXY_OPENER.open(req, timeout=timeout_s) as resp:
            status_code = resp.getcode()
    except urllib.error.HTTPError as e:
        return False, f"HTTP {e.code}"
    except Exception as e:
        return False, str(e)
    if 200 <= status_code <= 299:
        return True, None
    return False, f"HTTP {status_code}"


def _terminate_process(proc: subprocess.Popen, timeout_s: float) -> Optional[int]:
    """Terminate ``proc`` and its children; escalate to kill after ``timeout_s``."""
    children: list[psutil.Process] = []
    try:
        children = psutil.Process(proc.pid).children(recursive=True)
    except psutil.Error:
        children = []

    if proc.poll() is None:
        proc.terminate()
        try:
            proc.wait(timeout=timeout_s)
        except subprocess.TimeoutExpired:
            logger.warning("Server pid=%d ignored SIGTERM; killing", proc.pid)
            proc.kill()
            proc.wait()

    _terminate_psutil_processes(children, timeout_s)
    return proc.returncode


def _terminate_psutil_processes(procs: list[psutil.Process], timeout_s: float) -> None:
    if not procs:
        return
    for p in procs:
        try:
            p.terminate()
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied:
            logger.debug("Access denied terminating pid=%d", p.pid)
    _, alive = psutil.wait_procs(procs, timeout=timeout_s)
    for p in alive:
        try:
            p.kill()
        except psutil.Error:
            pass


class LocalModelServerController:
    def __init__(
        self,
        paths: Optional[RuntimePaths] = None,
        settings: Optional[AppSettings] = None,
    ) -> None:
        self.paths = paths or get_runtime_paths()
        self.settings = settings or AppSettings()
        self._lock = threading.Lock()
        self._process: Optional[subprocess.Popen] = None
        self._process_log_fp: Optional[IO[str]] = None
        self._handle: Optional[ServerHandle] = None
        self._state = ServerState.IDLE

    @property
    def state(self) -> ServerState:
        return self._state

    @property
    def handle(self) -> Optional[ServerHandle]:
        return self._handle if self.is_running() else None

    def get_log_path(self) -> Path:
        return self.paths.logs_dir / "local_model_server.log"

    def is_running(self) -> bool:
        proc = self._process
        return proc is not None and proc.poll() is None

    # --- start ----------------------------------------------------------

    def start(
        self,
        model_path: str,
        host: Optional[str] = None,
        port: Optional[int] = None,
        adapter_path: Optional[str] = None,
    ) -> ServerHandle:
        """Start (or reuse) the server and block until it is ready.

        Raises:
            MissingDependencyError: server binary not installed in the venv
            ServerStartError: the process could not be launched
            ServerReadinessTimeoutError: never answered the readiness probe
        """
        host = host or self.settings.server_host
        port = int(port if port is not None else self.settings.server_port)
        model_path = str(model_path)

        with self._lock:
            handle = self._handle
            if handle is not None and self.is_running() and handle.matches(model_path, host, port):
                logger.debug("Server already running for %s on %s:%d", model_path, host, port)
                return handle

            self._stop_locked()
            self._stop_orphaned_locked()

            server_exe = self._resolve_server_exe()
            self._state = ServerState.STARTING
            try:
                proc = self._launch(server_exe, model_path, host, port, adapter_path)
            except ServerStartError:
                self._state = ServerState.IDLE
                raise

            self._process = proc
            self._handle = ServerHandle(
                pid=proc.pid,
                model_path=model_path,
                host=host,
                port=port,
                adapter_path=adapter_path or None,
            )
            self._write_state(server_exe, self._handle)

            try:
                self._wait_ready(host, port, proc)
            except ServerReadinessTimeoutError:
                logger.warning("Server not ready on %s:%d; tearing it down", host, port)
                self._stop_locked()
                raise

            self._state = ServerState.READY
            logger.info("Local model server ready at %s (pid=%d)", self._handle.base_url, proc.pid)
            return self._handle

    def _resolve_server_exe(self) -> Path:
        binary = self.settings.server_binary
        executable = self.paths.venv_binary(binary)
        if not is_executable_file(executable):
            raise MissingDependencyError(
                f"{binary} is not installed in the runtime venv. Run runtime install/repair first.",
                binary=binary,
            )
        return executable

    def _build_server_args(
        self,
        server_exe: Path,
        model_path: str,
        host: str,
        port: int,
        adapter_path: Optional[str],
    ) -> list[str]:
        args = [
            str(server_exe),
            "--model", model_path,
            "--host", host,
            "--port", str(port),
        ]
        if adapter_path:
            args += ["--adapter-path", adapter_path]
        return args

    def _launch(
        self,
        server_exe: Path,
        model_path: str,
        host: str,
        port: int,
        adapter_path: Optional[str],
    ) -> subprocess.Popen:
        args = self._build_server_args(server_exe, model_path, host, port, adapter_path)
        log_path = self.get_log_path()

        creationflags = 0
        if os.name == "nt":
            creationflags = getattr(subprocess, "CREATE_NO_WINDOW", 0)

        try:
            log_fp = open(log_path, "a", encoding="utf-8", errors="replace")
        except OSError as e:
            raise ServerStartError(f"Cannot open server log {log_path}: {e}") from e

        logger.info("Starting local model server: %s", " ".join(args))
        try:
            proc = subprocess.Popen(
                args,
                stdout=log_fp,
                stderr=log_fp,
                stdin=subprocess.DEVNULL,
                creationflags=creationflags,
            )
        except OSError as e:
            log_fp.close()
            raise ServerStartError(
                f"Failed to launch {server_exe.name}: {e}. See {log_path} for details."
            ) from e

        self._process_log_fp = log_fp
        return proc

    def _wait_ready(self, host: str, port: int, proc: subprocess.Popen) -> None:
        timeout_s = self.settings.readiness_timeout_s
        interval_s = self.settings.readiness_poll_interval_s
        path = self.settings.readiness_path
        deadline = time.monotonic() + timeout_s
        last_error: Optional[str] = None

        while time.monotonic() < deadline:
            rc = proc.poll()
            if rc is not None:
                raise ServerReadinessTimeoutError(
                    f"Local model server exited (code {rc}) before becoming ready. "
                    f"See {self.get_log_path()} for details."
                )
            ready, last_error = _probe_ready(host, port, path, timeout_s=_PROBE_TIMEOUT_S)
            if ready:
                return
            time.sleep(interval_s)

        reason = f" Last probe error: {last_error}." if last_error else ""
        raise ServerReadinessTimeoutError(
            f"Local model server did not become ready within {timeout_s:.0f}s.{reason}"
        )

    # --- stop -----------------------------------------------------------

    def stop(self) -> None:
        """Terminate the live server and wait for it to exit. No-op when idle."""
        with self._lock:
            self._stop_locked()

    def _stop_locked(self) -> None:
        proc = self._process
        if proc is None:
            self._handle = None
            self._state = ServerState.IDLE
            return

        self._state = ServerState.STOPPING
        try:
            rc = _terminate_process(proc, timeout_s=self.settings.stop_timeout_s)
            logger.info("Local model server stopped (pid=%d, rc=%s)", proc.pid, rc)
        finally:
            self._process = None
            self._handle = None
            self._close_log()
            self._mark_state_stopped()
            self._state = ServerState.IDLE

    def stop_orphaned(self) -> bool:
        """Stop a server recorded by a previous session, if it is still ours."""
        with self._lock:
            return self._stop_orphaned_locked()

    def _stop_orphaned_locked(self) -> bool:
        state = safe_read_json(self.paths.server_state_file) or {}
        pid = state.get("pid")
        if not isinstance(pid, int) or pid <= 0:
            return False
        if self._process is not None and self._process.pid == pid:
            return False

        expected_exe = state.get("server_exe_path")
        if not isinstance(expected_exe, str) or not expected_exe:
            return False

        try:
            proc = psutil.Process(pid)
            cmdline = " ".join(proc.cmdline() or [])
            create_time = proc.create_time()
        except psutil.Error:
            self._mark_state_stopped()
            return False

        # Never touch a pid that was recycled by an unrelated process.
        expected_ct = state.get("pid_create_time")
        if isinstance(expected_ct, (int, float)):
            if abs(float(create_time) - float(expected_ct)) > _PID_CREATE_TIME_TOLERANCE_S:
                self._mark_state_stopped()
                return False
        if expected_exe not in cmdline:
            self._mark_state_stopped()
            return False

        logger.info("Stopping orphaned local model server (pid=%d)", pid)
        children: list[psutil.Process] = []
        try:
            children = proc.children(recursive=True)
        except psutil.Error:
            children = []
        _terminate_psutil_processes([proc, *children], self.settings.stop_timeout_s)
        self._mark_state_stopped()
        return True

    def _close_log(self) -> None:
        fp = self._process_log_fp
        self._process_log_fp = None
        if fp is None:
            return
        try:
            fp.flush()
        except Exception:
            pass
        fp.close()

    # --- persisted state ------------------------------------------------

    def _write_state(self, server_exe: Path, handle: ServerHandle) -> None:
        pid_create_time: Optional[float] = None
        try:
            pid_create_time = psutil.Process(handle.pid).create_time()
        except psutil.Error:
            pid_create_time = None
        try:
            atomic_write_json(
                self.paths.server_state_file,
                {
                    "pid": handle.pid,
                    "pid_create_time": pid_create_time,
                    "server_exe_path": str(server_exe),
                    "model_path": handle.model_path,
                    "adapter_path": handle.adapter_path,
                    "host": handle.host,
                    "port": handle.port,
                    "started_at": utc_now_iso(),
                },
            )
        except (OSError, RuntimeSupervisorError):
            logger.debug("Failed to write server state", exc_info=True)

    def _mark_state_stopped(self) -> None:
        path = self.paths.server_state_file
        saved_state = safe_read_json(path)
        if not saved_state:
            return
        try:
            atomic_write_json(path, {**saved_state, "pid": None, "stopped_at": utc_now_iso()})
        except OSError:
            logger.debug("Failed to update server state on stop", exc_info=True)

    # --- async facade ---------------------------------------------------

    async def start_async(
        self,
        model_path: str,
        host: Optional[str] = None,
        port: Optional[int] = None,
        adapter_path: Optional[str] = None,
    ) -> ServerHandle:
        return await asyncio.to_thread(self.start, model_path, host, port, adapter_path)

    async def stop_async(self) -> None:
        await asyncio.to_thread(self.stop)


_CONTROLLER: Optional[LocalModelServerController] = None
_CONTROLLER_LOCK = threading.Lock()


def get_local_model_server_controller() -> LocalModelServerController:
    global _CONTROLLER
    with _CONTROLLER_LOCK:
        if _CONTROLLER is None:
            _CONTROLLER = LocalModelServerController()
        return _CONTROLLER
