from __future__ import annotations

import http.server
import json
import os
import subprocess
import sys
import threading
from pathlib import Path
from typing import Optional

import psutil
import pytest

from conftest import posix_only
from mlxbox.config.settings import AppSettings
from mlxbox.models.types import ServerState
from mlxbox.services import local_model_server as lms
from mlxbox.services.exceptions import (
    MissingDependencyError,
    RuntimeSupervisorError,
    ServerReadinessTimeoutError,
)
from mlxbox.services.runtime_paths import RuntimePaths

_SLEEPER = [sys.executable, "-c", "import time; time.sleep(60)"]


def _fast_settings(**overrides) -> AppSettings:
    values = dict(
        readiness_timeout_s=1.0,
        readiness_poll_interval_s=0.05,
        stop_timeout_s=5.0,
    )
    values.update(overrides)
    return AppSettings(**values)


class LaunchRecorder:
    """Replaces _launch with a real, harmless child process."""

    def __init__(self, command: Optional[list[str]] = None) -> None:
        self.command = command or _SLEEPER
        self.calls: list[tuple] = []
        self.processes: list[subprocess.Popen] = []

    def __call__(self, server_exe, model_path, host, port, adapter_path) -> subprocess.Popen:
        self.calls.append((model_path, host, port, adapter_path))
        proc = subprocess.Popen(self.command, stdin=subprocess.DEVNULL)
        self.processes.append(proc)
        return proc

    def cleanup(self) -> None:
        for proc in self.processes:
            if proc.poll() is None:
                proc.kill()
                proc.wait()


@pytest.fixture
def controller(paths: RuntimePaths, fake_venv):
    fake_venv("mlx_lm.server")
    return lms.LocalModelServerController(paths=paths, settings=_fast_settings())


@pytest.fixture
def launcher(controller, monkeypatch: pytest.MonkeyPatch):
    recorder = LaunchRecorder()
    monkeypatch.setattr(controller, "_launch", recorder)
    yield recorder
    controller.stop()
    recorder.cleanup()


def test_missing_server_binary_fails_fast(paths: RuntimePaths) -> None:
    controller = lms.LocalModelServerController(paths=paths, settings=_fast_settings())

    with pytest.raises(MissingDependencyError) as excinfo:
        controller.start("mlx-community/foo")

    assert excinfo.value.binary == "mlx_lm.server"
    assert "install/repair" in str(excinfo.value)
    assert controller.state == ServerState.IDLE
    assert not controller.is_running()


@posix_only
def test_start_is_idempotent_for_identical_arguments(
    controller, launcher: LaunchRecorder, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(lms, "_probe_ready", lambda *args, **kwargs: (True, None))

    first = controller.start("mlx-community/foo", host="127.0.0.1", port=8123)
    second = controller.start("mlx-community/foo", host="127.0.0.1", port=8123)

    assert first == second
    assert len(launcher.calls) == 1
    assert controller.state == ServerState.READY
    assert controller.is_running()
    assert first.base_url == "http://127.0.0.1:8123"


@posix_only
def test_start_with_different_arguments_replaces_process(
    controller, launcher: LaunchRecorder, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(lms, "_probe_ready", lambda *args, **kwargs: (True, None))

    first = controller.start("mlx-community/foo", port=8123)
    second = controller.start("mlx-community/foo", port=8124)

    assert len(launcher.calls) == 2
    assert first.pid != second.pid
    assert launcher.processes[0].poll() is not None
    assert controller.handle == second


@posix_only
def test_readiness_timeout_tears_down_process(
    controller, launcher: LaunchRecorder, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(lms, "_probe_ready", lambda *args, **kwargs: (False, "connection refused"))

    with pytest.raises(ServerReadinessTimeoutError, match="connection refused"):
        controller.start("mlx-community/foo", port=8123)

    assert not controller.is_running()
    assert controller.handle is None
    assert controller.state == ServerState.IDLE
    assert launcher.processes[0].poll() is not None


@posix_only
def test_early_exit_surfaces_as_readiness_timeout(
    paths: RuntimePaths, fake_venv, monkeypatch: pytest.MonkeyPatch
) -> None:
    fake_venv("mlx_lm.server")
    controller = lms.LocalModelServerController(paths=paths, settings=_fast_settings(readiness_timeout_s=10.0))
    recorder = LaunchRecorder([sys.executable, "-c", "raise SystemExit(3)"])
    monkeypatch.setattr(controller, "_launch", recorder)
    monkeypatch.setattr(lms, "_probe_ready", lambda *args, **kwargs: (False, "connection refused"))

    with pytest.raises(ServerReadinessTimeoutError, match="code 3"):
        controller.start("mlx-community/foo")

    assert not controller.is_running()


@posix_only
def test_state_file_records_and_clears_pid(
    controller, launcher: LaunchRecorder, paths: RuntimePaths, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(lms, "_probe_ready", lambda *args, **kwargs: (True, None))

    handle = controller.start("mlx-community/foo", port=8123, adapter_path="/tmp/adapter")
    state = json.loads(paths.server_state_file.read_text(encoding="utf-8"))
    assert state["pid"] == handle.pid
    assert state["port"] == 8123
    assert state["adapter_path"] == "/tmp/adapter"
    assert state["server_exe_path"] == str(paths.venv_binary("mlx_lm.server"))

    controller.stop()

    state = json.loads(paths.server_state_file.read_text(encoding="utf-8"))
    assert state["pid"] is None
    assert "stopped_at" in state
    assert controller.state == ServerState.IDLE


def test_stop_when_idle_is_noop(controller) -> None:
    controller.stop()
    controller.stop()

    assert controller.state == ServerState.IDLE
    assert controller.handle is None


def test_stop_orphaned_never_kills_unrelated_process(controller, paths: RuntimePaths) -> None:
    me = psutil.Process(os.getpid())
    paths.server_state_file.write_text(
        json.dumps(
            {
                "pid": me.pid,
                "pid_create_time": me.create_time(),
                "server_exe_path": "/nonexistent/venv/bin/mlx_lm.server",
            }
        ),
        encoding="utf-8",
    )

    assert controller.stop_orphaned() is False
    assert me.is_running()
    assert json.loads(paths.server_state_file.read_text(encoding="utf-8"))["pid"] is None


@posix_only
def test_stop_orphaned_terminates_recorded_server(controller, paths: RuntimePaths, tmp_path: Path) -> None:
    marker_exe = str(tmp_path / "venv" / "bin" / "mlx_lm.server")
    orphan = subprocess.Popen(
        [sys.executable, "-c", "import time; time.sleep(60)", marker_exe],
        stdin=subprocess.DEVNULL,
    )
    try:
        paths.server_state_file.write_text(
            json.dumps(
                {
                    "pid": orphan.pid,
                    "pid_create_time": psutil.Process(orphan.pid).create_time(),
                    "server_exe_path": marker_exe,
                }
            ),
            encoding="utf-8",
        )

        assert controller.stop_orphaned() is True
        orphan.wait(timeout=10)
        assert orphan.returncode is not None
    finally:
        if orphan.poll() is None:
            orphan.kill()
            orphan.wait()


def test_build_server_args_includes_adapter(controller, paths: RuntimePaths) -> None:
    exe = paths.venv_binary("mlx_lm.server")

    args = controller._build_server_args(exe, "/models/foo", "127.0.0.1", 8080, "/runs/adapters-x")
    assert args == [
        str(exe),
        "--model", "/models/foo",
        "--host", "127.0.0.1",
        "--port", "8080",
        "--adapter-path", "/runs/adapters-x",
    ]

    without = controller._build_server_args(exe, "/models/foo", "127.0.0.1", 8080, None)
    assert "--adapter-path" not in without


def test_probe_ready_reports_connection_errors() -> None:
    # Port 9 (discard) on loopback is essentially never an HTTP server.
    ready, error = lms._probe_ready("127.0.0.1", 9, "/v1/models", timeout_s=0.2)

    assert ready is False
    assert error


class _StatusHandler(http.server.BaseHTTPRequestHandler):
    """Answers GET /<code> with that status code."""

    def do_GET(self) -> None:
        self.send_response(int(self.path.strip("/")))
        self.send_header("Content-Length", "0")
        self.end_headers()

    def log_message(self, format, *args) -> None:
        pass


@pytest.fixture
def status_server_port():
    server = http.server.ThreadingHTTPServer(("127.0.0.1", 0), _StatusHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    yield server.server_address[1]
    server.shutdown()
    server.server_close()
    thread.join(timeout=5)


@pytest.mark.parametrize(
    ("status", "expected"),
    [
        (200, (True, None)),
        (204, (True, None)),
        (404, (False, "HTTP 404")),
        (503, (False, "HTTP 503")),
    ],
)
def test_probe_ready_accepts_only_2xx(status_server_port: int, status: int, expected) -> None:
    assert lms._probe_ready("127.0.0.1", status_server_port, f"/{status}", timeout_s=2.0) == expected


@posix_only
def test_unwritable_state_file_does_not_abort_start(
    controller, launcher: LaunchRecorder, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.setattr(lms, "_probe_ready", lambda *args, **kwargs: (True, None))
    broken = {"on": False}
    original = RuntimePaths.server_state_file

    def state_file(self):
        if broken["on"]:
            raise RuntimeSupervisorError("Cannot create runtime directory")
        return original.fget(self)

    def launch_then_break(*args):
        proc = launcher(*args)
        broken["on"] = True
        return proc

    monkeypatch.setattr(RuntimePaths, "server_state_file", property(state_file))
    monkeypatch.setattr(controller, "_launch", launch_then_break)

    handle = controller.start("mlx-community/foo")
    broken["on"] = False

    assert controller.state == ServerState.READY
    assert controller.is_running()
    assert handle.pid == launcher.processes[0].pid


@posix_only
@pytest.mark.asyncio
async def test_async_facade_delegates(controller, launcher: LaunchRecorder, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(lms, "_probe_ready", lambda *args, **kwargs: (True, None))

    handle = await controller.start_async("mlx-community/foo", port=8125)
    assert controller.is_running()
    assert handle.port == 8125

    await controller.stop_async()
    assert not controller.is_running()
