from __future__ import annotations

import json
from pathlib import Path

import pytest

from mlxbox.config import settings as settings_module
from mlxbox.config.settings import (
    DEFAULT_SCAN_PATHS,
    DEFAULT_SCAN_PORTS,
    USER_SETTINGS_KEYS,
    AppSettings,
    get_default_runtime_root,
    get_default_settings_path,
)


def test_defaults_match_template() -> None:
    defaults = AppSettings()
    template = json.loads(settings_module.TEMPLATE_PATH.read_text(encoding="utf-8"))

    for key, value in template.items():
        assert getattr(defaults, key) == value, key


def test_load_without_user_file_uses_template(tmp_path: Path) -> None:
    settings = AppSettings.load(tmp_path / "missing.json")

    assert settings.server_port == 8080
    assert settings.scan_ports == DEFAULT_SCAN_PORTS
    assert settings.scan_paths == DEFAULT_SCAN_PATHS
    assert settings.readiness_timeout_s == 30.0


def test_user_settings_only_override_user_keys(tmp_path: Path) -> None:
    user_path = tmp_path / "user_settings.json"
    user_path.write_text(
        json.dumps(
            {
                "server_port": 9090,
                "training_iterations": 250,
                # Not user-changeable
                "server_binary": "/tmp/evil",
                "unknown_key": True,
            }
        ),
        encoding="utf-8",
    )

    settings = AppSettings.load(user_path)

    assert settings.server_port == 9090
    assert settings.training_iterations == 250
    assert settings.server_binary == "mlx_lm.server"
    assert not hasattr(settings, "unknown_key")


def test_malformed_user_settings_fall_back_to_defaults(tmp_path: Path) -> None:
    user_path = tmp_path / "user_settings.json"
    user_path.write_text("{not json", encoding="utf-8")

    settings = AppSettings.load(user_path)

    assert settings.server_port == 8080


def test_validate_resets_out_of_range_values() -> None:
    settings = AppSettings(
        readiness_timeout_s=0.0,
        readiness_poll_interval_s=100.0,
        probe_timeout_s=-1.0,
        server_port=70000,
        training_iterations=0,
        training_batch_size=-3,
        scan_ports=[0, "x", 8080],
        scan_paths=["health", "/health"],
    )
    settings._validate()

    assert settings.readiness_timeout_s == 30.0
    assert settings.readiness_poll_interval_s == 0.3
    assert settings.probe_timeout_s == 0.8
    assert settings.server_port == 8080
    assert settings.training_iterations == 1
    assert settings.training_batch_size == 1
    assert settings.scan_ports == [8080]
    assert settings.scan_paths == ["/health"]


def test_wrongly_typed_user_values_are_coerced_or_reset(tmp_path: Path) -> None:
    user_path = tmp_path / "user_settings.json"
    user_path.write_text(
        json.dumps(
            {
                "server_port": "8080x",
                "training_iterations": "5",
                "training_batch_size": None,
                "server_host": 127,
                "scan_ports": "8080",
                "scan_paths": {"/": 1},
            }
        ),
        encoding="utf-8",
    )

    settings = AppSettings.load(user_path, use_cache=False)

    assert settings.server_port == 8080
    assert settings.training_iterations == 5
    assert settings.training_batch_size == 1
    assert settings.server_host == "127.0.0.1"
    assert settings.scan_ports == DEFAULT_SCAN_PORTS
    assert settings.scan_paths == DEFAULT_SCAN_PATHS


def test_wrongly_typed_settings_do_not_break_the_cli(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    from mlxbox import app

    monkeypatch.setattr(app, "setup_logging", lambda *args, **kwargs: (None, None))
    root = tmp_path / "root"
    user_path = root / "config" / "user_settings.json"
    user_path.parent.mkdir(parents=True)
    user_path.write_text(json.dumps({"training_batch_size": "2", "probe_timeout_s": [1]}), encoding="utf-8")

    assert app.main(["--root", str(root), "adapters"]) == 0


def test_save_writes_only_user_keys(tmp_path: Path) -> None:
    user_path = tmp_path / "config" / "user_settings.json"
    settings = AppSettings(server_port=8181, last_model_id="mlx-community/foo")

    settings.save(user_path)

    saved = json.loads(user_path.read_text(encoding="utf-8"))
    assert set(saved) == USER_SETTINGS_KEYS
    assert saved["server_port"] == 8181
    assert saved["last_model_id"] == "mlx-community/foo"
    assert AppSettings.load(user_path) is settings


def test_load_uses_cache_until_invalidated(tmp_path: Path) -> None:
    user_path = tmp_path / "user_settings.json"

    first = AppSettings.load(user_path)
    assert AppSettings.load(user_path) is first

    settings_module.invalidate_settings_cache(user_path)
    assert AppSettings.load(user_path) is not first
    assert AppSettings.load(user_path, use_cache=False) is not first


def test_runtime_root_honors_environment(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("MLXBOX_HOME", str(tmp_path / "custom"))

    assert get_default_runtime_root() == tmp_path / "custom"
    assert get_default_settings_path() == tmp_path / "custom" / "config" / "user_settings.json"


def test_runtime_root_defaults_to_home(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("MLXBOX_HOME", raising=False)

    assert get_default_runtime_root() == Path.home() / ".mlxbox"
