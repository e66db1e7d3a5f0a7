# mlxbox/config/settings.py
"""
Application settings management for MLXBox.

Settings are split across two files:
- settings.template.json: defaults, shipped with the package
- user_settings.json: only the user-changed keys (<runtime root>/config/)
- the template is loaded first, then user_settings overrides it

Loaded instances are cached per path and reloaded when either file's mtime
changes. save() refreshes the cache; invalidate_settings_cache() drops it.
"""

import json
import logging
import os
import threading
from dataclasses import MISSING, dataclass, field
from pathlib import Path
from typing import Optional

# Module logger
logger = logging.getLogger(__name__)

# Settings cache: path -> (mtime_template, mtime_user, AppSettings)
_settings_cache: dict[str, tuple[float, float, "AppSettings"]] = {}
_settings_cache_lock = threading.Lock()

RUNTIME_ROOT_ENV = "MLXBOX_HOME"

TEMPLATE_PATH = Path(__file__).parent / "settings.template.json"

# User-changeable keys (persisted to user_settings.json)
USER_SETTINGS_KEYS = {
    # Local inference server
    "server_host",
    "server_port",
    # Endpoint discovery
    "scan_ports",
    "scan_paths",
    # Post-training defaults
    "training_iterations",
    "training_batch_size",
    "training_learning_rate",
    # UI state (auto-saved)
    "last_model_id",
    "last_adapter_path",
}

DEFAULT_SCAN_PORTS = [8080, 11434, 8000, 5000, 1234, 3000]
DEFAULT_SCAN_PATHS = ["/v1/models", "/models", "/health", "/"]
DEFAULT_RUNTIME_PACKAGES = ["mlx", "mlx-lm[train]", "huggingface_hub[cli]"]


@dataclass
class AppSettings:
    """Application settings"""

    # Local inference server
    server_host: str = "127.0.0.1"
    server_port: int = 8080
    server_binary: str = "mlx_lm.server"
    readiness_path: str = "/v1/models"
    readiness_timeout_s: float = 30.0        # Seconds until start() gives up
    readiness_poll_interval_s: float = 0.3
    stop_timeout_s: float = 10.0             # terminate -> kill escalation

    # Endpoint discovery
    scan_ports: list[int] = field(default_factory=lambda: list(DEFAULT_SCAN_PORTS))
    scan_paths: list[str] = field(default_factory=lambda: list(DEFAULT_SCAN_PATHS))
    probe_timeout_s: float = 0.8

    # Runtime bootstrap (pip requirement strings installed into the venv)
    runtime_packages: list[str] = field(
        default_factory=lambda: list(DEFAULT_RUNTIME_PACKAGES)
    )

    # Post-training
    trainer_binary: str = "mlx_lm.lora"
    training_iterations: int = 100
    training_batch_size: int = 1
    training_learning_rate: str = "1e-5"

    # UI state
    last_model_id: Optional[str] = None
    last_adapter_path: Optional[str] = None

    @classmethod
    def load(cls, path: Path, use_cache: bool = True) -> "AppSettings":
        """Load settings from the packaged template and the user settings file.

        Args:
            path: user settings path (normally <runtime root>/config/user_settings.json)
            use_cache: return a cached instance when both mtimes are unchanged
        """
        template_path = TEMPLATE_PATH
        user_settings_path = path

        cache_key = str(path.resolve())

        template_mtime = template_path.stat().st_mtime if template_path.exists() else 0.0
        user_mtime = user_settings_path.stat().st_mtime if user_settings_path.exists() else 0.0

        if use_cache:
            with _settings_cache_lock:
                if cache_key in _settings_cache:
                    cached_template_mtime, cached_user_mtime, cached_settings = _settings_cache[cache_key]
                    if cached_template_mtime == template_mtime and cached_user_mtime == user_mtime:
                        logger.debug("Using cached settings for: %s", path)
                        return cached_settings

        data = {}

        # 1. Load from template (developer defaults)
        if template_path.exists():
            try:
                with open(template_path, 'r', encoding='utf-8-sig') as f:
                    data = json.load(f)
                    logger.debug("Loaded template settings from: %s", template_path)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning("Failed to load template settings: %s", e)

        # 2. Override with user settings
        if user_settings_path.exists():
            try:
                with open(user_settings_path, 'r', encoding='utf-8-sig') as f:
                    user_data = json.load(f)
                if isinstance(user_data, dict):
                    for key in USER_SETTINGS_KEYS:
                        if key in user_data:
                            data[key] = user_data[key]
                    logger.debug("Loaded user settings from: %s", user_settings_path)
            except (json.JSONDecodeError, UnicodeDecodeError) as e:
                logger.warning("Failed to load user settings: %s", e)

        known_fields = {f.name for f in cls.__dataclass_fields__.values()}
        filtered_data = {k: v for k, v in data.items() if k in known_fields}

        settings = cls(**filtered_data)
        settings._validate()

        with _settings_cache_lock:
            _settings_cache[cache_key] = (template_mtime, user_mtime, settings)

        return settings

    def _validate(self) -> None:
        """Validate and normalize setting values.

        Out-of-range or wrongly typed values are reset to defaults with a warning.
        """
        for name in ("readiness_timeout_s", "readiness_poll_interval_s", "probe_timeout_s", "stop_timeout_s"):
            self._coerce(name, float)
        for name in ("server_port", "training_iterations", "training_batch_size"):
            self._coerce(name, int)
        for name in ("server_host", "server_binary", "readiness_path", "trainer_binary", "training_learning_rate"):
            if not isinstance(getattr(self, name), str):
                self._reset(name)
        for name in ("scan_ports", "scan_paths", "runtime_packages"):
            if not isinstance(getattr(self, name), list):
                self._reset(name)

        if not 1.0 <= self.readiness_timeout_s <= 600.0:
            logger.warning("readiness_timeout_s out of range (%.1f), resetting to 30", self.readiness_timeout_s)
            self.readiness_timeout_s = 30.0

        if not 0.05 <= self.readiness_poll_interval_s <= 10.0:
            logger.warning(
                "readiness_poll_interval_s out of range (%.2f), resetting to 0.3",
                self.readiness_poll_interval_s,
            )
            self.readiness_poll_interval_s = 0.3

        if not 0.1 <= self.probe_timeout_s <= 30.0:
            logger.warning("probe_timeout_s out of range (%.2f), resetting to 0.8", self.probe_timeout_s)
            self.probe_timeout_s = 0.8

        if self.stop_timeout_s <= 0:
            self.stop_timeout_s = 10.0

        if not 1 <= self.server_port <= 65535:
            logger.warning("server_port out of range (%s), resetting to 8080", self.server_port)
            self.server_port = 8080

        if self.training_iterations < 1:
            self.training_iterations = 1
        if self.training_batch_size < 1:
            self.training_batch_size = 1

        # Drop malformed scan entries rather than failing the whole scan.
        self.scan_ports = [int(p) for p in self.scan_ports if isinstance(p, int) and 0 < p < 65536]
        self.scan_paths = [p for p in self.scan_paths if isinstance(p, str) and p.startswith("/")]
        if not self.scan_ports:
            self.scan_ports = list(DEFAULT_SCAN_PORTS)
        if not self.scan_paths:
            self.scan_paths = list(DEFAULT_SCAN_PATHS)

    def _reset(self, name: str) -> None:
        default = AppSettings.__dataclass_fields__[name]
        value = default.default_factory() if default.default_factory is not MISSING else default.default
        logger.warning("%s has an invalid value (%r), resetting to %r", name, getattr(self, name), value)
        setattr(self, name, value)

    def _coerce(self, name: str, cast) -> None:
        value = getattr(self, name)
        if isinstance(value, bool):
            self._reset(name)
            return
        try:
            setattr(self, name, cast(value))
        except (TypeError, ValueError, OverflowError):
            self._reset(name)

    def save(self, path: Path) -> None:
        """Save user-changeable settings to ``path`` and refresh the cache."""
        path.parent.mkdir(parents=True, exist_ok=True)

        data = {}
        for key in USER_SETTINGS_KEYS:
            if hasattr(self, key):
                data[key] = getattr(self, key)

        with open(path, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False, sort_keys=True)

        logger.debug("Saved user settings to: %s", path)

        cache_key = str(path.resolve())
        template_mtime = TEMPLATE_PATH.stat().st_mtime if TEMPLATE_PATH.exists() else 0.0
        user_mtime = path.stat().st_mtime if path.exists() else 0.0
        with _settings_cache_lock:
            _settings_cache[cache_key] = (template_mtime, user_mtime, self)


def get_default_runtime_root() -> Path:
    """Runtime root: $MLXBOX_HOME when set, otherwise ~/.mlxbox"""
    override = os.environ.get(RUNTIME_ROOT_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return Path.home() / ".mlxbox"


def get_default_settings_path() -> Path:
    """Get default user settings file path"""
    return get_default_runtime_root() / "config" / "user_settings.json"


def invalidate_settings_cache(path: Optional[Path] = None) -> None:
    """Invalidate settings cache.

    Args:
        path: clear only this path's entry; None clears everything.
    """
    with _settings_cache_lock:
        if path is None:
            _settings_cache.clear()
            logger.debug("Cleared all settings cache")
        else:
            cache_key = str(path.resolve())
            if cache_key in _settings_cache:
                del _settings_cache[cache_key]
                logger.debug("Cleared settings cache for: %s", path)
