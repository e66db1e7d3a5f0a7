# mlxbox/config/__init__.py
from .settings import AppSettings, get_default_runtime_root, get_default_settings_path

__all__ = ["AppSettings", "get_default_runtime_root", "get_default_settings_path"]
