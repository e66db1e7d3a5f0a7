# mlxbox/__init__.py
"""
MLXBox - local LLM runtime harness

Bootstraps a private tool prefix, supervises a local inference server,
runs fine-tuning jobs and discovers local model endpoints.
"""

from pathlib import Path


def _get_version() -> str:
    """
    Read the version from pyproject.toml at import time.

    Editable installs keep reading the checked-out pyproject.toml, so the
    reported version follows the working tree without touching this file.

    Returns:
        str: version string (e.g. "0.3.0")
    """
    try:
        import tomllib  # Python 3.11+ standard library

        pyproject_path = Path(__file__).parent.parent / "pyproject.toml"
        if pyproject_path.exists():
            with open(pyproject_path, "rb") as f:
                data = tomllib.load(f)
            return data.get("project", {}).get("version", "0.0.0")
    except Exception:
        pass

    # Fallback: hard-coded version
    return "0.3.0"


__version__ = _get_version()
__app_name__ = "MLXBox"
