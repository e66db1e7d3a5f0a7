# mlxbox/services/adapter_registry.py
"""
Discovery of trained LoRA adapters under <root>/training-runs.

Each run directory gets a metadata record (mlxbox_adapter.json) written
before the trainer starts, so even a crashed run stays attributable to its
base model.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from mlxbox.models.types import TrainingAdapter
from mlxbox.services.runtime_paths import RuntimePaths, get_runtime_paths
from mlxbox.services.state_files import atomic_write_json, parse_iso_datetime, safe_read_json, utc_now

logger = logging.getLogger(__name__)

METADATA_FILENAME = "mlxbox_adapter.json"
ADAPTER_MARKER_FILES = ("adapter_config.json", "adapters.safetensors")

_DISTANT_PAST = datetime.min.replace(tzinfo=timezone.utc)


def write_metadata(adapter_directory: Path, model_id: str) -> None:
    atomic_write_json(
        adapter_directory / METADATA_FILENAME,
        {"modelID": model_id, "createdAt": utc_now().isoformat()},
    )


def read_metadata(adapter_directory: Path) -> tuple[Optional[str], Optional[datetime]]:
    data = safe_read_json(adapter_directory / METADATA_FILENAME)
    if data is None:
        return None, None
    model_id = data.get("modelID")
    if not isinstance(model_id, str) or not model_id:
        model_id = None
    return model_id, parse_iso_datetime(data.get("createdAt"))


def _filesystem_created_at(path: Path) -> datetime:
    try:
        stat = path.stat()
    except OSError:
        return _DISTANT_PAST
    # st_birthtime exists on macOS/BSD; elsewhere ctime is the closest thing.
    timestamp = getattr(stat, "st_birthtime", None) or stat.st_ctime
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


def is_adapter_directory(path: Path) -> bool:
    return path.is_dir() and any((path / name).is_file() for name in ADAPTER_MARKER_FILES)


def scan(paths: Optional[RuntimePaths] = None) -> list[TrainingAdapter]:
    """List adapters newest first. A missing training-runs root yields []."""
    paths = paths or get_runtime_paths()
    root = paths.training_runs_root(create=False)
    if not root.is_dir():
        return []

    adapters: list[TrainingAdapter] = []
    for entry in root.iterdir():
        if entry.name.startswith("."):
            continue
        if not is_adapter_directory(entry):
            continue

        model_id, created = read_metadata(entry)
        if created is None:
            created = _filesystem_created_at(entry)
        adapters.append(
            TrainingAdapter(path=entry, model_id_hint=model_id, created_at=created)
        )

    adapters.sort(key=lambda a: a.created_at, reverse=True)
    logger.debug("Found %d adapters under %s", len(adapters), root)
    return adapters
