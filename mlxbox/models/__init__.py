# mlxbox/models/__init__.py
"""
Data models for MLXBox.
"""

from .types import (
    StepState,
    BootstrapStepResult,
    BootstrapReport,
    BootstrapStateMarker,
    ServerState,
    ServerHandle,
    TrainingState,
    TrainingDatasetFormat,
    DatasetScaffoldResult,
    TrainingRunResult,
    TrainingAdapter,
    EndpointCandidate,
    WhisperStatus,
    CommandResult,
)

__all__ = [
    'StepState',
    'BootstrapStepResult',
    'BootstrapReport',
    'BootstrapStateMarker',
    'ServerState',
    'ServerHandle',
    'TrainingState',
    'TrainingDatasetFormat',
    'DatasetScaffoldResult',
    'TrainingRunResult',
    'TrainingAdapter',
    'EndpointCandidate',
    'WhisperStatus',
    'CommandResult',
]
