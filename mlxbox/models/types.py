# mlxbox/models/types.py
"""
Core data types for the MLXBox local runtime.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional


class StepState(Enum):
    """Outcome of one bootstrap step"""
    OK = "ok"
    INSTALLED = "installed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class BootstrapStepResult:
    """A single bootstrap step outcome, in execution order."""
    name: str
    state: StepState
    detail: str


@dataclass(frozen=True)
class BootstrapReport:
    """
    Immutable snapshot of one bootstrap pass.
    """
    started_at: datetime
    finished_at: datetime
    results: tuple[BootstrapStepResult, ...] = ()

    @property
    def succeeded(self) -> bool:
        """True when no step failed"""
        return all(r.state != StepState.FAILED for r in self.results)

    @property
    def skipped(self) -> bool:
        return len(self.results) == 1 and self.results[0].state == StepState.SKIPPED

    def step(self, name: str) -> Optional[BootstrapStepResult]:
        for result in self.results:
            if result.name == name:
                return result
        return None


@dataclass(frozen=True)
class BootstrapStateMarker:
    """Persisted record of the last fully successful bootstrap."""
    schema_version: int
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "version": self.schema_version,
            "updatedAt": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> Optional["BootstrapStateMarker"]:
        version = data.get("version")
        updated_at = data.get("updatedAt")
        if not isinstance(version, int) or isinstance(version, bool):
            return None
        if not isinstance(updated_at, str):
            return None
        try:
            parsed = datetime.fromisoformat(updated_at)
        except ValueError:
            return None
        return cls(schema_version=version, updated_at=parsed)


class ServerState(Enum):
    """Local inference server lifecycle"""
    IDLE = "idle"
    STARTING = "starting"
    READY = "ready"
    STOPPING = "stopping"


@dataclass(frozen=True)
class ServerHandle:
    """
    The one live inference-server process owned by the supervisor.
    """
    pid: int
    model_path: str
    host: str
    port: int
    adapter_path: Optional[str] = None

    @property
    def base_url(self) -> str:
        return f"http://{self.host}:{self.port}"

    def matches(self, model_path: str, host: str, port: int) -> bool:
        return (self.model_path, self.host, self.port) == (model_path, host, port)


class TrainingState(Enum):
    """Training job lifecycle"""
    IDLE = "idle"
    RUNNING = "running"
    CANCELLING = "cancelling"


class TrainingDatasetFormat(Enum):
    """JSONL dataset layouts understood by the trainer"""
    CHAT = "chat"
    COMPLETIONS = "completions"
    TEXT = "text"
    TOOLS = "tools"

    @property
    def filename(self) -> str:
        return "train.jsonl"

    @property
    def display_name(self) -> str:
        return self.value.capitalize()

    @property
    def sample_line(self) -> str:
        return _DATASET_SAMPLE_LINES[self]


_DATASET_SAMPLE_LINES = {
    TrainingDatasetFormat.CHAT: (
        '{"messages":[{"role":"system","content":"You are a concise assistant."},'
        '{"role":"user","content":"Write a SQL query for the total orders by month."},'
        '{"role":"assistant","content":"SELECT DATE_TRUNC(\'month\', order_date) AS month, '
        'COUNT(*) AS total_orders FROM orders GROUP BY 1 ORDER BY 1;"}]}'
    ),
    TrainingDatasetFormat.COMPLETIONS: (
        '{"prompt":"Summarize: MLX is optimized for Apple silicon.",'
        '"completion":"MLX is a framework optimized for machine learning on Apple silicon."}'
    ),
    TrainingDatasetFormat.TEXT: (
        '{"text":"This is a standalone training text sample for language modeling."}'
    ),
    TrainingDatasetFormat.TOOLS: (
        '{"messages":[{"role":"user","content":"What is the weather in San Francisco?"},'
        '{"role":"assistant","tool_calls":[{"id":"call_1","type":"function","function":'
        '{"name":"get_current_weather","arguments":"{\\"location\\":\\"San Francisco, USA\\",'
        '\\"format\\":\\"celsius\\"}"}}]}],"tools":[{"type":"function","function":'
        '{"name":"get_current_weather","description":"Get the current weather","parameters":'
        '{"type":"object","properties":{"location":{"type":"string"},"format":{"type":"string",'
        '"enum":["celsius","fahrenheit"]}},"required":["location","format"]}}}]}'
    ),
}


@dataclass(frozen=True)
class DatasetScaffoldResult:
    dataset_directory: Path
    train_file: Path
    readme_file: Path


@dataclass(frozen=True)
class TrainingRunResult:
    """
    Outcome of a finished (or cancelled) training subprocess.
    A non-zero exit_code is reported here, never raised.
    """
    exit_code: int
    log: str
    adapter_path: Path

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0


@dataclass(frozen=True)
class TrainingAdapter:
    """A discovered training artifact directory"""
    path: Path
    model_id_hint: Optional[str]
    created_at: datetime

    @property
    def display_name(self) -> str:
        return self.path.name


@dataclass(frozen=True)
class EndpointCandidate:
    """
    A locally reachable HTTP service found by the endpoint scanner.
    Identity is (base_url, probe_path).
    """
    base_url: str
    probe_path: str
    status_code: int
    signature: str
    model_hint: Optional[str] = None

    @property
    def id(self) -> str:
        return f"{self.base_url}{self.probe_path}"

    @property
    def sort_key(self) -> tuple[str, str]:
        return (self.base_url, self.probe_path)


@dataclass(frozen=True)
class WhisperStatus:
    available: bool
    executable: Optional[str]
    hint: str


WHISPER_UNAVAILABLE = WhisperStatus(
    available=False,
    executable=None,
    hint="Install whisper.cpp to enable local speech-to-text workflows.",
)


@dataclass
class CommandResult:
    """Captured result of a finished subprocess"""
    returncode: int
    stdout: str = ""
    stderr: str = ""
    args: list[str] = field(default_factory=list)
