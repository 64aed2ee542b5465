from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any


@dataclass(frozen=True)
class KubebootEvent:
    ts: float = field(default_factory=time.perf_counter)
    level: str = "INFO"
    command: str = ""
    type: str = ""

    def to_dict(self) -> dict[str, Any]:
        return _serialize(asdict(self))


@dataclass(frozen=True)
class CommandStarted(KubebootEvent):
    type: str = "CommandStarted"
    project_dir: Path | None = None
    config_path: Path | None = None
    options: dict[str, Any] | None = None


@dataclass(frozen=True)
class CommandCompleted(KubebootEvent):
    type: str = "CommandCompleted"
    ok: bool = True
    exit_code: int = 0


@dataclass(frozen=True)
class UsageFailed(KubebootEvent):
    type: str = "UsageFailed"
    level: str = "ERROR"
    error_code: str = ""
    message: str = ""
    usage: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class PlanResolved(KubebootEvent):
    type: str = "PlanResolved"
    family: str = ""
    stage: str = ""
    stages: list[str] = field(default_factory=list)
    dry_run: bool = False


@dataclass(frozen=True)
class StageStarted(KubebootEvent):
    type: str = "StageStarted"
    stage_id: str = ""
    label: str = ""
    total_steps: int = 0


@dataclass(frozen=True)
class StageCompleted(KubebootEvent):
    type: str = "StageCompleted"
    stage_id: str = ""
    duration_ms: float = 0.0
    status: str = "success"


@dataclass(frozen=True)
class StageFailed(KubebootEvent):
    type: str = "StageFailed"
    level: str = "ERROR"
    stage_id: str = ""
    duration_ms: float = 0.0
    error_code: str = ""
    message: str = ""
    step_index: int | None = None
    step_name: str | None = None
    hint: str | None = None


@dataclass(frozen=True)
class StepPlanned(KubebootEvent):
    type: str = "StepPlanned"
    stage_id: str = ""
    step_index: int = 0
    step_name: str = ""
    label: str = ""
    kind: str = ""


@dataclass(frozen=True)
class StepStarted(KubebootEvent):
    type: str = "StepStarted"
    stage_id: str = ""
    step_index: int = 0
    step_name: str = ""
    label: str = ""
    kind: str = ""


@dataclass(frozen=True)
class StepCompleted(KubebootEvent):
    type: str = "StepCompleted"
    stage_id: str = ""
    step_index: int = 0
    step_name: str = ""
    duration_ms: float = 0.0
    outcome: str = "succeeded"


@dataclass(frozen=True)
class StepFailed(KubebootEvent):
    type: str = "StepFailed"
    level: str = "ERROR"
    stage_id: str = ""
    step_index: int = 0
    step_name: str = ""
    duration_ms: float = 0.0
    error_code: str = ""
    message: str = ""


@dataclass(frozen=True)
class ActionExecuted(KubebootEvent):
    type: str = "ActionExecuted"
    stage_id: str = ""
    step_name: str = ""
    display: str = ""
    outcome: str = ""
    message: str | None = None


@dataclass(frozen=True)
class PollAttempt(KubebootEvent):
    type: str = "PollAttempt"
    level: str = "DEBUG"
    stage_id: str = ""
    condition: str = ""
    attempt: int = 0
    ready: bool = False
    transient_errors: int = 0
    note: str | None = None


@dataclass(frozen=True)
class PhaseChanged(KubebootEvent):
    type: str = "PhaseChanged"
    phase: str = ""


@dataclass(frozen=True)
class CredentialCaptured(KubebootEvent):
    """The only event that carries a secret value; renderers show it once."""

    type: str = "CredentialCaptured"
    name: str = ""
    destination: Path | None = None
    value: str = ""
    rotated: bool = False


@dataclass(frozen=True)
class CredentialUnchanged(KubebootEvent):
    type: str = "CredentialUnchanged"
    name: str = ""
    destination: Path | None = None


@dataclass(frozen=True)
class CredentialReused(KubebootEvent):
    type: str = "CredentialReused"
    name: str = ""
    destination: Path | None = None


@dataclass(frozen=True)
class Notice(KubebootEvent):
    type: str = "Notice"
    stage_id: str = ""
    title: str = ""
    lines: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class Warning(KubebootEvent):
    type: str = "Warning"
    level: str = "WARNING"
    code: str = ""
    message: str = ""
    hint: str | None = None


@dataclass(frozen=True)
class StagesDiscovered(KubebootEvent):
    type: str = "StagesDiscovered"
    family: str = ""
    description: str = ""
    stages: list[dict[str, Any]] = field(default_factory=list)


def _serialize(value: Any) -> Any:
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, dict):
        return {key: _serialize(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_serialize(item) for item in value]
    return value
