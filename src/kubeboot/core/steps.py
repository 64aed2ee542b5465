from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Mapping, Union

from kubeboot.config.load import resolve_path
from kubeboot.config.model import Config
from kubeboot.config.secrets import CredentialProvider
from kubeboot.core.errors import ActionFailure, UsageError
from kubeboot.core.executor import Action, CommandRunner
from kubeboot.core.poller import ReadinessCondition
from kubeboot.core.vault import CredentialFormat, VaultWriter


class Phase(str, Enum):
    UNINITIALIZED = "Uninitialized"
    MASTER_INSTALLING = "MasterInstalling"
    MASTER_READY = "MasterReady"
    AWAITING_WORKERS = "AwaitingWorkers"
    WORKERS_JOINING = "WorkersJoining"
    CONVERGED = "Converged"


@dataclass
class RunContext:
    """Everything a step may read while a plan runs.

    ``credentials`` carries values captured earlier in this invocation so
    later steps can consume them without touching the vault files.
    """

    config: Config
    project_dir: Path
    runner: CommandRunner
    vault: VaultWriter
    credentials: dict[str, str] = field(default_factory=dict)
    outputs: dict[str, str] = field(default_factory=dict)

    def path(self, value: str | Path) -> Path:
        return resolve_path(self.project_dir, value)

    def credential(self, name: str, destination: Path, fmt: CredentialFormat) -> str:
        if name in self.credentials:
            return self.credentials[name]
        value = self.vault.read(destination, fmt)
        if value is None:
            raise ActionFailure(f"{name} has not been captured yet ({destination} is missing)")
        self.credentials[name] = value
        return value


@dataclass(frozen=True)
class ActionStep:
    name: str
    label: str
    actions: tuple[Action, ...] = ()
    resolve: Callable[[RunContext], list[Action]] | None = None
    describe: Callable[[str], list[str]] | None = None
    optional: bool = False
    kind: str = "action"

    def actions_for(self, ctx: RunContext) -> list[Action]:
        if self.resolve is not None:
            return self.resolve(ctx)
        return list(self.actions)


@dataclass(frozen=True)
class ReadinessStep:
    name: str
    label: str
    condition: Callable[[RunContext], ReadinessCondition]
    timeout_s: float | None = None
    phase: Phase | None = None
    kind: str = "readiness"


@dataclass(frozen=True)
class CaptureStep:
    name: str
    label: str
    credential: str
    producer: Action
    destination: Callable[[RunContext], Path]
    fmt: CredentialFormat
    extract: Callable[[str], str] = str.strip
    details: Callable[[RunContext], dict[str, str]] | None = None
    reuse_existing: bool = False
    kind: str = "capture"


Step = Union[ActionStep, ReadinessStep, CaptureStep]


@dataclass(frozen=True)
class Stage:
    name: str
    label: str
    steps: tuple[Step, ...]
    enters: Phase | None = None
    reaches: Phase | None = None
    notes: tuple[str, ...] = ()


@dataclass
class PlanInputs:
    """What a stage builder may consult while the plan is being validated."""

    config: Config
    project_dir: Path
    credentials: CredentialProvider

    def path(self, value: str | Path) -> Path:
        return resolve_path(self.project_dir, value)

    def require(self, value: str | None, setting: str) -> str:
        if not value:
            raise UsageError(f"Missing required setting: {setting}")
        return value

    def secret(self, env_name: str, purpose: str) -> str:
        value = self.credentials.get(env_name)
        if not value:
            raise UsageError(f"Missing credential for {purpose}: set {env_name}")
        return value


StageBuilder = Callable[[PlanInputs], Stage]


@dataclass(frozen=True)
class StageSpec:
    label: str
    build: StageBuilder
    help: str = ""


@dataclass(frozen=True)
class Workflow:
    family: str
    description: str
    stages: Mapping[str, StageSpec]
    composites: Mapping[str, tuple[str, ...]] = field(default_factory=dict)
    composite_notes: Mapping[str, tuple[str, ...]] = field(default_factory=dict)

    @property
    def stage_names(self) -> list[str]:
        return [*self.stages, *self.composites]

    def usage(self) -> list[str]:
        lines = [f"Usage: kubeboot {self.family} {{{'|'.join(self.stage_names)}}}", "", "Commands:"]
        width = max(len(name) for name in self.stage_names)
        for name, spec in self.stages.items():
            lines.append(f"  {name.ljust(width)} - {spec.help or spec.label}")
        for name, members in self.composites.items():
            lines.append(f"  {name.ljust(width)} - Run {', '.join(members)}")
        if self.composites:
            full = next(iter(self.composites))
            lines += [
                "",
                f"A stage is required; there is no default. Use `kubeboot {self.family} {full}` for the full sequence.",
            ]
        return lines

    def expand(self, stage: str) -> list[str]:
        if stage in self.composites:
            return list(self.composites[stage])
        if stage in self.stages:
            return [stage]
        raise UsageError(f"Unknown {self.family} stage: {stage!r}", usage=self.usage())
