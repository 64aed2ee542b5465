from __future__ import annotations

import time
from pathlib import Path
from typing import Any, Iterable

from kubeboot.config.model import Config
from kubeboot.config.secrets import StaticCredentialProvider
from kubeboot.core import events as ev
from kubeboot.core.errors import UsageError
from kubeboot.core.steps import PlanInputs, Workflow
from kubeboot.workflows.registry import available_workflows, load_workflow


def list_stages_events(family: str | None = None) -> Iterable[ev.KubebootEvent]:
    command = f"stages {family or ''}".strip()
    yield ev.CommandStarted(command=command)

    if family:
        try:
            workflows = {family: load_workflow(family)}
        except UsageError as exc:
            yield ev.UsageFailed(command=command, error_code=exc.code, message=str(exc), usage=exc.usage)
            yield ev.CommandCompleted(command=command, ok=False, exit_code=2)
            return
    else:
        workflows = available_workflows()

    started = time.perf_counter()
    yield ev.StageStarted(command=command, stage_id="discover_stages", label="Discover stages")
    # Step counts come from the defaults; builders that need local files or secrets report none.
    inputs = PlanInputs(config=Config(), project_dir=Path.cwd(), credentials=StaticCredentialProvider({}))
    for name, workflow in workflows.items():
        yield ev.StagesDiscovered(
            command=command,
            family=name,
            description=workflow.description,
            stages=_describe(workflow, inputs),
        )
    yield ev.StageCompleted(
        command=command,
        stage_id="discover_stages",
        duration_ms=_elapsed_ms(started),
        status="success",
    )
    yield ev.CommandCompleted(command=command, ok=True, exit_code=0)


def _describe(workflow: Workflow, inputs: PlanInputs) -> list[dict[str, Any]]:
    stages: list[dict[str, Any]] = []
    for name, spec in workflow.stages.items():
        try:
            steps: int | None = len(spec.build(inputs).steps)
        except UsageError:
            steps = None
        stages.append({"name": name, "help": spec.help or spec.label, "steps": steps, "runs": [name]})
    for name, members in workflow.composites.items():
        stages.append({"name": name, "help": f"Run {', '.join(members)}", "steps": None, "runs": list(members)})
    return stages


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
