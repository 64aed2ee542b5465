from __future__ import annotations

import time
from pathlib import Path
from typing import Callable, Generator, Iterable

from kubeboot.config.load import ConfigError, load_config
from kubeboot.config.secrets import CredentialProvider, EnvCredentialProvider
from kubeboot.core import events as ev
from kubeboot.core.errors import ActionFailure, CredentialConflict, UsageError
from kubeboot.core.executor import CommandRunner, SubprocessRunner, execute
from kubeboot.core.poller import poll_events
from kubeboot.core.results import ExecutionResult, StageReport, combine
from kubeboot.core.steps import (
    ActionStep,
    CaptureStep,
    PlanInputs,
    ReadinessStep,
    RunContext,
    Stage,
    Step,
)
from kubeboot.core.vault import Credential, VaultWriter, WriteStatus
from kubeboot.workflows.registry import load_workflow

EXIT_OK = 0
EXIT_STAGE_FAILED = 1
EXIT_USAGE = 2


def dispatch_events(
    *,
    family: str,
    stage: str | None,
    project_dir: Path,
    config_path: Path | None = None,
    runner: CommandRunner | None = None,
    credentials: CredentialProvider | None = None,
    acknowledge_rotation: bool = False,
    dry_run: bool = False,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Iterable[ev.KubebootEvent]:
    project_dir = project_dir.resolve()
    config_path = config_path or Path("kubeboot.yaml")
    if not config_path.is_absolute():
        config_path = project_dir / config_path
    command = f"{family} {stage or ''}".strip()

    yield ev.CommandStarted(
        command=command,
        project_dir=project_dir,
        config_path=config_path,
        options={"rotate": acknowledge_rotation, "dry_run": dry_run},
    )

    try:
        config = load_config(project_dir, config_path)
    except ConfigError as exc:
        yield ev.UsageFailed(command=command, error_code="config_error", message=str(exc))
        yield ev.CommandCompleted(command=command, ok=False, exit_code=EXIT_USAGE)
        return

    inputs = PlanInputs(
        config=config,
        project_dir=project_dir,
        credentials=credentials or EnvCredentialProvider(),
    )
    try:
        plan = resolve_plan(family, stage, inputs)
    except UsageError as exc:
        yield ev.UsageFailed(command=command, error_code=exc.code, message=str(exc), usage=exc.usage)
        yield ev.CommandCompleted(command=command, ok=False, exit_code=EXIT_USAGE)
        return

    yield ev.PlanResolved(
        command=command,
        family=family,
        stage=stage or "",
        stages=[item.name for item in plan],
        dry_run=dry_run,
    )

    if dry_run:
        for item in plan:
            yield ev.StageStarted(command=command, stage_id=item.name, label=item.label, total_steps=len(item.steps))
            for index, step in enumerate(item.steps):
                yield ev.StepPlanned(
                    command=command,
                    stage_id=item.name,
                    step_index=index,
                    step_name=step.name,
                    label=step.label,
                    kind=step.kind,
                )
            yield ev.StageCompleted(command=command, stage_id=item.name, status="skipped")
        yield ev.CommandCompleted(command=command, ok=True, exit_code=EXIT_OK)
        return

    ctx = RunContext(
        config=config,
        project_dir=project_dir,
        runner=runner or SubprocessRunner(cwd=project_dir),
        vault=VaultWriter(acknowledge_rotation=acknowledge_rotation),
    )
    for item in plan:
        report = yield from _run_stage(item, ctx, command=command, sleep=sleep, clock=clock)
        if not report.ok:
            yield ev.CommandCompleted(command=command, ok=False, exit_code=EXIT_STAGE_FAILED)
            return

    notes = _composite_notes(family, stage)
    if notes:
        yield ev.Notice(command=command, stage_id=stage or "", title="Next steps", lines=list(notes))
    yield ev.CommandCompleted(command=command, ok=True, exit_code=EXIT_OK)


def resolve_plan(family: str, stage: str | None, inputs: PlanInputs) -> list[Stage]:
    """Expand ``stage`` into built Stages, validating every input first.

    Raises UsageError for unknown families or stages, and for anything a
    stage builder finds missing (settings, secrets, handoff files). Nothing
    external is touched here.
    """
    workflow = load_workflow(family)
    if not stage:
        raise UsageError(f"Missing {family} stage name", usage=workflow.usage())
    names = workflow.expand(stage)
    return [workflow.stages[name].build(inputs) for name in names]


def _composite_notes(family: str, stage: str | None) -> tuple[str, ...]:
    workflow = load_workflow(family)
    return tuple(workflow.composite_notes.get(stage or "", ()))


def _run_stage(
    stage: Stage,
    ctx: RunContext,
    *,
    command: str,
    sleep: Callable[[float], None],
    clock: Callable[[], float],
) -> Generator[ev.KubebootEvent, None, StageReport]:
    report = StageReport(stage=stage.name)
    started = time.perf_counter()
    yield ev.StageStarted(command=command, stage_id=stage.name, label=stage.label, total_steps=len(stage.steps))
    if stage.enters is not None:
        yield ev.PhaseChanged(command=command, phase=stage.enters.value)

    for index, step in enumerate(stage.steps):
        yield ev.StepStarted(
            command=command,
            stage_id=stage.name,
            step_index=index,
            step_name=step.name,
            label=step.label,
            kind=step.kind,
        )
        step_started = time.perf_counter()
        error_code = "action_failed"
        try:
            result = yield from _run_step(step, ctx, command=command, stage_id=stage.name, sleep=sleep, clock=clock)
        except (ActionFailure, CredentialConflict, UsageError) as exc:
            error_code = exc.code
            result = ExecutionResult.failed(step.name, str(exc))
        if isinstance(step, ReadinessStep) and not result.ok and error_code == "action_failed":
            error_code = "not_ready"

        optional = isinstance(step, ActionStep) and step.optional
        report.add(result, optional=optional)
        duration_ms = _elapsed_ms(step_started)
        if result.ok:
            yield ev.StepCompleted(
                command=command,
                stage_id=stage.name,
                step_index=index,
                step_name=step.name,
                duration_ms=duration_ms,
                outcome=result.outcome.value,
            )
            continue
        if optional:
            yield ev.Warning(command=command, code="optional_step_failed", message=f"{step.label}: {result.reason}")
            yield ev.StepCompleted(
                command=command,
                stage_id=stage.name,
                step_index=index,
                step_name=step.name,
                duration_ms=duration_ms,
                outcome=result.outcome.value,
            )
            continue

        yield ev.StepFailed(
            command=command,
            stage_id=stage.name,
            step_index=index,
            step_name=step.name,
            duration_ms=duration_ms,
            error_code=error_code,
            message=result.reason or "failed",
        )
        yield ev.StageFailed(
            command=command,
            stage_id=stage.name,
            duration_ms=_elapsed_ms(started),
            error_code=error_code,
            message=result.reason or "failed",
            step_index=index,
            step_name=step.name,
            hint=f"Fix the cause and re-run `kubeboot {command}`; completed steps are safe to repeat.",
        )
        return report

    yield ev.StageCompleted(command=command, stage_id=stage.name, duration_ms=_elapsed_ms(started), status="success")
    if stage.reaches is not None:
        yield ev.PhaseChanged(command=command, phase=stage.reaches.value)
    if stage.notes:
        yield ev.Notice(command=command, stage_id=stage.name, title=stage.label, lines=list(stage.notes))
    return report


def _run_step(
    step: Step,
    ctx: RunContext,
    *,
    command: str,
    stage_id: str,
    sleep: Callable[[float], None],
    clock: Callable[[], float],
) -> Generator[ev.KubebootEvent, None, ExecutionResult]:
    if isinstance(step, ActionStep):
        return (yield from _run_action_step(step, ctx, command=command, stage_id=stage_id))
    if isinstance(step, ReadinessStep):
        if step.phase is not None:
            yield ev.PhaseChanged(command=command, phase=step.phase.value)
        condition = step.condition(ctx)
        result = yield from poll_events(
            condition,
            max_transient_errors=ctx.config.polling.max_transient_errors,
            timeout_s=step.timeout_s,
            sleep=sleep,
            clock=clock,
            command=command,
            stage_id=stage_id,
        )
        return result
    if isinstance(step, CaptureStep):
        return (yield from _run_capture_step(step, ctx, command=command, stage_id=stage_id))
    raise TypeError(f"Unsupported step type: {type(step).__name__}")


def _run_action_step(
    step: ActionStep, ctx: RunContext, *, command: str, stage_id: str
) -> Generator[ev.KubebootEvent, None, ExecutionResult]:
    results: list[ExecutionResult] = []
    try:
        actions = step.actions_for(ctx)
    except ValueError as exc:
        return ExecutionResult.failed(step.name, f"malformed response: {exc}")
    for action in actions:
        result = execute(action, ctx.runner)
        results.append(result)
        yield ev.ActionExecuted(
            command=command,
            stage_id=stage_id,
            step_name=step.name,
            display=action.label,
            outcome=result.outcome.value,
            message=result.reason,
        )
        if not result.ok:
            break
    combined = combine(step.name, results)
    if combined.ok:
        ctx.outputs[step.name] = combined.output
        if step.describe is not None:
            lines = step.describe(combined.output)
            if lines:
                yield ev.Notice(command=command, stage_id=stage_id, title=step.label, lines=lines)
    return combined


def _run_capture_step(
    step: CaptureStep, ctx: RunContext, *, command: str, stage_id: str
) -> Generator[ev.KubebootEvent, None, ExecutionResult]:
    destination = step.destination(ctx)
    if step.reuse_existing and not ctx.vault.acknowledge_rotation:
        existing = ctx.vault.read(destination, step.fmt)
        if existing is not None:
            ctx.credentials[step.credential] = existing
            yield ev.CredentialReused(command=command, name=step.credential, destination=destination)
            return ExecutionResult.already_satisfied(step.name, reason="credential already captured")

    produced = execute(step.producer, ctx.runner)
    yield ev.ActionExecuted(
        command=command,
        stage_id=stage_id,
        step_name=step.name,
        display=step.producer.label,
        outcome=produced.outcome.value,
        message=produced.reason,
    )
    if not produced.ok:
        return ExecutionResult.failed(step.name, produced.reason or "producer failed")
    try:
        value = step.extract(produced.output)
    except ValueError as exc:
        return ExecutionResult.failed(step.name, f"malformed response: {exc}")
    if not value:
        return ExecutionResult.failed(step.name, f"malformed response: empty {step.credential}")

    details = step.details(ctx) if step.details is not None else {}
    credential = Credential(name=step.credential, value=value, producer=stage_id, details=details)
    try:
        status = ctx.vault.write(credential, destination, step.fmt)
    except OSError as exc:
        return ExecutionResult.failed(step.name, f"failed to write {destination}: {exc}")
    ctx.credentials[step.credential] = value
    if status is WriteStatus.UNCHANGED:
        yield ev.CredentialUnchanged(command=command, name=step.credential, destination=destination)
        return ExecutionResult.already_satisfied(step.name, reason="credential unchanged")
    yield ev.CredentialCaptured(
        command=command,
        name=step.credential,
        destination=destination,
        value=value,
        rotated=status is WriteStatus.ROTATED,
    )
    return ExecutionResult.succeeded(step.name)


def _elapsed_ms(started: float) -> float:
    return (time.perf_counter() - started) * 1000
