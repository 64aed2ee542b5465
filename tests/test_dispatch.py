from __future__ import annotations

from pathlib import Path

import pytest

from conftest import FakeRunner
from kubeboot.config.secrets import StaticCredentialProvider
from kubeboot.core.dispatch import dispatch_events
from kubeboot.core.events import (
    CommandCompleted,
    CommandStarted,
    Notice,
    PlanResolved,
    StageCompleted,
    StageFailed,
    StageStarted,
    StepPlanned,
    UsageFailed,
)


def _run(project: Path, runner: FakeRunner, family: str, stage: str | None, **kwargs) -> list:
    kwargs.setdefault("credentials", StaticCredentialProvider({}))
    return list(
        dispatch_events(
            family=family,
            stage=stage,
            project_dir=project,
            runner=runner,
            sleep=lambda _: None,
            **kwargs,
        )
    )


@pytest.mark.integration
def test_unknown_stage_prints_usage_and_runs_nothing(sample_project: Path, runner: FakeRunner) -> None:
    events = _run(sample_project, runner, "cluster", "bogus")

    failed = next(event for event in events if isinstance(event, UsageFailed))
    assert failed.error_code == "usage_error"
    assert "bogus" in failed.message
    assert any("master" in line for line in failed.usage)
    assert runner.calls == []

    completed = events[-1]
    assert isinstance(completed, CommandCompleted)
    assert completed.ok is False
    assert completed.exit_code == 2


@pytest.mark.integration
def test_missing_stage_is_usage_error(sample_project: Path, runner: FakeRunner) -> None:
    events = _run(sample_project, runner, "gitops", None)

    failed = next(event for event in events if isinstance(event, UsageFailed))
    assert failed.usage[0].startswith("Usage: kubeboot gitops")
    assert any("there is no default" in line and "kubeboot gitops all" in line for line in failed.usage)
    assert events[-1].exit_code == 2
    assert runner.calls == []


@pytest.mark.integration
def test_unknown_family_is_usage_error(sample_project: Path, runner: FakeRunner) -> None:
    events = _run(sample_project, runner, "database", "all")

    failed = next(event for event in events if isinstance(event, UsageFailed))
    assert "database" in failed.message
    assert events[-1].exit_code == 2


@pytest.mark.integration
def test_config_error_exits_with_usage_code(tmp_path: Path, runner: FakeRunner) -> None:
    events = _run(tmp_path, runner, "cluster", "master")

    assert isinstance(events[0], CommandStarted)
    failed = next(event for event in events if isinstance(event, UsageFailed))
    assert failed.error_code == "config_error"
    assert events[-1].exit_code == 2
    assert runner.calls == []


@pytest.mark.integration
def test_dry_run_plans_without_running(sample_project: Path, runner: FakeRunner) -> None:
    events = _run(sample_project, runner, "cluster", "all", dry_run=True)

    plan = next(event for event in events if isinstance(event, PlanResolved))
    assert plan.stages == ["master"]
    assert plan.dry_run is True

    planned = [event for event in events if isinstance(event, StepPlanned) and event.stage_id == "master"]
    assert planned[0].step_name == "update_system"
    capture = next(event for event in planned if event.step_name == "join_command")
    assert capture.kind == "capture"
    assert planned[-1].step_name == "metrics_insecure_tls"

    skipped = [event for event in events if isinstance(event, StageCompleted)]
    assert {event.status for event in skipped} == {"skipped"}
    assert runner.calls == []
    assert events[-1].exit_code == 0


@pytest.mark.integration
def test_missing_secret_fails_before_any_command(sample_project: Path, runner: FakeRunner) -> None:
    events = _run(sample_project, runner, "cluster", "registry")

    failed = next(event for event in events if isinstance(event, UsageFailed))
    assert "KUBEBOOT_REGISTRY_PASSWORD" in failed.message
    assert runner.calls == []
    assert events[-1].exit_code == 2


@pytest.mark.integration
def test_composite_halts_at_first_failing_stage(sample_project: Path, runner: FakeRunner) -> None:
    runner.on("test", "-f", "/etc/kubernetes/admin.conf", returncode=1)
    runner.on("kubeadm", "init", returncode=1, stderr="[ERROR Port-6443]: Port 6443 is in use\n")

    events = _run(sample_project, runner, "cluster", "all")

    failed = next(event for event in events if isinstance(event, StageFailed))
    assert failed.stage_id == "master"
    assert failed.step_name == "kubeadm_init"
    assert failed.error_code == "action_failed"
    assert "Port 6443 is in use" in failed.message
    assert "kubeboot cluster all" in (failed.hint or "")

    started = [event.stage_id for event in events if isinstance(event, StageStarted)]
    assert started == ["master"]
    assert not any(isinstance(event, Notice) and event.title == "Next steps" for event in events)

    completed = events[-1]
    assert completed.ok is False
    assert completed.exit_code == 1


@pytest.mark.integration
def test_event_payloads_serialize(sample_project: Path, runner: FakeRunner) -> None:
    events = _run(sample_project, runner, "cluster", "master", dry_run=True)

    started = events[0].to_dict()
    assert started["type"] == "CommandStarted"
    assert started["project_dir"] == str(sample_project.resolve())
    assert started["options"] == {"rotate": False, "dry_run": True}
