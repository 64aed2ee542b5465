from __future__ import annotations

import io
import json
from pathlib import Path

import pytest
from rich.console import Console
from typer.testing import CliRunner

from kubeboot import __version__
from kubeboot.cli.app import app
from kubeboot.cli.renderers import DispatchJsonRenderer, DispatchPlainRenderer, _redact, run_events
from kubeboot.core import events as ev

cli = CliRunner()


def test_version() -> None:
    result = cli.invoke(app, ["version"])

    assert result.exit_code == 0
    assert f"kubeboot v{__version__}" in result.output


@pytest.mark.integration
def test_unknown_stage_exits_with_usage(sample_project: Path) -> None:
    result = cli.invoke(app, ["cluster", "bogus", "--project", str(sample_project)])

    assert result.exit_code == 2
    assert "Unknown cluster stage: 'bogus'" in result.output
    assert "Usage: kubeboot cluster" in result.output


@pytest.mark.integration
def test_status_without_mode_exits_with_usage(sample_project: Path) -> None:
    result = cli.invoke(app, ["connectivity", "status", "-p", str(sample_project)])

    assert result.exit_code == 2
    assert "status_mode" in result.output


@pytest.mark.integration
def test_missing_config_exits_with_usage(tmp_path: Path) -> None:
    result = cli.invoke(app, ["gitops", "install", "-p", str(tmp_path)])

    assert result.exit_code == 2
    assert "Missing config" in result.output


@pytest.mark.integration
def test_dry_run_json_emits_one_event_per_line(sample_project: Path) -> None:
    result = cli.invoke(app, ["cluster", "master", "--dry-run", "--json", "-p", str(sample_project)])

    assert result.exit_code == 0
    payloads = [json.loads(line) for line in result.output.splitlines() if line.strip()]
    types = [payload["type"] for payload in payloads]
    assert types[0] == "CommandStarted"
    assert "PlanResolved" in types
    assert "StepPlanned" in types
    assert types[-1] == "CommandCompleted"
    assert payloads[-1]["exit_code"] == 0


@pytest.mark.integration
def test_worker_dry_run_still_checks_join_file(sample_project: Path) -> None:
    result = cli.invoke(app, ["worker", "all", "--dry-run", "-p", str(sample_project)])

    assert result.exit_code == 2
    assert "Join command file not found" in result.output


def test_stages_json_lists_every_family() -> None:
    result = cli.invoke(app, ["stages", "--json"])

    assert result.exit_code == 0
    payload = json.loads(result.output)
    assert payload["ok"] is True
    assert set(payload["families"]) >= {"cluster", "gitops", "connectivity", "worker"}
    cluster = {stage["name"]: stage for stage in payload["families"]["cluster"]["stages"]}
    assert cluster["all"]["runs"] == ["master"]
    assert cluster["labels"]["steps"] == 2
    assert cluster["registry"]["steps"] is None


def test_stages_unknown_family() -> None:
    result = cli.invoke(app, ["stages", "database"])

    assert result.exit_code == 2
    assert "Unknown workflow family" in result.output


def test_redact_masks_secrets() -> None:
    assert _redact("password=hunter2 other") == "password: <redacted> other"
    assert _redact("argocd login --password hunter2 --insecure") == "argocd login --password <redacted> --insecure"
    assert _redact("--docker-password=hunter2") == "--docker-password <redacted>"


def _events() -> list[ev.KubebootEvent]:
    return [
        ev.CommandStarted(command="gitops install", project_dir=Path("/srv"), options={"dry_run": False}),
        ev.PlanResolved(command="gitops install", stages=["install"]),
        ev.StageStarted(command="gitops install", stage_id="install", label="Install Argo CD", total_steps=1),
        ev.CredentialCaptured(
            command="gitops install",
            name="argocd-admin-password",
            destination=Path("/srv/argocd-credentials.yaml"),
            value="Xy7-admin",
        ),
        ev.StageCompleted(command="gitops install", stage_id="install", duration_ms=1500),
        ev.CommandCompleted(command="gitops install", ok=True, exit_code=0),
    ]


def test_plain_renderer_shows_credential_once() -> None:
    buffer = io.StringIO()
    exit_code = run_events(_events(), DispatchPlainRenderer(Console(file=buffer, width=200)))

    output = buffer.getvalue()
    assert exit_code == 0
    assert output.count("Xy7-admin") == 1
    assert "[1/1] Install Argo CD" in output


def test_json_renderer_never_prints_credential() -> None:
    buffer = io.StringIO()
    run_events(_events(), DispatchJsonRenderer(Console(file=buffer)))

    lines = [json.loads(line) for line in buffer.getvalue().splitlines()]
    captured = next(line for line in lines if line["type"] == "CredentialCaptured")
    assert captured["value"] == "<redacted>"
    assert "Xy7-admin" not in buffer.getvalue()
