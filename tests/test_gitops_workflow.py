from __future__ import annotations

import base64
import json
import stat
from pathlib import Path

import pytest
from ruamel.yaml import YAML

from conftest import FakeRunner, reply, set_config
from kubeboot.config.secrets import StaticCredentialProvider
from kubeboot.core.dispatch import dispatch_events
from kubeboot.core.events import (
    CredentialCaptured,
    CredentialUnchanged,
    Notice,
    StageFailed,
    UsageFailed,
)
from kubeboot.workflows.gitops import decode_password


def _run(project: Path, runner: FakeRunner, stage: str, **kwargs) -> list:
    kwargs.setdefault("credentials", StaticCredentialProvider({}))
    return list(
        dispatch_events(
            family="gitops",
            stage=stage,
            project_dir=project,
            runner=runner,
            sleep=lambda _: None,
            **kwargs,
        )
    )


def _installable(runner: FakeRunner, password: str = "Xy7-admin") -> FakeRunner:
    encoded = base64.b64encode(password.encode()).decode()
    runner.script(
        "get",
        "deployment",
        "argocd-server",
        responses=[reply(stdout=""), reply(stdout="1")],
    )
    runner.script(
        "get",
        "secret",
        "argocd-initial-admin-secret",
        responses=[
            reply(returncode=1, stderr='Error from server (NotFound): secrets "argocd-initial-admin-secret" not found'),
            reply(stdout="argocd-initial-admin-secret   Opaque   1   3s\n"),
        ],
    )
    runner.on("jsonpath={.data.password}", stdout=encoded)
    return runner


def test_decode_password() -> None:
    assert decode_password("c2VjcmV0\n") == "secret"
    with pytest.raises(ValueError):
        decode_password("")
    with pytest.raises(ValueError):
        decode_password("not base64!")


@pytest.mark.integration
def test_install_captures_admin_password(sample_project: Path, runner: FakeRunner) -> None:
    events = _run(sample_project, _installable(runner), "install")

    assert events[-1].ok is True

    applied = runner.ran("apply", "-n", "argocd", "-f")
    assert len(applied) == 1

    patched = runner.ran("patch", "svc", "argocd-server")
    patch = json.loads(patched[0].argv[-1])
    assert patch["spec"]["type"] == "NodePort"
    assert {port["nodePort"] for port in patch["spec"]["ports"]} == {30443, 30080}

    credentials = sample_project / "state" / "argocd-credentials.yaml"
    record = YAML(typ="safe").load(credentials.read_text(encoding="utf-8"))
    assert record["password"] == "Xy7-admin"
    assert record["username"] == "admin"
    assert record["node_port_url"] == "https://192.168.100.101:30443"
    assert "setup_date" in record
    assert stat.S_IMODE(credentials.stat().st_mode) == 0o600

    captured = [event for event in events if isinstance(event, CredentialCaptured)]
    assert [event.value for event in captured] == ["Xy7-admin"]
    assert sum("Xy7-admin" in str(event.to_dict()) for event in events) == 1


@pytest.mark.integration
def test_install_rerun_keeps_password(sample_project: Path, runner: FakeRunner) -> None:
    _run(sample_project, _installable(runner), "install")

    events = _run(sample_project, _installable(FakeRunner()), "install")

    assert events[-1].ok is True
    assert any(isinstance(event, CredentialUnchanged) for event in events)
    assert not any(isinstance(event, CredentialCaptured) for event in events)


@pytest.mark.integration
def test_install_with_different_password_conflicts(sample_project: Path, runner: FakeRunner) -> None:
    _run(sample_project, _installable(runner), "install")

    events = _run(sample_project, _installable(FakeRunner(), password="other"), "install")

    failed = next(event for event in events if isinstance(event, StageFailed))
    assert failed.error_code == "credential_conflict"
    assert failed.step_name == "admin_password"
    assert events[-1].exit_code == 1
    record = YAML(typ="safe").load((sample_project / "state" / "argocd-credentials.yaml").read_text(encoding="utf-8"))
    assert record["password"] == "Xy7-admin"


@pytest.mark.integration
def test_install_timeout_is_not_ready(sample_project: Path, runner: FakeRunner) -> None:
    runner.on("get", "deployment", "argocd-server", stdout="")
    ticks = iter(range(0, 10_000, 60))

    events = _run(sample_project, runner, "install", clock=lambda: next(ticks))

    failed = next(event for event in events if isinstance(event, StageFailed))
    assert failed.step_name == "argocd_server_available"
    assert failed.error_code == "not_ready"
    assert failed.message.startswith("timeout:")
    assert runner.ran("patch", "svc") == []


@pytest.mark.integration
def test_unreachable_api_is_distinct_from_timeout(sample_project: Path, runner: FakeRunner) -> None:
    runner.on(
        "get",
        "deployment",
        "argocd-server",
        returncode=1,
        stderr="The connection to the server 192.168.100.101:6443 was refused",
    )

    events = _run(sample_project, runner, "install")

    failed = next(event for event in events if isinstance(event, StageFailed))
    assert failed.error_code == "not_ready"
    assert failed.message.startswith("unreachable:")


@pytest.mark.integration
def test_configure_waits_for_rollout(sample_project: Path, runner: FakeRunner) -> None:
    runner.script(
        "rollout",
        "status",
        responses=[
            reply(stdout='Waiting for deployment "argocd-server" rollout to finish: 1 old replicas are pending termination...\n'),
            reply(stdout='deployment "argocd-server" successfully rolled out\n'),
        ],
    )

    events = _run(sample_project, runner, "configure")

    assert events[-1].ok is True
    patched = runner.ran("patch", "configmap", "argocd-cmd-params-cm")
    assert json.loads(patched[0].argv[-1]) == {"data": {"server.insecure": "true"}}
    assert len(runner.ran("rollout", "restart", "deployment", "argocd-server")) == 1
    assert len(runner.ran("rollout", "status")) == 2


@pytest.mark.integration
def test_app_without_repo_prints_access_notes(sample_project: Path, runner: FakeRunner) -> None:
    events = _run(sample_project, runner, "app")

    assert events[-1].ok is True
    applied = [call.argv[-1] for call in runner.ran("apply", "-f")]
    assert [Path(item).name for item in applied] == ["todo-project.yaml", "todo-app-application.yaml"]
    notice = next(event for event in events if isinstance(event, Notice))
    assert any("argocd repo add" in line for line in notice.lines)
    assert runner.ran("argocd", "login") == []


@pytest.mark.integration
def test_app_registers_repo_with_captured_password(sample_project: Path, runner: FakeRunner) -> None:
    set_config(
        sample_project,
        "registry:",
        "gitops:\n  repo:\n    url: https://github.com/example/todo.git\n"
        "    username: bot\n    password_env: REPO_TOKEN\n\nregistry:",
    )
    credentials = StaticCredentialProvider({"REPO_TOKEN": "ghp_token"})
    _run(sample_project, _installable(runner), "install")

    repo_runner = FakeRunner()
    events = _run(sample_project, repo_runner, "app", credentials=credentials)

    assert events[-1].ok is True
    login = repo_runner.ran("argocd", "login")
    assert login[0].argv[2] == "192.168.100.101:30443"
    assert "Xy7-admin" in login[0].argv
    assert "--insecure" in login[0].argv
    add = repo_runner.ran("repo", "add", "https://github.com/example/todo.git")
    assert "--upsert" in add[0].argv
    assert add[0].argv[-2:] == ("--password", "ghp_token")


@pytest.mark.integration
def test_app_with_missing_manifest_is_usage_error(sample_project: Path, runner: FakeRunner) -> None:
    (sample_project / "argocd" / "todo-project.yaml").unlink()

    events = _run(sample_project, runner, "app")

    failed = next(event for event in events if isinstance(event, UsageFailed))
    assert "todo-project.yaml" in failed.message
    assert runner.calls == []


@pytest.mark.integration
def test_info_reports_master_address(sample_project: Path, runner: FakeRunner) -> None:
    runner.on("get", "nodes", "-o", stdout="10.0.0.5")

    events = _run(sample_project, runner, "info")

    notice = next(event for event in events if isinstance(event, Notice))
    assert "UI URL: https://10.0.0.5:30443" in notice.lines
    assert any("argocd login 10.0.0.5:30443" in line for line in notice.lines)


@pytest.mark.integration
def test_corrupt_credentials_file_fails_capture_step(sample_project: Path, runner: FakeRunner) -> None:
    credentials = sample_project / "state" / "argocd-credentials.yaml"
    credentials.parent.mkdir(parents=True)
    credentials.write_text("password: [unterminated\n", encoding="utf-8")

    events = _run(sample_project, _installable(runner), "install")

    failed = next(event for event in events if isinstance(event, StageFailed))
    assert failed.step_name == "admin_password"
    assert failed.error_code == "action_failed"
    assert credentials.name in failed.message
    assert events[-1].exit_code == 1
    assert credentials.read_text(encoding="utf-8") == "password: [unterminated\n"
