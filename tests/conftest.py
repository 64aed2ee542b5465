from __future__ import annotations

import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence, Union

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


Response = Union[subprocess.CompletedProcess, BaseException]


@dataclass
class Call:
    argv: tuple[str, ...]
    input: str | None = None
    timeout: float | None = None


class FakeRunner:
    """Scripted CommandRunner.

    A rule matches when its pattern appears as a contiguous run inside argv.
    The most recently added matching rule wins. Each rule replays its
    responses in order and repeats the last one. Unmatched commands exit 0
    with empty output.
    """

    def __init__(self) -> None:
        self.calls: list[Call] = []
        self._rules: list[tuple[tuple[str, ...], list[Response]]] = []

    def on(self, *pattern: str, stdout: str = "", stderr: str = "", returncode: int = 0) -> "FakeRunner":
        return self.script(*pattern, responses=[reply(stdout=stdout, stderr=stderr, returncode=returncode)])

    def script(self, *pattern: str, responses: Sequence[Response]) -> "FakeRunner":
        self._rules.append((tuple(pattern), list(responses)))
        return self

    def run(
        self,
        argv: Sequence[str],
        *,
        input: str | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        argv = tuple(argv)
        self.calls.append(Call(argv=argv, input=input, timeout=timeout))
        for pattern, responses in reversed(self._rules):
            if _contains(argv, pattern):
                response = responses.pop(0) if len(responses) > 1 else responses[0]
                if isinstance(response, BaseException):
                    raise response
                return subprocess.CompletedProcess(
                    list(argv), response.returncode, stdout=response.stdout, stderr=response.stderr
                )
        return subprocess.CompletedProcess(list(argv), 0, stdout="", stderr="")

    def ran(self, *pattern: str) -> list[Call]:
        return [call for call in self.calls if _contains(call.argv, tuple(pattern))]


def reply(stdout: str = "", stderr: str = "", returncode: int = 0) -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess([], returncode, stdout=stdout, stderr=stderr)


def _contains(argv: tuple[str, ...], pattern: tuple[str, ...]) -> bool:
    if not pattern:
        return True
    size = len(pattern)
    return any(argv[index : index + size] == pattern for index in range(len(argv) - size + 1))


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def sample_project(tmp_path: Path) -> Path:
    project_dir = tmp_path / "project"
    project_dir.mkdir(parents=True)
    (project_dir / "argocd").mkdir()
    (project_dir / "ansible" / "playbooks").mkdir(parents=True)

    (project_dir / "kubeboot.yaml").write_text(
        """
version: v1

cluster:
  master_ip: 192.168.100.101
  worker_ips:
    - 40.172.190.235
    - 3.28.200.103

polling:
  node_interval_s: 1
  resource_interval_s: 1
  max_transient_errors: 2

registry:
  server: registry.example.com
  username: deployer

connectivity:
  inventory: ansible/inventory.ini

vault:
  join_command_path: state/k8s-join-command.sh
  credentials_path: state/argocd-credentials.yaml
""".strip()
        + "\n",
        encoding="utf-8",
    )

    (project_dir / "argocd" / "todo-project.yaml").write_text(
        """
apiVersion: argoproj.io/v1alpha1
kind: AppProject
metadata:
  name: todo-project
  namespace: argocd
""".strip()
        + "\n",
        encoding="utf-8",
    )
    (project_dir / "argocd" / "todo-app-application.yaml").write_text(
        """
apiVersion: argoproj.io/v1alpha1
kind: Application
metadata:
  name: todo-app
  namespace: argocd
""".strip()
        + "\n",
        encoding="utf-8",
    )
    (project_dir / "ansible" / "inventory.ini").write_text(
        "[servers]\n40.172.190.235\n3.28.200.103\n",
        encoding="utf-8",
    )
    for name in ("setup-servers.yml", "deploy-app.yml"):
        (project_dir / "ansible" / "playbooks" / name).write_text("- hosts: all\n  tasks: []\n", encoding="utf-8")

    return project_dir


def set_config(project_dir: Path, old: str, new: str) -> None:
    config_path = project_dir / "kubeboot.yaml"
    text = config_path.read_text(encoding="utf-8")
    assert old in text
    config_path.write_text(text.replace(old, new), encoding="utf-8")
