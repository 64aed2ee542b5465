from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from typing import Any, Callable, Protocol, Sequence

from kubeboot.core.results import ExecutionResult

ALREADY_EXISTS_MARKERS = ("AlreadyExists", "already exists")
NO_OP_MARKERS = (" unchanged", "(no change)", "not labeled", "not patched")


class CommandRunner(Protocol):
    def run(
        self,
        argv: Sequence[str],
        *,
        input: str | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]: ...


class SubprocessRunner:
    def __init__(self, cwd: Any = None, env: dict[str, str] | None = None):
        self.cwd = cwd
        self.env = env

    def run(
        self,
        argv: Sequence[str],
        *,
        input: str | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess[str]:
        return subprocess.run(  # noqa: S603
            list(argv),
            cwd=self.cwd,
            env=self.env,
            input=input,
            capture_output=True,
            text=True,
            check=False,
            timeout=timeout,
        )


@dataclass(frozen=True)
class Action:
    argv: tuple[str, ...]
    display: str = ""
    input: str | None = None
    stdin_from: "Action | None" = None
    guard: "Action | None" = None
    exists_markers: tuple[str, ...] = ALREADY_EXISTS_MARKERS
    noop_markers: tuple[str, ...] = NO_OP_MARKERS
    parse: Callable[[str], Any] | None = field(default=None, compare=False)
    timeout_s: float | None = None

    def __post_init__(self) -> None:
        if not self.argv or not all(isinstance(item, str) for item in self.argv):
            raise ValueError("action requires argv as a non-empty sequence of strings")
        object.__setattr__(self, "argv", tuple(self.argv))

    @property
    def label(self) -> str:
        return self.display or " ".join(self.argv[:3])


def execute(action: Action, runner: CommandRunner) -> ExecutionResult:
    """Run one idempotent action and classify what happened.

    A successful ``guard`` means the desired state is already in place and
    the action itself is skipped. Failures always carry a diagnostic; they
    are returned, never raised.
    """
    if action.guard is not None:
        guard = _invoke(action.guard, runner, action.guard.input)
        if isinstance(guard, subprocess.CompletedProcess) and guard.returncode == 0:
            return ExecutionResult.already_satisfied(action.label, reason="guard satisfied")

    stdin = action.input
    if action.stdin_from is not None:
        rendered = execute(action.stdin_from, runner)
        if not rendered.ok:
            return ExecutionResult.failed(action.label, f"render failed: {rendered.reason}")
        stdin = rendered.output

    completed = _invoke(action, runner, stdin)
    if isinstance(completed, str):
        return ExecutionResult.failed(action.label, completed)

    stdout = completed.stdout or ""
    stderr = completed.stderr or ""
    if completed.returncode != 0:
        if _mentions(stderr, action.exists_markers) or _mentions(stdout, action.exists_markers):
            return ExecutionResult.already_satisfied(action.label, reason="already exists", output=stdout)
        return ExecutionResult.failed(action.label, _diagnostic(completed), output=stdout)

    if action.parse is not None:
        try:
            action.parse(stdout)
        except ValueError as exc:
            return ExecutionResult.failed(action.label, f"malformed response: {exc}", output=stdout)

    if _all_lines_noop(stdout, action.noop_markers):
        return ExecutionResult.already_satisfied(action.label, reason="unchanged", output=stdout)
    return ExecutionResult.succeeded(action.label, output=stdout)


def _invoke(
    action: Action, runner: CommandRunner, stdin: str | None
) -> subprocess.CompletedProcess[str] | str:
    try:
        return runner.run(action.argv, input=stdin, timeout=action.timeout_s)
    except subprocess.TimeoutExpired:
        return f"timed out after {action.timeout_s}s: {action.argv[0]}"
    except FileNotFoundError:
        return f"unreachable: command not found: {action.argv[0]}"
    except OSError as exc:
        return f"unreachable: {exc}"


def _diagnostic(completed: subprocess.CompletedProcess[str]) -> str:
    stderr = (completed.stderr or "").strip()
    stdout = (completed.stdout or "").strip()
    detail = stderr or stdout
    if detail:
        lines = detail.splitlines()
        return f"exit code {completed.returncode}: {lines[-1]}"
    return f"exit code {completed.returncode}"


def _mentions(text: str, markers: tuple[str, ...]) -> bool:
    return any(marker in text for marker in markers)


def _all_lines_noop(stdout: str, markers: tuple[str, ...]) -> bool:
    lines = [line for line in stdout.splitlines() if line.strip()]
    if not lines or not markers:
        return False
    return all(_mentions(line, markers) for line in lines)
