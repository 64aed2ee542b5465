from __future__ import annotations

import json
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable

from rich import box
from rich.console import Console, Group
from rich.live import Live
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from kubeboot import __version__
from kubeboot.core import events as ev

RULE_WIDTH = 64
RULE_LINE = "-" * RULE_WIDTH
STATUS_GLYPHS = {
    "pending": "⏸",
    "running": "⠋",
    "success": "✅",
    "satisfied": "✅",
    "failed": "❌",
    "skipped": "⏭",
    "warning": "⚠️",
}
OUTCOME_STATUS = {
    "succeeded": "success",
    "already_satisfied": "satisfied",
    "failed": "failed",
}


def run_events(events: Iterable[ev.KubebootEvent], renderer: "Renderer") -> int:
    exit_code = 0
    try:
        for event in events:
            renderer.handle(event)
            if isinstance(event, ev.CommandCompleted):
                exit_code = event.exit_code
    finally:
        renderer.close()
    return exit_code


class Renderer:
    def handle(self, event: ev.KubebootEvent) -> None:  # noqa: D401
        """Handle a single event."""

    def close(self) -> None:
        return None


@dataclass
class StepState:
    label: str
    kind: str
    status: str = "pending"
    elapsed_ms: float | None = None
    note: str | None = None


class DispatchRichRenderer(Renderer):
    def __init__(self, console: Console):
        self.console = console
        self._plan: list[str] = []
        self._stage_id: str | None = None
        self._stage_label = ""
        self._steps: dict[int, StepState] = {}
        self._live: Live | None = None
        self._stage_failure: ev.StageFailed | None = None
        self._usage_failure: ev.UsageFailed | None = None
        self._dry_run = False

    def handle(self, event: ev.KubebootEvent) -> None:
        if isinstance(event, ev.CommandStarted):
            self._dry_run = bool(event.options and event.options.get("dry_run"))
            _print_header(self.console, event)
            return
        if isinstance(event, ev.UsageFailed):
            self._usage_failure = event
            return
        if isinstance(event, ev.PlanResolved):
            self._plan = list(event.stages)
            self.console.print(f"Running {escape(event.command)}: {', '.join(event.stages)}")
            return
        if isinstance(event, ev.StageStarted):
            self._stage_id = event.stage_id
            self._stage_label = event.label
            self._steps = {}
            self._live = Live(self._render(), console=self.console, refresh_per_second=10)
            self._live.__enter__()
            return
        if isinstance(event, (ev.StepPlanned, ev.StepStarted)):
            status = "pending" if isinstance(event, ev.StepPlanned) else "running"
            self._steps[event.step_index] = StepState(label=event.label, kind=event.kind, status=status)
            self._refresh()
            return
        if isinstance(event, ev.PollAttempt):
            state = self._current_step()
            if state:
                note = f"attempt {event.attempt}"
                if event.transient_errors:
                    note = f"{note}, {event.transient_errors} error(s)"
                state.note = note
            self._refresh()
            return
        if isinstance(event, ev.ActionExecuted):
            state = self._current_step()
            if state:
                state.note = event.display
            self._refresh()
            return
        if isinstance(event, ev.StepCompleted):
            state = self._steps.get(event.step_index)
            if state:
                status = OUTCOME_STATUS.get(event.outcome, "success")
                state.status = "warning" if status == "failed" else status
                state.elapsed_ms = event.duration_ms
                state.note = "already satisfied" if status == "satisfied" else None
            self._refresh()
            return
        if isinstance(event, ev.StepFailed):
            state = self._steps.get(event.step_index)
            if state:
                state.status = "failed"
                state.elapsed_ms = event.duration_ms
                state.note = _redact(event.message)
            self._refresh()
            return
        if isinstance(event, ev.StageCompleted):
            self._stop_live()
            if event.status == "skipped" and self._dry_run:
                self.console.print(f"{STATUS_GLYPHS['skipped']} {escape(self._stage_label)} (--dry-run)")
            else:
                duration = _format_duration(event.duration_ms)
                self.console.print(f"[green]{STATUS_GLYPHS['success']} {escape(self._stage_label)}[/green]  {duration}")
            return
        if isinstance(event, ev.StageFailed):
            self._stop_live()
            self._stage_failure = event
            return
        if isinstance(event, ev.PhaseChanged):
            self._print(f"[dim]phase: {event.phase}[/dim]")
            return
        if isinstance(event, ev.Warning):
            self._print(f"[yellow]Warning:[/yellow] {escape(_redact(event.message))}")
            return
        if isinstance(event, ev.CredentialCaptured):
            self._print(_credential_panel(event))
            return
        if isinstance(event, ev.CredentialUnchanged):
            self._print(f"{escape(event.name)} unchanged in {event.destination}")
            return
        if isinstance(event, ev.CredentialReused):
            self._print(f"{escape(event.name)} reused from {event.destination} (--rotate to replace)")
            return
        if isinstance(event, ev.Notice):
            body = "\n".join(escape(_redact(line)) for line in event.lines)
            self._print(Panel(body, title=escape(event.title), box=box.ROUNDED, title_align="left"))
            return
        if isinstance(event, ev.CommandCompleted):
            self._finish(event)

    def close(self) -> None:
        self._stop_live()

    def _finish(self, event: ev.CommandCompleted) -> None:
        self._stop_live()
        if event.ok:
            if self._dry_run:
                self.console.print("Dry run complete (nothing executed)")
            else:
                self.console.print(f"[green]{STATUS_GLYPHS['success']} {escape(event.command)} complete[/green]")
            return
        if self._usage_failure:
            self.console.print(_usage_panel(self._usage_failure))
        elif self._stage_failure:
            self.console.print(_stage_failure_panel(self._stage_failure))

    def _current_step(self) -> StepState | None:
        running = [state for state in self._steps.values() if state.status == "running"]
        return running[-1] if running else None

    def _print(self, renderable: Any) -> None:
        self.console.print(renderable)

    def _refresh(self) -> None:
        if self._live:
            self._live.update(self._render())

    def _stop_live(self) -> None:
        if self._live:
            self._live.update(self._render())
            self._live.__exit__(None, None, None)
            self._live = None

    def _render(self) -> Group:
        index = self._plan.index(self._stage_id) + 1 if self._stage_id in self._plan else 1
        total = max(len(self._plan), 1)
        table = Table(show_header=True, box=box.MINIMAL, show_lines=False)
        table.add_column("#", justify="right", style="dim")
        table.add_column("Step")
        table.add_column("Status")
        table.add_column("Time", justify="right")
        table.add_column("Notes")
        for step_index, state in sorted(self._steps.items()):
            glyph = STATUS_GLYPHS.get(state.status, "?")
            status = state.status if state.status not in {"success", "satisfied"} else ""
            duration = _format_duration(state.elapsed_ms) if state.elapsed_ms is not None else ""
            table.add_row(
                str(step_index + 1),
                escape(state.label),
                f"{glyph} {status}".rstrip(),
                duration,
                escape(state.note or ""),
            )
        title = f"[{index}/{total}] {escape(self._stage_label)}"
        return Group(Panel(table, title=Text(title), box=box.ROUNDED, title_align="left"))


class DispatchPlainRenderer(Renderer):
    def __init__(self, console: Console):
        self.console = console
        self._plan: list[str] = []
        self._labels: dict[str, str] = {}
        self._stage_failure: ev.StageFailed | None = None
        self._dry_run = False

    def handle(self, event: ev.KubebootEvent) -> None:
        if isinstance(event, ev.CommandStarted):
            self._dry_run = bool(event.options and event.options.get("dry_run"))
            _print_header(self.console, event)
            return
        if isinstance(event, ev.UsageFailed):
            self._out(f"Error: {_redact(event.message)}")
            for line in event.usage:
                self._out(line)
            return
        if isinstance(event, ev.PlanResolved):
            self._plan = list(event.stages)
            self._out(f"Plan: {', '.join(event.stages)}")
            return
        if isinstance(event, ev.StageStarted):
            self._labels[event.stage_id] = event.label
            self._out(f"{self._prefix(event.stage_id)} {event.label} ({event.total_steps} steps)")
            return
        if isinstance(event, ev.StepPlanned):
            self._out(f"  PLAN {event.step_name} [{event.kind}] {event.label}")
            return
        if isinstance(event, ev.ActionExecuted):
            line = f"    {event.outcome.upper()} {event.display}"
            if event.message:
                line = f"{line}: {_redact(event.message)}"
            self._out(line)
            return
        if isinstance(event, ev.PollAttempt):
            line = f"    POLL {event.condition} attempt={event.attempt} ready={str(event.ready).lower()}"
            if event.note:
                line = f"{line} ({_redact(event.note)})"
            self._out(line)
            return
        if isinstance(event, ev.StepCompleted):
            self._out(f"  STEP {event.outcome} {event.step_name} {_format_duration(event.duration_ms)}")
            return
        if isinstance(event, ev.StepFailed):
            self._out(f"  STEP FAIL {event.step_name}: {_redact(event.message)}")
            return
        if isinstance(event, ev.StageCompleted):
            label = self._labels.get(event.stage_id, event.stage_id)
            note = " (--dry-run)" if event.status == "skipped" and self._dry_run else ""
            line = f"{self._prefix(event.stage_id)} {label} {STATUS_GLYPHS.get(event.status, '?')} {event.status}"
            self._out(f"{line} {_format_duration(event.duration_ms)}{note}")
            return
        if isinstance(event, ev.StageFailed):
            self._stage_failure = event
            label = self._labels.get(event.stage_id, event.stage_id)
            self._out(f"{self._prefix(event.stage_id)} {label} {STATUS_GLYPHS['failed']} failed")
            self._out(f"FAIL: {event.step_name or event.stage_id}: {_redact(event.message)}")
            if event.hint:
                self._out(f"HINT: {_redact(event.hint)}")
            return
        if isinstance(event, ev.PhaseChanged):
            self._out(f"PHASE {event.phase}")
            return
        if isinstance(event, ev.Warning):
            self._out(f"WARNING: {_redact(event.message)}")
            return
        if isinstance(event, ev.CredentialCaptured):
            verb = "rotated" if event.rotated else "saved"
            self._out(f"CREDENTIAL {event.name} {verb} to {event.destination}")
            self._out(f"{event.name}: {event.value}")
            return
        if isinstance(event, ev.CredentialUnchanged):
            self._out(f"CREDENTIAL {event.name} unchanged in {event.destination}")
            return
        if isinstance(event, ev.CredentialReused):
            self._out(f"CREDENTIAL {event.name} reused from {event.destination}")
            return
        if isinstance(event, ev.Notice):
            self._out(f"{event.title}:")
            for line in event.lines:
                self._out(f"- {_redact(line)}")
            return
        if isinstance(event, ev.CommandCompleted):
            if event.ok:
                self._out("Dry run complete (nothing executed)" if self._dry_run else f"{event.command} complete")
            elif self._stage_failure:
                self._out(f"Error: stage {self._stage_failure.stage_id} failed")

    def _prefix(self, stage_id: str) -> str:
        index = self._plan.index(stage_id) + 1 if stage_id in self._plan else 1
        return f"[{index}/{max(len(self._plan), 1)}]"

    def _out(self, line: str) -> None:
        self.console.print(line, markup=False, highlight=False, soft_wrap=True)


class DispatchJsonRenderer(Renderer):
    """One JSON object per event, newline separated."""

    def __init__(self, console: Console):
        self.console = console

    def handle(self, event: ev.KubebootEvent) -> None:
        payload = event.to_dict()
        if isinstance(event, ev.CredentialCaptured):
            payload["value"] = "<redacted>"
        for key in ("message", "hint", "note"):
            if isinstance(payload.get(key), str):
                payload[key] = _redact(payload[key])
        self.console.out(json.dumps(payload, sort_keys=True), highlight=False)


class StagesRichRenderer(Renderer):
    def __init__(self, console: Console):
        self.console = console
        self._usage_failure: ev.UsageFailed | None = None

    def handle(self, event: ev.KubebootEvent) -> None:
        if isinstance(event, ev.CommandStarted):
            _print_header(self.console, event)
            return
        if isinstance(event, ev.UsageFailed):
            self.console.print(_usage_panel(event))
            return
        if isinstance(event, ev.StagesDiscovered):
            table = Table(
                title=f"{event.family}: {escape(event.description)}",
                box=box.ROUNDED,
                title_justify="left",
            )
            table.add_column("STAGE", style="bold")
            table.add_column("STEPS", justify="right")
            table.add_column("DESCRIPTION")
            for stage in event.stages:
                steps = stage.get("steps")
                table.add_row(stage["name"], "" if steps is None else str(steps), escape(stage["help"]))
            self.console.print(table)


class StagesPlainRenderer(Renderer):
    def __init__(self, console: Console):
        self.console = console

    def handle(self, event: ev.KubebootEvent) -> None:
        if isinstance(event, ev.CommandStarted):
            _print_header(self.console, event)
            return
        if isinstance(event, ev.UsageFailed):
            self.console.print(f"Error: {event.message}", markup=False, soft_wrap=True)
            for line in event.usage:
                self.console.print(line, markup=False, soft_wrap=True)
            return
        if isinstance(event, ev.StagesDiscovered):
            self.console.print(f"{event.family} - {event.description}", markup=False, soft_wrap=True)
            for stage in event.stages:
                steps = stage.get("steps")
                suffix = f" ({steps} steps)" if steps is not None else ""
                self.console.print(f"- {stage['name']}: {stage['help']}{suffix}", markup=False, soft_wrap=True)


class StagesJsonRenderer(Renderer):
    def __init__(self, console: Console):
        self.console = console
        self._families: dict[str, dict[str, Any]] = {}
        self._errors: list[str] = []

    def handle(self, event: ev.KubebootEvent) -> None:
        if isinstance(event, ev.StagesDiscovered):
            self._families[event.family] = {"description": event.description, "stages": event.stages}
        if isinstance(event, ev.UsageFailed):
            self._errors.append(event.message)
        if isinstance(event, ev.CommandCompleted):
            payload: dict[str, Any] = {"ok": event.ok, "families": self._families}
            if self._errors:
                payload["errors"] = self._errors
            self.console.out(json.dumps(payload, indent=2, sort_keys=True), highlight=False)


def _format_duration(elapsed_ms: float) -> str:
    if elapsed_ms < 1000:
        return f"{elapsed_ms:.0f}ms"
    seconds = elapsed_ms / 1000
    if seconds < 10:
        return f"{seconds:.2f}s"
    if seconds < 120:
        return f"{seconds:.1f}s"
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes:.0f}m{seconds:02.0f}s"


def _print_header(console: Console, event: ev.CommandStarted) -> None:
    project = event.project_dir or Path(".")
    config = event.config_path or Path("kubeboot.yaml")
    console.print(
        f"kubeboot v{__version__} | project: {project} | config: {config}\n{RULE_LINE}",
        markup=False,
        highlight=False,
        soft_wrap=True,
    )


_REDACT_PATTERN = re.compile(
    r"(?i)\b(authorization|token|secret|password|api_key)\b\s*[:=]\s*[^\s]+"
)
_FLAG_REDACT_PATTERN = re.compile(r"(?i)(--(?:docker-)?(?:password|token))(?:=|\s+)[^\s]+")


def _redact(text: str) -> str:
    if not text:
        return text
    text = _FLAG_REDACT_PATTERN.sub(r"\1 <redacted>", text)
    return _REDACT_PATTERN.sub(r"\1: <redacted>", text)


def _credential_panel(event: ev.CredentialCaptured) -> Panel:
    verb = "Rotated" if event.rotated else "Saved"
    body = "\n".join(
        [
            escape(event.value),
            "",
            f"{verb} to {escape(str(event.destination))}",
            "[dim]This value is shown once; read it from the file above afterwards.[/dim]",
        ]
    )
    return Panel(body, title=escape(event.name), box=box.ROUNDED, title_align="left")


def _usage_panel(event: ev.UsageFailed) -> Panel:
    lines = [f"error: {escape(_redact(event.message))}"]
    if event.usage:
        lines.extend(["", *(escape(line) for line in event.usage)])
    title = "Configuration error" if event.error_code == "config_error" else "Usage error"
    return Panel("\n".join(lines), title=title, box=box.ROUNDED, title_align="left")


def _stage_failure_panel(event: ev.StageFailed) -> Panel:
    body = "\n".join(
        [
            f"stage: {escape(event.stage_id)}",
            f"step:  {(event.step_index or 0) + 1} {escape(event.step_name or '')}",
            f"error: {escape(_redact(event.message))}",
        ]
    )
    if event.hint:
        body = "\n".join([body, f"hint:  {escape(_redact(event.hint))}"])
    return Panel(body, title=f"Stage failed ({event.error_code})", box=box.ROUNDED, title_align="left")
