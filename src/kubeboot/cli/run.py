from __future__ import annotations

from pathlib import Path
from typing import Callable

import typer
from rich.console import Console

from kubeboot.cli.renderers import (
    DispatchJsonRenderer,
    DispatchPlainRenderer,
    DispatchRichRenderer,
    Renderer,
    run_events,
)
from kubeboot.core.dispatch import dispatch_events

console = Console()

EXIT_UNEXPECTED = 3


def family_command(family: str, stage_help: str) -> Callable[..., None]:
    def command(
        stage: str | None = typer.Argument(
            None,
            help=stage_help,
            show_default=False,
        ),
        config: Path = typer.Option(
            Path("kubeboot.yaml"),
            "--config",
            "-c",
            help="Path to kubeboot.yaml.",
        ),
        project: Path = typer.Option(
            Path("."),
            "--project",
            "-p",
            help="Base directory for relative paths.",
        ),
        rotate: bool = typer.Option(
            False,
            "--rotate",
            help="Replace credentials that differ from the saved ones.",
        ),
        dry_run: bool = typer.Option(
            False,
            "--dry-run",
            help="Resolve and validate the plan without running anything.",
        ),
        json_output: bool = typer.Option(
            False,
            "--json",
            help="Emit one JSON event per line.",
        ),
        debug: bool = typer.Option(
            False,
            "--debug",
            help="Show stack traces for unexpected errors.",
        ),
    ) -> None:
        events = dispatch_events(
            family=family,
            stage=stage,
            project_dir=project,
            config_path=config,
            acknowledge_rotation=rotate,
            dry_run=dry_run,
        )
        renderer = _renderer(json_output)
        try:
            exit_code = run_events(events, renderer)
        except Exception as exc:  # noqa: BLE001
            if debug:
                raise
            console.print(f"[red]Unexpected error:[/red] {exc}")
            raise typer.Exit(code=EXIT_UNEXPECTED)
        raise typer.Exit(code=exit_code)

    return command


def _renderer(json_output: bool) -> Renderer:
    if json_output:
        return DispatchJsonRenderer(console)
    if console.is_terminal:
        return DispatchRichRenderer(console)
    return DispatchPlainRenderer(console)
