from __future__ import annotations

import typer
from rich.console import Console

from kubeboot.cli.renderers import (
    StagesJsonRenderer,
    StagesPlainRenderer,
    StagesRichRenderer,
    run_events,
)
from kubeboot.core.list_stages import list_stages_events

console = Console()


def stages(
    family: str | None = typer.Argument(
        None,
        help="Only list this workflow family.",
        show_default=False,
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit machine-readable JSON report.",
    ),
) -> None:
    events = list_stages_events(family)
    if json_output:
        renderer = StagesJsonRenderer(console)
    else:
        renderer = StagesRichRenderer(console) if console.is_terminal else StagesPlainRenderer(console)
    exit_code = run_events(events, renderer)
    raise typer.Exit(code=exit_code)
