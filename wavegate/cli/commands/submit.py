"""``wavegate submit REQUEST.json``: plan and run a transformation request.

The request file is a JSON ``TransformationRequest``: a list of file
changes plus optional coverage, language, branch and feature-flag key.
"""

from __future__ import annotations

from pathlib import Path

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.panel import Panel

from wavegate.cli.engine import build_orchestrator
from wavegate.config import settings
from wavegate.core.errors import PlanningError, RollbackVerificationFailed
from wavegate.models.changes import TransformationRequest
from wavegate.monitor.renderer import ProgressRenderer

console = Console()


def submit_cmd(
    request_file: Path = typer.Argument(
        ...,
        exists=True,
        dir_okay=False,
        help="JSON file holding the transformation request.",
    ),
    plan_only: bool = typer.Option(
        False,
        "--plan-only",
        "-n",
        help="Record the plan without applying any batch.",
    ),
    root: Path = typer.Option(
        settings.codebase_root,
        "--root",
        "-R",
        help="Root of the codebase being transformed.",
    ),
    config_path: Path = typer.Option(
        None,
        "--config",
        "-c",
        help="Engine configuration TOML (defaults to ROOT/wavegate.toml).",
    ),
) -> None:
    """Assess, plan and run a transformation request."""
    try:
        request = TransformationRequest.model_validate_json(request_file.read_text(encoding="utf-8"))
    except ValidationError as exc:
        console.print(f"[bold red]Invalid request:[/bold red] {exc}")
        raise typer.Exit(code=1)

    orchestrator = build_orchestrator(root, config_path)
    try:
        plan_id = orchestrator.submit(request, execute=not plan_only)
    except PlanningError as exc:
        console.print(f"[bold red]Planning failed:[/bold red] {exc}")
        console.print("[dim]Nothing was applied.[/dim]")
        raise typer.Exit(code=1)
    except RollbackVerificationFailed as exc:
        console.print(
            Panel(
                f"[bold red]{exc}[/bold red]\n\nThe plan is halted. Inspect: "
                f"{', '.join(exc.mismatched_paths)}",
                title="[bold red]Rollback verification failed[/bold red]",
                border_style="red",
            )
        )
        raise typer.Exit(code=2)

    snapshot = orchestrator.get_progress(plan_id)
    ProgressRenderer(console=console).print_snapshot(snapshot)

    # The plan_id alone, for scripting
    console.print(f"[bold]{plan_id}[/bold]")
