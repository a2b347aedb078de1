"""``wavegate rollback {batch|wave|file} UNIT_ID``: operator rollback.

Committed batches are reverted with a partial restore from their
retained snapshot; files edited since the commit are reported as
conflicts and left untouched.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from wavegate.cli.engine import build_orchestrator
from wavegate.config import settings
from wavegate.core.batch_machine import InvalidTransitionError
from wavegate.core.errors import PlanNotFoundError, RollbackVerificationFailed
from wavegate.models.checkpoints import RollbackScope

console = Console()


def rollback_cmd(
    scope: RollbackScope = typer.Argument(..., help="batch, wave or file."),
    unit_id: str = typer.Argument(..., help="The batch or wave id."),
    paths: list[str] = typer.Option(
        None,
        "--path",
        "-p",
        help="With scope 'file': a path of the batch to revert (repeatable).",
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
    """Roll back a batch, a wave, or some files of a committed batch."""
    orchestrator = build_orchestrator(root, config_path)
    try:
        result = orchestrator.rollback(scope, unit_id, paths or None)
    except (PlanNotFoundError, KeyError):
        console.print(f"[bold red]Unknown unit:[/bold red] {unit_id}")
        raise typer.Exit(code=1)
    except (ValueError, InvalidTransitionError) as exc:
        console.print(f"[bold red]Cannot roll back:[/bold red] {exc}")
        raise typer.Exit(code=1)
    except RollbackVerificationFailed as exc:
        console.print(f"[bold red]Rollback verification failed; plan halted:[/bold red] {exc}")
        raise typer.Exit(code=2)

    table = Table(title=f"Rollback of {scope.value} {unit_id}", show_header=True)
    table.add_column("Path", style="cyan")
    table.add_column("Result")
    for path in result.restored_paths:
        table.add_row(path, "[green]restored[/green]")
    for path in result.conflicts:
        table.add_row(path, "[bold red]conflict[/bold red]")
    console.print(table)
    console.print(result.message)
    if not result.success:
        raise typer.Exit(code=1)
