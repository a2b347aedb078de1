"""``wavegate approve REQUEST_ID``: record a decision on a gated batch."""

from __future__ import annotations

import getpass
from pathlib import Path

import typer
from rich.console import Console

from wavegate.cli.engine import build_orchestrator
from wavegate.config import settings
from wavegate.core.approval_gate import ApprovalClosedError, ApprovalNotFoundError
from wavegate.core.errors import RollbackVerificationFailed

console = Console()


def approve_cmd(
    request_id: str = typer.Argument(..., help="The approval request to decide."),
    reject: bool = typer.Option(
        False,
        "--reject",
        help="Reject instead of approve; the batch is rolled back.",
    ),
    actor: str = typer.Option(
        None,
        "--actor",
        "-a",
        help="Who is deciding (defaults to the current user).",
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
    """Approve or reject a pending request, then continue its plan."""
    orchestrator = build_orchestrator(root, config_path)
    actor = actor or getpass.getuser()
    try:
        req = orchestrator.approve(request_id, not reject, actor)
    except ApprovalNotFoundError:
        console.print(f"[bold red]No such approval request:[/bold red] {request_id}")
        raise typer.Exit(code=1)
    except ApprovalClosedError as exc:
        console.print(f"[bold red]Decision refused:[/bold red] {exc}")
        raise typer.Exit(code=1)
    except RollbackVerificationFailed as exc:
        console.print(f"[bold red]Rollback verification failed; plan halted:[/bold red] {exc}")
        raise typer.Exit(code=2)

    colour = "green" if req.grants_commit else "red"
    console.print(
        f"[{colour}]{req.unit_id} {req.status.value}[/{colour}] by {req.decided_by}"
    )
    status = orchestrator.machine.get_plan_status(req.plan_id)
    if status is not None:
        console.print(f"[bold]Plan {req.plan_id}:[/bold] {status.value}")
