"""Plan control commands: ``cancel``, ``resume``, ``unblock`` and ``tick``."""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from wavegate.cli.engine import build_orchestrator
from wavegate.config import settings
from wavegate.core.batch_machine import InvalidTransitionError
from wavegate.core.errors import PlanNotFoundError, RollbackVerificationFailed

console = Console()

_ROOT_OPTION = typer.Option(
    settings.codebase_root, "--root", "-R", help="Root of the codebase being transformed."
)
_CONFIG_OPTION = typer.Option(
    None, "--config", "-c", help="Engine configuration TOML (defaults to ROOT/wavegate.toml)."
)


def _unknown(unit: str) -> typer.Exit:
    console.print(f"[bold red]Plan not found:[/bold red] {unit}")
    return typer.Exit(code=1)


def cancel_cmd(
    plan_id: str = typer.Argument(..., help="The plan to cancel."),
    root: Path = _ROOT_OPTION,
    config_path: Path = _CONFIG_OPTION,
) -> None:
    """Stop a plan between batches; committed batches stay in place."""
    orchestrator = build_orchestrator(root, config_path)
    try:
        status = orchestrator.cancel(plan_id)
    except PlanNotFoundError:
        raise _unknown(plan_id)
    console.print(f"[bold]Plan {plan_id}:[/bold] {status.value}")


def resume_cmd(
    plan_id: str = typer.Argument(..., help="The plan to resume."),
    root: Path = _ROOT_OPTION,
    config_path: Path = _CONFIG_OPTION,
) -> None:
    """Continue a suspended or paused plan."""
    orchestrator = build_orchestrator(root, config_path)
    try:
        status = orchestrator.resume(plan_id)
    except PlanNotFoundError:
        raise _unknown(plan_id)
    except RollbackVerificationFailed as exc:
        console.print(f"[bold red]Rollback verification failed; plan halted:[/bold red] {exc}")
        raise typer.Exit(code=2)
    console.print(f"[bold]Plan {plan_id}:[/bold] {status.value}")


def unblock_cmd(
    wave_id: str = typer.Argument(..., help="The paused wave to unblock."),
    root: Path = _ROOT_OPTION,
    config_path: Path = _CONFIG_OPTION,
) -> None:
    """Return a paused wave's blocked batches to pending and continue."""
    orchestrator = build_orchestrator(root, config_path)
    try:
        status = orchestrator.unblock_wave(wave_id)
    except PlanNotFoundError:
        raise _unknown(wave_id)
    except InvalidTransitionError as exc:
        console.print(f"[bold red]Cannot unblock:[/bold red] {exc}")
        raise typer.Exit(code=1)
    console.print(f"[bold]Wave {wave_id} unblocked; plan is {status.value}[/bold]")


def tick_cmd(
    root: Path = _ROOT_OPTION,
    config_path: Path = _CONFIG_OPTION,
) -> None:
    """Expire overdue approval requests and continue their plans."""
    orchestrator = build_orchestrator(root, config_path)
    try:
        changed = orchestrator.tick()
    except RollbackVerificationFailed as exc:
        console.print(f"[bold red]Rollback verification failed; plan halted:[/bold red] {exc}")
        raise typer.Exit(code=2)
    if not changed:
        console.print("[dim]No approval request passed its deadline.[/dim]")
    for req in changed:
        console.print(f"{req.request_id} ({req.unit_id}): [yellow]{req.status.value}[/yellow]")
