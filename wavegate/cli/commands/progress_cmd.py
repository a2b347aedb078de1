"""``wavegate progress PLAN_ID``: show the waves and batches of a plan.

A read-only projection over the Run Ledger; every display re-reads it.
"""

from __future__ import annotations

from pathlib import Path

import typer
from rich.console import Console

from wavegate.cli.engine import resolve_config
from wavegate.config import settings
from wavegate.core.errors import PlanNotFoundError
from wavegate.core.run_ledger import RunLedger
from wavegate.core.snapshot_store import ContentAddressedStore
from wavegate.monitor.projection import ProgressTracker
from wavegate.monitor.renderer import ProgressRenderer

console = Console()


def progress_cmd(
    plan_id: str = typer.Argument(
        None,
        help="The plan to show (defaults to the most recent one).",
    ),
    live: bool = typer.Option(
        False,
        "--live",
        "-L",
        help="Refresh continuously until the plan finishes (Ctrl+C to exit).",
    ),
    refresh_hz: float = typer.Option(
        2.0,
        "--refresh",
        "-r",
        help="Refresh rate in Hz for live mode.",
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
    """Show plan progress."""
    config = resolve_config(Path(root).resolve(), config_path)
    if not config.ledger_db_path.exists():
        console.print(f"[bold red]Ledger not found:[/bold red] {config.ledger_db_path}")
        console.print("[dim]Submit a request first with: wavegate submit[/dim]")
        raise typer.Exit(code=1)

    ledger = RunLedger(config.ledger_db_path)
    tracker = ProgressTracker(ledger, ContentAddressedStore(config.snapshot_store_path))
    renderer = ProgressRenderer(console=console)

    known = ledger.get_all_plan_ids()
    plan_id = plan_id or (known[0] if known else None)
    try:
        if plan_id is None:
            raise PlanNotFoundError("no plans recorded")
        snapshot = tracker.snapshot(plan_id)
    except PlanNotFoundError:
        console.print(f"[bold red]Plan not found:[/bold red] {plan_id}")
        if known:
            console.print("\n[bold]Available plans:[/bold]")
            for pid in known[:10]:
                console.print(f"  [cyan]{pid}[/cyan]")
            if len(known) > 10:
                console.print(f"  [dim]... and {len(known) - 10} more[/dim]")
        raise typer.Exit(code=1)

    if live:
        console.print(
            f"[dim]Watching {plan_id} at {refresh_hz} Hz. Press Ctrl+C to exit.[/dim]"
        )
        renderer.render_live(plan_id, tracker, refresh_hz=refresh_hz)
    else:
        renderer.print_snapshot(snapshot)
