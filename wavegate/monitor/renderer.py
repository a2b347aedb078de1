"""Rich terminal renderer for wavegate plan progress.

Turns ``ProgressSnapshot`` into Rich renderables for terminal display,
with color-coded batch and wave states and optional continuous
``Rich.Live`` mode.

Color scheme
------------
- green     : COMMITTED / COMPLETED
- red       : ROLLED_BACK / FAILED
- yellow    : in flight, RUNNING
- magenta   : AWAITING_APPROVAL
- dim       : PENDING
- bold red  : BLOCKED / PAUSED
"""

from __future__ import annotations

import time
from typing import TYPE_CHECKING

from rich.console import Console, Group
from rich.live import Live
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from wavegate.models.plan import BatchStatus, PlanStatus, WaveStatus

if TYPE_CHECKING:
    from wavegate.monitor.projection import ProgressSnapshot, ProgressTracker


# ---------------------------------------------------------------------------
# State -> Rich style mapping
# ---------------------------------------------------------------------------

_BATCH_ICONS: dict[BatchStatus, str] = {
    BatchStatus.PENDING: "[dim]PENDING[/dim]",
    BatchStatus.CHECKPOINTED: "[yellow]CHECKPOINTED[/yellow]",
    BatchStatus.APPLYING: "[yellow]APPLYING[/yellow]",
    BatchStatus.VERIFYING: "[yellow]VERIFYING[/yellow]",
    BatchStatus.TESTING: "[yellow]TESTING[/yellow]",
    BatchStatus.AWAITING_APPROVAL: "[magenta]AWAITING APPROVAL[/magenta]",
    BatchStatus.COMMITTED: "[green]COMMITTED[/green]",
    BatchStatus.ROLLED_BACK: "[red]ROLLED BACK[/red]",
    BatchStatus.FAILED: "[bold red]FAILED[/bold red]",
    BatchStatus.BLOCKED: "[bold red]BLOCKED[/bold red]",
}

_WAVE_STYLES: dict[WaveStatus, str] = {
    WaveStatus.PENDING: "dim",
    WaveStatus.RUNNING: "bold yellow",
    WaveStatus.COMPLETED: "bold green",
    WaveStatus.ROLLED_BACK: "bold red",
    WaveStatus.PAUSED: "bold red",
    WaveStatus.BLOCKED: "bold red",
}

_PLAN_STYLES: dict[PlanStatus, str] = {
    PlanStatus.PLANNED: "dim",
    PlanStatus.RUNNING: "yellow",
    PlanStatus.AWAITING_APPROVAL: "magenta",
    PlanStatus.PAUSED: "bold red",
    PlanStatus.COMPLETED: "green",
    PlanStatus.PARTIAL: "yellow",
    PlanStatus.CANCELLED: "dim",
    PlanStatus.HALTED: "bold red",
}

_RISK_STYLES = {"low": "green", "medium": "yellow", "high": "red", "critical": "bold red"}


class ProgressRenderer:
    """Renders ``ProgressSnapshot`` as Rich terminal output.

    Parameters
    ----------
    console:
        Rich Console instance.  A new one is created if not provided.
    """

    def __init__(self, console: Console | None = None) -> None:
        self.console = console or Console()

    # ------------------------------------------------------------------
    # Single snapshot render
    # ------------------------------------------------------------------

    def render_snapshot(self, snapshot: ProgressSnapshot) -> Panel:
        """Render a snapshot as a Panel holding the wave/batch table and a summary."""
        table = self._build_table(snapshot)

        plan_style = _PLAN_STYLES.get(snapshot.status, "")
        summary_parts: list[str] = [
            f"[bold]Plan:[/bold] {snapshot.plan_id}",
            f"[bold]Status:[/bold] [{plan_style}]{snapshot.status.value}[/{plan_style}]",
            f"[bold]Committed:[/bold] {snapshot.committed_count}/{snapshot.total_batches}",
        ]
        if snapshot.pending_approvals:
            summary_parts.append(
                f"[magenta][bold]Pending approvals:[/bold] "
                f"{len(snapshot.pending_approvals)}[/magenta]"
            )
        if snapshot.active_shims:
            summary_parts.append(f"[bold]Shims:[/bold] {len(snapshot.active_shims)}")

        chain_status = (
            "[green]valid[/green]" if snapshot.chain_valid else "[bold red]BROKEN[/bold red]"
        )
        summary_parts.append(f"[bold]Chain:[/bold] {chain_status}")

        lines = [Text.from_markup("  |  ".join(summary_parts))]
        if snapshot.status_reason:
            lines.append(Text(snapshot.status_reason, style="dim"))

        return Panel(
            Group(table, Text(""), *lines),
            title=f"[bold]wavegate[/bold] {snapshot.title}".rstrip(),
            subtitle=f"Last updated: {snapshot.last_updated.strftime('%Y-%m-%d %H:%M:%S UTC')}",
            border_style="blue",
            padding=(1, 2),
        )

    def _build_table(self, snapshot: ProgressSnapshot) -> Table:
        table = Table(
            show_header=True,
            header_style="bold cyan",
            expand=True,
            show_lines=False,
            pad_edge=True,
        )
        table.add_column("Unit", min_width=18)
        table.add_column("Risk", width=12)
        table.add_column("State", min_width=18, justify="center")
        table.add_column("Files", min_width=20)
        table.add_column("Details", min_width=20)

        for wave in snapshot.waves:
            style = _WAVE_STYLES.get(wave.status, "")
            table.add_row(
                f"[{style}]{wave.wave_id.rsplit('/', 1)[-1]}[/{style}]",
                self._risk(wave.risk_level.value),
                f"[{style}]{wave.status.value.upper()}[/{style}]",
                f"[dim]{wave.committed_count}/{len(wave.batches)} committed[/dim]",
                wave.reason or f"[dim]{wave.boundary_reason or '-'}[/dim]",
            )
            for batch in wave.batches:
                details: list[str] = []
                if batch.reason:
                    details.append(batch.reason)
                if batch.approval_request_id and batch.status == BatchStatus.AWAITING_APPROVAL:
                    details.append(f"[magenta]{batch.approval_request_id}[/magenta]")
                if batch.link:
                    details.append(f"[dim]{batch.link[:19]}[/dim]")
                table.add_row(
                    f"  {batch.batch_id.rsplit('/', 1)[-1]}",
                    self._risk(batch.risk_level.value, batch.risk_value),
                    _BATCH_ICONS.get(batch.status, batch.status.value),
                    ", ".join(batch.paths),
                    " | ".join(details) if details else "[dim]-[/dim]",
                )
        return table

    @staticmethod
    def _risk(level: str, value: float | None = None) -> str:
        style = _RISK_STYLES.get(level, "")
        shown = level if value is None else f"{level} {value:g}"
        return f"[{style}]{shown}[/{style}]"

    # ------------------------------------------------------------------
    # Continuous live rendering
    # ------------------------------------------------------------------

    def render_live(
        self,
        plan_id: str,
        tracker: ProgressTracker,
        *,
        refresh_hz: float = 2.0,
    ) -> None:
        """Continuously render a plan in Rich Live mode until it finishes.

        Re-reads the ledger on every refresh cycle.  Press Ctrl+C to stop.
        """
        interval = 1.0 / max(refresh_hz, 0.1)

        with Live(
            console=self.console,
            refresh_per_second=refresh_hz,
            transient=False,
        ) as live:
            try:
                while True:
                    snapshot = tracker.snapshot(plan_id)
                    live.update(self.render_snapshot(snapshot))
                    if snapshot.is_finished:
                        break
                    time.sleep(interval)
            except KeyboardInterrupt:
                live.update(self.render_snapshot(tracker.snapshot(plan_id)))

    # ------------------------------------------------------------------
    # Standalone print
    # ------------------------------------------------------------------

    def print_snapshot(self, snapshot: ProgressSnapshot) -> None:
        self.console.print(self.render_snapshot(snapshot))
