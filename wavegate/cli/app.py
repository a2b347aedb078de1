"""Main Typer application: imports and registers all CLI commands.

Entry point: ``wavegate`` (configured via pyproject.toml project.scripts).

Commands: submit, progress, approve, rollback, cancel, resume, unblock, tick.
"""

from __future__ import annotations

import logging

import typer
from rich.logging import RichHandler

from wavegate.cli.commands.approve import approve_cmd
from wavegate.cli.commands.control import cancel_cmd, resume_cmd, tick_cmd, unblock_cmd
from wavegate.cli.commands.progress_cmd import progress_cmd
from wavegate.cli.commands.rollback_cmd import rollback_cmd
from wavegate.cli.commands.submit import submit_cmd
from wavegate.config import settings

app = typer.Typer(
    name="wavegate",
    help="wavegate: incremental, risk-gated code transformation.",
    no_args_is_help=True,
    rich_markup_mode="rich",
    add_completion=False,
)

# Register subcommands
app.command(name="submit", help="Plan and run a transformation request.")(submit_cmd)
app.command(name="progress", help="Show the progress of a plan.")(progress_cmd)
app.command(name="approve", help="Approve or reject a gated batch.")(approve_cmd)
app.command(name="rollback", help="Roll back a batch, a wave, or files of a batch.")(rollback_cmd)
app.command(name="cancel", help="Cancel a plan between batches.")(cancel_cmd)
app.command(name="resume", help="Resume a suspended or paused plan.")(resume_cmd)
app.command(name="unblock", help="Unblock a paused wave.")(unblock_cmd)
app.command(name="tick", help="Expire overdue approvals and continue plans.")(tick_cmd)


def main() -> None:
    """CLI entry point."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(rich_tracebacks=True, show_path=False)],
    )
    app()


if __name__ == "__main__":
    main()
