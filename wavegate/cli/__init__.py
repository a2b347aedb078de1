"""wavegate CLI: Typer-based command-line interface.

Provides the ``wavegate`` command with subcommands for submitting
transformation requests, watching progress, deciding approvals, rolling
back, and controlling running plans.

All output uses Rich for formatted terminal display.
"""
