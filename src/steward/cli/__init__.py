"""
Steward CLI - Main application entry point.

This module sets up the Typer CLI application with all subcommands.
"""

from pathlib import Path

import typer
from rich.console import Console

from steward import __version__
from steward.cli import repos, sync
from steward.cli.context import setup_logging
from steward.core.config import load_config
from steward.core.config.env import load_layered_env

app = typer.Typer(
    name="steward",
    help="Local-first PRD state tracking with cross-device sync",
    no_args_is_help=True,
    add_completion=True,
    context_settings={"help_option_names": ["--help", "-h"]},
)

console = Console()


@app.callback()
def main(
    ctx: typer.Context,
    debug: bool = typer.Option(
        False,
        "--debug",
        help="Enable debug output with detailed logging",
    ),
    db: Path | None = typer.Option(
        None,
        "--db",
        help="Path to the state database (overrides PRD_STATE_DB_PATH and config)",
    ),
) -> None:
    """
    Steward - PRD state that follows you between machines.

    Sync works through bundle files: export on one device, carry the file
    over however you like, then inspect and merge on the other.

    Common Workflows:
        steward repos add ~/src/api          # Track a repository
        steward sync export laptop.json      # Write a bundle
        steward sync inspect laptop.json     # See what it carries
        steward sync merge laptop.json       # Preview the merge
        steward sync merge laptop.json --apply
    """
    # Precedence: OS env > project .env > user .env
    load_layered_env()
    setup_logging(debug)

    ctx.obj = {"debug": debug, "db_path": db, "config": load_config()}


@app.command()
def version() -> None:
    """Show the steward version."""
    console.print(f"steward {__version__}")


app.add_typer(repos.app, name="repos")
app.add_typer(sync.app, name="sync")


def cli_main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "cli_main"]
