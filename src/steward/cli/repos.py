"""
Steward CLI - Register and list local repositories.
"""

import json
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from steward.cli.context import open_store
from steward.cli.errors import ExitCode, print_error
from steward.core.repos import RepoRegistryError

console = Console()
app = typer.Typer(
    name="repos",
    help="Manage repositories tracked on this device",
    no_args_is_help=True,
)


@app.command()
def add(
    ctx: typer.Context,
    path: Path = typer.Argument(..., help="Repository directory"),
    name: str | None = typer.Option(None, "--name", "-n", help="Display name"),
) -> None:
    """
    Track a repository on this device.

    The repository gets a local id and a sync key used to recognize it in
    bundles from other devices.

    Examples:
        steward repos add ~/src/api
        steward repos add . --name "API service"
    """
    with open_store(ctx) as store:
        try:
            repo = store.add_repo(path, name=name)
        except RepoRegistryError as e:
            print_error(str(e), solution="steward repos list  # to see tracked repositories")
            raise typer.Exit(ExitCode.USER_ERROR)
        meta = store.identity.get_repo_sync_meta(repo.id)

    console.print(f"[green]✓[/green] Added {repo.name} ({repo.id})")
    if meta is not None:
        console.print(f"[dim]Sync key: {meta.sync_key}[/dim]")


@app.command("list")
def list_repos(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """
    List tracked repositories with their sync keys.

    Examples:
        steward repos list
        steward repos list --json
    """
    with open_store(ctx) as store:
        repos = store.repos.list_repos()
        meta_by_repo = store.identity.ensure_repo_sync_meta_for_repos(repos)

    if json_output:
        output = [
            {
                **repo.model_dump(mode="json", exclude={"git_repos"}),
                "sync_key": meta_by_repo[repo.id].sync_key,
            }
            for repo in repos
        ]
        typer.echo(json.dumps(output, indent=2))
        return

    if not repos:
        console.print("[dim]No repositories tracked. Add one with: steward repos add <path>[/dim]")
        return

    table = Table(title="Repositories")
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Path")
    table.add_column("Sync key", style="dim")
    for repo in repos:
        table.add_row(repo.id, repo.name, repo.path, meta_by_repo[repo.id].sync_key)
    console.print(table)
