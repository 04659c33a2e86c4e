"""
Steward CLI - Export, inspect, and merge sync bundles.

Bundles are plain JSON files; moving them between devices is up to the
user (USB stick, shared folder, chat attachment).
"""

import json
import sqlite3
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from steward.cli.context import get_config, get_db_path, open_store
from steward.cli.errors import ExitCode, print_database_error, print_error, report_sync_error
from steward.core.config.models import PathHintsMode
from steward.core.sync import (
    ExportOptions,
    MergeOptions,
    MergeResult,
    RetentionPolicy,
    SyncBundle,
    SyncError,
    execute_merge,
    export_bundle,
    inspect_bundle,
    parse_bundle_json,
    write_bundle,
)

console = Console()
app = typer.Typer(
    name="sync",
    help="Move PRD state between devices with bundle files",
    no_args_is_help=True,
)


def parse_repo_map(entries: list[str]) -> dict[str, str]:
    """
    Parse ``--map KEY=TARGET`` entries.

    Raises:
        typer.BadParameter: If an entry has no '=' or an empty side
    """
    repo_map: dict[str, str] = {}
    for entry in entries:
        key, sep, target = entry.partition("=")
        key, target = key.strip(), target.strip()
        if not sep or not key or not target:
            raise typer.BadParameter(
                f"Expected <repoSyncKey>=<repo id, path, or sync key>, got {entry!r}",
                param_hint="--map",
            )
        repo_map[key] = target
    return repo_map


def _read_bundle(path: Path) -> SyncBundle:
    if not path.is_file():
        print_error(
            f"Bundle not found: {path}",
            solution="steward sync export <path>  # on the source device",
        )
        raise typer.Exit(ExitCode.USER_ERROR)
    try:
        data = path.read_bytes()
    except OSError as e:
        print_error(f"Could not read bundle {path}", reason=str(e))
        raise typer.Exit(ExitCode.GENERAL_ERROR) from e
    return parse_bundle_json(data)


@app.command()
def export(
    ctx: typer.Context,
    bundle_path: Path = typer.Argument(..., help="Where to write the bundle"),
    path_hints: PathHintsMode | None = typer.Option(
        None,
        "--path-hints",
        help="How repository paths appear in the bundle (default from config)",
    ),
    repo_ids: list[str] = typer.Option(
        [],
        "--repo",
        "-r",
        help="Only export this repository id (repeatable)",
    ),
) -> None:
    """
    Write this device's PRD state to a bundle file.

    Examples:
        steward sync export laptop.json
        steward sync export laptop.json --path-hints none
        steward sync export api-only.json --repo 3f2c...
    """
    config = get_config(ctx)
    options = ExportOptions(
        path_hints=path_hints or config.sync.path_hints,
        repo_ids=repo_ids,
    )

    try:
        with open_store(ctx) as store:
            bundle = export_bundle(store, options)
    except SyncError as e:
        raise typer.Exit(report_sync_error(e))
    except sqlite3.Error as e:
        print_database_error(get_db_path(ctx), e)
        raise typer.Exit(ExitCode.GENERAL_ERROR) from e

    try:
        write_bundle(bundle_path, bundle)
    except OSError as e:
        print_error(f"Could not write bundle to {bundle_path}", reason=str(e))
        raise typer.Exit(ExitCode.GENERAL_ERROR) from e
    console.print(f"[green]✓[/green] Wrote bundle {bundle.bundle_id} to {bundle_path}")
    console.print(
        f"[dim]{len(bundle.repos)} repos, {len(bundle.states)} states, "
        f"{len(bundle.archives)} archives[/dim]"
    )


@app.command()
def inspect(
    bundle_path: Path = typer.Argument(..., help="Bundle file to inspect"),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """
    Summarize a bundle without touching the local database.

    Examples:
        steward sync inspect laptop.json
        steward sync inspect laptop.json --json
    """
    try:
        summary = inspect_bundle(_read_bundle(bundle_path))
    except SyncError as e:
        raise typer.Exit(report_sync_error(e))

    if json_output:
        typer.echo(json.dumps(summary.to_wire(), indent=2))
        return

    console.print(f"[bold]Bundle {summary.bundle_id}[/bold]")
    console.print(
        f"[dim]From device {summary.source_device_id} at {summary.created_at} "
        f"(steward {summary.steward_version}, format v{summary.format_version})[/dim]"
    )

    table = Table(title="Repositories")
    table.add_column("Sync key", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Path hint")
    table.add_column("States", justify="right")
    table.add_column("Archives", justify="right")
    for repo in summary.repos:
        table.add_row(
            repo.repo_sync_key,
            repo.name,
            repo.path_hint or "[dim]-[/dim]",
            str(repo.state_count),
            str(repo.archive_count),
        )
    console.print(table)

    totals = summary.totals
    console.print(
        f"Totals: {totals.repos} repos, {totals.states} states, {totals.archives} archives"
    )
    if totals.unknown_repo_states or totals.unknown_repo_archives:
        console.print(
            f"[yellow]⚠[/yellow]  {totals.unknown_repo_states} states and "
            f"{totals.unknown_repo_archives} archives reference repos missing from the bundle"
        )


def _print_merge_result(result: MergeResult) -> None:
    plan = result.plan
    summary = plan.summary

    if plan.mappings:
        table = Table(title="Repository mapping")
        table.add_column("Incoming", style="cyan", no_wrap=True)
        table.add_column("Name")
        table.add_column("Local")
        table.add_column("Matched by")
        for mapping in plan.mappings:
            if mapping.resolved:
                local = mapping.local_repo_path or mapping.local_repo_id or ""
                matched = mapping.source
            else:
                local = "[red]unresolved[/red]"
                matched = mapping.reason or "no_match"
            table.add_row(
                mapping.incoming_repo_sync_key,
                mapping.incoming_repo_name or "",
                local,
                matched,
            )
        console.print(table)

    states = summary.states
    archives = summary.archives
    console.print(
        f"States: {states.insert} insert, {states.update} update, {states.skip} skip, "
        f"{states.unresolved} unresolved ({states.conflicts} with conflicts)"
    )
    console.print(
        f"Archives: {archives.insert} insert, {archives.update} update, "
        f"{archives.skip} skip, {archives.unresolved} unresolved"
    )

    for row in plan.states:
        if row.conflict_fields:
            fields = ", ".join(row.conflict_fields)
            console.print(f"[yellow]⚠[/yellow]  {row.slug}: both sides changed {fields}")

    if result.mode == "dry_run":
        console.print("\n[dim]→ Dry run. Re-run with [bold]--apply[/bold] to write changes[/dim]")
    elif result.already_applied:
        console.print(f"[blue]Bundle {result.bundle_id} was already applied[/blue]")
    else:
        console.print(f"[green]✓[/green] Applied bundle {result.bundle_id}")
        console.print(f"[dim]Backup: {result.backup_path}[/dim]")
        pruned = result.retention
        if pruned.backups_deleted or pruned.logs_deleted:
            console.print(
                f"[dim]Pruned {pruned.backups_deleted} backups and "
                f"{pruned.logs_deleted} log entries[/dim]"
            )


@app.command()
def merge(
    ctx: typer.Context,
    bundle_path: Path = typer.Argument(..., help="Bundle file to merge"),
    repo_map: list[str] = typer.Option(
        [],
        "--map",
        "-m",
        help="Map an incoming repoSyncKey to a local repo: KEY=ID|PATH|SYNC_KEY (repeatable)",
    ),
    dry_run: bool = typer.Option(False, "--dry-run", help="Preview only (the default)"),
    apply: bool = typer.Option(False, "--apply", help="Write the merge to the local database"),
    backup_retention_days: int | None = typer.Option(
        None, "--backup-retention-days", help="Delete backups older than N days"
    ),
    max_backups: int | None = typer.Option(
        None, "--max-backups", help="Keep at most N backups"
    ),
    log_retention_days: int | None = typer.Option(
        None, "--log-retention-days", help="Delete applied-bundle log rows older than N days"
    ),
    max_log_entries: int | None = typer.Option(
        None, "--max-log-entries", help="Keep at most N applied-bundle log rows"
    ),
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """
    Merge a bundle into the local database.

    Without --apply this only shows the plan. With --apply the database is
    backed up first, then every change is written in one transaction.
    Applying the same bundle twice is a no-op.

    Examples:
        steward sync merge laptop.json
        steward sync merge laptop.json --apply
        steward sync merge laptop.json --apply --map rsk_1a2b=~/src/api
    """
    if apply and dry_run:
        print_error("--apply and --dry-run cannot be combined")
        raise typer.Exit(ExitCode.USER_ERROR)

    mapping = parse_repo_map(repo_map)

    sync_config = get_config(ctx).sync
    retention = RetentionPolicy(
        backup_retention_days=(
            backup_retention_days
            if backup_retention_days is not None
            else sync_config.backup_retention_days
        ),
        max_backups=max_backups if max_backups is not None else sync_config.max_backups,
        log_retention_days=(
            log_retention_days if log_retention_days is not None else sync_config.log_retention_days
        ),
        max_log_entries=(
            max_log_entries if max_log_entries is not None else sync_config.max_log_entries
        ),
    )
    options = MergeOptions(apply=apply, repo_map=mapping, retention=retention)

    try:
        bundle = _read_bundle(bundle_path)
        with open_store(ctx) as store:
            result = execute_merge(store, bundle, options)
    except SyncError as e:
        raise typer.Exit(report_sync_error(e))
    except sqlite3.Error as e:
        print_database_error(get_db_path(ctx), e)
        raise typer.Exit(ExitCode.GENERAL_ERROR) from e

    if json_output:
        typer.echo(json.dumps(result.to_wire(), indent=2))
        return

    _print_merge_result(result)
