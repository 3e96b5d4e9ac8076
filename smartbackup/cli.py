from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import typer
from dotenv import load_dotenv
from rich.console import Console
from rich.table import Table
from rich.text import Text

from smartbackup.archive_tool import SevenZipTool
from smartbackup.auth import require_backup_password
from smartbackup.backup_service import CycleResult, check_for_changes, run_cycle
from smartbackup.chain_policy import snapshot_time
from smartbackup.cleanup import DeleteResult
from smartbackup.config import CONFIG_FILENAME, BackupConfig, load_config
from smartbackup.errors import BackupError, SnapshotInUse
from smartbackup.gc import garbage_collect
from smartbackup.logging_config import setup_logging
from smartbackup.restore import restore_snapshot
from smartbackup.retention import purge_snapshot
from smartbackup.store import SnapshotRepository
from smartbackup.watcher import SourceWatcher


app = typer.Typer(help="Incremental, encrypted backup manager", invoke_without_command=True)
console = Console()
logger = logging.getLogger("smartbackup")

CONFIRMATION_EXIT_CODE = 2


def format_bytes(size: int) -> str:
    units = ["B", "KB", "MB", "GB", "TB"]
    value = float(size)
    index = 0
    while value >= 1024 and index < len(units) - 1:
        value /= 1024
        index += 1
    return f"{value:.0f} {units[index]}" if index == 0 else f"{value:.2f} {units[index]}"


def _config_option(ctx: typer.Context) -> Path:
    obj = ctx.find_root().obj or {}
    return obj.get("config_path", Path(CONFIG_FILENAME))


def _load(ctx: typer.Context, *, with_file_log: bool = True) -> BackupConfig:
    config = load_config(_config_option(ctx))
    setup_logging(config.logs_dir if with_file_log else None)
    return config


def _render_path_summary(title: str, paths: list[str], style: str) -> None:
    console.print(Text(f"{title} ({len(paths)}):", style=style))
    if not paths:
        console.print("  (none)", style="dim")
        return
    for path in paths:
        console.print(f"  - {path}")


def _render_delete(label: str, result: DeleteResult | None) -> None:
    if result is None:
        console.print(f"- {label}: n/a")
        return
    console.print(f"- {label}: {result.describe()}")


def _confirmation_required(command: str) -> None:
    console.print(f"[yellow]Confirmation required. Use: {command} --id <ID> --yes[/yellow]")
    raise typer.Exit(code=CONFIRMATION_EXIT_CODE)


@app.callback()
def main(
    ctx: typer.Context,
    config: Path = typer.Option(
        Path(CONFIG_FILENAME),
        "--config",
        "-c",
        help="Path to the JSON config file.",
    ),
) -> None:
    """Run a backup when no command is given."""
    load_dotenv()
    ctx.obj = {"config_path": config}
    if ctx.invoked_subcommand is None:
        ctx.invoke(run, ctx=ctx)


def _print_cycle(result: CycleResult) -> None:
    backup = result.backup
    if backup.snapshot is None:
        if backup.skipped_reason == "no-files":
            console.print("[yellow]No files found. Backup skipped.[/yellow]")
        else:
            console.print("[yellow]No changes detected. Backup skipped.[/yellow]")
    else:
        snapshot = backup.snapshot
        console.print(
            f"[green]Backup OK:[/green] {snapshot.id} "
            f"({snapshot.type.value}, {backup.decision.reason if backup.decision else ''})"
        )
        console.print(
            f"Added: {snapshot.stats.added} | Modified: {snapshot.stats.modified} "
            f"| Removed: {snapshot.stats.removed}"
        )
        if backup.archive_path is None:
            console.print("[dim]No archive needed (removals only).[/dim]")

    for report in result.retention.pruned:
        console.print(
            f"[yellow]Retention:[/yellow] {report.snapshot_id} "
            f"record {report.record.describe()}, archive {report.archive.describe()}"
        )
    if result.gc is not None and (result.gc.removed_count or result.gc.removed_archives):
        console.print(
            f"GC: {result.gc.removed_count} blob(s), {result.gc.removed_archives} archive(s), "
            f"{format_bytes(result.gc.bytes_freed)} freed"
        )


async def _run_async(config: BackupConfig) -> int:
    try:
        password = require_backup_password()
        result = await run_cycle(config, tool=SevenZipTool(), password=password, console=console)
    except KeyboardInterrupt:
        console.print("[yellow]Backup interrupted.[/yellow] No snapshot record was written.")
        return 130
    except BackupError as exc:
        console.print(f"[red]{exc}[/red]")
        return 1
    _print_cycle(result)
    return 0


@app.command()
def run(ctx: typer.Context) -> None:
    """Run a backup now, then apply retention and garbage collection."""
    try:
        config = _load(ctx)
    except BackupError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    raise typer.Exit(code=asyncio.run(_run_async(config)))


@app.command()
def watch(ctx: typer.Context) -> None:
    """Watch the sources and run a backup after changes settle."""
    try:
        config = _load(ctx)
        password = require_backup_password()
    except BackupError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    def _run_once() -> None:
        result = asyncio.run(run_cycle(config, tool=SevenZipTool(), password=password))
        _print_cycle(result)

    watcher = SourceWatcher(config, _run_once)
    watcher.start()
    try:
        watcher.wait()
    except KeyboardInterrupt:
        console.print("[yellow]Stopping watcher.[/yellow]")
    finally:
        watcher.stop()


async def _check_async(config: BackupConfig) -> int:
    result = await check_for_changes(config, console=console)
    if result.reason == "no-files":
        console.print("[yellow]No files found. Check skipped.[/yellow]")
        return 0
    if not result.changed:
        console.print("[green]No changes detected.[/green]")
        return 0
    if result.reason == "no-previous":
        console.print("[yellow]No previous snapshot found. A backup would be created.[/yellow]")

    console.print("[green]Changes detected.[/green]")
    console.print(f"- Added: {len(result.added)}")
    console.print(f"- Modified: {len(result.modified)}")
    console.print(f"- Removed: {len(result.removed)}")
    _render_path_summary("Added files", result.added, "cyan")
    _render_path_summary("Modified files", result.modified, "cyan")
    _render_path_summary("Removed files", result.removed, "cyan")
    return 0


@app.command()
def check(ctx: typer.Context) -> None:
    """Show changes since the last snapshot without writing anything."""
    try:
        config = _load(ctx, with_file_log=False)
    except BackupError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    raise typer.Exit(code=asyncio.run(_check_async(config)))


@app.command("list")
def list_snapshots(
    ctx: typer.Context,
    limit: int = typer.Option(20, "--limit", help="How many snapshots to show."),
) -> None:
    """List snapshots, newest first."""
    try:
        config = _load(ctx, with_file_log=False)
    except BackupError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    repository = SnapshotRepository(config)
    snapshot_ids = repository.list_ids()[: max(1, limit)]
    if not snapshot_ids:
        console.print(f"[yellow]No snapshots found in: {config.snapshots_dir}[/yellow]")
        return

    index = repository.load_index()
    table = Table(title="Snapshots")
    table.add_column("ID")
    table.add_column("Created at")
    table.add_column("Type")
    table.add_column("Base")
    table.add_column("Files", justify="right")
    table.add_column("Total", justify="right")
    table.add_column("Archive")

    for snapshot_id in snapshot_ids:
        snapshot = index.get(snapshot_id)
        if snapshot is None:
            table.add_row(snapshot_id, "invalid json", "-", "-", "0", "0 B", "-")
            continue
        created = snapshot_time(snapshot, repository.record_mtime)
        archive = repository.find_archive(snapshot_id)
        if archive is None:
            archive_label = "none" if not snapshot.has_archive_content else "[red]missing[/red]"
        elif archive.parent == config.archives_dir:
            archive_label = "local"
        else:
            archive_label = "store"
        table.add_row(
            snapshot.id,
            created.strftime("%Y-%m-%d %H:%M:%SZ") if created else "unknown",
            snapshot.type.value,
            snapshot.base_id or "-",
            str(len(snapshot.files)),
            format_bytes(snapshot.total_bytes),
            archive_label,
        )

    console.print(table)
    console.print(Text(f"Showing {len(snapshot_ids)} snapshot(s). Use --limit to change.", style="dim"))


@app.command()
def restore(
    ctx: typer.Context,
    snapshot_id: str = typer.Option(..., "--id", help="Snapshot id (record filename without .json)."),
    overwrite: bool = typer.Option(False, "--overwrite", help="Overwrite existing files."),
    to: Path | None = typer.Option(None, "--to", help="Destination. Defaults to restorePath."),
    verify: bool = typer.Option(True, "--verify/--no-verify", help="Re-hash a sample of restored files."),
) -> None:
    """Restore a snapshot by replaying its chain of archives."""
    try:
        config = _load(ctx)
        destination = to or config.restore_path
        if destination is None:
            console.print("[red]No destination: pass --to or set restorePath in the config.[/red]")
            raise typer.Exit(code=1)
        password = require_backup_password()
        result = restore_snapshot(
            config,
            snapshot_id,
            destination=destination,
            password=password,
            tool=SevenZipTool(),
            overwrite=overwrite,
            verify=verify,
        )
    except BackupError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    console.print("[green]Restore OK[/green]")
    console.print(f"- Snapshot: {result.snapshot_id}")
    console.print(f"- Chain: {' -> '.join(result.chain)}")
    console.print(f"- To: {result.destination}")
    console.print(f"- Overwrite: {'yes' if result.overwrite else 'no'}")
    console.print(f"- Restored: {result.restored} | Skipped existing: {result.skipped}")
    if verify:
        if result.mismatches:
            console.print(
                f"[yellow]- Verify: {len(result.mismatches)} of {result.verified} sampled file(s) differ[/yellow]"
            )
            for mismatch in result.mismatches:
                console.print(f"  {mismatch.path}")
        else:
            console.print(f"- Verify: {result.verified} sampled file(s) OK")


@app.command()
def delete(
    ctx: typer.Context,
    snapshot_id: str = typer.Option(..., "--id", help="Snapshot id."),
    yes: bool = typer.Option(False, "--yes", help="Confirm."),
) -> None:
    """Move a snapshot's archive out of the repository into the long-term store."""
    if not yes:
        _confirmation_required("delete")
    try:
        config = _load(ctx)
        stored = SnapshotRepository(config).relocate_archive(snapshot_id)
    except (BackupError, ValueError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    console.print("[green]Delete finished[/green]")
    if stored is None:
        console.print("- archive: not found in the repository")
    else:
        logger.info("Archive for %s moved to %s", snapshot_id, stored)
        console.print(f"- archive: moved to {stored}")


@app.command()
def purge(
    ctx: typer.Context,
    snapshot_id: str = typer.Option(..., "--id", help="Snapshot id."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show what would be removed, remove nothing."),
    force: bool = typer.Option(False, "--force", help="Purge even if other snapshots depend on it."),
    yes: bool = typer.Option(False, "--yes", help="Confirm."),
) -> None:
    """Remove a snapshot record and every copy of its archive (irreversible)."""
    if not yes:
        _confirmation_required("purge")
    try:
        config = _load(ctx)
        report = purge_snapshot(config, snapshot_id, dry_run=dry_run, force=force)
    except SnapshotInUse as exc:
        console.print(f"[red]{exc}[/red]")
        console.print("Use --force to purge anyway; dependent snapshots will no longer restore.")
        raise typer.Exit(code=1)
    except BackupError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    console.print(f"[green]Purge{' (dry-run)' if dry_run else ''}[/green]")
    _render_delete("snapshot.json", report.record)
    _render_delete("archive.7z", report.archive)
    _render_delete("store copy", report.mirror)


@app.command()
def gc(
    ctx: typer.Context,
    dry_run: bool = typer.Option(False, "--dry-run", help="Count orphans without deleting."),
) -> None:
    """Delete blobs and archives no snapshot refers to."""
    try:
        config = _load(ctx)
    except BackupError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)

    result = garbage_collect(config, dry_run=dry_run)
    if result.aborted_reason:
        console.print(f"[red]GC aborted:[/red] {result.aborted_reason}")
        raise typer.Exit(code=1)
    suffix = " (dry-run)" if dry_run else ""
    console.print(f"[green]GC{suffix}[/green]")
    console.print(f"- Referenced hashes: {result.referenced}")
    console.print(f"- Blobs: {result.blobs_total} | Orphans: {result.orphan_count} | Removed: {result.removed_count}")
    console.print(f"- Orphan archives: {len(result.orphan_archives)} | Removed: {result.removed_archives}")
    console.print(f"- Freed: {format_bytes(result.bytes_freed)}")
    if result.failed:
        _render_path_summary("Could not delete", [str(path) for path in result.failed], "red")
