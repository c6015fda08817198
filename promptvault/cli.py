#!/usr/bin/env python3
"""Command Line Interface for PromptVault"""

import json
import sys
import time
from datetime import datetime
from pathlib import Path
from typing import Any, cast

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from promptvault.core.backup_engine import BackupEngine
from promptvault.core.config_manager import ConfigManager
from promptvault.core.errors import BackupError
from promptvault.core.models import BackupOptions, BackupType, RestoreOptions
from promptvault.utils.retention_manager import RetentionManager
from promptvault.utils.scheduler import BackupScheduler

console = Console()

# Lazy-initialized components (created on first access to avoid startup cost)
_components: dict[str, Any] = {}

BACKUP_TYPE_CHOICES = [t.value for t in BackupType if t != BackupType.RESTORE_POINT]


def _get_config() -> ConfigManager:
    if "config" not in _components:
        _components["config"] = ConfigManager(_components.get("config_dir"))
    return cast("ConfigManager", _components["config"])


def _get_backup_engine() -> BackupEngine:
    if "backup_engine" not in _components:
        _components["backup_engine"] = BackupEngine(_get_config())
    return cast("BackupEngine", _components["backup_engine"])


def _get_retention_manager() -> RetentionManager:
    return _get_backup_engine().retention


def _format_size(size_bytes: float) -> str:
    for unit in ("B", "KB", "MB", "GB"):
        if size_bytes < 1024:
            return f"{size_bytes:.1f} {unit}" if unit != "B" else f"{int(size_bytes)} B"
        size_bytes /= 1024
    return f"{size_bytes:.1f} TB"


def _fail(error: BackupError) -> None:
    console.print(f"[red]✗[/red] {escape(str(error))}")
    sys.exit(1)


@click.group()
@click.option("--config-dir", type=click.Path(file_okay=False, path_type=Path), help="Directory holding settings.yaml")
def cli(config_dir):
    """PromptVault - Versioned backups for your prompt collection"""
    if config_dir is not None:
        _components["config_dir"] = config_dir


@cli.command()
@click.option(
    "--type",
    "backup_type",
    type=click.Choice(BACKUP_TYPE_CHOICES),
    default="full",
    show_default=True,
    help="Backup type",
)
@click.option("--description", "-d", help="Description for the backup (reason for creating it)")
@click.option("--base", "base_backup_id", help="Base backup id (required for differential backups)")
@click.option("--timeout", type=float, help="Abort if the backup takes longer than this many seconds")
@click.option("--skip-unchanged", is_flag=True, help="Write nothing if the collection has not changed since the base")
@click.option(
    "--exclude-sensitive/--include-sensitive",
    default=None,
    help="Strip API keys and other sensitive settings (defaults to backup.exclude_sensitive)",
)
def backup(backup_type, description, base_backup_id, timeout, skip_unchanged, exclude_sensitive):
    """Create a backup of the live prompt collection"""
    console.print(f"[bold cyan]Creating {backup_type} backup...[/bold cyan]")
    if description:
        console.print(f"[dim]Reason: {description}[/dim]")

    options = BackupOptions(
        description=description,
        base_backup_id=base_backup_id,
        timeout=timeout,
        exclude_sensitive=exclude_sensitive,
        skip_unchanged=skip_unchanged,
    )
    try:
        record = _get_backup_engine().create_backup(backup_type=backup_type, options=options)
    except BackupError as e:
        _fail(e)
        return

    if record is None:
        console.print("[yellow]No changes since the last backup, nothing written[/yellow]")
        return

    console.print(
        f"[green]✓[/green] {record.type.value} backup {record.id} "
        f"({record.item_count} items, {_format_size(record.size_bytes)})"
    )
    if record.type.value != backup_type:
        console.print(f"[yellow]Note: {escape(record.description)}[/yellow]")


@cli.command("list")
@click.option("--type", "backup_type", type=click.Choice([t.value for t in BackupType]), help="Only this type")
@click.option("--since", type=click.DateTime(), help="Only backups created at or after this time")
@click.option("--limit", type=int, help="Show at most this many backups")
def list_backups(backup_type, since, limit):
    """List backups, newest first"""
    try:
        records = _get_backup_engine().list_backups(backup_type, since=since, limit=limit)
    except BackupError as e:
        _fail(e)
        return

    if not records:
        console.print("[yellow]No backups found[/yellow]")
        return

    table = Table(title="Backups", show_header=True, header_style="bold magenta")
    table.add_column("ID", style="cyan")
    table.add_column("Type", style="white")
    table.add_column("Created", style="green")
    table.add_column("Items", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Base", style="dim")
    table.add_column("Description", style="white")

    for record in records:
        flags = "".join(["z" if record.compressed else "", "e" if record.encrypted else ""])
        table.add_row(
            record.id,
            f"{record.type.value} [dim]{flags}[/dim]" if flags else record.type.value,
            record.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            str(record.item_count),
            _format_size(record.size_bytes),
            record.base_backup_id or "-",
            escape(record.description or ""),
        )

    console.print(table)


@cli.command()
@click.argument("backup_id")
def verify(backup_id):
    """Verify a backup's payload, manifest and chain"""
    try:
        result = _get_backup_engine().verify_backup(backup_id)
    except BackupError as e:
        _fail(e)
        return

    if result.valid:
        console.print(f"[green]✓[/green] Backup {backup_id} is valid")
        return

    console.print(f"[red]✗[/red] Backup {backup_id} failed verification:")
    for issue in result.issues:
        console.print(f"  [red]-[/red] {escape(issue)}")
    sys.exit(1)


@cli.command()
@click.argument("backup_id")
@click.option("--skip-safety-backup", is_flag=True, help="Do not create a restore point first")
@click.option("--apply", "apply_changes", is_flag=True, help="Write the restored snapshot to the live source")
@click.option("--output", "-o", type=click.Path(dir_okay=False, path_type=Path), help="Write the snapshot as JSON")
@click.option("--timeout", type=float, help="Abort if the restore takes longer than this many seconds")
def restore(backup_id, skip_safety_backup, apply_changes, output, timeout):
    """Restore a backup (and its chain) to a verified snapshot"""
    console.print(f"[bold cyan]Restoring backup {backup_id}...[/bold cyan]")

    options = RestoreOptions(skip_safety_backup=skip_safety_backup, timeout=timeout)
    try:
        engine = _get_backup_engine()
        result = engine.restore(backup_id, options)
        if apply_changes:
            writer = getattr(engine.source, "write_snapshot", None)
            if writer is None:
                console.print("[red]✗[/red] No writable live source is configured")
                sys.exit(1)
            writer(result.snapshot)
    except BackupError as e:
        _fail(e)
        return

    console.print(f"[dim]Chain: {' -> '.join(result.chain)}[/dim]")
    if result.restore_point is not None:
        console.print(f"[dim]Restore point: {result.restore_point.id}[/dim]")

    if output:
        data = result.snapshot.to_dict()
        output.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        console.print(f"[dim]Snapshot written to {output}[/dim]")

    status = "applied" if apply_changes else "verified (use --apply to write it)"
    console.print(f"[green]✓[/green] Restored {result.snapshot.item_count} items, {status}")


@cli.command()
@click.option("--dry-run", is_flag=True, help="Show what would be deleted")
def cleanup(dry_run):
    """Apply the retention policy"""
    try:
        removed = _get_backup_engine().cleanup(dry_run=dry_run)
    except BackupError as e:
        _fail(e)
        return

    if not removed:
        console.print("[green]✓[/green] Nothing to clean up")
        return

    verb = "Would delete" if dry_run else "Deleted"
    for record in removed:
        console.print(f"  {verb}: {record.id} ({record.type.value}, {record.created_at:%Y-%m-%d %H:%M})")
    console.print(f"[bold]{verb} {len(removed)} backup(s)[/bold]")


@cli.command()
@click.argument("backup_id")
@click.confirmation_option(prompt="Are you sure you want to delete this backup?")
def delete(backup_id):
    """Delete a single backup"""
    try:
        _get_backup_engine().delete_backup(backup_id)
    except BackupError as e:
        _fail(e)
        return
    console.print(f"[green]✓[/green] Deleted {backup_id}")


@cli.command()
@click.option("--export", type=click.Path(dir_okay=False, path_type=Path), help="Export the full history as JSON")
def stats(export):
    """Show backup statistics and retention status"""
    try:
        engine = _get_backup_engine()
        statistics = engine.get_backup_statistics()
        retention = _get_retention_manager().get_retention_status()
    except BackupError as e:
        _fail(e)
        return

    console.print(f"[bold]Total backups:[/bold] {statistics['total_backups']}")
    console.print(f"[bold]Total size:[/bold] {_format_size(statistics['total_size'])}")
    console.print(f"[bold]Newest:[/bold] {statistics['newest_backup'] or 'Never'}")
    console.print(f"[bold]Oldest:[/bold] {statistics['oldest_backup'] or 'Never'}")

    table = Table(title="Retention", show_header=True, header_style="bold magenta")
    table.add_column("Type", style="cyan")
    table.add_column("Count", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Max count", justify="right")
    table.add_column("Max age (days)", justify="right")

    for type_name, info in retention["types"].items():
        table.add_row(
            type_name,
            str(info["count"]),
            _format_size(info["size"]),
            str(info["max_count"]) if info["max_count"] is not None else "-",
            str(info["max_age_days"]) if info["max_age_days"] is not None else "-",
        )

    console.print(table)
    if retention["pending_removal"]:
        console.print(f"[yellow]{retention['pending_removal']} backup(s) due for removal (run cleanup)[/yellow]")

    if export:
        export.write_text(json.dumps(engine.export_backup_history(), indent=2), encoding="utf-8")
        console.print(f"[dim]History exported to {export}[/dim]")


@cli.command()
@click.option("--interval", type=float, help="Minutes between backups (defaults to scheduler.interval_minutes)")
def schedule(interval):
    """Run scheduled incremental backups in the foreground until interrupted"""
    try:
        scheduler = BackupScheduler(_get_backup_engine(), interval * 60 if interval else None)
    except BackupError as e:
        _fail(e)
        return
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--interval") from e

    console.print(
        f"[bold cyan]Scheduling incremental backups every {scheduler.interval_seconds / 60:g} minute(s)[/bold cyan]"
    )
    console.print("[dim]Press Ctrl+C to stop[/dim]")
    scheduler.start()
    try:
        while scheduler.is_running:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop()

    status = scheduler.get_status()
    console.print(
        f"[bold]Stopped at {datetime.now():%H:%M:%S}:[/bold] {status['runs']} backup(s), {status['skipped']} skipped"
    )


@cli.command("import-history")
@click.argument("history_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option(
    "--payload-dir",
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Directory holding the exported backup files (defaults to the history file's directory)",
)
def import_history(history_file, payload_dir):
    """Adopt backups listed in an exported history file"""
    try:
        history = json.loads(history_file.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        console.print(f"[red]✗[/red] Could not read {escape(str(history_file))}: {escape(str(e))}")
        sys.exit(1)

    try:
        result = _get_backup_engine().import_backup_history(history, payload_dir or history_file.parent)
    except BackupError as e:
        _fail(e)
        return

    for failure in result["failures"]:
        console.print(f"  [red]-[/red] {failure['backup']}: {escape(failure['error'])}")
    console.print(
        f"[green]✓[/green] Imported {result['imported']} backup(s), "
        f"{result['skipped']} already present, {result['failed']} failed"
    )
    if result["failed"]:
        sys.exit(1)


if __name__ == "__main__":
    cli()
