import sys
from collections.abc import Callable
from pathlib import Path

import click
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.text import Text

from .backup_manager import BackupManager
from .daemon import DaemonManager
from .errors import FassBackupError
from .models import BackupPaths, FrequencyUnit
from .settings import load_settings, save_settings

console = Console()


def _record_key(path: str) -> str:
    return str(Path(path).expanduser().absolute())


@click.group()
@click.option(
    "--home",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="FASS_BACKUP_HOME",
    help="Directory holding the index, settings and daemon files",
)
@click.option(
    "--backup-root",
    type=click.Path(file_okay=False, path_type=Path),
    envvar="FASS_BACKUP_ROOT",
    help="Directory that receives the backup copies",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.pass_context
def cli(ctx, home, backup_root, verbose):
    logger.remove()
    logger.add(
        lambda msg: console.print(msg.rstrip(), style="dim", markup=False, highlight=False),
        level="DEBUG" if verbose else "WARNING",
        format="{time:HH:mm:ss} | {level: <8} | {message}",
    )

    options = {}
    if home:
        options["home"] = home
    if backup_root:
        options["backup_root"] = backup_root
    paths = BackupPaths(**options)
    paths.ensure()

    ctx.ensure_object(dict)
    ctx.obj["paths"] = paths


@cli.command()
@click.argument("source", type=click.Path(exists=True, file_okay=False, path_type=Path))
@click.pass_context
def backup(ctx, source):
    """Mirror SOURCE into the backup directory"""
    manager = BackupManager(ctx.obj["paths"])

    with Progress(
        SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console
    ) as progress:
        task = progress.add_task(f"Backing up {source}...", total=None)

        try:
            stats = manager.backup(source)
            progress.update(task, description="Backup completed")
        except FassBackupError as e:
            progress.update(task, description="Backup failed")
            console.print(f"❌ Backup failed: [bold red]{e}[/bold red]")
            raise click.ClickException(str(e))

    console.print(
        f"✅ Copied [bold green]{stats.files_copied}[/bold green], "
        f"unchanged {stats.files_unchanged}, failed {stats.files_failed} "
        f"({stats.duration.total_seconds():.2f}s)"
    )


@cli.command()
@click.pass_context
def sync(ctx):
    """Re-check every tracked file and copy the changed ones"""
    manager = BackupManager(ctx.obj["paths"])
    try:
        count = manager.backup_now()
    except FassBackupError as e:
        raise click.ClickException(str(e))
    console.print(f"✅ Backed up {count} file(s)")


@cli.command("list")
@click.pass_context
def list_records(ctx):
    """Show the tracked files"""
    records = BackupManager(ctx.obj["paths"]).list_records()

    if not records:
        console.print("No files tracked yet. Run 'backup SOURCE' first.")
        return

    table = Table(title="Backed-up Files")
    table.add_column("Original", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Hash", style="green")
    table.add_column("Auto", style="yellow")
    table.add_column("Every", justify="right")

    for record in records:
        table.add_row(
            str(record.original_path),
            record.file_type,
            record.content_hash[:12] or "-",
            "yes" if record.auto_backup_enabled else "no",
            f"{record.backup_interval} {record.backup_frequency_unit}",
        )

    console.print(table)


@cli.command()
@click.argument("path")
@click.confirmation_option(prompt="Delete the backup copy and stop tracking this file?")
@click.pass_context
def forget(ctx, path):
    """Delete the backup copy of PATH and drop its record"""
    manager = BackupManager(ctx.obj["paths"])
    try:
        removed = manager.forget(_record_key(path))
    except FassBackupError as e:
        raise click.ClickException(str(e))

    if not removed:
        raise click.ClickException(f"{path} is not tracked")
    console.print(f"✅ Removed [bold]{path}[/bold]")


@cli.command()
@click.argument("path")
@click.option("--overwrite", is_flag=True, help="Overwrite the original if it exists")
@click.pass_context
def restore(ctx, path, overwrite):
    """Copy the backup of PATH back to its original location"""
    manager = BackupManager(ctx.obj["paths"])
    try:
        target = manager.restore(_record_key(path), overwrite=overwrite)
    except FassBackupError as e:
        console.print(f"❌ Restore failed: [bold red]{e}[/bold red]")
        raise click.ClickException(str(e))
    console.print(f"✅ Restored [bold cyan]{target}[/bold cyan]")


@cli.command()
@click.argument("path")
@click.option("--enable/--disable", default=None, help="Toggle per-file auto-backup")
@click.option("--interval", type=click.IntRange(min=1), help="How many units between checks")
@click.option(
    "--unit",
    type=click.Choice([unit.value for unit in FrequencyUnit], case_sensitive=False),
    help="Unit of --interval",
)
@click.pass_context
def schedule(ctx, path, enable, interval, unit):
    """Configure per-file auto-backup for PATH"""
    manager = BackupManager(ctx.obj["paths"])
    try:
        record = manager.configure_schedule(
            _record_key(path), enabled=enable, interval=interval, unit=unit
        )
    except FassBackupError as e:
        raise click.ClickException(str(e))

    state = "enabled" if record.auto_backup_enabled else "disabled"
    console.print(
        f"✅ Auto-backup {state} for {record.original_path} "
        f"(every {record.backup_interval} {record.backup_frequency_unit})"
    )


@cli.group(invoke_without_command=True)
@click.pass_context
def settings(ctx):
    """Show or change the global auto-backup settings"""
    if ctx.invoked_subcommand is not None:
        return

    current = load_settings(ctx.obj["paths"].settings_file)
    text = Text()
    text.append(
        f"Auto-backup: {'enabled' if current.auto_backup_enabled else 'disabled'}\n",
        style="green" if current.auto_backup_enabled else "yellow",
    )
    text.append(f"Interval: {current.interval_minutes} min\n", style="cyan")
    console.print(Panel(text, title="Backup Settings", expand=False))


@settings.command("set")
@click.option("--auto/--no-auto", default=None, help="Master switch for the daemon loop")
@click.option("--interval", type=click.IntRange(min=1), help="Minutes between daemon sweeps")
@click.pass_context
def settings_set(ctx, auto, interval):
    paths = ctx.obj["paths"]
    current = load_settings(paths.settings_file)
    if auto is not None:
        current.auto_backup_enabled = auto
    if interval is not None:
        current.interval_minutes = interval

    save_settings(paths.settings_file, current)
    console.print("✅ Settings saved")

    # A running daemon only reads the interval between sweeps
    manager = DaemonManager(paths)
    if manager.is_running():
        try:
            pid = manager.restart()
        except FassBackupError as e:
            raise click.ClickException(f"Settings saved but restart failed: {e}")
        console.print(f"🔄 Daemon restarted (PID {pid})")


@cli.group()
def daemon():
    """Control the background backup daemon"""
    pass


def _daemon_call(ctx, action: Callable[[DaemonManager], int | None]):
    manager = DaemonManager(ctx.obj["paths"])
    try:
        return action(manager)
    except FassBackupError as e:
        console.print(f"❌ {e}")
        raise click.ClickException(str(e))


@daemon.command("start")
@click.pass_context
def daemon_start(ctx):
    pid = _daemon_call(ctx, DaemonManager.start)
    console.print(f"✅ Daemon started (PID {pid})")


@daemon.command("stop")
@click.pass_context
def daemon_stop(ctx):
    _daemon_call(ctx, DaemonManager.stop)
    console.print("✅ Daemon stopped")


@daemon.command("restart")
@click.pass_context
def daemon_restart(ctx):
    pid = _daemon_call(ctx, DaemonManager.restart)
    console.print(f"✅ Daemon restarted (PID {pid})")


@daemon.command("kill")
@click.pass_context
def daemon_kill(ctx):
    """Force-kill the daemon without a graceful shutdown"""
    _daemon_call(ctx, DaemonManager.kill)
    console.print("✅ Daemon killed")


@daemon.command("status")
@click.pass_context
def daemon_status(ctx):
    console.print(DaemonManager(ctx.obj["paths"]).status())


@daemon.command("run")
@click.pass_context
def daemon_run(ctx):
    """Run the backup loop in the foreground"""
    from .main import run_daemon_mode

    try:
        claimed = run_daemon_mode(ctx.obj["paths"])
    except FassBackupError as e:
        raise click.ClickException(str(e))
    if not claimed:
        sys.exit(1)


if __name__ == "__main__":
    cli()
