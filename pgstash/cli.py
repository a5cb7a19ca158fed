"""Typer application entrypoint."""

from typing import Optional

import typer

from pgstash import __version__, configure_logging
from pgstash.backup.errors import BackupError
from pgstash.backup.executor import BackupExecutor, run_backup
from pgstash.backup.storage import StorageError, create_storage
from pgstash.config import Config, ConfigError, load_config


app = typer.Typer(help="PostgreSQL backups to object storage with count-based retention")


def _load() -> Config:
    try:
        config = load_config()
    except ConfigError as exc:
        typer.echo(f"Invalid configuration: {exc}", err=True)
        raise typer.Exit(code=1)
    configure_logging(config.app.log_level, config.app.log_dir)
    return config


def _executor(config: Config) -> BackupExecutor:
    storage = create_storage(config)
    try:
        storage.init()
    except StorageError as exc:
        typer.echo(f"Storage unavailable: {exc}", err=True)
        raise typer.Exit(code=1)
    return BackupExecutor(config, storage)


@app.command("backup")
def backup(
    timeout: Optional[float] = typer.Option(None, help="Abort the backup after this many seconds"),
) -> None:
    """Dump all databases, upload the archive and purge old backups."""
    config = _load()
    try:
        result = run_backup(config, timeout=timeout)
    except (BackupError, StorageError) as exc:
        typer.echo(f"Backup failed: {exc}", err=True)
        raise typer.Exit(code=1)
    typer.echo(
        f"Backed up {result.exported_databases}/{result.total_databases} databases to {result.storage_key}"
    )


@app.command("list")
def list_backups() -> None:
    """List stored backups, most recent first."""
    config = _load()
    executor = _executor(config)
    try:
        keys = executor.list_dumps()
    except BackupError as exc:
        typer.echo(f"Listing failed: {exc}", err=True)
        raise typer.Exit(code=1)
    if not keys:
        typer.echo("No backups found.")
        return
    for key in keys:
        typer.echo(key)


@app.command("purge")
def purge(
    retention: Optional[int] = typer.Option(None, min=1, help="Number of backups to keep (default: configured)"),
) -> None:
    """Delete backups beyond the retention count."""
    config = _load()
    executor = _executor(config)
    try:
        result = executor.purge_dumps(retention)
    except BackupError as exc:
        typer.echo(f"Purge failed: {exc}", err=True)
        raise typer.Exit(code=1)
    if not result.deleted:
        typer.echo("No backups to delete.")
        return
    for key in result.deleted:
        typer.echo(f"Deleted {key}")


@app.command("version")
def version() -> None:
    """Show the pgstash version."""
    typer.echo(__version__)


if __name__ == "__main__":
    app()
