import os
import time
from datetime import timedelta
from pathlib import Path

import click
from loguru import logger
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table
from rich.text import Text

from .backup_manager import BackupOrchestrator, format_size
from .config import StorageConfig, StorageKind, VaultConfig, load_config, save_config
from .errors import ConfigurationError, SnapvaultError
from .models import BackupOptions, ChangeKind, EncryptionSettings
from .monitor import BackupWatcher, WatchConfig

console = Console()

CHANGE_STYLES = {
    ChangeKind.ADDED: "green",
    ChangeKind.MODIFIED: "yellow",
    ChangeKind.DELETED: "red",
}


def load_vault_config(ctx: click.Context) -> VaultConfig:
    if ctx.obj.get("vault_config") is not None:
        return ctx.obj["vault_config"]

    try:
        config = load_config(ctx.obj["config_path"])
    except ConfigurationError as e:
        raise click.ClickException(str(e))

    if (
        config.storage.service == StorageKind.PINATA
        and not config.storage.config.get("jwt")
        and os.environ.get("PINATA_JWT")
    ):
        config.storage.config["jwt"] = os.environ["PINATA_JWT"]

    if ctx.obj.get("passphrase"):
        config.encryption.key = ctx.obj["passphrase"]

    try:
        config.paths.logs.mkdir(parents=True, exist_ok=True)
        sink_id = logger.add(
            config.paths.logs / "snapvault.log", rotation="10 MB", retention=5, level="DEBUG"
        )
        ctx.call_on_close(lambda: logger.remove(sink_id))
    except OSError as e:
        logger.warning(f"File logging disabled: {e}")

    ctx.obj["vault_config"] = config
    return config


def create_orchestrator(ctx: click.Context) -> BackupOrchestrator:
    config = load_vault_config(ctx)
    try:
        return BackupOrchestrator.from_config(config)
    except SnapvaultError as e:
        raise click.ClickException(str(e))


def encryption_override(
    ctx: click.Context, encrypt: bool | None, algorithm: str | None
) -> EncryptionSettings | None:
    if encrypt is None and algorithm is None:
        return None

    config = load_vault_config(ctx)
    return EncryptionSettings(
        enabled=config.encryption.enabled if encrypt is None else encrypt,
        algorithm=algorithm or config.encryption.algorithm,
        key=config.encryption.key,
    )


@click.group()
@click.option("--config", "-c", default="snapvault.json", help="Configuration file path")
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose logging")
@click.option(
    "--passphrase",
    envvar="SNAPVAULT_PASSPHRASE",
    default=None,
    help="Encryption passphrase (or set SNAPVAULT_PASSPHRASE)",
)
@click.pass_context
def cli(ctx, config, verbose, passphrase):
    if verbose:
        logger.add(
            lambda msg: console.print(msg, style="dim", end="", markup=False), level="DEBUG"
        )

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = Path(config)
    ctx.obj["passphrase"] = passphrase


@cli.command()
@click.argument("source", type=click.Path(exists=True, file_okay=False))
@click.option(
    "--exclude", multiple=True, help="Regular expression; names containing a match are skipped"
)
@click.option("--max-file-size", type=int, help="Skip files larger than this many bytes")
@click.option("--encrypt/--no-encrypt", default=None, help="Override encryption setting")
@click.option("--algorithm", help="Encryption algorithm")
@click.option("--name", help="Backup name")
@click.option("--description", help="Backup description")
@click.option("--tag", multiple=True, help="Tags for the backup")
@click.pass_context
def backup(ctx, source, exclude, max_file_size, encrypt, algorithm, name, description, tag):
    """Back up SOURCE directory."""
    orchestrator = create_orchestrator(ctx)
    options = BackupOptions(
        exclude_patterns=list(exclude),
        max_file_size=max_file_size,
        encryption=encryption_override(ctx, encrypt, algorithm),
        name=name,
        description=description,
        tags=list(tag),
    )

    with Progress(
        SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console
    ) as progress:
        task = progress.add_task(f"Backing up {source}...", total=None)

        try:
            result = orchestrator.backup(source, options)
            progress.update(task, description="Backup completed")
        except SnapvaultError as e:
            progress.update(task, description="Backup failed")
            console.print(f"❌ Backup failed: [bold red]{e}[/bold red]")
            raise click.ClickException(str(e))

    info_text = Text()
    info_text.append(f"Hash: {result.hash}\n", style="bold cyan")
    info_text.append(f"Name: {result.name}\n", style="green")
    info_text.append(f"Size: {format_size(result.version_info.size)}\n", style="magenta")
    info_text.append(f"Checksum: {result.version_info.checksum}\n", style="dim")
    console.print(Panel(info_text, title="✅ Backup created", expand=False))


@cli.command()
@click.argument("content_hash")
@click.argument("target", type=click.Path(file_okay=False))
@click.option("--algorithm", help="Algorithm used when the backup was encrypted")
@click.pass_context
def restore(ctx, content_hash, target, algorithm):
    """Restore backup CONTENT_HASH into TARGET."""
    orchestrator = create_orchestrator(ctx)
    options = BackupOptions(encryption=encryption_override(ctx, None, algorithm))

    with Progress(
        SpinnerColumn(), TextColumn("[progress.description]{task.description}"), console=console
    ) as progress:
        task = progress.add_task(f"Restoring {content_hash}...", total=None)

        try:
            orchestrator.restore(content_hash, target, options)
            progress.update(task, description="Restore completed")
        except SnapvaultError as e:
            progress.update(task, description="Restore failed")
            console.print(f"❌ Restore failed: [bold red]{e}[/bold red]")
            raise click.ClickException(str(e))

    console.print(
        f"✅ Restored [bold green]{content_hash}[/bold green] to [bold cyan]{target}[/bold cyan]"
    )


@cli.command()
@click.argument("content_hash")
@click.argument("source", type=click.Path(exists=True, file_okay=False))
@click.pass_context
def compare(ctx, content_hash, source):
    """Check whether SOURCE still matches backup CONTENT_HASH."""
    orchestrator = create_orchestrator(ctx)

    try:
        result = orchestrator.compare(content_hash, source)
    except SnapvaultError as e:
        console.print(f"❌ Compare failed: [bold red]{e}[/bold red]")
        raise click.ClickException(str(e))

    status_text = Text()
    if result.is_equal:
        status_text.append("Contents: identical\n", style="bold green")
    else:
        status_text.append("Contents: changed\n", style="bold yellow")
    status_text.append(
        f"Local state is {'newer' if result.is_newer else 'older'} by {result.formatted_diff}\n",
        style="magenta",
    )
    status_text.append(f"Backup checksum: {result.remote_version.checksum}\n", style="dim")
    status_text.append(f"Local checksum:  {result.local_version.checksum}\n", style="dim")
    console.print(Panel(status_text, title="Comparison", expand=False))


@cli.command()
@click.argument("content_hash")
@click.argument("source", type=click.Path(exists=True, file_okay=False))
@click.pass_context
def diff(ctx, content_hash, source):
    """List files added, modified or deleted in SOURCE since backup CONTENT_HASH."""
    orchestrator = create_orchestrator(ctx)

    try:
        result = orchestrator.compare_detailed(content_hash, source)
    except SnapvaultError as e:
        console.print(f"❌ Diff failed: [bold red]{e}[/bold red]")
        raise click.ClickException(str(e))

    if result.is_equal:
        console.print("Working directory matches the backup")
        return

    table = Table(title=f"Changes since {content_hash[:12]}")
    table.add_column("Type", style="cyan")
    table.add_column("Path", style="white")
    table.add_column("Old size", justify="right")
    table.add_column("New size", justify="right")

    for difference in result.differences:
        table.add_row(
            Text(difference.kind.value, style=CHANGE_STYLES[difference.kind]),
            difference.path,
            f"{difference.size_old:,}" if difference.size_old is not None else "-",
            f"{difference.size_new:,}" if difference.size_new is not None else "-",
        )

    console.print(table)
    totals = result.total_changes
    console.print(
        f"{totals.added} added, {totals.modified} modified, {totals.deleted} deleted"
    )


@cli.command()
@click.argument("content_hash")
@click.confirmation_option(prompt="Are you sure you want to delete this backup?")
@click.pass_context
def delete(ctx, content_hash):
    """Unpin backup CONTENT_HASH."""
    orchestrator = create_orchestrator(ctx)

    try:
        deleted = orchestrator.delete(content_hash)
    except SnapvaultError as e:
        console.print(f"❌ Delete failed: [bold red]{e}[/bold red]")
        raise click.ClickException(str(e))

    if deleted:
        console.print(f"✅ Deleted backup [bold green]{content_hash}[/bold green]")
    else:
        console.print(f"Backup {content_hash} is not pinned, nothing to delete")


@cli.command()
@click.argument("content_hash")
@click.pass_context
def status(ctx, content_hash):
    """Show pin state and storage metadata of CONTENT_HASH."""
    orchestrator = create_orchestrator(ctx)

    try:
        pinned = orchestrator.is_pinned(content_hash)
        metadata = orchestrator.get_metadata(content_hash) if pinned else {}
    except SnapvaultError as e:
        console.print(f"❌ Status check failed: [bold red]{e}[/bold red]")
        raise click.ClickException(str(e))

    status_text = Text()
    status_text.append(f"Hash: {content_hash}\n", style="bold cyan")
    status_text.append(f"Pinned: {'✅ yes' if pinned else '❌ no'}\n")
    console.print(Panel(status_text, title="Backup Status", expand=False))

    if metadata:
        table = Table(title="Storage Metadata")
        table.add_column("Key", style="cyan")
        table.add_column("Value", style="white")
        for key, value in metadata.items():
            table.add_row(str(key), str(value))
        console.print(table)


@cli.command()
@click.pass_context
def init_config(ctx):
    """Create a configuration file interactively."""
    config_path = ctx.obj["config_path"]

    if config_path.exists():
        if not click.confirm(f"Configuration file {config_path} exists. Overwrite?"):
            return

    console.print("🔧 Creating snapvault configuration...")

    service = click.prompt(
        "Storage service",
        type=click.Choice([kind.value for kind in StorageKind]),
        default=StorageKind.LOCAL.value,
    )

    storage_settings: dict = {}
    if service == StorageKind.PINATA.value:
        storage_settings["gateway"] = click.prompt("Pinata gateway", default="gateway.pinata.cloud")
        console.print("🔑 Provide the Pinata JWT through the PINATA_JWT environment variable")
    elif service == StorageKind.IPFS.value:
        storage_settings["url"] = click.prompt("IPFS API URL", default="http://127.0.0.1:5001")
    else:
        storage_settings["path"] = click.prompt("Storage directory", default="./storage")

    encrypt = click.confirm("Encrypt backups?", default=True)

    config = VaultConfig(
        storage=StorageConfig(service=StorageKind(service), config=storage_settings),
        encryption=EncryptionSettings(enabled=encrypt),
        exclude_patterns=[
            r"\.tmp$", r"\.log$", r"^\.DS_Store$", r"^__pycache__$", r"^node_modules$", r"^\.git$"
        ],
    )
    save_config(config, config_path)

    console.print(f"✅ Configuration saved to {config_path}")
    if encrypt:
        console.print("🔐 Set SNAPVAULT_PASSPHRASE before running backups")
    console.print("🚀 You can now run 'snapvault backup <dir>' to create your first backup!")


@cli.command()
@click.argument("source", type=click.Path(exists=True, file_okay=False))
@click.option("--debounce", default=30.0, help="Seconds of quiet before backing up")
@click.option("--threshold", default=50, help="Back up after this many changed files")
@click.option("--interval", default=60, help="Minutes between time-triggered backups")
@click.pass_context
def watch(ctx, source, debounce, threshold, interval):
    """Back up SOURCE automatically whenever it changes."""
    orchestrator = create_orchestrator(ctx)
    watcher = BackupWatcher(
        orchestrator,
        source,
        config=WatchConfig(
            change_threshold=threshold,
            backup_interval=timedelta(minutes=interval),
            debounce_seconds=debounce,
        ),
    )
    watcher.on_backup = lambda result: console.print(
        f"✅ Auto backup: [bold green]{result.hash}[/bold green]"
    )

    watcher.start()
    console.print(f"👀 Watching [cyan]{source}[/cyan] (Ctrl+C to stop)")
    try:
        while True:
            time.sleep(1.0)
    except KeyboardInterrupt:
        console.print("Shutting down...")
    finally:
        watcher.stop()


if __name__ == "__main__":
    cli()
