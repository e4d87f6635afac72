"""Main CLI application for plugctl."""

import json
import logging
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from plugctl import __version__
from plugctl.config.parser import ConfigError, find_project_root, load_settings, save_settings
from plugctl.config.schemas import Settings
from plugctl.core.cache import CacheService
from plugctl.core.errors import PlugctlError
from plugctl.core.orchestrator import (
    CacheRetentionPolicy,
    InstallOrchestrator,
    InstallRequest,
    RollbackRequest,
    TransactionResult,
    UninstallRequest,
    UninstallResult,
    UpdateRequest,
)
from plugctl.core.pins import PinService
from plugctl.core.registry import RegistryService
from plugctl.sources.local import create_artifact_source
from plugctl.utils.filesystem import StorageAdapter

# Create the main Typer app
app = typer.Typer(
    name="plugctl",
    help="Local plugin manager with a bounded artifact cache and transactional installs",
    add_completion=False,
    no_args_is_help=True,
)
cache_app = typer.Typer(help="Inspect and maintain the artifact cache", no_args_is_help=True)
registry_app = typer.Typer(help="Validate, back up and restore the registry", no_args_is_help=True)
app.add_typer(cache_app, name="cache")
app.add_typer(registry_app, name="registry")

console = Console()
error_console = Console(stderr=True)

# Set up logger for the plugctl package
logger = logging.getLogger("plugctl")

PathOption = Annotated[
    Path | None,
    typer.Option("--path", "-p", help="Project directory"),
]
SourceOption = Annotated[
    str | None,
    typer.Option("--source", "-s", help="Artifact source (file:// URL or path)"),
]
ConsentOption = Annotated[
    list[str] | None,
    typer.Option(
        "--consent",
        help="Approve a lifecycle script by its sha256 digest (repeatable)",
    ),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Print the result as JSON"),
]


def setup_logging(verbosity: int) -> None:
    """Configure logging based on verbosity level.

    Args:
        verbosity: 0=WARNING, 1=INFO, 2=DEBUG, 3+=DEBUG with source paths
    """
    if verbosity == 0:
        level = logging.WARNING
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logger.setLevel(level)

    # Only add handler if not already configured
    if not logger.handlers:
        handler = RichHandler(
            console=error_console,
            show_time=verbosity >= 2,
            show_path=verbosity >= 3,
            rich_tracebacks=True,
        )
        handler.setLevel(level)
        logger.addHandler(handler)
    else:
        for h in logger.handlers:
            h.setLevel(level)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    error_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow]⚠[/yellow] {message}")


def print_info(message: str) -> None:
    """Print an info message (only shown at -v or higher)."""
    logger.info(message)


def get_settings(path: Path | None, source: str | None = None) -> Settings:
    """Load settings for the project, exiting on configuration errors."""
    root = path.resolve() if path else (find_project_root() or Path.cwd())
    try:
        return load_settings(root, {"source": source})
    except ConfigError as e:
        print_error(str(e))
        raise typer.Exit(1) from e


def get_orchestrator(settings: Settings) -> InstallOrchestrator:
    source = None
    if settings.source:
        try:
            source = create_artifact_source(settings.source)
        except PlugctlError as e:
            print_error(e.message)
            raise typer.Exit(1) from e
    return InstallOrchestrator.from_settings(settings, source)


def get_services(settings: Settings) -> tuple[CacheService, RegistryService]:
    storage = StorageAdapter()
    return (
        CacheService.from_settings(settings, storage),
        RegistryService.from_settings(settings, storage),
    )


def parse_plugin_arg(arg: str) -> tuple[str, str | None]:
    """Split 'plugin-id@version' into its parts."""
    if "@" in arg:
        plugin_id, version = arg.rsplit("@", 1)
        return plugin_id, version or None
    return arg, None


def report_result(result: TransactionResult, as_json: bool = False) -> None:
    """Render a transaction result."""
    if as_json:
        console.print_json(json.dumps(result.to_dict(), default=str))
        return

    for message in result.messages:
        if message.level == "warning":
            print_warning(message.text)
        elif message.level == "info":
            print_info(message.text)

    label = f"{result.plugin_id}@{result.version}" if result.version else result.plugin_id
    if not result.success:
        assert result.error is not None
        print_error(
            f"{result.operation} of {result.plugin_id} failed at {result.error.phase}: "
            f"{result.error.code}: {result.error.message}"
        )
        if result.error.code == "LIFECYCLE_CONSENT_REQUIRED":
            console.print(result.error.details.get("preview", ""), markup=False)
            console.print(f"  Re-run with --consent sha256:{result.error.details.get('digest')}")
        for compensation in result.compensations:
            console.print(f"  [dim]rolled back:[/dim] {compensation}")
        console.print(f"  [dim]transaction {result.transaction_id}[/dim]")
        return

    if result.dry_run and result.preview:
        console.print(f"[bold]Dry run[/bold] ({result.operation} {label})")
        for key, value in result.preview.items():
            console.print(f"  {key}: {value}")
        return

    if result.transition is not None and result.operation != "install":
        transition = result.transition
        console.print(f"  {transition.from_version} -> {transition.to_version}")
        if transition.permissions_removed:
            console.print(f"  Permissions removed: {', '.join(transition.permissions_removed)}")
    if isinstance(result, UninstallResult):
        if result.removed_versions:
            console.print(f"  Removed cached: {', '.join(result.removed_versions)}")
        if result.retained_versions:
            console.print(f"  Kept cached: {', '.join(result.retained_versions)}")
    print_success(f"{result.operation.capitalize()} {label}")


@app.callback()
def callback(
    verbose: Annotated[
        int,
        typer.Option(
            "--verbose",
            "-v",
            count=True,
            help="Increase verbosity (-v info, -vv debug, -vvv debug with paths)",
        ),
    ] = 0,
) -> None:
    """plugctl - local plugin manager."""
    setup_logging(verbose)


@app.command()
def version() -> None:
    """Show the plugctl version."""
    console.print(f"plugctl {__version__}")


@app.command()
def init(
    source: SourceOption = None,
    max_cache_size_mb: Annotated[
        float | None,
        typer.Option("--max-cache-size-mb", help="Cache size limit in megabytes"),
    ] = None,
    path: PathOption = None,
) -> None:
    """Initialize a plugctl project.

    Creates the plugin directory and its config.yaml.
    """
    root = Path.cwd() if path is None else path.resolve()
    if not root.exists():
        print_error(f"Directory does not exist: {root}")
        raise typer.Exit(1)

    try:
        settings = load_settings(root, {"source": source, "max_cache_size_mb": max_cache_size_mb})
    except ConfigError as e:
        print_error(str(e))
        raise typer.Exit(1) from e

    config_path = settings.plugin_dir / "config.yaml"
    if config_path.exists():
        print_error(f"Project already initialized in {root}")
        raise typer.Exit(1)

    if settings.install_dir.is_relative_to(root):
        settings.install_dir = settings.install_dir.relative_to(root)
    written = save_settings(settings)
    print_success("Initialized plugctl project")
    console.print(f"  Created: {written}")


@app.command()
def install(
    plugins: Annotated[
        list[str],
        typer.Argument(help="Plugins to install (e.g., 'plugin-id', 'plugin-id@1.2.0')"),
    ],
    source: SourceOption = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Reinstall and skip lifecycle consent checks"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show what would happen without changing anything"),
    ] = False,
    skip_lifecycle: Annotated[
        bool,
        typer.Option("--skip-lifecycle", help="Do not run install scripts"),
    ] = False,
    consent: ConsentOption = None,
    as_json: JsonOption = False,
    path: PathOption = None,
) -> None:
    """Install plugins.

    Supports version specifiers:
      - plugin-id         (latest version)
      - plugin-id@1.2.0   (exact version)
      - plugin-id@^1.0.0  (compatible with 1.x.x)
    """
    orchestrator = get_orchestrator(get_settings(path, source))
    failed = False
    for arg in plugins:
        plugin_id, version_spec = parse_plugin_arg(arg)
        result = orchestrator.install(
            InstallRequest(
                plugin_id=plugin_id,
                version=version_spec,
                force=force,
                dry_run=dry_run,
                skip_lifecycle=skip_lifecycle,
                lifecycle_consent=list(consent or []),
            )
        )
        report_result(result, as_json)
        failed = failed or not result.success

    if failed:
        raise typer.Exit(1)


@app.command()
def update(
    plugins: Annotated[
        list[str] | None,
        typer.Argument(help="Plugins to update (defaults to every installed plugin)"),
    ] = None,
    source: SourceOption = None,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Reinstall even if up to date"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show what would happen without changing anything"),
    ] = False,
    consent: ConsentOption = None,
    as_json: JsonOption = False,
    path: PathOption = None,
) -> None:
    """Update installed plugins to their latest (or a given) version."""
    settings = get_settings(path, source)
    orchestrator = get_orchestrator(settings)

    if plugins:
        targets = [parse_plugin_arg(arg) for arg in plugins]
    else:
        targets = [(p.plugin_id, None) for p in orchestrator.registry.list_plugins()]
    if not targets:
        console.print("No plugins installed")
        return

    requests = [
        UpdateRequest(
            plugin_id=plugin_id,
            version=version_spec,
            force=force,
            dry_run=dry_run,
            lifecycle_consent=list(consent or []),
        )
        for plugin_id, version_spec in targets
    ]
    try:
        results = orchestrator.batch_update(requests, settings.max_workers)
    except ValueError as e:
        print_error(str(e))
        raise typer.Exit(1) from e

    for result in results:
        report_result(result, as_json)
    if not all(r.success for r in results):
        raise typer.Exit(1)


@app.command()
def outdated(
    source: SourceOption = None,
    path: PathOption = None,
) -> None:
    """Show installed plugins with a newer version available."""
    orchestrator = get_orchestrator(get_settings(path, source))
    checks = orchestrator.check_updates()
    if not checks:
        console.print("No plugins installed")
        return

    table = Table(title="Update Check")
    table.add_column("Plugin", style="cyan")
    table.add_column("Installed", style="green")
    table.add_column("Latest")
    table.add_column("Status", style="dim")
    for check in checks:
        if check.error:
            status = check.error
        else:
            status = "update available" if check.update_available else "up to date"
        table.add_row(
            check.plugin_id, check.installed_version or "", check.latest_version or "", status
        )
    console.print(table)


@app.command()
def rollback(
    plugin: Annotated[str, typer.Argument(help="Plugin to roll back")],
    to: Annotated[
        str | None,
        typer.Option("--to", "-t", help="Cached version to activate (default: previous)"),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show what would happen without changing anything"),
    ] = False,
    as_json: JsonOption = False,
    path: PathOption = None,
) -> None:
    """Activate a previously cached version of a plugin."""
    orchestrator = get_orchestrator(get_settings(path))
    result = orchestrator.rollback(
        RollbackRequest(plugin_id=plugin, target_version=to, dry_run=dry_run)
    )
    report_result(result, as_json)
    if not result.success:
        raise typer.Exit(1)


@app.command("rollback-targets")
def rollback_targets(
    plugin: Annotated[str, typer.Argument(help="Plugin to inspect")],
    path: PathOption = None,
) -> None:
    """List cached versions a plugin can be rolled back to."""
    orchestrator = get_orchestrator(get_settings(path))
    found = orchestrator.list_rollback_targets(plugin)
    if not found:
        console.print(f"No rollback targets for {plugin}")
        return

    table = Table(title=f"Rollback Targets for {plugin}")
    table.add_column("Version", style="green")
    table.add_column("Size", justify="right")
    table.add_column("Last Access", style="dim")
    table.add_column("Pinned")
    for target in found:
        table.add_row(
            target.version,
            f"{target.size_bytes:,}",
            target.last_access_time.isoformat(timespec="seconds"),
            "yes" if target.pinned else "",
        )
    console.print(table)


@app.command()
def uninstall(
    plugins: Annotated[list[str], typer.Argument(help="Plugins to uninstall")],
    retention: Annotated[
        CacheRetentionPolicy,
        typer.Option("--retention", "-r", help="What to do with cached versions"),
    ] = CacheRetentionPolicy.KEEP_LAST_N,
    keep: Annotated[
        int,
        typer.Option("--keep", "-k", help="Versions kept with keep-last-n"),
    ] = 3,
    force: Annotated[
        bool,
        typer.Option("--force", "-f", help="Skip lifecycle consent checks"),
    ] = False,
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show what would happen without changing anything"),
    ] = False,
    skip_lifecycle: Annotated[
        bool,
        typer.Option("--skip-lifecycle", help="Do not run uninstall scripts"),
    ] = False,
    consent: ConsentOption = None,
    as_json: JsonOption = False,
    path: PathOption = None,
) -> None:
    """Uninstall plugins."""
    orchestrator = get_orchestrator(get_settings(path))
    failed = False
    for plugin_id in plugins:
        result = orchestrator.uninstall(
            UninstallRequest(
                plugin_id=plugin_id,
                cache_retention=retention,
                keep_last_n=keep,
                force=force,
                dry_run=dry_run,
                skip_lifecycle=skip_lifecycle,
                lifecycle_consent=list(consent or []),
            )
        )
        report_result(result, as_json)
        failed = failed or not result.success

    if failed:
        raise typer.Exit(1)


@app.command()
def pin(
    plugin: Annotated[str, typer.Argument(help="Plugin to pin")],
    path: PathOption = None,
) -> None:
    """Pin a plugin so its active version is never evicted."""
    cache, registry = get_services(get_settings(path))
    pins = PinService(registry, cache)
    result = pins.pin(plugin)
    if not result.success:
        print_error(str(result.error))
        raise typer.Exit(1)
    assert result.data is not None
    if result.data.was_no_op:
        console.print(f"{plugin}@{result.data.version} is already pinned")
    else:
        print_success(f"Pinned {plugin}@{result.data.version}")


@app.command()
def unpin(
    plugin: Annotated[str, typer.Argument(help="Plugin to unpin")],
    path: PathOption = None,
) -> None:
    """Unpin a plugin."""
    cache, registry = get_services(get_settings(path))
    pins = PinService(registry, cache)
    result = pins.unpin(plugin)
    if not result.success:
        print_error(str(result.error))
        raise typer.Exit(1)
    assert result.data is not None
    if result.data.was_no_op:
        console.print(f"{plugin} is not pinned")
    else:
        print_success(f"Unpinned {plugin}")


@app.command("list")
def list_plugins(
    pinned: Annotated[
        bool,
        typer.Option("--pinned", help="Only show pinned plugins"),
    ] = False,
    path: PathOption = None,
) -> None:
    """List installed plugins."""
    _, registry = get_services(get_settings(path))
    try:
        plugins = registry.query_plugins(pinned=True if pinned else None)
    except PlugctlError as e:
        print_error(e.message)
        raise typer.Exit(1) from e

    if not plugins:
        console.print("No plugins installed")
        return

    table = Table(title="Installed Plugins")
    table.add_column("Plugin", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("State")
    table.add_column("Pinned")
    table.add_column("Source", style="dim")
    for plugin in plugins:
        table.add_row(
            plugin.plugin_id,
            plugin.version,
            plugin.install_state.value,
            "yes" if plugin.pinned else "",
            plugin.source,
        )
    console.print(table)


@app.command()
def verify(
    plugins: Annotated[
        list[str] | None,
        typer.Argument(help="Plugins to verify (defaults to every installed plugin)"),
    ] = None,
    path: PathOption = None,
) -> None:
    """Check that registry, cache and symlinks agree."""
    orchestrator = get_orchestrator(get_settings(path))
    plugin_ids = plugins or [p.plugin_id for p in orchestrator.registry.list_plugins()]
    if not plugin_ids:
        console.print("No plugins installed")
        return

    failed = False
    for plugin_id in plugin_ids:
        report = orchestrator.verify(plugin_id)
        for warning in report.warnings:
            print_warning(f"{plugin_id}: {warning}")
        if report.valid:
            print_success(f"{plugin_id}@{report.version} is healthy")
        else:
            failed = True
            for error in report.errors:
                print_error(f"{plugin_id}: {error}")

    if failed:
        raise typer.Exit(1)


# =============================================================================
# cache commands
# =============================================================================


@cache_app.command("stats")
def cache_stats(path: PathOption = None) -> None:
    """Show cache usage."""
    cache, _ = get_services(get_settings(path))
    result = cache.get_stats()
    if not result.success:
        print_error(str(result.error))
        raise typer.Exit(1)
    stats = result.data
    assert stats is not None

    console.print(
        f"Cache: {stats.total_size_mb:.1f} MB of {stats.max_size_mb:g} MB "
        f"({stats.usage_percent:.0f}%)"
    )
    console.print(
        f"  {stats.entry_count} versions of {stats.plugin_count} plugins, "
        f"{stats.pinned_count} pinned"
    )
    if stats.over_limit:
        print_warning("Cache is over its size limit")
    elif stats.near_limit:
        print_warning("Cache is near its size limit")


@cache_app.command("list")
def cache_list(
    plugin: Annotated[str | None, typer.Argument(help="Only show this plugin")] = None,
    path: PathOption = None,
) -> None:
    """List cached versions."""
    cache, _ = get_services(get_settings(path))
    entries = cache.list_entries(plugin)
    if not entries:
        console.print("Cache is empty")
        return

    table = Table(title="Cached Versions")
    table.add_column("Plugin", style="cyan")
    table.add_column("Version", style="green")
    table.add_column("Size", justify="right")
    table.add_column("Last Access", style="dim")
    table.add_column("Flags")
    for entry in entries:
        flags = []
        if entry.is_current_version:
            flags.append("current")
        if entry.pinned:
            flags.append("pinned")
        table.add_row(
            entry.plugin_id,
            entry.version,
            f"{entry.size_bytes:,}",
            entry.last_access_time.isoformat(timespec="seconds"),
            ", ".join(flags),
        )
    console.print(table)


@cache_app.command("evict")
def cache_evict(
    max_size_mb: Annotated[
        float | None,
        typer.Option("--max-size-mb", help="Override the size limit for this run"),
    ] = None,
    path: PathOption = None,
) -> None:
    """Run cache eviction now."""
    cache, _ = get_services(get_settings(path))
    result = cache.evict_cache(max_size_mb)
    if not result.success:
        print_error(str(result.error))
        raise typer.Exit(1)
    eviction = result.data
    assert eviction is not None

    if not eviction.eviction_triggered:
        console.print("Cache is within its limits")
        return
    for entry in eviction.evicted_entries:
        console.print(f"  evicted {entry.plugin_id}@{entry.version} ({entry.size_bytes:,} bytes)")
    for entry in eviction.failed_entries:
        print_warning(f"Could not evict {entry.plugin_id}@{entry.version}")
    print_success(
        f"Evicted {eviction.entries_evicted} versions, freed {eviction.bytes_freed:,} bytes"
    )


@cache_app.command("rebuild")
def cache_rebuild(path: PathOption = None) -> None:
    """Rebuild the cache index from the directories on disk."""
    cache, _ = get_services(get_settings(path))
    result = cache.rebuild_index()
    if not result.success:
        print_error(str(result.error))
        raise typer.Exit(1)
    assert result.data is not None
    print_success(f"Rebuilt cache index with {len(result.data.iter_entries())} entries")


@cache_app.command("validate")
def cache_validate(
    evict: Annotated[
        bool,
        typer.Option("--evict", help="Remove corrupted entries that are not pinned or current"),
    ] = False,
    path: PathOption = None,
) -> None:
    """Verify cached artifacts against their checksums."""
    cache, _ = get_services(get_settings(path))
    result = cache.validate_integrity(evict_corrupted=evict)
    if not result.success:
        print_error(str(result.error))
        raise typer.Exit(1)
    corrupted = result.data or []
    if not corrupted:
        print_success("All cached versions are intact")
        return
    for entry in corrupted:
        print_error(f"Corrupted: {entry.plugin_id}@{entry.version}")
    raise typer.Exit(1)


@cache_app.command("cleanup-tmp")
def cache_cleanup_tmp(
    max_age_hours: Annotated[
        float | None,
        typer.Option("--max-age-hours", help="Minimum age of a staging directory"),
    ] = None,
    path: PathOption = None,
) -> None:
    """Remove staging directories left behind by interrupted transactions."""
    settings = get_settings(path)
    cache, _ = get_services(settings)
    hours = settings.orphan_max_age_hours if max_age_hours is None else max_age_hours
    result = cache.cleanup_orphaned_temp(hours * 3600)
    if not result.success:
        print_error(str(result.error))
        raise typer.Exit(1)
    assert result.data is not None
    print_success(
        f"Removed {result.data.entries_evicted} staging directories "
        f"({result.data.bytes_freed:,} bytes)"
    )


# =============================================================================
# registry commands
# =============================================================================


@registry_app.command("validate")
def registry_validate(path: PathOption = None) -> None:
    """Check the registry for schema, checksum and pin problems."""
    _, registry = get_services(get_settings(path))
    violations = registry.validate_registry()
    if not violations:
        print_success("Registry is valid")
        return
    for violation in violations:
        print_error(violation)
    raise typer.Exit(1)


@registry_app.command("backup")
def registry_backup(
    reason: Annotated[str, typer.Option("--reason", help="Why the backup is taken")] = "manual",
    path: PathOption = None,
) -> None:
    """Write a backup of the registry."""
    _, registry = get_services(get_settings(path))
    result = registry.create_backup(reason)
    if not result.success:
        print_error(str(result.error))
        raise typer.Exit(1)
    assert result.data is not None
    print_success(f"Registry backed up to {result.data.path}")


@registry_app.command("backups")
def registry_backups(path: PathOption = None) -> None:
    """List registry backups."""
    _, registry = get_services(get_settings(path))
    backups = registry.list_backups()
    if not backups:
        console.print("No backups")
        return
    for backup in backups:
        console.print(str(backup))


@registry_app.command("restore")
def registry_restore(
    backup: Annotated[Path, typer.Argument(help="Backup file to restore")],
    path: PathOption = None,
) -> None:
    """Restore the registry from a backup."""
    _, registry = get_services(get_settings(path))
    result = registry.restore_from_backup(backup.resolve())
    if not result.success:
        print_error(str(result.error))
        raise typer.Exit(1)
    assert result.data is not None
    print_success(f"Restored registry with {len(result.data.plugins)} plugins")


if __name__ == "__main__":
    app()
