"""Command-line entry point for Dropfolio."""

from __future__ import annotations

import asyncio
import time
from pathlib import Path
from typing import Optional

import typer
import yaml
from rich.console import Console
from rich.table import Table

from .app_context import AppContext, determine_paths, load_context, resolve_config_dir
from .cache import snapshot_key
from .config import ConfigError, ConfigPaths, bootstrap
from .errors import DropfolioError
from .logging import configure_logging, get_logger
from .models import BucketSnapshot, timestamp_iso
from .store import build_store

app = typer.Typer(help="Dropfolio image API and cache tools.")
console = Console()

CONFIG_DIR_OPTION_HELP = "Base directory for config files (defaults to $DROPFOLIO_CONFIG_DIR or ~/.dropfolio)."


def _config_dir_option():
    return typer.Option(
        None,
        "--config-dir",
        dir_okay=True,
        file_okay=False,
        resolve_path=True,
        help=CONFIG_DIR_OPTION_HELP,
    )


def _determine_default_log_level(config_dir: Optional[Path]) -> str:
    paths = determine_paths(resolve_config_dir(config_dir))
    config_path = paths.global_config
    if not config_path.exists():
        return "INFO"

    try:
        with config_path.open("r", encoding="utf-8") as handle:
            payload = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError):
        return "INFO"

    runtime = payload.get("runtime", {}) if isinstance(payload, dict) else {}
    log_level = runtime.get("log_level") if isinstance(runtime, dict) else None
    if isinstance(log_level, str) and log_level.strip():
        return log_level.upper()
    return "INFO"


def _bootstrap_logging(
    ctx: typer.Context,
    verbose: bool,
    json_logs: bool,
    log_file: Optional[Path],
    config_dir: Optional[Path],
) -> None:
    """Initialise logging once per CLI invocation."""

    if ctx.obj is None:
        ctx.obj = {}

    if ctx.obj.get("_logging_configured"):
        return

    level = "DEBUG" if verbose else _determine_default_log_level(config_dir)
    configure_logging(level=level, json_output=json_logs, log_file=log_file)
    ctx.obj["logger"] = get_logger("dropfolio.cli")
    ctx.obj["log_level"] = level
    ctx.obj["json_logs"] = json_logs
    ctx.obj["log_file_path"] = log_file
    ctx.obj["force_log_level"] = verbose
    ctx.obj["_logging_configured"] = True


@app.callback(invoke_without_command=True)
def cli(  # noqa: D401 - Typer generates help text.
    ctx: typer.Context,
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit JSON-formatted logs."),
    log_file: Optional[Path] = typer.Option(
        None,
        "--log-file",
        dir_okay=False,
        file_okay=True,
        writable=True,
        resolve_path=True,
        help="Optional file to append structured logs to.",
    ),
) -> None:
    """Dropfolio command group."""

    _bootstrap_logging(ctx, verbose, json_logs, log_file, None)

    if ctx.invoked_subcommand is None:
        typer.echo(ctx.get_help())


def _logger(ctx: typer.Context):
    return ctx.obj.get("logger", get_logger("dropfolio.cli"))


def _maybe_update_log_level(ctx: typer.Context, config_dir: Optional[Path]) -> None:
    if ctx.obj.get("force_log_level"):
        return

    desired = _determine_default_log_level(config_dir)
    if desired != ctx.obj.get("log_level"):
        configure_logging(
            level=desired,
            json_output=ctx.obj.get("json_logs", False),
            log_file=ctx.obj.get("log_file_path"),
        )
        ctx.obj["logger"] = get_logger("dropfolio.cli")
        ctx.obj["log_level"] = desired


def _load(ctx: typer.Context, config_dir: Optional[Path], command: str) -> AppContext:
    log = _logger(ctx)
    _maybe_update_log_level(ctx, config_dir)
    try:
        return load_context(determine_paths(resolve_config_dir(config_dir)))
    except ConfigError as exc:
        log.error(f"{command}.failed", error=str(exc))
        typer.echo(f"Error loading configuration: {exc}")
        raise typer.Exit(code=1) from exc


@app.command()
def init(
    ctx: typer.Context,
    config_dir: Optional[Path] = typer.Option(
        None,
        "--config-dir",
        dir_okay=True,
        file_okay=False,
        writable=True,
        resolve_path=True,
        help=CONFIG_DIR_OPTION_HELP,
    ),
    force: bool = typer.Option(False, "--force", help="Overwrite existing config.yml"),
) -> None:
    """Write a starter configuration."""

    log = _logger(ctx)

    resolved = resolve_config_dir(config_dir)
    paths = ConfigPaths.from_base_dir(resolved) if resolved else ConfigPaths.default()
    try:
        report = bootstrap(paths, overwrite=force)
    except OSError as exc:
        log.error("init.failed", error=str(exc))
        raise typer.Exit(code=1) from exc

    typer.echo(f"Configuration directory: {paths.base_dir}")
    typer.echo(f"Snapshot directory: {paths.state_dir}")

    if report.global_config_created:
        if report.global_config_overwritten:
            typer.echo(f"Global config overwritten at: {paths.global_config}")
        else:
            typer.echo(f"Global config created at: {paths.global_config}")
            typer.echo("Set Dropbox credentials (or DROPBOX_* environment variables) before serving.")
    else:
        typer.echo(f"Global config already exists at: {paths.global_config}")
        typer.echo("Use --force to regenerate with default values.")

    log.info(
        "init.completed",
        base_dir=str(paths.base_dir),
        state_dir=str(paths.state_dir),
        global_config=str(paths.global_config),
        force=force,
        base_created=report.base_created,
        state_dir_created=report.state_dir_created,
        global_config_created=report.global_config_created,
        global_config_overwritten=report.global_config_overwritten,
    )


@app.command()
def serve(
    ctx: typer.Context,
    host: str = typer.Option("127.0.0.1", "--host", help="Interface to bind."),
    port: int = typer.Option(3001, "--port", help="Port to listen on."),
    config_dir: Optional[Path] = _config_dir_option(),
) -> None:
    """Run the HTTP API."""

    import uvicorn

    from .web.api import create_app

    log = _logger(ctx)
    context = _load(ctx, config_dir, "serve")
    if not context.config.dropbox.is_configured:
        log.warning("serve.credentials_missing", message="Dropbox credentials are not configured")

    log.info("serve.start", host=host, port=port, buckets=context.cache.names)
    uvicorn.run(create_app(context), host=host, port=port, log_config=None)


async def _warm(context: AppContext):
    try:
        return await context.cache.refresh()
    finally:
        await context.aclose()


@app.command()
def warm(
    ctx: typer.Context,
    config_dir: Optional[Path] = _config_dir_option(),
) -> None:
    """Refresh every bucket once and report the result."""

    log = _logger(ctx)
    context = _load(ctx, config_dir, "warm")

    try:
        results = asyncio.run(_warm(context))
    except DropfolioError as exc:
        log.error("warm.failed", error=exc.code, details=exc.message)
        typer.echo(f"Refresh failed: {exc.message}")
        raise typer.Exit(code=1) from exc

    table = Table(title="Bucket Refresh")
    table.add_column("Bucket", style="cyan", no_wrap=True)
    table.add_column("Folder")
    table.add_column("Images", justify="right")
    table.add_column("Status")
    for name, result in results.items():
        if result.ok:
            status = "[green]ok[/green]" if not result.errors else f"[yellow]partial ({result.errors})[/yellow]"
        else:
            status = "[yellow]kept previous[/yellow]" if result.kept_previous else "[red]failed[/red]"
        table.add_row(name, context.cache.bucket(name).folder, str(result.images), status)
    console.print(table)

    errors = context.cache.diagnostics.recent_errors(limit=10)
    if errors:
        error_table = Table(title="Scan Errors")
        error_table.add_column("Bucket", style="cyan")
        error_table.add_column("Type")
        error_table.add_column("Where")
        error_table.add_column("Message")
        for error in errors:
            where = error.get("folder") or error.get("path") or "-"
            error_table.add_row(error.get("bucket", "-"), error.get("type", "-"), where, error.get("message", ""))
        console.print(error_table)

    log.info("warm.completed", **{name: result.images for name, result in results.items()})


async def _pairs(context: AppContext, count: int):
    try:
        names = context.config.pair_buckets
        await context.cache.ensure_fresh(names)
        base, overlay = (context.cache.get(name) for name in names)
        return [
            context.engine.next_pair(base, overlay, context.source_generations())
            for _ in range(count)
        ]
    finally:
        await context.aclose()


@app.command()
def pairs(
    ctx: typer.Context,
    count: int = typer.Argument(5, min=1, help="Number of pairs to draw."),
    config_dir: Optional[Path] = _config_dir_option(),
) -> None:
    """Print the next COUNT overlay pairs."""

    log = _logger(ctx)
    context = _load(ctx, config_dir, "pairs")

    try:
        drawn = asyncio.run(_pairs(context, count))
    except DropfolioError as exc:
        log.error("pairs.failed", error=exc.code, details=exc.message)
        typer.echo(f"Could not draw pairs: {exc.message}")
        raise typer.Exit(code=1) from exc

    table = Table(title=f"Overlay Pairs ({context.engine.mode})")
    table.add_column("#", justify="right")
    table.add_column("Base", style="cyan")
    table.add_column("Overlay", style="magenta")
    for number, pair in enumerate(drawn, start=1):
        table.add_row(str(number), pair.base.path, pair.overlay.path)
    console.print(table)


async def _read_snapshots(context: AppContext):
    store = build_store(context.config.cache.store, context.config.runtime.storage_dir)
    snapshots = {}
    try:
        if store is None:
            return None
        for name in context.cache.names:
            payload = await store.get(snapshot_key(name))
            snapshots[name] = BucketSnapshot.from_dict(payload) if payload else None
        return snapshots
    finally:
        await context.aclose()


@app.command()
def status(
    ctx: typer.Context,
    config_dir: Optional[Path] = _config_dir_option(),
) -> None:
    """Show the durable bucket snapshots."""

    log = _logger(ctx)
    context = _load(ctx, config_dir, "status")

    snapshots = asyncio.run(_read_snapshots(context))
    if snapshots is None:
        typer.echo(f"Snapshot store is '{context.config.cache.store}'; nothing is persisted.")
        return

    now = time.time()
    table = Table(title="Bucket Snapshots")
    table.add_column("Bucket", style="cyan", no_wrap=True)
    table.add_column("Folder")
    table.add_column("Images", justify="right")
    table.add_column("Fetched")
    table.add_column("Age")
    for name, snapshot in snapshots.items():
        folder = context.cache.bucket(name).folder
        if snapshot is None:
            table.add_row(name, folder, "-", "-", "[yellow]missing[/yellow]")
            continue
        age_seconds = int(now - snapshot.fetched_at)
        age = f"{age_seconds // 60}m" if age_seconds < 3600 else f"{age_seconds // 3600}h{age_seconds % 3600 // 60}m"
        if age_seconds > context.config.cache.timeout_seconds:
            age = f"[red]{age}[/red]"
        table.add_row(name, folder, str(len(snapshot.images)), timestamp_iso(snapshot.fetched_at) or "-", age)
    console.print(table)
    log.info("status.completed", buckets=len(snapshots))


if __name__ == "__main__":  # pragma: no cover
    app()
