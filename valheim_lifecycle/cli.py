"""Command line entry point: ``valheim-lifecycle``."""

from typing import Annotated, Optional

import httpx
import typer

from valheim_lifecycle.core.config import load_settings
from valheim_lifecycle.core.errors import ConfigError
from valheim_lifecycle.core.filesystem_utils import format_file_size
from valheim_lifecycle.main import build_orchestrator, build_runtime
from valheim_lifecycle.services.backup_archive import list_backup_records
from valheim_lifecycle.state import OUTCOME_DEFERRED, OUTCOME_OK, OUTCOME_SKIPPED

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG = 2
_SUCCESS_OUTCOMES = {OUTCOME_OK, OUTCOME_DEFERRED, OUTCOME_SKIPPED}

app = typer.Typer(help="Valheim dedicated server lifecycle orchestrator", no_args_is_help=True)


@app.callback()
def main_callback(
    ctx: typer.Context,
    env_file: Annotated[
        Optional[str],
        typer.Option("--env-file", help="KEY=VALUE file read after the process environment"),
    ] = None,
) -> None:
    ctx.obj = {"env_file": env_file}


def _safe_load_settings(ctx: typer.Context):
    """Load settings or exit with the configuration error code."""
    env_file = (ctx.obj or {}).get("env_file")
    try:
        return load_settings(config_path=env_file)
    except ConfigError as e:
        typer.echo(f"Configuration error: {e}", err=True)
        raise typer.Exit(code=EXIT_CONFIG) from None


def _exit_for(outcome: str) -> None:
    raise typer.Exit(code=EXIT_OK if outcome in _SUCCESS_OUTCOMES else EXIT_FAILURE)


@app.command()
def run(ctx: typer.Context) -> None:
    """Run the full lifecycle until a termination signal."""
    settings = _safe_load_settings(ctx)
    orchestrator = build_orchestrator(build_runtime(settings))
    orchestrator.install_signal_handlers()
    raise typer.Exit(code=orchestrator.run())


@app.command()
def backup(
    ctx: typer.Context,
    force: Annotated[bool, typer.Option("--force", "-f", help="Ignore BACKUPS_ENABLED and the idle gate")] = False,
) -> None:
    """Take one backup now and apply retention."""
    settings = _safe_load_settings(ctx)
    if not force and not settings.backups_enabled:
        typer.echo("Backups are disabled (BACKUPS_ENABLED=false); use --force to override.")
        _exit_for(OUTCOME_SKIPPED)
    runtime = build_runtime(settings)
    result = runtime.backup_manager.run_backup(force=force, only_if_idle=settings.backups_if_idle and not force)
    if result.record is not None:
        typer.echo(f"{result.outcome}: {result.record.path} ({format_file_size(result.record.size_bytes)})")
    else:
        typer.echo(f"{result.outcome}: {result.message}")
    for record in result.evicted:
        typer.echo(f"evicted: {record.path.name}")
    for error in result.retention_errors:
        typer.echo(f"retention error: {error}", err=True)
    _exit_for(result.outcome)


@app.command()
def update(
    ctx: typer.Context,
    force: Annotated[bool, typer.Option("--force", "-f", help="Ignore the idle gate")] = False,
) -> None:
    """Run SteamCMD once against the server directory."""
    settings = _safe_load_settings(ctx)
    runtime = build_runtime(settings)
    result = runtime.update_manager.run_update(
        force=force,
        only_if_idle=settings.update_if_idle and not force,
        timeout=settings.update_timeout,
    )
    status = "" if result.exit_status is None else f" (exit {result.exit_status})"
    typer.echo(f"{result.outcome}{status}: {result.message}" if result.message else f"{result.outcome}{status}")
    _exit_for(result.outcome)


@app.command()
def backups(ctx: typer.Context) -> None:
    """List backup archives, oldest first."""
    settings = _safe_load_settings(ctx)
    records = list_backup_records(settings.backups_directory)
    if not records:
        typer.echo(f"No backups in {settings.backups_directory}")
        return
    for record in records:
        created = record.created_at.astimezone(settings.display_tz).strftime("%Y-%m-%d %H:%M:%S %Z")
        typer.echo(f"{record.id:<20} {created:<24} {format_file_size(record.size_bytes):>10}  {record.path.name}")


@app.command()
def healthcheck(ctx: typer.Context) -> None:
    """Exit 0 when the control API reports the server as running."""
    settings = _safe_load_settings(ctx)
    url = f"http://{settings.control_api_host}:{settings.control_api_port}/health"
    try:
        response = httpx.get(url, timeout=5.0)
    except httpx.HTTPError as e:
        typer.echo(f"unhealthy: {e}", err=True)
        raise typer.Exit(code=EXIT_FAILURE) from None
    try:
        state = response.json().get("state", "unknown")
    except ValueError:
        state = "unknown"
    if response.status_code != 200:
        typer.echo(f"unhealthy: state={state}", err=True)
        raise typer.Exit(code=EXIT_FAILURE)
    typer.echo(f"healthy: state={state}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
