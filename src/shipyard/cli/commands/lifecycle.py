"""CLI commands for the deployment lifecycle.

Implements 'shipyard install', 'upgrade', 'rollback', 'status' and
'snapshots'.
"""

from __future__ import annotations

import sys

import click

from shipyard.cli.common import (
    EXIT_ROLLED_BACK,
    get_runtime,
    get_settings,
    handle_deployment_errors,
    make_confirm,
    non_interactive_option,
)
from shipyard.config.defaults import DEFAULT_VERSION
from shipyard.config.env_file import EnvFile, load_deployment
from shipyard.deploy.backup import BackupManager
from shipyard.deploy.registry import ServiceRegistry
from shipyard.deploy.transition import TransitionEngine, TransitionResult
from shipyard.lib.logging_config import get_logger
from shipyard.models.deployment import HealthStatus, InfrastructureMode

logger = get_logger(__name__)

_STATUS_COLORS = {
    HealthStatus.HEALTHY: "green",
    HealthStatus.STARTING: "yellow",
    HealthStatus.NONE: "cyan",
}


def _display_result(result: TransitionResult) -> None:
    """Print the outcome and exit 1 if the transition was rolled back."""
    click.echo()
    if result.noop:
        click.secho("Nothing to do.", fg="yellow")
        click.echo(f"  Version: {result.current_version}")
        return

    if result.rolled_back and result.operation != "rollback":
        report = result.rollback
        click.secho(
            f"{result.operation.capitalize()} failed and was rolled back", fg="red"
        )
        if result.error is not None:
            click.echo(f"  Cause:            {result.error.message}")
        click.echo(f"  Target version:   {result.target_version}")
        click.echo(f"  Current version:  {result.current_version}")
        if report is not None:
            click.echo(f"  Snapshot:         {report.snapshot.path}")
            click.echo(f"  Version source:   {report.version_source}")
            click.echo(f"  Data restored:    {'yes' if report.data_restored else 'no'}")
            if report.unhealthy:
                click.secho(
                    f"  Still unhealthy:  {', '.join(report.unhealthy)}", fg="yellow"
                )
        sys.exit(EXIT_ROLLED_BACK)

    if result.operation == "rollback":
        report = result.rollback
        click.secho("Rollback completed", fg="green", bold=True)
        click.echo(f"  Previous version: {result.source_version}")
        click.echo(f"  Current version:  {result.current_version}")
        if report is not None:
            click.echo(f"  Snapshot:         {report.snapshot.path}")
            click.echo(f"  Version source:   {report.version_source}")
            click.echo(f"  Data restored:    {'yes' if report.data_restored else 'no'}")
            if report.unhealthy:
                click.secho(
                    f"  Still unhealthy:  {', '.join(report.unhealthy)}", fg="yellow"
                )
        return

    click.secho(f"{result.operation.capitalize()} successful!", fg="green", bold=True)
    if result.source_version:
        click.echo(f"  Previous version: {result.source_version}")
    click.echo(f"  Current version:  {result.current_version}")
    if result.snapshot is not None:
        click.echo(f"  Snapshot:         {result.snapshot.path}")
    click.echo()
    click.echo("  To roll back:     shipyard rollback")


@click.command()
@click.option(
    "--version",
    "version",
    default=DEFAULT_VERSION,
    show_default=True,
    help="Version (image tag) to install",
)
@click.option(
    "--infrastructure",
    type=click.Choice([m.value for m in InfrastructureMode]),
    default=None,
    help="Run the bundled database/cache/broker (full) or use external ones",
)
@click.option("--force", is_flag=True, help="Reinstall over an existing deployment")
@non_interactive_option
@click.pass_context
def install(
    ctx: click.Context,
    version: str,
    infrastructure: str | None,
    force: bool,
    non_interactive: bool,
) -> None:
    """Install the deployment for the first time.

    Example:

        shipyard install --version 1.0.0

        shipyard install --infrastructure external
    """
    with handle_deployment_errors():
        settings = get_settings(ctx)
        engine = TransitionEngine(
            settings, get_runtime(ctx), confirm=make_confirm(non_interactive)
        )
        mode = InfrastructureMode(infrastructure) if infrastructure else None
        result = engine.install(version, infrastructure_mode=mode, force=force)
    _display_result(result)


@click.command()
@click.option(
    "--version",
    "version",
    default=DEFAULT_VERSION,
    show_default=True,
    help="Version (image tag) to upgrade to",
)
@click.option(
    "--skip-backup",
    is_flag=True,
    help="Do not take a snapshot (automatic rollback becomes impossible)",
)
@click.option(
    "--allow-no-backup",
    is_flag=True,
    help="Continue without asking if the snapshot fails",
)
@click.option("--force", is_flag=True, help="Re-apply even if already at VERSION")
@non_interactive_option
@click.pass_context
def upgrade(
    ctx: click.Context,
    version: str,
    skip_backup: bool,
    allow_no_backup: bool,
    force: bool,
    non_interactive: bool,
) -> None:
    """Upgrade the deployment with backup and automatic rollback.

    Example:

        shipyard upgrade --version 1.1.0

        shipyard upgrade --version 1.1.0 --non-interactive
    """
    with handle_deployment_errors():
        settings = get_settings(ctx)
        engine = TransitionEngine(
            settings, get_runtime(ctx), confirm=make_confirm(non_interactive)
        )
        result = engine.upgrade(
            version,
            force=force,
            skip_backup=skip_backup,
            allow_no_backup=allow_no_backup,
        )
    _display_result(result)


@click.command()
@click.option("--snapshot", "snapshot_id", default=None, help="Snapshot id to restore")
@click.option("--force", is_flag=True, help="Do not ask for confirmation")
@non_interactive_option
@click.pass_context
def rollback(
    ctx: click.Context,
    snapshot_id: str | None,
    force: bool,
    non_interactive: bool,
) -> None:
    """Restore the latest (or a named) snapshot.

    Example:

        shipyard rollback

        shipyard rollback --snapshot 01J9Z3...
    """
    with handle_deployment_errors():
        settings = get_settings(ctx)
        confirm = make_confirm(non_interactive)
        target = snapshot_id or "the latest snapshot"
        if not force and not confirm(f"Roll back to {target}?", True):
            click.echo("Rollback cancelled.")
            return
        engine = TransitionEngine(settings, get_runtime(ctx), confirm=confirm)
        result = engine.rollback(snapshot_id)
    _display_result(result)


@click.command()
@click.pass_context
def status(ctx: click.Context) -> None:
    """Show the installed version, mode and the health of every unit."""
    with handle_deployment_errors():
        settings = get_settings(ctx)
        store = EnvFile(settings.env_file)
        deployment = load_deployment(settings, store)
        if deployment is None:
            click.secho("Not installed", fg="yellow")
            click.echo(f"  Env file: {store.path}")
            return

        runtime = get_runtime(ctx)
        registry = ServiceRegistry.load(settings.catalog_file)
        running = runtime.running_containers()

        click.secho("Deployment:", bold=True)
        click.echo(f"  Project:        {deployment.project_name}")
        click.echo(f"  Version:        {deployment.current_version}")
        click.echo(f"  Infrastructure: {deployment.infrastructure_mode.value}")
        click.echo(
            f"  Admin access:   "
            f"{'enabled' if settings.admin_flag_file.exists() else 'disabled'}"
        )
        click.echo()
        click.secho("Units:", bold=True)
        for unit in registry:
            container = unit.container_name(deployment.project_name)
            if container not in running:
                click.echo(f"  {unit.name:<26} not running")
                continue
            health = runtime.health_status(container)
            click.secho(
                f"  {unit.name:<26} {health.value}",
                fg=_STATUS_COLORS.get(health, "red"),
            )


@click.command()
@click.pass_context
def snapshots(ctx: click.Context) -> None:
    """List snapshots, oldest first."""
    with handle_deployment_errors():
        settings = get_settings(ctx)
        store = EnvFile(settings.env_file)
        manager = BackupManager(settings, store, get_runtime(ctx))
        found = manager.list_snapshots()
        if not found:
            click.echo(f"No snapshots in {settings.backup_dir}")
            return
        for snap in found:
            versions = f"{snap.source_version or '?'} -> {snap.target_version or '?'}"
            dump = "db" if snap.data_dump else "--"
            note = "" if snap.has_metadata else "  (no metadata)"
            click.echo(
                f"{snap.id}  {snap.created_at:%Y-%m-%d %H:%M:%S}  {dump}  "
                f"{versions:<24} {snap.label}{note}"
            )
