"""CLI commands for temporary admin port access."""

from __future__ import annotations

import click

from shipyard.cli.common import (
    get_runtime,
    get_settings,
    handle_deployment_errors,
    make_confirm,
    non_interactive_option,
)
from shipyard.deploy.admin import ADMIN_PORTS, AdminAccess


@click.group(name="admin-access", invoke_without_command=True)
@click.pass_context
def admin_access(ctx: click.Context) -> None:
    """Expose database, cache, broker and API ports on 127.0.0.1.

    Subcommands:

        enable   Add localhost port bindings
        disable  Remove them
        status   Show whether they are enabled

    SECURITY: only enable when needed, disable when done. Reach the ports
    remotely through an SSH tunnel.
    """
    if ctx.invoked_subcommand is None:
        click.echo(ctx.get_help())


@admin_access.command()
@click.option("--force", is_flag=True, help="Do not ask for confirmation")
@non_interactive_option
@click.pass_context
def enable(ctx: click.Context, force: bool, non_interactive: bool) -> None:
    """Recompose the running units with the admin overlay."""
    with handle_deployment_errors():
        if not force and not make_confirm(non_interactive)(
            "Expose admin ports on 127.0.0.1?", True
        ):
            click.echo("Cancelled.")
            return
        AdminAccess(get_settings(ctx), get_runtime(ctx)).enable()

    click.secho("Admin access enabled!", fg="green", bold=True)
    click.echo()
    click.echo("Available ports (localhost only):")
    for port, name in ADMIN_PORTS:
        click.echo(f"  {name + ':':<15} 127.0.0.1:{port}")
    click.echo()
    click.secho(
        "Remember to disable when done: shipyard admin-access disable", fg="yellow"
    )


@admin_access.command()
@click.option("--force", is_flag=True, help="Do not ask for confirmation")
@non_interactive_option
@click.pass_context
def disable(ctx: click.Context, force: bool, non_interactive: bool) -> None:
    """Recompose the running units without the admin overlay."""
    with handle_deployment_errors():
        if not force and not make_confirm(non_interactive)(
            "Remove admin port bindings?", True
        ):
            click.echo("Cancelled.")
            return
        AdminAccess(get_settings(ctx), get_runtime(ctx)).disable()
    click.secho("Admin access disabled - ports no longer exposed", fg="green")


@admin_access.command(name="status")
@click.pass_context
def admin_status(ctx: click.Context) -> None:
    """Show whether admin access is enabled."""
    settings = get_settings(ctx)
    if settings.admin_flag_file.exists():
        click.secho("Admin access is ENABLED", fg="yellow", bold=True)
        for port, name in ADMIN_PORTS:
            click.echo(f"  127.0.0.1:{port} - {name}")
    else:
        click.echo("Admin access is DISABLED")
        click.echo("Run 'shipyard admin-access enable' to expose ports")
