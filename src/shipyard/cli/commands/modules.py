"""CLI commands for optional modules.

Implements 'shipyard attach-module' and 'shipyard detach-module'.
"""

from __future__ import annotations

import click

from shipyard.cli.common import (
    get_runtime,
    get_settings,
    handle_deployment_errors,
    make_confirm,
    non_interactive_option,
)
from shipyard.deploy.modules import AttachResult, ModuleAttacher
from shipyard.lib.logging_config import get_logger

logger = get_logger(__name__)


def _display_attach(result: AttachResult) -> None:
    click.echo()
    if not result.started:
        click.secho(f"Module '{result.module}' is already running", fg="yellow")
        click.echo("  Use --force to recreate it.")
        return

    if result.healthy:
        click.secho(
            f"Module '{result.module}' added successfully!", fg="green", bold=True
        )
    else:
        click.secho(
            f"Module '{result.module}' started but is not healthy yet", fg="yellow"
        )
    click.echo(f"  Container:  {result.container}")
    click.echo(f"  Image:      {result.image}")
    if result.credential is not None:
        click.echo(
            f"  API key:    {result.credential.env_var} "
            f"({result.credential.source.value})"
        )
    click.echo(f"  Logs:       docker logs {result.container}")


@click.command(name="attach-module")
@click.argument("module")
@click.option("--api-key", default=None, help="API key for the module")
@click.option("--version", "version", default=None, help="Image tag for the module")
@click.option(
    "--local-image",
    is_flag=True,
    help="Use a locally built image instead of pulling",
)
@click.option(
    "--allow-unhealthy",
    is_flag=True,
    help="Accept dependencies that are running but not healthy",
)
@click.option("--force", is_flag=True, help="Recreate the module if already running")
@non_interactive_option
@click.pass_context
def attach_module(
    ctx: click.Context,
    module: str,
    api_key: str | None,
    version: str | None,
    local_image: bool,
    allow_unhealthy: bool,
    force: bool,
    non_interactive: bool,
) -> None:
    """Add an optional MODULE to the running deployment.

    Without --api-key the key is taken from the env file, or provisioned
    from the portal with DEPLOYMENT_SECRET.

    Example:

        shipyard attach-module items

        shipyard attach-module bp --api-key <key>
    """
    with handle_deployment_errors():
        attacher = ModuleAttacher(get_settings(ctx), get_runtime(ctx))
        if force and not make_confirm(non_interactive)(
            f"Recreate module '{module}' if it is running?", True
        ):
            click.echo("Cancelled.")
            return
        result = attacher.attach(
            module,
            api_key=api_key,
            version=version,
            local_image=local_image,
            recreate=force,
            allow_unhealthy=allow_unhealthy,
        )
    _display_attach(result)


@click.command(name="detach-module")
@click.argument("module")
@click.option(
    "--force",
    is_flag=True,
    help="Detach even if running modules depend on it, without asking",
)
@non_interactive_option
@click.pass_context
def detach_module(
    ctx: click.Context, module: str, force: bool, non_interactive: bool
) -> None:
    """Stop and remove an optional MODULE.

    Example:

        shipyard detach-module prospects
    """
    with handle_deployment_errors():
        attacher = ModuleAttacher(get_settings(ctx), get_runtime(ctx))
        if not force and not make_confirm(non_interactive)(
            f"Stop and remove module '{module}'?", True
        ):
            click.echo("Cancelled.")
            return
        stopped = attacher.detach(module, force=force)

    click.echo()
    if stopped:
        click.secho(f"Module '{module}' removed", fg="green")
    else:
        click.secho(f"Module '{module}' was not running", fg="yellow")
