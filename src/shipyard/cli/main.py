"""Entry point for the ``shipyard`` command line."""

from __future__ import annotations

from pathlib import Path

import click

from shipyard import __version__
from shipyard.cli.commands.admin import admin_access
from shipyard.cli.commands.lifecycle import (
    install,
    rollback,
    snapshots,
    status,
    upgrade,
)
from shipyard.cli.commands.modules import attach_module, detach_module
from shipyard.cli.common import handle_deployment_errors
from shipyard.config.settings import load_settings
from shipyard.lib.logging_config import setup_logging

LOG_FILE_NAME = "shipyard.log"


@click.group(name="shipyard")
@click.option(
    "--deploy-root",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Directory holding portal.env and docker/ (default: current directory)",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose debug logging")
@click.option("--quiet", "-q", is_flag=True, help="Only show warnings and errors")
@click.version_option(__version__, prog_name="shipyard")
@click.pass_context
def main(
    ctx: click.Context, deploy_root: Path | None, verbose: bool, quiet: bool
) -> None:
    """Install, upgrade, roll back and extend the portal deployment.

    Example:

        shipyard install --version 1.0.0

        shipyard upgrade --version 1.1.0

        shipyard attach-module items
    """
    ctx.ensure_object(dict)
    with handle_deployment_errors():
        settings = load_settings(deploy_root)
    setup_logging(
        verbose=verbose, quiet=quiet, log_file=settings.log_dir / LOG_FILE_NAME
    )
    ctx.obj["settings"] = settings


main.add_command(install)
main.add_command(upgrade)
main.add_command(rollback)
main.add_command(attach_module)
main.add_command(detach_module)
main.add_command(status)
main.add_command(snapshots)
main.add_command(admin_access)


if __name__ == "__main__":
    main()
