"""Shared helpers for Shipyard CLI commands."""

from __future__ import annotations

import sys
from collections.abc import Callable, Generator
from contextlib import contextmanager
from typing import Any

import click

from shipyard.config.settings import ShipyardSettings
from shipyard.deploy.runtime import ContainerRuntime
from shipyard.deploy.transition import Confirm, accept_default
from shipyard.lib.errors import (
    ConfigError,
    CredentialError,
    CredentialUnavailableError,
    DeploymentError,
    ShipyardError,
    TransitionError,
)
from shipyard.lib.logging_config import get_logger

logger = get_logger(__name__)

# Exit code for a transition that failed and was rolled back
EXIT_ROLLED_BACK = 1


@contextmanager
def handle_deployment_errors() -> Generator[None, None, None]:
    """Context manager for consistent error handling in commands.

    Catches ConfigError, DeploymentError, CredentialError and unexpected
    exceptions with appropriate logging, user feedback, and exit codes.

    Exit codes:
        2: Configuration error
        3: Deployment/execution error
    """
    try:
        yield
    except (click.exceptions.Abort, click.exceptions.ClickException):
        raise
    except ConfigError as e:
        logger.error(f"Configuration error: {e}")
        click.secho("Error: Configuration error", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(2)
    except TransitionError as e:
        logger.error(f"Transition error: {e}")
        click.secho(f"Error: {e.operation} failed", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        click.echo()
        for line in e.recovery_hint().splitlines():
            click.echo(f"  {line}", err=True)
        if e.snapshot_path is not None:
            click.echo(
                f"  To restore it: shipyard rollback --snapshot {e.snapshot_path.name}",
                err=True,
            )
        sys.exit(3)
    except DeploymentError as e:
        logger.error(f"Deployment error: {e}")
        click.secho(f"Error: {e.operation} failed", fg="red", err=True)
        click.echo(f"  {e.message}", err=True)
        sys.exit(3)
    except CredentialError as e:
        logger.error(f"Credential error: {e}")
        lines = e.message.splitlines()
        if isinstance(e, CredentialUnavailableError):
            headline = f"API key unavailable for '{e.service_name}'"
        else:
            headline = lines.pop(0) if lines else type(e).__name__
        click.secho(f"Error: {headline}", fg="red", err=True)
        for line in lines:
            click.echo(f"  {line}", err=True)
        sys.exit(3)
    except ShipyardError as e:
        logger.error(f"Error: {e}")
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(3)
    except Exception as e:
        logger.exception(f"Unexpected error: {e}")
        click.secho(f"Error: {e}", fg="red", err=True)
        sys.exit(3)


def get_settings(ctx: click.Context) -> ShipyardSettings:
    settings: ShipyardSettings = ctx.obj["settings"]
    return settings


def get_runtime(ctx: click.Context) -> ContainerRuntime:
    """Build the container runtime (tests inject ``runtime_factory``)."""
    factory: Callable[[], Any] = ctx.obj.get("runtime_factory", ContainerRuntime)
    runtime: ContainerRuntime = factory()
    return runtime


def make_confirm(non_interactive: bool) -> Confirm:
    """Return the confirmation callback for a command."""
    if non_interactive:
        return accept_default

    def _confirm(message: str, default: bool) -> bool:
        return click.confirm(message, default=default)

    return _confirm


def non_interactive_option(func: Callable[..., Any]) -> Callable[..., Any]:
    return click.option(
        "--non-interactive",
        is_flag=True,
        help="Never prompt; take the default answer to every question",
    )(func)
