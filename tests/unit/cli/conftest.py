"""Shared fixtures for CLI command tests."""

from __future__ import annotations

import logging
from collections.abc import Callable, Generator
from pathlib import Path
from typing import TYPE_CHECKING, Any

import pytest
from click.testing import CliRunner, Result

from shipyard.cli.main import main
from shipyard.lib.logging_config import ROOT_LOGGER_NAME

if TYPE_CHECKING:
    from conftest import FakeRuntime


@pytest.fixture
def cli_runner() -> CliRunner:
    """Provide a Click CLI test runner."""
    return CliRunner()


@pytest.fixture(autouse=True)
def reset_logging() -> Generator[None]:
    """Drop handlers bound to the runner's captured streams."""
    yield
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


@pytest.fixture
def invoke(
    cli_runner: CliRunner, deploy_root: Path, runtime: FakeRuntime
) -> Callable[..., Result]:
    """Run ``shipyard --deploy-root <tmp> ...`` against the fake runtime.

    Returns:
        Callable taking CLI arguments plus CliRunner keyword arguments.
    """

    def _invoke(*args: str, **kwargs: Any) -> Result:
        return cli_runner.invoke(
            main,
            ["--deploy-root", str(deploy_root), *args],
            obj={"runtime_factory": lambda: runtime},
            **kwargs,
        )

    return _invoke
