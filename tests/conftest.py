"""Pytest configuration and shared fixtures for Shipyard tests."""

from __future__ import annotations

import os
from collections.abc import Callable, Generator, Iterable, Sequence
from pathlib import Path
from typing import Any

import pytest

from shipyard.config.env_file import EnvFile
from shipyard.config.settings import ShipyardSettings, load_settings
from shipyard.deploy.health import HealthMonitor
from shipyard.lib.errors import DeploymentError
from shipyard.models.deployment import HealthStatus

COMPOSE_FILES = (
    "docker-compose.full.yml",
    "docker-compose.external.yml",
    "docker-compose.module-items.yml",
    "docker-compose.module-bp.yml",
    "docker-compose.module-prospects.yml",
    "docker-compose.report-generator-api.yml",
    "docker-compose.report-generator-service.yml",
    "docker-compose.admin.yml",
)

MUTATING_CALLS = frozenset(
    {
        "pull_image",
        "stop_container",
        "compose_up",
        "prune_images",
        "dump_database",
        "restore_database",
    }
)


class ManualClock:
    """Deterministic clock; ``sleep`` advances time instead of blocking."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeRuntime:
    """Recording stand-in for ContainerRuntime.

    ``compose_up`` starts the containers implied by the descriptor names
    (``docker-compose.module-items.yml`` -> ``<project>-items``), or only the
    named services when ``services`` is given.
    """

    def __init__(self) -> None:
        self.running: set[str] = set()
        self.health: dict[str, HealthStatus] = {}
        self.local_images: set[str] = set()
        self.calls: list[tuple[str, tuple[Any, ...], dict[str, Any]]] = []
        self.failures: dict[str, Exception] = {}
        self.failures_once: dict[str, Exception] = {}
        self.failing_pulls: set[str] = set()
        self.on_compose_up: list[Callable[..., None]] = []

    def _record(self, op: str, *args: Any, **kwargs: Any) -> None:
        self.calls.append((op, args, kwargs))
        if op in self.failures:
            raise self.failures[op]
        if op in self.failures_once:
            raise self.failures_once.pop(op)

    def calls_to(self, op: str) -> list[tuple[tuple[Any, ...], dict[str, Any]]]:
        return [(args, kwargs) for name, args, kwargs in self.calls if name == op]

    @property
    def mutating_calls(self) -> list[str]:
        return [name for name, _, _ in self.calls if name in MUTATING_CALLS]

    def running_containers(self) -> set[str]:
        self._record("running_containers")
        return set(self.running)

    def health_status(self, name: str) -> HealthStatus:
        self._record("health_status", name)
        if name not in self.running:
            return HealthStatus.NOT_FOUND
        return self.health.get(name, HealthStatus.HEALTHY)

    def image_exists(self, ref: str) -> bool:
        self._record("image_exists", ref)
        return ref in self.local_images

    def pull_image(self, ref: str) -> None:
        self._record("pull_image", ref)
        if ref in self.failing_pulls:
            raise DeploymentError(operation="pull", message=f"manifest unknown: {ref}")
        self.local_images.add(ref)

    def stop_container(self, name: str) -> bool:
        self._record("stop_container", name)
        existed = name in self.running
        self.running.discard(name)
        return existed

    def compose_up(
        self,
        files: Sequence[Path],
        env_file: Path,
        project: str,
        services: Iterable[str] = (),
        no_recreate: bool = False,
    ) -> None:
        services = list(services)
        self._record(
            "compose_up",
            [Path(f).name for f in files],
            project=project,
            services=services,
            no_recreate=no_recreate,
        )
        if services:
            self.running.update(f"{project}-{s}" for s in services)
        else:
            self.running.add(project)
            for path in files[1:]:
                unit = Path(path).name.removeprefix("docker-compose.")
                unit = unit.removesuffix(".yml").removeprefix("module-")
                if unit != "admin":
                    self.running.add(f"{project}-{unit}")
        for hook in self.on_compose_up:
            hook(self)

    def prune_images(
        self, repository: str, keep: int, protect: Iterable[str] = ()
    ) -> list[str]:
        self._record("prune_images", repository, keep=keep, protect=list(protect))
        return []

    def dump_database(self, container: str, user: str, destination: Path) -> Path:
        self._record("dump_database", container, user)
        destination.write_text("-- PostgreSQL database cluster dump\n")
        return destination

    def restore_database(self, container: str, user: str, dump: Path) -> None:
        self._record("restore_database", container, user, dump)


@pytest.fixture
def isolated_env() -> Generator[dict[str, str]]:
    """Provide isolated environment variables for testing.

    Yields:
        Dictionary of original environment variables

    Cleanup:
        Restores original environment after test
    """
    original_env = os.environ.copy()
    yield original_env
    os.environ.clear()
    os.environ.update(original_env)


@pytest.fixture
def deploy_root(tmp_path: Path) -> Path:
    """Deploy root with every composition descriptor present."""
    compose_dir = tmp_path / "docker"
    compose_dir.mkdir()
    for name in COMPOSE_FILES:
        (compose_dir / name).write_text("services: {}\n")
    return tmp_path


@pytest.fixture
def settings(deploy_root: Path) -> ShipyardSettings:
    return load_settings(deploy_root, env={})


@pytest.fixture
def store(settings: ShipyardSettings) -> EnvFile:
    return EnvFile(settings.env_file)


@pytest.fixture
def installed(store: EnvFile) -> EnvFile:
    """Env file of a deployment running version 1.0.0 in full mode."""
    store.update(
        {
            "VERSION": "1.0.0",
            "PROJECT_NAME": "portal",
            "INFRASTRUCTURE_MODE": "full",
            "IMAGE_REGISTRY": "ghcr.io/acme",
            "APPLICATION_URL": "https://portal.test",
            "DEPLOYMENT_SECRET": "s3cret",
        }
    )
    return store


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def monitor(runtime: FakeRuntime, clock: ManualClock) -> HealthMonitor:
    return HealthMonitor(runtime, poll_interval=5, clock=clock, sleep=clock.sleep)
