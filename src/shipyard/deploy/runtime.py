"""Container runtime boundary.

Wraps the Docker SDK for inspection, pulls, stops and image pruning, and
the ``docker compose`` CLI for bringing compositions up. Everything the
orchestrator does to containers goes through :class:`ContainerRuntime`, so
tests can substitute a recording fake.
"""

from __future__ import annotations

import subprocess  # nosec B404
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Any

import docker
from docker.errors import APIError, DockerException, ImageNotFound, NotFound

from shipyard.lib.errors import DeploymentError, DockerNotAvailableError
from shipyard.lib.logging_config import get_logger
from shipyard.models.deployment import HealthStatus

logger = get_logger(__name__)

_STOP_TIMEOUT = 30


def split_image_ref(ref: str) -> tuple[str, str]:
    """Split ``repo:tag`` into its parts (tag defaults to ``latest``).

    Example:
        >>> split_image_ref("ghcr.io/acme/portal:1.0.0")
        ('ghcr.io/acme/portal', '1.0.0')
    """
    repository, sep, tag = ref.rpartition(":")
    if not sep or "/" in tag:
        return ref, "latest"
    return repository, tag


class ContainerRuntime:
    """Docker-backed implementation of the runtime operations.

    Example:
        >>> runtime = ContainerRuntime()
        >>> "portal" in runtime.running_containers()
        True
    """

    def __init__(self, client: Any | None = None) -> None:
        """Connect to the Docker daemon.

        Args:
            client: Pre-built Docker client (defaults to ``docker.from_env()``)

        Raises:
            DockerNotAvailableError: If Docker daemon is not available
        """
        if client is not None:
            self.client = client
            return
        try:
            self.client = docker.from_env()  # type: ignore[attr-defined]
        except DockerException as e:
            raise DockerNotAvailableError(operation="init") from e

    def running_containers(self) -> set[str]:
        """Names of all running containers."""
        try:
            return {c.name for c in self.client.containers.list()}
        except DockerException as e:
            raise DeploymentError(
                operation="inspect", message=f"Cannot list containers: {e}"
            ) from e

    def health_status(self, name: str) -> HealthStatus:
        """Return the health signal of a container."""
        try:
            container = self.client.containers.get(name)
        except NotFound:
            return HealthStatus.NOT_FOUND
        except DockerException as e:
            raise DeploymentError(
                operation="inspect", message=f"Cannot inspect {name}: {e}"
            ) from e

        state = container.attrs.get("State", {})
        health = state.get("Health")
        if not health:
            if state.get("Status") in ("exited", "dead"):
                return HealthStatus.UNHEALTHY
            return HealthStatus.NONE
        try:
            return HealthStatus(health.get("Status", "none"))
        except ValueError:
            return HealthStatus.NONE

    def image_exists(self, ref: str) -> bool:
        try:
            self.client.images.get(ref)
        except ImageNotFound:
            return False
        except DockerException as e:
            raise DeploymentError(
                operation="inspect", message=f"Cannot inspect image {ref}: {e}"
            ) from e
        return True

    def pull_image(self, ref: str) -> None:
        """Pull an image.

        Raises:
            DeploymentError: If the pull fails
        """
        repository, tag = split_image_ref(ref)
        logger.info(f"Pulling image: {ref}")
        try:
            self.client.images.pull(repository, tag=tag)
        except DockerException as e:
            raise DeploymentError(
                operation="pull", message=f"Failed to pull image {ref}: {e}"
            ) from e

    def stop_container(self, name: str) -> bool:
        """Stop and remove a container.

        Returns:
            False when the container did not exist
        """
        try:
            container = self.client.containers.get(name)
        except NotFound:
            logger.debug(f"Container {name} already gone")
            return False
        try:
            container.stop(timeout=_STOP_TIMEOUT)
            container.remove()
        except NotFound:
            return False
        except DockerException as e:
            raise DeploymentError(
                operation="stop", message=f"Failed to stop {name}: {e}"
            ) from e
        logger.debug(f"Stopped and removed container {name}")
        return True

    def compose_up(
        self,
        files: Sequence[Path],
        env_file: Path,
        project: str,
        services: Iterable[str] = (),
        no_recreate: bool = False,
    ) -> None:
        """Run ``docker compose up -d`` over the given descriptors.

        Raises:
            DockerNotAvailableError: If the docker CLI is not installed
            DeploymentError: If compose exits non-zero
        """
        cmd = ["docker", "compose", "-p", project]
        for path in files:
            cmd.extend(["-f", str(path)])
        cmd.extend(["--env-file", str(env_file), "up", "-d"])
        if no_recreate:
            cmd.append("--no-recreate")
        cmd.extend(services)

        logger.info(f"Running: {' '.join(cmd)}")
        try:
            result = subprocess.run(  # noqa: S603  # nosec B603
                cmd, capture_output=True, text=True, check=False
            )
        except FileNotFoundError as e:
            raise DockerNotAvailableError(operation="compose") from e

        if result.returncode != 0:
            detail = (result.stderr or result.stdout or "").strip().splitlines()
            raise DeploymentError(
                operation="compose",
                message=(
                    f"docker compose exited with {result.returncode}: "
                    f"{detail[-1] if detail else 'no output'}"
                ),
            )

    def prune_images(
        self, repository: str, keep: int, protect: Iterable[str] = ()
    ) -> list[str]:
        """Remove all but the ``keep`` newest images of a repository.

        Images tagged with any reference in ``protect`` are never removed.
        Removal failures (for example an image still in use) are logged.

        Returns:
            Tags of removed images
        """
        protected = set(protect)
        try:
            listed = self.client.images.list(name=repository)
        except DockerException as e:
            raise DeploymentError(
                operation="cleanup", message=f"Cannot list images of {repository}: {e}"
            ) from e
        images = sorted(
            listed, key=lambda image: image.attrs.get("Created", ""), reverse=True
        )

        removed: list[str] = []
        for image in images[keep:]:
            tags = list(image.tags)
            if protected.intersection(tags):
                continue
            try:
                self.client.images.remove(image.id)
            except APIError as e:
                logger.warning(f"Could not remove image {tags or image.id}: {e}")
                continue
            removed.extend(tags or [image.id])
        if removed:
            logger.info(f"Removed {len(removed)} old image(s) of {repository}")
        return removed

    def dump_database(self, container: str, user: str, destination: Path) -> Path:
        """Write a ``pg_dumpall`` of the database container to ``destination``.

        Raises:
            DeploymentError: If the container is missing or the dump fails
        """
        try:
            exit_code, (stdout, stderr) = self.client.containers.get(
                container
            ).exec_run(["pg_dumpall", "-U", user], demux=True)
        except DockerException as e:
            raise DeploymentError(
                operation="backup", message=f"Cannot dump {container}: {e}"
            ) from e
        # stderr stays out of the dump file
        text = (stderr or b"").decode("utf-8", errors="replace").strip()
        if exit_code != 0:
            raise DeploymentError(
                operation="backup",
                message=f"pg_dumpall exited with {exit_code}: {text}",
            )
        if text:
            logger.warning(f"pg_dumpall reported: {text}")
        destination.write_bytes(stdout or b"")
        return destination

    def restore_database(self, container: str, user: str, dump: Path) -> None:
        """Replay a SQL dump into the database container through ``psql``.

        Raises:
            DeploymentError: If psql exits non-zero
        """
        cmd = ["docker", "exec", "-i", container, "psql", "-U", user, "-d", "postgres"]
        logger.info(f"Restoring database from {dump}")
        try:
            with dump.open("rb") as stdin:
                result = subprocess.run(  # noqa: S603  # nosec B603
                    cmd, stdin=stdin, capture_output=True, check=False
                )
        except FileNotFoundError as e:
            raise DockerNotAvailableError(operation="restore") from e

        if result.returncode != 0:
            stderr = result.stderr.decode("utf-8", errors="replace").strip()
            raise DeploymentError(
                operation="restore",
                message=f"psql exited with {result.returncode}: {stderr}",
            )
