"""Temporary localhost port bindings for administration.

Enabling recomposes the running set with the admin overlay descriptor,
which binds the database, cache, broker and API ports to 127.0.0.1.
Disabling recomposes without it. A flag file records the current state.
"""

from __future__ import annotations

import logging

from shipyard.config.env_file import EnvFile, load_deployment
from shipyard.config.settings import ShipyardSettings
from shipyard.deploy.lock import TransitionLock
from shipyard.deploy.registry import ADMIN_COMPOSE_FILE, ServiceRegistry
from shipyard.deploy.runtime import ContainerRuntime
from shipyard.lib.errors import InvalidStateError, NotInstalledError

logger = logging.getLogger(__name__)

# Ports exposed by the admin overlay (port, description)
ADMIN_PORTS: tuple[tuple[int, str], ...] = (
    (5432, "PostgreSQL"),
    (6379, "Redis"),
    (5672, "RabbitMQ AMQP"),
    (15672, "RabbitMQ UI"),
    (5127, "Report API"),
    (8080, "Portal API"),
)


class AdminAccess:
    """Toggle the admin overlay on the running deployment."""

    def __init__(
        self,
        settings: ShipyardSettings,
        runtime: ContainerRuntime,
        registry: ServiceRegistry | None = None,
        store: EnvFile | None = None,
    ) -> None:
        self.settings = settings
        self.runtime = runtime
        self.registry = registry or ServiceRegistry.load(settings.catalog_file)
        self.store = store or EnvFile(settings.env_file)

    @property
    def enabled(self) -> bool:
        return self.settings.admin_flag_file.exists()

    def _recompose(self, with_overlay: bool) -> None:
        deployment = load_deployment(self.settings, self.store)
        if deployment is None:
            raise NotInstalledError(self.store.path)

        project = deployment.project_name
        modules = self.registry.running_units(
            project, self.runtime.running_containers()
        )
        files = self.registry.compose_files(
            deployment.infrastructure_mode, modules, self.settings.compose_dir
        )
        if with_overlay:
            overlay = self.settings.compose_dir / ADMIN_COMPOSE_FILE
            if not overlay.is_file():
                raise InvalidStateError(f"Admin compose file not found: {overlay}")
            files.append(overlay)
        self.runtime.compose_up(files, self.store.path, project)

    def enable(self) -> None:
        with TransitionLock(self.settings.lock_file):
            self._recompose(with_overlay=True)
            self.settings.admin_flag_file.touch()
        logger.info("Admin access enabled")

    def disable(self) -> None:
        with TransitionLock(self.settings.lock_file):
            self._recompose(with_overlay=False)
            self.settings.admin_flag_file.unlink(missing_ok=True)
        logger.info("Admin access disabled")
