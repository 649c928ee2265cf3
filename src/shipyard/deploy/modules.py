"""Hot-attach and detach of optional modules.

A module is attached into the running deployment without touching the
units already running: its dependency chain is checked against the
containers observed right now, and it is started with
``docker compose up --no-recreate <module>`` over the base descriptor, the
descriptors of its running dependencies and its own.
"""

from __future__ import annotations

from dataclasses import dataclass

from shipyard.config.defaults import IMAGE_REGISTRY_KEY
from shipyard.config.env_file import EnvFile, load_deployment
from shipyard.config.settings import ShipyardSettings
from shipyard.deploy.credentials import CredentialProvisioner
from shipyard.deploy.health import HealthMonitor, HealthResult
from shipyard.deploy.lock import TransitionLock
from shipyard.deploy.registry import ServiceRegistry
from shipyard.deploy.runtime import ContainerRuntime
from shipyard.deploy.transition import validate_version
from shipyard.lib.errors import (
    ConfigError,
    DeploymentError,
    MissingDependencyError,
    NotInstalledError,
)
from shipyard.lib.logging_config import get_logger
from shipyard.models.deployment import (
    Credential,
    Deployment,
    HealthStatus,
    UnitKind,
)

logger = get_logger(__name__)


@dataclass
class AttachResult:
    """Outcome of attaching a module.

    Attributes:
        module: Module name
        container: Container name of the module
        image: Image reference the module runs
        started: False when the module was already running (no-op)
        dependencies: Dependency chain that was checked, in order
        credential: API key used by the module, if it needs one
        health: Health wait result, None when nothing was started
    """

    module: str
    container: str
    image: str | None = None
    started: bool = False
    dependencies: list[str] | None = None
    credential: Credential | None = None
    health: HealthResult | None = None

    @property
    def healthy(self) -> bool:
        return self.health is None or self.health.healthy


class ModuleAttacher:
    """Attaches and detaches optional units of the running deployment."""

    def __init__(
        self,
        settings: ShipyardSettings,
        runtime: ContainerRuntime,
        registry: ServiceRegistry | None = None,
        store: EnvFile | None = None,
        monitor: HealthMonitor | None = None,
        provisioner: CredentialProvisioner | None = None,
    ) -> None:
        self.settings = settings
        self.runtime = runtime
        self.registry = registry or ServiceRegistry.load(settings.catalog_file)
        self.store = store or EnvFile(settings.env_file)
        self.monitor = monitor or HealthMonitor(
            runtime, poll_interval=settings.poll_interval
        )
        self._provisioner = provisioner

    @property
    def provisioner(self) -> CredentialProvisioner:
        # Built on first use so it sees the secret written by install
        if self._provisioner is None:
            self._provisioner = CredentialProvisioner.from_settings(
                self.settings, self.store
            )
        return self._provisioner

    def _require_deployment(self) -> Deployment:
        deployment = load_deployment(self.settings, self.store)
        if deployment is None:
            raise NotInstalledError(self.store.path)
        return deployment

    def running_modules(self) -> list[str]:
        """Optional units observed running, in dependency order."""
        project = self._require_deployment().project_name
        return self.registry.running_units(project, self.runtime.running_containers())

    def check_dependencies(
        self,
        module: str,
        project_name: str,
        running: set[str],
        allow_unhealthy: bool = False,
    ) -> list[str]:
        """Verify every ancestor of ``module`` is running and healthy.

        Only read-only runtime queries are made.

        Returns:
            The dependency chain, in dependency order

        Raises:
            MissingDependencyError: If any ancestor is absent or unhealthy
        """
        chain = self.registry.dependency_chain(module)
        missing: list[str] = []
        for dep in chain:
            container = dep.container_name(project_name)
            if container not in running:
                missing.append(dep.name)
                continue
            if not dep.health_checkable or allow_unhealthy:
                continue
            status = self.runtime.health_status(container)
            if status != HealthStatus.HEALTHY:
                logger.warning(f"Dependency {dep.name} is {status.value}")
                missing.append(dep.name)
        if missing:
            raise MissingDependencyError(module, missing)
        return [dep.name for dep in chain]

    def attach(
        self,
        module: str,
        api_key: str | None = None,
        version: str | None = None,
        local_image: bool = False,
        recreate: bool = False,
        allow_unhealthy: bool = False,
    ) -> AttachResult:
        """Start an optional module inside the running deployment.

        Args:
            module: Module name from the catalog
            api_key: Explicit API key (wins over stored and provisioned keys)
            version: Image tag (defaults to the deployment version)
            local_image: Use a locally present image instead of pulling
            recreate: Restart the module if it is already running
            allow_unhealthy: Accept running but unhealthy dependencies

        Raises:
            ConfigError: Unknown module or not attachable
            NotInstalledError: Nothing is installed
            MissingDependencyError: A dependency is not running and healthy
            CredentialError: No API key could be obtained
            DeploymentError: Pull or compose failed
        """
        unit = self.registry.get(module)
        if unit.kind == UnitKind.MAIN:
            raise ConfigError(
                field="module", message=f"'{module}' is the main unit, not a module"
            )

        with TransitionLock(self.settings.lock_file):
            deployment = self._require_deployment()
            project = deployment.project_name
            running = self.runtime.running_containers()
            dependencies = self.check_dependencies(
                module, project, running, allow_unhealthy=allow_unhealthy
            )

            container = unit.container_name(project)
            result = AttachResult(
                module=module, container=container, dependencies=dependencies
            )
            if container in running and not recreate:
                logger.info(f"Module '{module}' is already running")
                return result

            running_deps = [
                name
                for name in dependencies
                if self.registry.get(name).kind != UnitKind.MAIN
            ]
            files = self.registry.compose_files(
                deployment.infrastructure_mode,
                [*running_deps, module],
                self.settings.compose_dir,
            )

            if unit.api_key_var:
                result.credential = self.provisioner.resolve_api_key(unit, api_key)

            image_registry = (
                self.store.get(IMAGE_REGISTRY_KEY) or self.settings.image_registry
            )
            result.image = self.registry.image_ref(
                unit,
                image_registry,
                validate_version(version) if version else deployment.current_version,
            )
            if local_image:
                if not self.runtime.image_exists(result.image):
                    raise DeploymentError(
                        operation="pull",
                        message=f"Local image not found: {result.image}",
                    )
                logger.info(f"Using local image {result.image}")
            else:
                self.runtime.pull_image(result.image)
            self.store.set(unit.image_var, result.image)

            if container in running:
                self.runtime.stop_container(container)
            self.runtime.compose_up(
                files, self.store.path, project, services=[module], no_recreate=True
            )
            result.started = True
            logger.info(f"Module '{module}' started")

            result.health = self.monitor.await_healthy(
                container,
                self.settings.attach_health_timeout,
                health_checkable=unit.health_checkable,
            )
            if not result.health.healthy:
                logger.warning(
                    f"Module '{module}' did not become healthy within "
                    f"{self.settings.attach_health_timeout:g}s. "
                    f"Check logs: docker logs {container}"
                )
            return result

    def detach(self, module: str, force: bool = False) -> bool:
        """Stop and remove a module's container.

        Returns:
            False when the module was not running

        Raises:
            DeploymentError: A running module still depends on it and
                ``force`` is not set
        """
        unit = self.registry.get(module)
        if unit.kind == UnitKind.MAIN:
            raise ConfigError(
                field="module", message=f"'{module}' is the main unit, not a module"
            )

        with TransitionLock(self.settings.lock_file):
            project = self._require_deployment().project_name
            running = self.runtime.running_containers()
            dependents = [
                dep.name
                for dep in self.registry.dependents(module)
                if dep.container_name(project) in running
            ]
            if dependents and not force:
                raise DeploymentError(
                    operation="detach",
                    message=(
                        f"Module '{module}' is required by running module(s): "
                        f"{', '.join(dependents)}. Detach them first or use --force."
                    ),
                )
            if dependents:
                logger.warning(
                    f"Detaching '{module}' while {', '.join(dependents)} depend on it"
                )
            stopped = self.runtime.stop_container(unit.container_name(project))
            if stopped:
                logger.info(f"Module '{module}' removed")
            else:
                logger.info(f"Module '{module}' was not running")
            return stopped
