"""Version transitions: install, upgrade and rollback.

An upgrade walks a linear state machine::

    Validated -> BackedUp -> ImagesPulled -> Stopped -> Reconfigured
              -> Started -> Verified -> CleanedUp

Failures up to ``ImagesPulled`` abort before anything running has changed
and are raised directly. From ``Stopped`` on, a failure with a snapshot in
hand switches to the rollback path and the transition ends ``RolledBack``;
without a snapshot the failure is raised for manual recovery.
"""

from __future__ import annotations

import time
from collections.abc import Callable, Iterator, Sequence
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

from shipyard.config.defaults import (
    IMAGE_REGISTRY_KEY,
    INFRASTRUCTURE_MODE_KEY,
    PROJECT_NAME_KEY,
    VERSION_KEY,
)
from shipyard.config.env_file import EnvFile, create_default_config, load_deployment
from shipyard.config.settings import ShipyardSettings
from shipyard.deploy.backup import BackupManager
from shipyard.deploy.health import HealthMonitor
from shipyard.deploy.lock import TransitionLock
from shipyard.deploy.registry import ServiceRegistry
from shipyard.deploy.runtime import ContainerRuntime, split_image_ref
from shipyard.lib.errors import (
    BackupFailedError,
    ConfigError,
    DeploymentError,
    HealthTimeoutError,
    NotInstalledError,
    PullFailedError,
    RollbackFailedError,
    ShipyardError,
    StartFailedError,
    TransitionError,
)
from shipyard.lib.logging_config import get_logger
from shipyard.models.deployment import (
    VERSION_PATTERN,
    Deployment,
    InfrastructureMode,
    ServiceUnit,
    Snapshot,
    UnitKind,
)

logger = get_logger(__name__)

Confirm = Callable[[str, bool], bool]


def accept_default(message: str, default: bool) -> bool:
    """Non-interactive confirmation: always take the default answer."""
    logger.debug(f"Non-interactive: '{message}' -> {'yes' if default else 'no'}")
    return default


class TransitionState(str, Enum):
    """States of the version transition state machine."""

    VALIDATED = "validated"
    BACKED_UP = "backed_up"
    IMAGES_PULLED = "images_pulled"
    STOPPED = "stopped"
    RECONFIGURED = "reconfigured"
    STARTED = "started"
    VERIFIED = "verified"
    CLEANED_UP = "cleaned_up"
    ROLLED_BACK = "rolled_back"


@dataclass
class RollbackReport:
    """What the rollback path managed to do.

    A rollback is complete once configuration and composition are restored,
    even when some units never become healthy.

    Attributes:
        snapshot: Snapshot the rollback was taken from
        restored_version: Version written back to the configuration
        version_source: Where the version came from (metadata or fallback)
        data_restored: Whether a database dump was replayed
        unhealthy: Containers that did not become healthy afterwards
    """

    snapshot: Snapshot
    restored_version: str
    version_source: str
    data_restored: bool = False
    unhealthy: list[str] = field(default_factory=list)

    @property
    def healthy(self) -> bool:
        return not self.unhealthy


@dataclass
class TransitionResult:
    """Outcome of an install, upgrade or rollback.

    Attributes:
        operation: ``install``, ``upgrade`` or ``rollback``
        source_version: Version configured before the operation
        target_version: Version the operation moved to
        current_version: Version configured after the operation
        states: States reached, in order
        snapshot: Snapshot taken (or used) by the operation
        noop: True when the operation was declined and nothing ran
        failed_units: Containers that failed verification
        error: The failure that triggered a rollback
        rollback: Report of the rollback path, if it ran
    """

    operation: str
    source_version: str | None
    target_version: str
    current_version: str | None = None
    states: list[TransitionState] = field(default_factory=list)
    snapshot: Snapshot | None = None
    noop: bool = False
    failed_units: list[str] = field(default_factory=list)
    error: TransitionError | None = None
    rollback: RollbackReport | None = None

    @property
    def final_state(self) -> TransitionState | None:
        return self.states[-1] if self.states else None

    @property
    def rolled_back(self) -> bool:
        return self.final_state == TransitionState.ROLLED_BACK

    @property
    def succeeded(self) -> bool:
        return self.noop or self.final_state == TransitionState.CLEANED_UP

    def reach(self, state: TransitionState) -> None:
        self.states.append(state)
        logger.debug(f"{self.operation}: {state.value}")


def validate_version(version: str) -> str:
    """Check that a version is usable as an image tag.

    Raises:
        ConfigError: If it is not
    """
    version = (version or "").strip()
    if not VERSION_PATTERN.match(version):
        raise ConfigError(
            field="version",
            message=(
                f"Invalid version '{version}': must be a valid image tag "
                "(letters, digits, '_', '.' and '-', at most 128 characters)"
            ),
        )
    return version


class TransitionEngine:
    """Drives the deployment between versions.

    All collaborators are built from ``settings`` unless supplied, so tests
    can pass fakes for the runtime, the clock and the confirmation prompt.

    Example:
        >>> engine = TransitionEngine(settings, ContainerRuntime())
        >>> result = engine.upgrade("1.1.0")
        >>> result.final_state
        <TransitionState.CLEANED_UP: 'cleaned_up'>
    """

    def __init__(
        self,
        settings: ShipyardSettings,
        runtime: ContainerRuntime,
        registry: ServiceRegistry | None = None,
        store: EnvFile | None = None,
        backups: BackupManager | None = None,
        monitor: HealthMonitor | None = None,
        confirm: Confirm = accept_default,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.runtime = runtime
        self.registry = registry or ServiceRegistry.load(settings.catalog_file)
        self.store = store or EnvFile(settings.env_file)
        self.backups = backups or BackupManager(settings, self.store, runtime)
        self.monitor = monitor or HealthMonitor(
            runtime, poll_interval=settings.poll_interval, sleep=sleep
        )
        self.confirm = confirm
        self._sleep = sleep

    @contextmanager
    def _locked(self) -> Iterator[None]:
        with TransitionLock(self.settings.lock_file):
            yield

    # ------------------------------------------------------------------
    # Shared steps
    # ------------------------------------------------------------------

    def _require_deployment(self) -> Deployment:
        deployment = load_deployment(self.settings, self.store)
        if deployment is None:
            raise NotInstalledError(self.store.path)
        return deployment

    def _image_registry(self) -> str:
        return self.store.get(IMAGE_REGISTRY_KEY) or self.settings.image_registry

    def _units(self, modules: Sequence[str]) -> list[ServiceUnit]:
        return [self.registry.main_unit] + [self.registry.get(m) for m in modules]

    def _observe_modules(self, project_name: str) -> list[str]:
        return self.registry.running_units(
            project_name, self.runtime.running_containers()
        )

    def _pull_images(self, units: Sequence[ServiceUnit], version: str) -> None:
        registry = self._image_registry()
        for unit in units:
            if unit.image:
                self.runtime.pull_image(
                    self.registry.image_ref(unit, registry, version)
                )

    def _stop_application_tier(self, project_name: str) -> None:
        """Stop and remove every catalog unit; infrastructure is left running."""
        for name in reversed(self.registry.ordered(u.name for u in self.registry)):
            container = self.registry.get(name).container_name(project_name)
            try:
                self.runtime.stop_container(container)
            except DeploymentError as exc:
                logger.warning(f"Could not stop {container}: {exc.message}")

    def _reconfigure(self, units: Sequence[ServiceUnit], version: str) -> None:
        registry = self._image_registry()
        values = {VERSION_KEY: version}
        for unit in units:
            if unit.image:
                values[unit.image_var] = self.registry.image_ref(
                    unit, registry, version
                )
        self.store.update(values)
        logger.info(f"Configured version {version}")

    def _compose_up(
        self,
        mode: InfrastructureMode,
        project_name: str,
        modules: Sequence[str],
    ) -> None:
        files = self.registry.compose_files(mode, modules, self.settings.compose_dir)
        self.runtime.compose_up(files, self.store.path, project_name)

    def _verify(
        self,
        project_name: str,
        units: Sequence[ServiceUnit],
        main_timeout: float,
        module_timeout: float,
    ) -> list[str]:
        """Wait for every unit; return the containers that stayed unhealthy.

        A container whose health cannot be inspected counts as unhealthy.
        """
        failed: list[str] = []
        for unit in units:
            timeout = main_timeout if unit.kind == UnitKind.MAIN else module_timeout
            container = unit.container_name(project_name)
            try:
                result = self.monitor.await_healthy(
                    container, timeout, health_checkable=unit.health_checkable
                )
            except DeploymentError as exc:
                logger.warning(f"Health of {container} could not be checked: {exc}")
                failed.append(container)
                continue
            if not result.healthy:
                failed.append(container)
        return failed

    def _cleanup(self, units: Sequence[ServiceUnit], version: str) -> None:
        """Prune superseded images and snapshots; failures are only logged."""
        registry = self._image_registry()
        for unit in units:
            if not unit.image:
                continue
            ref = self.registry.image_ref(unit, registry, version)
            repository, _ = split_image_ref(ref)
            try:
                self.runtime.prune_images(
                    repository, keep=self.settings.image_keep, protect=[ref]
                )
            except ShipyardError as exc:
                logger.warning(f"Image cleanup failed for {repository}: {exc}")
        try:
            self.backups.prune_snapshots(keep=self.settings.snapshot_keep)
        except OSError as exc:
            logger.warning(f"Snapshot cleanup failed: {exc}")

    # ------------------------------------------------------------------
    # Rollback path
    # ------------------------------------------------------------------

    def _roll_back(
        self,
        snapshot: Snapshot,
        fallback_version: str,
        modules: Sequence[str],
        target_version: str | None = None,
    ) -> RollbackReport:
        """Restore the deployment from a snapshot.

        Raises:
            RollbackFailedError: If configuration, composition or data
                cannot be restored
        """
        if snapshot.rollback_version:
            version, source = snapshot.rollback_version, "snapshot metadata"
        elif snapshot.source_version:
            version, source = snapshot.source_version, "snapshot metadata"
        else:
            version, source = fallback_version, "pre-transition version"
        logger.warning(f"Rolling back to version {version} (from {source})")

        context = {
            "current_version": fallback_version,
            "target_version": target_version or version,
            "snapshot_path": snapshot.path,
        }
        units = self._units(modules)
        try:
            if snapshot.config_copy is not None:
                self.backups.restore_configuration(snapshot)
            else:
                logger.warning(f"Snapshot {snapshot.path} has no configuration copy")
            self._reconfigure(units, version)
            deployment = self._require_deployment()
            self._stop_application_tier(deployment.project_name)
            self._compose_up(
                deployment.infrastructure_mode, deployment.project_name, modules
            )
        except ShipyardError as exc:
            raise RollbackFailedError(
                f"Could not restore version {version}: {exc}", **context
            ) from exc

        report = RollbackReport(
            snapshot=snapshot, restored_version=version, version_source=source
        )

        if snapshot.data_dump is not None:
            logger.info(
                f"Waiting {self.settings.restore_settle_delay:g}s for the database"
            )
            self._sleep(self.settings.restore_settle_delay)
            try:
                report.data_restored = self.backups.restore_data(snapshot)
            except ShipyardError as exc:
                raise RollbackFailedError(
                    f"Version {version} restored but the database dump could not "
                    f"be replayed: {exc}",
                    **context,
                ) from exc

        report.unhealthy = self._verify(
            deployment.project_name,
            units,
            main_timeout=self.settings.rollback_health_timeout,
            module_timeout=self.settings.module_health_timeout,
        )
        if report.unhealthy:
            logger.warning(
                "Rollback completed but not all units are healthy: "
                + ", ".join(report.unhealthy)
            )
        else:
            logger.info(f"Rollback to {version} completed")
        return report

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def upgrade(
        self,
        target_version: str,
        force: bool = False,
        skip_backup: bool = False,
        allow_no_backup: bool = False,
    ) -> TransitionResult:
        """Move the installed deployment to ``target_version``.

        Args:
            target_version: Version to upgrade to
            force: Skip the confirmation when the version is unchanged
            skip_backup: Do not take a snapshot (rollback becomes impossible)
            allow_no_backup: Continue without confirmation if the snapshot fails

        Returns:
            Result ending ``CleanedUp``, ``RolledBack``, or a no-op

        Raises:
            NotInstalledError: Nothing is installed
            TransitionInProgressError: Another transition holds the lock
            BackupFailedError: The snapshot failed and no override was given
            PullFailedError: An image could not be pulled
            TransitionError: A failure after ``Stopped`` with no snapshot
            RollbackFailedError: The rollback path itself failed
        """
        with self._locked():
            return self._upgrade(target_version, force, skip_backup, allow_no_backup)

    def _upgrade(
        self,
        target_version: str,
        force: bool,
        skip_backup: bool,
        allow_no_backup: bool,
    ) -> TransitionResult:
        deployment = self._require_deployment()
        current = deployment.current_version
        target = validate_version(target_version)
        result = TransitionResult(
            operation="upgrade",
            source_version=current,
            target_version=target,
            current_version=current,
        )

        if target == current and not force:
            if not self.confirm(
                f"Version {current} is already installed. Re-apply it?", False
            ):
                logger.info(f"Already at version {current}; nothing to do")
                result.noop = True
                return result

        project = deployment.project_name
        mode = deployment.infrastructure_mode
        modules = self._observe_modules(project)
        units = self._units(modules)
        self.registry.compose_files(mode, modules, self.settings.compose_dir)
        logger.info(
            f"Upgrading {current} -> {target} "
            f"(modules: {', '.join(modules) or 'none'})"
        )
        result.reach(TransitionState.VALIDATED)

        snapshot: Snapshot | None = None
        if skip_backup:
            logger.warning(
                "Skipping backup: automatic rollback will not be possible if "
                "the upgrade fails"
            )
            if not (force or allow_no_backup) and not self.confirm(
                "Continue without backup?", False
            ):
                result.noop = True
                return result
        else:
            try:
                snapshot = self.backups.create_snapshot(
                    f"pre-upgrade-to-{target}", current, target
                )
            except BackupFailedError as exc:
                logger.error(exc.message)
                if not allow_no_backup and not self.confirm(
                    "Backup failed. Continue without backup?", False
                ):
                    raise
        result.snapshot = snapshot
        result.reach(TransitionState.BACKED_UP)

        context = {
            "current_version": current,
            "target_version": target,
            "snapshot_path": snapshot.path if snapshot else None,
        }
        try:
            self._pull_images(units, target)
        except DeploymentError as exc:
            raise PullFailedError(
                f"Failed to pull images for version {target}: {exc.message}",
                **context,
            ) from exc
        result.reach(TransitionState.IMAGES_PULLED)

        try:
            self._stop_application_tier(project)
            result.reach(TransitionState.STOPPED)

            self._reconfigure(units, target)
            result.reach(TransitionState.RECONFIGURED)

            try:
                self._compose_up(mode, project, modules)
            except DeploymentError as exc:
                raise StartFailedError(
                    f"Failed to start version {target}: {exc.message}", **context
                ) from exc
            result.reach(TransitionState.STARTED)

            failed = self._verify(
                project,
                units,
                main_timeout=self.settings.main_health_timeout,
                module_timeout=self.settings.module_health_timeout,
            )
            if failed:
                result.failed_units = failed
                raise HealthTimeoutError(failed, **context)
            result.reach(TransitionState.VERIFIED)
        except ShipyardError as exc:
            error = (
                exc
                if isinstance(exc, TransitionError)
                else StartFailedError(str(exc), **context)
            )
            if snapshot is None:
                logger.error(f"{error.message}; no snapshot available for rollback")
                if error is exc:
                    raise
                raise error from exc
            logger.error(f"{error.message}; attempting automatic rollback")
            result.error = error
            result.rollback = self._roll_back(
                snapshot,
                fallback_version=current,
                modules=modules,
                target_version=target,
            )
            result.current_version = result.rollback.restored_version
            result.reach(TransitionState.ROLLED_BACK)
            return result

        self._cleanup(units, target)
        result.current_version = target
        result.reach(TransitionState.CLEANED_UP)
        logger.info(f"Upgrade to {target} complete")
        return result

    def install(
        self,
        version: str,
        infrastructure_mode: InfrastructureMode | None = None,
        force: bool = False,
    ) -> TransitionResult:
        """Install the deployment for the first time.

        Writes default configuration (including a fresh deployment secret),
        pulls the main image, starts the base composition and waits for the
        main unit. No snapshot is taken.

        Raises:
            DeploymentError: Already installed and ``force`` not set
            PullFailedError, StartFailedError, HealthTimeoutError: On failure
        """
        with self._locked():
            return self._install(version, infrastructure_mode, force)

    def _install(
        self,
        version: str,
        infrastructure_mode: InfrastructureMode | None,
        force: bool,
    ) -> TransitionResult:
        existing = load_deployment(self.settings, self.store)
        if existing is not None and not force:
            raise DeploymentError(
                operation="install",
                message=(
                    f"Version {existing.current_version} is already installed in "
                    f"{self.settings.deploy_root}. Use `shipyard upgrade`, or "
                    "--force to reinstall."
                ),
            )
        target = validate_version(version)
        previous = existing.current_version if existing else None
        result = TransitionResult(
            operation="install", source_version=previous, target_version=target
        )

        mode = infrastructure_mode or (
            existing.infrastructure_mode if existing else InfrastructureMode.FULL
        )
        create_default_config(self.store, self.settings, mode)
        if infrastructure_mode is not None:
            self.store.set(INFRASTRUCTURE_MODE_KEY, infrastructure_mode.value)
        project = self.store.get(PROJECT_NAME_KEY) or self.settings.project_name
        self.registry.compose_files(mode, [], self.settings.compose_dir)
        result.reach(TransitionState.VALIDATED)

        main = self.registry.main_unit
        context = {"current_version": previous, "target_version": target}
        try:
            self._pull_images([main], target)
        except DeploymentError as exc:
            raise PullFailedError(
                f"Failed to pull images for version {target}: {exc.message}",
                **context,
            ) from exc
        result.reach(TransitionState.IMAGES_PULLED)

        self._reconfigure([main], target)
        result.reach(TransitionState.RECONFIGURED)

        try:
            self._compose_up(mode, project, [])
        except DeploymentError as exc:
            raise StartFailedError(
                f"Failed to start version {target}: {exc.message}", **context
            ) from exc
        result.reach(TransitionState.STARTED)

        failed = self._verify(
            project,
            [main],
            main_timeout=self.settings.main_health_timeout,
            module_timeout=self.settings.module_health_timeout,
        )
        if failed:
            raise HealthTimeoutError(failed, **context)
        result.reach(TransitionState.VERIFIED)

        self._cleanup([main], target)
        result.current_version = target
        result.reach(TransitionState.CLEANED_UP)
        logger.info(f"Installed version {target}")
        return result

    def rollback(self, snapshot_id: str | None = None) -> TransitionResult:
        """Restore the latest (or a named) snapshot.

        Raises:
            NotInstalledError: Nothing is installed
            RollbackFailedError: No snapshot exists or restoring failed
        """
        with self._locked():
            deployment = self._require_deployment()
            current = deployment.current_version
            snapshot = (
                self.backups.get(snapshot_id) if snapshot_id else self.backups.latest()
            )
            if snapshot is None:
                raise RollbackFailedError(
                    f"No snapshots available in {self.backups.backup_dir}",
                    current_version=current,
                )

            modules = self._observe_modules(deployment.project_name)
            self.registry.compose_files(
                deployment.infrastructure_mode, modules, self.settings.compose_dir
            )
            report = self._roll_back(
                snapshot, fallback_version=current, modules=modules
            )
            result = TransitionResult(
                operation="rollback",
                source_version=current,
                target_version=report.restored_version,
                current_version=report.restored_version,
                snapshot=snapshot,
                rollback=report,
            )
            result.reach(TransitionState.ROLLED_BACK)
            return result
