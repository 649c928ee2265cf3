"""Snapshot creation, restore and retention.

A snapshot is a directory under the backup dir holding:

- ``database.sql``: ``pg_dumpall`` output (self-contained mode only)
- a verbatim copy of the env file
- ``rollback.json``: the :class:`SnapshotMetadata` record

Snapshot directories are named ``<ulid>_<label>`` so they sort by creation
time and stay readable when their metadata is lost.
"""

from __future__ import annotations

import re
import shutil
from datetime import datetime, timezone
from pathlib import Path

from pydantic import ValidationError
from ulid import ULID

from shipyard.config.defaults import (
    DATABASE_SERVICE,
    DEFAULT_DATABASE_USER,
    POSTGRES_USER_KEY,
    PROJECT_NAME_KEY,
)
from shipyard.config.env_file import EnvFile, resolve_infrastructure_mode
from shipyard.config.settings import ShipyardSettings
from shipyard.deploy.runtime import ContainerRuntime
from shipyard.lib.errors import (
    BackupFailedError,
    ConfigError,
    DeploymentError,
    ShipyardError,
)
from shipyard.lib.logging_config import get_logger
from shipyard.models.deployment import InfrastructureMode, Snapshot, SnapshotMetadata

logger = get_logger(__name__)

DUMP_FILE = "database.sql"
METADATA_FILE = "rollback.json"

_LABEL_CHARS = re.compile(r"[^A-Za-z0-9_.-]+")


def _slug(label: str) -> str:
    return _LABEL_CHARS.sub("-", label).strip("-") or "snapshot"


def read_metadata(path: Path) -> SnapshotMetadata | None:
    """Read a snapshot's ``rollback.json``.

    Missing or unreadable metadata is reported as None so callers fall back
    to the pre-transition version.
    """
    metadata_file = path / METADATA_FILE
    if not metadata_file.is_file():
        return None
    try:
        return SnapshotMetadata.model_validate_json(
            metadata_file.read_text(encoding="utf-8")
        )
    except (OSError, ValidationError) as exc:
        logger.warning(f"Ignoring unreadable snapshot metadata {metadata_file}: {exc}")
        return None


class BackupManager:
    """Creates and restores snapshots of the deployment."""

    def __init__(
        self,
        settings: ShipyardSettings,
        store: EnvFile,
        runtime: ContainerRuntime,
    ) -> None:
        self.settings = settings
        self.store = store
        self.runtime = runtime
        self.backup_dir = settings.backup_dir

    def _database_target(self, values: dict[str, str]) -> tuple[str, str]:
        project = values.get(PROJECT_NAME_KEY) or self.settings.project_name
        user = values.get(POSTGRES_USER_KEY) or DEFAULT_DATABASE_USER
        return f"{project}-{DATABASE_SERVICE}", user

    def _new_id(self) -> ULID:
        # Ids taken within the same millisecond must still sort by creation
        snapshot_id = ULID()
        if not self.backup_dir.is_dir():
            return snapshot_id
        newest = max(
            (p.name.partition("_")[0] for p in self.backup_dir.iterdir()),
            default="",
        )
        if str(snapshot_id) <= newest:
            try:
                return ULID.from_int(int(ULID.from_str(newest)) + 1)
            except ValueError:
                return snapshot_id
        return snapshot_id

    def create_snapshot(
        self,
        label: str,
        source_version: str | None = None,
        target_version: str | None = None,
    ) -> Snapshot:
        """Capture the database, the env file and version metadata.

        Safe to call while the deployment is running. On any failure the
        partial snapshot directory is removed.

        Raises:
            BackupFailedError: If any part of the snapshot cannot be written
        """
        snapshot_id = self._new_id()
        created_at = snapshot_id.datetime
        path = self.backup_dir / f"{snapshot_id}_{_slug(label)}"
        logger.info(f"Creating snapshot {path.name}")

        try:
            path.mkdir(parents=True)
            values = self.store.read()
            project = values.get(PROJECT_NAME_KEY) or self.settings.project_name
            mode = resolve_infrastructure_mode(values, project)

            data_dump: Path | None = None
            if mode == InfrastructureMode.FULL:
                container, user = self._database_target(values)
                data_dump = self.runtime.dump_database(
                    container, user, path / DUMP_FILE
                )
            else:
                logger.warning(
                    "External infrastructure: the database is not included in "
                    "the snapshot. Back it up with your provider's tooling."
                )

            config_copy: Path | None = None
            if self.store.exists():
                config_copy = self.store.copy_to(path / self.store.path.name)

            metadata = SnapshotMetadata(
                snapshot_id=str(snapshot_id),
                label=label,
                source_version=source_version,
                target_version=target_version,
                rollback_version=source_version,
                created_at=created_at,
                project_name=project,
                infrastructure_mode=mode,
                has_data_dump=data_dump is not None,
            )
            (path / METADATA_FILE).write_text(
                metadata.model_dump_json(by_alias=True, indent=2), encoding="utf-8"
            )
        except (ShipyardError, OSError) as exc:
            shutil.rmtree(path, ignore_errors=True)
            raise BackupFailedError(
                f"Snapshot '{label}' could not be created: {exc}",
                current_version=source_version,
                target_version=target_version,
            ) from exc

        return Snapshot(
            id=str(snapshot_id),
            path=path,
            label=label,
            created_at=created_at,
            source_version=source_version,
            target_version=target_version,
            rollback_version=source_version,
            data_dump=data_dump,
            config_copy=config_copy,
        )

    def _load(self, path: Path) -> Snapshot:
        metadata = read_metadata(path)
        prefix, _, suffix = path.name.partition("_")

        if metadata is not None:
            snapshot_id = metadata.snapshot_id
            label = metadata.label
            created_at = metadata.created_at
        else:
            snapshot_id = prefix
            label = suffix or path.name
            try:
                created_at = ULID.from_str(prefix).datetime
            except ValueError:
                created_at = datetime.fromtimestamp(
                    path.stat().st_mtime, tz=timezone.utc
                )

        dump = path / DUMP_FILE
        config_copy = path / self.settings.env_file_name
        return Snapshot(
            id=snapshot_id,
            path=path,
            label=label,
            created_at=created_at,
            source_version=metadata.source_version if metadata else None,
            target_version=metadata.target_version if metadata else None,
            rollback_version=metadata.rollback_version if metadata else None,
            data_dump=dump if dump.is_file() else None,
            config_copy=config_copy if config_copy.is_file() else None,
            has_metadata=metadata is not None,
        )

    def list_snapshots(self) -> list[Snapshot]:
        """All snapshots, oldest first by creation time."""
        if not self.backup_dir.is_dir():
            return []
        snapshots = [self._load(p) for p in self.backup_dir.iterdir() if p.is_dir()]
        return sorted(snapshots, key=lambda s: (s.created_at, s.id))

    def latest(self) -> Snapshot | None:
        snapshots = self.list_snapshots()
        return snapshots[-1] if snapshots else None

    def get(self, snapshot_id: str) -> Snapshot:
        """Find a snapshot by id or directory name.

        Raises:
            ConfigError: If no snapshot matches
        """
        for snapshot in self.list_snapshots():
            if snapshot_id in (snapshot.id, snapshot.path.name):
                return snapshot
        raise ConfigError(
            field="snapshot", message=f"Snapshot not found: {snapshot_id}"
        )

    def restore_configuration(self, snapshot: Snapshot) -> dict[str, str]:
        """Write the snapshot's env values over the live env file.

        Keys present only in the live file (for example API keys issued
        after the snapshot was taken) are kept.

        Raises:
            DeploymentError: If the snapshot has no configuration copy
        """
        if snapshot.config_copy is None:
            raise DeploymentError(
                operation="restore",
                message=f"Snapshot {snapshot.path} has no configuration copy",
            )
        values = EnvFile(snapshot.config_copy).read()
        self.store.update(values)
        logger.info(f"Restored configuration from {snapshot.path.name}")
        return values

    def restore_data(self, snapshot: Snapshot) -> bool:
        """Replay the snapshot's database dump.

        Returns:
            False when the snapshot holds no dump
        """
        if snapshot.data_dump is None:
            logger.info(f"Snapshot {snapshot.path.name} has no database dump")
            return False
        container, user = self._database_target(self.store.read())
        self.runtime.restore_database(container, user, snapshot.data_dump)
        logger.info(f"Restored database from {snapshot.data_dump}")
        return True

    def restore_snapshot(self, snapshot: Snapshot) -> bool:
        """Apply configuration then, if present, the data dump."""
        self.restore_configuration(snapshot)
        return self.restore_data(snapshot)

    def prune_snapshots(self, keep: int) -> list[Snapshot]:
        """Delete all but the ``keep`` most recently created snapshots.

        Returns:
            The snapshots that were removed
        """
        snapshots = self.list_snapshots()
        stale = snapshots[: max(len(snapshots) - keep, 0)]
        removed: list[Snapshot] = []
        for snapshot in stale:
            try:
                shutil.rmtree(snapshot.path)
            except OSError as exc:
                logger.warning(f"Could not remove snapshot {snapshot.path}: {exc}")
                continue
            removed.append(snapshot)
        if removed:
            logger.info(f"Removed {len(removed)} old snapshot(s)")
        return removed
