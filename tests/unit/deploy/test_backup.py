"""Tests for snapshot creation, restore and retention."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest
from ulid import ULID

from shipyard.config.env_file import EnvFile
from shipyard.config.settings import ShipyardSettings
from shipyard.deploy.backup import (
    DUMP_FILE,
    METADATA_FILE,
    BackupManager,
    read_metadata,
)
from shipyard.lib.errors import BackupFailedError, ConfigError, DeploymentError

if TYPE_CHECKING:
    from conftest import FakeRuntime


@pytest.fixture
def backups(
    settings: ShipyardSettings, installed: EnvFile, runtime: FakeRuntime
) -> BackupManager:
    return BackupManager(settings, installed, runtime)


@pytest.mark.unit
class TestCreateSnapshot:
    """Tests for BackupManager.create_snapshot."""

    def test_full_mode_snapshot(
        self, backups: BackupManager, installed: EnvFile, runtime: FakeRuntime
    ) -> None:
        """A snapshot holds the dump, the env copy and the metadata."""
        snapshot = backups.create_snapshot("pre-upgrade-to-1.1.0", "1.0.0", "1.1.0")

        assert snapshot.path.parent == backups.backup_dir
        assert snapshot.path.name.endswith("_pre-upgrade-to-1.1.0")
        assert snapshot.data_dump == snapshot.path / DUMP_FILE
        assert snapshot.config_copy is not None
        assert snapshot.config_copy.read_text() == installed.path.read_text()
        assert snapshot.rollback_version == "1.0.0"

        args, _ = runtime.calls_to("dump_database")[0]
        assert args == ("portal-postgres", "postgres")

    def test_metadata_record(self, backups: BackupManager) -> None:
        """rollback.json uses camelCase keys and names the rollback version."""
        snapshot = backups.create_snapshot("pre-upgrade-to-1.1.0", "1.0.0", "1.1.0")

        data = json.loads((snapshot.path / METADATA_FILE).read_text())
        assert data["rollbackVersion"] == "1.0.0"
        assert data["sourceVersion"] == "1.0.0"
        assert data["targetVersion"] == "1.1.0"
        assert data["snapshotId"] == snapshot.id
        assert data["hasDataDump"] is True
        assert data["infrastructureMode"] == "full"

    def test_created_at_from_ulid(self, backups: BackupManager) -> None:
        snapshot = backups.create_snapshot("manual")

        assert snapshot.created_at == ULID.from_str(snapshot.id).datetime

    def test_external_mode_skips_dump(
        self, backups: BackupManager, installed: EnvFile, runtime: FakeRuntime
    ) -> None:
        """With external infrastructure only configuration is captured."""
        installed.set("INFRASTRUCTURE_MODE", "external")

        snapshot = backups.create_snapshot("pre-upgrade-to-1.1.0", "1.0.0", "1.1.0")

        assert snapshot.data_dump is None
        assert snapshot.config_copy is not None
        assert runtime.calls_to("dump_database") == []

    def test_dump_failure_removes_partial_snapshot(
        self, backups: BackupManager, runtime: FakeRuntime
    ) -> None:
        """A failed dump leaves no directory behind."""
        runtime.failures["dump_database"] = DeploymentError(
            operation="backup", message="container not running"
        )

        with pytest.raises(BackupFailedError) as exc_info:
            backups.create_snapshot("pre-upgrade-to-1.1.0", "1.0.0", "1.1.0")

        assert exc_info.value.current_version == "1.0.0"
        assert exc_info.value.target_version == "1.1.0"
        assert list(backups.backup_dir.iterdir()) == []

    def test_label_is_slugged(self, backups: BackupManager) -> None:
        snapshot = backups.create_snapshot("before / risky change")

        assert snapshot.path.name.endswith("_before-risky-change")
        assert snapshot.label == "before / risky change"


@pytest.mark.unit
class TestListSnapshots:
    """Tests for listing and looking up snapshots."""

    def test_empty(self, backups: BackupManager) -> None:
        assert backups.list_snapshots() == []
        assert backups.latest() is None

    def test_oldest_first(self, backups: BackupManager) -> None:
        first = backups.create_snapshot("one", "1.0.0", "1.1.0")
        second = backups.create_snapshot("two", "1.1.0", "1.2.0")

        listed = backups.list_snapshots()

        assert [s.id for s in listed] == [first.id, second.id]
        assert backups.latest() == listed[-1]

    def test_snapshot_without_metadata(
        self, backups: BackupManager, settings: ShipyardSettings
    ) -> None:
        """Directories without rollback.json still load, with no versions."""
        snapshot_id = ULID()
        path = backups.backup_dir / f"{snapshot_id}_manual"
        path.mkdir(parents=True)
        (path / settings.env_file_name).write_text("VERSION=0.9.0\n")

        snapshot = backups.get(str(snapshot_id))

        assert snapshot.has_metadata is False
        assert snapshot.label == "manual"
        assert snapshot.rollback_version is None
        assert snapshot.source_version is None
        assert snapshot.data_dump is None
        assert snapshot.config_copy == path / settings.env_file_name
        assert snapshot.created_at == snapshot_id.datetime

    def test_corrupt_metadata_is_ignored(self, backups: BackupManager) -> None:
        snapshot = backups.create_snapshot("one", "1.0.0", "1.1.0")
        (snapshot.path / METADATA_FILE).write_text("{not json")

        assert read_metadata(snapshot.path) is None
        assert backups.get(snapshot.path.name).rollback_version is None

    def test_get_unknown(self, backups: BackupManager) -> None:
        with pytest.raises(ConfigError) as exc_info:
            backups.get("nope")

        assert exc_info.value.field == "snapshot"


@pytest.mark.unit
class TestRestore:
    """Tests for restoring configuration and data."""

    def test_restore_configuration_keeps_live_only_keys(
        self, backups: BackupManager, installed: EnvFile
    ) -> None:
        """Snapshot values win; keys added after the snapshot survive."""
        snapshot = backups.create_snapshot("pre", "1.0.0", "1.1.0")
        installed.update({"VERSION": "1.1.0", "ITEMS_API_KEY": "issued-later"})

        backups.restore_configuration(snapshot)

        assert installed.get("VERSION") == "1.0.0"
        assert installed.get("ITEMS_API_KEY") == "issued-later"

    def test_restore_data(
        self, backups: BackupManager, runtime: FakeRuntime
    ) -> None:
        snapshot = backups.create_snapshot("pre", "1.0.0", "1.1.0")

        assert backups.restore_snapshot(snapshot) is True

        args, _ = runtime.calls_to("restore_database")[0]
        assert args == ("portal-postgres", "postgres", snapshot.data_dump)

    def test_restore_data_without_dump(
        self, backups: BackupManager, installed: EnvFile, runtime: FakeRuntime
    ) -> None:
        installed.set("INFRASTRUCTURE_MODE", "external")
        snapshot = backups.create_snapshot("pre", "1.0.0", "1.1.0")

        assert backups.restore_data(snapshot) is False
        assert runtime.calls_to("restore_database") == []

    def test_restore_configuration_without_copy(
        self, backups: BackupManager
    ) -> None:
        path = backups.backup_dir / f"{ULID()}_empty"
        path.mkdir(parents=True)
        snapshot = backups.get(path.name)

        with pytest.raises(DeploymentError):
            backups.restore_configuration(snapshot)


@pytest.mark.unit
class TestPrune:
    """Tests for snapshot retention."""

    def test_keeps_newest(self, backups: BackupManager) -> None:
        created = [backups.create_snapshot(f"s{i}") for i in range(4)]

        removed = backups.prune_snapshots(keep=2)

        assert [s.id for s in removed] == [created[0].id, created[1].id]
        assert [s.id for s in backups.list_snapshots()] == [
            created[2].id,
            created[3].id,
        ]

    def test_nothing_to_prune(self, backups: BackupManager) -> None:
        backups.create_snapshot("only")

        assert backups.prune_snapshots(keep=5) == []
