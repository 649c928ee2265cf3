"""Unit tests for the shipyard command line.

Tests cover:
- install, upgrade and rollback outcomes and exit codes
- attach-module and detach-module
- status, snapshots and admin-access output
- Error handling for ConfigError, DeploymentError and CredentialError
"""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import TYPE_CHECKING
from unittest.mock import MagicMock, patch

import pytest
from click.testing import CliRunner, Result
from requests.exceptions import ConnectionError as RequestsConnectionError

from shipyard.cli.main import main
from shipyard.config.env_file import EnvFile
from shipyard.config.settings import ShipyardSettings
from shipyard.deploy.backup import BackupManager
from shipyard.models.deployment import HealthStatus

if TYPE_CHECKING:
    from conftest import FakeRuntime

Invoke = Callable[..., Result]
SESSION = "shipyard.deploy.credentials.requests.Session"

FAST_HEALTH = {
    "SHIPYARD_POLL_INTERVAL": "0.01",
    "SHIPYARD_MAIN_HEALTH_TIMEOUT": "0.02",
    "SHIPYARD_MODULE_HEALTH_TIMEOUT": "0.02",
    "SHIPYARD_ROLLBACK_HEALTH_TIMEOUT": "0.02",
    "SHIPYARD_ATTACH_HEALTH_TIMEOUT": "0.02",
    "SHIPYARD_RESTORE_SETTLE_DELAY": "0",
}


@pytest.fixture
def running(installed: EnvFile, runtime: FakeRuntime) -> FakeRuntime:
    runtime.running.update({"portal", "portal-postgres"})
    return runtime


class TestMainGroup:
    """Tests for the top-level command group."""

    def test_help_lists_commands(self, cli_runner: CliRunner) -> None:
        result = cli_runner.invoke(main, ["--help"])

        assert result.exit_code == 0
        for command in ("install", "upgrade", "rollback", "attach-module", "status"):
            assert command in result.output

    def test_version(self, cli_runner: CliRunner) -> None:
        from shipyard import __version__

        result = cli_runner.invoke(main, ["--version"])

        assert result.exit_code == 0
        assert __version__ in result.output

    def test_invalid_setting_exits_2(self, invoke: Invoke) -> None:
        result = invoke("status", env={"SHIPYARD_POLL_INTERVAL": "soon"})

        assert result.exit_code == 2
        assert "Configuration error" in result.output


class TestInstallCommand:
    """Tests for 'shipyard install'."""

    def test_install(self, invoke: Invoke, store: EnvFile) -> None:
        result = invoke("install", "--version", "1.0.0", "--non-interactive")

        assert result.exit_code == 0, result.output
        assert "Install successful!" in result.output
        assert store.get("VERSION") == "1.0.0"

    def test_install_external(self, invoke: Invoke, store: EnvFile) -> None:
        result = invoke("install", "--version", "1.0.0", "--infrastructure", "external")

        assert result.exit_code == 0, result.output
        assert store.get("INFRASTRUCTURE_MODE") == "external"

    def test_already_installed(self, invoke: Invoke, installed: EnvFile) -> None:
        result = invoke("install", "--version", "2.0.0")

        assert result.exit_code == 3
        assert "already installed" in result.output


class TestUpgradeCommand:
    """Tests for 'shipyard upgrade'."""

    def test_upgrade(self, invoke: Invoke, running: FakeRuntime) -> None:
        result = invoke("upgrade", "--version", "1.1.0", "--non-interactive")

        assert result.exit_code == 0, result.output
        assert "Upgrade successful!" in result.output
        assert "Previous version: 1.0.0" in result.output
        assert "Current version:  1.1.0" in result.output

    def test_same_version_non_interactive(
        self, invoke: Invoke, running: FakeRuntime
    ) -> None:
        result = invoke("upgrade", "--version", "1.0.0", "--non-interactive")

        assert result.exit_code == 0
        assert "Nothing to do." in result.output
        assert running.mutating_calls == []

    def test_same_version_confirmed(
        self, invoke: Invoke, running: FakeRuntime
    ) -> None:
        """Answering the prompt with yes re-applies the version."""
        result = invoke("upgrade", "--version", "1.0.0", input="y\n")

        assert result.exit_code == 0, result.output
        assert "Upgrade successful!" in result.output

    def test_rolled_back_exits_1(
        self, invoke: Invoke, running: FakeRuntime, installed: EnvFile
    ) -> None:
        running.health["portal"] = HealthStatus.UNHEALTHY

        result = invoke(
            "upgrade", "--version", "1.1.0", "--non-interactive", env=FAST_HEALTH
        )

        assert result.exit_code == 1
        assert "Upgrade failed and was rolled back" in result.output
        assert "Current version:  1.0.0" in result.output
        assert installed.get("VERSION") == "1.0.0"

    def test_pull_failure_shows_recovery(
        self, invoke: Invoke, running: FakeRuntime
    ) -> None:
        running.failing_pulls.add("ghcr.io/acme/ezy-portal:9.9.9")

        result = invoke("upgrade", "--version", "9.9.9", "--non-interactive")

        assert result.exit_code == 3
        assert "Target version:  9.9.9" in result.output
        assert "shipyard rollback --snapshot" in result.output

    def test_not_installed(self, invoke: Invoke) -> None:
        result = invoke("upgrade", "--version", "1.1.0", "--non-interactive")

        assert result.exit_code == 3
        assert "shipyard install" in result.output

    def test_invalid_version(self, invoke: Invoke, running: FakeRuntime) -> None:
        result = invoke("upgrade", "--version", "bad tag", "--non-interactive")

        assert result.exit_code == 2
        assert "Invalid version" in result.output


class TestRollbackCommand:
    """Tests for 'shipyard rollback'."""

    def test_rollback_latest(
        self,
        invoke: Invoke,
        running: FakeRuntime,
        installed: EnvFile,
        settings: ShipyardSettings,
    ) -> None:
        BackupManager(settings, installed, running).create_snapshot(
            "pre-upgrade-to-1.0.0", "0.9.0", "1.0.0"
        )

        result = invoke("rollback", "--force", env=FAST_HEALTH)

        assert result.exit_code == 0, result.output
        assert "Rollback completed" in result.output
        assert installed.get("VERSION") == "0.9.0"

    def test_rollback_cancelled(self, invoke: Invoke, running: FakeRuntime) -> None:
        result = invoke("rollback", input="n\n")

        assert result.exit_code == 0
        assert "Rollback cancelled." in result.output
        assert running.calls == []

    def test_no_snapshots(self, invoke: Invoke, running: FakeRuntime) -> None:
        result = invoke("rollback", "--force")

        assert result.exit_code == 3
        assert "No snapshots" in result.output


class TestModuleCommands:
    """Tests for 'shipyard attach-module' and 'detach-module'."""

    def test_attach_with_api_key(
        self, invoke: Invoke, running: FakeRuntime, installed: EnvFile
    ) -> None:
        result = invoke("attach-module", "items", "--api-key", "sk-given")

        assert result.exit_code == 0, result.output
        assert "Module 'items' added successfully!" in result.output
        assert "ITEMS_API_KEY (explicit)" in result.output
        assert installed.get("ITEMS_API_KEY") == "sk-given"

    def test_missing_dependency(self, invoke: Invoke, running: FakeRuntime) -> None:
        result = invoke("attach-module", "bp")

        assert result.exit_code == 3
        assert "shipyard attach-module items" in result.output
        assert running.mutating_calls == []

    def test_no_api_key_available(
        self, invoke: Invoke, running: FakeRuntime, installed: EnvFile
    ) -> None:
        installed.unset("DEPLOYMENT_SECRET")

        result = invoke("attach-module", "items")

        assert result.exit_code == 3
        assert "API key unavailable for 'items'" in result.output

    def test_rejected_secret_headline(
        self, invoke: Invoke, running: FakeRuntime
    ) -> None:
        """Provisioning failures are named by their own message."""
        session = MagicMock()
        session.post.return_value = MagicMock(status_code=401, ok=False)
        session.post.return_value.iter_content.return_value = [b"{}"]

        with patch(SESSION, return_value=session):
            result = invoke("attach-module", "items")

        assert result.exit_code == 3
        assert "Error: Invalid deployment secret" in result.output
        assert "API key unavailable" not in result.output

    def test_portal_unreachable_headline(
        self, invoke: Invoke, running: FakeRuntime
    ) -> None:
        session = MagicMock()
        session.post.side_effect = RequestsConnectionError("refused")

        with patch(SESSION, return_value=session):
            result = invoke("attach-module", "items")

        assert result.exit_code == 3
        assert "Error: Failed to connect to portal API at https://portal.test" in (
            result.output
        )
        assert "Original error: refused" in result.output
        assert running.mutating_calls == []

    def test_already_running(self, invoke: Invoke, running: FakeRuntime) -> None:
        running.running.add("portal-items")

        result = invoke("attach-module", "items")

        assert result.exit_code == 0
        assert "already running" in result.output

    def test_unknown_module(self, invoke: Invoke, running: FakeRuntime) -> None:
        result = invoke("attach-module", "billing")

        assert result.exit_code == 2

    def test_detach(self, invoke: Invoke, running: FakeRuntime) -> None:
        running.running.add("portal-items")

        result = invoke("detach-module", "items", "--force")

        assert result.exit_code == 0
        assert "Module 'items' removed" in result.output
        assert "portal-items" not in running.running


class TestStatusCommands:
    """Tests for 'shipyard status', 'snapshots' and 'admin-access'."""

    def test_status_not_installed(self, invoke: Invoke) -> None:
        result = invoke("status")

        assert result.exit_code == 0
        assert "Not installed" in result.output

    def test_status(self, invoke: Invoke, running: FakeRuntime) -> None:
        running.running.add("portal-items")
        running.health["portal-items"] = HealthStatus.STARTING

        result = invoke("status")

        assert result.exit_code == 0, result.output
        assert "Version:        1.0.0" in result.output
        assert "Infrastructure: full" in result.output
        lines = result.output.splitlines()
        assert any(line.split() == ["portal", "healthy"] for line in lines)
        assert any(line.split() == ["items", "starting"] for line in lines)
        assert any(line.split() == ["bp", "not", "running"] for line in lines)

    def test_snapshots(
        self,
        invoke: Invoke,
        running: FakeRuntime,
        installed: EnvFile,
        settings: ShipyardSettings,
    ) -> None:
        snapshot = BackupManager(settings, installed, running).create_snapshot(
            "pre-upgrade-to-1.1.0", "1.0.0", "1.1.0"
        )

        result = invoke("snapshots")

        assert result.exit_code == 0
        assert snapshot.id in result.output
        assert "1.0.0 -> 1.1.0" in result.output

    def test_snapshot_without_metadata(
        self, invoke: Invoke, installed: EnvFile, settings: ShipyardSettings
    ) -> None:
        """Directories without rollback.json are listed and flagged."""
        from ulid import ULID

        (settings.backup_dir / f"{ULID()}_manual").mkdir(parents=True)

        result = invoke("snapshots")

        assert result.exit_code == 0, result.output
        assert "? -> ?" in result.output
        assert "manual  (no metadata)" in result.output

    def test_no_snapshots(self, invoke: Invoke, installed: EnvFile) -> None:
        result = invoke("snapshots")

        assert "No snapshots" in result.output

    def test_admin_access(
        self, invoke: Invoke, running: FakeRuntime, deploy_root: Path
    ) -> None:
        enabled = invoke("admin-access", "enable", "--force")
        status = invoke("admin-access", "status")
        disabled = invoke("admin-access", "disable", "--force")

        assert enabled.exit_code == 0, enabled.output
        assert "127.0.0.1:5432" in enabled.output
        assert "ENABLED" in status.output
        assert disabled.exit_code == 0
        assert not (deploy_root / ".admin-access-enabled").exists()
