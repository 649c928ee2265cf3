"""Tests for orchestrator settings loading."""

from __future__ import annotations

from pathlib import Path

import pytest

from shipyard.config.settings import ShipyardSettings, load_settings
from shipyard.lib.errors import ConfigError


@pytest.mark.unit
class TestLoadSettings:
    """Tests for load_settings resolution order."""

    def test_defaults(self, tmp_path: Path) -> None:
        """Defaults apply when nothing is overridden."""
        settings = load_settings(tmp_path, env={})

        assert settings.deploy_root == tmp_path.resolve()
        assert settings.poll_interval == 5
        assert settings.main_health_timeout == 180
        assert settings.module_health_timeout == 60
        assert settings.rollback_health_timeout == 120
        assert settings.image_keep == 3
        assert settings.verify_tls is False

    def test_paths(self, tmp_path: Path) -> None:
        """Derived paths live under the deploy root."""
        settings = load_settings(tmp_path, env={})
        root = tmp_path.resolve()

        assert settings.env_file == root / "portal.env"
        assert settings.compose_dir == root / "docker"
        assert settings.backup_dir == root / "backups"
        assert settings.lock_file == root / ".shipyard.lock"
        assert settings.catalog_file == root / "modules.yaml"

    def test_environment_variables(self, tmp_path: Path) -> None:
        """SHIPYARD_* variables are parsed to their field types."""
        env = {
            "SHIPYARD_POLL_INTERVAL": "2.5",
            "SHIPYARD_SNAPSHOT_KEEP": "10",
            "SHIPYARD_VERIFY_TLS": "yes",
            "SHIPYARD_ENV_FILE": "custom.env",
        }

        settings = load_settings(tmp_path, env=env)

        assert settings.poll_interval == 2.5
        assert settings.snapshot_keep == 10
        assert settings.verify_tls is True
        assert settings.env_file.name == "custom.env"

    def test_deploy_root_from_environment(self, tmp_path: Path) -> None:
        """SHIPYARD_DEPLOY_ROOT is used when no argument is given."""
        settings = load_settings(env={"SHIPYARD_DEPLOY_ROOT": str(tmp_path)})

        assert settings.deploy_root == tmp_path.resolve()

    def test_overrides_win(self, tmp_path: Path) -> None:
        """Keyword overrides beat environment variables."""
        settings = load_settings(
            tmp_path,
            env={"SHIPYARD_MAIN_HEALTH_TIMEOUT": "300"},
            main_health_timeout=30,
        )

        assert settings.main_health_timeout == 30

    def test_unparseable_variable(self, tmp_path: Path) -> None:
        """A variable that cannot be parsed names the variable."""
        with pytest.raises(ConfigError) as exc_info:
            load_settings(tmp_path, env={"SHIPYARD_IMAGE_KEEP": "three"})

        assert exc_info.value.field == "SHIPYARD_IMAGE_KEEP"

    def test_invalid_value(self, tmp_path: Path) -> None:
        """Validation errors are reported as ConfigError."""
        with pytest.raises(ConfigError) as exc_info:
            load_settings(tmp_path, env={"SHIPYARD_POLL_INTERVAL": "0"})

        assert exc_info.value.field == "poll_interval"

    def test_unknown_field_rejected(self, tmp_path: Path) -> None:
        """Settings forbid unknown fields."""
        with pytest.raises(ConfigError):
            load_settings(tmp_path, env={}, not_a_setting=True)


def test_settings_model_requires_deploy_root() -> None:
    """deploy_root has no default on the model itself."""
    with pytest.raises(ValueError):
        ShipyardSettings()  # type: ignore[call-arg]
