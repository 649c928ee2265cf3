"""Orchestrator settings for Shipyard.

Settings describe *how* the orchestrator behaves (paths, timeouts,
retention). Values describing the deployment itself live in the env file
handled by :mod:`shipyard.config.env_file`.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from shipyard.config.defaults import (
    DEFAULT_ENV_FILE,
    DEFAULT_IMAGE_REGISTRY,
    DEFAULT_LAYOUT,
    DEFAULT_PROJECT_NAME,
    DEFAULT_RETENTION,
    DEFAULT_TIMING,
)
from shipyard.lib.errors import ConfigError

logger = logging.getLogger(__name__)

# Environment variable to field name mapping
ENV_VAR_MAP = {
    "deploy_root": "SHIPYARD_DEPLOY_ROOT",
    "env_file_name": "SHIPYARD_ENV_FILE",
    "project_name": "PROJECT_NAME",
    "image_registry": "SHIPYARD_IMAGE_REGISTRY",
    "poll_interval": "SHIPYARD_POLL_INTERVAL",
    "main_health_timeout": "SHIPYARD_MAIN_HEALTH_TIMEOUT",
    "module_health_timeout": "SHIPYARD_MODULE_HEALTH_TIMEOUT",
    "rollback_health_timeout": "SHIPYARD_ROLLBACK_HEALTH_TIMEOUT",
    "attach_health_timeout": "SHIPYARD_ATTACH_HEALTH_TIMEOUT",
    "restore_settle_delay": "SHIPYARD_RESTORE_SETTLE_DELAY",
    "image_keep": "SHIPYARD_IMAGE_KEEP",
    "snapshot_keep": "SHIPYARD_SNAPSHOT_KEEP",
    "verify_tls": "SHIPYARD_VERIFY_TLS",
}

_FLOAT_FIELDS = frozenset(DEFAULT_TIMING)
_INT_FIELDS = frozenset(DEFAULT_RETENTION)
_BOOL_FIELDS = frozenset({"verify_tls"})


class ShipyardSettings(BaseModel):
    """Behavioral settings of the orchestrator."""

    model_config = ConfigDict(extra="forbid")

    deploy_root: Path = Field(
        ..., description="Directory holding the env file and compose files"
    )
    env_file_name: str = Field(default=DEFAULT_ENV_FILE)
    compose_dir_name: str = Field(default=DEFAULT_LAYOUT["compose_dir"])
    backup_dir_name: str = Field(default=DEFAULT_LAYOUT["backup_dir"])
    log_dir_name: str = Field(default=DEFAULT_LAYOUT["log_dir"])
    project_name: str = Field(
        default=DEFAULT_PROJECT_NAME,
        description="Fallback project name when the env file has none",
    )
    image_registry: str = Field(default=DEFAULT_IMAGE_REGISTRY)

    poll_interval: float = Field(default=DEFAULT_TIMING["poll_interval"], gt=0)
    main_health_timeout: float = Field(
        default=DEFAULT_TIMING["main_health_timeout"], gt=0
    )
    module_health_timeout: float = Field(
        default=DEFAULT_TIMING["module_health_timeout"], gt=0
    )
    rollback_health_timeout: float = Field(
        default=DEFAULT_TIMING["rollback_health_timeout"], gt=0
    )
    attach_health_timeout: float = Field(
        default=DEFAULT_TIMING["attach_health_timeout"], gt=0
    )
    restore_settle_delay: float = Field(
        default=DEFAULT_TIMING["restore_settle_delay"], ge=0
    )
    provision_connect_timeout: float = Field(
        default=DEFAULT_TIMING["provision_connect_timeout"], gt=0
    )
    provision_read_timeout: float = Field(
        default=DEFAULT_TIMING["provision_read_timeout"], gt=0
    )

    image_keep: int = Field(default=DEFAULT_RETENTION["image_keep"], ge=1)
    snapshot_keep: int = Field(default=DEFAULT_RETENTION["snapshot_keep"], ge=1)

    # The portal ships with a self-signed certificate by default
    verify_tls: bool = Field(default=False)

    @property
    def env_file(self) -> Path:
        return self.deploy_root / self.env_file_name

    @property
    def compose_dir(self) -> Path:
        return self.deploy_root / self.compose_dir_name

    @property
    def backup_dir(self) -> Path:
        return self.deploy_root / self.backup_dir_name

    @property
    def log_dir(self) -> Path:
        return self.deploy_root / self.log_dir_name

    @property
    def lock_file(self) -> Path:
        return self.deploy_root / DEFAULT_LAYOUT["lock_file"]

    @property
    def admin_flag_file(self) -> Path:
        return self.deploy_root / DEFAULT_LAYOUT["admin_flag_file"]

    @property
    def catalog_file(self) -> Path:
        return self.deploy_root / DEFAULT_LAYOUT["catalog_file"]


def _parse_env_value(field_name: str, value: str) -> Any:
    """Parse environment variable value to the field's type.

    Raises:
        ValueError: If value cannot be parsed
    """
    if field_name in _FLOAT_FIELDS:
        return float(value)
    if field_name in _INT_FIELDS:
        return int(value)
    if field_name in _BOOL_FIELDS:
        return value.strip().lower() in ("true", "1", "yes", "on")
    return value


def load_settings(
    deploy_root: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    **overrides: Any,
) -> ShipyardSettings:
    """Build settings from defaults, environment variables and overrides.

    Resolution order (highest first): explicit keyword overrides, the
    ``deploy_root`` argument, ``SHIPYARD_*`` environment variables, defaults.

    Args:
        deploy_root: Deployment directory; defaults to the current directory
        env: Environment mapping (defaults to ``os.environ``)
        **overrides: Field values that win over everything else

    Returns:
        Validated ShipyardSettings

    Raises:
        ConfigError: If an environment variable or override is invalid
    """
    env = os.environ if env is None else env
    values: dict[str, Any] = {}

    for field_name, env_var in ENV_VAR_MAP.items():
        if env_var not in env:
            continue
        try:
            values[field_name] = _parse_env_value(field_name, env[env_var])
        except ValueError as exc:
            raise ConfigError(
                field=env_var, message=f"Invalid value '{env[env_var]}': {exc}"
            ) from exc

    if deploy_root is not None:
        values["deploy_root"] = Path(deploy_root)
    values.setdefault("deploy_root", Path.cwd())
    values["deploy_root"] = Path(values["deploy_root"]).expanduser().resolve()
    values.update({k: v for k, v in overrides.items() if v is not None})

    try:
        settings = ShipyardSettings(**values)
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        field = ".".join(str(part) for part in first["loc"]) or "settings"
        raise ConfigError(field=field, message=first["msg"]) from exc

    logger.debug(f"Loaded settings for deploy root {settings.deploy_root}")
    return settings
