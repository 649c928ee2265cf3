"""Flat KEY=VALUE env file store.

The env file is the persisted state of the deployment: version, project
name, infrastructure mode, image references and per-module API keys. Reads
go through ``dotenv_values`` and writes through ``set_key`` so that existing
keys are replaced in place and new keys are appended.
"""

from __future__ import annotations

import logging
import secrets
import shutil
from collections.abc import Mapping
from pathlib import Path

from dotenv import dotenv_values, set_key, unset_key

from shipyard.config.defaults import (
    APPLICATION_URL_KEY,
    DATABASE_SERVICE,
    DEFAULT_APPLICATION_URL,
    DEPLOYMENT_SECRET_KEY,
    IMAGE_REGISTRY_KEY,
    INFRASTRUCTURE_MODE_KEY,
    POSTGRES_HOST_KEY,
    PROJECT_NAME_KEY,
    VERSION_KEY,
)
from shipyard.config.settings import ShipyardSettings
from shipyard.lib.errors import ConfigError
from shipyard.models.deployment import Deployment, InfrastructureMode

logger = logging.getLogger(__name__)


class EnvFile:
    """Accessor and mutator for the deployment env file.

    A missing file reads as empty; the first write creates it.

    Example:
        >>> store = EnvFile(Path("portal.env"))
        >>> store.set("VERSION", "1.0.0")
        >>> store.get("VERSION")
        '1.0.0'
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def exists(self) -> bool:
        return self.path.is_file()

    def read(self) -> dict[str, str]:
        """Return all key/value pairs (empty dict when the file is missing)."""
        if not self.exists():
            return {}
        try:
            raw = dotenv_values(self.path, interpolate=False)
        except OSError as exc:
            raise ConfigError(
                field=str(self.path), message=f"Failed to read env file: {exc}"
            ) from exc
        return {key: value or "" for key, value in raw.items()}

    def get(self, key: str, default: str | None = None) -> str | None:
        """Return a value, treating empty values as unset."""
        value = self.read().get(key)
        return value if value else default

    def set(self, key: str, value: str) -> None:
        """Set a key, replacing it in place or appending it."""
        if "\n" in value:
            raise ConfigError(field=key, message="Values must be single-line")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.touch(exist_ok=True)
            set_key(self.path, key, value, quote_mode="never")
        except OSError as exc:
            raise ConfigError(
                field=key, message=f"Failed to write {self.path}: {exc}"
            ) from exc
        logger.debug(f"Set {key} in {self.path.name}")

    def update(self, values: Mapping[str, str]) -> None:
        for key, value in values.items():
            self.set(key, value)

    def unset(self, key: str) -> None:
        if key in self.read():
            unset_key(self.path, key, quote_mode="never")

    def copy_to(self, destination: Path) -> Path:
        """Copy the env file verbatim (used by snapshots)."""
        destination.parent.mkdir(parents=True, exist_ok=True)
        shutil.copy2(self.path, destination)
        return destination


def resolve_infrastructure_mode(
    values: Mapping[str, str], project_name: str | None = None
) -> InfrastructureMode:
    """Resolve the infrastructure mode declared by an env file.

    An explicit ``INFRASTRUCTURE_MODE`` wins. Otherwise the deployment is
    external when ``POSTGRES_HOST`` points anywhere but the bundled database
    container.

    Raises:
        ConfigError: If ``INFRASTRUCTURE_MODE`` holds an unknown value
    """
    declared = (values.get(INFRASTRUCTURE_MODE_KEY) or "").strip().lower()
    if declared:
        try:
            return InfrastructureMode(declared)
        except ValueError as exc:
            allowed = ", ".join(mode.value for mode in InfrastructureMode)
            raise ConfigError(
                field=INFRASTRUCTURE_MODE_KEY,
                message=f"Unknown mode '{declared}' (expected one of: {allowed})",
            ) from exc

    host = (values.get(POSTGRES_HOST_KEY) or "").strip()
    bundled = {"", "localhost", DATABASE_SERVICE}
    if project_name:
        bundled.add(f"{project_name}-{DATABASE_SERVICE}")
    if host not in bundled:
        return InfrastructureMode.EXTERNAL
    return InfrastructureMode.FULL


def load_deployment(settings: ShipyardSettings, store: EnvFile) -> Deployment | None:
    """Build the Deployment aggregate from the env file.

    Returns:
        The deployment, or None when nothing has been installed yet
    """
    values = store.read()
    version = values.get(VERSION_KEY)
    if not version:
        return None

    project_name = values.get(PROJECT_NAME_KEY) or settings.project_name
    return Deployment(
        project_name=project_name,
        infrastructure_mode=resolve_infrastructure_mode(values, project_name),
        current_version=version,
        configuration=values,
    )


def create_default_config(
    store: EnvFile,
    settings: ShipyardSettings,
    mode: InfrastructureMode,
) -> dict[str, str]:
    """Write first-install defaults, keeping any keys already present.

    A fresh ``DEPLOYMENT_SECRET`` is generated so modules can later
    auto-provision their API keys.

    Returns:
        The keys that were written
    """
    existing = store.read()
    defaults = {
        PROJECT_NAME_KEY: settings.project_name,
        INFRASTRUCTURE_MODE_KEY: mode.value,
        APPLICATION_URL_KEY: DEFAULT_APPLICATION_URL,
        IMAGE_REGISTRY_KEY: settings.image_registry,
        DEPLOYMENT_SECRET_KEY: secrets.token_urlsafe(32),
    }
    written = {key: value for key, value in defaults.items() if not existing.get(key)}
    store.update(written)
    if written:
        logger.info(
            f"Wrote default configuration to {store.path}: {', '.join(written)}"
        )
    return written
