"""Pydantic models for the managed deployment.

This module defines the deployment aggregate, the service catalog entries,
snapshots and their metadata record, and the typed credential provisioning
response.
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator

# Docker image tag grammar
VERSION_PATTERN = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")
UNIT_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9-]*$")


class InfrastructureMode(str, Enum):
    """Where the database, cache and broker come from."""

    FULL = "full"
    EXTERNAL = "external"


class UnitKind(str, Enum):
    """Role of a service unit within the deployment."""

    MAIN = "main"
    MODULE = "module"
    AUXILIARY = "auxiliary"


class HealthStatus(str, Enum):
    """Health signal of a running container."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    STARTING = "starting"
    NONE = "none"
    NOT_FOUND = "not_found"


class Deployment(BaseModel):
    """The single deployment managed on this control host.

    The aggregate is rebuilt from the env file on every read; it is never
    cached between operations.
    """

    model_config = ConfigDict(extra="forbid")

    project_name: str = Field(..., description="Namespace prefix for all units")
    infrastructure_mode: InfrastructureMode = Field(
        default=InfrastructureMode.FULL, description="Infrastructure mode"
    )
    current_version: str = Field(..., description="Currently configured version")
    configuration: dict[str, str] = Field(
        default_factory=dict, description="Env file contents"
    )


class ServiceUnit(BaseModel):
    """Catalog entry describing one independently startable component."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(..., description="Unit name (also the compose service name)")
    kind: UnitKind = Field(default=UnitKind.MODULE, description="Unit role")
    depends_on: tuple[str, ...] = Field(
        default=(), description="Units that must be running first"
    )
    health_checkable: bool = Field(
        default=True, description="Whether the container defines a health check"
    )
    compose_files: tuple[str, ...] = Field(
        default=(), description="Composition descriptors, relative to compose dir"
    )
    image: str | None = Field(default=None, description="Image repository name")
    api_key_var: str | None = Field(
        default=None, description="Env var holding the unit's portal API key"
    )
    container_suffix: str | None = Field(
        default=None, description="Container name suffix (defaults to name)"
    )
    description: str = Field(default="", description="Human-readable summary")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate unit name pattern."""
        if not UNIT_NAME_PATTERN.match(v):
            raise ValueError(
                f"Invalid unit name: {v}. "
                "Must start with a letter and contain only a-z, 0-9 and '-'"
            )
        return v

    def container_name(self, project_name: str) -> str:
        """Return the container name for this unit within a project."""
        if self.kind == UnitKind.MAIN:
            return project_name
        return f"{project_name}-{self.container_suffix or self.name}"

    @property
    def image_var(self) -> str:
        """Env var carrying the unit's image reference (e.g. ``ITEMS_IMAGE``)."""
        return f"{self.name.replace('-', '_').upper()}_IMAGE"


class SnapshotMetadata(BaseModel):
    """The ``rollback.json`` record stored inside every snapshot."""

    model_config = ConfigDict(populate_by_name=True)

    snapshot_id: str = Field(..., alias="snapshotId")
    label: str
    source_version: str | None = Field(default=None, alias="sourceVersion")
    target_version: str | None = Field(default=None, alias="targetVersion")
    rollback_version: str | None = Field(default=None, alias="rollbackVersion")
    created_at: datetime = Field(..., alias="createdAt")
    project_name: str | None = Field(default=None, alias="projectName")
    infrastructure_mode: InfrastructureMode | None = Field(
        default=None, alias="infrastructureMode"
    )
    has_data_dump: bool = Field(default=False, alias="hasDataDump")


class Snapshot(BaseModel):
    """Immutable point-in-time copy of data, configuration and versions."""

    model_config = ConfigDict(frozen=True)

    id: str
    path: Path
    label: str
    created_at: datetime
    source_version: str | None = None
    target_version: str | None = None
    rollback_version: str | None = None
    data_dump: Path | None = None
    config_copy: Path | None = None
    has_metadata: bool = True


class ProvisionResult(BaseModel):
    """Typed response of ``POST /api/service-api-keys/provision``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    service_name: str = Field(..., alias="serviceName")
    key_id: str | None = Field(default=None, alias="keyId")
    is_new_key: bool = Field(..., alias="isNewKey")
    api_key: str | None = Field(default=None, alias="apiKey")
    message: str | None = None
    expires_at: datetime | None = Field(default=None, alias="expiresAt")


class CredentialSource(str, Enum):
    """Where a module's API key came from."""

    EXPLICIT = "explicit"
    EXISTING = "existing"
    PROVISIONED = "provisioned"


class Credential(BaseModel):
    """A per-service API key as seen by the orchestrator."""

    model_config = ConfigDict(frozen=True)

    service_name: str
    env_var: str
    value: str = Field(repr=False)
    source: CredentialSource
    key_id: str | None = None

    @property
    def is_newly_issued(self) -> bool:
        """True when this run obtained the key from the portal."""
        return self.source == CredentialSource.PROVISIONED
