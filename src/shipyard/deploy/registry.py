"""Service catalog and dependency resolution.

The registry maps every unit name to its composition descriptors, its image
repository and the units it depends on. The built-in catalog can be
extended by an operator-supplied ``modules.yaml`` in the deploy root.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from shipyard.lib.errors import ConfigError, InvalidStateError
from shipyard.lib.logging_config import get_logger
from shipyard.models.deployment import InfrastructureMode, ServiceUnit, UnitKind

logger = get_logger(__name__)

BASE_COMPOSE_FILES: dict[InfrastructureMode, str] = {
    InfrastructureMode.FULL: "docker-compose.full.yml",
    InfrastructureMode.EXTERNAL: "docker-compose.external.yml",
}
ADMIN_COMPOSE_FILE = "docker-compose.admin.yml"

MAIN_UNIT = "portal"

BUILTIN_UNITS: tuple[ServiceUnit, ...] = (
    ServiceUnit(
        name=MAIN_UNIT,
        kind=UnitKind.MAIN,
        image="ezy-portal",
        description="Portal web application",
    ),
    ServiceUnit(
        name="items",
        depends_on=(MAIN_UNIT,),
        compose_files=("docker-compose.module-items.yml",),
        image="ezy-items",
        api_key_var="ITEMS_API_KEY",
        description="Items catalog module",
    ),
    ServiceUnit(
        name="bp",
        depends_on=("items",),
        compose_files=("docker-compose.module-bp.yml",),
        image="ezy-bp",
        api_key_var="BP_API_KEY",
        description="Business partners module",
    ),
    ServiceUnit(
        name="prospects",
        depends_on=("bp",),
        compose_files=("docker-compose.module-prospects.yml",),
        image="ezy-prospects",
        api_key_var="PROSPECTS_API_KEY",
        description="Prospects module",
    ),
    ServiceUnit(
        name="report-generator-api",
        kind=UnitKind.AUXILIARY,
        depends_on=(MAIN_UNIT,),
        compose_files=("docker-compose.report-generator-api.yml",),
        image="ezy-report-generator-api",
        description="Report generator HTTP API",
    ),
    ServiceUnit(
        name="report-generator-service",
        kind=UnitKind.AUXILIARY,
        depends_on=("report-generator-api",),
        health_checkable=False,
        compose_files=("docker-compose.report-generator-service.yml",),
        image="ezy-report-generator-service",
        description="Report generator background worker",
    ),
)


class CatalogEntry(BaseModel):
    """One extra module declared in ``modules.yaml``."""

    model_config = ConfigDict(extra="forbid")

    name: str = Field(..., description="Module name (compose service name)")
    depends_on: list[str] = Field(default_factory=lambda: [MAIN_UNIT])
    compose_file: str = Field(..., description="Descriptor in the compose dir")
    image: str | None = Field(default=None, description="Image repository")
    api_key_var: str | None = Field(default=None)
    health_checkable: bool = Field(default=True)
    container_suffix: str | None = Field(default=None)
    description: str = Field(default="")

    def to_unit(self) -> ServiceUnit:
        return ServiceUnit(
            name=self.name,
            kind=UnitKind.MODULE,
            depends_on=tuple(self.depends_on),
            health_checkable=self.health_checkable,
            compose_files=(self.compose_file,),
            image=self.image,
            api_key_var=self.api_key_var,
            container_suffix=self.container_suffix,
            description=self.description,
        )


class CatalogFile(BaseModel):
    """Top-level structure of ``modules.yaml``."""

    model_config = ConfigDict(extra="forbid")

    modules: list[CatalogEntry] = Field(default_factory=list)


def load_catalog_file(path: Path) -> list[ServiceUnit]:
    """Load extra modules from a catalog file.

    Returns:
        The declared units; empty when the file does not exist

    Raises:
        ConfigError: If the file is not valid YAML or fails validation
    """
    if not path.exists():
        return []

    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(
            field=path.name, message=f"Cannot read catalog: {exc}"
        ) from exc

    try:
        catalog = CatalogFile.model_validate(data)
        return [entry.to_unit() for entry in catalog.modules]
    except PydanticValidationError as exc:
        first = exc.errors()[0]
        loc = ".".join(str(part) for part in first["loc"])
        raise ConfigError(field=f"{path.name}:{loc}", message=first["msg"]) from exc


class ServiceRegistry:
    """Static catalog of service units forming a dependency DAG.

    Units keep their declaration order; that order breaks ties whenever
    two units have no dependency relation.

    Example:
        >>> registry = ServiceRegistry()
        >>> [u.name for u in registry.dependency_chain("prospects")]
        ['portal', 'items', 'bp']
    """

    def __init__(self, units: Iterable[ServiceUnit] | None = None) -> None:
        self._units: dict[str, ServiceUnit] = {}
        for unit in BUILTIN_UNITS if units is None else units:
            if unit.name in self._units:
                raise ConfigError(
                    field=unit.name, message="Unit is declared more than once"
                )
            self._units[unit.name] = unit
        self._order = self.validate()

    @classmethod
    def load(cls, catalog_file: Path | None = None) -> ServiceRegistry:
        """Build the built-in catalog, merged with an optional extension file."""
        units = list(BUILTIN_UNITS)
        if catalog_file is not None:
            extra = load_catalog_file(catalog_file)
            if extra:
                logger.debug(
                    f"Loaded {len(extra)} extra module(s) from {catalog_file}"
                )
            units.extend(extra)
        return cls(units)

    def __contains__(self, name: object) -> bool:
        return name in self._units

    def __iter__(self) -> Iterator[ServiceUnit]:
        return iter(self._units.values())

    @property
    def main_unit(self) -> ServiceUnit:
        for unit in self._units.values():
            if unit.kind == UnitKind.MAIN:
                return unit
        raise ConfigError(field="catalog", message="No main unit declared")

    def get(self, name: str) -> ServiceUnit:
        """Return a unit by name.

        Raises:
            ConfigError: If the name is not in the catalog
        """
        try:
            return self._units[name]
        except KeyError:
            known = ", ".join(u.name for u in self.optional_units())
            raise ConfigError(
                field="module", message=f"Unknown unit '{name}' (available: {known})"
            ) from None

    def optional_units(self) -> list[ServiceUnit]:
        """Units that can be attached to a running deployment."""
        return [u for u in self._units.values() if u.kind != UnitKind.MAIN]

    def running_units(self, project_name: str, containers: Iterable[str]) -> list[str]:
        """Optional units whose containers appear in ``containers``.

        ``containers`` is the observed set of running container names; the
        result is in dependency order.
        """
        observed = set(containers)
        names = [
            unit.name
            for unit in self.optional_units()
            if unit.container_name(project_name) in observed
        ]
        return self.ordered(names)

    def validate(self) -> list[str]:
        """Check the dependency graph and return a topological order.

        Raises:
            ConfigError: On an unknown dependency or a dependency cycle
        """
        order: list[str] = []
        state: dict[str, str] = {}

        def visit(name: str, path: list[str]) -> None:
            mark = state.get(name)
            if mark == "done":
                return
            if mark == "visiting":
                cycle = " -> ".join([*path[path.index(name) :], name])
                raise ConfigError(
                    field="depends_on", message=f"Dependency cycle: {cycle}"
                )
            state[name] = "visiting"
            for dep in self._units[name].depends_on:
                if dep not in self._units:
                    raise ConfigError(
                        field="depends_on",
                        message=f"Unit '{name}' depends on unknown unit '{dep}'",
                    )
                visit(dep, [*path, name])
            state[name] = "done"
            order.append(name)

        for name in self._units:
            visit(name, [])
        return order

    def ordered(self, names: Iterable[str]) -> list[str]:
        """Sort unit names so every dependency precedes its dependents."""
        wanted = set(names)
        for name in wanted:
            self.get(name)
        return [name for name in self._order if name in wanted]

    def dependency_chain(self, name: str) -> list[ServiceUnit]:
        """Return the transitive dependencies of a unit, in dependency order.

        The unit itself is not included.
        """
        ancestors: set[str] = set()
        pending = list(self.get(name).depends_on)
        while pending:
            dep = pending.pop()
            if dep not in ancestors:
                ancestors.add(dep)
                pending.extend(self._units[dep].depends_on)
        return [self._units[n] for n in self.ordered(ancestors)]

    def dependents(self, name: str) -> list[ServiceUnit]:
        """Units that depend on ``name`` directly or transitively."""
        return [
            unit
            for unit in self._units.values()
            if any(dep.name == name for dep in self.dependency_chain(unit.name))
        ]

    def base_compose_file(self, mode: InfrastructureMode, compose_dir: Path) -> Path:
        return compose_dir / BASE_COMPOSE_FILES[mode]

    def compose_files(
        self,
        mode: InfrastructureMode,
        units: Iterable[str],
        compose_dir: Path,
    ) -> list[Path]:
        """Select descriptors to combine: base first, then units in dependency order.

        Raises:
            InvalidStateError: If any selected descriptor is missing on disk
        """
        files = [self.base_compose_file(mode, compose_dir)]
        for name in self.ordered(units):
            files.extend(compose_dir / ref for ref in self._units[name].compose_files)

        missing = [path for path in files if not path.is_file()]
        if missing:
            raise InvalidStateError(
                "Composition descriptor(s) not found: "
                + ", ".join(str(path) for path in missing)
            )
        return files

    def image_ref(self, unit: ServiceUnit, registry: str, version: str) -> str:
        """Return the full image reference of a unit at a version."""
        if not unit.image:
            raise ConfigError(field=unit.name, message="Unit has no image")
        return f"{registry.rstrip('/')}/{unit.image}:{version}"

    def image_var(self, unit: ServiceUnit) -> str:
        return unit.image_var
