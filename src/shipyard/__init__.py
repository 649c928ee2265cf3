"""Shipyard - lifecycle orchestration for a single multi-service deployment.

Shipyard installs, upgrades and rolls back one container deployment on a
single host, and hot-attaches optional modules into it.

Main features:
- Snapshot before every upgrade, automatic rollback on failure
- Bounded health polling of every unit after a transition
- Dependency-checked module attach without recreating running units
- Idempotent API key provisioning for modules
"""

from shipyard.config.settings import ShipyardSettings, load_settings
from shipyard.lib.errors import ConfigError, DeploymentError, ShipyardError

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "ConfigError",
    "DeploymentError",
    "ShipyardError",
    "ShipyardSettings",
    "load_settings",
]
