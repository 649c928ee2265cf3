"""Configuration for Shipyard.

Main components:
- ShipyardSettings / load_settings: orchestrator behavior with SHIPYARD_*
  environment overrides
- EnvFile: the deployment's KEY=VALUE env file
- load_deployment: builds the Deployment aggregate from the env file
"""

from shipyard.config.env_file import (
    EnvFile,
    create_default_config,
    load_deployment,
    resolve_infrastructure_mode,
)
from shipyard.config.settings import ShipyardSettings, load_settings

__all__ = [
    "EnvFile",
    "ShipyardSettings",
    "create_default_config",
    "load_deployment",
    "load_settings",
    "resolve_infrastructure_mode",
]
