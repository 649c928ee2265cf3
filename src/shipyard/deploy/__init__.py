"""Shipyard deployment engine.

This package holds the service catalog, the container runtime boundary,
health polling, snapshots, version transitions, module attach and API key
provisioning.
"""

from shipyard.deploy.admin import AdminAccess
from shipyard.deploy.backup import BackupManager
from shipyard.deploy.credentials import CredentialProvisioner
from shipyard.deploy.health import HealthMonitor, HealthResult
from shipyard.deploy.lock import TransitionLock
from shipyard.deploy.modules import AttachResult, ModuleAttacher
from shipyard.deploy.registry import ServiceRegistry
from shipyard.deploy.runtime import ContainerRuntime
from shipyard.deploy.transition import (
    TransitionEngine,
    TransitionResult,
    TransitionState,
)

__all__ = [
    "AdminAccess",
    "AttachResult",
    "BackupManager",
    "ContainerRuntime",
    "CredentialProvisioner",
    "HealthMonitor",
    "HealthResult",
    "ModuleAttacher",
    "ServiceRegistry",
    "TransitionEngine",
    "TransitionLock",
    "TransitionResult",
    "TransitionState",
]
