"""Default configuration values for Shipyard."""

import logging

logger = logging.getLogger(__name__)


DEFAULT_PROJECT_NAME = "portal"
DEFAULT_VERSION = "latest"
DEFAULT_IMAGE_REGISTRY = "ghcr.io/ezy-prop"
DEFAULT_APPLICATION_URL = "https://localhost"
DEFAULT_ENV_FILE = "portal.env"

# Layout of the deploy root
DEFAULT_LAYOUT: dict[str, str] = {
    "compose_dir": "docker",
    "backup_dir": "backups",
    "log_dir": "logs",
    "lock_file": ".shipyard.lock",
    "admin_flag_file": ".admin-access-enabled",
    "catalog_file": "modules.yaml",
}

# Timing defaults (seconds)
DEFAULT_TIMING: dict[str, float] = {
    "poll_interval": 5,
    "main_health_timeout": 180,
    "module_health_timeout": 60,
    "rollback_health_timeout": 120,
    "attach_health_timeout": 120,
    "restore_settle_delay": 10,
    "provision_connect_timeout": 10,
    "provision_read_timeout": 30,
}

# Retention applied during cleanup
DEFAULT_RETENTION: dict[str, int] = {
    "image_keep": 3,
    "snapshot_keep": 5,
}

DATABASE_SERVICE = "postgres"
DEFAULT_DATABASE_USER = "postgres"

# Env file keys
VERSION_KEY = "VERSION"
PROJECT_NAME_KEY = "PROJECT_NAME"
INFRASTRUCTURE_MODE_KEY = "INFRASTRUCTURE_MODE"
IMAGE_REGISTRY_KEY = "IMAGE_REGISTRY"
APPLICATION_URL_KEY = "APPLICATION_URL"
DEPLOYMENT_SECRET_KEY = "DEPLOYMENT_SECRET"
POSTGRES_HOST_KEY = "POSTGRES_HOST"
POSTGRES_USER_KEY = "POSTGRES_USER"
