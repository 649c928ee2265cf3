"""Custom exception hierarchy for Shipyard configuration and operations."""

from __future__ import annotations

from pathlib import Path


class ShipyardError(Exception):
    """Base exception for all Shipyard errors.

    All Shipyard-specific exceptions inherit from this class, enabling
    centralized exception handling in the CLI.
    """

    pass


class ConfigError(ShipyardError):
    """Exception raised for configuration errors.

    Attributes:
        field: The configuration field that caused the error
        message: Human-readable error message describing the issue
    """

    def __init__(self, field: str, message: str) -> None:
        """Initialize ConfigError with field and message.

        Args:
            field: Configuration field name where error occurred
            message: Descriptive error message
        """
        self.field = field
        self.message = message
        super().__init__(f"Configuration error in '{field}': {message}")


class DeploymentError(ShipyardError):
    """Exception raised when a deployment operation fails.

    Attributes:
        operation: Name of the operation that failed (pull, start, ...)
        message: Human-readable error message
    """

    def __init__(self, operation: str, message: str) -> None:
        """Initialize DeploymentError with operation and message.

        Args:
            operation: Operation name where the failure occurred
            message: Descriptive error message
        """
        self.operation = operation
        self.message = message
        super().__init__(f"Deployment operation '{operation}' failed: {message}")


class DockerNotAvailableError(DeploymentError):
    """Exception raised when the Docker daemon cannot be reached."""

    def __init__(self, operation: str = "init") -> None:
        """Create an error with guidance for starting Docker."""
        super().__init__(
            operation=operation,
            message=(
                "Docker is not available. Ensure Docker is installed and the "
                "daemon is running (docker info)."
            ),
        )


class NotInstalledError(DeploymentError):
    """Exception raised when no existing deployment is found."""

    def __init__(self, env_file: Path) -> None:
        self.env_file = env_file
        super().__init__(
            operation="validate",
            message=(
                f"No existing installation found ({env_file} is missing or has "
                "no VERSION). Run `shipyard install` first."
            ),
        )


class InvalidStateError(DeploymentError):
    """Exception raised when observed runtime state contradicts the files on disk.

    For example a module container is running but its composition
    descriptor is missing.
    """

    def __init__(self, message: str) -> None:
        super().__init__(operation="compose", message=message)


class TransitionInProgressError(DeploymentError):
    """Exception raised when another transition holds the deployment lock."""

    def __init__(self, lock_path: Path) -> None:
        self.lock_path = lock_path
        super().__init__(
            operation="lock",
            message=(
                f"Another shipyard process is already operating on this "
                f"deployment (lock held: {lock_path})"
            ),
        )


class MissingDependencyError(DeploymentError):
    """Exception raised when a module's dependencies are not running and healthy.

    Attributes:
        module: The module that was requested
        missing: Dependencies that are absent or unhealthy
    """

    def __init__(self, module: str, missing: list[str]) -> None:
        self.module = module
        self.missing = list(missing)
        hints = "; ".join(
            f"add it first with: shipyard attach-module {name}" for name in missing
        )
        super().__init__(
            operation="attach",
            message=(
                f"Module '{module}' requires {', '.join(missing)} to be running "
                f"and healthy ({hints})"
            ),
        )


class TransitionError(DeploymentError):
    """Base class for failures during a version transition.

    Every transition failure carries enough context for manual recovery:
    the version that was running, the version being moved to, and the
    snapshot that can be restored.

    Attributes:
        current_version: Version running before the transition
        target_version: Version the transition was moving to
        snapshot_path: Snapshot directory usable for manual recovery
    """

    operation_name = "transition"

    def __init__(
        self,
        message: str,
        *,
        current_version: str | None = None,
        target_version: str | None = None,
        snapshot_path: Path | None = None,
    ) -> None:
        """Initialize a transition error with recovery context.

        Args:
            message: Descriptive error message
            current_version: Version running before the transition
            target_version: Version the transition was moving to
            snapshot_path: Snapshot directory for manual recovery, if any
        """
        self.current_version = current_version
        self.target_version = target_version
        self.snapshot_path = snapshot_path
        super().__init__(operation=self.operation_name, message=message)

    def recovery_hint(self) -> str:
        """Return the version and snapshot context as display lines."""
        lines = [
            f"Current version: {self.current_version or 'unknown'}",
            f"Target version:  {self.target_version or 'unknown'}",
        ]
        if self.snapshot_path is not None:
            lines.append(f"Snapshot:        {self.snapshot_path}")
        else:
            lines.append("Snapshot:        none (manual recovery required)")
        return "\n".join(lines)


class BackupFailedError(TransitionError):
    """Exception raised when a snapshot cannot be created."""

    operation_name = "backup"


class PullFailedError(TransitionError):
    """Exception raised when an image required by the transition cannot be pulled."""

    operation_name = "pull"


class StartFailedError(TransitionError):
    """Exception raised when bringing up the composition fails."""

    operation_name = "start"


class HealthTimeoutError(TransitionError):
    """Exception raised when units do not become healthy within their timeout.

    Attributes:
        units: Names of the containers that failed the health check
    """

    operation_name = "verify"

    def __init__(self, units: list[str], **kwargs: object) -> None:
        self.units = list(units)
        super().__init__(
            f"{len(units)} container(s) failed health check: {', '.join(units)}",
            **kwargs,  # type: ignore[arg-type]
        )


class RollbackFailedError(TransitionError):
    """Exception raised when the rollback itself cannot be carried out."""

    operation_name = "rollback"


class CredentialError(ShipyardError):
    """Base exception for API credential provisioning failures.

    Attributes:
        service_name: Service the credential was requested for
        message: Human-readable error message
    """

    def __init__(self, service_name: str, message: str) -> None:
        self.service_name = service_name
        self.message = message
        super().__init__(message)


class InvalidSecretError(CredentialError):
    """The portal rejected the deployment secret (HTTP 401)."""

    def __init__(self, service_name: str) -> None:
        super().__init__(
            service_name,
            "Invalid deployment secret: the portal rejected DEPLOYMENT_SECRET",
        )


class SecretNotConfiguredError(CredentialError):
    """No deployment secret is configured (locally or on the server, HTTP 503)."""

    def __init__(self, service_name: str, where: str = "server") -> None:
        self.where = where
        super().__init__(
            service_name,
            f"Deployment secret not configured on {where}; "
            "cannot auto-provision API keys",
        )


class OrphanedCredentialError(CredentialError):
    """A key exists on the portal but was never stored locally.

    The portal never re-reveals a key after issuance, so the value is
    unrecoverable from this side.
    """

    def __init__(self, service_name: str, env_var: str, env_file: Path) -> None:
        self.env_var = env_var
        self.env_file = env_file
        super().__init__(
            service_name,
            f"API key for '{service_name}' exists on the portal but {env_var} is "
            f"not set in {env_file}. Retrieve or rotate it in Portal Admin -> "
            f"API Keys, then pass it with --api-key.",
        )


class ProvisioningConnectionError(CredentialError):
    """Network failure or timeout talking to the provisioning endpoint.

    Provisioning is idempotent, so the whole operation can be retried.
    """

    retryable = True

    def __init__(
        self, service_name: str, endpoint: str, original_error: Exception | None = None
    ) -> None:
        self.endpoint = endpoint
        message = (
            f"Failed to connect to portal API at {endpoint}. "
            "Check that the portal is running and retry."
        )
        if original_error:
            message += f"\nOriginal error: {original_error}"
        super().__init__(service_name, message)


class ProvisioningAPIError(CredentialError):
    """The provisioning endpoint returned an unexpected status code."""

    def __init__(
        self, service_name: str, status_code: int, detail: str | None = None
    ) -> None:
        self.status_code = status_code
        self.detail = detail
        message = f"Provisioning API returned status {status_code}"
        if detail:
            message += f": {detail}"
        super().__init__(service_name, message)


class ProvisioningProtocolError(CredentialError):
    """The provisioning response did not match the documented contract."""

    pass


class CredentialUnavailableError(CredentialError):
    """No credential source produced an API key for a module."""

    def __init__(self, service_name: str, reason: str | None = None) -> None:
        self.reason = reason
        lines = [f"API key is required for module '{service_name}'"]
        if reason:
            lines.append(f"Reason: {reason}")
        lines.extend(
            [
                "Options:",
                f"  1. Run with --api-key: shipyard attach-module {service_name} "
                "--api-key <key>",
                "  2. Generate one in Portal Admin -> API Keys",
                "  3. Ensure DEPLOYMENT_SECRET is set for auto-provisioning",
            ]
        )
        super().__init__(service_name, "\n".join(lines))
