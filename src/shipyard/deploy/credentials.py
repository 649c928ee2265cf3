"""API key provisioning against the portal.

The portal issues one API key per service through an idempotent endpoint
authorized by the pre-shared ``DEPLOYMENT_SECRET``. The first call for a
service returns the key; every later call reports that a key exists but
never reveals it again, so a newly issued key is written to the env file
before anything else happens.
"""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from typing import Any

import requests
from pydantic import ValidationError
from requests.exceptions import ConnectionError as RequestsConnectionError
from requests.exceptions import RequestException, Timeout

from shipyard.config.defaults import (
    APPLICATION_URL_KEY,
    DEFAULT_APPLICATION_URL,
    DEPLOYMENT_SECRET_KEY,
)
from shipyard.config.env_file import EnvFile
from shipyard.config.settings import ShipyardSettings
from shipyard.lib.errors import (
    ConfigError,
    CredentialUnavailableError,
    InvalidSecretError,
    OrphanedCredentialError,
    ProvisioningAPIError,
    ProvisioningConnectionError,
    ProvisioningProtocolError,
    SecretNotConfiguredError,
)
from shipyard.models.deployment import (
    Credential,
    CredentialSource,
    ProvisionResult,
    ServiceUnit,
)

logger = logging.getLogger(__name__)

PROVISION_PATH = "/api/service-api-keys/provision"
SECRET_HEADER = "X-Deployment-Secret"
# Single-byte reads return as soon as data arrives, so the deadline is
# checked between every socket read.
BODY_CHUNK_SIZE = 1


class CredentialProvisioner:
    """Client for the portal's service API key provisioning endpoint.

    Example:
        >>> provisioner = CredentialProvisioner.from_settings(settings, store)
        >>> credential = provisioner.resolve_api_key(registry.get("items"))
        >>> credential.source
        <CredentialSource.PROVISIONED: 'provisioned'>
    """

    def __init__(
        self,
        base_url: str,
        secret: str | None,
        store: EnvFile,
        connect_timeout: float = 10.0,
        read_timeout: float = 30.0,
        verify_tls: bool = False,
        session: requests.Session | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the provisioner.

        Args:
            base_url: Portal base URL (``APPLICATION_URL``)
            secret: The deployment secret, or None when not configured
            store: Env file receiving issued keys
            connect_timeout: Seconds to wait for the TCP connection
            read_timeout: Upper bound in seconds for the whole exchange
            verify_tls: Verify the portal certificate (off for self-signed)
            session: Optional pre-built session
            clock: Monotonic time source for the total-time bound
        """
        self.base_url = base_url.rstrip("/")
        self.secret = secret
        self.store = store
        self.timeout = (connect_timeout, read_timeout)
        self.read_timeout = read_timeout
        self.verify_tls = verify_tls
        self._session = session or requests.Session()
        self._clock = clock

    @classmethod
    def from_settings(
        cls, settings: ShipyardSettings, store: EnvFile
    ) -> CredentialProvisioner:
        values = store.read()
        return cls(
            base_url=values.get(APPLICATION_URL_KEY) or DEFAULT_APPLICATION_URL,
            secret=values.get(DEPLOYMENT_SECRET_KEY) or None,
            store=store,
            connect_timeout=settings.provision_connect_timeout,
            read_timeout=settings.provision_read_timeout,
            verify_tls=settings.verify_tls,
        )

    def provision(self, service_name: str) -> ProvisionResult:
        """Ask the portal for the API key of a service.

        Returns:
            The typed response; ``api_key`` is set only when ``is_new_key``

        Raises:
            SecretNotConfiguredError: No local secret, or HTTP 503
            InvalidSecretError: HTTP 401
            ProvisioningAPIError: Any other non-2xx status (including 400)
            ProvisioningConnectionError: Timeout, connection failure, or no
                complete response within ``read_timeout`` seconds
            ProvisioningProtocolError: Malformed body or a new key without value
        """
        if not self.secret:
            raise SecretNotConfiguredError(service_name, where="this host")

        url = f"{self.base_url}{PROVISION_PATH}"
        logger.info(f"Provisioning API key for service: {service_name}")
        deadline = self._clock() + self.read_timeout
        try:
            response = self._session.post(
                url,
                json={"serviceName": service_name},
                headers={SECRET_HEADER: self.secret},
                timeout=self.timeout,
                verify=self.verify_tls,
                stream=True,
            )
        except (Timeout, RequestsConnectionError) as e:
            raise ProvisioningConnectionError(
                service_name, self.base_url, original_error=e
            ) from e

        try:
            body = self._read_body(response, deadline, service_name)
        finally:
            response.close()

        if response.status_code == 401:
            raise InvalidSecretError(service_name)
        if response.status_code == 503:
            raise SecretNotConfiguredError(service_name, where="server")
        if not response.ok:
            detail = None
            payload = _parse_json(body)
            if isinstance(payload, dict):
                detail = payload.get("message")
            raise ProvisioningAPIError(service_name, response.status_code, detail)

        try:
            result = ProvisionResult.model_validate_json(body)
        except ValidationError as e:
            raise ProvisioningProtocolError(
                service_name, f"Malformed provisioning response: {e}"
            ) from e

        if result.is_new_key and not result.api_key:
            raise ProvisioningProtocolError(
                service_name, "Portal reported a new key but returned no value"
            )
        return result

    def _read_body(
        self, response: requests.Response, deadline: float, service_name: str
    ) -> bytes:
        """Read the response body, giving up once ``deadline`` has passed."""
        chunks: list[bytes] = []
        try:
            for chunk in response.iter_content(chunk_size=BODY_CHUNK_SIZE):
                chunks.append(chunk)
                if self._clock() > deadline:
                    raise ProvisioningConnectionError(
                        service_name,
                        self.base_url,
                        original_error=TimeoutError(
                            f"No complete response within {self.read_timeout:g}s"
                        ),
                    )
        except RequestException as e:
            raise ProvisioningConnectionError(
                service_name, self.base_url, original_error=e
            ) from e
        return b"".join(chunks)

    def provision_and_store(self, service_name: str, env_var: str) -> Credential:
        """Obtain a key and persist it before returning.

        A value already in the env file is never overwritten.

        Raises:
            OrphanedCredentialError: The portal holds a key this host never stored
        """
        existing = self.store.get(env_var)
        if existing:
            return Credential(
                service_name=service_name,
                env_var=env_var,
                value=existing,
                source=CredentialSource.EXISTING,
            )

        result = self.provision(service_name)
        if not result.is_new_key:
            raise OrphanedCredentialError(service_name, env_var, self.store.path)

        value = result.api_key or ""
        self.store.set(env_var, value)
        logger.info(f"API key saved to {self.store.path.name} as {env_var}")
        return Credential(
            service_name=service_name,
            env_var=env_var,
            value=value,
            source=CredentialSource.PROVISIONED,
            key_id=result.key_id,
        )

    def resolve_api_key(
        self, unit: ServiceUnit, explicit: str | None = None
    ) -> Credential:
        """Pick the API key for a module.

        Priority: explicit value, then the value in the env file, then a
        newly provisioned key. Explicit values are persisted so the
        composition can read them.

        Raises:
            CredentialUnavailableError: No source can produce a key
        """
        if not unit.api_key_var:
            raise ConfigError(field=unit.name, message="Unit does not use an API key")
        env_var = unit.api_key_var

        if explicit:
            if self.store.get(env_var) != explicit:
                self.store.set(env_var, explicit)
            return Credential(
                service_name=unit.name,
                env_var=env_var,
                value=explicit,
                source=CredentialSource.EXPLICIT,
            )

        existing = self.store.get(env_var)
        if existing:
            logger.info(f"Using existing API key from {self.store.path.name}")
            return Credential(
                service_name=unit.name,
                env_var=env_var,
                value=existing,
                source=CredentialSource.EXISTING,
            )

        if not self.secret:
            raise CredentialUnavailableError(
                unit.name, reason=f"{DEPLOYMENT_SECRET_KEY} is not set"
            )
        return self.provision_and_store(unit.name, env_var)


def _parse_json(body: bytes) -> Any:
    try:
        return json.loads(body)
    except ValueError:
        return None
