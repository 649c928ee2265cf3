"""Bounded health polling for running containers."""

from __future__ import annotations

import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

from shipyard.config.defaults import DEFAULT_TIMING
from shipyard.lib.logging_config import get_logger
from shipyard.models.deployment import HealthStatus

logger = get_logger(__name__)


class HealthProbe(Protocol):
    def health_status(self, name: str) -> HealthStatus: ...


@dataclass
class HealthResult:
    """Outcome of waiting for a container to become healthy.

    Attributes:
        container: Container that was polled
        healthy: Whether it reached healthy before the deadline
        status: Last observed status
        elapsed: Seconds spent waiting
        probes: Number of status queries issued
    """

    container: str
    healthy: bool
    status: HealthStatus
    elapsed: float = 0.0
    probes: int = 0

    @property
    def timed_out(self) -> bool:
        return not self.healthy


class HealthMonitor:
    """Polls a container's health signal with a fixed interval until a deadline.

    ``not_found``, ``none``, ``starting`` and ``unhealthy`` are all retried;
    only the deadline ends the wait unsuccessfully.
    """

    def __init__(
        self,
        runtime: HealthProbe,
        poll_interval: float = DEFAULT_TIMING["poll_interval"],
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.runtime = runtime
        self.poll_interval = poll_interval
        self._clock = clock
        self._sleep = sleep

    def await_healthy(
        self, container: str, timeout: float, health_checkable: bool = True
    ) -> HealthResult:
        """Block until ``container`` is healthy or ``timeout`` seconds elapse.

        Units without a health check are declared healthy immediately,
        without querying the runtime.
        """
        if not health_checkable:
            logger.debug(f"{container} has no health check; treating as healthy")
            return HealthResult(container, healthy=True, status=HealthStatus.NONE)

        start = self._clock()
        deadline = start + timeout
        probes = 0
        while True:
            status = self.runtime.health_status(container)
            probes += 1
            now = self._clock()
            if status == HealthStatus.HEALTHY:
                logger.info(f"{container} is healthy")
                return HealthResult(container, True, status, now - start, probes)
            if now >= deadline:
                logger.warning(
                    f"{container} not healthy after {timeout:g}s "
                    f"(last status: {status.value})"
                )
                return HealthResult(container, False, status, now - start, probes)

            logger.debug(f"{container} status: {status.value}")
            self._sleep(min(self.poll_interval, deadline - now))
