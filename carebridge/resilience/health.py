"""
Health checks for external dependencies.

Each registered check runs through its own circuit breaker, so a dependency
that keeps failing its check is not called again until the recovery timeout
elapses. Overall status is "healthy" when every check passed and "degraded"
otherwise.
"""
import asyncio
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional, Tuple, Type

from carebridge.resilience.circuit_breaker import CircuitBreaker, Operation
from carebridge.resilience.state import CircuitBreakerConfig
from carebridge.resilience.store import CircuitStateStore, MemoryCircuitStateStore

logger = logging.getLogger(__name__)

# Breaker keys for health checks, kept apart from live traffic breakers
HEALTH_BREAKER_PREFIX = "health."

DEFAULT_CHECK_TIMEOUT = 5.0


@dataclass
class ServiceHealth:
    """Last known health of one registered service."""

    name: str
    check: Operation
    breaker: CircuitBreaker
    healthy: bool = True
    last_check: Optional[datetime] = None
    last_error: Optional[str] = None
    latency_ms: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "healthy": self.healthy,
            "last_check": self.last_check.isoformat() if self.last_check else None,
            "last_error": self.last_error,
            "latency_ms": self.latency_ms,
            "circuit_breaker": self.breaker.get_metrics().to_dict(),
        }


@dataclass(frozen=True)
class HealthCheckOptions:
    """Breaker settings for one service's health check. Times are in seconds."""

    failure_threshold: int = 3
    recovery_timeout: float = 30.0
    timeout: float = DEFAULT_CHECK_TIMEOUT
    expected_exceptions: Tuple[Type[BaseException], ...] = ()


class HealthChecker:
    """
    Runs registered health checks and reports overall status.

    Usage:
        checker = HealthChecker()
        checker.register_service("audit_database", lambda: ping(engine))
        await checker.check_all()
        status = checker.get_health_status()
    """

    def __init__(
        self,
        store: Optional[CircuitStateStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Args:
            store: State store for the check breakers (in-memory if not provided)
            clock: Wall clock in epoch seconds
        """
        self._store = store or MemoryCircuitStateStore()
        self._clock = clock
        self._services: Dict[str, ServiceHealth] = {}

    def register_service(
        self,
        name: str,
        check: Operation,
        options: Optional[HealthCheckOptions] = None,
    ) -> None:
        """
        Register a check. The check passes when it returns without raising.

        Args:
            name: Service name used in the status report
            check: Zero-argument callable, sync or async
            options: Breaker settings for this check
        """
        options = options or HealthCheckOptions()
        config = CircuitBreakerConfig(
            failure_threshold=options.failure_threshold,
            recovery_timeout=options.recovery_timeout,
            call_timeout=options.timeout,
            expected_exceptions=options.expected_exceptions,
        )
        breaker = CircuitBreaker(
            name=f"{HEALTH_BREAKER_PREFIX}{name}",
            config=config,
            store=self._store,
            clock=self._clock,
        )
        self._services[name] = ServiceHealth(name=name, check=check, breaker=breaker)
        logger.info("Service registered for health checking", extra={"service": name})

    @property
    def services(self) -> Dict[str, ServiceHealth]:
        return dict(self._services)

    async def check_service_health(self, name: str) -> bool:
        """
        Run one service's check through its breaker.

        Raises:
            KeyError: The service is not registered
        """
        service = self._services.get(name)
        if service is None:
            raise KeyError(f"Service {name} not registered")

        start = time.perf_counter()
        try:
            await service.breaker.execute(service.check, {"operation": "health_check"})
        except Exception as e:
            service.healthy = False
            service.last_error = type(e).__name__
            logger.error(
                "Service health check failed",
                extra={
                    "service": name,
                    "error_type": type(e).__name__,
                    "circuit_state": service.breaker.state.value,
                },
            )
        else:
            service.healthy = True
            service.last_error = None
            logger.debug("Service health check passed", extra={"service": name})
        finally:
            service.latency_ms = round((time.perf_counter() - start) * 1000, 2)
            service.last_check = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        return service.healthy

    async def check_all(self) -> Dict[str, bool]:
        """Run every registered check concurrently."""
        names = list(self._services)
        results = await asyncio.gather(*(self.check_service_health(name) for name in names))
        return dict(zip(names, results))

    def is_service_healthy(self, name: str) -> bool:
        """Last known health; unregistered services are unhealthy."""
        service = self._services.get(name)
        return service.healthy if service else False

    def get_health_status(self) -> Dict[str, Any]:
        """
        Overall and per-service status from the last checks.

        Returns:
            {"status": "healthy" | "degraded", "timestamp": ..., "services": {...}}
        """
        services = {name: service.to_dict() for name, service in self._services.items()}
        healthy = all(service.healthy for service in self._services.values())
        return {
            "status": "healthy" if healthy else "degraded",
            "timestamp": datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat(),
            "services": services,
        }
