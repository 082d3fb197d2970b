"""Circuit breakers, breaker state stores and retry."""
from carebridge.resilience.circuit_breaker import CircuitBreaker, circuit_protected, is_throttling_error
from carebridge.resilience.guard import guarded_call
from carebridge.resilience.health import HealthCheckOptions, HealthChecker, ServiceHealth
from carebridge.resilience.registry import CircuitBreakerRegistry
from carebridge.resilience.retry import (
    RetryCoordinator,
    RetryPolicy,
    compute_delay,
    default_is_retryable,
)
from carebridge.resilience.state import (
    CIRCUIT_CONFIGS,
    CircuitBreakerConfig,
    CircuitBreakerMetrics,
    CircuitBreakerState,
    CircuitState,
)
from carebridge.resilience.store import (
    CircuitStateStore,
    MemoryCircuitStateStore,
    ValkeyCircuitStateStore,
    get_valkey_circuit_state_store,
)

__all__ = [
    "CIRCUIT_CONFIGS",
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerMetrics",
    "CircuitBreakerRegistry",
    "CircuitBreakerState",
    "CircuitState",
    "CircuitStateStore",
    "HealthCheckOptions",
    "HealthChecker",
    "MemoryCircuitStateStore",
    "RetryCoordinator",
    "RetryPolicy",
    "ServiceHealth",
    "ValkeyCircuitStateStore",
    "circuit_protected",
    "compute_delay",
    "default_is_retryable",
    "get_valkey_circuit_state_store",
    "guarded_call",
    "is_throttling_error",
]
