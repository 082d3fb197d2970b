"""
Prometheus metrics for the resilience and audit core.

Features:
- Circuit breaker state, transition and rejection metrics
- Retry attempt counters
- Error classification counters by category
- Audit write and integrity metrics
"""
from prometheus_client import Counter, Gauge, Histogram

# Circuit breaker metrics
circuit_breaker_state = Gauge(
    "carebridge_circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=open, 0.5=half-open)",
    ["dependency"]
)

circuit_breaker_transitions_total = Counter(
    "carebridge_circuit_breaker_transitions_total",
    "Circuit breaker state transitions",
    ["dependency", "to_state"]
)

circuit_breaker_rejections_total = Counter(
    "carebridge_circuit_breaker_rejections_total",
    "Calls rejected without reaching the dependency",
    ["dependency"]
)

# Retry metrics
retry_attempts_total = Counter(
    "carebridge_retry_attempts_total",
    "Retry attempts after a failed call",
    ["operation"]
)

# Error classification metrics
error_classifications_total = Counter(
    "carebridge_error_classifications_total",
    "Classified errors by category",
    ["category", "service"]
)

error_classification_seconds = Histogram(
    "carebridge_error_classification_seconds",
    "Time spent classifying an error",
    buckets=[0.0005, 0.001, 0.0025, 0.005, 0.01, 0.05]
)

# Audit metrics
audit_events_total = Counter(
    "carebridge_audit_events_total",
    "Audit events written, by classification and outcome",
    ["data_classification", "outcome"]
)

audit_integrity_failures_total = Counter(
    "carebridge_audit_integrity_failures_total",
    "Audit records whose recomputed hash did not match"
)

STATE_VALUES = {
    "closed": 0.0,
    "open": 1.0,
    "half_open": 0.5,
}


def update_circuit_breaker_state(dependency: str, state: str) -> None:
    """
    Update circuit breaker state metric.

    Args:
        dependency: Dependency name
        state: Circuit state ("closed", "open", "half_open")
    """
    value = STATE_VALUES.get(state, 0.0)
    circuit_breaker_state.labels(dependency=dependency).set(value)


def record_circuit_transition(dependency: str, to_state: str) -> None:
    circuit_breaker_transitions_total.labels(dependency=dependency, to_state=to_state).inc()
    update_circuit_breaker_state(dependency, to_state)


def record_circuit_rejection(dependency: str) -> None:
    circuit_breaker_rejections_total.labels(dependency=dependency).inc()


def record_retry_attempt(operation: str) -> None:
    retry_attempts_total.labels(operation=operation).inc()


def record_error_classification(category: str, service: str, duration_seconds: float) -> None:
    error_classifications_total.labels(category=category, service=service).inc()
    error_classification_seconds.observe(duration_seconds)


def record_audit_write(data_classification: str, outcome: str) -> None:
    """
    Record an audit write outcome.

    Args:
        data_classification: Classification of the event
        outcome: "stored", "archived", "failed" or "archive_failed"
    """
    audit_events_total.labels(
        data_classification=data_classification,
        outcome=outcome,
    ).inc()


def record_integrity_failure() -> None:
    audit_integrity_failures_total.inc()
