"""
Observability module for the resilience and audit core.

Provides:
- Structured JSON logging with correlation IDs
- Prometheus metrics collection
"""
from carebridge.observability.logging import (
    CorrelatedJsonFormatter,
    get_request_id,
    setup_logging,
    set_request_context,
    clear_request_context,
)
from carebridge.observability.metrics import update_circuit_breaker_state

__all__ = [
    # Logging
    "CorrelatedJsonFormatter",
    "get_request_id",
    "setup_logging",
    "set_request_context",
    "clear_request_context",
    # Metrics
    "update_circuit_breaker_state",
]
