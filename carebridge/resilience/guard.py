"""Guarded dependency call: the breaker runs inside the retry loop."""
from typing import Any, Dict, Optional

from carebridge.resilience.circuit_breaker import Operation
from carebridge.resilience.registry import CircuitBreakerRegistry
from carebridge.resilience.retry import RetryCoordinator, RetryPolicy


async def guarded_call(
    dependency: str,
    operation: Operation,
    *,
    registry: CircuitBreakerRegistry,
    coordinator: RetryCoordinator,
    policy: Optional[RetryPolicy] = None,
    context: Optional[Dict[str, Any]] = None,
) -> Any:
    """
    Call a dependency through its breaker, retrying transient failures.

    Each attempt passes through the breaker, so a breaker that opens
    mid-loop stops further attempts with CircuitOpenError.

    Args:
        dependency: Breaker key, e.g. "object_store"
        operation: Zero-argument callable, sync or async
        registry: Shared breaker registry
        coordinator: Retry coordinator
        policy: Retry policy (coordinator default if not provided)
        context: Log context

    Returns:
        The operation's result
    """
    context = {"dependency": dependency, **(context or {})}
    return await coordinator.execute_with_retry(
        lambda: registry.execute(dependency, operation, context),
        policy,
        context,
    )
