"""
Retry with bounded, jittered exponential backoff.

The delay before attempt k+1 (after attempt k failed) is

    min(max_delay, base_delay * 2 ** (k - 1)) * U(0.5, 1.0)

so concurrent callers spread out instead of retrying in lockstep.
A CircuitOpenError is never retried.
"""
import asyncio
import inspect
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Optional

from carebridge.errors.classifier import ErrorContext, determine_category, determine_strategy
from carebridge.errors.types import CircuitOpenError, RecoveryStrategy
from carebridge.observability.metrics import record_retry_attempt
from carebridge.resilience.circuit_breaker import Operation

logger = logging.getLogger(__name__)

SleepFunc = Callable[[float], Awaitable[Any]]


def default_is_retryable(error: BaseException) -> bool:
    """Retry exactly what the error classifier would tell a caller to retry."""
    if isinstance(error, CircuitOpenError):
        return False
    category = determine_category(error, ErrorContext())
    return determine_strategy(error, category) == RecoveryStrategy.RETRY


@dataclass(frozen=True)
class RetryPolicy:
    """Retry budget and backoff bounds. Times are in seconds."""

    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    retryable: Callable[[BaseException], bool] = field(default=default_is_retryable)

    @classmethod
    def from_settings(cls, settings: Any) -> "RetryPolicy":
        return cls(
            max_retries=settings.max_retries,
            base_delay=settings.base_delay,
            max_delay=settings.max_delay,
        )


def compute_delay(attempt: int, policy: RetryPolicy, rng: random.Random) -> float:
    """
    Delay to wait after a failed attempt.

    Args:
        attempt: 1-based number of the attempt that just failed
        policy: Backoff bounds
        rng: Source of the jitter factor

    Returns:
        Delay in seconds
    """
    ceiling = min(policy.max_delay, policy.base_delay * (2 ** (attempt - 1)))
    return ceiling * rng.uniform(0.5, 1.0)


class RetryCoordinator:
    """
    Runs an operation up to max_retries + 1 times.

    Usage:
        coordinator = RetryCoordinator()
        result = await coordinator.execute_with_retry(
            lambda: client.fetch(key),
            RetryPolicy(max_retries=2),
        )
    """

    def __init__(
        self,
        sleep: Optional[SleepFunc] = None,
        rng: Optional[random.Random] = None,
    ):
        """
        Args:
            sleep: Async sleep function, injectable for tests
            rng: Random instance for the jitter factor, seedable for tests
        """
        self._sleep = sleep or asyncio.sleep
        self._rng = rng or random.Random()

    @staticmethod
    async def _invoke(operation: Operation) -> Any:
        result = operation()
        if inspect.isawaitable(result):
            result = await result
        return result

    async def execute_with_retry(
        self,
        operation: Operation,
        policy: Optional[RetryPolicy] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Run an operation, retrying transient failures.

        Args:
            operation: Zero-argument callable, sync or async
            policy: Retry budget and predicate (defaults if not provided)
            context: Log context; "operation" labels the retry metric

        Returns:
            The operation's result

        Raises:
            Exception: The last error, unmodified, once the budget is spent
                or the error is not retryable
        """
        policy = policy or RetryPolicy()
        context = context or {}
        operation_name = context.get("operation", "unknown")
        attempts = policy.max_retries + 1

        for attempt in range(1, attempts + 1):
            try:
                return await self._invoke(operation)
            except Exception as e:
                if isinstance(e, CircuitOpenError):
                    raise
                if attempt >= attempts or not policy.retryable(e):
                    if attempt > 1:
                        logger.warning(
                            f"Giving up on {operation_name} after {attempt} attempts",
                            extra={
                                **context,
                                "attempts": attempt,
                                "error_type": type(e).__name__,
                            },
                        )
                    raise

                delay = compute_delay(attempt, policy, self._rng)
                record_retry_attempt(operation_name)
                logger.info(
                    f"Retrying {operation_name} in {delay:.3f}s",
                    extra={
                        **context,
                        "attempt": attempt,
                        "max_attempts": attempts,
                        "delay_seconds": round(delay, 3),
                        "error_type": type(e).__name__,
                    },
                )
                await self._sleep(delay)

        # Unreachable: the loop either returns or raises
        raise RuntimeError("retry loop exited without a result")
