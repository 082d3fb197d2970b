"""
Circuit Breaker Implementation.

Features:
- State machine: closed -> open -> half-open -> closed
- Configurable failure threshold, recovery timeout and successes to close
- Hard per-call timeout; a timeout counts as a failure
- Throttling (HTTP 429, AWS throttling codes) counts as a double failure
- Expected errors (validation, business rules) pass through uncounted
- State held in a CircuitStateStore so it can be shared across processes
"""
import asyncio
import functools
import inspect
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar, Union

from opentelemetry import trace

from carebridge.errors.types import CircuitOpenError, CircuitTimeoutError, ThrottledError
from carebridge.observability.metrics import (
    record_circuit_rejection,
    record_circuit_transition,
)
from carebridge.resilience.state import (
    CircuitBreakerConfig,
    CircuitBreakerMetrics,
    CircuitBreakerState,
    CircuitState,
)
from carebridge.resilience.store import CircuitStateStore, MemoryCircuitStateStore

logger = logging.getLogger(__name__)

tracer = trace.get_tracer(__name__)

T = TypeVar("T")

Operation = Callable[[], Union[T, Awaitable[T]]]

# Rate and quota rejections reported by AWS SDK clients
THROTTLING_ERROR_CODES = frozenset({
    "ThrottlingException",
    "TooManyRequestsException",
    "ServiceQuotaExceededException",
    "LimitExceededException",
})

# A throttled call counts as this many failures
THROTTLED_FAILURE_WEIGHT = 2


def is_throttling_error(error: BaseException) -> bool:
    """Whether an error is a rate or quota rejection by the dependency."""
    if isinstance(error, ThrottledError):
        return True
    if type(error).__name__ in THROTTLING_ERROR_CODES:
        return True
    if getattr(error, "status_code", None) == 429:
        return True
    response = getattr(error, "response", None)
    if isinstance(response, dict):
        # botocore ClientError
        code = response.get("Error", {}).get("Code")
        status = response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        return code in THROTTLING_ERROR_CODES or status == 429
    return getattr(response, "status_code", None) == 429


def _as_datetime(ts: Optional[float]) -> Optional[datetime]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)


class CircuitBreaker:
    """
    Circuit breaker for one dependency.

    States:
    - closed: Normal operation, consecutive failures are counted
    - open: Calls are rejected until the recovery timeout elapses
    - half_open: One trial call at a time; enough successes close it,
      a single failure reopens it

    Usage:
        breaker = CircuitBreaker("inference", CircuitBreakerConfig())
        result = await breaker.execute(lambda: client.invoke(prompt))
    """

    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        store: Optional[CircuitStateStore] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize circuit breaker.

        Args:
            name: Dependency name, also the state store key
            config: Thresholds and timeouts
            store: Where state lives; in-memory if not provided
            clock: Wall clock in epoch seconds
        """
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._store = store or MemoryCircuitStateStore()
        self._clock = clock
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # State access
    # ------------------------------------------------------------------

    def _load(self) -> CircuitBreakerState:
        return self._store.load(self.name) or CircuitBreakerState(name=self.name)

    @property
    def state(self) -> CircuitState:
        """Stored state; does not perform the open -> half-open transition."""
        return self._load().state

    @property
    def failure_count(self) -> int:
        return self._load().failure_count

    @property
    def success_count(self) -> int:
        return self._load().success_count

    def _transition(self, state: CircuitBreakerState, to_state: CircuitState) -> None:
        if state.state == to_state:
            return
        from_state = state.state
        state.state = to_state
        if to_state == CircuitState.CLOSED:
            state.failure_count = 0
            state.success_count = 0
        elif to_state == CircuitState.HALF_OPEN:
            state.success_count = 0
        elif to_state == CircuitState.OPEN:
            state.success_count = 0

        record_circuit_transition(self.name, to_state.value)
        log = logger.warning if to_state == CircuitState.OPEN else logger.info
        log(
            f"Circuit breaker {self.name}: {from_state.value} -> {to_state.value}",
            extra={
                "dependency": self.name,
                "from_state": from_state.value,
                "to_state": to_state.value,
                "failure_count": state.failure_count,
            },
        )

    # ------------------------------------------------------------------
    # Admission and outcome recording
    # ------------------------------------------------------------------

    def _reject(self, state: CircuitBreakerState, retry_after: float) -> CircuitOpenError:
        record_circuit_rejection(self.name)
        logger.warning(
            f"Circuit breaker {self.name} rejected call",
            extra={
                "dependency": self.name,
                "state": state.state.value,
                "failure_count": state.failure_count,
            },
        )
        return CircuitOpenError(
            dependency=self.name,
            failure_count=state.failure_count,
            last_failure_time=_as_datetime(state.last_failure_at),
            retry_after=retry_after,
        )

    def _admit(self) -> bool:
        """Admit or reject a call. Returns True if the call holds the trial slot."""
        with self._lock:
            state = self._load()
            now = self._clock()

            if state.state == CircuitState.OPEN:
                last_failure = state.last_failure_at if state.last_failure_at is not None else now
                elapsed = now - last_failure
                if elapsed < self.config.recovery_timeout:
                    raise self._reject(state, self.config.recovery_timeout - elapsed)
                self._transition(state, CircuitState.HALF_OPEN)
                self._store.save(state)

            if state.state == CircuitState.HALF_OPEN:
                if not self._store.acquire_trial(self.name, self.config.call_timeout + 1):
                    raise self._reject(state, 1)
                return True

            return False

    def _on_success(self) -> None:
        with self._lock:
            state = self._load()
            now = self._clock()
            state.last_success_at = now
            state.record(now, True, self.config.monitoring_window)

            if state.state == CircuitState.HALF_OPEN:
                state.success_count += 1
                if state.success_count >= self.config.successes_to_close:
                    self._transition(state, CircuitState.CLOSED)
            elif state.state == CircuitState.CLOSED:
                state.failure_count = 0

            self._store.save(state)

    def _on_failure(self, error: BaseException) -> None:
        throttled = is_throttling_error(error)
        with self._lock:
            state = self._load()
            now = self._clock()
            state.record(now, False, self.config.monitoring_window)
            state.failure_count += THROTTLED_FAILURE_WEIGHT if throttled else 1
            state.last_failure_at = now

            if state.state == CircuitState.HALF_OPEN:
                self._transition(state, CircuitState.OPEN)
            elif (
                state.state == CircuitState.CLOSED
                and state.failure_count >= self.config.failure_threshold
            ):
                self._transition(state, CircuitState.OPEN)

            self._store.save(state)

        if throttled:
            logger.warning(
                f"Throttling detected on {self.name}, counting double failure",
                extra={
                    "dependency": self.name,
                    "error_type": type(error).__name__,
                    "failure_count": state.failure_count,
                },
            )
        else:
            logger.debug(
                f"Circuit breaker {self.name} counted failure",
                extra={
                    "dependency": self.name,
                    "error_type": type(error).__name__,
                },
            )

    def _on_expected_error(self, error: BaseException) -> None:
        with self._lock:
            state = self._load()
            state.record(self._clock(), False, self.config.monitoring_window)
            self._store.save(state)

        logger.debug(
            f"Expected error ignored by circuit breaker {self.name}",
            extra={"dependency": self.name, "error_type": type(error).__name__},
        )

    def report_outcome(self, success: bool, error: Optional[BaseException] = None) -> CircuitState:
        """Record the outcome of a call made without execute().

        Lets handlers feed the breaker when they hold only a dependency
        name, e.g. after classifying an error.

        Returns:
            The state after recording the outcome.
        """
        if success:
            self._on_success()
        elif error is not None and isinstance(error, self.config.expected_exceptions):
            self._on_expected_error(error)
        else:
            self._on_failure(error or RuntimeError("reported failure"))
        return self.state

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    @staticmethod
    async def _invoke(operation: Operation) -> Any:
        if inspect.iscoroutinefunction(operation):
            return await operation()
        # Sync callables run in a worker thread so the timeout applies
        result = await asyncio.to_thread(operation)
        if inspect.isawaitable(result):
            result = await result
        return result

    async def execute(
        self,
        operation: Operation,
        context: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """
        Run an operation under breaker protection.

        Args:
            operation: Zero-argument callable, sync or async
            context: Log context (operation name, correlation id)

        Returns:
            The operation's result

        Raises:
            CircuitOpenError: The breaker rejected the call
            CircuitTimeoutError: The call exceeded config.call_timeout
            Exception: Whatever the operation raised, unmodified
        """
        context = context or {}
        holds_trial = self._admit()

        with tracer.start_as_current_span("circuit_breaker.execute") as span:
            span.set_attribute("circuit.dependency", self.name)
            span.set_attribute("circuit.trial", holds_trial)
            try:
                task = asyncio.ensure_future(self._invoke(operation))
                done, _ = await asyncio.wait({task}, timeout=self.config.call_timeout)
                if not done:
                    # The underlying call may keep running; callers must be idempotent
                    task.cancel()
                    timeout_error = CircuitTimeoutError(self.config.call_timeout, dependency=self.name)
                    self._on_failure(timeout_error)
                    logger.error(
                        f"Circuit breaker {self.name} call timed out",
                        extra={"dependency": self.name, "timeout": self.config.call_timeout, **context},
                    )
                    raise timeout_error

                try:
                    result = task.result()
                except self.config.expected_exceptions as e:
                    self._on_expected_error(e)
                    raise
                except Exception as e:
                    span.record_exception(e)
                    self._on_failure(e)
                    raise

                self._on_success()
                return result
            finally:
                if holds_trial:
                    self._store.release_trial(self.name)

    def force_state(self, target: CircuitState) -> None:
        """Force the breaker into a state (operational override, tests)."""
        with self._lock:
            state = self._load()
            self._transition(state, target)
            if target == CircuitState.OPEN:
                state.last_failure_at = self._clock()
            elif target == CircuitState.CLOSED:
                state.last_failure_at = None
            self._store.save(state)

    # ------------------------------------------------------------------
    # Metrics
    # ------------------------------------------------------------------

    def get_metrics(self) -> CircuitBreakerMetrics:
        """Current state plus windowed success rate."""
        state = self._load()
        now = self._clock()
        cutoff = now - self.config.monitoring_window
        recent = [ok for ts, ok in state.window if ts >= cutoff]
        total = len(recent)
        successful = sum(1 for ok in recent if ok)
        success_rate = round(successful / total * 100, 2) if total else 0.0

        return CircuitBreakerMetrics(
            name=self.name,
            state=state.state,
            failure_count=state.failure_count,
            success_count=state.success_count,
            last_failure_time=state.last_failure_at,
            last_success_time=state.last_success_at,
            total_requests=total,
            successful_requests=successful,
            failed_requests=total - successful,
            success_rate=success_rate,
            monitoring_window=self.config.monitoring_window,
        )


def circuit_protected(breaker: CircuitBreaker) -> Callable:
    """Decorator form of CircuitBreaker.execute for async functions."""

    def decorator(func: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(func)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            return await breaker.execute(
                functools.partial(func, *args, **kwargs),
                context={"operation": func.__name__},
            )

        return wrapper

    return decorator
