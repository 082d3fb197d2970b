"""
Registry of circuit breakers keyed by dependency name.

One registry is built at startup and injected into every call site that
needs breaker state: handlers wrapping dependency calls, and the error
classifier reporting outcomes. All breakers share the registry's
CircuitStateStore.
"""
import dataclasses
import threading
import time
from typing import Any, Callable, Dict, Mapping, Optional, Set

from carebridge.resilience.circuit_breaker import CircuitBreaker, Operation
from carebridge.resilience.state import (
    CIRCUIT_CONFIGS,
    CircuitBreakerConfig,
    CircuitBreakerMetrics,
    CircuitState,
)
from carebridge.resilience.store import CircuitStateStore, MemoryCircuitStateStore

# Settings field -> CircuitBreakerConfig field
SETTINGS_CONFIG_FIELDS = {
    "failure_threshold": "failure_threshold",
    "recovery_timeout_ms": "recovery_timeout",
    "monitoring_window_ms": "monitoring_window",
    "successes_to_close": "successes_to_close",
    "call_timeout_ms": "call_timeout",
}


def _explicit_config_fields(settings: Any) -> Set[str]:
    """Config fields the operator supplied rather than left at their default.

    Plain objects without pydantic's model_fields_set count as fully explicit.
    """
    fields_set = getattr(settings, "model_fields_set", None)
    if fields_set is None:
        return set(SETTINGS_CONFIG_FIELDS.values())
    return {SETTINGS_CONFIG_FIELDS[name] for name in fields_set if name in SETTINGS_CONFIG_FIELDS}


class CircuitBreakerRegistry:
    """
    Lazily creates one CircuitBreaker per dependency.

    Per-dependency overrides (CIRCUIT_CONFIGS unless given) are applied on
    top of the default config.
    """

    def __init__(
        self,
        store: Optional[CircuitStateStore] = None,
        default_config: Optional[CircuitBreakerConfig] = None,
        overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize the registry.

        Args:
            store: Shared state store (in-memory if not provided)
            default_config: Config for dependencies without overrides
            overrides: Dependency name -> config field overrides
            clock: Wall clock in epoch seconds, passed to every breaker
        """
        self.store = store or MemoryCircuitStateStore()
        self.default_config = default_config or CircuitBreakerConfig()
        self._overrides = dict(CIRCUIT_CONFIGS if overrides is None else overrides)
        self._clock = clock
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Any, store: Optional[CircuitStateStore] = None) -> "CircuitBreakerRegistry":
        """
        Build a registry whose configs come from Settings.

        Breaker fields set explicitly in Settings win over the built-in
        CIRCUIT_CONFIGS table for every dependency. Entries in
        circuit_overrides win over both.
        """
        config = CircuitBreakerConfig(
            failure_threshold=settings.failure_threshold,
            recovery_timeout=settings.recovery_timeout,
            monitoring_window=settings.monitoring_window,
            successes_to_close=settings.successes_to_close,
            call_timeout=settings.call_timeout,
        )
        explicit = _explicit_config_fields(settings)
        overrides: Dict[str, Dict[str, Any]] = {
            name: {key: value for key, value in values.items() if key not in explicit}
            for name, values in CIRCUIT_CONFIGS.items()
        }
        for name, values in (getattr(settings, "circuit_overrides", None) or {}).items():
            overrides[name] = {**overrides.get(name, {}), **values}
        return cls(store=store, default_config=config, overrides=overrides)

    def config_for(self, name: str) -> CircuitBreakerConfig:
        overrides = self._overrides.get(name)
        if not overrides:
            return self.default_config
        return dataclasses.replace(self.default_config, **overrides)

    def get(self, name: str) -> CircuitBreaker:
        """
        Get or create the breaker for a dependency.

        Args:
            name: Dependency name

        Returns:
            CircuitBreaker instance
        """
        with self._lock:
            if name not in self._breakers:
                self._breakers[name] = CircuitBreaker(
                    name=name,
                    config=self.config_for(name),
                    store=self.store,
                    clock=self._clock,
                )
            return self._breakers[name]

    async def execute(
        self,
        name: str,
        operation: Operation,
        context: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Run an operation through the named dependency's breaker."""
        return await self.get(name).execute(operation, context)

    def report_outcome(
        self,
        name: str,
        success: bool,
        error: Optional[BaseException] = None,
    ) -> CircuitState:
        """Record a success or failure for a dependency without wrapping the call."""
        return self.get(name).report_outcome(success, error)

    def status(self, name: Optional[str]) -> CircuitState:
        """Stored state for a dependency; closed if it has never been seen."""
        if not name:
            return CircuitState.CLOSED
        state = self.store.load(name)
        return state.state if state else CircuitState.CLOSED

    def all_states(self) -> Dict[str, str]:
        """
        Get states of all dependencies with stored state.

        Returns:
            Dictionary of dependency name -> circuit state
        """
        return {name: self.status(name).value for name in self.store.names()}

    def all_metrics(self) -> Dict[str, CircuitBreakerMetrics]:
        return {name: self.get(name).get_metrics() for name in self.store.names()}
