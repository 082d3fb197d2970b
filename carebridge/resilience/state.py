"""Circuit breaker configuration and persisted state."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Type

from carebridge.errors.types import BusinessRuleError, InputValidationError

# Upper bound on recorded outcomes regardless of the monitoring window
MAX_WINDOW_SIZE = 1000


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class CircuitBreakerConfig:
    """Configuration for a circuit breaker.

    Times are in seconds.
    """

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    monitoring_window: float = 60.0
    successes_to_close: int = 3
    call_timeout: float = 30.0
    expected_exceptions: Tuple[Type[BaseException], ...] = (
        InputValidationError,
        BusinessRuleError,
    )


# Circuit breaker configurations per dependency
CIRCUIT_CONFIGS: Dict[str, Dict[str, Any]] = {
    "inference": {
        "failure_threshold": 5,
        "recovery_timeout": 30,
        "monitoring_window": 60,
    },
    "object_store": {
        "failure_threshold": 5,
        "recovery_timeout": 60,
    },
    "data_store": {
        "failure_threshold": 5,
        "recovery_timeout": 30,
    },
    "key_management": {
        "failure_threshold": 3,
        "recovery_timeout": 30,
    },
    "secret_vault": {
        "failure_threshold": 3,
        "recovery_timeout": 60,
    },
    "identity_provider": {
        "failure_threshold": 3,
        "recovery_timeout": 30,
    },
}


@dataclass
class CircuitBreakerState:
    """Persisted state of one dependency's breaker.

    Attributes:
        name: Dependency key.
        state: Current state.
        failure_count: Consecutive counted failures while closed.
        success_count: Consecutive successes while half-open.
        last_failure_at: Epoch seconds of the last counted failure.
        last_success_at: Epoch seconds of the last success.
        window: Recent (epoch seconds, success) outcomes for metrics.
    """

    name: str
    state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_at: Optional[float] = None
    last_success_at: Optional[float] = None
    window: List[Tuple[float, bool]] = field(default_factory=list)

    def record(self, now: float, success: bool, monitoring_window: float) -> None:
        """Append an outcome and drop entries outside the window."""
        self.window.append((now, success))
        cutoff = now - monitoring_window
        self.window = [entry for entry in self.window if entry[0] >= cutoff][-MAX_WINDOW_SIZE:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_at": self.last_failure_at,
            "last_success_at": self.last_success_at,
            "window": [[ts, ok] for ts, ok in self.window],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> CircuitBreakerState:
        return cls(
            name=data["name"],
            state=CircuitState(data["state"]),
            failure_count=data.get("failure_count", 0),
            success_count=data.get("success_count", 0),
            last_failure_at=data.get("last_failure_at"),
            last_success_at=data.get("last_success_at"),
            window=[(float(ts), bool(ok)) for ts, ok in data.get("window", [])],
        )


@dataclass(frozen=True)
class CircuitBreakerMetrics:
    """Snapshot of a breaker for dashboards and health endpoints."""

    name: str
    state: CircuitState
    failure_count: int
    success_count: int
    last_failure_time: Optional[float]
    last_success_time: Optional[float]
    total_requests: int
    successful_requests: int
    failed_requests: int
    success_rate: float
    monitoring_window: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "failure_count": self.failure_count,
            "success_count": self.success_count,
            "last_failure_time": self.last_failure_time,
            "last_success_time": self.last_success_time,
            "total_requests": self.total_requests,
            "successful_requests": self.successful_requests,
            "failed_requests": self.failed_requests,
            "success_rate": self.success_rate,
            "monitoring_window": self.monitoring_window,
        }
