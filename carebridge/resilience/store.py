"""
Circuit breaker state stores.

Breaker state must outlive a single request and be shared by every process
that talks to the same dependency. Two backends:

- MemoryCircuitStateStore: single-instance deployments and tests
- ValkeyCircuitStateStore: multi-instance deployments, keyed by dependency

Key format (Valkey):
    carebridge:circuit:{name}        JSON-encoded CircuitBreakerState
    carebridge:circuit:{name}:trial  half-open trial lock (SET NX EX)
"""
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Protocol

from carebridge.resilience.state import CircuitBreakerState

logger = logging.getLogger(__name__)


class CircuitStateStore(ABC):
    """Abstract base for breaker state storage."""

    @abstractmethod
    def load(self, name: str) -> Optional[CircuitBreakerState]:
        """Load the state for a dependency, or None if never seen."""

    @abstractmethod
    def save(self, state: CircuitBreakerState) -> None:
        """Persist the state for a dependency."""

    @abstractmethod
    def names(self) -> List[str]:
        """List every dependency with stored state."""

    @abstractmethod
    def acquire_trial(self, name: str, ttl_seconds: float) -> bool:
        """Try to take the half-open trial slot; False if already held."""

    @abstractmethod
    def release_trial(self, name: str) -> None:
        """Release the half-open trial slot."""


class MemoryCircuitStateStore(CircuitStateStore):
    """In-process breaker state store."""

    def __init__(self):
        self._states: Dict[str, dict] = {}
        self._trials: Dict[str, float] = {}
        self._lock = threading.Lock()

    def load(self, name: str) -> Optional[CircuitBreakerState]:
        with self._lock:
            data = self._states.get(name)
        # Returns a copy; changes persist only through save()
        return CircuitBreakerState.from_dict(data) if data else None

    def save(self, state: CircuitBreakerState) -> None:
        with self._lock:
            self._states[state.name] = state.to_dict()

    def names(self) -> List[str]:
        with self._lock:
            return sorted(self._states)

    def acquire_trial(self, name: str, ttl_seconds: float) -> bool:
        now = time.monotonic()
        with self._lock:
            expires = self._trials.get(name)
            if expires is not None and expires > now:
                return False
            self._trials[name] = now + ttl_seconds
            return True

    def release_trial(self, name: str) -> None:
        with self._lock:
            self._trials.pop(name, None)


class ValkeyClientProtocol(Protocol):
    """Protocol for Valkey/Redis client operations."""

    def get(self, key: str) -> Optional[bytes]: ...
    def set(
        self,
        key: str,
        value: str,
        ex: Optional[int] = None,
        nx: bool = False,
    ) -> Optional[bool]: ...
    def delete(self, *keys: str) -> int: ...
    def keys(self, pattern: str) -> list[bytes]: ...
    def ping(self) -> bool: ...


class ValkeyCircuitStateStore(CircuitStateStore):
    """Valkey-backed breaker state shared across processes.

    Reads and writes are last-writer-wins; the trial lock is the only
    atomic operation and is what limits half-open to one call at a time.
    """

    KEY_PREFIX = "carebridge:circuit:"
    TRIAL_SUFFIX = ":trial"

    def __init__(self, client: ValkeyClientProtocol, state_ttl_seconds: int = 86_400):
        """Initialize the Valkey breaker state store.

        Args:
            client: Valkey/Redis client instance
            state_ttl_seconds: Expiry for idle breaker state (default one day)
        """
        self.client = client
        self._state_ttl = state_ttl_seconds

    def _key(self, name: str) -> str:
        return f"{self.KEY_PREFIX}{name}"

    def _trial_key(self, name: str) -> str:
        return f"{self.KEY_PREFIX}{name}{self.TRIAL_SUFFIX}"

    def load(self, name: str) -> Optional[CircuitBreakerState]:
        data = self.client.get(self._key(name))
        if data is None:
            return None
        if isinstance(data, bytes):
            data = data.decode("utf-8")
        return CircuitBreakerState.from_dict(json.loads(data))

    def save(self, state: CircuitBreakerState) -> None:
        self.client.set(
            self._key(state.name),
            json.dumps(state.to_dict()),
            ex=self._state_ttl,
        )

    def names(self) -> List[str]:
        names = []
        for raw in self.client.keys(f"{self.KEY_PREFIX}*"):
            key = raw.decode("utf-8") if isinstance(raw, bytes) else raw
            if key.endswith(self.TRIAL_SUFFIX):
                continue
            names.append(key[len(self.KEY_PREFIX):])
        return sorted(names)

    def acquire_trial(self, name: str, ttl_seconds: float) -> bool:
        # A crashed trial holder releases the slot when the key expires
        acquired = self.client.set(
            self._trial_key(name),
            "1",
            ex=max(1, int(ttl_seconds)),
            nx=True,
        )
        return bool(acquired)

    def release_trial(self, name: str) -> None:
        self.client.delete(self._trial_key(name))


def get_valkey_circuit_state_store(url: str) -> Optional[ValkeyCircuitStateStore]:
    """Factory function to create a ValkeyCircuitStateStore.

    Returns None if Valkey is not reachable, so callers can fall back to
    the in-memory store and log the degradation.

    Args:
        url: Valkey connection URL (redis://host:port)

    Returns:
        ValkeyCircuitStateStore instance or None if unavailable
    """
    import redis

    try:
        client = redis.Redis.from_url(url, socket_timeout=5)
        client.ping()
        return ValkeyCircuitStateStore(client=client)
    except redis.RedisError as e:
        logger.warning(f"Failed to connect to Valkey for circuit state: {e}")
        return None
