"""
Shared fixtures.

Provides:
- A controllable wall clock for breakers and the ledger
- Settings built from a test environment
- A fake Valkey client supporting the calls the state store makes
- A ledger over in-memory store and archive
"""
import fnmatch
from datetime import datetime, timezone
from typing import Dict, Optional

import pytest

from carebridge.audit import (
    AuditLedger,
    LocalKeyProvider,
    MemoryAuditArchive,
    MemoryAuditStore,
    PrivacyHasher,
)
from carebridge.observability.logging import clear_request_context
from carebridge.settings import reset_settings

TEST_HASH_SECRET = "test-audit-hash-secret-0123456789abcdef"


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeDateTimeClock:
    """Aware-datetime clock for the ledger."""

    def __init__(self, start: Optional[datetime] = None):
        self.now = start or datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class FakeValkeyClient:
    """In-memory stand-in for redis.Redis; expiry is not simulated."""

    def __init__(self):
        self.data: Dict[str, str] = {}
        self.expiries: Dict[str, int] = {}

    def get(self, key):
        value = self.data.get(key)
        return value.encode("utf-8") if value is not None else None

    def set(self, key, value, ex=None, nx=False):
        if nx and key in self.data:
            return None
        self.data[key] = value
        if ex is not None:
            self.expiries[key] = ex
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if self.data.pop(key, None) is not None:
                removed += 1
        return removed

    def keys(self, pattern):
        return [k.encode("utf-8") for k in self.data if fnmatch.fnmatch(k, pattern)]

    def ping(self):
        return True


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def datetime_clock() -> FakeDateTimeClock:
    return FakeDateTimeClock()


@pytest.fixture
def fake_valkey() -> FakeValkeyClient:
    return FakeValkeyClient()


@pytest.fixture
def hasher() -> PrivacyHasher:
    return PrivacyHasher(TEST_HASH_SECRET)


@pytest.fixture
def key_provider() -> LocalKeyProvider:
    return LocalKeyProvider.from_secret(TEST_HASH_SECRET)


@pytest.fixture
def audit_store() -> MemoryAuditStore:
    return MemoryAuditStore()


@pytest.fixture
def audit_archive() -> MemoryAuditArchive:
    return MemoryAuditArchive()


@pytest.fixture
def ledger(audit_store, audit_archive, hasher, key_provider, datetime_clock) -> AuditLedger:
    return AuditLedger(
        store=audit_store,
        hasher=hasher,
        archive=audit_archive,
        key_provider=key_provider,
        environment="test",
        clock=datetime_clock,
    )


@pytest.fixture
def test_env(monkeypatch, tmp_path):
    """Environment for Settings() with a valid secret and local backends."""
    monkeypatch.setenv("AUDIT_HASH_SECRET", TEST_HASH_SECRET)
    monkeypatch.setenv("ENVIRONMENT", "test")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")
    monkeypatch.setenv("AUDIT_ARCHIVE_PATH", str(tmp_path / "archive"))
    monkeypatch.setenv("LOG_JSON", "false")
    reset_settings()
    yield
    reset_settings()


@pytest.fixture(autouse=True)
def _clear_request_context():
    yield
    clear_request_context()
